"""End-to-end tests for the HTTP surface."""

from __future__ import annotations

import pyotp
import pytest

from identity_service.domain.contracts import ExternalIdentity

from .conftest import STRONG_PASSWORD


def register(client, email="alice@example.com", **extra):
    body = {"email": email, "password": STRONG_PASSWORD, "display_name": "Alice", **extra}
    return client.post("/v1/auth/register", json=body)


def auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_register_returns_session_without_secrets(api_client):
    response = register(api_client)
    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "authenticated"
    assert body["tenant"]["name"] == "Alice's Workspace"
    assert body["tenant"]["role"] == "admin"
    assert body["tenant_id"] == body["tenant"]["tenant_id"]
    assert "password_hash" not in body["user"]
    assert "two_factor_secret" not in body["user"]
    assert STRONG_PASSWORD not in response.text


def test_duplicate_registration_uses_error_envelope(api_client):
    register(api_client)
    response = register(api_client)
    assert response.status_code == 409
    assert response.json()["error"]["kind"] == "duplicate_email"


def test_weak_password_lists_failed_rules(api_client):
    response = api_client.post(
        "/v1/auth/register", json={"email": "w@example.com", "password": "password", "display_name": "W"}
    )
    assert response.status_code == 422
    error = response.json()["error"]
    assert error["kind"] == "weak_password"
    assert "min_length" in error["detail"]["failed_rules"]


def test_invalid_email_is_a_validation_error(api_client):
    response = api_client.post(
        "/v1/auth/register", json={"email": "not-an-email", "password": STRONG_PASSWORD, "display_name": "X"}
    )
    assert response.status_code == 422
    assert response.json()["error"]["kind"] == "validation_error"


def test_login_and_me(api_client):
    register(api_client)
    login = api_client.post("/v1/auth/login", json={"email": "alice@example.com", "password": STRONG_PASSWORD})
    assert login.status_code == 200
    token = login.json()["token"]
    me = api_client.get("/v1/auth/me", headers=auth_header(token))
    assert me.status_code == 200
    assert me.json()["email"] == "alice@example.com"


def test_lockout_returns_423_with_retry_after(api_client):
    register(api_client)
    for _ in range(5):
        bad = api_client.post("/v1/auth/login", json={"email": "alice@example.com", "password": "Wr0ngP@ssw0rd!!"})
        assert bad.status_code == 401
        assert bad.json()["error"]["kind"] == "invalid_credentials"
    locked = api_client.post("/v1/auth/login", json={"email": "alice@example.com", "password": STRONG_PASSWORD})
    assert locked.status_code == 423
    assert locked.json()["error"]["kind"] == "account_locked"
    assert 1795 <= int(locked.headers["Retry-After"]) <= 1800


def test_protected_routes_require_valid_token(api_client):
    missing = api_client.get("/v1/auth/me")
    assert missing.status_code == 401
    assert missing.json()["error"]["kind"] == "token_invalid"
    forged = api_client.get("/v1/auth/me", headers=auth_header("abc.def.ghi"))
    assert forged.status_code == 401


def test_two_factor_flow_over_http(api_client):
    token = register(api_client).json()["token"]
    setup = api_client.post("/v1/auth/2fa/setup", headers=auth_header(token))
    assert setup.status_code == 200
    assert setup.json()["qr_code"].startswith("data:image/png;base64,")
    authenticator = pyotp.parse_uri(setup.json()["provisioning_uri"])

    enable = api_client.post("/v1/auth/2fa/enable", json={"code": authenticator.now()}, headers=auth_header(token))
    assert enable.status_code == 200
    assert len(enable.json()["recovery_codes"]) == 10

    challenge = api_client.post("/v1/auth/login", json={"email": "alice@example.com", "password": STRONG_PASSWORD})
    assert challenge.json()["status"] == "two_factor_required"
    assert "token" not in challenge.json()

    verified = api_client.post(
        "/v1/auth/2fa/verify",
        json={
            "email": "alice@example.com",
            "code": authenticator.now(),
            "challenge_token": challenge.json()["challenge_token"],
        },
    )
    assert verified.status_code == 200
    assert verified.json()["status"] == "authenticated"

    me = api_client.get("/v1/auth/me", headers=auth_header(verified.json()["token"]))
    assert me.json()["two_factor_enabled"] is True


def test_oauth_session_shares_login_response_shape(api_client, identity_provider):
    identity_provider.identities["provider-token"] = ExternalIdentity(
        subject_id="idp|7", email="hank@example.com", display_name="Hank"
    )
    response = api_client.post(
        "/v1/auth/oauth/session", json={"access_token": "provider-token", "tenant_name": "Hank Co"}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "authenticated"
    assert body["user"]["email"] == "hank@example.com"

    rejected = api_client.post("/v1/auth/oauth/session", json={"access_token": "bogus"})
    assert rejected.status_code == 401
    assert rejected.json()["error"]["kind"] == "federated_verification_failed"


def test_companies_and_switch(api_client, api_app):
    body = register(api_client).json()
    token = body["token"]
    tenants = api_app.state.tenant_service
    second = tenants.create_tenant("Second Co", body["user"]["account_id"])

    listed = api_client.get("/v1/auth/companies", headers=auth_header(token)).json()
    assert {item["tenant_id"] for item in listed["items"]} == {body["tenant_id"], second.tenant_id}
    assert listed["active_tenant_id"] == body["tenant_id"]

    switched = api_client.post(
        "/v1/auth/switch-company", json={"tenant_id": second.tenant_id}, headers=auth_header(token)
    )
    assert switched.status_code == 200
    assert switched.json()["tenant_id"] == second.tenant_id

    other = register(api_client, email="ivan@example.com").json()
    denied = api_client.post(
        "/v1/auth/switch-company", json={"tenant_id": other["tenant_id"]}, headers=auth_header(token)
    )
    assert denied.status_code == 403
    assert denied.json()["error"]["kind"] == "not_a_member"


def test_profile_update_and_change_password(api_client):
    token = register(api_client).json()["token"]
    updated = api_client.put(
        "/v1/auth/profile", json={"display_name": "Alice Cooper"}, headers=auth_header(token)
    )
    assert updated.status_code == 200
    assert updated.json()["display_name"] == "Alice Cooper"

    changed = api_client.post(
        "/v1/auth/change-password",
        json={"current_password": STRONG_PASSWORD, "new_password": "N3w!Passphrase#"},
        headers=auth_header(token),
    )
    assert changed.status_code == 204
    login = api_client.post("/v1/auth/login", json={"email": "alice@example.com", "password": "N3w!Passphrase#"})
    assert login.status_code == 200


def test_logout_and_security_events(api_client):
    token = register(api_client).json()["token"]
    assert api_client.post("/v1/auth/logout", headers=auth_header(token)).status_code == 204
    events = api_client.get("/v1/auth/security-events", params={"limit": 10}, headers=auth_header(token))
    assert events.status_code == 200
    types = [item["event_type"] for item in events.json()["items"]]
    assert "logout" in types and "registration_succeeded" in types

    bad_cursor = api_client.get(
        "/v1/auth/security-events", params={"cursor": "not-valid"}, headers=auth_header(token)
    )
    assert bad_cursor.status_code == 400
    assert bad_cursor.json()["error"]["kind"] == "bad_request"


def test_forwarded_address_is_recorded(api_client, store):
    api_client.post(
        "/v1/auth/login",
        json={"email": "nobody@example.com", "password": STRONG_PASSWORD},
        headers={"X-Forwarded-For": "192.0.2.10, 10.0.0.1", "User-Agent": "agent/1.0"},
    )
    event = store.events_of_type("login_failed")[0]
    assert event.source_address == "192.0.2.10"
    assert event.user_agent == "agent/1.0"


def test_public_rate_limit_returns_429(api_app, api_client):
    from .conftest import make_governor

    api_app.state.rate_governor = make_governor(public=2)
    payload = {"email": "nobody@example.com", "password": STRONG_PASSWORD}
    assert api_client.post("/v1/auth/login", json=payload).status_code == 401
    assert api_client.post("/v1/auth/login", json=payload).status_code == 401
    limited = api_client.post("/v1/auth/login", json=payload)
    assert limited.status_code == 429
    assert limited.json()["error"]["kind"] == "rate_limited"
    assert int(limited.headers["Retry-After"]) >= 1


def test_store_failure_is_a_generic_500(api_client, store, monkeypatch):
    from identity_service.errors import StoreError

    def broken(_email):
        raise StoreError("connection refused to 10.1.2.3")

    monkeypatch.setattr(store, "find_account_by_email", broken)
    response = api_client.post("/v1/auth/login", json={"email": "a@example.com", "password": STRONG_PASSWORD})
    assert response.status_code == 500
    assert response.json()["error"]["kind"] == "internal_error"
    assert "10.1.2.3" not in response.text


@pytest.mark.parametrize("path", ["/v1/auth/companies", "/v1/auth/security-events"])
def test_subject_rate_limit_applies_to_authenticated_routes(api_app, api_client, path):
    from .conftest import make_governor

    token = register(api_client).json()["token"]
    api_app.state.rate_governor = make_governor(subject=1)
    assert api_client.get(path, headers=auth_header(token)).status_code == 200
    assert api_client.get(path, headers=auth_header(token)).status_code == 429


def test_overlong_password_is_rejected_on_register_and_fails_login(api_client):
    overlong = "Aa1!" + "x" * 80
    response = api_client.post(
        "/v1/auth/register", json={"email": "long@example.com", "password": overlong, "display_name": "L"}
    )
    assert response.status_code == 422
    assert response.json()["error"]["kind"] == "validation_error"

    register(api_client)
    for email in ("alice@example.com", "ghost@example.com"):
        login = api_client.post("/v1/auth/login", json={"email": email, "password": STRONG_PASSWORD + "x" * 80})
        assert login.status_code == 401
        assert login.json()["error"]["kind"] == "invalid_credentials"


def test_forgot_and_reset_password_over_http(api_client, notifier):
    register(api_client)
    unknown = api_client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})
    accepted = api_client.post("/v1/auth/forgot-password", json={"email": "alice@example.com"})
    assert unknown.status_code == accepted.status_code == 202
    assert unknown.json() == accepted.json()
    [(email, reset_token)] = notifier.password_resets
    assert email == "alice@example.com"

    reset = api_client.post(
        "/v1/auth/reset-password", json={"token": reset_token, "new_password": "N3w!Passphrase#"}
    )
    assert reset.status_code == 204
    login = api_client.post("/v1/auth/login", json={"email": "alice@example.com", "password": "N3w!Passphrase#"})
    assert login.status_code == 200

    reused = api_client.post(
        "/v1/auth/reset-password", json={"token": reset_token, "new_password": "An0ther!Passphrase"}
    )
    assert reused.status_code == 400
    assert reused.json()["error"]["kind"] == "invalid_reset_token"


def test_create_company_invite_and_accept(api_client):
    alice = register(api_client).json()
    bob = register(api_client, email="bob@example.com").json()

    created = api_client.post(
        "/v1/auth/companies", json={"name": "Joint Venture"}, headers=auth_header(alice["token"])
    )
    assert created.status_code == 201
    company = created.json()
    assert (company["role"], company["status"], company["slug"]) == ("admin", "active", "joint-venture")

    invited = api_client.post(
        f"/v1/auth/companies/{company['tenant_id']}/invitations",
        json={"email": "bob@example.com", "role": "member"},
        headers=auth_header(alice["token"]),
    )
    assert invited.status_code == 201
    assert invited.json()["status"] == "pending"

    early = api_client.post(
        "/v1/auth/switch-company", json={"tenant_id": company["tenant_id"]}, headers=auth_header(bob["token"])
    )
    assert early.status_code == 403

    pending = api_client.get("/v1/auth/invitations", headers=auth_header(bob["token"])).json()
    assert [item["tenant_id"] for item in pending["items"]] == [company["tenant_id"]]

    accepted = api_client.post(
        f"/v1/auth/invitations/{company['tenant_id']}/accept", headers=auth_header(bob["token"])
    )
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "active"
    switched = api_client.post(
        "/v1/auth/switch-company", json={"tenant_id": company["tenant_id"]}, headers=auth_header(bob["token"])
    )
    assert switched.status_code == 200

    by_member = api_client.post(
        f"/v1/auth/companies/{bob['tenant_id']}/invitations",
        json={"email": "bob@example.com"},
        headers=auth_header(alice["token"]),
    )
    assert by_member.status_code == 403
    assert by_member.json()["error"]["kind"] == "insufficient_role"
