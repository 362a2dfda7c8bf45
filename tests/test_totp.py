"""Tests for TOTP verification, recovery codes, and secret sealing."""

from __future__ import annotations

import re

import pyotp
import pytest

from identity_service.security.totp import (
    SecretSealError,
    TotpEngine,
    hash_recovery_code,
    normalize_recovery_code,
)


def test_generate_secret_provisions_uri_and_qr(totp):
    provisioning = totp.generate_secret("alice@example.com")
    assert len(provisioning.secret) >= 16
    assert provisioning.provisioning_uri.startswith("otpauth://totp/")
    assert "issuer=Workspace%20Test" in provisioning.provisioning_uri
    assert provisioning.qr_code_data_uri.startswith("data:image/png;base64,")


def test_current_code_verifies(totp):
    secret = pyotp.random_base32()
    assert totp.verify_code(secret, totp.current_code(secret))


def test_adjacent_step_is_accepted_but_older_is_not(totp, clock):
    secret = pyotp.random_base32()
    code = totp.current_code(secret)
    clock.advance(30)
    assert totp.verify_code(secret, code)
    clock.advance(60)
    assert not totp.verify_code(secret, code)


@pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef"])
def test_malformed_codes_are_rejected(totp, code):
    assert not totp.verify_code(pyotp.random_base32(), code)


def test_recovery_codes_are_unique_and_formatted():
    codes = TotpEngine.generate_recovery_codes(10)
    assert len(set(codes)) == 10
    assert all(re.fullmatch(r"[A-Z2-9]{4}-[A-Z2-9]{4}-[A-Z2-9]{4}", code) for code in codes)


def test_recovery_code_hash_ignores_formatting():
    assert normalize_recovery_code(" abcd-efgh-jkmn ") == "ABCDEFGHJKMN"
    assert hash_recovery_code("abcd-efgh-jkmn") == hash_recovery_code("ABCDEFGHJKMN")


def test_seal_round_trip_and_wrong_key(totp, clock):
    sealed = totp.seal("JBSWY3DPEHPK3PXP")
    assert "JBSWY3DPEHPK3PXP" not in sealed
    assert totp.unseal(sealed) == "JBSWY3DPEHPK3PXP"
    other = TotpEngine(issuer="x", encryption_key="different-key", clock=clock.time)
    with pytest.raises(SecretSealError):
        other.unseal(sealed)
