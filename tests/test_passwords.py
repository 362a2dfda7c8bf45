"""Tests for bcrypt hashing and the password policy."""

from __future__ import annotations

import pytest

from identity_service.errors import HashFormatError
from identity_service.security.passwords import MAX_PASSWORD_BYTES, validate_password_policy

from .conftest import STRONG_PASSWORD


def test_hash_and_verify_round_trip(hasher):
    digest = hasher.hash(STRONG_PASSWORD)
    assert digest != STRONG_PASSWORD
    assert digest.startswith("$2")
    assert hasher.verify(STRONG_PASSWORD, digest)
    assert not hasher.verify("Wr0ngP@ssw0rd!!", digest)


def test_hash_is_salted(hasher):
    assert hasher.hash(STRONG_PASSWORD) != hasher.hash(STRONG_PASSWORD)


@pytest.mark.parametrize("digest", ["", "plaintext", "$2b$04$tooshort", "sha256:abcdef"])
def test_verify_rejects_non_bcrypt_digest(hasher, digest):
    with pytest.raises(HashFormatError):
        hasher.verify(STRONG_PASSWORD, digest)


def test_dummy_verify_does_not_raise(hasher):
    hasher.dummy_verify("anything at all")


def test_verify_treats_overlong_password_as_mismatch(hasher):
    digest = hasher.hash(STRONG_PASSWORD)
    overlong = STRONG_PASSWORD + "x" * MAX_PASSWORD_BYTES
    assert not hasher.verify(overlong, digest)
    hasher.dummy_verify(overlong)


def test_policy_caps_password_at_72_bytes():
    assert validate_password_policy("Aa1!" + "x" * 80) == ["max_length"]
    # The euro sign is three bytes in UTF-8.
    assert "max_length" not in validate_password_policy("Aa1!" + "\u20ac" * 22 + "x")
    assert "max_length" in validate_password_policy("Aa1!" + "\u20ac" * 23)


def test_strong_password_passes_policy():
    assert validate_password_policy(STRONG_PASSWORD) == []


@pytest.mark.parametrize(
    ("password", "rule"),
    [
        ("Sh0rt!pw", "min_length"),
        ("lowercase0nly!!!", "uppercase"),
        ("UPPERCASE0NLY!!!", "lowercase"),
        ("NoDigitsHere!!!!", "digit"),
        ("NoSymbolsHere123", "symbol"),
        ("Has Space 123!abc", "whitespace"),
        ("MyQwerty!Vault9", "common_pattern"),
        ("Xx123456!abcdefg", "common_pattern"),
    ],
)
def test_policy_reports_failed_rule(password, rule):
    assert rule in validate_password_policy(password)
