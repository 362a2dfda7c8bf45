"""Password hashing and password policy checks."""

from __future__ import annotations

import re

import bcrypt

from ..errors import HashFormatError

_BCRYPT_DIGEST = re.compile(r"^\$2[abxy]?\$(\d{2})\$[./A-Za-z0-9]{53}$")
_SYMBOLS = set("!@#$%^&*()_+-=[]{};':\"\\|,.<>/?`~")

MIN_PASSWORD_LENGTH = 12
# bcrypt only digests the first 72 bytes and bcrypt 5 rejects longer input.
MAX_PASSWORD_BYTES = 72
COMMON_PASSWORD_FRAGMENTS = ("123456", "password", "qwerty", "abc123", "password123")


class PasswordHasher:
    """Adaptive, salted password hashing backed by bcrypt.

    Parameters
    ----------
    rounds:
        bcrypt cost factor. 12 keeps a single verification around 100ms on
        current server hardware; tests use the minimum of 4.
    """

    def __init__(self, rounds: int = 12) -> None:
        self._rounds = rounds
        # Verified against when the account does not exist, so an unknown
        # email costs the same as a wrong password.
        self._dummy_digest = self.hash("identity-service-timing-equalizer")

    def hash(self, plaintext: str) -> str:
        """Return a bcrypt digest of ``plaintext``.

        Callers run :func:`validate_password_policy` first, which rejects
        passwords longer than ``MAX_PASSWORD_BYTES``.
        """
        return bcrypt.hashpw(plaintext.encode("utf-8"), bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")

    def verify(self, plaintext: str, digest: str) -> bool:
        """Return ``True`` when ``plaintext`` matches ``digest``.

        Raises
        ------
        HashFormatError
            When ``digest`` is not a bcrypt hash.
        """
        if not isinstance(digest, str) or not _BCRYPT_DIGEST.match(digest):
            raise HashFormatError("stored password digest is not a bcrypt hash")
        encoded = plaintext.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            # No accepted password is this long, so it cannot match.
            return False
        try:
            return bcrypt.checkpw(encoded, digest.encode("utf-8"))
        except ValueError as exc:
            raise HashFormatError("stored password digest could not be parsed") from exc

    def dummy_verify(self, plaintext: str) -> None:
        self.verify(plaintext, self._dummy_digest)


def validate_password_policy(password: str) -> list[str]:
    """Return the names of the policy rules ``password`` fails (empty when it passes)."""
    failures: list[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        failures.append("min_length")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        failures.append("max_length")
    if not any(ch.isupper() for ch in password):
        failures.append("uppercase")
    if not any(ch.islower() for ch in password):
        failures.append("lowercase")
    if not any(ch.isdigit() for ch in password):
        failures.append("digit")
    if not any(ch in _SYMBOLS for ch in password):
        failures.append("symbol")
    if any(ch.isspace() for ch in password):
        failures.append("whitespace")
    lowered = password.lower()
    if any(fragment in lowered for fragment in COMMON_PASSWORD_FRAGMENTS):
        failures.append("common_pattern")
    return failures
