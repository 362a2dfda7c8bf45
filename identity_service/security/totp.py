"""Time-based one-time passwords, recovery codes, and 2FA secret sealing."""

from __future__ import annotations

import base64
import hashlib
import io
import secrets
import time
from dataclasses import dataclass
from typing import Callable

import pyotp
import qrcode
from cryptography.fernet import Fernet, InvalidToken

STEP_SECONDS = 30
DIGITS = 6
RECOVERY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


@dataclass(slots=True, frozen=True)
class TotpProvisioning:
    """Material handed to the user when 2FA setup begins."""

    secret: str
    provisioning_uri: str
    qr_code_data_uri: str


class SecretSealError(RuntimeError):
    """A sealed 2FA secret could not be decrypted with the configured key."""


def _derive_fernet_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode("utf-8")).digest())


def normalize_recovery_code(code: str) -> str:
    return code.replace("-", "").replace(" ", "").strip().upper()


def hash_recovery_code(code: str) -> str:
    """Return the SHA-256 hex digest stored for a recovery code."""
    return hashlib.sha256(normalize_recovery_code(code).encode("utf-8")).hexdigest()


def looks_like_totp_code(code: str) -> bool:
    candidate = code.strip()
    return len(candidate) == DIGITS and candidate.isdigit()


class TotpEngine:
    """TOTP generation and verification (30 second step, 6 digits, Base32 secrets).

    Secrets are stored sealed with Fernet so the credential store never holds
    a usable 2FA secret.
    """

    def __init__(
        self,
        *,
        issuer: str,
        encryption_key: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not encryption_key:
            raise ValueError("2FA encryption key must not be empty")
        self._issuer = issuer
        self._cipher = Fernet(_derive_fernet_key(encryption_key))
        self._clock = clock

    def generate_secret(self, account_label: str) -> TotpProvisioning:
        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret, digits=DIGITS, interval=STEP_SECONDS).provisioning_uri(
            name=account_label, issuer_name=self._issuer
        )
        return TotpProvisioning(secret=secret, provisioning_uri=uri, qr_code_data_uri=self._render_qr(uri))

    @staticmethod
    def _render_qr(uri: str) -> str:
        image = qrcode.make(uri)
        buffer = io.BytesIO()
        image.save(buffer)
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    def verify_code(self, secret: str, code: str, window: int = 1) -> bool:
        """Return ``True`` when ``code`` matches within ``window`` steps of now."""
        if not looks_like_totp_code(code):
            return False
        totp = pyotp.TOTP(secret, digits=DIGITS, interval=STEP_SECONDS)
        return totp.verify(code.strip(), for_time=int(self._clock()), valid_window=window)

    def current_code(self, secret: str) -> str:
        return pyotp.TOTP(secret, digits=DIGITS, interval=STEP_SECONDS).at(int(self._clock()))

    @staticmethod
    def generate_recovery_codes(n: int = 10) -> list[str]:
        """Return ``n`` single-use codes formatted ``XXXX-XXXX-XXXX``."""
        codes = []
        for _ in range(n):
            raw = "".join(secrets.choice(RECOVERY_CODE_ALPHABET) for _ in range(12))
            codes.append(f"{raw[:4]}-{raw[4:8]}-{raw[8:]}")
        return codes

    def seal(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode("utf-8")).decode("ascii")

    def unseal(self, sealed: str) -> str:
        try:
            return self._cipher.decrypt(sealed.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise SecretSealError("stored 2FA secret could not be decrypted") from exc
