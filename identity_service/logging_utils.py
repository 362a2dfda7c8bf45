"""Logging setup and redaction helpers."""

from __future__ import annotations

import hashlib
import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install the process-wide log handler once."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("identity_service").setLevel(level)


def email_fingerprint(email: str | None) -> str:
    """Return a short, stable hash of an email address for log lines."""
    if not email:
        return "-"
    return hashlib.sha256(email.strip().lower().encode("utf-8")).hexdigest()[:12]
