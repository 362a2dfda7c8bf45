"""Outbound notification hooks (welcome, lockout, and password-reset emails)."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

from .logging_utils import email_fingerprint

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send_welcome(self, email: str, name: str) -> None: ...

    def send_lockout_notice(self, email: str) -> None: ...

    def send_password_reset(self, email: str, token: str) -> None: ...


class LoggingNotifier:
    """Default sink used when no email provider is wired in."""

    def send_welcome(self, email: str, name: str) -> None:
        logger.info("welcome notification queued for %s", email_fingerprint(email))

    def send_lockout_notice(self, email: str) -> None:
        logger.info("lockout notification queued for %s", email_fingerprint(email))

    def send_password_reset(self, email: str, token: str) -> None:
        logger.info("password reset notification queued for %s", email_fingerprint(email))


class BackgroundNotifier:
    """Fire-and-forget wrapper: deliveries run on a worker pool and never raise."""

    def __init__(self, delegate: Notifier, *, max_workers: int = 2) -> None:
        self._delegate = delegate
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def send_welcome(self, email: str, name: str) -> None:
        self._submit("welcome", self._delegate.send_welcome, email, name)

    def send_lockout_notice(self, email: str) -> None:
        self._submit("lockout", self._delegate.send_lockout_notice, email)

    def send_password_reset(self, email: str, token: str) -> None:
        self._submit("password_reset", self._delegate.send_password_reset, email, token)

    def _submit(self, kind: str, fn, *args) -> None:
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError:
            logger.warning("notification executor shut down; dropped %s notification", kind)
            return
        future.add_done_callback(lambda done: self._log_failure(kind, done))

    @staticmethod
    def _log_failure(kind: str, future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("%s notification failed", kind, exc_info=exc)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
