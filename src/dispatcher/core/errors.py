"""Exception hierarchy for the dispatcher."""

from __future__ import annotations


class DispatcherError(Exception):
    """Root exception for all dispatcher domain errors."""


class RecordSystemError(DispatcherError):
    """A record-system call failed or returned ``success: false``."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TransientRecordError(RecordSystemError):
    """Network failure, rate limit, or 5xx. Safe to retry."""


class WebhookAuthError(DispatcherError):
    """Inbound notification carried a missing or mismatched shared key."""


class MalformedNotificationError(DispatcherError):
    """Inbound notification body could not be interpreted."""
