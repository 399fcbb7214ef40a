"""Dispatcher core: reconciliation engine and the components it owns."""

from dispatcher.core.clock import Clock, FakeClock, SystemClock
from dispatcher.core.engine import ActivityReport, Outcome, ReconciliationEngine
from dispatcher.core.errors import (
    DispatcherError,
    MalformedNotificationError,
    RecordSystemError,
    TransientRecordError,
    WebhookAuthError,
)
from dispatcher.core.notifications import Notification, parse_notification

__all__ = [
    "ActivityReport",
    "Clock",
    "DispatcherError",
    "FakeClock",
    "MalformedNotificationError",
    "Notification",
    "Outcome",
    "ReconciliationEngine",
    "RecordSystemError",
    "SystemClock",
    "TransientRecordError",
    "WebhookAuthError",
    "parse_notification",
]
