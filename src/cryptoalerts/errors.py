# src/cryptoalerts/errors.py
from __future__ import annotations


class AlertError(Exception):
    """Base class for every error raised by the alert engine."""


class InvalidSample(AlertError):
    """Price sample is non-finite or negative. Nothing was mutated."""


class FeedUnavailable(AlertError):
    """Price could not be obtained for a market this tick."""

    def __init__(self, market: str, reason: str = ""):
        self.market = market
        self.reason = reason
        super().__init__(f"price feed unavailable for {market}: {reason}" if reason else market)


class PersistenceConflict(AlertError):
    """Write-back rejected: record changed or vanished since it was loaded."""

    def __init__(self, notification_id: str, reason: str = ""):
        self.notification_id = notification_id
        self.reason = reason
        super().__init__(f"cannot persist notification {notification_id}: {reason}")


class MalformedNotification(AlertError):
    """Record does not carry exactly one condition payload matching its kind."""

    def __init__(self, notification_id: str, reason: str):
        self.notification_id = notification_id
        self.reason = reason
        super().__init__(f"malformed notification {notification_id}: {reason}")


class DispatchError(AlertError):
    """Trigger event could not be handed to the delivery transport."""


class SchedulerStartError(AlertError):
    """The periodic driver could not be started."""
