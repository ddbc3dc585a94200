"""
Notification collaborator.

Economic events (welcome grant, subscription start/upgrade, coin purchase) are
announced after their transaction commits. Delivery is fire-and-forget: a
failing notifier is logged and never undoes the coins already moved.
"""
import logging
from typing import Any, Dict, Optional, Protocol

from gigcoins.core.logging import log_event

logger = logging.getLogger("gigcoins.notifications")

WELCOME_GRANT = "welcome_grant"
SUBSCRIPTION_STARTED = "subscription_started"
SUBSCRIPTION_UPGRADED = "subscription_upgraded"
COINS_PURCHASED = "coins_purchased"


class Notifier(Protocol):
    def notify(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Default notifier: writes the event to the log."""

    def notify(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        log_event("info", f"notify.{event}", user_id=user_id, event_type=event, extra=payload)


def notify_safely(notifier: Optional[Notifier], user_id: str, event: str, payload: Optional[Dict[str, Any]] = None) -> bool:
    """Deliver a notification; returns False (after logging) if delivery failed."""
    if notifier is None:
        return False
    try:
        notifier.notify(user_id, event, payload or {})
        return True
    except Exception as e:
        logger.warning(
            "notification failed",
            exc_info=True,
            extra={"user_id": user_id, "event_type": event, "error_code": type(e).__name__},
        )
        return False
