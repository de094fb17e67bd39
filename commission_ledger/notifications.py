"""
Best-effort notification port.

The ledger hands events to a dispatcher after a transition has committed.
Delivery (push, email, in-app) belongs to the dispatcher; a failed delivery
is logged and reported back in a DeliveryResult, never raised.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Protocol

from .models import DeliveryResult

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    COMMISSION_EARNED = "commission_earned"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_APPROVED = "withdrawal_approved"
    WITHDRAWAL_REJECTED = "withdrawal_rejected"
    BALANCE_UPDATED = "balance_updated"


@dataclass
class LedgerEvent:
    type: NotificationType
    affiliate_id: str
    amount: Decimal
    context: dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher(Protocol):
    def send(self, event: LedgerEvent) -> None:
        ...


class LoggingDispatcher:
    def send(self, event: LedgerEvent) -> None:
        logger.info(
            "Notification %s for affiliate %s: amount=%s context=%s",
            event.type.value, event.affiliate_id, event.amount, event.context,
        )


class InMemoryDispatcher:
    def __init__(self):
        self.events: list[LedgerEvent] = []

    def send(self, event: LedgerEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: NotificationType) -> list[LedgerEvent]:
        return [e for e in self.events if e.type == event_type]


def dispatch(dispatcher: NotificationDispatcher, events: Iterable[LedgerEvent]) -> list[DeliveryResult]:
    results = []
    for event in events:
        try:
            dispatcher.send(event)
        except Exception as e:
            logger.exception(
                "Failed to deliver %s notification for affiliate %s",
                event.type.value, event.affiliate_id,
            )
            results.append(DeliveryResult(event_type=event.type.value, delivered=False, error=str(e)))
        else:
            results.append(DeliveryResult(event_type=event.type.value, delivered=True))
    return results
