"""
Per-message delivery status.

Statuses only move forward along pending -> sent -> delivered -> opened ->
clicked. bounced, complained, unsubscribed and failed are terminal: once
reached, later signals never change the status.
"""

from typing import Iterable, Optional

from app.schemas.tracking import DeliveryEventType, DeliveryStatus

_PROGRESSION = {
    DeliveryStatus.PENDING: 0,
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.OPENED: 3,
    DeliveryStatus.CLICKED: 4,
}

TERMINAL_DELIVERY_STATUSES = frozenset({
    DeliveryStatus.BOUNCED,
    DeliveryStatus.COMPLAINED,
    DeliveryStatus.UNSUBSCRIBED,
    DeliveryStatus.FAILED,
})

EVENT_STATUS = {
    DeliveryEventType.SENT: DeliveryStatus.SENT,
    DeliveryEventType.DELIVERED: DeliveryStatus.DELIVERED,
    DeliveryEventType.OPENED: DeliveryStatus.OPENED,
    DeliveryEventType.CLICKED: DeliveryStatus.CLICKED,
    DeliveryEventType.BOUNCED: DeliveryStatus.BOUNCED,
    DeliveryEventType.COMPLAINED: DeliveryStatus.COMPLAINED,
    DeliveryEventType.UNSUBSCRIBED: DeliveryStatus.UNSUBSCRIBED,
}


def advance(current: Optional[DeliveryStatus], new: DeliveryStatus) -> DeliveryStatus:
    if current is None:
        return new
    if current in TERMINAL_DELIVERY_STATUSES:
        return current
    if new in TERMINAL_DELIVERY_STATUSES:
        return new
    return new if _PROGRESSION[new] > _PROGRESSION[current] else current


def fold_events(event_types: Iterable[DeliveryEventType]) -> Optional[DeliveryStatus]:
    """Derive the status from the events of one message, in any order."""
    status = None
    for event_type in event_types:
        status = advance(status, EVENT_STATUS[DeliveryEventType(event_type)])
    return status
