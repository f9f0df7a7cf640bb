"""
Campaign lifecycle state machine.

    draft -> scheduled -> running <-> paused -> {completed, cancelled, failed}
    draft -> running
    scheduled | running | paused -> cancelled

completed, cancelled and failed are terminal.
"""

from typing import Dict, FrozenSet

from app.exceptions import InvalidStateError
from app.schemas.campaign import CampaignStatus

TRANSITIONS: Dict[CampaignStatus, FrozenSet[CampaignStatus]] = {
    CampaignStatus.DRAFT: frozenset({CampaignStatus.SCHEDULED, CampaignStatus.RUNNING}),
    CampaignStatus.SCHEDULED: frozenset({CampaignStatus.RUNNING, CampaignStatus.CANCELLED}),
    CampaignStatus.RUNNING: frozenset({
        CampaignStatus.PAUSED,
        CampaignStatus.COMPLETED,
        CampaignStatus.CANCELLED,
        CampaignStatus.FAILED,
    }),
    CampaignStatus.PAUSED: frozenset({
        CampaignStatus.RUNNING,
        CampaignStatus.CANCELLED,
        CampaignStatus.FAILED,
    }),
    CampaignStatus.COMPLETED: frozenset(),
    CampaignStatus.CANCELLED: frozenset(),
    CampaignStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in TRANSITIONS.items() if not targets
)


def can_transition(current: CampaignStatus, target: CampaignStatus) -> bool:
    return CampaignStatus(target) in TRANSITIONS[CampaignStatus(current)]


def transition(current: CampaignStatus, target: CampaignStatus) -> CampaignStatus:
    """Return ``target`` if the move is legal, otherwise raise InvalidStateError."""
    current = CampaignStatus(current)
    target = CampaignStatus(target)
    if target not in TRANSITIONS[current]:
        raise InvalidStateError(
            f"Campaign cannot move from {current.value} to {target.value}"
        )
    return target


def is_terminal(status: CampaignStatus) -> bool:
    return CampaignStatus(status) in TERMINAL_STATUSES
