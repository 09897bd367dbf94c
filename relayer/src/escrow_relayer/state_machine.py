import logging
from typing import Iterable

from .db import EscrowEventType, EscrowStatus

TERMINAL_STATUSES = frozenset({EscrowStatus.WITHDRAWN, EscrowStatus.CANCELLED, EscrowStatus.RESCUED})

# (current status, lifecycle event) -> next status
TRANSITIONS = {
    (EscrowStatus.PENDING, EscrowEventType.FUNDS_CLAIMED): EscrowStatus.WITHDRAWN,
    (EscrowStatus.PENDING, EscrowEventType.ORDER_CANCELLED): EscrowStatus.CANCELLED,
    (EscrowStatus.FUNDED, EscrowEventType.FUNDS_CLAIMED): EscrowStatus.WITHDRAWN,
    (EscrowStatus.FUNDED, EscrowEventType.ORDER_CANCELLED): EscrowStatus.CANCELLED,
}


class EscrowStateMachine:
    """
    pending/funded --withdrawal--> withdrawn
    pending/funded --cancellation--> cancelled
    any            --rescue------> rescued
    """

    def __init__(self):
        self.log = logging.getLogger("FSM")

    def next_status(self, current: EscrowStatus, event_type: EscrowEventType) -> EscrowStatus:
        if event_type == EscrowEventType.FUNDS_RESCUED:
            return EscrowStatus.RESCUED
        if event_type == EscrowEventType.ESCROW_CREATED:
            return current
        nxt = TRANSITIONS.get((current, event_type))
        if nxt is None:
            self.log.info(f"Ignoring {event_type.value} for escrow already {current.value}")
            return current
        return nxt

    def replay(self, initial: EscrowStatus, event_types: Iterable[EscrowEventType]) -> EscrowStatus:
        """Fold recorded lifecycle events over a starting status."""
        status = initial
        for event_type in event_types:
            status = self.next_status(status, event_type)
        return status
