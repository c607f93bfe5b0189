"""State machine validation for refund requests and event surge status."""

from shared.errors import InvalidStateError
from shared.models import (
    RefundStatus, SurgeStatus,
    REFUND_TRANSITIONS, SURGE_TRANSITIONS,
)


class InvalidTransitionError(InvalidStateError):
    def __init__(self, entity_type: str, current: str, target: str):
        self.entity_type = entity_type
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid {entity_type} transition: {current} -> {target}"
        )


def validate_refund_transition(current: str, target: str) -> bool:
    current_state = RefundStatus(current)
    target_state = RefundStatus(target)
    allowed = REFUND_TRANSITIONS.get(current_state, [])
    if target_state not in allowed:
        raise InvalidTransitionError("refund", current, target)
    return True


def validate_surge_transition(current: str, target: str) -> bool:
    current_state = SurgeStatus(current)
    target_state = SurgeStatus(target)
    allowed = SURGE_TRANSITIONS.get(current_state, [])
    if target_state not in allowed:
        raise InvalidTransitionError("surge", current, target)
    return True


def is_terminal_refund_status(status: str) -> bool:
    return not REFUND_TRANSITIONS.get(RefundStatus(status))
