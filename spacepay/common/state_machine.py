"""Payment state machine shared by every writer of payment status."""

from enum import Enum

from spacepay.common.errors import InvalidTransition


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PaymentType(str, Enum):
    DEPOSIT = "DEPOSIT"
    BOOKING_FEE = "BOOKING_FEE"
    RENT = "RENT"


TERMINAL_STATUSES: frozenset[str] = frozenset(
    {PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value, PaymentStatus.CANCELLED.value}
)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"PROCESSING", "FAILED", "CANCELLED"},
    "PROCESSING": {"COMPLETED", "FAILED", "CANCELLED"},
    "COMPLETED": set(),
    "FAILED": set(),
    "CANCELLED": set(),
}

# Higher rank wins when two terminal signals disagree.
TERMINAL_PRECEDENCE: dict[str, int] = {"COMPLETED": 2, "FAILED": 1, "CANCELLED": 0}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def validate_transition(current: str, new: str) -> None:
    """Raise when a non-terminal transition is not allowed.

    Terminal sources are not checked here; the store turns those into recorded
    conflicts instead of errors.
    """

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}", current=current, new=new)
