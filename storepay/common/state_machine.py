"""Order lifecycle transitions enforced by the reconciliation engine."""

from storepay.common.errors import InvalidTransition

INITIATED = "initiated"
IN_PROGRESS = "in_progress"
CONFIRMED = "confirmed"
DECLINED = "declined"
CANCELLED = "cancelled"
SETTLED = "settled"
REFUNDED = "refunded"
PARTIALLY_REFUNDED = "partially_refunded"

ORDER_STATUSES = (
    INITIATED,
    IN_PROGRESS,
    CONFIRMED,
    DECLINED,
    CANCELLED,
    SETTLED,
    REFUNDED,
    PARTIALLY_REFUNDED,
)

# Forward jumps are legal: a poll can miss intermediate gateway states.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    INITIATED: {IN_PROGRESS, CONFIRMED, DECLINED, CANCELLED, SETTLED, REFUNDED, PARTIALLY_REFUNDED},
    IN_PROGRESS: {CONFIRMED, DECLINED, CANCELLED, SETTLED, REFUNDED, PARTIALLY_REFUNDED},
    CONFIRMED: {SETTLED, REFUNDED, PARTIALLY_REFUNDED},
    SETTLED: {REFUNDED, PARTIALLY_REFUNDED},
    PARTIALLY_REFUNDED: {REFUNDED},
    DECLINED: set(),
    CANCELLED: set(),
    REFUNDED: set(),
}

# Order statuses in which the purchased goods are paid for.
PAID_STATUSES = frozenset({CONFIRMED, SETTLED})
# Statuses the sweep keeps checking with the gateway.
IN_FLIGHT_STATUSES = frozenset({INITIATED, IN_PROGRESS, CONFIRMED})


def can_transition(current: str, new: str) -> bool:
    """Return whether `current -> new` is a legal forward move."""

    return new in ALLOWED_TRANSITIONS.get(current, set())


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if not can_transition(current, new):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")
