"""Gateway payment status codes mapped to domain payment states."""

import re
from enum import Enum

_INTEGER = re.compile(r"-?[0-9]+")


class PaymentState(str, Enum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    DECLINED = "declined"
    WAITING_FOR_SETTLEMENT = "waiting_for_settlement"
    SETTLED = "settled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    UNKNOWN = "unknown"


STATUS_CODES: dict[int, PaymentState] = {
    1: PaymentState.CREATED,
    2: PaymentState.IN_PROGRESS,
    4: PaymentState.CONFIRMED,
    5: PaymentState.CANCELLED,
    6: PaymentState.DECLINED,
    7: PaymentState.WAITING_FOR_SETTLEMENT,
    8: PaymentState.SETTLED,
    9: PaymentState.REFUNDED,
    10: PaymentState.PARTIALLY_REFUNDED,
}

# Only these authorize an inventory decrement.
SUCCESSFUL_STATES = frozenset({PaymentState.CONFIRMED, PaymentState.SETTLED})
FAILED_TERMINAL_STATES = frozenset({PaymentState.CANCELLED, PaymentState.DECLINED})
# What a caller polling for an outcome waits for. UNKNOWN is never in here.
COMPLETE_STATES = SUCCESSFUL_STATES | FAILED_TERMINAL_STATES


def map_payment_status(code) -> PaymentState:
    """Translate a gateway `paymentStatus` into a domain state; total over all inputs."""

    if isinstance(code, bool):
        return PaymentState.UNKNOWN
    if isinstance(code, str):
        # Callback query strings deliver the code as text.
        if not _INTEGER.fullmatch(code.strip()):
            return PaymentState.UNKNOWN
        code = int(code)
    if not isinstance(code, int):
        return PaymentState.UNKNOWN
    return STATUS_CODES.get(code, PaymentState.UNKNOWN)


def is_successful(state: PaymentState) -> bool:
    return state in SUCCESSFUL_STATES


def is_complete(state: PaymentState) -> bool:
    return state in COMPLETE_STATES
