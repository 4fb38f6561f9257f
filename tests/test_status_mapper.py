"""Gateway status code to payment state mapping."""

from storepay.services.gateway.status import (
    COMPLETE_STATES,
    STATUS_CODES,
    PaymentState,
    is_complete,
    is_successful,
    map_payment_status,
)


def test_every_byte_value_maps_to_a_state():
    """Any code, documented or not, yields a defined state."""

    for code in range(0, 256):
        state = map_payment_status(code)
        assert isinstance(state, PaymentState)
        if code not in STATUS_CODES:
            assert state is PaymentState.UNKNOWN


def test_documented_codes():
    """Each documented paymentStatus maps to its state."""

    assert map_payment_status(1) is PaymentState.CREATED
    assert map_payment_status(4) is PaymentState.CONFIRMED
    assert map_payment_status(6) is PaymentState.DECLINED
    assert map_payment_status(7) is PaymentState.WAITING_FOR_SETTLEMENT
    assert map_payment_status(10) is PaymentState.PARTIALLY_REFUNDED


def test_odd_inputs_are_unknown():
    """Unrecognized inputs map to unknown."""

    for code in (-1, -255, 3, 11, 10_000, None, 4.0, True, "", "abc", "--4", "4.0"):
        assert map_payment_status(code) is PaymentState.UNKNOWN


def test_textual_codes_from_callbacks():
    """Numeric strings from callbacks map like numbers."""

    assert map_payment_status("4") is PaymentState.CONFIRMED
    assert map_payment_status(" 8 ") is PaymentState.SETTLED


def test_complete_and_successful_sets():
    """Complete and successful states are the documented sets."""

    assert COMPLETE_STATES == {
        PaymentState.CONFIRMED,
        PaymentState.SETTLED,
        PaymentState.CANCELLED,
        PaymentState.DECLINED,
    }
    assert is_successful(PaymentState.SETTLED)
    assert not is_successful(PaymentState.WAITING_FOR_SETTLEMENT)
    assert not is_complete(PaymentState.UNKNOWN)
    assert not is_complete(PaymentState.IN_PROGRESS)
