"""End-to-end reconciliation against the signing fake gateway and a SQLite ledger."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from storepay.common.errors import GatewayRejected, InsufficientStock, SignatureInvalid, StatusCheckTimeout
from storepay.common.events import INVENTORY_ADJUSTMENT_FAILED, ORDER_STATUS_CHANGED
from storepay.services.gateway.messages import Cart, CartItem, Customer
from storepay.services.gateway.status import PaymentState
from storepay.services.orders.ledger import ADJUSTMENT_APPLIED, ADJUSTMENT_FAILED
from storepay.services.orders.models import OutboxEvent

CUSTOMER = Customer(email="jana@example.cz", name="Jana Novakova")


def _cart(*lines):
    lines = lines or (("prod-x", 2, "94.75"),)
    return Cart(
        items=[
            CartItem(product_id=product_id, name=product_id.title(), quantity=quantity, price=Decimal(price))
            for product_id, quantity, price in lines
        ]
    )


def _checkout(engine, *lines):
    return asyncio.run(engine.checkout(_cart(*lines), CUSTOMER))


def _outbox_types(session_factory):
    with session_factory() as db:
        return db.execute(select(OutboxEvent.event_type)).scalars().all()


def test_checkout_initiates_order(engine, ledger, gateway):
    """189.50 goes out as 18950 and the order sits in initiated with its payId."""

    result = _checkout(engine)

    assert gateway.requests[0]["body"]["totalAmount"] == 18950
    assert result.order_no == "GF2610190001"
    assert result.pay_id == "pay00001"
    assert result.payment_url == "https://gateway.test/payment/gateway/pay00001"
    order = ledger.find_by_order_no("GF2610190001")
    assert order.status == "initiated"
    assert order.pay_id == "pay00001"
    assert order.total_amount == 18950
    assert order.total_amount_major == Decimal("189.50")
    assert order.payment_method == "Card Gateway"


def test_confirmed_status_decrements_stock_once(engine, ledger, gateway, inventory):
    """Confirmation moves the order and takes the ordered quantities off stock."""

    result = _checkout(engine)
    gateway.statuses[result.pay_id] = [4]

    check = asyncio.run(engine.refresh_status(result.pay_id))

    assert check.reconciliation.status == "confirmed"
    assert check.reconciliation.inventory_adjusted
    assert inventory.stock["prod-x"] == 8
    assert inventory.writes == [("prod-x", 8, 2)]
    assert ledger.get_adjustment(result.order_id).status == ADJUSTMENT_APPLIED
    assert [entry.to_status for entry in ledger.timeline(result.order_id)] == ["initiated", "confirmed"]
    assert ORDER_STATUS_CHANGED in _outbox_types(ledger.session_factory)


def test_duplicate_confirmed_webhook_decrements_once(engine, gateway, inventory):
    """A repeated confirmation callback does not decrement again."""

    result = _checkout(engine)
    fields = gateway.signed_fields(result.pay_id, 4)

    first = asyncio.run(engine.apply_notification(dict(fields)))
    second = asyncio.run(engine.apply_notification(dict(fields)))

    assert first.reconciliation.inventory_adjusted
    assert not second.reconciliation.inventory_adjusted
    assert not second.reconciliation.changed
    assert inventory.stock["prod-x"] == 8


def test_confirmed_twice_then_settled_decrements_once(engine, ledger, gateway, inventory):
    """Confirmed, confirmed, settled still decrements once."""

    result = _checkout(engine)
    gateway.statuses[result.pay_id] = [4, 4, 8]

    for _ in range(3):
        asyncio.run(engine.refresh_status(result.pay_id))

    assert ledger.get(result.order_id).status == "settled"
    assert len(inventory.writes) == 1
    assert inventory.stock["prod-x"] == 8


def test_declined_status_leaves_inventory_alone(engine, ledger, gateway, inventory):
    """A declined payment leaves stock untouched."""

    result = _checkout(engine)
    gateway.statuses[result.pay_id] = [6]

    check = asyncio.run(engine.refresh_status(result.pay_id))

    assert check.reconciliation.status == "declined"
    assert ledger.get(result.order_id).status == "declined"
    assert inventory.writes == []
    assert ledger.get_adjustment(result.order_id) is None


def test_forged_response_changes_nothing(engine, ledger, gateway, inventory):
    """An unverifiable answer changes neither order nor stock."""

    result = _checkout(engine)
    gateway.statuses[result.pay_id] = [4]
    gateway.tamper = {"resultMessage": "OK, trust me"}

    with pytest.raises(SignatureInvalid):
        asyncio.run(engine.refresh_status(result.pay_id))

    assert ledger.get(result.order_id).status == "initiated"
    assert inventory.stock["prod-x"] == 10


def test_insufficient_stock_stops_before_gateway(engine, ledger, gateway):
    """Checkout fails before any gateway call when stock is short."""

    with pytest.raises(InsufficientStock) as excinfo:
        _checkout(engine, ("prod-x", 11, "10.00"), ("prod-z", 1, "5.00"))

    shortfalls = {s.product_id: (s.requested, s.available) for s in excinfo.value.shortfalls}
    assert shortfalls == {"prod-x": (11, 10), "prod-z": (1, 0)}
    assert gateway.requests == []
    assert ledger.find_by_order_no("GF2610190001") is None


def test_repeated_product_lines_are_checked_together(engine):
    """Lines for the same product are summed before the stock check."""

    with pytest.raises(InsufficientStock):
        _checkout(engine, ("prod-y", 3, "1.00"), ("prod-y", 3, "1.00"))


def test_failed_init_keeps_order_for_audit(engine, ledger, gateway):
    """An order whose init failed stays stored."""

    gateway.result_code = 120

    with pytest.raises(GatewayRejected):
        _checkout(engine)

    order = ledger.find_by_order_no("GF2610190001")
    assert order.status == "initiated"
    assert order.pay_id is None


def test_inventory_failure_is_a_warning(engine, ledger, gateway, inventory):
    """Status stays confirmed; the failing line is reported, the other line still applies."""

    inventory.failing = {"prod-y"}
    result = _checkout(engine, ("prod-x", 2, "10.00"), ("prod-y", 1, "20.00"))
    gateway.statuses[result.pay_id] = [4]

    check = asyncio.run(engine.refresh_status(result.pay_id))

    assert check.reconciliation.status == "confirmed"
    assert len(check.reconciliation.warnings) == 1
    warning = check.reconciliation.warnings[0]
    assert warning.order_no == result.order_no
    assert [line["productId"] for line in warning.lines] == ["prod-y"]
    assert inventory.stock == {"prod-x": 8, "prod-y": 5}
    assert ledger.get_adjustment(result.order_id).status == ADJUSTMENT_FAILED
    assert INVENTORY_ADJUSTMENT_FAILED in _outbox_types(ledger.session_factory)


def test_stale_report_is_ignored(engine, ledger, gateway):
    """A report older than the current state does not move the order back."""

    result = _checkout(engine)
    gateway.statuses[result.pay_id] = [8]
    asyncio.run(engine.refresh_status(result.pay_id))

    late = asyncio.run(engine.apply_notification(gateway.signed_fields(result.pay_id, 2)))

    assert late.reconciliation.ignored
    assert ledger.get(result.order_id).status == "settled"


def test_waiting_for_settlement_does_not_move_order(engine, ledger, gateway):
    """Waiting for settlement leaves the order where it is."""

    result = _checkout(engine)
    gateway.statuses[result.pay_id] = [7]

    check = asyncio.run(engine.refresh_status(result.pay_id))

    assert check.status.state is PaymentState.WAITING_FOR_SETTLEMENT
    assert not check.reconciliation.changed
    assert ledger.get(result.order_id).status == "initiated"


def test_concurrent_writer_is_retried(engine, ledger):
    """A status write that loses the version race reloads and re-decides."""

    result = _checkout(engine)
    stale = ledger.get(result.order_id)
    ledger.update_status(ledger.get(result.order_id), "in_progress", "other-worker")

    outcome = asyncio.run(engine.apply_status(stale, PaymentState.CONFIRMED))

    assert outcome.changed
    assert ledger.get(result.order_id).status == "confirmed"
    assert ledger.get(result.order_id).state_version == 2


def test_polling_returns_once_complete(engine, gateway, sleeps):
    """Polling stops at the first final state."""

    result = _checkout(engine)
    gateway.statuses[result.pay_id] = [2, 2, 4]

    check = asyncio.run(engine.await_terminal_status(result.pay_id))

    assert check.status.state is PaymentState.CONFIRMED
    assert sleeps == [2.0, 2.0]


def test_polling_timeout_leaves_order_pending(engine, ledger, gateway, sleeps):
    """Running out of attempts times out without touching the order."""

    result = _checkout(engine)
    gateway.statuses[result.pay_id] = [2]

    with pytest.raises(StatusCheckTimeout) as excinfo:
        asyncio.run(engine.await_terminal_status(result.pay_id))

    assert excinfo.value.attempts == 3
    assert excinfo.value.last_state == "in_progress"
    assert len(sleeps) == 2
    assert ledger.get(result.order_id).status == "in_progress"


def test_polling_survives_transport_errors(engine, gateway):
    """Transport errors count as attempts and polling carries on."""

    result = _checkout(engine)
    gateway.statuses[result.pay_id] = [6]
    gateway.transport_failures = 1

    check = asyncio.run(engine.await_terminal_status(result.pay_id))

    assert check.reconciliation.status == "declined"


def test_polling_aborts_on_rejection(engine, gateway, sleeps):
    """A gateway refusal ends polling at once."""

    result = _checkout(engine)
    gateway.result_code = 140

    with pytest.raises(GatewayRejected):
        asyncio.run(engine.await_terminal_status(result.pay_id))
    assert sleeps == []


def test_sweep_reconciles_in_flight_orders(engine, ledger, gateway, inventory):
    """The sweep pulls fresh status for orders still in flight."""

    first = _checkout(engine)
    second = _checkout(engine, ("prod-y", 1, "3.00"))
    gateway.statuses[first.pay_id] = [4]
    gateway.statuses[second.pay_id] = [5]

    report = asyncio.run(engine.sweep_in_flight())

    assert second.order_no == "GF2610190002"
    assert report.checked == 2
    assert {u["orderNo"]: u["status"] for u in report.updated} == {
        first.order_no: "confirmed",
        second.order_no: "cancelled",
    }
    assert report.failures == []
    assert inventory.stock == {"prod-x": 8, "prod-y": 5}
