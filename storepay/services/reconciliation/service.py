"""Reconciliation engine.

Moves orders through their lifecycle from verified gateway status reports and
performs the at-most-once inventory decrement when a payment succeeds.
Inventory is only touched after the order status is durably written, and an
inventory problem never rolls the status back; it comes back as a warning.
"""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from storepay.common.config import Settings
from storepay.common.errors import (
    InsufficientStock,
    InventoryStoreError,
    OrderNotFound,
    PaymentGatewayError,
    StaleOrderVersion,
    StatusCheckTimeout,
    StorepayError,
    TransportError,
)
from storepay.common.logging import logger, order_no_ctx, pay_id_ctx, trace_id_ctx
from storepay.common.metrics import (
    checkouts_total,
    duplicate_notifications_total,
    inventory_adjustments_total,
    order_transitions_total,
    reconciliation_partial_failures_total,
    stale_notifications_total,
    status_check_timeouts_total,
)
from storepay.common.state_machine import (
    CANCELLED,
    CONFIRMED,
    DECLINED,
    IN_FLIGHT_STATUSES,
    IN_PROGRESS,
    INITIATED,
    PAID_STATUSES,
    PARTIALLY_REFUNDED,
    REFUNDED,
    SETTLED,
    can_transition,
)
from storepay.services.gateway.client import PaymentGatewayClient
from storepay.services.gateway.merchant_data import MerchantData
from storepay.services.gateway.messages import Cart, Customer, StatusResult
from storepay.services.gateway.status import PaymentState, is_complete, is_successful
from storepay.services.inventory.store import InventoryStore
from storepay.services.orders.ledger import SqlOrderLedger
from storepay.services.orders.models import Order
from storepay.services.orders.numbering import OrderNumberGenerator
from storepay.services.reconciliation.polling import RetryPolicy

# waiting_for_settlement and unknown are deliberately absent: they never move an order.
ORDER_STATUS_FOR_STATE: dict[PaymentState, str] = {
    PaymentState.CREATED: INITIATED,
    PaymentState.IN_PROGRESS: IN_PROGRESS,
    PaymentState.CONFIRMED: CONFIRMED,
    PaymentState.CANCELLED: CANCELLED,
    PaymentState.DECLINED: DECLINED,
    PaymentState.SETTLED: SETTLED,
    PaymentState.REFUNDED: REFUNDED,
    PaymentState.PARTIALLY_REFUNDED: PARTIALLY_REFUNDED,
}

MAX_VERSION_RETRIES = 3
LINE_APPLIED = "applied"
LINE_FAILED = "failed"
LINE_MISSING = "missing"


@dataclass(frozen=True)
class StockShortfall:
    product_id: str
    requested: int
    available: int


@dataclass(frozen=True)
class ReconciliationPartialFailure:
    """Order status was persisted but inventory bookkeeping did not fully apply."""

    order_no: str
    reason: str
    lines: list[dict] = field(default_factory=list)


@dataclass
class ReconciliationResult:
    order_no: str
    previous_status: str
    status: str
    state: PaymentState
    changed: bool = False
    ignored: bool = False
    inventory_adjusted: bool = False
    warnings: list[ReconciliationPartialFailure] = field(default_factory=list)


@dataclass(frozen=True)
class CheckoutResult:
    order_id: str
    order_no: str
    pay_id: str
    payment_url: str
    total_amount: int
    currency: str
    reconciliation: ReconciliationResult


@dataclass(frozen=True)
class StatusCheck:
    status: StatusResult
    reconciliation: ReconciliationResult


@dataclass
class SweepReport:
    checked: int = 0
    updated: list[dict] = field(default_factory=list)
    failures: list[dict] = field(default_factory=list)
    warnings: list[ReconciliationPartialFailure] = field(default_factory=list)


class ReconciliationEngine:
    """Owns checkout orchestration and order/inventory reconciliation."""

    def __init__(
        self,
        ledger: SqlOrderLedger,
        client: PaymentGatewayClient,
        inventory: InventoryStore,
        order_numbers: OrderNumberGenerator,
        settings: Settings,
        policy: RetryPolicy | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.ledger = ledger
        self.client = client
        self.inventory = inventory
        self.order_numbers = order_numbers
        self.policy = policy or RetryPolicy.from_settings(settings)
        self.sleep = sleep
        self.default_currency = settings.default_currency
        self.payment_method = settings.payment_method_label
        self.sweep_min_age = timedelta(minutes=settings.sweep_min_age_minutes)

    async def check_availability(self, cart: Cart) -> list[StockShortfall]:
        """Compare requested quantities with current stock; unknown products are short."""

        requested: dict[str, int] = {}
        for item in cart.items:
            requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity
        shortfalls = []
        for product_id, quantity in requested.items():
            stock = await self.inventory.get_stock(product_id)
            available = stock if stock is not None else 0
            if stock is None or available < quantity:
                shortfalls.append(StockShortfall(product_id=product_id, requested=quantity, available=available))
        return shortfalls

    async def checkout(self, cart: Cart, customer: Customer) -> CheckoutResult:
        """Pre-check stock, persist the order, open the gateway payment."""

        shortfalls = await self.check_availability(cart)
        if shortfalls:
            checkouts_total.labels(outcome="insufficient_stock").inc()
            logger.info("checkout_rejected_stock products=%s", [s.product_id for s in shortfalls])
            raise InsufficientStock(shortfalls)

        order_no = self.order_numbers.next_order_number()
        order_no_ctx.set(order_no)
        order = self.ledger.create_order(
            order_no=order_no,
            customer_email=customer.email,
            customer_name=customer.name,
            total_amount=cart.total_amount(),
            currency=cart.currency or self.default_currency,
            cart=[_order_line(item) for item in cart.items],
            payment_method=self.payment_method,
        )
        try:
            init = await self.client.initialize_payment(cart, customer, order_id=order.order_id, order_no=order_no)
        except PaymentGatewayError:
            # The order stays initiated without a payId for audit.
            checkouts_total.labels(outcome="gateway_error").inc()
            logger.warning("checkout_init_failed order_no=%s", order_no)
            raise

        pay_id_ctx.set(init.pay_id)
        order = self.ledger.attach_payment(order.order_id, init.pay_id)
        reconciliation = await self.apply_status(order, init.state, source="init")
        checkouts_total.labels(outcome="initiated").inc()
        return CheckoutResult(
            order_id=order.order_id,
            order_no=order_no,
            pay_id=init.pay_id,
            payment_url=init.redirect_url,
            total_amount=init.total_amount,
            currency=init.currency,
            reconciliation=reconciliation,
        )

    async def apply_status(
        self,
        order: Order,
        state: PaymentState,
        merchant_data: MerchantData | None = None,
        source: str = "status",
    ) -> ReconciliationResult:
        """Apply one verified payment state to `order`.

        Same status is a no-op, forward moves are persisted, stale or backward
        reports are ignored. A successful state then triggers the inventory
        step, which the adjustment marker makes at-most-once.
        """

        result = ReconciliationResult(
            order_no=order.order_no,
            previous_status=order.status,
            status=order.status,
            state=state,
        )
        target = ORDER_STATUS_FOR_STATE.get(state)
        if target is None:
            logger.info("status_not_actionable order_no=%s state=%s source=%s", order.order_no, state.value, source)
            return result

        for _ in range(MAX_VERSION_RETRIES):
            if order.status == target:
                duplicate_notifications_total.labels(source=source).inc()
                break
            if not can_transition(order.status, target):
                stale_notifications_total.labels(source=source).inc()
                logger.info(
                    "status_ignored_stale order_no=%s current=%s reported=%s source=%s",
                    order.order_no,
                    order.status,
                    target,
                    source,
                )
                result.ignored = True
                break
            from_status = order.status
            try:
                order = self.ledger.update_status(order, target, f"{source}:{state.value}", trace_id_ctx.get())
            except StaleOrderVersion:
                logger.info("order_version_conflict order_no=%s", order.order_no)
                reloaded = self.ledger.get(order.order_id)
                if reloaded is None:
                    raise OrderNotFound(f"order {order.order_no} disappeared during reconciliation")
                order = reloaded
                continue
            order_transitions_total.labels(from_status=from_status, to_status=target).inc()
            logger.info("order_status_changed order_no=%s from=%s to=%s", order.order_no, from_status, target)
            result.changed = True
            break
        else:
            raise StaleOrderVersion(f"order {order.order_no} kept changing; gave up after {MAX_VERSION_RETRIES} tries")

        result.status = order.status
        if is_successful(state) and order.status in PAID_STATUSES:
            await self._adjust_inventory(order, merchant_data, result)
        return result

    async def _adjust_inventory(
        self, order: Order, merchant_data: MerchantData | None, result: ReconciliationResult
    ) -> None:
        lines = _adjustment_lines(order, merchant_data)
        if not self.ledger.claim_adjustment(order.order_id, lines):
            inventory_adjustments_total.labels(outcome="skipped").inc()
            logger.info("inventory_adjustment_skipped order_no=%s", order.order_no)
            return

        # One failing line does not stop the others.
        outcomes = await asyncio.gather(*(self._decrement(line) for line in lines))
        failed = [outcome for outcome in outcomes if outcome["status"] != LINE_APPLIED]
        error = "; ".join(f"{o['productId']}: {o['error']}" for o in failed) or None
        self.ledger.complete_adjustment(order, list(outcomes), error, trace_id_ctx.get())
        result.inventory_adjusted = True

        if failed:
            inventory_adjustments_total.labels(outcome="failed").inc()
            reconciliation_partial_failures_total.inc()
            logger.warning("inventory_adjustment_partial order_no=%s error=%s", order.order_no, error)
            result.warnings.append(
                ReconciliationPartialFailure(order_no=order.order_no, reason="inventory_adjustment_failed", lines=failed)
            )
        else:
            inventory_adjustments_total.labels(outcome="applied").inc()

    async def _decrement(self, line: dict) -> dict:
        product_id = line["productId"]
        quantity = int(line["quantity"])
        try:
            stock = await self.inventory.get_stock(product_id)
            if stock is None:
                return {"productId": product_id, "quantity": quantity, "status": LINE_MISSING, "error": "product not found"}
            new_stock = max(0, stock - quantity)
            await self.inventory.set_stock(product_id, new_stock, quantity)
        except InventoryStoreError as exc:
            logger.warning("inventory_line_failed product_id=%s error=%s", product_id, exc)
            return {"productId": product_id, "quantity": quantity, "status": LINE_FAILED, "error": str(exc)}
        return {
            "productId": product_id,
            "quantity": quantity,
            "status": LINE_APPLIED,
            "previousStock": stock,
            "newStock": new_stock,
        }

    async def refresh_status(self, pay_id: str) -> StatusCheck:
        """Ask the gateway for the authoritative status and reconcile the order."""

        pay_id_ctx.set(pay_id)
        status = await self.client.get_payment_status(pay_id)
        return await self._reconcile(status, "status")

    async def process_payment(self, pay_id: str) -> StatusCheck:
        pay_id_ctx.set(pay_id)
        status = await self.client.process_payment(pay_id)
        return await self._reconcile(status, "process")

    async def refund_payment(self, pay_id: str, amount: Decimal | None = None) -> StatusCheck:
        pay_id_ctx.set(pay_id)
        status = await self.client.refund_payment(pay_id, amount)
        return await self._reconcile(status, "refund")

    async def apply_notification(self, fields: Mapping) -> StatusCheck:
        """Reconcile from a gateway callback; the signature is verified before anything is read."""

        status = self.client.verify_notification(fields)
        pay_id_ctx.set(status.pay_id)
        return await self._reconcile(status, "notify")

    async def await_terminal_status(self, pay_id: str) -> StatusCheck:
        """Poll until the payment completes or the retry policy runs out.

        Transport errors use up an attempt. Signature and rejection errors
        abort immediately. Running out raises `StatusCheckTimeout` and leaves
        the order as the last check found it.
        """

        last_state: PaymentState | None = None
        attempts = self.policy.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                check = await self.refresh_status(pay_id)
            except TransportError as exc:
                logger.warning("status_poll_transport_error pay_id=%s attempt=%s error=%s", pay_id, attempt, exc)
            else:
                last_state = check.status.state
                if is_complete(last_state):
                    return check
            if attempt < attempts:
                await self.sleep(self.policy.delay())

        status_check_timeouts_total.inc()
        logger.warning("status_poll_timeout pay_id=%s attempts=%s", pay_id, attempts)
        raise StatusCheckTimeout(pay_id, attempts, last_state.value if last_state else None)

    async def sweep_in_flight(self, limit: int = 100) -> SweepReport:
        """Out-of-band status check for orders the payer never came back for."""

        changed_before = datetime.now(timezone.utc) - self.sweep_min_age
        report = SweepReport()
        for order in self.ledger.list_in_flight(IN_FLIGHT_STATUSES, changed_before, limit):
            report.checked += 1
            order_no_ctx.set(order.order_no)
            try:
                check = await self.refresh_status(order.pay_id)
            except StorepayError as exc:
                logger.exception("sweep_order_failed order_no=%s: %s", order.order_no, exc)
                report.failures.append({"orderNo": order.order_no, "error": str(exc)})
                continue
            if check.reconciliation.changed:
                report.updated.append({"orderNo": order.order_no, "status": check.reconciliation.status})
            report.warnings.extend(check.reconciliation.warnings)
        logger.info("sweep_finished checked=%s updated=%s failures=%s", report.checked, len(report.updated), len(report.failures))
        return report

    async def _reconcile(self, status: StatusResult, source: str) -> StatusCheck:
        order = self._find_order(status)
        order_no_ctx.set(order.order_no)
        reconciliation = await self.apply_status(order, status.state, status.merchant_data, source)
        return StatusCheck(status=status, reconciliation=reconciliation)

    def _find_order(self, status: StatusResult) -> Order:
        order = self.ledger.find_by_pay_id(status.pay_id) if status.pay_id else None
        if order is not None:
            return order
        if status.merchant_data is not None:
            # Init succeeded but the payId was never attached.
            order = self.ledger.get(status.merchant_data.order_id)
            if order is not None and order.pay_id is None and status.pay_id:
                return self.ledger.attach_payment(order.order_id, status.pay_id)
            if order is not None and order.pay_id == status.pay_id:
                return order
        raise OrderNotFound(f"no order for payment {status.pay_id}")


def _order_line(item) -> dict:
    return {
        "productId": item.product_id,
        "name": item.name,
        "quantity": item.quantity,
        "price": str(item.price),
        "amount": item.line_amount,
    }


def _adjustment_lines(order: Order, merchant_data: MerchantData | None) -> list[dict]:
    """Cart to decrement, from the MerchantData snapshot if present, otherwise the stored order."""

    if merchant_data is not None and merchant_data.cart_items:
        source = [(item.product_id, item.quantity) for item in merchant_data.cart_items]
    else:
        source = [(line["productId"], int(line["quantity"])) for line in order.cart or []]
    merged: dict[str, int] = {}
    for product_id, quantity in source:
        merged[product_id] = merged.get(product_id, 0) + quantity
    return [{"productId": product_id, "quantity": quantity} for product_id, quantity in merged.items()]
