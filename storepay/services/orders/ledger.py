"""SQL-backed order ledger.

Status writes are guarded by `(order_id, status, state_version)` so two
processes reconciling the same order cannot both win. Each status change
commits together with its timeline row and outbox event.
"""

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from storepay.common.errors import OrderNotFound, StaleOrderVersion
from storepay.common.events import INVENTORY_ADJUSTMENT_FAILED, ORDER_STATUS_CHANGED
from storepay.common.logging import logger
from storepay.common.state_machine import INITIATED, validate_transition
from storepay.services.orders.models import InventoryAdjustment, Order, OrderTimeline
from storepay.services.orders.outbox import enqueue_event

ADJUSTMENT_CLAIMED = "CLAIMED"
ADJUSTMENT_APPLIED = "APPLIED"
ADJUSTMENT_FAILED = "FAILED"


class SqlOrderLedger:
    """Owns order rows, status transitions and inventory adjustment markers."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def create_order(
        self,
        *,
        order_no: str,
        customer_email: str,
        customer_name: str,
        total_amount: int,
        currency: str,
        cart: list[dict],
        payment_method: str,
    ) -> Order:
        """Persist a new order in `initiated`, before the gateway has seen it."""

        now = datetime.now(timezone.utc)
        with self.session_factory() as db:
            order = Order(
                order_no=order_no,
                pay_id=None,
                customer_email=customer_email,
                customer_name=customer_name,
                total_amount=total_amount,
                currency=currency.upper(),
                cart=cart,
                payment_method=payment_method,
                status=INITIATED,
                state_version=0,
                created_at=now,
                status_changed_at=now,
            )
            db.add(order)
            db.flush()
            db.add(
                OrderTimeline(
                    order_id=order.order_id,
                    from_status=None,
                    to_status=INITIATED,
                    reason="checkout_started",
                    created_at=now,
                )
            )
            db.commit()
            logger.info("order_created order_no=%s total_amount=%s", order_no, total_amount)
            return order

    def attach_payment(self, order_id: str, pay_id: str) -> Order:
        """Record the gateway payId once init has succeeded."""

        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFound(f"order {order_id} not found")
            order.pay_id = pay_id
            db.commit()
            return order

    def get(self, order_id: str) -> Order | None:
        with self.session_factory() as db:
            return db.get(Order, order_id)

    def find_by_pay_id(self, pay_id: str) -> Order | None:
        with self.session_factory() as db:
            return db.execute(select(Order).where(Order.pay_id == pay_id)).scalar_one_or_none()

    def find_by_order_no(self, order_no: str) -> Order | None:
        with self.session_factory() as db:
            return db.execute(select(Order).where(Order.order_no == order_no)).scalar_one_or_none()

    def timeline(self, order_id: str) -> list[OrderTimeline]:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(OrderTimeline)
                    .where(OrderTimeline.order_id == order_id)
                    .order_by(OrderTimeline.created_at.asc())
                )
                .scalars()
                .all()
            )

    def update_status(self, order: Order, new_status: str, reason: str, trace_id: str = "") -> Order:
        """Apply one validated transition with optimistic concurrency.

        Raises `StaleOrderVersion` when another writer moved the order first;
        the caller reloads and decides again.
        """

        validate_transition(order.status, new_status)
        from_status = order.status
        current_version = order.state_version
        now = datetime.now(timezone.utc)

        with self.session_factory() as db:
            result = db.execute(
                update(Order)
                .where(
                    Order.order_id == order.order_id,
                    Order.status == from_status,
                    Order.state_version == current_version,
                )
                .values(status=new_status, state_version=current_version + 1, status_changed_at=now)
            )
            if result.rowcount != 1:
                db.rollback()
                raise StaleOrderVersion(
                    f"order {order.order_no} changed concurrently (expected version {current_version})"
                )
            db.add(
                OrderTimeline(
                    order_id=order.order_id,
                    from_status=from_status,
                    to_status=new_status,
                    reason=reason,
                    created_at=now,
                )
            )
            enqueue_event(
                db,
                ORDER_STATUS_CHANGED,
                order.order_id,
                {
                    "order_no": order.order_no,
                    "pay_id": order.pay_id,
                    "from_status": from_status,
                    "to_status": new_status,
                    "customer_email": order.customer_email,
                    "reason": reason,
                },
                trace_id=trace_id,
            )
            db.commit()

        order.status = new_status
        order.state_version = current_version + 1
        order.status_changed_at = now
        return order

    def claim_adjustment(self, order_id: str, lines: list[dict]) -> bool:
        """Insert the adjustment marker; False means another invocation already owns it."""

        with self.session_factory() as db:
            db.add(
                InventoryAdjustment(
                    order_id=order_id,
                    status=ADJUSTMENT_CLAIMED,
                    lines=lines,
                    created_at=datetime.now(timezone.utc),
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True

    def complete_adjustment(self, order: Order, lines: list[dict], error: str | None, trace_id: str = "") -> None:
        """Finalize a claimed marker with per-line outcomes."""

        with self.session_factory() as db:
            adjustment = db.get(InventoryAdjustment, order.order_id)
            if adjustment is None:
                raise OrderNotFound(f"no adjustment marker for order {order.order_id}")
            adjustment.status = ADJUSTMENT_FAILED if error else ADJUSTMENT_APPLIED
            adjustment.lines = lines
            adjustment.error = error
            adjustment.completed_at = datetime.now(timezone.utc)
            if error:
                enqueue_event(
                    db,
                    INVENTORY_ADJUSTMENT_FAILED,
                    order.order_id,
                    {"order_no": order.order_no, "lines": lines, "error": error},
                    trace_id=trace_id,
                )
            db.commit()

    def get_adjustment(self, order_id: str) -> InventoryAdjustment | None:
        with self.session_factory() as db:
            return db.get(InventoryAdjustment, order_id)

    def max_issued_sequence(self, prefix: str) -> int:
        """Scan issued order numbers sharing `prefix`; return the highest numeric suffix."""

        with self.session_factory() as db:
            numbers = db.execute(select(Order.order_no).where(Order.order_no.like(f"{prefix}%"))).scalars().all()
        highest = 0
        for number in numbers:
            suffix = number[len(prefix):]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        return highest

    def list_in_flight(self, statuses, changed_before: datetime, limit: int = 100) -> list[Order]:
        """Orders with a payId still waiting on the gateway, oldest first."""

        with self.session_factory() as db:
            return (
                db.execute(
                    select(Order)
                    .where(
                        Order.status.in_(tuple(statuses)),
                        Order.pay_id.is_not(None),
                        Order.status_changed_at < changed_before,
                    )
                    .order_by(Order.status_changed_at.asc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
