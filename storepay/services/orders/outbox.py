"""Transactional outbox for order ledger events.

Rows are written in the same transaction as the order change that produced
them and published to Kafka later by `OutboxPublisher`.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from storepay.common.events import EventEnvelope, KafkaBus
from storepay.common.logging import logger
from storepay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total
from storepay.services.orders.models import OutboxEvent


def enqueue_event(db, event_type: str, aggregate_id: str, payload: dict, trace_id: str = "") -> None:
    """Stage one event on the current session; it commits with the caller's transaction."""

    envelope = EventEnvelope(
        event_type=event_type,
        aggregate_id=aggregate_id,
        trace_id=trace_id,
        payload=payload,
    )
    db.add(
        OutboxEvent(
            id=envelope.event_id,
            aggregate_type="order",
            aggregate_id=aggregate_id,
            event_type=event_type,
            topic=event_type,
            payload=envelope.model_dump(),
            status="PENDING",
            created_at=datetime.now(timezone.utc),
        )
    )


def claim_outbox_batch(db, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Atomically claim pending rows (or rows stuck in PROCESSING) for publishing."""

    table = OutboxEvent.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("claim_ids")
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(select(claim_ids.c.id)))
        .values(status="PROCESSING", sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.payload)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def set_outbox_status(db, event_id: str, status: str) -> None:
    """Move a claimed row to SENT, or back to PENDING for another attempt."""

    table = OutboxEvent.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status=status, sent_at=datetime.now(timezone.utc) if status == "SENT" else None)
    )


def update_outbox_backlog_metrics(db, service_name: str) -> None:
    table = OutboxEvent.__table__
    pending_statuses = ("PENDING", "PROCESSING")
    pending_count = db.execute(
        select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


class OutboxPublisher:
    """Background loop that drains `outbox_events` into Kafka."""

    def __init__(self, session_factory, kafka: KafkaBus, service_name: str, poll_seconds: float = 0.5) -> None:
        self.session_factory = session_factory
        self.kafka = kafka
        self.service_name = service_name
        self.poll_seconds = poll_seconds

    async def publish_once(self) -> int:
        with self.session_factory() as db:
            rows = claim_outbox_batch(db, limit=100)
            update_outbox_backlog_metrics(db, self.service_name)
            db.commit()
        for row in rows:
            try:
                await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                status = "SENT"
            except Exception as exc:
                logger.exception("outbox publish failed event_id=%s: %s", row["id"], exc)
                status = "PENDING"
            with self.session_factory() as db:
                set_outbox_status(db, row["id"], status)
                update_outbox_backlog_metrics(db, self.service_name)
                db.commit()
        return len(rows)

    async def run_forever(self) -> None:
        while True:
            try:
                await self.publish_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox_loop_error error=%s", exc)
            await asyncio.sleep(self.poll_seconds)
