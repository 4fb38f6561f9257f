"""Process entrypoint: `uvicorn storepay.services.api.main:app`."""

import redis

from storepay.common.config import Settings
from storepay.common.db import make_session_factory
from storepay.common.events import KafkaBus
from storepay.common.logging import configure_logging
from storepay.common.startup import log_startup_config
from storepay.common.tracing import instrument_app, setup_tracing
from storepay.services.api.app import create_app
from storepay.services.gateway.client import PaymentGatewayClient
from storepay.services.inventory.store import CmsInventoryStore
from storepay.services.orders.ledger import SqlOrderLedger
from storepay.services.orders.numbering import OrderNumberGenerator, RedisSequenceCounter
from storepay.services.orders.outbox import OutboxPublisher
from storepay.services.reconciliation.service import ReconciliationEngine

settings = Settings()
configure_logging(settings)
setup_tracing(settings)
log_startup_config(
    settings,
    [
        "gateway_api_url",
        "merchant_id",
        "merchant_private_key",
        "postgres_dsn",
        "redis_url",
        "kafka_bootstrap_servers",
        "inventory_api_url",
        "inventory_table",
        "status_poll_interval_seconds",
        "status_poll_max_attempts",
        "outbox_enabled",
    ],
)

session_factory = make_session_factory(settings)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
ledger = SqlOrderLedger(session_factory)
client = PaymentGatewayClient.from_settings(settings)
inventory = CmsInventoryStore(settings)
order_numbers = OrderNumberGenerator(
    RedisSequenceCounter(rdb),
    ledger.max_issued_sequence,
    prefix=settings.order_number_prefix,
)
engine = ReconciliationEngine(ledger, client, inventory, order_numbers, settings)
publisher = (
    OutboxPublisher(session_factory, KafkaBus(settings.kafka_bootstrap_servers), settings.service_name)
    if settings.outbox_enabled
    else None
)


async def close_clients() -> None:
    await client.close()
    await inventory.close()


app = create_app(settings, engine, ledger, rdb, publisher=publisher, on_shutdown=close_clients)
instrument_app(app)
