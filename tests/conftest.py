"""Shared fixtures: RSA key pairs, SQLite-backed ledger and a signing fake gateway."""

import json
import threading
import time
from datetime import datetime, timezone
from urllib.parse import unquote

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storepay.common.config import Settings
from storepay.common.db import Base
from storepay.common.errors import InventoryStoreError
from storepay.services.gateway.client import PaymentGatewayClient
from storepay.services.gateway.signing import MessageSigner
from storepay.services.orders import models  # noqa: F401  (registers tables)
from storepay.services.orders.ledger import SqlOrderLedger
from storepay.services.orders.numbering import OrderNumberGenerator
from storepay.services.reconciliation.polling import RetryPolicy
from storepay.services.reconciliation.service import ReconciliationEngine

GATEWAY_URL = "https://gateway.test/api/v1.9"
FIXED_NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def merchant_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def gateway_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        merchant_id="M1MIPSTEST",
        gateway_api_url=GATEWAY_URL,
        return_url="https://shop.test/payment-return",
        sweep_min_age_minutes=0,
        outbox_enabled=False,
    )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def ledger(session_factory):
    return SqlOrderLedger(session_factory)


class FakeInventoryStore:
    """In-memory stock table; `failing` products raise on write."""

    def __init__(self, stock: dict[str, int]) -> None:
        self.stock = dict(stock)
        self.failing: set[str] = set()
        self.writes: list[tuple[str, int, int]] = []

    async def get_stock(self, product_id):
        return self.stock.get(product_id)

    async def set_stock(self, product_id, new_stock, last_order_quantity):
        if product_id in self.failing:
            raise InventoryStoreError(f"write to {product_id} refused")
        self.writes.append((product_id, new_stock, last_order_quantity))
        self.stock[product_id] = new_stock


class InMemoryCounter:
    """Thread-safe stand-in for the Redis sequence counter."""

    def __init__(self) -> None:
        self.values: dict[str, int] = {}
        self.lock = threading.Lock()

    def next_value(self, key, seed):
        with self.lock:
            if key not in self.values:
                self.values[key] = seed()
            self.values[key] += 1
            return self.values[key]


class FakeRedis:
    """Just enough of the redis-py surface for the counter and idempotency cache."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value

    def exists(self, key):
        return int(key in self.data)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        return True

    def incr(self, key):
        self.data[key] = str(int(self.data.get(key, 0)) + 1)
        return int(self.data[key])


class SharedRedis(FakeRedis):
    """Redis stand-in shared between threads.

    `set(nx=True)` and `incr` are atomic like the server's; `exists` takes no
    lock and yields first, so check-then-act callers race.
    """

    def __init__(self) -> None:
        super().__init__()
        self.lock = threading.Lock()

    def exists(self, key):
        time.sleep(0)
        return int(key in self.data)

    def set(self, key, value, nx=False, ex=None):
        with self.lock:
            return super().set(key, value, nx=nx, ex=ex)

    def incr(self, key):
        with self.lock:
            return super().incr(key)


class FakeGateway:
    """Gateway double: verifies merchant signatures and signs every response."""

    def __init__(self, merchant_public_key, gateway_private_key) -> None:
        self.signer = MessageSigner(gateway_private_key, merchant_public_key)
        self.requests: list[dict] = []
        self.request_signatures_valid: list[bool] = []
        self.statuses: dict[str, list[int]] = {}
        self.merchant_data: dict[str, str] = {}
        self.result_code = 0
        self.result_message = "OK"
        self.tamper: dict | None = None
        self.transport_failures = 0
        self.next_pay_id = 1

    def signed_fields(self, pay_id: str, payment_status: int | None, **extra) -> dict:
        fields = {
            "payId": pay_id,
            "dttm": "20261019120000",
            "resultCode": self.result_code,
            "resultMessage": self.result_message,
            "paymentStatus": payment_status,
        }
        if self.merchant_data.get(pay_id):
            fields["merchantData"] = self.merchant_data[pay_id]
        fields.update(extra)
        fields = {key: value for key, value in fields.items() if value is not None}
        self.signer.sign(fields)
        if self.tamper:
            fields.update(self.tamper)
        return fields

    def _echo(self, request: httpx.Request) -> httpx.Response:
        merchant_id, dttm, signature = (unquote(part) for part in request.url.raw_path.decode().split("/")[-3:])
        self.requests.append({"method": "GET", "path": request.url.path, "body": {}})
        self.request_signatures_valid.append(
            self.signer.verify({"merchantId": merchant_id, "dttm": dttm, "signature": signature})
        )
        fields = {"dttm": "20261019120001", "resultCode": self.result_code, "resultMessage": self.result_message}
        self.signer.sign(fields)
        if self.tamper:
            fields.update(self.tamper)
        return httpx.Response(200, json=fields)

    def _next_status(self, pay_id: str) -> int:
        script = self.statuses.setdefault(pay_id, [1])
        return script.pop(0) if len(script) > 1 else script[0]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.transport_failures:
            self.transport_failures -= 1
            raise httpx.ConnectError("connection refused", request=request)
        if request.method == "GET" and "/echo/" in request.url.path:
            return self._echo(request)
        body = json.loads(request.content)
        self.requests.append({"method": request.method, "path": request.url.path, "body": body})
        signable = {key: value for key, value in body.items() if key != "closePayment"}
        self.request_signatures_valid.append(self.signer.verify(signable))

        if request.url.path.endswith("/payment/init"):
            pay_id = f"pay{self.next_pay_id:05d}"
            self.next_pay_id += 1
            self.merchant_data[pay_id] = body.get("merchantData")
            return httpx.Response(200, json=self.signed_fields(pay_id, self._next_status(pay_id)))
        pay_id = body["payId"]
        return httpx.Response(200, json=self.signed_fields(pay_id, self._next_status(pay_id)))


@pytest.fixture
def gateway(merchant_key, gateway_key):
    return FakeGateway(merchant_key.public_key(), gateway_key)


@pytest.fixture
def client(settings, merchant_key, gateway_key, gateway):
    signer = MessageSigner(merchant_key, gateway_key.public_key())
    http = httpx.AsyncClient(transport=httpx.MockTransport(gateway.handler))
    return PaymentGatewayClient(settings, signer, http=http, clock=lambda: FIXED_NOW)


@pytest.fixture
def inventory():
    return FakeInventoryStore({"prod-x": 10, "prod-y": 5})


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def shared_redis():
    return SharedRedis()


@pytest.fixture
def counter():
    return InMemoryCounter()


@pytest.fixture
def order_numbers(ledger, counter):
    return OrderNumberGenerator(counter, ledger.max_issued_sequence, clock=lambda: FIXED_NOW)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def engine(ledger, client, inventory, order_numbers, settings, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return ReconciliationEngine(
        ledger,
        client,
        inventory,
        order_numbers,
        settings,
        policy=RetryPolicy(interval_seconds=2.0, max_attempts=3, jitter_seconds=0.0),
        sleep=fake_sleep,
    )
