"""FastAPI application factory wiring the engine, ledger and background outbox publisher."""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from time import perf_counter

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from storepay.common.config import Settings
from storepay.common.metrics import http_request_duration_seconds, http_requests_total
from storepay.services.api.routes import router
from storepay.services.orders.ledger import SqlOrderLedger
from storepay.services.orders.outbox import OutboxPublisher
from storepay.services.reconciliation.service import ReconciliationEngine


def create_app(
    settings: Settings,
    engine: ReconciliationEngine,
    ledger: SqlOrderLedger,
    rdb,
    publisher: OutboxPublisher | None = None,
    on_shutdown=None,
) -> FastAPI:
    """Build the HTTP app; `publisher` runs for the app's lifetime when given."""

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        publisher_task = asyncio.create_task(publisher.run_forever()) if publisher else None
        yield
        if publisher_task:
            publisher_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await publisher_task
            await publisher.kafka.close()
        if on_shutdown:
            await on_shutdown()

    app = FastAPI(title="Storepay Payments", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.ledger = ledger
    app.state.redis = rdb

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(route=route, method=method).observe(elapsed)
            http_requests_total.labels(route=route, method=method, status_code=str(status_code)).inc()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app
