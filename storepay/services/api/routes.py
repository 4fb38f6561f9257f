"""HTTP handlers for checkout, payment status, callbacks and reconciliation.

Collaborators live on `app.state`: `engine` (ReconciliationEngine), `ledger`
(SqlOrderLedger), `redis` and `settings`.
"""

import json
from urllib.parse import parse_qsl
from uuid import uuid4

from fastapi import APIRouter, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from storepay.common.errors import (
    GatewayRejected,
    InsufficientStock,
    InventoryStoreError,
    OrderNotFound,
    PaymentGatewayError,
    SignatureInvalid,
    StaleOrderVersion,
    StatusCheckTimeout,
    StorepayError,
    TransportError,
)
from storepay.common.logging import logger, trace_id_ctx
from storepay.common.metrics import metrics_response
from storepay.services.api.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    OrderView,
    PartialFailureView,
    PayIdRequest,
    RefundRequest,
    StatusResponse,
    SweepResponse,
    TimelineEntry,
)
from storepay.services.gateway.status import is_complete, is_successful
from storepay.services.reconciliation.service import ReconciliationPartialFailure, StatusCheck

router = APIRouter()


def to_http_error(exc: StorepayError) -> HTTPException:
    """Translate domain errors into client-facing HTTP errors."""

    if isinstance(exc, InsufficientStock):
        return HTTPException(
            status_code=409,
            detail={
                "message": str(exc),
                "unavailableItems": [
                    {"productId": s.product_id, "requested": s.requested, "available": s.available}
                    for s in exc.shortfalls
                ],
            },
        )
    if isinstance(exc, SignatureInvalid):
        return HTTPException(status_code=502, detail="gateway response failed signature verification")
    if isinstance(exc, GatewayRejected):
        return HTTPException(
            status_code=502,
            detail={"message": str(exc), "resultCode": exc.result_code, "resultMessage": exc.result_message},
        )
    if isinstance(exc, (TransportError, InventoryStoreError)):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, PaymentGatewayError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, OrderNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StaleOrderVersion):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _bind_trace(x_correlation_id: str | None) -> str:
    trace_id = x_correlation_id or str(uuid4())
    trace_id_ctx.set(trace_id)
    return trace_id


def _require_pay_id(pay_id: str | None) -> str:
    if not pay_id or not pay_id.strip():
        raise HTTPException(status_code=400, detail="payId is required")
    return pay_id.strip()


def _warning_views(warnings: list[ReconciliationPartialFailure]) -> list[PartialFailureView]:
    return [PartialFailureView(order_no=w.order_no, reason=w.reason, lines=w.lines) for w in warnings]


def _status_response(check: StatusCheck) -> StatusResponse:
    status, reconciliation = check.status, check.reconciliation
    return StatusResponse(
        pay_id=status.pay_id,
        payment_status=status.payment_status,
        state=status.state.value,
        result_code=status.result_code,
        result_message=status.result_message,
        is_complete=is_complete(status.state),
        is_successful=is_successful(status.state),
        order_no=reconciliation.order_no,
        order_status=reconciliation.status,
        inventory_adjusted=reconciliation.inventory_adjusted,
        warnings=_warning_views(reconciliation.warnings),
    )


def _idempotency_cache_key(idempotency_key: str) -> str:
    return f"idempotency:checkout:{idempotency_key}"


@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(
    req: CheckoutRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None),
    x_correlation_id: str | None = Header(default=None),
):
    """Open a gateway payment for the cart and return the payer redirect.

    Repeats with the same `Idempotency-Key` return the cached response.
    """

    _bind_trace(x_correlation_id)
    state = request.app.state
    cache_key = _idempotency_cache_key(idempotency_key) if idempotency_key else None
    if cache_key:
        try:
            cached = state.redis.get(cache_key)
            if cached:
                return json.loads(cached)
        except Exception as exc:
            logger.warning("idempotency_cache_read_failed: %s", exc)

    try:
        result = await state.engine.checkout(req.cart, req.customer)
    except StorepayError as exc:
        raise to_http_error(exc) from exc

    payload = CheckoutResponse(
        payment_url=result.payment_url,
        pay_id=result.pay_id,
        order_no=result.order_no,
        total_amount=result.total_amount,
        currency=result.currency,
        status=result.reconciliation.status,
    ).model_dump(by_alias=True, mode="json")
    if cache_key:
        try:
            state.redis.setex(cache_key, state.settings.idempotency_ttl_seconds, json.dumps(payload))
        except Exception as exc:
            logger.warning("idempotency_cache_write_failed: %s", exc)
    return payload


async def _check_status(request: Request, pay_id: str | None, wait: bool):
    engine = request.app.state.engine
    pay_id = _require_pay_id(pay_id)
    try:
        check = await (engine.await_terminal_status(pay_id) if wait else engine.refresh_status(pay_id))
    except StatusCheckTimeout as exc:
        return JSONResponse(
            status_code=202,
            content={
                "payId": exc.pay_id,
                "message": "payment still processing, check back later",
                "attempts": exc.attempts,
                "state": exc.last_state,
            },
        )
    except StorepayError as exc:
        raise to_http_error(exc) from exc
    return _status_response(check)


@router.get("/payments/status", response_model=StatusResponse)
async def get_payment_status(
    request: Request,
    pay_id: str | None = Query(default=None, alias="payId"),
    wait: bool = False,
    x_correlation_id: str | None = Header(default=None),
):
    """Check a payment with the gateway and reconcile its order."""

    _bind_trace(x_correlation_id)
    return await _check_status(request, pay_id, wait)


@router.post("/payments/status", response_model=StatusResponse)
async def post_payment_status(
    request: Request,
    req: PayIdRequest | None = None,
    x_correlation_id: str | None = Header(default=None),
):
    """Same as the GET form, with `payId` in the body."""

    _bind_trace(x_correlation_id)
    req = req or PayIdRequest()
    return await _check_status(request, req.pay_id, req.wait)


@router.post("/payments/process", response_model=StatusResponse)
async def process_payment(
    request: Request,
    req: PayIdRequest | None = None,
    x_correlation_id: str | None = Header(default=None),
):
    _bind_trace(x_correlation_id)
    pay_id = _require_pay_id((req or PayIdRequest()).pay_id)
    try:
        check = await request.app.state.engine.process_payment(pay_id)
    except StorepayError as exc:
        raise to_http_error(exc) from exc
    return _status_response(check)


@router.post("/payments/refund", response_model=StatusResponse)
async def refund_payment(
    request: Request,
    req: RefundRequest | None = None,
    x_correlation_id: str | None = Header(default=None),
):
    """Refund a payment in full, or partially when `amount` (major units) is given."""

    _bind_trace(x_correlation_id)
    req = req or RefundRequest()
    pay_id = _require_pay_id(req.pay_id)
    try:
        check = await request.app.state.engine.refund_payment(pay_id, req.amount)
    except StorepayError as exc:
        raise to_http_error(exc) from exc
    return _status_response(check)


async def _callback_fields(request: Request) -> dict:
    if request.method == "GET":
        return dict(request.query_params)
    body = await request.body()
    if not body:
        return dict(request.query_params)
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            fields = json.loads(body)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="callback body is not valid JSON") from exc
        if not isinstance(fields, dict):
            raise HTTPException(status_code=400, detail="callback body must be an object")
        return fields
    # Form-encoded return from the gateway payment page.
    return dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))


@router.api_route("/payments/notify", methods=["GET", "POST"], response_model=StatusResponse)
async def payment_notification(request: Request):
    """Gateway callback or payer return; nothing is trusted before the signature checks out."""

    _bind_trace(request.headers.get("x-correlation-id"))
    fields = await _callback_fields(request)
    _require_pay_id(fields.get("payId"))
    try:
        check = await request.app.state.engine.apply_notification(fields)
    except StorepayError as exc:
        raise to_http_error(exc) from exc
    return _status_response(check)


@router.get("/orders/{order_no}", response_model=OrderView)
def get_order(order_no: str, request: Request):
    """Fetch one order with its status history."""

    ledger = request.app.state.ledger
    order = ledger.find_by_order_no(order_no)
    if not order:
        raise HTTPException(status_code=404, detail="order not found")
    return OrderView(
        order_no=order.order_no,
        pay_id=order.pay_id,
        status=order.status,
        total_amount=order.total_amount_major,
        currency=order.currency,
        customer_email=order.customer_email,
        customer_name=order.customer_name,
        payment_method=order.payment_method,
        cart=order.cart,
        created_at=order.created_at,
        status_changed_at=order.status_changed_at,
        timeline=[
            TimelineEntry(
                from_status=entry.from_status,
                to_status=entry.to_status,
                reason=entry.reason,
                created_at=entry.created_at,
            )
            for entry in ledger.timeline(order.order_id)
        ],
    )


@router.post("/reconciliation/sweep", response_model=SweepResponse)
async def sweep(request: Request, limit: int = Query(default=100, ge=1, le=1000)):
    """Re-check in-flight orders whose payer never came back."""

    _bind_trace(request.headers.get("x-correlation-id"))
    report = await request.app.state.engine.sweep_in_flight(limit)
    return SweepResponse(
        checked=report.checked,
        updated=report.updated,
        failures=report.failures,
        warnings=_warning_views(report.warnings),
    )


@router.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@router.get("/health")
def health():
    """Liveness endpoint for the container orchestrator."""

    return {"ok": True}


@router.get("/health/gateway")
async def gateway_health(request: Request):
    """Signed echo round trip to the payment gateway."""

    try:
        gateway_dttm = await request.app.state.engine.client.echo()
    except StorepayError as exc:
        raise to_http_error(exc) from exc
    return {"ok": True, "gatewayDttm": gateway_dttm}
