"""Signed client for the card-payment gateway.

Every call has the same shape: build request, sign, send, verify the
response signature over the raw mapping, then parse and check `resultCode`.
Nothing from a response is read before its signature checks out.
"""

from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from time import perf_counter
from typing import Callable
from urllib.parse import quote, urlsplit

import httpx
from pydantic import ValidationError

from storepay.common.config import Settings
from storepay.common.errors import (
    GatewayRejected,
    PaymentGatewayError,
    SignatureInvalid,
    TransportError,
    UnsignableValue,
)
from storepay.common.logging import logger
from storepay.common.metrics import gateway_latency_seconds, gateway_requests_total, signature_failures_total
from storepay.common.money import to_minor_units
from storepay.common.tracing import get_tracer
from storepay.services.gateway.merchant_data import (
    MerchantCartItem,
    MerchantData,
    decode_merchant_data,
    encode_merchant_data,
)
from storepay.services.gateway.messages import (
    Cart,
    Customer,
    EchoRequest,
    GatewayCartLine,
    GatewayRequest,
    GatewayResponse,
    InitPaymentRequest,
    InitResult,
    PaymentStatusRequest,
    ProcessPaymentRequest,
    RefundPaymentRequest,
    StatusResult,
)
from storepay.services.gateway.signing import MessageSigner
from storepay.services.gateway.status import map_payment_status

DTTM_FORMAT = "%Y%m%d%H%M%S"


class PaymentGatewayClient:
    """Issues init/status/process/refund calls and authenticates the answers."""

    def __init__(
        self,
        settings: Settings,
        signer: MessageSigner,
        http: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.merchant_id = settings.merchant_id
        self.base_url = settings.gateway_api_url.rstrip("/")
        self.default_currency = settings.default_currency
        self.default_language = settings.default_language
        self.default_return_url = settings.return_url
        self.signer = signer
        self.http = http or httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)
        self.clock = clock
        parts = urlsplit(self.base_url)
        self.redirect_origin = f"{parts.scheme}://{parts.netloc}"

    @classmethod
    def from_settings(cls, settings: Settings) -> "PaymentGatewayClient":
        signer = MessageSigner.from_pem(
            settings.merchant_private_key_pem(),
            settings.gateway_public_key_pem(),
            settings.merchant_private_key_password,
        )
        return cls(settings, signer)

    async def close(self) -> None:
        await self.http.aclose()

    def dttm(self) -> str:
        return self.clock().strftime(DTTM_FORMAT)

    def redirect_url(self, pay_id: str) -> str:
        return f"{self.redirect_origin}/payment/gateway/{pay_id}"

    async def initialize_payment(
        self,
        cart: Cart,
        customer: Customer,
        *,
        order_id: str,
        order_no: str,
    ) -> InitResult:
        """Open a payment for a freshly numbered order and return where to send the payer."""

        if not order_no:
            raise ValueError("payment init requires a freshly generated order number")
        currency = (cart.currency or self.default_currency).upper()
        total_amount = cart.total_amount()
        merchant_data = MerchantData(
            order_id=order_id,
            customer_email=customer.email,
            customer_name=customer.name,
            cart_items=[MerchantCartItem(product_id=item.product_id, quantity=item.quantity) for item in cart.items],
        )
        request = InitPaymentRequest(
            merchant_id=self.merchant_id,
            dttm=self.dttm(),
            order_no=order_no,
            total_amount=total_amount,
            currency=currency,
            return_url=cart.return_url or self.default_return_url,
            cart=[
                GatewayCartLine(
                    name=item.name,
                    quantity=item.quantity,
                    amount=item.line_amount,
                    description=item.description or item.name,
                )
                for item in cart.items
            ],
            merchant_data=encode_merchant_data(merchant_data),
            customer_id=customer.customer_id,
            language=cart.language or self.default_language,
        )
        response = await self._call(request)
        if not response.pay_id:
            raise PaymentGatewayError("init response carries no payId", "init")
        logger.info("payment_initialized order_no=%s pay_id=%s total_amount=%s", order_no, response.pay_id, total_amount)
        return InitResult(
            pay_id=response.pay_id,
            redirect_url=self.redirect_url(response.pay_id),
            order_no=order_no,
            total_amount=total_amount,
            currency=currency,
            payment_status=response.payment_status,
            state=map_payment_status(response.payment_status),
        )

    async def get_payment_status(self, pay_id: str) -> StatusResult:
        """Fetch authoritative status; raises `UntrustedResponse` if the answer isn't signed by the gateway."""

        request = PaymentStatusRequest(merchant_id=self.merchant_id, dttm=self.dttm(), pay_id=pay_id)
        return self._status_result(await self._call(request), pay_id)

    async def process_payment(self, pay_id: str) -> StatusResult:
        request = ProcessPaymentRequest(merchant_id=self.merchant_id, dttm=self.dttm(), pay_id=pay_id)
        return self._status_result(await self._call(request), pay_id)

    async def refund_payment(self, pay_id: str, amount: Decimal | None = None) -> StatusResult:
        """Refund `amount` major units, or everything when omitted."""

        request = RefundPaymentRequest(
            merchant_id=self.merchant_id,
            dttm=self.dttm(),
            pay_id=pay_id,
            amount=to_minor_units(amount) if amount is not None else None,
        )
        return self._status_result(await self._call(request), pay_id)

    async def echo(self) -> str | None:
        """Signed round trip with no side effects; returns the gateway's dttm."""

        request = EchoRequest(merchant_id=self.merchant_id, dttm=self.dttm())
        response = await self._call(request)
        logger.info("gateway_echo_ok gateway_dttm=%s", response.dttm)
        return response.dttm

    def verify_notification(self, fields: Mapping) -> StatusResult:
        """Authenticate a gateway-originated callback (return redirect or notification)."""

        self._verify(fields, "notify")
        response = self._parse(fields, "notify")
        return self._status_result(response, response.pay_id or "")

    async def _call(self, request: GatewayRequest) -> GatewayResponse:
        operation = request.operation
        request.signature = self.signer.sign(request.signable_fields())
        url = f"{self.base_url}{request.endpoint}"
        body = request.wire_fields()
        if request.http_method == "GET":
            # merchantId, dttm, signature as path segments, in field order.
            url = "/".join([url, *(quote(str(value), safe="") for value in body.values())])
            body = None
        start = perf_counter()
        with get_tracer().start_as_current_span(f"gateway.{operation}") as span:
            span.set_attribute("gateway.operation", operation)
            try:
                resp = await self.http.request(request.http_method, url, json=body)
            except httpx.TransportError as exc:
                gateway_requests_total.labels(operation=operation, outcome="transport_error").inc()
                logger.warning("gateway_transport_error operation=%s error=%s", operation, exc)
                raise TransportError(f"gateway {operation} failed: {exc}", operation) from exc
            finally:
                gateway_latency_seconds.labels(operation=operation).observe(max(0.0, perf_counter() - start))
            span.set_attribute("http.status_code", resp.status_code)

        if resp.status_code >= 500:
            gateway_requests_total.labels(operation=operation, outcome="transport_error").inc()
            raise TransportError(f"gateway {operation} returned HTTP {resp.status_code}", operation)
        try:
            body = resp.json()
        except ValueError as exc:
            gateway_requests_total.labels(operation=operation, outcome="transport_error").inc()
            raise TransportError(f"gateway {operation} returned non-JSON body (HTTP {resp.status_code})", operation) from exc
        if not isinstance(body, dict):
            gateway_requests_total.labels(operation=operation, outcome="transport_error").inc()
            raise TransportError(f"gateway {operation} returned a non-object body", operation)

        self._verify(body, operation)
        return self._parse(body, operation)

    def _verify(self, fields: Mapping, operation: str) -> None:
        try:
            trusted = self.signer.verify(fields)
        except UnsignableValue as exc:
            signature_failures_total.labels(operation=operation).inc()
            raise SignatureInvalid(f"gateway {operation} message not canonically signable: {exc}", operation) from exc
        if not trusted:
            signature_failures_total.labels(operation=operation).inc()
            gateway_requests_total.labels(operation=operation, outcome="untrusted").inc()
            logger.error("gateway_signature_invalid operation=%s pay_id=%s", operation, fields.get("payId"))
            raise SignatureInvalid(f"gateway {operation} response signature verification failed", operation)

    def _parse(self, fields: Mapping, operation: str) -> GatewayResponse:
        try:
            response = GatewayResponse.model_validate(dict(fields))
        except ValidationError as exc:
            gateway_requests_total.labels(operation=operation, outcome="malformed").inc()
            raise PaymentGatewayError(f"gateway {operation} response malformed: {exc}", operation) from exc
        if response.result_code != 0:
            gateway_requests_total.labels(operation=operation, outcome="rejected").inc()
            logger.warning(
                "gateway_rejected operation=%s result_code=%s message=%s",
                operation,
                response.result_code,
                response.result_message,
            )
            raise GatewayRejected(response.result_code, response.result_message, operation)
        gateway_requests_total.labels(operation=operation, outcome="ok").inc()
        return response

    def _status_result(self, response: GatewayResponse, pay_id: str) -> StatusResult:
        return StatusResult(
            pay_id=response.pay_id or pay_id,
            payment_status=response.payment_status,
            state=map_payment_status(response.payment_status),
            result_code=response.result_code,
            result_message=response.result_message,
            merchant_data=decode_merchant_data(response.merchant_data),
        )
