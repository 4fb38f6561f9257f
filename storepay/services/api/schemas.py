"""API request/response schemas for the storefront payment endpoints."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from storepay.services.gateway.messages import Cart, Customer


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CheckoutRequest(CamelModel):
    """Payload accepted by `POST /checkout`."""

    cart: Cart
    customer: Customer


class CheckoutResponse(CamelModel):
    payment_url: str = Field(alias="paymentUrl")
    pay_id: str = Field(alias="payId")
    order_no: str = Field(alias="orderNo")
    total_amount: int = Field(alias="totalAmount", description="minor units")
    currency: str
    status: str


class PayIdRequest(CamelModel):
    """Body for status/process calls; `payId` is checked by the handler so a missing one is a 400."""

    pay_id: str | None = Field(default=None, alias="payId")
    wait: bool = False


class RefundRequest(CamelModel):
    pay_id: str | None = Field(default=None, alias="payId")
    amount: Decimal | None = Field(default=None, gt=0, description="major units; omit for a full refund")


class PartialFailureView(CamelModel):
    order_no: str = Field(alias="orderNo")
    reason: str
    lines: list[dict] = Field(default_factory=list)


class StatusResponse(CamelModel):
    pay_id: str = Field(alias="payId")
    payment_status: int | None = Field(alias="paymentStatus")
    state: str
    result_code: int = Field(alias="resultCode")
    result_message: str = Field(alias="resultMessage")
    is_complete: bool = Field(alias="isComplete")
    is_successful: bool = Field(alias="isSuccessful")
    order_no: str = Field(alias="orderNo")
    order_status: str = Field(alias="orderStatus")
    inventory_adjusted: bool = Field(alias="inventoryAdjusted")
    warnings: list[PartialFailureView] = Field(default_factory=list)


class TimelineEntry(CamelModel):
    from_status: str | None = Field(alias="fromStatus")
    to_status: str = Field(alias="toStatus")
    reason: str
    created_at: datetime | None = Field(alias="createdAt")


class OrderView(CamelModel):
    order_no: str = Field(alias="orderNo")
    pay_id: str | None = Field(alias="payId")
    status: str
    total_amount: Decimal = Field(alias="totalAmount", description="major units")
    currency: str
    customer_email: str = Field(alias="customerEmail")
    customer_name: str = Field(alias="customerName")
    payment_method: str = Field(alias="paymentMethod")
    cart: list[dict]
    created_at: datetime | None = Field(alias="createdAt")
    status_changed_at: datetime | None = Field(alias="statusChangedAt")
    timeline: list[TimelineEntry] = Field(default_factory=list)


class SweepResponse(CamelModel):
    checked: int
    updated: list[dict]
    failures: list[dict]
    warnings: list[PartialFailureView]
