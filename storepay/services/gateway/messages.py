"""Gateway request/response shapes and checkout inputs.

Each gateway operation has its own request model. All of them expose the same
two views: `wire_fields()` is exactly what goes over the wire, and
`signable_fields()` is what the signature covers.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field

from storepay.common.money import to_minor_units
from storepay.services.gateway.merchant_data import MerchantData
from storepay.services.gateway.status import PaymentState


class CartItem(BaseModel):
    """One purchased product line as submitted by the storefront."""

    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId", min_length=1)
    name: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    price: Decimal = Field(ge=0, description="unit price in major units")
    description: str | None = None

    @property
    def line_amount(self) -> int:
        return to_minor_units(self.price * self.quantity)

    @property
    def unit_amount(self) -> int:
        return to_minor_units(self.price)


class Cart(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: list[CartItem] = Field(min_length=1)
    total: Decimal | None = Field(default=None, ge=0, description="major units; defaults to the sum of lines")
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    return_url: str | None = Field(default=None, alias="returnUrl")
    language: str | None = None

    def total_amount(self) -> int:
        """Order total in minor units, rounded half up."""

        if self.total is not None:
            return to_minor_units(self.total)
        return sum(item.line_amount for item in self.items)


class Customer(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(min_length=3)
    name: str = Field(min_length=1)
    customer_id: str | None = Field(default=None, alias="customerId")


class GatewayCartLine(BaseModel):
    name: str
    quantity: int
    amount: int
    description: str | None = None


class GatewayRequest(BaseModel):
    """Fields common to every signed gateway request."""

    operation: ClassVar[str]
    endpoint: ClassVar[str]
    http_method: ClassVar[str] = "POST"
    # Sent on the wire but outside the signature.
    unsigned_fields: ClassVar[frozenset[str]] = frozenset()

    model_config = ConfigDict(populate_by_name=True)

    merchant_id: str = Field(alias="merchantId")
    dttm: str
    signature: str | None = None

    def wire_fields(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    def signable_fields(self) -> dict:
        return {
            name: value
            for name, value in self.wire_fields().items()
            if name not in self.unsigned_fields and name != "signature"
        }


class InitPaymentRequest(GatewayRequest):
    operation: ClassVar[str] = "init"
    endpoint: ClassVar[str] = "/payment/init"
    unsigned_fields: ClassVar[frozenset[str]] = frozenset({"closePayment"})

    order_no: str = Field(alias="orderNo", min_length=1)
    pay_operation: str = Field(default="payment", alias="payOperation")
    pay_method: str = Field(default="card", alias="payMethod")
    total_amount: int = Field(alias="totalAmount", ge=0)
    currency: str
    close_payment: bool = Field(default=True, alias="closePayment")
    return_url: str = Field(alias="returnUrl")
    return_method: str = Field(default="POST", alias="returnMethod")
    cart: list[GatewayCartLine]
    merchant_data: str | None = Field(default=None, alias="merchantData")
    customer_id: str | None = Field(default=None, alias="customerId")
    language: str


class PaymentStatusRequest(GatewayRequest):
    operation: ClassVar[str] = "status"
    endpoint: ClassVar[str] = "/payment/status"

    pay_id: str = Field(alias="payId", min_length=1)


class ProcessPaymentRequest(GatewayRequest):
    operation: ClassVar[str] = "process"
    endpoint: ClassVar[str] = "/payment/process"

    pay_id: str = Field(alias="payId", min_length=1)


class RefundPaymentRequest(GatewayRequest):
    operation: ClassVar[str] = "refund"
    endpoint: ClassVar[str] = "/payment/refund"
    http_method: ClassVar[str] = "PUT"

    pay_id: str = Field(alias="payId", min_length=1)
    # Omitted means a full refund.
    amount: int | None = Field(default=None, gt=0)


class EchoRequest(GatewayRequest):
    """Signed connectivity check; the fields travel as path segments."""

    operation: ClassVar[str] = "echo"
    endpoint: ClassVar[str] = "/echo"
    http_method: ClassVar[str] = "GET"


class GatewayResponse(BaseModel):
    """Parsed view of a response whose signature has already been verified."""

    # The gateway may send dttm and payId as JSON numbers.
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    pay_id: str | None = Field(default=None, alias="payId")
    dttm: str | None = None
    result_code: int = Field(alias="resultCode")
    result_message: str = Field(default="", alias="resultMessage")
    payment_status: int | None = Field(default=None, alias="paymentStatus")
    merchant_data: str | None = Field(default=None, alias="merchantData")


@dataclass(frozen=True)
class InitResult:
    pay_id: str
    redirect_url: str
    order_no: str
    total_amount: int
    currency: str
    payment_status: int | None
    state: PaymentState


@dataclass(frozen=True)
class StatusResult:
    pay_id: str
    payment_status: int | None
    state: PaymentState
    result_code: int
    result_message: str
    merchant_data: MerchantData | None = field(default=None)
