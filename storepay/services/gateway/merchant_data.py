"""MerchantData: the opaque blob the gateway round-trips for us.

It lets a status notification be tied back to its order and cart without a
separate lookup table.
"""

import base64
import binascii
import json
import time

from pydantic import BaseModel, ConfigDict, Field

from storepay.common.logging import logger

# Gateway field limit for merchantData (base64 length).
MAX_ENCODED_LENGTH = 255


class MerchantCartItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId")
    quantity: int = Field(gt=0)


class MerchantData(BaseModel):
    """Checkout context carried through the gateway."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId")
    customer_email: str = Field(alias="customerEmail")
    customer_name: str = Field(alias="customerName")
    cart_items: list[MerchantCartItem] = Field(alias="cartItems", default_factory=list)
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))


def encode_merchant_data(data: MerchantData) -> str:
    raw = json.dumps(data.model_dump(by_alias=True), separators=(",", ":"), ensure_ascii=False)
    encoded = base64.b64encode(raw.encode("utf-8")).decode("ascii")
    if len(encoded) > MAX_ENCODED_LENGTH:
        logger.warning(
            "merchant_data_oversized order_id=%s length=%s limit=%s",
            data.order_id,
            len(encoded),
            MAX_ENCODED_LENGTH,
        )
    return encoded


def decode_merchant_data(encoded: str | None) -> MerchantData | None:
    """Decode an echoed blob; undecodable content yields None and a warning."""

    if not encoded:
        return None
    try:
        raw = base64.b64decode(encoded, validate=True).decode("utf-8")
        return MerchantData.model_validate(json.loads(raw))
    except (binascii.Error, ValueError) as exc:
        logger.warning("merchant_data_undecodable error=%s", exc)
        return None
