"""Canonical signing format for gateway requests and responses.

Both sides must build byte-identical input, so the base string is fully
determined by field values:

* top-level field names sorted by code point; `signature` and `None` skipped;
* strings verbatim (the empty string is a real token), numbers in their plain
  form, lists joined with `|` in their own order, mappings as compact JSON
  with sorted keys;
* every token joined with `|`.

Booleans have no canonical rendering and are rejected wherever they appear.
"""

import base64
import binascii
import json
import math
from collections.abc import Mapping
from decimal import Decimal

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from storepay.common.errors import UnsignableValue

SIGNATURE_FIELD = "signature"
SEPARATOR = "|"


def _render_number(value: int | float | Decimal) -> str:
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise UnsignableValue(f"non-finite number {value!r} cannot be signed")
        if value.is_integer():
            return str(int(value))
        value = Decimal(repr(value))
    if not value.is_finite():
        raise UnsignableValue(f"non-finite number {value!r} cannot be signed")
    # Fixed-point, no exponent, no trailing zeros.
    return format(value.normalize(), "f")


def _json_ready(value, path: str):
    """Copy `value` into a JSON-serializable tree with the signing rules applied."""

    if isinstance(value, bool):
        raise UnsignableValue(f"boolean at {path} cannot be signed")
    if isinstance(value, Mapping):
        return {
            str(key): _json_ready(item, f"{path}.{key}")
            for key, item in value.items()
            if key != SIGNATURE_FIELD and item is not None
        }
    if isinstance(value, (list, tuple)):
        return [_json_ready(item, f"{path}[{index}]") for index, item in enumerate(value)]
    if isinstance(value, float):
        if not math.isfinite(value):
            raise UnsignableValue(f"non-finite number at {path} cannot be signed")
        return int(value) if value.is_integer() else value
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise UnsignableValue(f"non-finite number at {path} cannot be signed")
        return int(value) if value == value.to_integral_value() else float(value)
    if value is None or isinstance(value, (str, int)):
        return value
    raise UnsignableValue(f"{type(value).__name__} at {path} cannot be signed")


def _render(value, path: str) -> str:
    if isinstance(value, bool):
        raise UnsignableValue(f"boolean field {path} cannot be signed")
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float, Decimal)):
        return _render_number(value)
    if isinstance(value, Mapping):
        return json.dumps(
            _json_ready(value, path),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    if isinstance(value, (list, tuple)):
        return SEPARATOR.join(
            "" if item is None else _render(item, f"{path}[{index}]") for index, item in enumerate(value)
        )
    raise UnsignableValue(f"{type(value).__name__} field {path} cannot be signed")


def signing_base_string(fields: Mapping) -> str:
    """Build the `|`-joined base string for a request or response mapping."""

    tokens = []
    for name in sorted(fields):
        if name == SIGNATURE_FIELD:
            continue
        value = fields[name]
        if value is None:
            continue
        tokens.append(_render(value, name))
    return SEPARATOR.join(tokens)


class MessageSigner:
    """RSA-SHA256 signer for outgoing messages and verifier for the counterparty's."""

    def __init__(self, private_key: rsa.RSAPrivateKey, counterparty_public_key: rsa.RSAPublicKey) -> None:
        self.private_key = private_key
        self.counterparty_public_key = counterparty_public_key

    @classmethod
    def from_pem(
        cls,
        private_key_pem: bytes,
        counterparty_public_key_pem: bytes,
        private_key_password: str | None = None,
    ) -> "MessageSigner":
        password = private_key_password.encode("utf-8") if private_key_password else None
        private_key = serialization.load_pem_private_key(private_key_pem, password=password)
        public_key = serialization.load_pem_public_key(counterparty_public_key_pem)
        if not isinstance(private_key, rsa.RSAPrivateKey) or not isinstance(public_key, rsa.RSAPublicKey):
            raise ValueError("gateway signing requires RSA keys")
        return cls(private_key, public_key)

    def sign(self, fields: dict) -> str:
        """Sign `fields` in place and return the base64 signature."""

        base = signing_base_string(fields).encode("utf-8")
        raw = self.private_key.sign(base, padding.PKCS1v15(), hashes.SHA256())
        signature = base64.b64encode(raw).decode("ascii")
        fields[SIGNATURE_FIELD] = signature
        return signature

    def verify(self, fields: Mapping) -> bool:
        """Check the counterparty's signature on `fields`.

        Missing, undecodable and wrong signatures all return False. Content the
        format cannot represent raises `UnsignableValue`.
        """

        signature = fields.get(SIGNATURE_FIELD)
        if not isinstance(signature, str) or not signature:
            return False
        base = signing_base_string(fields).encode("utf-8")
        try:
            raw = base64.b64decode(signature, validate=True)
        except (binascii.Error, ValueError):
            return False
        try:
            self.counterparty_public_key.verify(raw, base, padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature:
            return False
        return True
