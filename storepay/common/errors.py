"""Error taxonomy for the payment protocol layer.

Gateway and cryptographic errors abort the current operation. Inventory
bookkeeping problems are not raised from reconciliation; they travel back as
warnings on `ReconciliationResult`.
"""


class StorepayError(Exception):
    """Base class for errors raised by this package."""


class PaymentGatewayError(StorepayError):
    """Base class for failures talking to the payment gateway."""

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class SignatureInvalid(PaymentGatewayError):
    """Gateway message failed signature verification; its content must be discarded."""


# Name used by callers that think of it as "the response can't be trusted".
UntrustedResponse = SignatureInvalid


class GatewayRejected(PaymentGatewayError):
    """Well-signed gateway response carrying a non-zero result code."""

    def __init__(self, result_code: int, result_message: str, operation: str | None = None) -> None:
        super().__init__(f"gateway rejected {operation or 'request'}: [{result_code}] {result_message}", operation)
        self.result_code = result_code
        self.result_message = result_message


class TransportError(PaymentGatewayError):
    """Network, timeout or malformed-transport failure; safe to retry later."""


class InsufficientStock(StorepayError):
    """One or more cart lines exceed current stock."""

    def __init__(self, shortfalls: list) -> None:
        names = ", ".join(str(s.product_id) for s in shortfalls)
        super().__init__(f"insufficient stock for: {names}")
        self.shortfalls = shortfalls


class StatusCheckTimeout(StorepayError):
    """Polling bound exceeded before the payment reached a complete state."""

    def __init__(self, pay_id: str, attempts: int, last_state: str | None = None) -> None:
        super().__init__(f"payment {pay_id} not complete after {attempts} status checks")
        self.pay_id = pay_id
        self.attempts = attempts
        self.last_state = last_state


class OrderNotFound(StorepayError):
    """No order record matches the given payment or order identifier."""


class InventoryStoreError(StorepayError):
    """Inventory backend failed to read or write a stock record."""


class StaleOrderVersion(StorepayError):
    """Optimistic status update lost a race with a concurrent writer."""


class InvalidTransition(StorepayError, ValueError):
    """Order status change not permitted by the lifecycle state machine."""


class UnsignableValue(StorepayError, TypeError):
    """Value type that the canonical signing format cannot represent."""
