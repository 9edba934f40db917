"""
Error taxonomy shared by the order, payment, fulfillment and inventory
services.

Every error carries a human-readable message, a stable machine code used
in API responses, and free-form context that is logged alongside it.
"""

from typing import Any, Optional


class OrderflowError(Exception):
    """Base exception for all orchestrator errors."""

    code = "ORDERFLOW_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "code": self.code}


class ValidationError(OrderflowError):
    """
    Order input rejected before anything was persisted.

    ``violations`` lists every failing field as ``{"field", "message"}``
    so callers can report all problems at once.
    """

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        violations: Optional[list[dict[str, str]]] = None,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.violations = violations or []

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["violations"] = self.violations
        return payload


class OrderNotFoundError(OrderflowError):
    """No order matches the given identifier."""

    code = "ORDER_NOT_FOUND"


class InvalidStateError(OrderflowError):
    """Operation is not permitted in the order's current lifecycle state."""

    code = "INVALID_STATE"

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        target_status: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.current_status = current_status
        self.target_status = target_status


class ConcurrentUpdateError(OrderflowError):
    """The stored order changed since it was read (version mismatch)."""

    code = "CONCURRENT_UPDATE"


class GatewayMisconfigured(OrderflowError):
    """Payment gateway credentials are absent; no call was attempted."""

    code = "GATEWAY_MISCONFIGURED"


class GatewayError(OrderflowError):
    """
    Payment gateway call failed or was rejected.

    ``status_code`` is None for transport failures (timeouts, refused
    connections) and the HTTP status otherwise.
    """

    code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[Any] = None,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.status_code = status_code
        self.response_body = response_body


class PartnerPlacementError(OrderflowError):
    """
    Drop-ship partner rejected or failed one item placement.

    ``transient`` is True when the failure may succeed on a later retry
    (timeouts, throttling, partner 5xx) and False when the partner refused
    the request outright.
    """

    code = "PARTNER_PLACEMENT_ERROR"

    def __init__(
        self,
        message: str,
        transient: bool = False,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.transient = transient
        self.status_code = status_code


class SourceFetchError(OrderflowError):
    """Inventory lookup against one source failed."""

    code = "SOURCE_FETCH_ERROR"

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        product_id: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.source = source
        self.product_id = product_id


class NotificationError(OrderflowError):
    """Customer or operator notification could not be delivered."""

    code = "NOTIFICATION_ERROR"


class WebhookSignatureError(OrderflowError):
    """Inbound webhook signature is missing or does not match the body."""

    code = "INVALID_SIGNATURE"


class DuplicateOrderNumberError(OrderflowError):
    """An order with the same order number is already stored."""

    code = "DUPLICATE_ORDER_NUMBER"
