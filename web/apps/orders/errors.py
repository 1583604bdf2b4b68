"""Error taxonomy for the order lifecycle.

Every error raised by the domain derives from ``OrderError`` (itself a
``ValueError``). ``str(exc)`` is a short, stable code such as
``"INSUFFICIENT_STOCK"`` that views map to HTTP statuses, while
``exc.detail`` carries a human readable message for logs.

Four families mirror how callers should react:

- ``ValidationFailure``: bad input, rejected before any side effect.
- ``ResourceError``: a referenced food item or order is missing or unusable.
- ``StateError``: the order cannot make the requested transition right now.
- ``IntegrityFailure``: authenticity checks failed (signatures).
"""


class OrderError(ValueError):
    """Base class for lifecycle errors."""

    code = "ORDER_ERROR"

    def __init__(self, detail: str = ""):
        self.detail = detail or self.code
        super().__init__(self.code)


# ---- Validation ----
class ValidationFailure(OrderError):
    code = "VALIDATION_FAILED"


class InvalidPricing(ValidationFailure):
    code = "INVALID_PRICING"


class MissingDeliveryField(ValidationFailure):
    code = "MISSING_DELIVERY_FIELD"

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"delivery field '{field}' is required")


class InvalidQuantity(ValidationFailure):
    code = "INVALID_QUANTITY"


class EmptyOrder(ValidationFailure):
    code = "EMPTY_ORDER"


# ---- Resources ----
class ResourceError(OrderError):
    code = "RESOURCE_ERROR"


class FoodNotFound(ResourceError):
    code = "FOOD_NOT_FOUND"


class FoodUnavailable(ResourceError):
    code = "FOOD_UNAVAILABLE"


class InsufficientStock(ResourceError):
    code = "INSUFFICIENT_STOCK"


class OrderNotFound(ResourceError):
    code = "ORDER_NOT_FOUND"


# ---- State ----
class StateError(OrderError):
    code = "STATE_ERROR"


class InvalidTransition(StateError):
    code = "INVALID_TRANSITION"


class AlreadyTerminal(StateError):
    code = "ALREADY_TERMINAL"


class InvalidRefundState(StateError):
    code = "INVALID_REFUND_STATE"


# ---- Integrity ----
class IntegrityFailure(OrderError):
    code = "INTEGRITY_FAILURE"


class InvalidSignature(IntegrityFailure):
    code = "INVALID_SIGNATURE"


class DuplicateOrderNumber(Exception):
    """Raised by repositories when an order number is already taken."""
