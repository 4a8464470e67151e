"""
Error taxonomy for checkout and order handling.

Every error carries the HTTP status it maps to and a machine-readable code,
so the API layer can render a structured reason without inspecting types.
Errors raised before an order is written leave no partial state behind.
"""
from typing import Any, Dict, List, Optional


class SettlementError(Exception):
    status_code = 400
    code = "settlement_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def detail(self) -> Dict[str, Any]:
        body = {"code": self.code, "message": self.message}
        body.update(self.extra)
        return body


class ValidationError(SettlementError):
    """Missing or malformed checkout input."""

    status_code = 400
    code = "validation_error"


class NotFoundError(SettlementError):
    status_code = 404
    code = "not_found"


class PermissionDeniedError(SettlementError):
    status_code = 403
    code = "permission_denied"


class EmptyCartError(SettlementError):
    status_code = 400
    code = "empty_cart"

    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class StockViolationError(SettlementError):
    """Cart lines that cannot be fulfilled; the caller should re-fetch the cart."""

    status_code = 409
    code = "stock_violation"

    def __init__(self, violations: List[Dict[str, str]], message: str = "Cart has items that cannot be ordered"):
        super().__init__(message, violations=violations)
        self.violations = violations


class InsufficientBalanceError(SettlementError):
    status_code = 402
    code = "insufficient_balance"

    def __init__(self, pool: str, requested: float, available: float):
        super().__init__(
            f"Insufficient {pool}",
            pool=pool,
            requested=requested,
            available=available,
        )
        self.pool = pool
        self.requested = requested
        self.available = available


class ExcessiveDiscountError(SettlementError):
    status_code = 422
    code = "excessive_discount"

    def __init__(self, discounts: float, payable: float):
        super().__init__(
            "Discounts exceed the order amount",
            discounts=discounts,
            payable=payable,
        )


class InvalidStatusTransitionError(SettlementError):
    status_code = 409
    code = "invalid_status_transition"

    def __init__(self, current: str, requested: str, entity_id: Optional[str] = None):
        message = f"Cannot move from {current} to {requested}"
        if entity_id:
            super().__init__(message, current=current, requested=requested, entity_id=entity_id)
        else:
            super().__init__(message, current=current, requested=requested)
        self.current = current
        self.requested = requested


class PaymentVerificationError(SettlementError):
    """Payment could not be confirmed; the client may retry without a new charge."""

    status_code = 402
    code = "payment_verification_failed"
