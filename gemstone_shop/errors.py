"""Shop domain exceptions.

Raised by the order and inventory services when a business rule is violated.
The API layer renders every ``ShopError`` as a JSON response using its
``status_code``, ``message`` and ``extra`` payload.
"""

from typing import Any, Dict, List, Optional


class ShopError(Exception):
    status_code = 500

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}


class ShopValidationError(ShopError):
    """Malformed or missing input detected by a service."""

    status_code = 400


class InvalidStatus(ShopValidationError):
    """The requested status is not part of the order workflow."""

    def __init__(self, status: str, valid: List[str]):
        super().__init__(
            f"Invalid status value. Must be one of: {', '.join(valid)}",
            {"valid_statuses": valid},
        )
        self.status = status


class InvalidStatusTransition(ShopValidationError):
    """The order cannot move from its current status to the requested one."""

    def __init__(self, current: str, attempted: str, message: Optional[str] = None):
        super().__init__(
            message
            or (
                f"Invalid status transition. Cannot change from '{current}' to '{attempted}'. "
                "Status can only move forward in the workflow."
            ),
            {"current_status": current, "attempted_status": attempted},
        )
        self.current = current
        self.attempted = attempted


class InvalidDeliveryMan(ShopValidationError):
    """The referenced user does not exist or does not hold the delivery role."""


class InsufficientStock(ShopValidationError):
    """One or more order items cannot be fulfilled from current stock."""

    def __init__(self, issues: List[Dict[str, Any]]):
        super().__init__(
            "Cannot create order: Insufficient stock for some items",
            {"stock_issues": issues},
        )
        self.issues = issues


class NotFound(ShopError):
    status_code = 404


class OrderNotFound(NotFound):
    def __init__(self, order_id: int):
        super().__init__("Order not found", {"order_id": order_id})


class ProductNotFound(NotFound):
    def __init__(self, product_id: int):
        super().__init__("Product not found", {"product_id": product_id})


class UserNotFound(NotFound):
    """The referenced user account does not exist."""


class StockConflict(ShopError):
    """Stock was taken by a concurrent order between validation and commit."""

    status_code = 409

    def __init__(self, product_id: int):
        super().__init__(
            f"Failed to update stock for product #{product_id}",
            {"product_id": product_id},
        )
        self.product_id = product_id


class NotAuthorized(ShopError):
    status_code = 403
