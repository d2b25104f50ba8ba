"""Order lifecycle: creation, status workflow, deletion and delivery assignment.

Every mutating function runs inside a single unit of work. Stock changes and
order changes either commit together or are rolled back together.
"""
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import case
from sqlalchemy.orm import Session

from gemstone_shop.database import unit_of_work
from gemstone_shop.errors import (
    InsufficientStock,
    InvalidDeliveryMan,
    InvalidStatus,
    InvalidStatusTransition,
    OrderNotFound,
    ShopValidationError,
    StockConflict,
)
from gemstone_shop.inventory import decrement_stock, restore_stock, validate_stock
from gemstone_shop.models import TERMINAL_STATUSES, Order, OrderItem, OrderStatus, Role, User, utcnow

logger = logging.getLogger(__name__)

VALID_STATUSES = [s.value for s in OrderStatus]

# Forward workflow ordinals. Cancelled sits above every forward state, so a
# cancelled order can not re-enter the workflow.
STATUS_HIERARCHY = {
    OrderStatus.PENDING.value: 1,
    OrderStatus.CONFIRMED.value: 2,
    OrderStatus.ASSIGNED.value: 3,
    OrderStatus.IN_TRANSIT.value: 4,
    OrderStatus.DELIVERED.value: 5,
    OrderStatus.CANCELLED.value: 99,
}


@dataclass
class NewOrderItem:
    product_id: int
    quantity: int
    price_at_purchase: float


@dataclass
class NewOrder:
    user_id: int
    total_amount: float
    items: List[NewOrderItem] = field(default_factory=list)
    tax_amount: float = 0
    shipping_cost: float = 0
    discount_amount: float = 0
    shipping_address_id: Optional[int] = None
    billing_address_id: Optional[int] = None
    notes: Optional[str] = None
    order_number: Optional[str] = None


@dataclass
class CreatedOrder:
    order: Order
    low_stock_warnings: List[Dict[str, Any]]


@dataclass
class StatusChange:
    order: Order
    previous_status: str
    stock_restored: bool


def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6].upper()}"


def check_transition(current: str, new: str):
    """Raise InvalidStatusTransition if ``current -> new`` moves backwards."""
    if new == OrderStatus.CANCELLED.value:
        return
    if STATUS_HIERARCHY.get(new, 0) < STATUS_HIERARCHY.get(current, 0):
        raise InvalidStatusTransition(current, new)


def get_order(db: Session, order_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if order is None:
        raise OrderNotFound(order_id)
    return order


def _lock_order(db: Session, order_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id).with_for_update().first()
    if order is None:
        raise OrderNotFound(order_id)
    return order


def create_order(db: Session, new_order: NewOrder, warning_threshold: Optional[int] = None) -> CreatedOrder:
    product_ids = [item.product_id for item in new_order.items]
    if len(product_ids) != len(set(product_ids)):
        raise ShopValidationError("Each product may appear only once in an order")

    logger.info("Creating order for user #%s with %s items", new_order.user_id, len(new_order.items))
    with unit_of_work(db):
        check = validate_stock(db, [(i.product_id, i.quantity) for i in new_order.items], warning_threshold)
        if not check.ok:
            logger.error("Order creation failed: %s stock issues", len(check.issues))
            raise InsufficientStock(check.issues)

        order = Order(
            user_id=new_order.user_id,
            order_number=new_order.order_number or generate_order_number(),
            total_amount=new_order.total_amount,
            tax_amount=new_order.tax_amount or 0,
            shipping_cost=new_order.shipping_cost or 0,
            discount_amount=new_order.discount_amount or 0,
            shipping_address_id=new_order.shipping_address_id,
            billing_address_id=new_order.billing_address_id,
            notes=new_order.notes,
            status=OrderStatus.PENDING.value,
        )
        db.add(order)
        db.flush()

        for item in new_order.items:
            db.add(
                OrderItem(
                    order_id=order.id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    price_at_purchase=item.price_at_purchase,
                )
            )
            if not decrement_stock(db, item.product_id, item.quantity):
                logger.error("Stock for product #%s was taken before commit", item.product_id)
                raise StockConflict(item.product_id)

    db.refresh(order)
    logger.info("Order #%s (%s) created", order.id, order.order_number)
    return CreatedOrder(order=order, low_stock_warnings=check.warnings)


def update_order_status(
    db: Session, order_id: int, status: str, tracking_number: Optional[str] = None
) -> StatusChange:
    if status not in VALID_STATUSES:
        logger.error("Invalid status attempted: %r", status)
        raise InvalidStatus(status, VALID_STATUSES)

    with unit_of_work(db):
        order = _lock_order(db, order_id)
        previous = order.status
        try:
            check_transition(previous, status)
        except InvalidStatusTransition:
            logger.error("Invalid status transition for order #%s: %s -> %s", order_id, previous, status)
            raise

        stock_restored = status == OrderStatus.CANCELLED.value and previous != OrderStatus.CANCELLED.value
        if stock_restored:
            logger.info("Order #%s cancelled, restoring stock", order_id)
            restore_stock(db, order.items)

        order.status = status
        if tracking_number is not None:
            order.tracking_number = tracking_number
        order.updated_at = utcnow()

    db.refresh(order)
    logger.info("Order #%s status updated: %s -> %s", order_id, previous, status)
    return StatusChange(order=order, previous_status=previous, stock_restored=stock_restored)


def delete_order(db: Session, order_id: int) -> bool:
    """Delete an order, returning its stock first unless it was already cancelled.

    Returns whether stock was restored.
    """
    with unit_of_work(db):
        order = _lock_order(db, order_id)
        stock_restored = order.status != OrderStatus.CANCELLED.value
        if stock_restored:
            logger.info("Restoring stock before deleting order #%s", order_id)
            restore_stock(db, order.items)
        db.delete(order)

    logger.info("Order #%s deleted", order_id)
    return stock_restored


def _ensure_not_terminal(order: Order, attempted: str):
    if order.status in TERMINAL_STATUSES:
        raise InvalidStatusTransition(
            order.status,
            attempted,
            f"Order is already {order.status} and can no longer be (un)assigned",
        )


def assign_delivery(db: Session, order_id: int, delivery_man_id: Optional[int]) -> Order:
    if not delivery_man_id:
        raise ShopValidationError("Delivery man ID is required")

    with unit_of_work(db):
        order = _lock_order(db, order_id)
        _ensure_not_terminal(order, OrderStatus.ASSIGNED.value)
        delivery_man = (
            db.query(User).filter(User.id == delivery_man_id, User.role == Role.DELIVERY_MAN.value).first()
        )
        if delivery_man is None:
            raise InvalidDeliveryMan("Invalid delivery man ID or user is not a delivery man")

        now = utcnow()
        order.delivery_man_id = delivery_man.id
        order.assigned_at = now
        order.status = OrderStatus.ASSIGNED.value
        order.updated_at = now

    db.refresh(order)
    logger.info("Order #%s assigned to delivery man #%s", order_id, delivery_man_id)
    return order


def unassign_delivery(db: Session, order_id: int) -> Order:
    with unit_of_work(db):
        order = _lock_order(db, order_id)
        _ensure_not_terminal(order, OrderStatus.CONFIRMED.value)
        order.delivery_man_id = None
        order.assigned_at = None
        order.status = OrderStatus.CONFIRMED.value
        order.updated_at = utcnow()

    db.refresh(order)
    logger.info("Order #%s unassigned from delivery", order_id)
    return order


def can_view_order(order: Order, user: User) -> bool:
    if order.user_id == user.id:
        return True
    if user.role in (Role.ADMIN.value, Role.MANAGER.value):
        return True
    return user.role == Role.DELIVERY_MAN.value and order.delivery_man_id == user.id


def list_orders(db: Session) -> Sequence[Order]:
    return db.query(Order).order_by(Order.created_at.desc(), Order.id.desc()).all()


def list_user_orders(db: Session, user_id: int) -> Sequence[Order]:
    return db.query(Order).filter(Order.user_id == user_id).order_by(Order.created_at.desc(), Order.id.desc()).all()


def list_assignable_orders(db: Session) -> Sequence[Order]:
    return (
        db.query(Order)
        .filter(Order.status == OrderStatus.CONFIRMED.value, Order.delivery_man_id.is_(None))
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )


def list_delivery_men(db: Session) -> Sequence[User]:
    return db.query(User).filter(User.role == Role.DELIVERY_MAN.value).order_by(User.full_name.asc()).all()


def list_delivery_man_orders(db: Session, delivery_man_id: int) -> Sequence[Order]:
    exists = db.query(User).filter(User.id == delivery_man_id, User.role == Role.DELIVERY_MAN.value).first()
    if exists is None:
        raise InvalidDeliveryMan("Invalid delivery man ID")
    return (
        db.query(Order)
        .filter(Order.delivery_man_id == delivery_man_id)
        .order_by(Order.assigned_at.desc(), Order.created_at.desc())
        .all()
    )


def list_my_deliveries(db: Session, delivery_man_id: int) -> Sequence[Order]:
    progress = case(
        (Order.status == OrderStatus.ASSIGNED.value, 1),
        (Order.status == OrderStatus.IN_TRANSIT.value, 2),
        (Order.status == OrderStatus.DELIVERED.value, 3),
        else_=4,
    )
    return (
        db.query(Order)
        .filter(Order.delivery_man_id == delivery_man_id)
        .order_by(progress, Order.created_at.desc(), Order.id.desc())
        .all()
    )
