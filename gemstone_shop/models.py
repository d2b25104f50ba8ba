import enum
from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from gemstone_shop.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Role(str, enum.Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    MANAGER = "manager"
    DELIVERY_MAN = "delivery_man"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ASSIGNED = "assigned"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ProductType(str, enum.Enum):
    RING = "ring"
    NECKLACE = "necklace"
    BRACELET = "bracelet"
    EARRING = "earring"
    PENDANT = "pendant"
    OTHER = "other"


TERMINAL_STATUSES = (OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    full_name = Column(String(100), nullable=False)
    phone = Column(String(20))
    role = Column(String(20), default=Role.CUSTOMER.value, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (CheckConstraint("quantity_in_stock >= 0", name="products_stock_non_negative"),)
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), index=True, nullable=False)
    type = Column(String(20), default=ProductType.OTHER.value, nullable=False)
    description = Column(Text)
    price = Column(Float, nullable=False)
    quantity_in_stock = Column(Integer, default=0, nullable=False)  # Only changed by order operations and restocks
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'assigned', 'in_transit', 'delivered', 'cancelled')",
            name="orders_status_check",
        ),
    )
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_number = Column(String(50), unique=True, nullable=False)
    total_amount = Column(Float, nullable=False)
    tax_amount = Column(Float, default=0, nullable=False)
    shipping_cost = Column(Float, default=0, nullable=False)
    discount_amount = Column(Float, default=0, nullable=False)
    shipping_address_id = Column(Integer)
    billing_address_id = Column(Integer)
    notes = Column(Text)
    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False, index=True)
    tracking_number = Column(String(100))
    delivery_man_id = Column(Integer, ForeignKey("users.id"), index=True)
    assigned_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    user = relationship("User", foreign_keys=[user_id])
    delivery_man = relationship("User", foreign_keys=[delivery_man_id])
    items = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id"
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="order_items_quantity_positive"),)
    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price_at_purchase = Column(Float, nullable=False)  # Price snapshot taken when the order was placed
    order = relationship("Order", back_populates="items")
    product = relationship("Product")

    @property
    def product_name(self):
        return self.product.name if self.product else None

    @property
    def product_description(self):
        return self.product.description if self.product else None
