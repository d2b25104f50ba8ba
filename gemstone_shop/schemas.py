from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from gemstone_shop.models import ProductType, Role


class RegisterUserRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    full_name: str = Field(min_length=2, max_length=100)
    phone: Optional[str] = Field(default=None, pattern=r"^[0-9]{8,15}$")


class ProfileUpdateRequest(BaseModel):
    full_name: str = Field(min_length=2, max_length=100)
    phone: Optional[str] = Field(default=None, pattern=r"^[0-9]{8,15}$")


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class SetRoleRequest(BaseModel):
    role: Role


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    full_name: str
    phone: Optional[str] = None
    role: str
    is_active: bool
    created_at: Optional[datetime] = None


class ProductCreateRequest(BaseModel):
    name: str = Field(min_length=3, max_length=255)
    type: ProductType = ProductType.OTHER
    description: Optional[str] = Field(default=None, max_length=1000)
    price: float = Field(ge=0)
    quantity_in_stock: int = Field(ge=0)


class StockUpdateRequest(BaseModel):
    quantity_in_stock: int = Field(ge=0)


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: str
    description: Optional[str] = None
    price: float
    quantity_in_stock: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderItemRequest(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)
    price_at_purchase: float = Field(ge=0)


class CreateOrderRequest(BaseModel):
    order_number: Optional[str] = Field(default=None, max_length=50)
    total_amount: float = Field(ge=0)
    tax_amount: Optional[float] = Field(default=0, ge=0)
    shipping_cost: Optional[float] = Field(default=0, ge=0)
    discount_amount: Optional[float] = Field(default=0, ge=0)
    shipping_address_id: Optional[int] = None
    billing_address_id: Optional[int] = None
    notes: Optional[str] = None
    order_items: List[OrderItemRequest] = Field(default_factory=list)


class UpdateStatusRequest(BaseModel):
    # Kept as a plain string so an unknown status is reported by the workflow check
    status: str
    tracking_number: Optional[str] = None


class AssignDeliveryRequest(BaseModel):
    delivery_man_id: Optional[int] = None


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    product_id: int
    quantity: int
    price_at_purchase: float
    product_name: Optional[str] = None
    product_description: Optional[str] = None


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    order_number: str
    total_amount: float
    tax_amount: float
    shipping_cost: float
    discount_amount: float
    shipping_address_id: Optional[int] = None
    billing_address_id: Optional[int] = None
    notes: Optional[str] = None
    status: str
    tracking_number: Optional[str] = None
    delivery_man_id: Optional[int] = None
    assigned_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
