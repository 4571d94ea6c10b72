"""
Database Schemas

Each Pydantic model corresponds to a MongoDB collection (lowercased class name).
Use these models for validation when creating or updating documents; request
bodies live at the bottom of the file.
"""

from pydantic import BaseModel, Field, EmailStr, field_validator
from typing import Optional, List, Literal, Any, Dict
from datetime import datetime

OrderStatus = Literal["pending", "paid", "shipped", "completed", "failed", "canceled"]
DeliveryMethod = Literal["pickup", "shipping"]
Role = Literal["customer", "admin"]

NOTE_MAX_LENGTH = 500


# ---------------------------------
# Catalog
# ---------------------------------

class Category(BaseModel):
    name: str = Field(..., min_length=1, description="Category name")


class ProductOption(BaseModel):
    option_id: Optional[str] = Field(None, description="Stable option id, assigned by the server")
    option_name: str = Field(..., description="Variant label, e.g. size or color")
    price: float = Field(..., ge=0, description="Base price")
    sale_price: Optional[float] = Field(None, ge=0, description="Optional sale price")
    stock: int = Field(0, ge=0, description="Units in stock")


class Product(BaseModel):
    name: str = Field(..., description="Product name")
    description: str = Field(..., description="Product description")
    category_id: str = Field(..., description="Referenced category _id as string")
    image: str = Field(..., description="Primary image URL")
    is_top: bool = Field(False, description="Featured on the home page")
    options: List[ProductOption] = Field(..., min_length=1)


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category_id: Optional[str] = None
    image: Optional[str] = None
    is_top: Optional[bool] = None
    options: Optional[List[ProductOption]] = None


# ---------------------------------
# Users and cart
# ---------------------------------

class CartItem(BaseModel):
    """Embedded in User.cart"""
    product_id: str
    option_id: Optional[str] = None
    option_index: int = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    item_note: str = Field("", max_length=NOTE_MAX_LENGTH)


class User(BaseModel):
    username: str
    password_hash: str
    role: Role = "customer"
    cart: List[CartItem] = Field(default_factory=list)


# ---------------------------------
# Orders
# ---------------------------------

class CustomerDetails(BaseModel):
    full_name: str
    phone: str
    email: str = ""
    city: str = ""
    street: str = ""
    house_number: str = ""
    postal_code: str = ""
    notes: str = ""
    delivery_method: DeliveryMethod = "pickup"
    shipping_fee: float = 0


class OrderItem(BaseModel):
    product_id: str
    option_id: Optional[str] = None
    option_index: int
    product_name: str
    option_name: str
    price: float = Field(..., ge=0, description="Unit price at checkout time")
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None
    item_note: str = ""
    item_image_url: str = ""
    item_image_public_id: str = ""


class Order(BaseModel):
    user_id: str
    customer_details: CustomerDetails
    items: List[OrderItem]
    total_without_tax: float = Field(..., ge=0, description="Items only")
    shipping_fee: float = Field(0, ge=0)
    total_to_pay: float = Field(..., ge=0, description="Items plus shipping")
    status: OrderStatus = "pending"
    stock_deducted: List[int] = Field(default_factory=list, description="Indexes of items already taken from stock")
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    gateway_payload: Optional[Dict[str, Any]] = None


# ---------------------------------
# Request bodies
# ---------------------------------

class Credentials(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class RoleUpdate(BaseModel):
    role: str


class CartAddRequest(BaseModel):
    product_id: str
    option_id: Optional[str] = None
    option_index: Optional[int] = None
    quantity: int = Field(1, ge=1)


class CartLineRequest(BaseModel):
    product_id: str
    option_id: Optional[str] = None
    option_index: Optional[int] = None


class CartUpdateRequest(CartLineRequest):
    quantity: int


class CartNoteRequest(CartLineRequest):
    item_note: Optional[str] = ""


class ItemMeta(BaseModel):
    product_id: str
    option_index: int
    note: str = ""
    image_url: str = ""
    public_id: str = ""


class CheckoutRequest(BaseModel):
    # Required fields are checked by the order service so that the client gets
    # a single readable message instead of a schema dump.
    full_name: str = ""
    phone: str = ""
    email: Optional[EmailStr] = None
    city: str = ""
    street: str = ""
    house_number: str = ""
    postal_code: str = ""
    notes: str = ""
    delivery_method: str = "pickup"
    items_meta: List[ItemMeta] = Field(default_factory=list)

    @field_validator("email", mode="before")
    @classmethod
    def blank_email(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class StatusUpdate(BaseModel):
    status: str


class PaymentStartRequest(BaseModel):
    order_id: str
    supplier: Optional[str] = None
