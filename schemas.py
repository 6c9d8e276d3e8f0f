"""
Database Schemas

MongoDB collection schemas as Pydantic models.
Each Pydantic model represents a collection in the database.
Model name lowercased is the collection name.

Request payloads used by the routes live at the bottom of this module.
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, ValidationInfo, field_validator

ProductCategory = Literal["electronics", "clothing", "books", "home", "sports", "health", "food", "other"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]
PaymentMethod = Literal["credit_card", "debit_card", "paypal", "cash_on_delivery"]

CANCELLABLE_STATUSES = ("pending", "confirmed")
REVENUE_STATUSES = ("processing", "shipped", "delivered")
VERIFIED_PURCHASE_STATUSES = ("shipped", "delivered")


class User(BaseModel):
    username: str = Field(..., min_length=3, max_length=30, pattern=r"^[A-Za-z0-9]+$")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt hashed password")
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    role: Literal["user", "admin"] = Field("user", description="Role: user | admin")
    is_active: bool = True


class Dimensions(BaseModel):
    length: Optional[float] = Field(None, ge=0)
    width: Optional[float] = Field(None, ge=0)
    height: Optional[float] = Field(None, ge=0)


class Product(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=1000)
    price: float = Field(..., ge=0)
    category: ProductCategory
    brand: str = Field(..., min_length=1, max_length=50)
    stock: int = Field(0, ge=0)
    images: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    specifications: Dict[str, str] = Field(default_factory=dict)
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dimensions] = None
    is_active: bool = True
    created_by: str = Field(..., description="Id of the admin who created the product")


class CartLine(BaseModel):
    id: str
    product_id: str
    quantity: int = Field(..., ge=1, le=99)
    price: float = Field(..., ge=0, description="Unit price when the line was last touched")


class Address(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at purchase")


class Order(BaseModel):
    order_number: str
    user_id: str
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    shipping_address: Address
    billing_address: Address
    payment_method: PaymentMethod
    notes: Optional[str] = Field(None, max_length=500)
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class Review(BaseModel):
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=1, max_length=100)
    comment: str = Field(..., min_length=1, max_length=1000)
    images: List[str] = Field(default_factory=list)
    verified: bool = False
    helpful: int = Field(0, ge=0)
    reported: bool = False


# Request payloads

class PartialUpdate(BaseModel):
    """Base for partial updates: fields may be omitted but not sent as null."""

    @field_validator("*", mode="before")
    @classmethod
    def reject_null(cls, value, info: ValidationInfo):
        if value is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return value


class RegisterInput(BaseModel):
    username: str = Field(..., min_length=3, max_length=30, pattern=r"^[A-Za-z0-9]+$")
    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)


class LoginInput(BaseModel):
    email: EmailStr
    password: str


class ProductIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=1000)
    price: float = Field(..., ge=0)
    category: ProductCategory
    brand: str = Field(..., min_length=1, max_length=50)
    stock: int = Field(0, ge=0)
    images: List[str] = []
    tags: List[str] = []
    specifications: Dict[str, str] = {}
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dimensions] = None


class ProductUpdate(PartialUpdate):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=1000)
    price: Optional[float] = Field(None, ge=0)
    category: Optional[ProductCategory] = None
    brand: Optional[str] = Field(None, min_length=1, max_length=50)
    images: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    specifications: Optional[Dict[str, str]] = None
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dimensions] = None


class StockUpdate(BaseModel):
    stock: int = Field(..., ge=0)


class CartItemIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1, le=99)


class CartQuantity(BaseModel):
    quantity: int = Field(..., ge=1, le=99)


class CheckoutInput(BaseModel):
    shipping_address: Address
    billing_address: Address
    payment_method: PaymentMethod
    notes: Optional[str] = Field(None, max_length=500)


class OrderLineIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class OrderInput(CheckoutInput):
    items: List[OrderLineIn] = Field(..., min_length=1)


class StatusUpdate(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = Field(None, min_length=1)


class ReviewIn(BaseModel):
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=1, max_length=100)
    comment: str = Field(..., min_length=1, max_length=1000)
    images: List[str] = []


class ReviewUpdate(PartialUpdate):
    rating: Optional[int] = Field(None, ge=1, le=5)
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    comment: Optional[str] = Field(None, min_length=1, max_length=1000)
    images: Optional[List[str]] = None


class UserUpdate(PartialUpdate):
    username: Optional[str] = Field(None, min_length=3, max_length=30, pattern=r"^[A-Za-z0-9]+$")
    email: Optional[EmailStr] = None
    first_name: Optional[str] = Field(None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(None, min_length=1, max_length=50)
