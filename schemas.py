"""
Database Schemas for Trendy Jamakapor

Each Pydantic model that maps to a collection uses the lowercased class name
as the collection name:
- Product -> "product" collection
- Order -> "order" collection (keyed by order_id)
"""

from __future__ import annotations
from datetime import datetime
from typing import List, Literal, Optional, get_args

from pydantic import BaseModel, Field, field_validator

Category = Literal["Winter", "Summer", "Shirt", "T-Shirt", "Panjabi", "Other"]
CATEGORIES: List[str] = list(get_args(Category))

# Display order only; any status may be set at any time.
OrderStatus = Literal["Confirmed", "Picked", "In Transit", "Shipped", "Out for delivery", "Delivered", "Cancelled"]
ORDER_STATUSES: List[str] = list(get_args(OrderStatus))


def clean_images(images: Optional[List[str]]) -> Optional[List[str]]:
    if images is None:
        return None
    return [url.strip() for url in images if url and url.strip()]


def check_stock(stock: Optional[dict[str, int]]) -> Optional[dict[str, int]]:
    if stock is None:
        return None
    for size, qty in stock.items():
        # sizes become Mongo field paths under "stock"
        if "." in size or "$" in size:
            raise ValueError(f"size label {size!r} cannot contain '.' or '$'")
        if qty < 0:
            raise ValueError(f"stock for size {size} cannot be negative")
    return {size.strip(): qty for size, qty in stock.items() if size.strip()}


class Product(BaseModel):
    name: str = Field(..., description="Product name")
    slug: str = Field(..., description="URL-friendly identifier")
    description: str = Field("", description="Product description")
    price: float = Field(..., ge=0, description="Price in BDT")
    old_price: Optional[float] = Field(None, ge=0, description="Struck-through price")
    images: List[str] = Field(default_factory=list, description="Image URLs, first is primary")
    stock: dict[str, int] = Field(default_factory=dict, description="Available units per size label")
    category: Category = "Other"

    @field_validator("images")
    @classmethod
    def drop_blank_images(cls, v):
        return clean_images(v)

    @field_validator("stock")
    @classmethod
    def non_negative_stock(cls, v):
        return check_stock(v)


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    old_price: Optional[float] = Field(None, ge=0)
    images: Optional[List[str]] = None
    stock: Optional[dict[str, int]] = None
    category: Optional[Category] = None

    @field_validator("images")
    @classmethod
    def drop_blank_images(cls, v):
        return clean_images(v)

    @field_validator("stock")
    @classmethod
    def non_negative_stock(cls, v):
        return check_stock(v)


class ProductOut(Product):
    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CartItem(BaseModel):
    product_id: str
    size: str
    quantity: int
    name: str = ""
    price: float = Field(0, ge=0, description="Unit price snapshot taken when added to cart")


class OrderItem(BaseModel):
    product_id: str
    name: str
    size: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)


class OrderMeta(BaseModel):
    customer_name: str
    phone: str
    address: str
    location: str
    delivery_charge: float = Field(..., ge=0)
    transaction_id: str = Field(..., description="bKash payment reference")
    customer_uid: Optional[str] = None


class OrderCreate(BaseModel):
    items: List[CartItem]
    customer_name: str
    phone: str
    address: str
    location: str = "Inside Dhaka"
    delivery_charge: Optional[float] = Field(None, ge=0)
    transaction_id: str
    customer_uid: Optional[str] = None
    order_id: Optional[str] = None


class Order(OrderMeta):
    order_id: str
    items: List[OrderItem]
    subtotal: float
    total_amount: float
    status: OrderStatus = "Confirmed"
    timestamp: Optional[datetime] = None


class OrderPlaced(BaseModel):
    order_id: str
    total_amount: float


class StatusUpdate(BaseModel):
    status: OrderStatus
