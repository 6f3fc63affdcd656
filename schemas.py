"""
Database Schemas for the furniture storefront

Each Pydantic model corresponds to a MongoDB collection. The collection name is the snake_case of the class name.

Example: class CategoryDiscount -> collection "category_discount"
"""
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, Field, EmailStr
from datetime import datetime

UserRole = Literal["user", "admin_viewer", "admin_manager"]
DiscountType = Literal["percentage", "fixed_amount"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded", "partially_refunded"]
PaymentMethod = Literal["bank_qr", "esewa", "khalti"]
InventoryType = Literal["sale", "adjustment", "restock"]

# Core domain models

class Address(BaseModel):
    type: Literal["shipping", "billing"] = "shipping"
    first_name: str
    last_name: str
    company: Optional[str] = None
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = "US"
    phone: Optional[str] = None
    is_default: bool = False

class User(BaseModel):
    full_name: Optional[str] = None
    email: EmailStr
    hashed_password: str
    is_active: bool = True
    role: UserRole = "user"

class Category(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    image_url: Optional[str] = None

class CategoryDiscount(BaseModel):
    category_id: str
    discount_percentage: float = Field(..., gt=0, le=100)
    is_active: bool = True
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    category_id: Optional[str] = None
    image_url: Optional[str] = None
    sku: Optional[str] = None
    stock_quantity: int = Field(0, ge=0)
    in_stock: bool = True
    dimensions: Dict[str, Any] = Field(default_factory=dict)
    weight: Optional[float] = Field(None, ge=0)

class Review(BaseModel):
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None

class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)

class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)

class Coupon(BaseModel):
    code: str = Field(..., min_length=1)
    name: str
    description: Optional[str] = None
    discount_type: DiscountType = "percentage"
    discount_value: float = Field(..., gt=0)
    category_id: Optional[str] = None
    min_order_amount: Optional[float] = Field(None, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    used_count: int = Field(0, ge=0)
    is_active: bool = True
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

class OrderItem(BaseModel):
    product_id: str
    product_snapshot: Dict[str, Any] = Field(default_factory=dict)
    quantity: int = Field(1, ge=1)
    unit_price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)

class Order(BaseModel):
    order_number: str
    user_id: str
    items: List[OrderItem]
    shipping_address: Address
    subtotal: float
    discount_amount: float = 0
    shipping_amount: float = 0
    tax_amount: float = 0
    total_amount: float
    coupon_id: Optional[str] = None
    coupon_code: Optional[str] = None
    currency: str = "USD"
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

class InventoryTransaction(BaseModel):
    product_id: str
    type: InventoryType
    quantity_change: int
    quantity_after: int = Field(..., ge=0)
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
