"""
Database Schemas for the storefront

Each Pydantic model maps to a MongoDB collection (lowercased class name).
References to other documents are stored as hex id strings.

Collections:
- user
- category
- brand
- supplier
- product
- cart
- favourite
- order
- purchaseinvoice
- review
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    zip_code: Optional[str] = None


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lowercased")
    password_hash: str = Field(..., description="BCrypt password hash")
    phone: Optional[str] = None
    address: Optional[Address] = None
    role: Literal["user", "admin"] = Field("user", description="User role")
    login_attempts: int = Field(0, ge=0, description="Consecutive failed logins")
    lock_until: Optional[datetime] = Field(None, description="Login locked until this time")
    is_active: bool = Field(True, description="Whether the account may sign in")


class Category(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class Brand(BaseModel):
    name: str = Field(..., min_length=1, max_length=30)


class Supplier(BaseModel):
    name: str
    email: EmailStr
    phone: str
    address: Optional[Address] = None
    company: Optional[str] = None
    is_active: bool = True


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    user_id: str = Field(..., description="Admin who created the product")
    name: str = Field(..., description="Product name")
    description: str = Field(..., description="Product description")
    price: float = Field(..., ge=0, description="Selling price")
    category_id: str
    brand_id: str
    supplier_id: Optional[str] = None
    stock: int = Field(0, ge=0, description="Units in stock")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    rating: float = Field(0, ge=0, le=5, description="Mean of approved review ratings")
    num_reviews: int = Field(0, ge=0, description="Count of approved reviews")
    is_featured: bool = False
    is_active: bool = True
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0, description="Unit price when added")


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_price: float = 0


class Favourite(BaseModel):
    user_id: str
    product_ids: List[str] = Field(default_factory=list)


class OrderItem(BaseModel):
    product_id: str
    name: str
    image: str = ""
    quantity: int = Field(1, ge=1)
    price: float
    total_price: float


class ShippingAddress(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class PaymentResult(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    update_time: Optional[str] = None
    email_address: Optional[str] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    order_number: str
    user_id: str
    items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: str
    payment_result: Optional[PaymentResult] = None
    order_status: OrderStatus = Field("pending", description="pending | processing | shipped | delivered | cancelled")
    subtotal: float = Field(..., ge=0)
    shipping_cost: float = 0
    tax_amount: float = 0
    total_amount: float
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None


class PurchaseInvoiceItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0, description="Cost paid to the supplier")
    total_price: float


class PurchaseInvoice(BaseModel):
    """
    Purchase invoices collection schema
    Collection name: "purchaseinvoice"
    """
    invoice_number: str
    supplier_id: str
    received_by: str
    items: List[PurchaseInvoiceItem]
    subtotal: float = Field(..., ge=0)
    shipping_cost: float = 0
    tax_amount: float = 0
    total_amount: float


class Review(BaseModel):
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str
    is_approved: bool = False
