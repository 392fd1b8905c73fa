"""
Database Schemas

MongoDB collection schemas for the storefront, defined as Pydantic models.
These schemas are used for data validation in the services and the API.

Each top-level model represents a collection in the database.
Model name is converted to lowercase for the collection name:
- User -> "user" collection
- Product -> "product" collection
- Order -> "order" collection

Settings documents live in the "store_settings" collection, one document per
name ("payment_settings", "email_settings", "store_info").
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentGateway(str, Enum):
    COD = "cod"
    RAZORPAY = "razorpay"
    STRIPE = "stripe"


# Payment statuses that mean the money has been captured.
PAID_STATUSES = frozenset({PaymentStatus.PAID.value, PaymentStatus.COMPLETED.value})


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    phone: Optional[str] = Field(None, description="Contact phone")
    password_hash: str = Field(..., description="Password hash (server-side)")
    role: str = Field("customer", description="Role: customer | admin")
    is_active: bool = Field(True, description="Whether user is active")
    created_at: Optional[datetime] = None


class ProductConfiguration(BaseModel):
    values: Dict[str, str] = Field(..., description="Attribute name -> selected option")
    price: Optional[float] = Field(None, ge=0, description="Price override for this combination")
    image: Optional[str] = Field(None, description="Image override for this combination")


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    title: str = Field(..., description="Product title")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Price in major currency units")
    discounted_price: Optional[float] = Field(None, ge=0, description="Sale price, expected below price")
    stock: int = Field(0, ge=0, description="Units in stock")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    configurations: List[ProductConfiguration] = Field(default_factory=list, description="Purchasable option combinations")


class ProductUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    discounted_price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None
    configurations: Optional[List[ProductConfiguration]] = None


class CustomerInfo(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: EmailStr
    address: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)


class CartLine(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    selected_options: Dict[str, str] = Field(default_factory=dict)


class OrderItem(BaseModel):
    product_id: str = Field(..., description="Product ObjectId as string")
    title: str
    price: float
    quantity: int = Field(..., ge=1)
    subtotal: float
    image: Optional[str] = None
    selected_options: Dict[str, str] = Field(default_factory=dict)


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    id: Optional[str] = Field(None, description="Store-assigned ObjectId as string")
    order_id: str = Field(..., description="Human readable id, ORD-YYYYMMDD-XXXX")
    items: List[OrderItem]
    customer: CustomerInfo
    customer_id: Optional[str] = Field(None, description="Linked customer account")
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_gateway: PaymentGateway = PaymentGateway.COD
    payment_details: Dict[str, Any] = Field(default_factory=dict)
    transaction_id: Optional[str] = None
    refund_id: Optional[str] = None
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Order":
        data = dict(doc)
        if "_id" in data:
            data["id"] = str(data.pop("_id"))
        return cls(**data)


# --------------------- Settings ---------------------

class RazorpaySettings(BaseModel):
    key_id: Optional[str] = None
    key_secret: Optional[str] = None
    webhook_secret: Optional[str] = None


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    publishable_key: Optional[str] = None
    webhook_secret: Optional[str] = None


class PaymentSettings(BaseModel):
    """
    Gateway credentials
    Document: store_settings/payment_settings
    """
    currency: str = "INR"
    razorpay: RazorpaySettings = Field(default_factory=RazorpaySettings)
    stripe: StripeSettings = Field(default_factory=StripeSettings)


class SmtpSettings(BaseModel):
    user: Optional[str] = None
    password: Optional[str] = None
    host: str = "smtp.gmail.com"
    port: int = 465


class EmailSettings(BaseModel):
    """
    SMTP credentials
    Document: store_settings/email_settings
    """
    smtp: SmtpSettings = Field(default_factory=SmtpSettings)
    store_owner_email: Optional[str] = None


class StoreInfo(BaseModel):
    """
    Store display and pricing settings
    Document: store_settings/store_info
    """
    store_name: str = "Our Store"
    currency_symbol: str = "₹"
    tax_percentage: float = Field(0, ge=0)
    shipping_cost: float = Field(0, ge=0)
    logo_url: Optional[str] = None
    website: str = "https://yourstore.com"
