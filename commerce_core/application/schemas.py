from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from commerce_core.domain.status import DiscountType, FulfillmentStatus, OrderStatus

ADMIN_ROLE = "admin"


class Principal(BaseModel):
    """Caller identity resolved upstream."""
    id: str
    role: str = "customer"
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


class Address(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None
    zip: Optional[str] = None
    phone: Optional[str] = None


# Orders

class LineItemCreate(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    sku: Optional[str] = None
    quantity: int
    price: Decimal
    product_title: Optional[str] = None
    variant_title: Optional[str] = None
    properties: Optional[dict[str, str]] = None


class DiscountCreate(BaseModel):
    code: Optional[str] = None
    type: DiscountType
    value: Decimal
    title: Optional[str] = None
    description: Optional[str] = None


class OrderCreate(BaseModel):
    email: Optional[str] = None
    currency: Optional[str] = None
    line_items: list[LineItemCreate]
    discounts: list[DiscountCreate] = []
    tax: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    customer_info: Optional[dict[str, Any]] = None
    billing_address: Optional[Address] = None
    shipping_address: Optional[Address] = None
    notes: Optional[str] = None
    tags: list[str] = []


class OrderUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    fulfillment_status: Optional[FulfillmentStatus] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    notes: Optional[str] = None
    tags: Optional[list[str]] = None


class OrderCancel(BaseModel):
    reason: Optional[str] = None


class OrderLineItemRead(BaseModel):
    id: int
    product_id: str
    variant_id: Optional[str] = None
    sku: Optional[str] = None
    quantity: int
    price: Decimal
    total_price: Decimal
    product_title: Optional[str] = None
    variant_title: Optional[str] = None
    properties: Optional[dict[str, str]] = None
    class Config:
        from_attributes = True


class OrderDiscountRead(BaseModel):
    id: int
    code: Optional[str] = None
    type: str
    value: Decimal
    amount: Decimal
    title: str
    description: Optional[str] = None
    class Config:
        from_attributes = True


class OrderEventRead(BaseModel):
    id: int
    event_type: str
    description: Optional[str] = None
    actor_id: Optional[str] = None
    actor_type: str
    previous_values: Optional[dict[str, Any]] = None
    new_values: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = Field(default=None, validation_alias="event_metadata")
    created_at: datetime
    class Config:
        from_attributes = True


class OrderSummary(BaseModel):
    id: int
    order_number: str
    user_id: str
    email: str
    status: str
    financial_status: str
    fulfillment_status: str
    subtotal_price: Decimal
    total_tax: Decimal
    total_shipping: Decimal
    total_discounts: Decimal
    total_price: Decimal
    currency: str
    created_at: datetime
    class Config:
        from_attributes = True


class OrderRead(OrderSummary):
    customer_info: Optional[dict[str, Any]] = None
    billing_address: Optional[dict[str, Any]] = None
    shipping_address: Optional[dict[str, Any]] = None
    notes: Optional[str] = None
    tags: list[str] = []
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    processed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    line_items: list[OrderLineItemRead] = []
    discounts: list[OrderDiscountRead] = []


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class OrderPage(BaseModel):
    orders: list[OrderSummary]
    pagination: Pagination


# Cart

class CartItemAdd(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = 1
    properties: Optional[dict[str, str]] = None


class CartItemUpdate(BaseModel):
    quantity: int
    properties: Optional[dict[str, str]] = None


class CartLineItemRead(BaseModel):
    id: int
    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    properties: Optional[dict[str, str]] = None
    created_at: datetime
    class Config:
        from_attributes = True


class CartRead(BaseModel):
    id: int
    user_id: Optional[str] = None
    currency: str
    expires_at: Optional[datetime] = None
    line_items: list[CartLineItemRead] = []
    item_count: int = 0
    class Config:
        from_attributes = True


# Payments

class CardDetails(BaseModel):
    number: str
    exp_month: int
    exp_year: int
    cvc: Optional[str] = None
    brand: Optional[str] = None


class PaymentMethodCreate(BaseModel):
    type: str = "card"
    card: Optional[CardDetails] = None
    billing_address: Optional[Address] = None
    is_default: bool = False


class PaymentMethodRead(BaseModel):
    id: int
    type: str
    provider: str
    last4: Optional[str] = None
    brand: Optional[str] = None
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None
    billing_address: Optional[dict[str, Any]] = None
    is_default: bool
    created_at: datetime
    class Config:
        from_attributes = True


class PaymentIntentCreate(BaseModel):
    order_id: Optional[int] = None
    amount: Decimal
    currency: Optional[str] = None
    payment_method_id: Optional[int] = None
    description: Optional[str] = None
    metadata: Optional[dict[str, str]] = None


class PaymentIntentRead(BaseModel):
    transaction_id: int
    payment_intent_id: str
    client_secret: Optional[str] = None
    status: str
    amount: Decimal
    currency: str


class PaymentConfirm(BaseModel):
    payment_intent_id: str
    payment_method_id: Optional[int] = None


class RefundCreate(BaseModel):
    transaction_id: int
    amount: Optional[Decimal] = None
    reason: Optional[str] = None


class TransactionRead(BaseModel):
    id: int
    order_id: Optional[int] = None
    type: str
    status: str
    amount: Decimal
    currency: str
    provider: str
    payment_intent_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    parent_transaction_id: Optional[int] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    description: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    class Config:
        from_attributes = True


class TransactionPage(BaseModel):
    transactions: list[TransactionRead]
    pagination: Pagination


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False
    event_id: Optional[str] = None
