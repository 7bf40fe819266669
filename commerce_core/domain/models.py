from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric,
    String, Text, UniqueConstraint, text,
)
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from .status import (
    FinancialStatus, FulfillmentStatus, OrderStatus, TransactionStatus, WebhookStatus,
)

MONEY = Numeric(12, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat those as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("subtotal_price >= 0", name="ck_orders_subtotal_non_negative"),
        CheckConstraint("total_tax >= 0", name="ck_orders_tax_non_negative"),
        CheckConstraint("total_shipping >= 0", name="ck_orders_shipping_non_negative"),
        CheckConstraint("total_discounts >= 0", name="ck_orders_discounts_non_negative"),
        CheckConstraint("total_price >= 0", name="ck_orders_total_non_negative"),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    # Owner comes from the identity service (no FK)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    email: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(30), default=OrderStatus.PENDING.value, index=True)
    financial_status: Mapped[str] = mapped_column(String(30), default=FinancialStatus.PENDING.value)
    fulfillment_status: Mapped[str] = mapped_column(String(30), default=FulfillmentStatus.UNFULFILLED.value)

    subtotal_price: Mapped[Decimal] = mapped_column(MONEY)
    total_tax: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    total_shipping: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    total_discounts: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    total_price: Mapped[Decimal] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    # Snapshots taken when the order is placed
    customer_info: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    billing_address: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    shipping_address: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)

    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tracking_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    carrier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    line_items: Mapped[list["OrderLineItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderLineItem.id"
    )
    discounts: Mapped[list["OrderDiscount"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderDiscount.id"
    )
    events: Mapped[list["OrderEvent"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderEvent.id"
    )
    transactions: Mapped[list["PaymentTransaction"]] = relationship(
        back_populates="order", order_by="PaymentTransaction.id", viewonly=True
    )


class OrderLineItem(Base):
    __tablename__ = "order_line_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_line_items_quantity_positive"),
        CheckConstraint("price >= 0", name="ck_order_line_items_price_non_negative"),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    # Catalog references (no FK, catalog lives in another service)
    product_id: Mapped[str] = mapped_column(String(64))
    variant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sku: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    quantity: Mapped[int]
    price: Mapped[Decimal] = mapped_column(MONEY)
    total_price: Mapped[Decimal] = mapped_column(MONEY)
    product_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    variant_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    properties: Mapped[Optional[dict[str, str]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    order: Mapped[Order] = relationship(back_populates="line_items")


class OrderDiscount(Base):
    __tablename__ = "order_discounts"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    type: Mapped[str] = mapped_column(String(20))
    value: Mapped[Decimal] = mapped_column(MONEY)
    # Resolved currency amount, frozen at creation
    amount: Mapped[Decimal] = mapped_column(MONEY)
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    order: Mapped[Order] = relationship(back_populates="discounts")


class OrderEvent(Base):
    """Append-only audit trail of an order."""
    __tablename__ = "order_events"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    event_type: Mapped[str] = mapped_column(String(50))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    actor_type: Mapped[str] = mapped_column(String(20))
    previous_values: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    new_values: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    event_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    order: Mapped[Order] = relationship(back_populates="events")


class ShoppingCart(Base):
    __tablename__ = "shopping_carts"
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    # Guest carts are keyed by session instead of user
    session_id: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    line_items: Mapped[list["CartLineItem"]] = relationship(
        back_populates="cart", cascade="all, delete-orphan", order_by="CartLineItem.id"
    )

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.line_items)


class CartLineItem(Base):
    __tablename__ = "cart_line_items"
    __table_args__ = (
        UniqueConstraint(
            "cart_id", "product_id", "variant_id",
            name="uq_cart_line_items_product",
            postgresql_nulls_not_distinct=True,
        ),
        CheckConstraint("quantity > 0", name="ck_cart_line_items_quantity_positive"),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    cart_id: Mapped[int] = mapped_column(ForeignKey("shopping_carts.id", ondelete="CASCADE"), index=True)
    product_id: Mapped[str] = mapped_column(String(64))
    variant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    quantity: Mapped[int]
    properties: Mapped[Optional[dict[str, str]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    cart: Mapped[ShoppingCart] = relationship(back_populates="line_items")


class PaymentCustomer(Base):
    """Provider-side customer handle per user."""
    __tablename__ = "payment_customers"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_payment_customers_user_provider"),)
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64))
    provider: Mapped[str] = mapped_column(String(30))
    provider_customer_id: Mapped[str] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class PaymentMethod(Base):
    __tablename__ = "payment_methods"
    __table_args__ = (
        # at most one active default per user
        Index(
            "uq_payment_methods_user_default", "user_id", unique=True,
            postgresql_where=text("is_default AND is_active"),
            sqlite_where=text("is_default = 1 AND is_active = 1"),
        ),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    type: Mapped[str] = mapped_column(String(30))
    provider: Mapped[str] = mapped_column(String(30))
    # Display metadata only; card data stays with the provider
    last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    brand: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    expiry_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    expiry_year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    provider_customer_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    provider_payment_method_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    billing_address: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_transactions_amount_positive"),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[Optional[int]] = mapped_column(ForeignKey("orders.id"), nullable=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    payment_method_id: Mapped[Optional[int]] = mapped_column(ForeignKey("payment_methods.id"), nullable=True)
    type: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20), default=TransactionStatus.PENDING.value)
    amount: Mapped[Decimal] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    provider: Mapped[str] = mapped_column(String(30))
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    provider_customer_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    client_secret: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    failure_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    failure_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transaction_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)

    parent_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("payment_transactions.id"), nullable=True, index=True
    )
    webhook_received: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    order: Mapped[Optional[Order]] = relationship(back_populates="transactions")
    parent: Mapped[Optional["PaymentTransaction"]] = relationship(remote_side="PaymentTransaction.id")


class WebhookEvent(Base):
    __tablename__ = "payment_webhooks"
    id: Mapped[int] = mapped_column(primary_key=True)
    provider: Mapped[str] = mapped_column(String(30))
    event_type: Mapped[str] = mapped_column(String(100))
    # Deduplication key
    event_id: Mapped[str] = mapped_column(String(255), unique=True)
    status: Mapped[str] = mapped_column(String(20), default=WebhookStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    payload: Mapped[Any] = mapped_column(JSON)
    signature: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    payment_method_id: Mapped[Optional[int]] = mapped_column(ForeignKey("payment_methods.id"), nullable=True)
    provider: Mapped[str] = mapped_column(String(30))
    provider_subscription_id: Mapped[str] = mapped_column(String(100), unique=True)
    status: Mapped[str] = mapped_column(String(30))
    interval: Mapped[str] = mapped_column(String(10), default="month")
    interval_count: Mapped[int] = mapped_column(Integer, default=1)
    amount: Mapped[Decimal] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    invoices: Mapped[list["SubscriptionInvoice"]] = relationship(
        back_populates="subscription", cascade="all, delete-orphan", order_by="SubscriptionInvoice.id"
    )


class SubscriptionInvoice(Base):
    __tablename__ = "subscription_invoices"
    id: Mapped[int] = mapped_column(primary_key=True)
    subscription_id: Mapped[int] = mapped_column(ForeignKey("subscriptions.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(String(64))
    provider: Mapped[str] = mapped_column(String(30))
    provider_invoice_id: Mapped[str] = mapped_column(String(100), unique=True)
    status: Mapped[str] = mapped_column(String(20))
    amount: Mapped[Decimal] = mapped_column(MONEY)
    amount_paid: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    subscription: Mapped[Subscription] = relationship(back_populates="invoices")
