from datetime import datetime
from decimal import Decimal
from enum import Enum
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Any, Optional
import math
import secrets
import string
import time

from commerce_core.core import get_logger
from commerce_core.core_settings import get_settings
from commerce_core.domain.errors import (
    AuthorizationError, ConflictError, InvalidTransition, NotFoundError, ValidationError,
)
from commerce_core.domain.models import (
    Order, OrderDiscount, OrderEvent, OrderLineItem, PaymentTransaction, utcnow,
)
from commerce_core.domain.pricing import ZERO, compute_totals, make_discount, to_money
from commerce_core.domain.status import (
    CANCELLABLE_ORDER_STATUSES, POST_PAYMENT_ORDER_STATUSES, REFUND_TYPES,
    ActorType, FinancialStatus, FulfillmentStatus, OrderStatus, TransactionStatus,
    TransactionType, ensure_transition,
)
from commerce_core.infrastructure.catalog import CatalogClient
from .schemas import OrderCreate, OrderUpdate, Principal

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100
_TOKEN_ALPHABET = string.ascii_uppercase + string.digits

# status -> timestamp stamped when an admin moves the order there
_STATUS_TIMESTAMPS = {
    OrderStatus.PROCESSING: "processed_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

# NOT NULL columns an admin update may change but never clear
_REQUIRED_UPDATE_FIELDS = ("fulfillment_status", "tags")


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _actor_type(principal: Principal) -> ActorType:
    return ActorType.ADMIN if principal.is_admin else ActorType.USER


def _check_paging(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")


def paginate(query, page: int, limit: int) -> tuple[list, dict]:
    _check_paging(page, limit)
    total = query.order_by(None).count()
    rows = query.offset((page - 1) * limit).limit(limit).all()
    return rows, {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if total else 0,
    }


class OrderService:
    def __init__(self, db: Session, catalog: Optional[CatalogClient] = None):
        self.db = db
        self.catalog = catalog
        self.settings = get_settings()

    def _generate_order_number(self) -> str:
        """Human-legible number: ORD-YYYY-<ms suffix><random token>."""
        year = datetime.now().year
        suffix = int(time.time() * 1000) % 1_000_000
        token = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(3))
        return f"{self.settings.ORDER_NUMBER_PREFIX}-{year}-{suffix:06d}{token}"

    def _order_number_taken(self, order_number: str) -> bool:
        return self.db.query(Order.id).filter(Order.order_number == order_number).first() is not None

    def _snapshot_titles(self, item) -> tuple[Optional[str], Optional[str]]:
        product_title, variant_title = item.product_title, item.variant_title
        if self.catalog is None:
            return product_title, variant_title
        if product_title is None:
            product = self.catalog.fetch_product(item.product_id)
            if product:
                product_title = product.get("title") or product.get("name")
        if variant_title is None and item.variant_id:
            variant = self.catalog.fetch_variant(item.product_id, item.variant_id)
            if variant:
                variant_title = variant.get("title") or variant.get("name")
        return product_title, variant_title

    def _load(self, order_id: int, lock: bool = False) -> Order:
        query = self.db.query(Order).filter(Order.id == order_id)
        if lock:
            query = query.with_for_update()
        order = query.first()
        if order is None:
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
        return order

    @staticmethod
    def _check_access(principal: Principal, order: Order) -> None:
        if not principal.is_admin and order.user_id != principal.id:
            raise AuthorizationError("Access denied")

    @staticmethod
    def _require_admin(principal: Principal) -> None:
        if not principal.is_admin:
            raise AuthorizationError("Admin access required", code="INSUFFICIENT_PERMISSIONS")

    def record_event(
        self,
        order: Order,
        event_type: str,
        description: str,
        actor_id: Optional[str],
        actor_type: ActorType,
        previous_values: Optional[dict] = None,
        new_values: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> OrderEvent:
        event = OrderEvent(
            event_type=event_type,
            description=description,
            actor_id=actor_id,
            actor_type=actor_type.value,
            previous_values=previous_values,
            new_values=new_values,
            event_metadata=metadata,
        )
        order.events.append(event)
        return event

    def create_order(self, principal: Principal, data: OrderCreate) -> Order:
        email = data.email or principal.email
        if not email:
            raise ValidationError("Email is required")
        if not data.line_items:
            raise ValidationError("An order needs at least one line item")

        discounts = [make_discount(d.type, d.value) for d in data.discounts]
        totals = compute_totals(
            ((item.price, item.quantity) for item in data.line_items),
            discounts,
            tax=data.tax,
            shipping=data.shipping,
        )
        titles = [self._snapshot_titles(item) for item in data.line_items]
        currency = (data.currency or self.settings.DEFAULT_CURRENCY).upper()

        for attempt in range(1, self.settings.ORDER_NUMBER_ATTEMPTS + 1):
            order_number = self._generate_order_number()
            order = Order(
                order_number=order_number,
                user_id=principal.id,
                email=email,
                status=OrderStatus.PENDING.value,
                financial_status=FinancialStatus.PENDING.value,
                fulfillment_status=FulfillmentStatus.UNFULFILLED.value,
                subtotal_price=totals.subtotal,
                total_tax=totals.tax,
                total_shipping=totals.shipping,
                total_discounts=totals.total_discounts,
                total_price=totals.total,
                currency=currency,
                customer_info=data.customer_info,
                billing_address=data.billing_address.model_dump() if data.billing_address else None,
                shipping_address=data.shipping_address.model_dump() if data.shipping_address else None,
                notes=data.notes,
                tags=list(data.tags),
            )
            for item, priced, (product_title, variant_title) in zip(data.line_items, totals.lines, titles):
                order.line_items.append(OrderLineItem(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    sku=item.sku,
                    quantity=priced.quantity,
                    price=priced.price,
                    total_price=priced.total,
                    product_title=product_title,
                    variant_title=variant_title,
                    properties=item.properties,
                ))
            for requested, discount, amount in zip(data.discounts, discounts, totals.discount_amounts):
                order.discounts.append(OrderDiscount(
                    code=requested.code,
                    type=discount.type.value,
                    value=to_money(discount.value),
                    amount=amount,
                    title=requested.title or requested.code or f"{discount.type.value} discount",
                    description=requested.description,
                ))
            self.record_event(
                order,
                "created",
                f"Order {order_number} created",
                actor_id=principal.id,
                actor_type=_actor_type(principal),
                new_values={"status": OrderStatus.PENDING.value, "total_price": str(totals.total)},
                metadata={"line_item_count": len(order.line_items), "discount_count": len(order.discounts)},
            )
            self.db.add(order)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                if self._order_number_taken(order_number):
                    logger.warning(f"Order number collision on {order_number} (attempt {attempt})")
                    continue
                raise
            self.db.refresh(order)
            logger.info(
                f"Order created: {order.order_number}",
                extra={'extra_fields': {
                    'order_id': order.id,
                    'order_number': order.order_number,
                    'subtotal': str(order.subtotal_price),
                    'total': str(order.total_price),
                    'line_items': len(order.line_items),
                }},
            )
            return order

        raise ConflictError("Could not allocate a unique order number", code="ORDER_NUMBER_CONFLICT")

    def get_order(self, principal: Principal, order_id: int) -> Order:
        order = self._load(order_id)
        self._check_access(principal, order)
        return order

    def get_events(self, principal: Principal, order_id: int) -> list[OrderEvent]:
        return list(self.get_order(principal, order_id).events)

    def list_user_orders(
        self,
        principal: Principal,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ):
        query = self.db.query(Order).filter(Order.user_id == principal.id)
        if status:
            query = query.filter(Order.status == status)
        if start_date:
            query = query.filter(Order.created_at >= start_date)
        if end_date:
            query = query.filter(Order.created_at <= end_date)
        return paginate(query.order_by(Order.created_at.desc(), Order.id.desc()), page, limit)

    def list_all_orders(
        self,
        principal: Principal,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        financial_status: Optional[str] = None,
        fulfillment_status: Optional[str] = None,
        search: Optional[str] = None,
    ):
        self._require_admin(principal)
        query = self.db.query(Order)
        if status:
            query = query.filter(Order.status == status)
        if financial_status:
            query = query.filter(Order.financial_status == financial_status)
        if fulfillment_status:
            query = query.filter(Order.fulfillment_status == fulfillment_status)
        if search:
            pattern = f"%{search.lower()}%"
            query = query.filter(or_(
                func.lower(Order.order_number).like(pattern),
                func.lower(Order.email).like(pattern),
            ))
        return paginate(query.order_by(Order.created_at.desc(), Order.id.desc()), page, limit)

    def cancel_order(self, principal: Principal, order_id: int, reason: Optional[str] = None) -> Order:
        order = self._load(order_id, lock=True)
        self._check_access(principal, order)
        if OrderStatus(order.status) not in CANCELLABLE_ORDER_STATUSES:
            raise InvalidTransition(
                f"Order cannot be cancelled in status '{order.status}'",
                code="ORDER_NOT_CANCELLABLE",
            )
        previous = order.status
        order.status = OrderStatus.CANCELLED.value
        order.cancelled_at = utcnow()
        self.record_event(
            order,
            "cancelled",
            f"Order cancelled{': ' + reason if reason else ''}",
            actor_id=principal.id,
            actor_type=_actor_type(principal),
            previous_values={"status": previous},
            new_values={"status": order.status},
            metadata={"reason": reason} if reason else None,
        )
        self.db.commit()
        self.db.refresh(order)
        logger.info(
            f"Order cancelled: {order.order_number}",
            extra={'extra_fields': {'order_id': order.id, 'previous_status': previous}},
        )
        return order

    def update_order(self, principal: Principal, order_id: int, data: OrderUpdate) -> Order:
        """Admin update; records only the fields that actually changed."""
        self._require_admin(principal)
        order = self._load(order_id, lock=True)
        requested = data.model_dump(exclude_unset=True)
        cleared = sorted(f for f in _REQUIRED_UPDATE_FIELDS if f in requested and requested[f] is None)
        if cleared:
            raise ValidationError(f"{', '.join(cleared)} cannot be null")

        previous: dict[str, Any] = {}
        new: dict[str, Any] = {}

        def apply(field: str, value: Any) -> None:
            current = getattr(order, field)
            if _jsonable(current) == _jsonable(value):
                return
            previous[field] = _jsonable(current)
            new[field] = _jsonable(value)
            setattr(order, field, value)

        target = requested.pop("status", None)
        if target is not None and target.value != order.status:
            if target == OrderStatus.REFUNDED:
                raise InvalidTransition(
                    "Orders move to refunded only through a refund",
                    code="INVALID_STATUS_TRANSITION",
                )
            ensure_transition(order.status, target.value)
            apply("status", target.value)
            stamp = _STATUS_TIMESTAMPS.get(target)
            if stamp:
                apply(stamp, utcnow())
            if target in (OrderStatus.SHIPPED, OrderStatus.DELIVERED):
                requested.setdefault("fulfillment_status", FulfillmentStatus.FULFILLED)

        for field, value in requested.items():
            if field == "fulfillment_status" and value is not None:
                value = FulfillmentStatus(value).value
            apply(field, value)

        if not new:
            return order

        status_changed = "status" in new
        self.record_event(
            order,
            "status_changed" if status_changed else "updated",
            f"Status changed from {previous['status']} to {new['status']}" if status_changed
            else f"Updated {', '.join(sorted(new))}",
            actor_id=principal.id,
            actor_type=ActorType.ADMIN,
            previous_values=previous,
            new_values=new,
        )
        self.db.commit()
        self.db.refresh(order)
        logger.info(
            f"Order updated: {order.order_number}",
            extra={'extra_fields': {'order_id': order.id, 'fields': sorted(new)}},
        )
        return order

    def apply_payment_settlement(
        self,
        order_id: int,
        actor_id: Optional[str] = None,
        actor_type: ActorType = ActorType.SYSTEM,
        source: Optional[str] = None,
    ) -> Optional[Order]:
        """Recompute financial status from settled transactions.

        Runs inside the caller's transaction and never commits. Calling it
        again with no new settled money changes nothing.
        """
        self.db.flush()
        order = self.db.query(Order).filter(Order.id == order_id).with_for_update().first()
        if order is None:
            return None

        def settled(types) -> Decimal:
            amount = self.db.query(func.coalesce(func.sum(PaymentTransaction.amount), 0)).filter(
                PaymentTransaction.order_id == order.id,
                PaymentTransaction.currency == order.currency,
                PaymentTransaction.type.in_(types),
                PaymentTransaction.status == TransactionStatus.SUCCEEDED.value,
            ).scalar()
            return to_money(amount or ZERO)

        paid = settled((TransactionType.PAYMENT.value,))
        refunded = settled(REFUND_TYPES)

        financial = order.financial_status
        if refunded > 0:
            financial = (FinancialStatus.REFUNDED if refunded >= paid else FinancialStatus.PARTIALLY_REFUNDED).value
        elif paid > 0:
            financial = (FinancialStatus.PAID if paid >= order.total_price else FinancialStatus.PARTIALLY_PAID).value

        status = order.status
        if financial == FinancialStatus.PAID.value and status == OrderStatus.PENDING.value:
            status = OrderStatus.CONFIRMED.value
        elif financial == FinancialStatus.REFUNDED.value and OrderStatus(status) in POST_PAYMENT_ORDER_STATUSES:
            status = OrderStatus.REFUNDED.value

        if financial == order.financial_status and status == order.status:
            return order

        previous = {"financial_status": order.financial_status}
        new = {"financial_status": financial}
        if status != order.status:
            ensure_transition(order.status, status)
            previous["status"] = order.status
            new["status"] = status
            order.status = status
        order.financial_status = financial

        self.record_event(
            order,
            "payment_settled" if refunded == 0 else "refund_settled",
            f"Financial status changed to {financial}",
            actor_id=actor_id,
            actor_type=actor_type,
            previous_values=previous,
            new_values=new,
            metadata={"paid": str(paid), "refunded": str(refunded), "source": source},
        )
        logger.info(
            f"Order {order.order_number} settled as {financial}",
            extra={'extra_fields': {
                'order_id': order.id, 'paid': str(paid), 'refunded': str(refunded), 'status': order.status,
            }},
        )
        return order

    def record_payment_failure(
        self,
        order_id: int,
        failure_code: Optional[str],
        failure_message: Optional[str],
        transaction_id: Optional[int] = None,
    ) -> None:
        """Audit a failed charge on the order; caller commits."""
        order = self.db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            return
        self.record_event(
            order,
            "payment_failed",
            failure_message or "Payment failed",
            actor_id=None,
            actor_type=ActorType.SYSTEM,
            metadata={"failure_code": failure_code, "transaction_id": transaction_id},
        )
