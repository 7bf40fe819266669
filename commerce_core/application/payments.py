from decimal import Decimal
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Optional

from commerce_core.core import get_logger
from commerce_core.core_settings import get_settings
from commerce_core.domain.errors import (
    AuthorizationError, ConflictError, InvalidTransition, NotFoundError, PaymentGatewayError,
    ValidationError,
)
from commerce_core.domain.models import (
    Order, PaymentCustomer, PaymentMethod, PaymentTransaction, utcnow,
)
from commerce_core.domain.pricing import ZERO, to_minor_units, to_money
from commerce_core.domain.status import (
    REFUND_TYPES, RESERVING_REFUND_STATUSES, ActorType, OrderStatus, TransactionStatus,
    TransactionType,
)
from commerce_core.infrastructure.gateway import GatewayCaller, PaymentGateway, get_gateway_caller
from .orders import OrderService, paginate
from .schemas import PaymentMethodCreate, Principal

logger = get_logger(__name__)

_GATEWAY_STATUSES = {
    "succeeded": TransactionStatus.SUCCEEDED,
    "processing": TransactionStatus.PROCESSING,
    "requires_capture": TransactionStatus.PROCESSING,
    "requires_action": TransactionStatus.REQUIRES_ACTION,
    "canceled": TransactionStatus.CANCELLED,
    "failed": TransactionStatus.FAILED,
}

_UNPAYABLE_ORDER_STATUSES = (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value)


def map_gateway_status(status: Optional[str]) -> str:
    """Local transaction status for a provider intent/refund status."""
    return _GATEWAY_STATUSES.get(status, TransactionStatus.PENDING).value


class PaymentService:
    def __init__(self, db: Session, gateway: PaymentGateway, caller: Optional[GatewayCaller] = None):
        self.db = db
        self.gateway = gateway
        self.caller = caller or get_gateway_caller()
        self.orders = OrderService(db)
        self.settings = get_settings()

    # Customers and payment methods

    def _find_customer(self, user_id: str) -> Optional[PaymentCustomer]:
        return self.db.query(PaymentCustomer).filter(
            PaymentCustomer.user_id == user_id,
            PaymentCustomer.provider == self.gateway.name,
        ).first()

    def _resolve_customer(self, principal: Principal) -> str:
        """Provider customer id for the caller, created on first use."""
        existing = self._find_customer(principal.id)
        if existing is not None:
            return existing.provider_customer_id

        customer = self.caller(
            "create_customer",
            self.gateway.create_customer,
            principal.email or "",
            None,
            {"user_id": principal.id},
        )
        self.db.add(PaymentCustomer(
            user_id=principal.id,
            provider=self.gateway.name,
            provider_customer_id=customer.id,
        ))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._find_customer(principal.id)
            if existing is None:
                raise ConflictError("Payment customer could not be recorded")
            return existing.provider_customer_id
        return customer.id

    def _owned_method(self, principal: Principal, method_id: int) -> PaymentMethod:
        method = self.db.query(PaymentMethod).filter(
            PaymentMethod.id == method_id,
            PaymentMethod.user_id == principal.id,
            PaymentMethod.is_active.is_(True),
        ).first()
        if method is None:
            raise NotFoundError("Payment method not found", code="PAYMENT_METHOD_NOT_FOUND")
        return method

    def _lock_user_methods(self, user_id: str) -> list[PaymentMethod]:
        return self.db.query(PaymentMethod).filter(
            PaymentMethod.user_id == user_id,
            PaymentMethod.is_active.is_(True),
        ).order_by(PaymentMethod.id).with_for_update().all()

    def _commit_default_change(self) -> None:
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Default payment method changed concurrently", code="DEFAULT_METHOD_CONFLICT")

    def add_payment_method(self, principal: Principal, data: PaymentMethodCreate) -> PaymentMethod:
        if data.type == "card" and data.card is None:
            raise ValidationError("Card details are required for card payment methods")

        customer_id = self._resolve_customer(principal)
        billing = data.billing_address.model_dump() if data.billing_address else None
        created = self.caller(
            "create_payment_method",
            self.gateway.create_payment_method,
            data.type,
            data.card.model_dump() if data.card else None,
            billing,
        )
        attached = self.caller("attach_payment_method", self.gateway.attach_payment_method, created.id, customer_id)

        existing = self._lock_user_methods(principal.id)
        make_default = data.is_default or not existing
        if make_default:
            for method in existing:
                method.is_default = False
            self.db.flush()

        method = PaymentMethod(
            user_id=principal.id,
            type=data.type,
            provider=self.gateway.name,
            last4=attached.last4,
            brand=attached.brand,
            expiry_month=attached.exp_month,
            expiry_year=attached.exp_year,
            provider_customer_id=customer_id,
            provider_payment_method_id=attached.id,
            billing_address=billing,
            is_default=make_default,
        )
        self.db.add(method)
        self._commit_default_change()
        self.db.refresh(method)
        logger.info(
            f"Payment method added for user {principal.id}",
            extra={'extra_fields': {'payment_method_id': method.id, 'is_default': method.is_default}},
        )
        return method

    def list_payment_methods(self, principal: Principal) -> list[PaymentMethod]:
        return self.db.query(PaymentMethod).filter(
            PaymentMethod.user_id == principal.id,
            PaymentMethod.is_active.is_(True),
        ).order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc(), PaymentMethod.id.desc()).all()

    def delete_payment_method(self, principal: Principal, method_id: int) -> None:
        method = self._owned_method(principal, method_id)
        if method.provider_payment_method_id:
            self.caller("detach_payment_method", self.gateway.detach_payment_method,
                        method.provider_payment_method_id)
        method.is_active = False
        method.is_default = False
        self.db.commit()
        logger.info(f"Payment method {method_id} removed")

    def set_default_payment_method(self, principal: Principal, method_id: int) -> PaymentMethod:
        methods = self._lock_user_methods(principal.id)
        target = next((m for m in methods if m.id == method_id), None)
        if target is None:
            raise NotFoundError("Payment method not found", code="PAYMENT_METHOD_NOT_FOUND")
        if target.is_default:
            return target
        for method in methods:
            method.is_default = False
        # clear the old default before setting the new one
        self.db.flush()
        target.is_default = True
        self._commit_default_change()
        self.db.refresh(target)
        return target

    # Intents and confirmation

    def create_payment_intent(
        self,
        principal: Principal,
        order_id: Optional[int],
        amount,
        currency: Optional[str] = None,
        payment_method_id: Optional[int] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> PaymentTransaction:
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Amount must be positive")

        order = None
        if order_id is not None:
            order = self.db.query(Order).filter(Order.id == order_id).first()
            if order is None or order.user_id != principal.id:
                raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
            if order.status in _UNPAYABLE_ORDER_STATUSES:
                raise InvalidTransition(f"Order in status '{order.status}' cannot be paid")

        if order is not None:
            if currency and currency.upper() != order.currency:
                raise ValidationError(
                    f"Currency {currency.upper()} does not match order currency {order.currency}",
                    code="CURRENCY_MISMATCH",
                )
            currency = order.currency
        currency = (currency or self.settings.DEFAULT_CURRENCY).upper()
        method = self._owned_method(principal, payment_method_id) if payment_method_id else None
        customer_id = self._resolve_customer(principal)

        intent_metadata = dict(metadata or {})
        intent_metadata["user_id"] = principal.id
        if order is not None:
            intent_metadata.update(order_id=str(order.id), order_number=order.order_number)

        intent = self.caller(
            "create_payment_intent",
            self.gateway.create_payment_intent,
            to_minor_units(amount),
            currency.lower(),
            customer_id,
            method.provider_payment_method_id if method else None,
            description,
            intent_metadata,
        )

        txn = PaymentTransaction(
            order_id=order.id if order else None,
            user_id=principal.id,
            payment_method_id=method.id if method else None,
            type=TransactionType.PAYMENT.value,
            status=TransactionStatus.PENDING.value,
            amount=amount,
            currency=currency,
            provider=self.gateway.name,
            provider_transaction_id=intent.id,
            provider_customer_id=customer_id,
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            description=description,
            transaction_metadata=metadata,
        )
        self.db.add(txn)
        self.db.commit()
        self.db.refresh(txn)
        logger.info(
            f"Payment intent created: {intent.id}",
            extra={'extra_fields': {
                'transaction_id': txn.id, 'order_id': txn.order_id, 'amount': str(amount), 'currency': currency,
            }},
        )
        return txn

    def confirm_payment(
        self,
        principal: Principal,
        payment_intent_id: str,
        payment_method_id: Optional[int] = None,
    ) -> PaymentTransaction:
        txn = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.payment_intent_id == payment_intent_id,
            PaymentTransaction.user_id == principal.id,
        ).first()
        if txn is None:
            raise NotFoundError("Payment transaction not found", code="TRANSACTION_NOT_FOUND")
        if txn.status == TransactionStatus.SUCCEEDED.value:
            return txn
        if txn.status == TransactionStatus.CANCELLED.value:
            raise InvalidTransition("Payment was cancelled and cannot be confirmed")

        method = self._owned_method(principal, payment_method_id) if payment_method_id else None
        intent = self.caller(
            "confirm_payment_intent",
            self.gateway.confirm_payment_intent,
            txn.payment_intent_id,
            method.provider_payment_method_id if method else None,
        )

        # a webhook may have settled the row while the gateway call was in flight
        txn = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.id == txn.id
        ).with_for_update().populate_existing().one()
        status = map_gateway_status(intent.status)
        if txn.status != TransactionStatus.SUCCEEDED.value:
            txn.status = status
            if method is not None:
                txn.payment_method_id = method.id
            txn.failure_code = intent.failure_code
            txn.failure_message = intent.failure_message
            if status == TransactionStatus.SUCCEEDED.value and txn.completed_at is None:
                txn.completed_at = utcnow()

        if txn.status == TransactionStatus.SUCCEEDED.value and txn.order_id is not None:
            self.orders.apply_payment_settlement(
                txn.order_id,
                actor_id=principal.id,
                actor_type=ActorType.ADMIN if principal.is_admin else ActorType.USER,
                source="confirm",
            )
        elif status == TransactionStatus.FAILED.value and txn.order_id is not None:
            self.orders.record_payment_failure(txn.order_id, txn.failure_code, txn.failure_message, txn.id)
        self.db.commit()
        self.db.refresh(txn)
        logger.info(
            f"Payment confirmed: {payment_intent_id} -> {txn.status}",
            extra={'extra_fields': {'transaction_id': txn.id, 'status': txn.status}},
        )
        return txn

    # Refunds

    def refundable_amount(self, parent: PaymentTransaction) -> Decimal:
        reserved = self.db.query(func.coalesce(func.sum(PaymentTransaction.amount), 0)).filter(
            PaymentTransaction.parent_transaction_id == parent.id,
            PaymentTransaction.type.in_(REFUND_TYPES),
            PaymentTransaction.status.in_(RESERVING_REFUND_STATUSES),
        ).scalar()
        return to_money(parent.amount) - to_money(reserved or ZERO)

    def create_refund(
        self,
        principal: Principal,
        transaction_id: int,
        amount=None,
        reason: Optional[str] = None,
    ) -> PaymentTransaction:
        """Refund a succeeded payment, in full by default.

        The refund row is reserved under a lock on the parent before the
        gateway is called, so concurrent refunds can never exceed the
        original amount.
        """
        if not principal.is_admin:
            raise AuthorizationError("Admin access required", code="INSUFFICIENT_PERMISSIONS")

        parent = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.id == transaction_id
        ).with_for_update().first()
        if parent is None:
            raise NotFoundError("Payment transaction not found", code="TRANSACTION_NOT_FOUND")
        if parent.type != TransactionType.PAYMENT.value or parent.status != TransactionStatus.SUCCEEDED.value:
            raise InvalidTransition("Only succeeded payments can be refunded", code="NOT_REFUNDABLE")

        refund_amount = to_money(amount) if amount is not None else to_money(parent.amount)
        if refund_amount <= 0:
            raise ValidationError("Refund amount must be positive")
        available = self.refundable_amount(parent)
        if refund_amount > available:
            raise ValidationError(
                f"Refund amount {refund_amount} exceeds refundable balance {available}",
                code="REFUND_EXCEEDS_AVAILABLE",
            )

        refund = PaymentTransaction(
            order_id=parent.order_id,
            user_id=parent.user_id,
            payment_method_id=parent.payment_method_id,
            type=(TransactionType.PARTIAL_REFUND if refund_amount < to_money(parent.amount)
                  else TransactionType.REFUND).value,
            status=TransactionStatus.PENDING.value,
            amount=refund_amount,
            currency=parent.currency,
            provider=parent.provider,
            provider_customer_id=parent.provider_customer_id,
            parent_transaction_id=parent.id,
            description=reason,
            transaction_metadata={"reason": reason, "requested_by": principal.id},
        )
        self.db.add(refund)
        self.db.commit()

        try:
            result = self.caller(
                "create_refund",
                self.gateway.create_refund,
                parent.payment_intent_id,
                to_minor_units(refund_amount),
                reason,
                {"transaction_id": str(parent.id), "refund_id": str(refund.id)},
            )
        except PaymentGatewayError as exc:
            if not exc.ambiguous:
                # provider refused; release the reservation
                refund.status = TransactionStatus.FAILED.value
                refund.failure_code = exc.code
                refund.failure_message = exc.message
                self.db.commit()
            raise

        refund.provider_transaction_id = result.id
        refund.status = map_gateway_status(result.status)
        if refund.status == TransactionStatus.SUCCEEDED.value:
            refund.completed_at = utcnow()
            if refund.order_id is not None:
                self.orders.apply_payment_settlement(
                    refund.order_id, actor_id=principal.id, actor_type=ActorType.ADMIN, source="refund",
                )
        self.db.commit()
        self.db.refresh(refund)
        logger.info(
            f"Refund created for transaction {parent.id}",
            extra={'extra_fields': {
                'transaction_id': parent.id,
                'refund_id': refund.id,
                'amount': str(refund_amount),
                'status': refund.status,
            }},
        )
        return refund

    def payment_history(self, principal: Principal, page: int = 1, limit: int = 20):
        query = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.user_id == principal.id
        ).order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
        return paginate(query, page, limit)
