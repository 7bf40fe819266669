"""
Webhook reconciliation.

Provider events are applied at most once per provider event id. The unique
`payment_webhooks.event_id` column is the deduplication primitive: the event
row is claimed first, then its effects and the `processed` mark are
committed together, so a crash in between leaves a `pending` row that a
redelivery will pick up again. Every handler is safe to run twice.
"""

from datetime import datetime, timezone
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Any, Optional
import json
import uuid

from commerce_core.core import get_logger
from commerce_core.core_settings import get_settings
from commerce_core.domain.errors import ConflictError, NotFoundError, WebhookSignatureError
from commerce_core.domain.models import (
    PaymentCustomer, PaymentTransaction, Subscription, SubscriptionInvoice, WebhookEvent, utcnow,
)
from commerce_core.domain.pricing import ZERO, from_minor_units
from commerce_core.domain.status import (
    REFUND_TYPES, TransactionStatus, WebhookStatus,
)
from commerce_core.infrastructure.gateway import GatewayEvent, PaymentGateway
from .orders import OrderService
from .payments import map_gateway_status

logger = get_logger(__name__)


def _decode_payload(payload: bytes) -> Any:
    try:
        return json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        return {"raw": payload.decode("utf-8", errors="replace")}


def _from_unix(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class WebhookService:
    def __init__(self, db: Session, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway
        self.orders = OrderService(db)
        self.settings = get_settings()
        self._handlers = {
            "payment_intent.succeeded": self._on_intent_succeeded,
            "payment_intent.payment_failed": self._on_intent_failed,
            "refund.updated": self._on_refund_updated,
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_changed,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_failed,
        }

    def handle_webhook(self, provider: str, payload: bytes, signature: Optional[str]) -> dict:
        if provider != self.gateway.name:
            raise NotFoundError(f"Unknown payment provider '{provider}'", code="PROVIDER_NOT_FOUND")

        try:
            event = self.gateway.verify_webhook(payload, signature or "")
        except WebhookSignatureError as exc:
            self._record_rejected(provider, payload, signature, exc.message)
            logger.warning(f"Rejected webhook from {provider}: {exc.message}")
            raise

        record_id = self._claim(provider, event, payload, signature)
        if record_id is None:
            logger.info(f"Duplicate webhook {event.id} ignored")
            return {"received": True, "duplicate": True, "event_id": event.id}

        try:
            applied = self._process(record_id, event)
        except Exception as exc:
            self.db.rollback()
            self._mark_failed(record_id, str(exc))
            logger.error(
                f"Webhook {event.id} ({event.type}) failed",
                exc_info=True,
                extra={'extra_fields': {'event_id': event.id, 'event_type': event.type}},
            )
            raise
        return {"received": True, "duplicate": not applied, "event_id": event.id}

    def _record_rejected(self, provider: str, payload: bytes, signature: Optional[str], reason: str) -> None:
        body = _decode_payload(payload)
        event_type = body.get("type") if isinstance(body, dict) else None
        self.db.add(WebhookEvent(
            provider=provider,
            event_type=str(event_type or "unknown")[:100],
            event_id=f"failed_{uuid.uuid4().hex}",
            status=WebhookStatus.FAILED.value,
            attempts=1,
            max_attempts=self.settings.WEBHOOK_MAX_ATTEMPTS,
            payload=body,
            signature=signature[:500] if signature else None,
            error_message=reason,
        ))
        self.db.commit()

    def _find(self, event_id: str, lock: bool = False) -> Optional[WebhookEvent]:
        query = self.db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id)
        if lock:
            query = query.with_for_update().populate_existing()
        return query.first()

    def _claim(self, provider: str, event: GatewayEvent, payload: bytes, signature: Optional[str]) -> Optional[int]:
        """Persist the event as pending; None when it was already processed."""
        record = self._find(event.id, lock=True)
        if record is None:
            record = WebhookEvent(
                provider=provider,
                event_type=event.type,
                event_id=event.id,
                status=WebhookStatus.PENDING.value,
                attempts=1,
                max_attempts=self.settings.WEBHOOK_MAX_ATTEMPTS,
                payload=_decode_payload(payload),
                signature=signature[:500] if signature else None,
            )
            self.db.add(record)
            try:
                self.db.commit()
                return record.id
            except IntegrityError:
                # recorded concurrently by another delivery
                self.db.rollback()
                record = self._find(event.id, lock=True)
                if record is None:
                    raise ConflictError("Webhook event could not be recorded", code="WEBHOOK_CONFLICT")

        if record.status == WebhookStatus.PROCESSED.value:
            self.db.rollback()
            return None
        record.attempts += 1
        record.status = WebhookStatus.PENDING.value
        if record.attempts > record.max_attempts:
            logger.warning(f"Webhook {event.id} redelivered {record.attempts} times")
        self.db.commit()
        return record.id

    def _process(self, record_id: int, event: GatewayEvent) -> bool:
        record = self.db.query(WebhookEvent).filter(
            WebhookEvent.id == record_id
        ).with_for_update().populate_existing().one()
        if record.status == WebhookStatus.PROCESSED.value:
            self.db.rollback()
            return False

        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(f"Unhandled webhook event type {event.type}")
        else:
            handler(event)

        record.status = WebhookStatus.PROCESSED.value
        record.processed_at = utcnow()
        record.error_message = None
        self.db.commit()
        logger.info(
            f"Webhook processed: {event.type}",
            extra={'extra_fields': {'event_id': event.id, 'event_type': event.type}},
        )
        return True

    def _mark_failed(self, record_id: int, message: str) -> None:
        record = self.db.query(WebhookEvent).filter(WebhookEvent.id == record_id).first()
        if record is None:
            return
        record.status = WebhookStatus.FAILED.value
        record.error_message = message[:2000]
        self.db.commit()

    # Handlers; each runs inside the transaction that marks the event processed.

    def _intent_transaction(self, event: GatewayEvent) -> Optional[PaymentTransaction]:
        intent_id = event.object.get("id")
        txn = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.payment_intent_id == intent_id
        ).with_for_update().first() if intent_id else None
        if txn is None:
            logger.warning(f"No local transaction for payment intent {intent_id}")
        return txn

    def _on_intent_succeeded(self, event: GatewayEvent) -> None:
        txn = self._intent_transaction(event)
        if txn is None:
            return
        txn.status = TransactionStatus.SUCCEEDED.value
        txn.failure_code = None
        txn.failure_message = None
        txn.webhook_received = True
        if txn.completed_at is None:
            txn.completed_at = utcnow()
        if txn.order_id is not None:
            self.orders.apply_payment_settlement(txn.order_id, source=f"webhook:{event.id}")

    def _on_intent_failed(self, event: GatewayEvent) -> None:
        txn = self._intent_transaction(event)
        if txn is None:
            return
        txn.webhook_received = True
        if txn.status == TransactionStatus.SUCCEEDED.value:
            logger.warning(f"Ignoring failure for already succeeded intent {txn.payment_intent_id}")
            return
        error = event.object.get("last_payment_error") or {}
        txn.status = TransactionStatus.FAILED.value
        txn.failure_code = error.get("code")
        txn.failure_message = error.get("message")
        if txn.order_id is not None:
            self.orders.record_payment_failure(txn.order_id, txn.failure_code, txn.failure_message, txn.id)

    def _on_refund_updated(self, event: GatewayEvent) -> None:
        obj = event.object
        query = self.db.query(PaymentTransaction).filter(PaymentTransaction.type.in_(REFUND_TYPES))
        txn = query.filter(PaymentTransaction.provider_transaction_id == obj.get("id")).with_for_update().first()
        local_id = (obj.get("metadata") or {}).get("refund_id")
        if txn is None and local_id and str(local_id).isdigit():
            txn = query.filter(PaymentTransaction.id == int(local_id)).with_for_update().first()
        if txn is None:
            logger.warning(f"No local refund for {obj.get('id')}")
            return
        txn.webhook_received = True
        if txn.status == TransactionStatus.SUCCEEDED.value:
            return
        txn.provider_transaction_id = txn.provider_transaction_id or obj.get("id")
        txn.status = map_gateway_status(obj.get("status"))
        if txn.status == TransactionStatus.SUCCEEDED.value:
            txn.completed_at = txn.completed_at or utcnow()
            if txn.order_id is not None:
                self.orders.apply_payment_settlement(txn.order_id, source=f"webhook:{event.id}")

    def _on_subscription_changed(self, event: GatewayEvent) -> None:
        obj = event.object
        subscription = self.db.query(Subscription).filter(
            Subscription.provider_subscription_id == obj.get("id")
        ).with_for_update().first()
        if subscription is None:
            customer = self.db.query(PaymentCustomer).filter(
                PaymentCustomer.provider_customer_id == obj.get("customer")
            ).first()
            if customer is None:
                logger.warning(f"Subscription {obj.get('id')} belongs to an unknown customer")
                return
            subscription = Subscription(
                user_id=customer.user_id,
                provider=self.gateway.name,
                provider_subscription_id=obj.get("id"),
                amount=ZERO,
            )
            self.db.add(subscription)

        plan = obj.get("plan") or {}
        subscription.status = obj.get("status") or subscription.status or "active"
        if plan.get("amount") is not None:
            subscription.amount = from_minor_units(plan["amount"])
        subscription.currency = (plan.get("currency") or subscription.currency or self.settings.DEFAULT_CURRENCY).upper()
        subscription.interval = plan.get("interval") or subscription.interval or "month"
        subscription.interval_count = plan.get("interval_count") or subscription.interval_count or 1
        subscription.current_period_start = _from_unix(obj.get("current_period_start")) or subscription.current_period_start
        subscription.current_period_end = _from_unix(obj.get("current_period_end")) or subscription.current_period_end
        subscription.cancel_at_period_end = bool(obj.get("cancel_at_period_end", False))
        if event.type == "customer.subscription.deleted" or subscription.status == "canceled":
            subscription.status = "canceled"
            subscription.cancelled_at = subscription.cancelled_at or utcnow()

    def _upsert_invoice(self, event: GatewayEvent, paid: bool) -> None:
        obj = event.object
        subscription = self.db.query(Subscription).filter(
            Subscription.provider_subscription_id == obj.get("subscription")
        ).with_for_update().first()
        if subscription is None:
            logger.warning(f"Invoice {obj.get('id')} references unknown subscription {obj.get('subscription')}")
            return

        invoice = self.db.query(SubscriptionInvoice).filter(
            SubscriptionInvoice.provider_invoice_id == obj.get("id")
        ).first()
        if invoice is None:
            invoice = SubscriptionInvoice(
                user_id=subscription.user_id,
                provider=subscription.provider,
                provider_invoice_id=obj.get("id"),
                amount=ZERO,
            )
            subscription.invoices.append(invoice)

        invoice.amount = from_minor_units(obj.get("amount_due") or 0)
        invoice.currency = (obj.get("currency") or subscription.currency).upper()
        invoice.period_start = _from_unix(obj.get("period_start")) or invoice.period_start
        invoice.period_end = _from_unix(obj.get("period_end")) or invoice.period_end
        if paid:
            invoice.status = "paid"
            invoice.amount_paid = from_minor_units(obj.get("amount_paid") or obj.get("amount_due") or 0)
            invoice.paid_at = invoice.paid_at or utcnow()
            subscription.status = "active"
            if invoice.period_end:
                subscription.current_period_start = invoice.period_start
                subscription.current_period_end = invoice.period_end
        elif invoice.status != "paid":
            invoice.status = "failed"
            subscription.status = "past_due"

    def _on_invoice_paid(self, event: GatewayEvent) -> None:
        self._upsert_invoice(event, paid=True)

    def _on_invoice_failed(self, event: GatewayEvent) -> None:
        self._upsert_invoice(event, paid=False)
