import re
from decimal import Decimal

import pytest

from commerce_core.application.orders import OrderService
from commerce_core.application.schemas import (
    Address, DiscountCreate, LineItemCreate, OrderUpdate,
)
from commerce_core.domain.errors import (
    AuthorizationError, ConflictError, InvalidTransition, NotFoundError, ValidationError,
)
from commerce_core.domain.models import Order, OrderDiscount, OrderEvent, OrderLineItem
from tests.conftest import sample_order


def _row_counts(db):
    return tuple(db.query(model).count() for model in (Order, OrderLineItem, OrderDiscount, OrderEvent))


class TestCreateOrder:
    def test_totals_and_children_persisted(self, db, customer):
        order = OrderService(db).create_order(customer, sample_order(
            shipping_address=Address(first_name="Ada", city="London", country="GB"),
            tags=["gift"],
        ))
        assert order.subtotal_price == Decimal("50.00")
        assert order.total_discounts == Decimal("5.00")
        assert order.total_price == Decimal("45.00")
        assert order.status == "pending"
        assert order.financial_status == "pending"
        assert order.email == customer.email
        assert order.shipping_address["city"] == "London"
        assert [item.total_price for item in order.line_items] == [Decimal("50.00")]
        assert order.discounts[0].amount == Decimal("5.00")
        assert order.discounts[0].title == "TEN"
        assert [event.event_type for event in order.events] == ["created"]
        assert order.events[0].actor_id == customer.id

    def test_order_number_format(self, order):
        assert re.fullmatch(r"ORD-\d{4}-\d{6}[A-Z0-9]{3}", order.order_number)

    def test_invalid_line_item_persists_nothing(self, db, customer):
        data = sample_order(line_items=[
            LineItemCreate(product_id="prod-1", quantity=1, price=Decimal("10")),
            LineItemCreate(product_id="prod-2", quantity=0, price=Decimal("10")),
        ])
        with pytest.raises(ValidationError):
            OrderService(db).create_order(customer, data)
        assert _row_counts(db) == (0, 0, 0, 0)

    def test_invalid_discount_persists_nothing(self, db, customer):
        data = sample_order(discounts=[DiscountCreate(type="percentage", value=Decimal("150"))])
        with pytest.raises(ValidationError):
            OrderService(db).create_order(customer, data)
        assert _row_counts(db) == (0, 0, 0, 0)

    def test_oversized_discount_never_goes_negative(self, db, customer):
        data = sample_order(
            discounts=[DiscountCreate(type="fixed_amount", value=Decimal("80"))],
            tax=Decimal("4.00"),
        )
        order = OrderService(db).create_order(customer, data)
        assert order.total_discounts == Decimal("50.00")
        assert order.total_price == Decimal("4.00")

    def test_email_required(self, db):
        from commerce_core.application.schemas import Principal
        with pytest.raises(ValidationError):
            OrderService(db).create_order(Principal(id="anon"), sample_order())

    def test_order_number_collision_is_retried(self, db, customer, order, monkeypatch):
        numbers = iter([order.order_number, "ORD-2030-000001ABC"])
        service = OrderService(db)
        monkeypatch.setattr(service, "_generate_order_number", lambda: next(numbers))
        second = service.create_order(customer, sample_order())
        assert second.order_number == "ORD-2030-000001ABC"
        assert db.query(Order).count() == 2

    def test_exhausted_order_numbers_conflict(self, db, customer, order, monkeypatch):
        service = OrderService(db)
        monkeypatch.setattr(service, "_generate_order_number", lambda: order.order_number)
        before = _row_counts(db)
        with pytest.raises(ConflictError):
            service.create_order(customer, sample_order())
        assert _row_counts(db) == before

    def test_catalog_titles_snapshotted(self, db, customer):
        class FakeCatalog:
            def fetch_product(self, product_id):
                return {"title": "Blue Mug"}

            def fetch_variant(self, product_id, variant_id):
                return None

        order = OrderService(db, FakeCatalog()).create_order(customer, sample_order())
        assert order.line_items[0].product_title == "Blue Mug"


class TestReadOrders:
    def test_owner_and_admin_can_read(self, db, order, customer, admin):
        assert OrderService(db).get_order(customer, order.id).id == order.id
        assert OrderService(db).get_order(admin, order.id).id == order.id

    def test_foreign_read_denied(self, db, order, other_customer):
        with pytest.raises(AuthorizationError):
            OrderService(db).get_order(other_customer, order.id)

    def test_missing_order(self, db, customer):
        with pytest.raises(NotFoundError):
            OrderService(db).get_order(customer, 999)

    def test_list_user_orders_only_own(self, db, customer, other_customer):
        service = OrderService(db)
        for _ in range(3):
            service.create_order(customer, sample_order())
        service.create_order(other_customer, sample_order())
        orders, pagination = service.list_user_orders(customer, page=1, limit=2)
        assert len(orders) == 2
        assert pagination == {"page": 1, "limit": 2, "total": 3, "pages": 2}
        assert all(o.user_id == customer.id for o in orders)

    def test_list_all_orders_requires_admin(self, db, customer):
        with pytest.raises(AuthorizationError):
            OrderService(db).list_all_orders(customer)

    def test_admin_search(self, db, order, admin):
        orders, pagination = OrderService(db).list_all_orders(admin, search=order.order_number[-9:].lower())
        assert [o.id for o in orders] == [order.id]

    def test_bad_paging(self, db, customer):
        with pytest.raises(ValidationError):
            OrderService(db).list_user_orders(customer, page=0)


class TestCancelOrder:
    def test_cancel_pending(self, db, order, customer):
        cancelled = OrderService(db).cancel_order(customer, order.id, "changed my mind")
        assert cancelled.status == "cancelled"
        assert cancelled.cancelled_at is not None
        event = cancelled.events[-1]
        assert event.event_type == "cancelled"
        assert event.previous_values == {"status": "pending"}
        assert event.event_metadata == {"reason": "changed my mind"}

    def test_cancel_confirmed(self, db, order, customer, admin):
        OrderService(db).update_order(admin, order.id, OrderUpdate(status="confirmed"))
        assert OrderService(db).cancel_order(customer, order.id).status == "cancelled"

    @pytest.mark.parametrize("path", [["confirmed", "processing"], ["confirmed", "processing", "shipped"]])
    def test_cancel_rejected_after_processing(self, db, order, customer, admin, path):
        service = OrderService(db)
        for status in path:
            service.update_order(admin, order.id, OrderUpdate(status=status))
        events_before = len(service.get_events(admin, order.id))
        with pytest.raises(InvalidTransition):
            service.cancel_order(customer, order.id)
        db.refresh(order)
        assert order.status == path[-1]
        assert len(service.get_events(admin, order.id)) == events_before

    def test_cancel_foreign_order_denied(self, db, order, other_customer):
        with pytest.raises(AuthorizationError):
            OrderService(db).cancel_order(other_customer, order.id)
        db.refresh(order)
        assert order.status == "pending"


class TestUpdateOrder:
    def test_status_change_records_diff(self, db, order, admin):
        service = OrderService(db)
        service.update_order(admin, order.id, OrderUpdate(status="confirmed"))
        updated = service.update_order(admin, order.id, OrderUpdate(status="processing", notes="rush"))
        event = updated.events[-1]
        assert event.event_type == "status_changed"
        assert event.actor_type == "admin"
        assert event.previous_values["status"] == "confirmed"
        assert event.new_values["status"] == "processing"
        assert event.previous_values["notes"] is None
        assert event.new_values["notes"] == "rush"
        assert "processed_at" in event.new_values
        assert updated.processed_at is not None

    def test_shipping_marks_fulfilled(self, db, order, admin):
        service = OrderService(db)
        for status in ("confirmed", "processing"):
            service.update_order(admin, order.id, OrderUpdate(status=status))
        shipped = service.update_order(admin, order.id, OrderUpdate(
            status="shipped", tracking_number="1Z999", carrier="UPS",
        ))
        assert shipped.fulfillment_status == "fulfilled"
        assert shipped.shipped_at is not None
        assert shipped.events[-1].new_values["tracking_number"] == "1Z999"

    def test_noop_update_appends_nothing(self, db, order, admin):
        service = OrderService(db)
        service.update_order(admin, order.id, OrderUpdate(notes="hello"))
        count = len(service.get_events(admin, order.id))
        service.update_order(admin, order.id, OrderUpdate(notes="hello", status="pending"))
        assert len(service.get_events(admin, order.id)) == count

    def test_only_changed_fields_recorded(self, db, order, admin):
        updated = OrderService(db).update_order(admin, order.id, OrderUpdate(carrier="DHL"))
        event = updated.events[-1]
        assert event.event_type == "updated"
        assert event.previous_values == {"carrier": None}
        assert event.new_values == {"carrier": "DHL"}

    def test_illegal_jump_rejected(self, db, order, admin):
        with pytest.raises(InvalidTransition):
            OrderService(db).update_order(admin, order.id, OrderUpdate(status="shipped"))

    def test_refunded_not_settable_directly(self, db, order, admin):
        OrderService(db).update_order(admin, order.id, OrderUpdate(status="confirmed"))
        with pytest.raises(InvalidTransition):
            OrderService(db).update_order(admin, order.id, OrderUpdate(status="refunded"))

    def test_customer_cannot_update(self, db, order, customer):
        with pytest.raises(AuthorizationError):
            OrderService(db).update_order(customer, order.id, OrderUpdate(notes="x"))

    @pytest.mark.parametrize("field", ["fulfillment_status", "tags"])
    def test_required_fields_cannot_be_cleared(self, db, order, admin, field):
        count = len(order.events)
        with pytest.raises(ValidationError):
            OrderService(db).update_order(admin, order.id, OrderUpdate(**{field: None}))
        db.refresh(order)
        assert order.fulfillment_status == "unfulfilled"
        assert order.tags is not None
        assert len(order.events) == count

    def test_optional_field_can_be_cleared(self, db, order, admin):
        service = OrderService(db)
        service.update_order(admin, order.id, OrderUpdate(notes="hello"))
        updated = service.update_order(admin, order.id, OrderUpdate(notes=None))
        assert updated.notes is None
        assert updated.events[-1].new_values == {"notes": None}

    def test_event_log_reconstructs_status_history(self, db, order, admin):
        service = OrderService(db)
        for status in ("confirmed", "processing", "shipped", "delivered"):
            service.update_order(admin, order.id, OrderUpdate(status=status))
        history = ["pending"] + [
            e.new_values["status"] for e in service.get_events(admin, order.id)
            if e.new_values and "status" in e.new_values and e.event_type != "created"
        ]
        assert history == ["pending", "confirmed", "processing", "shipped", "delivered"]
