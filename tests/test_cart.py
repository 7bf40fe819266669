from datetime import timedelta

import pytest

from commerce_core.application.cart import CartService
from commerce_core.domain.errors import NotFoundError, ValidationError
from commerce_core.domain.models import CartLineItem, ShoppingCart, utcnow


def test_same_product_merges_into_one_row(db, customer):
    service = CartService(db)
    service.add_item(customer, "prod-P", quantity=2)
    item = service.add_item(customer, "prod-P", quantity=3)
    assert item.quantity == 5
    assert db.query(CartLineItem).count() == 1
    assert db.query(ShoppingCart).count() == 1


def test_variants_are_separate_rows(db, customer):
    service = CartService(db)
    service.add_item(customer, "prod-P", variant_id="red", quantity=1)
    service.add_item(customer, "prod-P", variant_id="blue", quantity=1)
    service.add_item(customer, "prod-P", quantity=1)
    assert db.query(CartLineItem).count() == 3
    assert service.get_cart(customer).item_count == 3


def test_properties_replaced_only_when_given(db, customer):
    service = CartService(db)
    service.add_item(customer, "prod-P", quantity=1, properties={"engraving": "A"})
    item = service.add_item(customer, "prod-P", quantity=1)
    assert item.properties == {"engraving": "A"}
    item = service.add_item(customer, "prod-P", quantity=1, properties={"engraving": "B"})
    assert item.properties == {"engraving": "B"}


def test_carts_are_per_user(db, customer, other_customer):
    service = CartService(db)
    service.add_item(customer, "prod-P", quantity=1)
    service.add_item(other_customer, "prod-P", quantity=4)
    assert service.get_cart(customer).item_count == 1
    assert service.get_cart(other_customer).item_count == 4


@pytest.mark.parametrize("quantity", [0, -2])
def test_add_requires_positive_quantity(db, customer, quantity):
    with pytest.raises(ValidationError):
        CartService(db).add_item(customer, "prod-P", quantity=quantity)
    assert db.query(CartLineItem).count() == 0


def test_update_overwrites_quantity(db, customer):
    service = CartService(db)
    item = service.add_item(customer, "prod-P", quantity=2)
    updated = service.update_item(customer, item.id, 7)
    assert updated.quantity == 7


def test_update_to_zero_deletes(db, customer):
    service = CartService(db)
    item = service.add_item(customer, "prod-P", quantity=2)
    assert service.update_item(customer, item.id, 0) is None
    assert db.query(CartLineItem).count() == 0


def test_foreign_item_is_not_found(db, customer, other_customer):
    service = CartService(db)
    item = service.add_item(customer, "prod-P", quantity=2)
    with pytest.raises(NotFoundError):
        service.update_item(other_customer, item.id, 1)
    with pytest.raises(NotFoundError):
        service.remove_item(other_customer, item.id)
    db.refresh(item)
    assert item.quantity == 2


def test_remove_and_clear(db, customer):
    service = CartService(db)
    first = service.add_item(customer, "prod-1", quantity=1)
    service.add_item(customer, "prod-2", quantity=1)
    service.add_item(customer, "prod-3", quantity=1)
    service.remove_item(customer, first.id)
    assert service.get_cart(customer).item_count == 2
    assert service.clear(customer) == 2
    assert db.query(CartLineItem).count() == 0


def test_clear_without_cart(db, customer):
    assert CartService(db).clear(customer) == 0


def test_expired_cart_is_emptied(db, customer):
    service = CartService(db)
    service.add_item(customer, "prod-P", quantity=2)
    cart = db.query(ShoppingCart).one()
    cart.expires_at = utcnow() - timedelta(days=1)
    db.commit()

    cart = service.get_cart(customer)
    assert cart.line_items == []
    assert db.query(CartLineItem).count() == 0

    item = service.add_item(customer, "prod-P", quantity=1)
    assert item.quantity == 1
