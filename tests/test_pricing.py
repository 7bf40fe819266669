from decimal import Decimal

import pytest

from commerce_core.domain.errors import ValidationError
from commerce_core.domain.pricing import (
    FixedAmountDiscount, PercentageDiscount, ShippingDiscount, compute_totals, from_minor_units,
    make_discount, resolve_discount, to_minor_units,
)

D = Decimal


def test_percentage_discount_example():
    totals = compute_totals([(D("25.00"), 2)], [PercentageDiscount(D("10"))])
    assert totals.subtotal == D("50.00")
    assert totals.discount_amounts == [D("5.00")]
    assert totals.tax == D("0.00")
    assert totals.shipping == D("0.00")
    assert totals.total == D("45.00")


def test_line_totals_are_price_times_quantity():
    totals = compute_totals([(D("3.33"), 3), (D("10"), 1)])
    assert [line.total for line in totals.lines] == [D("9.99"), D("10.00")]
    assert totals.subtotal == D("19.99")


def test_percentage_rounds_half_up():
    assert resolve_discount(D("19.99"), D("0"), PercentageDiscount(D("15"))) == D("3.00")


def test_fixed_discount_larger_than_order_is_clamped():
    totals = compute_totals([(D("20.00"), 1)], [FixedAmountDiscount(D("100"))], shipping=D("5.00"))
    assert totals.discount_amounts == [D("25.00")]
    assert totals.total == D("0.00")


def test_tax_is_never_discounted():
    totals = compute_totals([(D("10.00"), 1)], [FixedAmountDiscount(D("50"))], tax=D("2.00"))
    assert totals.total_discounts == D("10.00")
    assert totals.total == D("2.00")


def test_shipping_discount_capped_at_shipping():
    totals = compute_totals([(D("30.00"), 1)], [ShippingDiscount(D("10"))], shipping=D("7.50"))
    assert totals.discount_amounts == [D("7.50")]
    assert totals.total == D("30.00")


def test_discounts_apply_in_order_against_what_remains():
    totals = compute_totals(
        [(D("40.00"), 1)],
        [PercentageDiscount(D("50")), FixedAmountDiscount(D("30"))],
    )
    assert totals.discount_amounts == [D("20.00"), D("20.00")]
    assert totals.total == D("0.00")


@pytest.mark.parametrize("lines,discounts,tax,shipping", [
    ([(D("25.00"), 2)], [PercentageDiscount(D("10"))], D("0"), D("0")),
    ([(D("9.99"), 3)], [FixedAmountDiscount(D("5"))], D("2.40"), D("4.99")),
    ([(D("1.00"), 1)], [FixedAmountDiscount(D("500")), ShippingDiscount(D("10"))], D("0.08"), D("3.00")),
    ([(D("100"), 1)], [ShippingDiscount(D("2")), PercentageDiscount(D("100"))], D("8"), D("10")),
    ([(D("0.00"), 4)], [PercentageDiscount(D("25"))], D("0"), D("0")),
])
def test_total_identity_holds(lines, discounts, tax, shipping):
    totals = compute_totals(lines, discounts, tax=tax, shipping=shipping)
    assert totals.total == totals.subtotal + totals.tax + totals.shipping - totals.total_discounts
    assert totals.total >= totals.tax >= 0
    assert totals.subtotal >= 0 and totals.shipping >= 0


@pytest.mark.parametrize("price,quantity", [(D("10"), 0), (D("10"), -1), (D("-0.01"), 1)])
def test_invalid_line_items_rejected(price, quantity):
    with pytest.raises(ValidationError):
        compute_totals([(price, quantity)])


def test_order_needs_line_items():
    with pytest.raises(ValidationError):
        compute_totals([])


def test_negative_tax_rejected():
    with pytest.raises(ValidationError):
        compute_totals([(D("1"), 1)], tax=D("-1"))


class TestMakeDiscount:
    def test_builds_each_kind(self):
        assert isinstance(make_discount("percentage", "10"), PercentageDiscount)
        assert isinstance(make_discount("fixed_amount", 5), FixedAmountDiscount)
        assert isinstance(make_discount("shipping", D("3.5")), ShippingDiscount)

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            make_discount("bogo", 1)

    def test_negative_value(self):
        with pytest.raises(ValidationError):
            make_discount("fixed_amount", -1)

    def test_percentage_above_hundred(self):
        with pytest.raises(ValidationError):
            make_discount("percentage", 101)


def test_minor_unit_conversion():
    assert to_minor_units(D("45.00")) == 4500
    assert to_minor_units(D("0.015")) == 2
    assert from_minor_units(4500) == D("45.00")
