"""Order money arithmetic.

Everything here is pure and works on `Decimal` quantized to cents. Discount
amounts are resolved once, when the order is created, and the resolved
amount is what gets stored; nothing re-reads the discount definition later.

Clamping policy: a discount never takes more than what is still
discountable (subtotal + shipping minus discounts already applied, and a
shipping discount never more than the remaining shipping charge). Tax is
never discounted. So `total == subtotal + tax + shipping - total_discounts`
always holds and `total >= tax >= 0`.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Sequence, Union

from .errors import ValidationError
from .status import DiscountType

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def to_money(value) -> Decimal:
    """Quantize anything Decimal-compatible to cents (half-up)."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return to_money(Decimal(amount) / 100)


@dataclass(frozen=True)
class PercentageDiscount:
    value: Decimal
    type: DiscountType = field(default=DiscountType.PERCENTAGE, init=False)


@dataclass(frozen=True)
class FixedAmountDiscount:
    value: Decimal
    type: DiscountType = field(default=DiscountType.FIXED_AMOUNT, init=False)


@dataclass(frozen=True)
class ShippingDiscount:
    """Amount taken off the shipping charge (value >= shipping means free shipping)."""
    value: Decimal
    type: DiscountType = field(default=DiscountType.SHIPPING, init=False)


Discount = Union[PercentageDiscount, FixedAmountDiscount, ShippingDiscount]

_DISCOUNT_KINDS = {
    DiscountType.PERCENTAGE: PercentageDiscount,
    DiscountType.FIXED_AMOUNT: FixedAmountDiscount,
    DiscountType.SHIPPING: ShippingDiscount,
}


def make_discount(kind: str, value) -> Discount:
    try:
        discount_cls = _DISCOUNT_KINDS[DiscountType(kind)]
    except ValueError:
        raise ValidationError(f"Unknown discount type '{kind}'")
    value = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    if value < 0:
        raise ValidationError("Discount value must not be negative")
    if discount_cls is PercentageDiscount and value > HUNDRED:
        raise ValidationError("Percentage discount cannot exceed 100")
    return discount_cls(value=value)


def resolve_discount(subtotal: Decimal, shipping: Decimal, discount: Discount) -> Decimal:
    """Currency amount a discount is worth against this subtotal/shipping, before clamping."""
    if isinstance(discount, PercentageDiscount):
        return to_money(subtotal * discount.value / HUNDRED)
    if isinstance(discount, FixedAmountDiscount):
        return to_money(discount.value)
    if isinstance(discount, ShippingDiscount):
        return to_money(min(discount.value, shipping))
    raise ValidationError(f"Unsupported discount {discount!r}")


@dataclass(frozen=True)
class PricedLine:
    price: Decimal
    quantity: int
    total: Decimal


@dataclass(frozen=True)
class OrderTotals:
    lines: Sequence[PricedLine]
    discount_amounts: Sequence[Decimal]
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total_discounts: Decimal
    total: Decimal


def price_line(price, quantity: int) -> PricedLine:
    price = to_money(price)
    if quantity is None or quantity <= 0:
        raise ValidationError("Line item quantity must be positive")
    if price < 0:
        raise ValidationError("Line item price must not be negative")
    return PricedLine(price=price, quantity=quantity, total=to_money(price * quantity))


def compute_totals(
    lines: Iterable[tuple],
    discounts: Iterable[Discount] = (),
    tax=ZERO,
    shipping=ZERO,
) -> OrderTotals:
    """Price `(price, quantity)` pairs and apply discounts under the clamping policy."""
    priced = [price_line(price, quantity) for price, quantity in lines]
    if not priced:
        raise ValidationError("An order needs at least one line item")
    tax = to_money(tax)
    shipping = to_money(shipping)
    if tax < 0 or shipping < 0:
        raise ValidationError("Tax and shipping must not be negative")

    subtotal = to_money(sum((line.total for line in priced), ZERO))

    remaining = subtotal + shipping
    shipping_left = shipping
    amounts = []
    for discount in discounts:
        amount = resolve_discount(subtotal, shipping_left, discount)
        amount = min(amount, remaining)
        if isinstance(discount, ShippingDiscount):
            shipping_left -= amount
        remaining -= amount
        amounts.append(amount)

    total_discounts = to_money(sum(amounts, ZERO))
    total = subtotal + tax + shipping - total_discounts
    return OrderTotals(
        lines=priced,
        discount_amounts=amounts,
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        total_discounts=total_discounts,
        total=to_money(total),
    )
