"""Money engine: prices a cart with integer-cent arithmetic.

Every price is converted to integer cents before summing and converted back
to a two-decimal ``Decimal`` only at the boundary, so ``19.90 + 9.97`` is
``29.87`` and never ``29.869999999999997``. Nothing here performs I/O.
"""

from dataclasses import replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping, Union

from .domain import CartItem, ItemRole, OrderTotal

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")

DEFAULT_COUPONS: Mapping[str, Decimal] = {
    "DESCONTO10": Decimal("0.10"),
    "PROMO20": Decimal("0.20"),
    "BLACKFRIDAY": Decimal("0.30"),
}


def to_cents(amount: Number) -> int:
    """Convert a major-unit amount to integer cents, rounding half up."""
    # str() first so floats are taken at their shortest repr, not binary value
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def is_valid_cart_item(item: CartItem) -> bool:
    """True when the item has a positive price and non-empty id and name."""
    try:
        price_ok = Decimal(str(item.price)) > 0
    except ArithmeticError:
        return False
    return price_ok and bool(str(item.id).strip()) and bool(str(item.name).strip())


def compute_order(items: Iterable[CartItem]) -> OrderTotal:
    """Price a cart.

    Items are not filtered here; callers validate with ``is_valid_cart_item``
    first. An empty cart yields all-zero totals.

    Args:
        items: Cart lines with ``main`` or ``bump`` roles.

    Returns:
        OrderTotal where ``total = subtotal + bump_total`` and
        ``discounts = 0``.
    """
    items = tuple(items)
    subtotal_cents = sum(to_cents(i.price) for i in items if ItemRole(i.role) == ItemRole.MAIN)
    bump_cents = sum(to_cents(i.price) for i in items if ItemRole(i.role) == ItemRole.BUMP)
    return OrderTotal(
        subtotal=from_cents(subtotal_cents),
        bump_total=from_cents(bump_cents),
        total=from_cents(subtotal_cents + bump_cents),
        discounts=from_cents(0),
        items=items,
    )


def apply_coupon(
    order: OrderTotal,
    code: str,
    coupons: Mapping[str, Decimal] = DEFAULT_COUPONS,
) -> OrderTotal:
    """Apply a percentage coupon to an already priced order.

    Codes are matched case-insensitively. An unknown code returns ``order``
    unchanged. The discount is ``round(total_cents * pct)`` and accumulates
    into ``discounts``.
    """
    percentage = coupons.get((code or "").strip().upper())
    if not percentage:
        return order

    total_cents = to_cents(order.total)
    discount_cents = int(
        (Decimal(total_cents) * Decimal(str(percentage))).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )
    return replace(
        order,
        discounts=from_cents(to_cents(order.discounts) + discount_cents),
        total=from_cents(total_cents - discount_cents),
        coupon_code=code.strip().upper(),
    )
