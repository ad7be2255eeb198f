from decimal import Decimal

from apps.orders.domain import CartItem, ItemRole
from apps.orders.money import apply_coupon, compute_order, from_cents, is_valid_cart_item, to_cents


def item(price, role=ItemRole.MAIN, id="p1", name="Curso"):
    return CartItem(id=id, name=name, price=Decimal(price), role=role)


def test_main_plus_bump_sums_without_float_drift():
    order = compute_order([item("19.90"), item("9.97", ItemRole.BUMP, id="b1", name="Bonus")])
    assert order.subtotal == Decimal("19.90")
    assert order.bump_total == Decimal("9.97")
    assert order.total == Decimal("29.87")
    assert str(order.total) == "29.87"
    assert order.discounts == Decimal("0.00")


def test_float_prices_are_taken_at_their_decimal_repr():
    order = compute_order([CartItem("a", "A", 0.1), CartItem("b", "B", 0.2)])
    assert order.total == Decimal("0.30")


def test_empty_cart_is_all_zero():
    order = compute_order([])
    assert order.total == order.subtotal == order.bump_total == Decimal("0.00")
    assert order.items == ()


def test_cents_conversion_rounds_half_up():
    assert to_cents("10.005") == 1001
    assert to_cents(Decimal("19.90")) == 1990
    assert from_cents(2987) == Decimal("29.87")


def test_desconto10_takes_exactly_ten_percent():
    order = compute_order([item("197.00")])
    out = apply_coupon(order, "DESCONTO10")
    assert out.discounts == Decimal("19.70")
    assert out.total == Decimal("177.30")
    assert out.coupon_code == "DESCONTO10"


def test_coupon_discount_is_cent_rounded():
    # 10% of 2987 cents is 298.7 -> 299
    order = compute_order([item("19.90"), item("9.97", ItemRole.BUMP)])
    out = apply_coupon(order, "desconto10")
    assert out.discounts == Decimal("2.99")
    assert out.total == Decimal("26.88")


def test_unknown_coupon_returns_order_unchanged():
    order = compute_order([item("197.00")])
    assert apply_coupon(order, "UNKNOWN") is order
    assert apply_coupon(order, "") is order


def test_discounts_accumulate():
    order = compute_order([item("197.00")])
    out = apply_coupon(apply_coupon(order, "DESCONTO10"), "DESCONTO10")
    assert out.total == Decimal("159.57")
    assert out.discounts == Decimal("37.43")


def test_cart_item_validity():
    assert is_valid_cart_item(item("1.00"))
    assert not is_valid_cart_item(item("0"))
    assert not is_valid_cart_item(item("-5.00"))
    assert not is_valid_cart_item(item("5.00", name="  "))
    assert not is_valid_cart_item(item("5.00", id=""))
