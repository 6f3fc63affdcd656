from datetime import datetime, timedelta, timezone

import pytest

from pricing import (
    CouponRejected,
    active_category_discount,
    check_coupon,
    compute_totals,
    coupon_discount,
    effective_price,
    evaluate_coupon,
    line_subtotal,
    normalize_code,
)

NOW = datetime(2025, 6, 1, 12, 0, 0)


def make_coupon(**overrides):
    coupon = {
        "code": "SAVE10",
        "discount_type": "percentage",
        "discount_value": 10,
        "is_active": True,
        "used_count": 0,
        "usage_limit": None,
        "min_order_amount": None,
        "max_discount_amount": None,
        "valid_from": None,
        "valid_until": None,
        "category_id": None,
    }
    coupon.update(overrides)
    return coupon


def line(price, qty=1, category_id="living"):
    return {"unit_price": price, "quantity": qty, "category_id": category_id}


def test_normalize_code():
    assert normalize_code("  save10 ") == "SAVE10"
    assert normalize_code(None) == ""


def test_percentage_discount():
    assert coupon_discount(make_coupon(), 250) == 25.0


def test_percentage_discount_is_capped():
    assert coupon_discount(make_coupon(discount_value=50, max_discount_amount=100), 1000) == 100.0


def test_zero_cap_means_uncapped():
    assert coupon_discount(make_coupon(discount_value=50, max_discount_amount=0), 1000) == 500.0


def test_fixed_amount_never_exceeds_subtotal():
    coupon = make_coupon(discount_type="fixed_amount", discount_value=75)
    assert coupon_discount(coupon, 200) == 75.0
    assert coupon_discount(coupon, 40) == 40.0


def test_rejects_before_window():
    coupon = make_coupon(valid_from=NOW + timedelta(days=1))
    with pytest.raises(CouponRejected) as exc:
        check_coupon(coupon, 100, NOW)
    assert exc.value.reason == "not_started"


def test_rejects_after_window():
    coupon = make_coupon(valid_until=NOW - timedelta(seconds=1))
    with pytest.raises(CouponRejected) as exc:
        check_coupon(coupon, 100, NOW)
    assert exc.value.reason == "expired"


def test_window_accepts_aware_and_string_timestamps():
    coupon = make_coupon(
        valid_from=datetime(2025, 5, 1, tzinfo=timezone.utc),
        valid_until="2025-07-01T00:00:00Z",
    )
    check_coupon(coupon, 100, NOW)


def test_usage_limit_reached():
    coupon = make_coupon(usage_limit=5, used_count=5)
    with pytest.raises(CouponRejected) as exc:
        check_coupon(coupon, 100, NOW)
    assert exc.value.reason == "usage_limit_reached"


def test_zero_usage_limit_is_unlimited():
    check_coupon(make_coupon(usage_limit=0, used_count=1000), 100, NOW)


def test_minimum_order():
    coupon = make_coupon(min_order_amount=300)
    with pytest.raises(CouponRejected) as exc:
        check_coupon(coupon, 299.99, NOW)
    assert exc.value.reason == "minimum_not_met"
    assert "$300.00" in exc.value.message
    check_coupon(coupon, 300, NOW)


def test_inactive_coupon():
    with pytest.raises(CouponRejected) as exc:
        check_coupon(make_coupon(is_active=False), 100, NOW)
    assert exc.value.reason == "inactive"


def test_category_coupon_only_discounts_its_category():
    coupon = make_coupon(discount_value=20, category_id="office")
    lines = [line(1000, 1, "living"), line(150, 2, "office")]
    assert evaluate_coupon(coupon, lines, NOW) == 60.0


def test_category_coupon_minimum_uses_whole_cart():
    coupon = make_coupon(discount_value=20, category_id="office", min_order_amount=500)
    lines = [line(1000, 1, "living"), line(100, 1, "office")]
    assert evaluate_coupon(coupon, lines, NOW) == 20.0


def test_category_coupon_without_matching_lines():
    coupon = make_coupon(category_id="bedroom")
    with pytest.raises(CouponRejected) as exc:
        evaluate_coupon(coupon, [line(100)], NOW)
    assert exc.value.reason == "not_applicable"


def test_totals_with_discount_above_free_shipping():
    totals = compute_totals(1000, 100)
    assert totals["shipping"] == 0.0
    assert totals["tax"] == 72.0
    assert totals["total"] == 972.0
    assert totals["free_shipping_remaining"] == 0.0


def test_totals_below_free_shipping():
    totals = compute_totals(200, 50)
    assert totals["shipping"] == 49.99
    assert totals["tax"] == 12.0
    assert totals["total"] == 211.99
    assert totals["free_shipping_remaining"] == 300.0


def test_free_shipping_threshold_is_inclusive():
    assert compute_totals(499.99)["shipping"] == 49.99
    assert compute_totals(500)["shipping"] == 0.0


def test_shipping_waiver_uses_pre_discount_subtotal():
    totals = compute_totals(600, 200)
    assert totals["shipping"] == 0.0
    assert totals["tax"] == 32.0


def test_discount_is_clamped_and_total_never_negative():
    totals = compute_totals(30, 80)
    assert totals["discount"] == 30.0
    assert totals["tax"] == 0.0
    assert totals["total"] == 49.99


def test_empty_cart_ships_free():
    assert compute_totals(0)["total"] == 0.0


def test_active_category_discount_prefers_largest():
    discounts = [
        {"discount_percentage": 10, "is_active": True},
        {"discount_percentage": 30, "is_active": False},
        {"discount_percentage": 25, "is_active": True, "valid_until": NOW - timedelta(days=1)},
        {"discount_percentage": 15, "is_active": True, "valid_from": NOW - timedelta(days=1)},
    ]
    assert active_category_discount(discounts, NOW)["discount_percentage"] == 15


def test_no_active_category_discount():
    assert active_category_discount([], NOW) is None


def test_effective_price():
    assert effective_price(1599, 20) == 1279.2
    assert effective_price(899, None) == 899.0


def test_subtotal_adds_lines_rounded_to_cents():
    lines = [line(19.99, 3), line(0.1, 3), line(33.33, 7)]
    assert line_subtotal(lines) == 293.58
    assert line_subtotal(lines) == round(sum(round(l["unit_price"] * l["quantity"], 2) for l in lines), 2)
