"""
Coupon evaluation and order-total computation.

Documents are the plain dicts read from MongoDB. Amounts are floats rounded to
cents; timestamps are compared as naive UTC datetimes, which is what pymongo
hands back.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

TAX_RATE = float(os.getenv("TAX_RATE", "0.08"))
SHIPPING_FEE = float(os.getenv("SHIPPING_FEE", "49.99"))
FREE_SHIPPING_THRESHOLD = float(os.getenv("FREE_SHIPPING_THRESHOLD", "500"))


class CouponRejected(Exception):
    """A coupon cannot be applied to the current order."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def utc_naive(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def within_window(valid_from: Any, valid_until: Any, now: Optional[datetime] = None) -> bool:
    now = utc_naive(now) or datetime.utcnow()
    start = utc_naive(valid_from)
    end = utc_naive(valid_until)
    if start is not None and now < start:
        return False
    if end is not None and now > end:
        return False
    return True


def active_category_discount(discounts: Iterable[Dict[str, Any]],
                             now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Pick the category discount currently in force, largest percentage first."""
    active = [
        d for d in discounts
        if d.get("is_active") and within_window(d.get("valid_from"), d.get("valid_until"), now)
    ]
    if not active:
        return None
    return max(active, key=lambda d: float(d.get("discount_percentage") or 0))


def effective_price(price: float, discount_percentage: Optional[float] = None) -> float:
    if not discount_percentage:
        return round(float(price), 2)
    return round(float(price) * (1 - float(discount_percentage) / 100), 2)


def check_coupon(coupon: Dict[str, Any], subtotal: float, now: Optional[datetime] = None) -> None:
    """Raise CouponRejected unless the coupon may be used on an order of `subtotal`."""
    code = coupon.get("code")
    if not coupon.get("is_active", True):
        raise CouponRejected("inactive", "The coupon code you entered is not valid or has expired.")

    now = utc_naive(now) or datetime.utcnow()
    start = utc_naive(coupon.get("valid_from"))
    end = utc_naive(coupon.get("valid_until"))
    if start is not None and now < start:
        raise CouponRejected("not_started", "This coupon is not yet active.")
    if end is not None and now > end:
        raise CouponRejected("expired", "This coupon code has expired.")

    # null and 0 both mean "no limit" for the optional thresholds
    usage_limit = coupon.get("usage_limit")
    if usage_limit and (coupon.get("used_count") or 0) >= usage_limit:
        raise CouponRejected("usage_limit_reached", "This coupon has reached its usage limit.")

    min_order = coupon.get("min_order_amount")
    if min_order and subtotal < min_order:
        raise CouponRejected(
            "minimum_not_met",
            f"This coupon requires a minimum order of ${float(min_order):.2f}.",
        )
    logger.debug("coupon %s passed checks for subtotal %.2f", code, subtotal)


def coupon_discount(coupon: Dict[str, Any], amount: float) -> float:
    amount = max(0.0, float(amount))
    value = float(coupon.get("discount_value") or 0)
    if coupon.get("discount_type") == "percentage":
        discount = amount * value / 100
        cap = coupon.get("max_discount_amount")
        if cap and discount > cap:
            discount = float(cap)
    else:
        discount = min(value, amount)
    return round(min(discount, amount), 2)


def line_subtotal(lines: Iterable[Dict[str, Any]], category_id: Optional[str] = None) -> float:
    total = 0.0
    for line in lines:
        if category_id is not None and line.get("category_id") != category_id:
            continue
        # each line is rounded on its own so the subtotal matches the order items
        total += round(float(line["unit_price"]) * int(line["quantity"]), 2)
    return round(total, 2)


def evaluate_coupon(coupon: Dict[str, Any], lines: List[Dict[str, Any]],
                    now: Optional[datetime] = None) -> float:
    """Validate `coupon` against priced cart lines and return the discount.

    Each line carries unit_price, quantity and category_id. A coupon bound to
    a category only discounts that category's lines; the minimum order is
    still measured on the whole cart.
    """
    subtotal = line_subtotal(lines)
    try:
        check_coupon(coupon, subtotal, now)
        eligible = subtotal
        if coupon.get("category_id"):
            eligible = line_subtotal(lines, coupon["category_id"])
            if eligible <= 0:
                raise CouponRejected("not_applicable", "This coupon does not apply to any item in your cart.")
    except CouponRejected as exc:
        logger.info("coupon %s rejected: %s", coupon.get("code"), exc.reason)
        raise
    return coupon_discount(coupon, eligible)


def compute_totals(subtotal: float, discount: float = 0.0) -> Dict[str, float]:
    subtotal = round(float(subtotal), 2)
    discount = round(min(max(0.0, float(discount)), subtotal), 2)
    discounted = max(0.0, subtotal - discount)
    shipping = 0.0 if subtotal == 0 or subtotal >= FREE_SHIPPING_THRESHOLD else SHIPPING_FEE
    tax = round(discounted * TAX_RATE, 2)
    total = round(max(0.0, discounted + shipping + tax), 2)
    return {
        "subtotal": subtotal,
        "discount": discount,
        "shipping": shipping,
        "tax": tax,
        "total": total,
        "free_shipping_remaining": round(max(0.0, FREE_SHIPPING_THRESHOLD - subtotal), 2) if shipping else 0.0,
    }
