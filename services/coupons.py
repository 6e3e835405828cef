# services/coupons.py
"""
Coupon lookup and eligibility checks shared by checkout and subscription management
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func

from core.database_models import Coupon, Product
from core.errors import BadRequestError

logger = logging.getLogger(__name__)

# Wording shown at checkout
CHECKOUT_MESSAGES = {
    'missing': 'Missing couponCode',
    'not_found': 'Invalid coupon code',
    'not_started': 'This coupon is not yet active',
    'expired': 'This coupon has expired',
    'exhausted': 'This coupon has reached its maximum usage',
    'wrong_products': 'This coupon does not apply to the selected products',
    'subscriptions_only': 'This coupon only applies to subscriptions',
    'one_time_only': 'This coupon only applies to one-time purchases',
}

# Wording shown in the account area when applying to a live subscription
SUBSCRIPTION_MESSAGES = {
    'not_found': 'Invalid or inactive coupon code',
    'not_for_subscriptions': 'This coupon does not apply to subscriptions',
    'not_started': 'This coupon is not yet valid',
    'expired': 'This coupon has expired',
    'exhausted': 'This coupon has reached its maximum redemptions',
}


class CouponRejected(BadRequestError):
    """Coupon exists or was requested but cannot be used here"""

    def __init__(self, reason: str, messages: Dict[str, str]):
        super().__init__(messages[reason])
        self.reason = reason


def find_active_coupon(code: str) -> Optional[Coupon]:
    """Case-insensitive lookup among active coupons"""
    normalized = (code or '').strip()
    if not normalized:
        return None
    return Coupon.query.filter(
        func.lower(Coupon.code) == normalized.lower(),
        Coupon.is_active.is_(True)
    ).first()


def window_problem(coupon: Coupon, now: datetime = None) -> Optional[str]:
    """First reason the coupon cannot be redeemed right now, if any"""
    now = now or datetime.utcnow()
    if coupon.valid_from and coupon.valid_from > now:
        return 'not_started'
    if coupon.valid_until and coupon.valid_until < now:
        return 'expired'
    if coupon.max_redemptions and (coupon.times_redeemed or 0) >= coupon.max_redemptions:
        return 'exhausted'
    return None


def discount_for_amount(coupon: Coupon, base_amount: float) -> float:
    """Per-period discount, never more than the amount itself"""
    base_amount = float(base_amount or 0)
    if coupon.discount_type == 'percentage':
        return min(base_amount * float(coupon.percent_off or 0) / 100, base_amount)
    return min(float(coupon.amount_off or 0), base_amount)


def validate_for_checkout(coupon_code: str, product_ids: List[str] = None) -> Dict[str, Any]:
    """
    Check a code entered at checkout against the cart's products

    Returns:
        The public view of the coupon

    Raises:
        CouponRejected: with the checkout wording
    """
    product_ids = [pid for pid in (product_ids or []) if pid]

    if not (coupon_code or '').strip():
        raise CouponRejected('missing', CHECKOUT_MESSAGES)

    coupon = find_active_coupon(coupon_code)
    if coupon is None:
        raise CouponRejected('not_found', CHECKOUT_MESSAGES)

    problem = window_problem(coupon)
    if problem:
        raise CouponRejected(problem, CHECKOUT_MESSAGES)

    if coupon.applies_to_products:
        if not any(pid in coupon.applies_to_products for pid in product_ids):
            raise CouponRejected('wrong_products', CHECKOUT_MESSAGES)

    if product_ids:
        products = Product.query.filter(Product.id.in_(product_ids)).all()
        has_subscription = any(p.is_subscription_like for p in products)
        has_one_time = any(not p.is_subscription_like for p in products)

        if has_one_time and coupon.applies_to_one_time is False:
            raise CouponRejected('subscriptions_only', CHECKOUT_MESSAGES)
        if has_subscription and coupon.applies_to_subscriptions is False:
            raise CouponRejected('one_time_only', CHECKOUT_MESSAGES)

    logger.info(f"Coupon {coupon.code} accepted for {len(product_ids)} product(s)")
    return {
        'code': coupon.code,
        'discountType': coupon.discount_type,
        'percentOff': coupon.percent_off,
        'amountOff': coupon.amount_off,
        'currency': coupon.currency,
    }


def coupon_for_subscription(coupon_code: str, strict_applicability: bool = True) -> Coupon:
    """
    Resolve a coupon to apply to an existing subscription

    Args:
        coupon_code: Code typed by the subscriber
        strict_applicability: When True any falsy ``applies_to_subscriptions``
            rejects; otherwise only an explicit False does
    """
    coupon = find_active_coupon(coupon_code)
    if coupon is None:
        raise CouponRejected('not_found', SUBSCRIPTION_MESSAGES)

    blocked = (not coupon.applies_to_subscriptions) if strict_applicability \
        else coupon.applies_to_subscriptions is False
    if blocked:
        raise CouponRejected('not_for_subscriptions', SUBSCRIPTION_MESSAGES)

    problem = window_problem(coupon)
    if problem:
        raise CouponRejected(problem, SUBSCRIPTION_MESSAGES)
    return coupon
