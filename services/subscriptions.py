# services/subscriptions.py
"""
Subscription lifecycle management for Stripe and PayPal subscriptions

Each provider gets an action class; one public entry point loads the local
record, checks that the actor may manage it and dispatches the action.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from flask import current_app

from core.database_models import CourseEnrollment, Subscription, SubscriptionItem, db
from core.errors import BadRequestError, ForbiddenError, NotFoundError, ProviderError
from core.step_logging import log_step
from middleware.security import is_admin
from services.coupons import coupon_for_subscription, discount_for_amount
from services.paypal_gateway import PayPalGateway
from services.stripe_gateway import INTERVAL_MAP, StripeGateway, period_end, unix_to_datetime

logger = logging.getLogger(__name__)

TAG = 'MANAGE-SUBSCRIPTION'

ONE_TIME_PAYMENT_MESSAGE = (
    "This record isn't linked to a Stripe subscription (missing sub_ id). "
    "It was created via one-time payment, so pause/cancel/price changes aren't supported. "
    "Please re-create the subscription using the subscription checkout flow."
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return f"{value.isoformat()}Z" if value else None


def _first(*values):
    for value in values:
        if value:
            return value
    return None


def revoke_course_access(subscription: Subscription) -> int:
    """Deactivate enrollments for every course bundled in the subscription's product"""
    if not subscription.user_id:
        return 0

    course_ids = [
        item.item_id for item in SubscriptionItem.query.filter_by(
            subscription_product_id=subscription.product_id,
            item_type='course'
        )
    ]
    if not course_ids:
        return 0

    revoked = CourseEnrollment.query.filter(
        CourseEnrollment.user_id == subscription.user_id,
        CourseEnrollment.course_id.in_(course_ids)
    ).update({'is_active': False}, synchronize_session=False)
    log_step(TAG, 'Course access revoked', {'userId': subscription.user_id, 'courses': len(course_ids)})
    return revoked


def _require_amount(data: Dict[str, Any]) -> float:
    try:
        return float(data['newAmount'])
    except (KeyError, TypeError, ValueError):
        raise BadRequestError('newAmount is required')


class SubscriptionActions:
    """Shared dispatch for provider-specific action handlers"""

    provider = None
    aliases: Dict[str, str] = {}

    def __init__(self, subscription: Subscription):
        self.subscription = subscription

    @property
    def provider_id(self) -> str:
        return self.subscription.provider_subscription_id

    def run(self, action: str, data: Dict[str, Any]) -> Dict[str, Any]:
        handler = getattr(self, f"do_{self.aliases.get(action, action)}", None) if action else None
        if handler is None:
            raise BadRequestError(f"Unknown action: {action}")
        result = handler(data or {})
        db.session.commit()
        return result


class StripeSubscriptionActions(SubscriptionActions):
    provider = 'stripe'

    def __init__(self, subscription: Subscription, gateway: StripeGateway = None):
        super().__init__(subscription)
        if (self.provider_id or '').startswith('pi_'):
            raise BadRequestError(ONE_TIME_PAYMENT_MESSAGE)
        self.gateway = gateway or StripeGateway()

    def do_cancel(self, data):
        stripe_sub = self.gateway.modify_subscription(self.provider_id, cancel_at_period_end=True)
        log_step(TAG, 'Stripe cancel_at_period_end applied', {
            'current_period_end': period_end(stripe_sub),
            'trial_end': stripe_sub.get('trial_end'),
            'cancel_at': stripe_sub.get('cancel_at'),
        })

        stripe_period_end = unix_to_datetime(period_end(stripe_sub))
        trial_end = unix_to_datetime(stripe_sub.get('trial_end'))
        cancels_at = _first(unix_to_datetime(stripe_sub.get('cancel_at')), stripe_period_end, trial_end)

        sub = self.subscription
        sub.status = 'pending_cancellation'
        sub.cancels_at = cancels_at
        sub.current_period_end = _first(stripe_period_end, trial_end, cancels_at, sub.current_period_end)

        log_step(TAG, 'Subscription set to cancel at period end', {'cancels_at': _iso(cancels_at)})
        return {'status': 'pending_cancellation', 'cancels_at': _iso(cancels_at)}

    def do_cancel_immediately(self, data):
        self.gateway.cancel_subscription(self.provider_id)
        self.subscription.status = 'cancelled'
        self.subscription.cancelled_at = datetime.utcnow()
        revoke_course_access(self.subscription)
        log_step(TAG, 'Subscription cancelled immediately')
        return {'status': 'cancelled'}

    def do_reactivate(self, data):
        self.gateway.modify_subscription(self.provider_id, cancel_at_period_end=False)
        self.subscription.status = 'active'
        self.subscription.cancels_at = None
        log_step(TAG, 'Subscription reactivated')
        return {'status': 'active'}

    def do_pause(self, data):
        self.gateway.modify_subscription(self.provider_id, pause_collection={'behavior': 'void'})
        self.subscription.status = 'paused'
        self.subscription.paused_at = datetime.utcnow()
        log_step(TAG, 'Subscription paused')
        return {'status': 'paused'}

    def do_resume(self, data):
        # An empty string unsets pause_collection
        self.gateway.modify_subscription(self.provider_id, pause_collection='')
        self.subscription.status = 'active'
        self.subscription.paused_at = None
        log_step(TAG, 'Subscription resumed')
        return {'status': 'active'}

    def do_update_price(self, data):
        new_amount = _require_amount(data)

        stripe_sub = self.gateway.retrieve_subscription(self.provider_id)
        current_item = stripe_sub['items']['data'][0]
        current_price = self.gateway.retrieve_price(current_item['price']['id'])

        recurring = current_price.get('recurring') or {}
        interval = INTERVAL_MAP.get(self.subscription.interval or 'monthly') \
            or recurring.get('interval') or 'month'

        new_price = self.gateway.create_price(
            product=current_price['product'],
            unit_amount=int(round(new_amount * 100)),
            currency='usd',
            recurring={'interval': interval},
        )
        self.gateway.modify_subscription(
            self.provider_id,
            items=[{'id': current_item['id'], 'price': new_price['id']}],
            proration_behavior='none',
        )

        self.subscription.amount = new_amount
        log_step(TAG, 'Price updated', {'newAmount': new_amount, 'interval': interval})
        return {'newAmount': new_amount}

    def _stripe_coupon_id(self, coupon) -> str:
        """Create the Stripe coupon on first use and remember its id"""
        if coupon.stripe_coupon_id:
            return coupon.stripe_coupon_id

        params = {'name': coupon.name or coupon.code, 'duration': coupon.duration}
        if coupon.duration == 'repeating' and coupon.duration_in_months:
            params['duration_in_months'] = coupon.duration_in_months
        if coupon.discount_type == 'percentage' and coupon.percent_off:
            params['percent_off'] = coupon.percent_off
        elif coupon.discount_type == 'fixed' and coupon.amount_off:
            params['amount_off'] = int(round(coupon.amount_off * 100))
            params['currency'] = (coupon.currency or 'USD').lower()

        stripe_coupon = self.gateway.create_coupon(**params)
        coupon.stripe_coupon_id = stripe_coupon['id']
        log_step(TAG, 'Stripe coupon created', {'code': coupon.code, 'stripeCouponId': coupon.stripe_coupon_id})
        return coupon.stripe_coupon_id

    def do_apply_coupon(self, data):
        coupon = coupon_for_subscription(data.get('couponCode'), strict_applicability=True)
        stripe_coupon_id = self._stripe_coupon_id(coupon)

        self.gateway.modify_subscription(self.provider_id, discounts=[{'coupon': stripe_coupon_id}])

        discount = discount_for_amount(coupon, self.subscription.amount)
        self.subscription.coupon_code = coupon.code
        self.subscription.coupon_discount = discount
        coupon.times_redeemed = (coupon.times_redeemed or 0) + 1

        log_step(TAG, 'Coupon applied', {
            'couponCode': coupon.code, 'stripeCouponId': stripe_coupon_id, 'discountAmount': discount
        })
        return {'couponApplied': coupon.code, 'discountType': coupon.discount_type, 'discountAmount': discount}

    def do_remove_coupon(self, data):
        try:
            self.gateway.delete_discount(self.provider_id)
        except ProviderError as e:
            # Stripe errors when there is no discount to delete
            log_step(TAG, 'deleteDiscount note', {'message': str(e)})

        self.subscription.coupon_code = None
        self.subscription.coupon_discount = None
        log_step(TAG, 'Coupon removed')
        return {'couponRemoved': True}

    def do_update_payment_method(self, data):
        stripe_sub = self.gateway.retrieve_subscription(self.provider_id)
        customer_id = stripe_sub['customer']
        payment_method_id = data.get('paymentMethodId')

        if payment_method_id:
            self.gateway.attach_payment_method(payment_method_id, customer_id)
            self.gateway.modify_subscription(self.provider_id, default_payment_method=payment_method_id)
            self.gateway.modify_customer(
                customer_id, invoice_settings={'default_payment_method': payment_method_id}
            )
            self.subscription.payment_provider = 'stripe'
            log_step(TAG, 'Payment method updated directly', {'paymentMethodId': payment_method_id})
            return {'success': True, 'paymentMethodUpdated': True}

        origin = (data.get('returnUrl') or current_app.config['SITE_URL']).rstrip('/')
        session = self.gateway.create_portal_session(
            customer=customer_id,
            return_url=f"{origin}/account",
            flow_data={'type': 'payment_method_update'},
        )
        log_step(TAG, 'Customer portal session created for payment method update', {'url': session['url']})
        return {'url': session['url']}


class PayPalSubscriptionActions(SubscriptionActions):
    provider = 'paypal'
    aliases = {'update_paypal_payment': 'update_payment_method'}

    def __init__(self, subscription: Subscription, gateway: PayPalGateway = None):
        super().__init__(subscription)
        self.gateway = gateway or PayPalGateway()

    def do_cancel(self, data):
        # No native cancel-at-period-end; keep access until the paid period runs out
        self.gateway.cancel(self.provider_id, 'Customer requested cancellation')

        now = datetime.utcnow()
        period_end_at = self.subscription.current_period_end
        if period_end_at and period_end_at > now:
            self.subscription.status = 'pending_cancellation'
            self.subscription.cancels_at = period_end_at
            result = {'status': 'pending_cancellation', 'cancels_at': _iso(period_end_at)}
        else:
            self.subscription.status = 'cancelled'
            self.subscription.cancelled_at = now
            result = {'status': 'cancelled'}

        log_step(TAG, 'PayPal subscription cancelled', result)
        return result

    def do_pause(self, data):
        self.gateway.suspend(self.provider_id, 'Customer requested pause')
        self.subscription.status = 'paused'
        self.subscription.paused_at = datetime.utcnow()
        log_step(TAG, 'PayPal subscription paused')
        return {'status': 'paused'}

    def do_resume(self, data):
        self.gateway.activate(self.provider_id, 'Customer requested resume')
        self.subscription.status = 'active'
        self.subscription.paused_at = None
        log_step(TAG, 'PayPal subscription resumed')
        return {'status': 'active'}

    def do_cancel_immediately(self, data):
        self.gateway.cancel(self.provider_id, 'Immediate cancellation requested')
        self.subscription.status = 'cancelled'
        self.subscription.cancelled_at = datetime.utcnow()
        revoke_course_access(self.subscription)
        log_step(TAG, 'PayPal subscription cancelled immediately')
        return {'status': 'cancelled'}

    def do_reactivate(self, data):
        # Only suspended PayPal subscriptions can be activated again
        self.gateway.activate(self.provider_id, 'Customer requested reactivation')
        self.subscription.status = 'active'
        self.subscription.cancels_at = None
        log_step(TAG, 'PayPal subscription reactivated')
        return {'status': 'active'}

    def do_update_price(self, data):
        new_amount = _require_amount(data)
        self.subscription.amount = new_amount
        log_step(TAG, 'PayPal price updated in database', {'newAmount': new_amount})
        return {
            'newAmount': new_amount,
            'note': 'Price updated in database. PayPal billing will reflect this on next renewal.',
        }

    def do_apply_coupon(self, data):
        coupon_code = (data.get('couponCode') or '').strip()
        coupon = coupon_for_subscription(coupon_code, strict_applicability=False)

        discount_value = coupon.percent_off if coupon.discount_type == 'percentage' else coupon.amount_off
        self.subscription.coupon_code = coupon_code.upper()
        self.subscription.coupon_discount = discount_value
        coupon.times_redeemed = (coupon.times_redeemed or 0) + 1

        log_step(TAG, 'PayPal coupon applied in database', {'couponCode': coupon_code})
        return {
            'couponApplied': coupon_code,
            'discountType': coupon.discount_type,
            'discount': discount_value,
            'note': 'Coupon applied in database. PayPal does not support mid-cycle coupon changes.',
        }

    def do_remove_coupon(self, data):
        self.subscription.coupon_code = None
        self.subscription.coupon_discount = None
        log_step(TAG, 'PayPal coupon removed from database')
        return {'couponRemoved': True}

    def do_update_payment_method(self, data):
        url = PayPalGateway.autopay_url(self.provider_id)
        log_step(TAG, 'PayPal payment update - redirecting to PayPal', {'url': url})
        return {'url': url, 'message': 'Please update your payment method in your PayPal account'}


PROVIDER_ACTIONS = {
    'stripe': StripeSubscriptionActions,
    'paypal': PayPalSubscriptionActions,
}


def manage_subscription(actor_id: str, subscription_id: str, action: str,
                        data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Run a lifecycle action against a subscription the actor may manage

    Returns:
        ``{'success': True, **result}``

    Raises:
        NotFoundError, ForbiddenError, BadRequestError, ProviderError
    """
    log_step(TAG, 'Action requested', {'action': action, 'subscriptionId': subscription_id})

    subscription = db.session.get(Subscription, subscription_id) if subscription_id else None
    if subscription is None:
        raise NotFoundError('Subscription not found')

    actor_is_admin = is_admin(actor_id)
    if not actor_is_admin and actor_id != subscription.user_id:
        raise ForbiddenError('Forbidden')

    log_step(TAG, 'Subscription found', {
        'provider': subscription.payment_provider,
        'providerId': subscription.provider_subscription_id,
        'actorId': actor_id,
        'isAdmin': actor_is_admin,
    })

    actions_class = PROVIDER_ACTIONS.get(subscription.payment_provider)
    if actions_class is None:
        raise BadRequestError('Unknown payment provider')

    try:
        result = actions_class(subscription).run(action, data)
    except Exception:
        db.session.rollback()
        raise
    return {'success': True, **result}
