# services/refunds.py
"""
Order refunds through Stripe or PayPal

A full refund also withdraws what the order granted: the linked subscription
is cancelled and the course enrollment deactivated.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from core.database_models import CourseEnrollment, Order, Subscription, UserTag, db
from core.errors import BadRequestError, NotFoundError
from core.step_logging import log_step
from services.paypal_gateway import PayPalGateway
from services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

TAG = 'PROCESS-REFUND'

# Stripe accepts only these reasons
STRIPE_REASONS = ('duplicate', 'fraudulent')


def stripe_refund_params(payment_id: str, amount: float, reason: Optional[str]) -> Dict[str, Any]:
    params = {
        'amount': int(round(amount * 100)),
        'reason': reason if reason in STRIPE_REASONS else 'requested_by_customer',
    }
    if payment_id.startswith('pi_'):
        params['payment_intent'] = payment_id
    elif payment_id.startswith('ch_'):
        params['charge'] = payment_id
    else:
        raise BadRequestError('Invalid Stripe payment ID format')
    return params


def _refund_amount(order: Order, amount) -> float:
    if amount in (None, ''):
        return order.amount
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise BadRequestError('amount must be a number')
    if value <= 0:
        raise BadRequestError('amount must be positive')
    return value


def _withdraw_access(order: Order, full_refund: bool) -> None:
    product = order.product
    now = datetime.utcnow()

    if order.subscription_id and full_refund:
        subscription = db.session.get(Subscription, order.subscription_id)
        if subscription is not None:
            subscription.status = 'cancelled'
            subscription.cancelled_at = now
            log_step(TAG, 'Subscription cancelled', {'subscriptionId': subscription.id})

    if product is None or not order.user_id:
        return

    if product.refund_remove_tag and product.purchase_tag_id:
        UserTag.query.filter_by(user_id=order.user_id, tag_id=product.purchase_tag_id) \
            .delete(synchronize_session=False)
        log_step(TAG, 'Removed purchase tag from user')

    if product.course_id and full_refund:
        CourseEnrollment.query.filter_by(user_id=order.user_id, course_id=product.course_id) \
            .update({'is_active': False}, synchronize_session=False)
        log_step(TAG, 'Deactivated course enrollment')


def process_refund(order_id: str,
                   amount=None,
                   reason: Optional[str] = None,
                   stripe_gateway: StripeGateway = None,
                   paypal_gateway: PayPalGateway = None) -> Dict[str, Any]:
    """
    Refund all or part of an order

    Returns:
        ``{success, refundId, refundAmount, isFullRefund}``

    Raises:
        NotFoundError, BadRequestError, ProviderError
    """
    log_step(TAG, 'Refund requested', {'orderId': order_id, 'amount': amount, 'reason': reason})

    order = db.session.get(Order, order_id) if order_id else None
    if order is None:
        raise NotFoundError('Order not found')
    if order.status == 'refunded':
        raise BadRequestError('Order has already been refunded')

    refund_amount = _refund_amount(order, amount)
    payment_id = order.provider_payment_id or ''
    log_step(TAG, 'Order found', {
        'provider': order.payment_provider, 'providerId': payment_id, 'amount': order.amount
    })

    if order.payment_provider == 'stripe':
        params = stripe_refund_params(payment_id, refund_amount, reason)
        refund = (stripe_gateway or StripeGateway()).create_refund(**params)
        log_step(TAG, 'Stripe refund processed', {'refundId': refund['id'], 'status': refund.get('status')})
    elif order.payment_provider == 'paypal':
        refund = (paypal_gateway or PayPalGateway()).refund_capture(
            payment_id, refund_amount, order.currency or 'USD', reason or 'Refund processed'
        )
        log_step(TAG, 'PayPal refund processed', {'refundId': refund.get('id'), 'status': refund.get('status')})
    else:
        raise BadRequestError('Unknown payment provider')

    full_refund = refund_amount >= order.amount
    order.status = 'refunded' if full_refund else 'partial_refund'
    order.refund_amount = refund_amount
    order.refunded_at = datetime.utcnow()
    order.refund_reason = reason
    order.provider_refund_id = refund.get('id')

    _withdraw_access(order, full_refund)
    db.session.commit()

    log_step(TAG, 'Refund completed successfully')
    return {
        'success': True,
        'refundId': order.provider_refund_id,
        'refundAmount': refund_amount,
        'isFullRefund': full_refund,
    }
