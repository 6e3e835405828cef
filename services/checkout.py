# services/checkout.py
"""
Stripe Checkout sessions for one-off course purchases
"""

import logging
from typing import Any, Dict, Optional

from core.database_models import CourseEnrollment, Product, db
from core.errors import BadRequestError, NotFoundError
from core.step_logging import log_step
from services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

TAG = 'CREATE-COURSE-CHECKOUT'


def _price_in_cents(value) -> int:
    try:
        amount = int(value)
    except (TypeError, ValueError):
        raise BadRequestError('Missing required fields: productId and priceAmount')
    if amount <= 0:
        raise BadRequestError('priceAmount must be positive')
    return amount


def reserve_enrollment(user_id: str, course_id: str) -> CourseEnrollment:
    """Inactive purchase enrollment, switched on once payment is confirmed"""
    enrollment = CourseEnrollment.query.filter_by(user_id=user_id, course_id=course_id).first()
    if enrollment is None:
        enrollment = CourseEnrollment(
            user_id=user_id, course_id=course_id, enrollment_type='purchase', is_active=False
        )
        db.session.add(enrollment)
        log_step(TAG, 'Pending enrollment created', {'courseId': course_id})
    elif not enrollment.is_active:
        enrollment.enrollment_type = 'purchase'
    return enrollment


def create_course_checkout(user_id: str,
                           email: str,
                           payload: Dict[str, Any],
                           origin: str,
                           gateway: Optional[StripeGateway] = None) -> Dict[str, str]:
    """
    Open a Stripe Checkout session priced by the caller's regional price

    Body fields: ``productId``, ``priceAmount`` (cents), optional ``courseId``,
    ``region`` and ``currency``.

    Returns:
        ``{'url': <checkout url>}``
    """
    if not email:
        raise BadRequestError('User email not available')

    product_id = payload.get('productId')
    if not product_id or not payload.get('priceAmount'):
        raise BadRequestError('Missing required fields: productId and priceAmount')
    price_amount = _price_in_cents(payload['priceAmount'])
    course_id = payload.get('courseId') or ''
    region = payload.get('region')

    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError('Product not found')
    log_step(TAG, 'Product fetched', {'name': product.name, 'priceAmount': price_amount})

    gateway = gateway or StripeGateway()
    customer_id = gateway.find_customer_id(email)
    if customer_id:
        log_step(TAG, 'Existing customer found', {'customerId': customer_id})

    product_data = {'name': product.name}
    if product.description:
        product_data['description'] = product.description

    origin = origin.rstrip('/')
    params = {
        'line_items': [{
            'price_data': {
                'currency': (payload.get('currency') or 'usd').lower(),
                'product_data': product_data,
                'unit_amount': price_amount,
            },
            'quantity': 1,
        }],
        'mode': 'payment',
        'success_url': f"{origin}/payment-success?session_id={{CHECKOUT_SESSION_ID}}&course_id={course_id}",
        'cancel_url': f"{origin}/payment-cancelled?product_id={product_id}",
        'metadata': {
            'product_id': product_id,
            'course_id': course_id,
            'user_id': user_id,
            'region': region or '',
        },
        'payment_intent_data': {
            'metadata': {'product_id': product_id, 'course_id': course_id, 'user_id': user_id},
        },
    }
    if customer_id:
        params['customer'] = customer_id
    else:
        params['customer_email'] = email

    session = gateway.create_checkout_session(**params)
    log_step(TAG, 'Checkout session created', {'sessionId': session['id']})

    if course_id:
        reserve_enrollment(user_id, course_id)
        db.session.commit()

    return {'url': session['url']}
