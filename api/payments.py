# api/payments.py
"""
Course checkout and order refund API
"""

import logging

from flask import Blueprint, current_app, request, jsonify, g

from middleware.security import limiter, require_admin, require_auth
from services.checkout import create_course_checkout
from services.refunds import process_refund

payments_bp = Blueprint('payments', __name__)
logger = logging.getLogger(__name__)


@payments_bp.route('/course-checkout', methods=['POST'])
@limiter.limit("20 per minute")
@require_auth
def course_checkout():
    """Body: ``{productId, priceAmount, courseId?, region?, currency?}``"""
    result = create_course_checkout(
        user_id=g.current_user.id,
        email=g.current_user.email,
        payload=request.get_json(silent=True) or {},
        origin=request.headers.get('Origin') or current_app.config['SITE_URL'],
    )
    return jsonify(result)


@payments_bp.route('/refund', methods=['POST'])
@require_admin
def refund_order():
    """Body: ``{orderId, amount?, reason?}``"""
    payload = request.get_json(silent=True) or {}
    result = process_refund(payload.get('orderId'), payload.get('amount'), payload.get('reason'))
    logger.info(f"Order {payload.get('orderId')} refunded by {g.current_user.id}")
    return jsonify(result)
