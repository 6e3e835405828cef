# api/subscriptions.py
"""
Subscription lifecycle API
"""

import logging

from flask import Blueprint, request, jsonify, g

from middleware.security import require_auth
from services.subscriptions import manage_subscription

subscriptions_bp = Blueprint('subscriptions', __name__)
logger = logging.getLogger(__name__)


@subscriptions_bp.route('/manage', methods=['POST'])
@require_auth
def manage():
    """
    Run one action (cancel, pause, update_price, apply_coupon, ...) on a subscription

    Body: ``{action, subscriptionId, data}``
    """
    payload = request.get_json(silent=True) or {}
    result = manage_subscription(
        actor_id=g.current_user.id,
        subscription_id=payload.get('subscriptionId'),
        action=payload.get('action'),
        data=payload.get('data') or {},
    )
    return jsonify(result)
