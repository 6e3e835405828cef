# api/webhooks.py
"""
Inbound provider webhooks
"""

import json
import logging

import stripe
from flask import Blueprint, request, jsonify, current_app

from services.referrals import ReferralCreditService
from services.stripe_gateway import construct_webhook_event

webhooks_bp = Blueprint('webhooks', __name__)
logger = logging.getLogger(__name__)


@webhooks_bp.route('/stripe', methods=['POST'])
def stripe_webhook():
    payload = request.get_data()
    secret = current_app.config.get('STRIPE_WEBHOOK_SECRET')

    if secret:
        try:
            event = construct_webhook_event(payload, request.headers.get('Stripe-Signature', ''), secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Stripe webhook signature verification failed: {e}")
            return jsonify({'error': 'Invalid signature'}), 400
    else:
        logger.warning("STRIPE_WEBHOOK_SECRET not set, accepting unverified webhook")
        try:
            event = json.loads(payload)
        except ValueError:
            return jsonify({'error': 'Invalid payload'}), 400

    ReferralCreditService().handle_event(event)
    return jsonify({'received': True})
