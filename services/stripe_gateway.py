# services/stripe_gateway.py
"""
Thin wrapper over the Stripe SDK used by the billing services
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import stripe
from flask import current_app

from core.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

# Local billing intervals to Stripe recurring intervals
INTERVAL_MAP = {
    'daily': 'day',
    'weekly': 'week',
    'monthly': 'month',
    'yearly': 'year',
    'annual': 'year',
}


def unix_to_datetime(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.utcfromtimestamp(int(value))


def period_end(subscription: Dict[str, Any]) -> Optional[int]:
    """current_period_end lives on the items in newer API versions"""
    if subscription.get('current_period_end'):
        return subscription['current_period_end']
    items = (subscription.get('items') or {}).get('data') or []
    if items:
        return items[0].get('current_period_end')
    return None


class StripeGateway:
    """Stripe calls with credentials from app config and uniform error mapping"""

    def __init__(self, api_key: str = None):
        self.api_key = api_key or current_app.config.get('STRIPE_SECRET_KEY')
        if not self.api_key:
            raise ConfigurationError('STRIPE_SECRET_KEY is not set')

    def _call(self, description: str, func, *args, **kwargs):
        try:
            return func(*args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as e:
            message = getattr(e, 'user_message', None) or str(e)
            logger.error(f"Stripe {description} failed: {message}")
            raise ProviderError(f"Stripe error: {message}")

    def retrieve_subscription(self, subscription_id: str):
        return self._call('retrieve subscription', stripe.Subscription.retrieve, subscription_id)

    def modify_subscription(self, subscription_id: str, **params):
        return self._call('modify subscription', stripe.Subscription.modify, subscription_id, **params)

    def cancel_subscription(self, subscription_id: str):
        return self._call('cancel subscription', stripe.Subscription.cancel, subscription_id)

    def delete_discount(self, subscription_id: str):
        return self._call('delete discount', stripe.Subscription.delete_discount, subscription_id)

    def retrieve_price(self, price_id: str):
        return self._call('retrieve price', stripe.Price.retrieve, price_id)

    def create_price(self, **params):
        return self._call('create price', stripe.Price.create, **params)

    def create_coupon(self, **params):
        return self._call('create coupon', stripe.Coupon.create, **params)

    def attach_payment_method(self, payment_method_id: str, customer_id: str):
        return self._call('attach payment method', stripe.PaymentMethod.attach,
                          payment_method_id, customer=customer_id)

    def modify_customer(self, customer_id: str, **params):
        return self._call('modify customer', stripe.Customer.modify, customer_id, **params)

    def create_portal_session(self, **params):
        return self._call('create billing portal session', stripe.billing_portal.Session.create, **params)

    def retrieve_product(self, product_id: str):
        return self._call('retrieve product', stripe.Product.retrieve, product_id)

    def find_customer_id(self, email: str) -> Optional[str]:
        customers = self._call('list customers', stripe.Customer.list, email=email, limit=1)
        data = customers.get('data') or []
        return data[0]['id'] if data else None

    def create_checkout_session(self, **params):
        return self._call('create checkout session', stripe.checkout.Session.create, **params)

    def create_refund(self, **params):
        return self._call('create refund', stripe.Refund.create, **params)


def construct_webhook_event(payload: bytes, signature: str, secret: str):
    """Verify a webhook payload; raises stripe.SignatureVerificationError or ValueError"""
    return stripe.Webhook.construct_event(payload, signature, secret)
