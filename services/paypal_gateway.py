# services/paypal_gateway.py
"""
PayPal Billing Subscriptions REST client
"""

import logging

import requests
from flask import current_app

from core.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

AUTOPAY_URL = 'https://www.paypal.com/myaccount/autopay/connect/{subscription_id}'


class PayPalGateway:

    def __init__(self, client_id: str = None, secret: str = None, api_base: str = None):
        config = current_app.config
        self.client_id = client_id or config.get('PAYPAL_CLIENT_ID')
        self.secret = secret or config.get('PAYPAL_SECRET')
        self.api_base = (api_base or config.get('PAYPAL_API_BASE', 'https://api-m.paypal.com')).rstrip('/')
        self.timeout = config.get('PAYPAL_TIMEOUT', 15)
        if not self.client_id or not self.secret:
            raise ConfigurationError('PayPal credentials not configured')
        self._token = None

    def access_token(self) -> str:
        if self._token:
            return self._token
        try:
            response = requests.post(
                f"{self.api_base}/v1/oauth2/token",
                auth=(self.client_id, self.secret),
                data={'grant_type': 'client_credentials'},
                headers={'Accept': 'application/json'},
                timeout=self.timeout,
            )
            response.raise_for_status()
            self._token = response.json()['access_token']
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            logger.error(f"PayPal token request failed: {e}")
            raise ProviderError('Failed to get PayPal access token')
        return self._token

    def _headers(self):
        return {
            'Authorization': f"Bearer {self.access_token()}",
            'Content-Type': 'application/json',
        }

    def subscription_action(self, subscription_id: str, action: str, reason: str) -> None:
        """POST /v1/billing/subscriptions/{id}/{cancel|suspend|activate}"""
        url = f"{self.api_base}/v1/billing/subscriptions/{subscription_id}/{action}"
        try:
            response = requests.post(
                url,
                json={'reason': reason},
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"PayPal {action} request failed for {subscription_id}: {e}")
            raise ProviderError(f"PayPal {action} failed: {e}")

        # PayPal answers 204 No Content on success
        if not response.ok:
            logger.error(f"PayPal {action} failed for {subscription_id}: {response.status_code} {response.text}")
            raise ProviderError(f"PayPal {action} failed: {response.text}")

    def cancel(self, subscription_id: str, reason: str = 'Customer requested cancellation') -> None:
        self.subscription_action(subscription_id, 'cancel', reason)

    def suspend(self, subscription_id: str, reason: str = 'Customer requested pause') -> None:
        self.subscription_action(subscription_id, 'suspend', reason)

    def activate(self, subscription_id: str, reason: str = 'Customer requested resume') -> None:
        self.subscription_action(subscription_id, 'activate', reason)

    def refund_capture(self, capture_id: str, amount: float, currency: str, note: str) -> dict:
        """POST /v2/payments/captures/{id}/refund"""
        url = f"{self.api_base}/v2/payments/captures/{capture_id}/refund"
        try:
            response = requests.post(
                url,
                json={
                    'amount': {'value': f"{amount:.2f}", 'currency_code': currency.upper()},
                    'note_to_payer': note,
                },
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"PayPal refund request failed for capture {capture_id}: {e}")
            raise ProviderError(f"PayPal refund failed: {e}")

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not response.ok:
            message = payload.get('message') or response.text
            logger.error(f"PayPal refund failed for capture {capture_id}: {response.status_code} {message}")
            raise ProviderError(f"PayPal refund failed: {message}")
        return payload

    @staticmethod
    def autopay_url(subscription_id: str) -> str:
        return AUTOPAY_URL.format(subscription_id=subscription_id)
