# services/referrals.py
"""
Referral credit for first payments reported by Stripe webhooks

Amounts stay in the smallest currency unit, as Stripe reports them.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from core.database_models import CreditTransaction, Profile, Referral, UserCredit, db
from core.errors import ProviderError
from core.step_logging import log_step
from services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

TAG = 'STRIPE-WEBHOOK'

SUBSCRIPTION_CREDIT_MULTIPLIER = 2.0  # 200% of the first month
COURSE_CREDIT_PERCENTAGE = 0.30

HANDLED_EVENTS = ('checkout.session.completed', 'invoice.payment_succeeded')


@dataclass
class PaymentFacts:
    payment_id: str
    customer_email: Optional[str]
    amount: int
    currency: str
    is_subscription: bool
    is_first_subscription_payment: bool
    product_name: str = ''


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _first_line_product(lines: Optional[Dict[str, Any]]) -> Optional[str]:
    data = (lines or {}).get('data') or []
    if not data:
        return None
    price = data[0].get('price') or {}
    product = price.get('product')
    if isinstance(product, dict):
        return product.get('id')
    return product


class ReferralCreditService:

    def __init__(self, gateway: StripeGateway = None):
        self._gateway = gateway

    @property
    def gateway(self) -> StripeGateway:
        if self._gateway is None:
            self._gateway = StripeGateway()
        return self._gateway

    def _product_name(self, product_id: Optional[str]) -> str:
        if not product_id:
            return ''
        try:
            return self.gateway.retrieve_product(product_id).get('name') or ''
        except ProviderError as e:
            logger.warning(f"Could not load Stripe product {product_id}: {e.message}")
            return ''

    def payment_facts(self, event: Dict[str, Any]) -> Optional[PaymentFacts]:
        """Normalize a handled event, or None when it can never earn credit"""
        obj = event['data']['object']

        if event['type'] == 'checkout.session.completed':
            is_subscription = obj.get('mode') == 'subscription'
            facts = PaymentFacts(
                payment_id=obj['id'],
                customer_email=obj.get('customer_email') or (obj.get('customer_details') or {}).get('email'),
                amount=obj.get('amount_total') or 0,
                currency=obj.get('currency') or 'usd',
                is_subscription=is_subscription,
                # A subscription checkout is always its first payment
                is_first_subscription_payment=is_subscription,
                product_name=self._product_name(_first_line_product(obj.get('line_items'))),
            )
            log_step(TAG, 'Checkout session completed', {
                'email': facts.customer_email, 'amount': facts.amount,
                'mode': obj.get('mode'), 'product': facts.product_name,
            })
            return facts

        if not obj.get('subscription'):
            log_step(TAG, 'Skipping non-subscription invoice')
            return None
        if obj.get('billing_reason') != 'subscription_create':
            log_step(TAG, 'Skipping non-first subscription payment', {'billing_reason': obj.get('billing_reason')})
            return None

        facts = PaymentFacts(
            payment_id=obj['id'],
            customer_email=obj.get('customer_email'),
            amount=obj.get('amount_paid') or 0,
            currency=obj.get('currency') or 'usd',
            is_subscription=True,
            is_first_subscription_payment=True,
            product_name=self._product_name(_first_line_product(obj.get('lines'))),
        )
        log_step(TAG, 'First subscription invoice paid', {
            'email': facts.customer_email, 'amount': facts.amount, 'product': facts.product_name,
        })
        return facts

    @staticmethod
    def credit_for(facts: PaymentFacts):
        """(amount, description) or None when the payment is not eligible"""
        if facts.is_subscription and facts.is_first_subscription_payment:
            return (_round_half_up(facts.amount * SUBSCRIPTION_CREDIT_MULTIPLIER),
                    f"Referral reward: {facts.product_name or 'Union Membership'} (200% first month)")
        if not facts.is_subscription:
            return (_round_half_up(facts.amount * COURSE_CREDIT_PERCENTAGE),
                    f"Referral reward: {facts.product_name or 'Course purchase'} (30%)")
        return None

    def award(self, referral: Referral, amount: int, description: str, reference_id: str) -> CreditTransaction:
        credit = db.session.get(UserCredit, referral.referrer_id)
        if credit is None:
            credit = UserCredit(user_id=referral.referrer_id, balance=0)
            db.session.add(credit)
        credit.balance = (credit.balance or 0) + amount

        transaction = CreditTransaction(
            user_id=referral.referrer_id,
            amount=amount,
            type='earned_referral',
            description=description,
            reference_id=reference_id,
        )
        db.session.add(transaction)

        referral.status = 'converted'
        referral.converted_at = datetime.utcnow()
        db.session.commit()
        return transaction

    def handle_event(self, event: Dict[str, Any]) -> Optional[CreditTransaction]:
        log_step(TAG, 'Received event', {'type': event.get('type'), 'id': event.get('id')})
        if event.get('type') not in HANDLED_EVENTS:
            return None

        facts = self.payment_facts(event)
        if facts is None:
            return None
        if not facts.customer_email:
            log_step(TAG, 'No customer email found, cannot process referral')
            return None

        profile = Profile.query.filter(db.func.lower(Profile.email) == facts.customer_email.lower()).first()
        if profile is None:
            log_step(TAG, 'User not found by email', {'email': facts.customer_email})
            return None

        referral = Referral.query.filter_by(referred_user_id=profile.id, status='signed_up').first()
        if referral is None:
            log_step(TAG, 'No pending referral found', {'userId': profile.id})
            return None

        if CreditTransaction.query.filter_by(reference_id=facts.payment_id).first() is not None:
            log_step(TAG, 'Payment already processed', {'paymentId': facts.payment_id})
            return None

        credit = self.credit_for(facts)
        if credit is None:
            log_step(TAG, 'Skipping - not eligible for referral credit', {
                'isSubscription': facts.is_subscription,
                'isFirstSubscriptionPayment': facts.is_first_subscription_payment,
            })
            return None

        amount, description = credit
        log_step(TAG, 'Awarding referral credit', {
            'referrerId': referral.referrer_id, 'amount': amount,
            'currency': facts.currency, 'description': description,
        })
        transaction = self.award(referral, amount, description, facts.payment_id)
        log_step(TAG, 'Referral credit awarded successfully', {'transactionId': transaction.id})
        return transaction
