import json
from unittest.mock import MagicMock

import pytest

from core.database_models import CreditTransaction, Profile, Referral, UserCredit
from services.referrals import PaymentFacts, ReferralCreditService


@pytest.fixture
def referral(db, user):
    db.session.add(Profile(id='ref-1', email='referrer@example.com'))
    referral = Referral(referrer_id='ref-1', referred_user_id=user.id, referral_code='MIA10', status='signed_up')
    db.session.add(referral)
    db.session.commit()
    return referral


def _checkout(mode='payment', amount=4999, email='Member@Example.com', session_id='cs_1', **extra):
    return {
        'id': 'evt_1',
        'type': 'checkout.session.completed',
        'data': {'object': {'id': session_id, 'mode': mode, 'amount_total': amount, 'currency': 'usd',
                            'customer_details': {'email': email}, **extra}},
    }


def _invoice(billing_reason='subscription_create', amount=1999):
    return {
        'id': 'evt_2',
        'type': 'invoice.payment_succeeded',
        'data': {'object': {'id': 'in_1', 'subscription': 'sub_1', 'billing_reason': billing_reason,
                            'amount_paid': amount, 'currency': 'usd', 'customer_email': 'member@example.com'}},
    }


def test_course_purchase_earns_thirty_percent(db, referral):
    transaction = ReferralCreditService(gateway=MagicMock()).handle_event(_checkout())

    assert transaction.amount == 1500
    assert transaction.description == 'Referral reward: Course purchase (30%)'
    assert transaction.reference_id == 'cs_1'
    assert db.session.get(UserCredit, 'ref-1').balance == 1500
    db.session.refresh(referral)
    assert referral.status == 'converted'
    assert referral.converted_at is not None


def test_subscription_checkout_earns_double_first_month(db, referral):
    gateway = MagicMock()
    gateway.retrieve_product.return_value = {'name': 'Union Membership Monthly'}
    event = _checkout(mode='subscription', amount=1999,
                      line_items={'data': [{'price': {'product': 'prod_union'}}]})

    transaction = ReferralCreditService(gateway=gateway).handle_event(event)

    gateway.retrieve_product.assert_called_once_with('prod_union')
    assert transaction.amount == 3998
    assert transaction.description == 'Referral reward: Union Membership Monthly (200% first month)'


def test_first_invoice_counts_but_renewals_do_not(db, referral):
    service = ReferralCreditService(gateway=MagicMock())

    assert service.handle_event(_invoice(billing_reason='subscription_cycle')) is None
    assert CreditTransaction.query.count() == 0

    transaction = service.handle_event(_invoice())
    assert transaction.amount == 3998
    assert transaction.description == 'Referral reward: Union Membership (200% first month)'


def test_existing_credit_is_topped_up(db, referral):
    db.session.add(UserCredit(user_id='ref-1', balance=250))
    db.session.commit()

    ReferralCreditService(gateway=MagicMock()).handle_event(_checkout(amount=1000))

    assert db.session.get(UserCredit, 'ref-1').balance == 550


@pytest.mark.parametrize('event', [
    {'id': 'evt_x', 'type': 'customer.created', 'data': {'object': {}}},
    _checkout(email=None),
    _checkout(email='stranger@example.com'),
    {**_invoice(), 'data': {'object': {'id': 'in_2', 'billing_reason': 'manual'}}},
])
def test_ineligible_events(db, referral, event):
    assert ReferralCreditService(gateway=MagicMock()).handle_event(event) is None
    assert CreditTransaction.query.count() == 0


def test_payment_is_credited_once(db, referral):
    db.session.add(CreditTransaction(user_id='ref-1', amount=10, type='earned_referral', reference_id='cs_1'))
    db.session.commit()

    assert ReferralCreditService(gateway=MagicMock()).handle_event(_checkout()) is None
    assert CreditTransaction.query.count() == 1


def test_credit_rounds_half_up():
    facts = PaymentFacts(payment_id='cs_9', customer_email='a@example.com', amount=5, currency='usd',
                         is_subscription=False, is_first_subscription_payment=False)
    assert ReferralCreditService.credit_for(facts)[0] == 2

    renewal = PaymentFacts(payment_id='in_9', customer_email='a@example.com', amount=5, currency='usd',
                           is_subscription=True, is_first_subscription_payment=False)
    assert ReferralCreditService.credit_for(renewal) is None


def test_unverified_webhook_is_accepted_without_secret(client, db, referral):
    response = client.post('/api/webhooks/stripe', data=json.dumps(_checkout()),
                           content_type='application/json')

    assert response.get_json() == {'received': True}
    assert CreditTransaction.query.one().amount == 1500


def test_webhook_rejects_garbage(client):
    response = client.post('/api/webhooks/stripe', data='not json', content_type='application/json')
    assert response.status_code == 400
    assert response.get_json() == {'error': 'Invalid payload'}


def test_webhook_signature_is_checked_when_secret_set(app, client, db, referral, monkeypatch):
    app.config['STRIPE_WEBHOOK_SECRET'] = 'whsec_test'

    response = client.post('/api/webhooks/stripe', data=json.dumps(_checkout()),
                           headers={'Stripe-Signature': 't=1,v1=bad'}, content_type='application/json')
    assert response.status_code == 400
    assert response.get_json() == {'error': 'Invalid signature'}
    assert CreditTransaction.query.count() == 0

    verified = []

    def fake_construct(payload, signature, secret):
        verified.append((signature, secret))
        return json.loads(payload)

    monkeypatch.setattr('api.webhooks.construct_webhook_event', fake_construct)
    response = client.post('/api/webhooks/stripe', data=json.dumps(_checkout()),
                           headers={'Stripe-Signature': 't=1,v1=good'}, content_type='application/json')

    assert response.get_json() == {'received': True}
    assert verified == [('t=1,v1=good', 'whsec_test')]
    assert CreditTransaction.query.count() == 1
