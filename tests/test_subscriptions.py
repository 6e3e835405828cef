from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from core.database_models import (
    Coupon, Course, CourseEnrollment, Product, Profile, Subscription, SubscriptionItem
)
from core.errors import ProviderError

PERIOD_END = 1767225600  # 2026-01-01T00:00:00Z


@pytest.fixture
def stripe_gateway(monkeypatch):
    gateway = MagicMock(name='StripeGateway')
    monkeypatch.setattr('services.subscriptions.StripeGateway', lambda: gateway)
    return gateway


@pytest.fixture
def membership(db):
    product = Product(id='prod-membership', name='Union Membership', product_type='membership')
    db.session.add(product)
    db.session.commit()
    return product


def _subscription(db, user, product, provider='stripe', provider_id='sub_123', **fields):
    subscription = Subscription(
        id='local-sub-1',
        user_id=user.id,
        product_id=product.id,
        payment_provider=provider,
        provider_subscription_id=provider_id,
        amount=40.0,
        interval='monthly',
        status='active',
        **fields
    )
    db.session.add(subscription)
    db.session.commit()
    return subscription


def _manage(client, headers, action, data=None, subscription_id='local-sub-1'):
    return client.post('/api/subscriptions/manage',
                       json={'action': action, 'subscriptionId': subscription_id, 'data': data or {}},
                       headers=headers)


def test_unknown_subscription_is_not_found(client, user_headers):
    response = _manage(client, user_headers, 'cancel', subscription_id='missing')
    assert response.status_code == 404
    assert response.get_json() == {'error': 'Subscription not found'}


def test_other_users_cannot_manage(client, db, user, membership, auth_headers, stripe_gateway):
    _subscription(db, user, membership)
    db.session.add(Profile(id='user-2', email='other@example.com'))
    db.session.commit()

    response = _manage(client, auth_headers('user-2'), 'cancel')
    assert response.status_code == 403
    assert response.get_json() == {'error': 'Forbidden'}
    stripe_gateway.modify_subscription.assert_not_called()


def test_admin_can_manage_any_subscription(client, db, user, membership, admin_headers, stripe_gateway):
    _subscription(db, user, membership)
    stripe_gateway.modify_subscription.return_value = {}

    response = _manage(client, admin_headers, 'pause')
    assert response.status_code == 200
    assert response.get_json() == {'success': True, 'status': 'paused'}
    stripe_gateway.modify_subscription.assert_called_once_with('sub_123', pause_collection={'behavior': 'void'})


def test_stripe_cancel_at_period_end(client, db, user, membership, user_headers, stripe_gateway):
    subscription = _subscription(db, user, membership)
    stripe_gateway.modify_subscription.return_value = {
        'current_period_end': PERIOD_END,
        'cancel_at': PERIOD_END,
        'trial_end': None,
    }

    response = _manage(client, user_headers, 'cancel')

    assert response.status_code == 200
    assert response.get_json() == {
        'success': True,
        'status': 'pending_cancellation',
        'cancels_at': '2026-01-01T00:00:00Z',
    }
    stripe_gateway.modify_subscription.assert_called_once_with('sub_123', cancel_at_period_end=True)
    db.session.refresh(subscription)
    assert subscription.status == 'pending_cancellation'
    assert subscription.current_period_end == datetime(2026, 1, 1)


def test_one_time_payment_records_cannot_be_managed(client, db, user, membership, user_headers, stripe_gateway):
    _subscription(db, user, membership, provider_id='pi_abc')

    response = _manage(client, user_headers, 'cancel')
    assert response.status_code == 400
    assert 'one-time payment' in response.get_json()['error']


def test_unknown_action(client, db, user, membership, user_headers, stripe_gateway):
    _subscription(db, user, membership)

    response = _manage(client, user_headers, 'explode')
    assert response.status_code == 400
    assert response.get_json() == {'error': 'Unknown action: explode'}


def test_unknown_provider(client, db, user, membership, user_headers):
    _subscription(db, user, membership, provider='flutterwave')

    response = _manage(client, user_headers, 'cancel')
    assert response.status_code == 400
    assert response.get_json() == {'error': 'Unknown payment provider'}


def test_cancel_immediately_revokes_bundled_courses(client, db, user, membership, user_headers, stripe_gateway):
    subscription = _subscription(db, user, membership)
    db.session.add(Course(id='course-1', title='Flamenco Guitar'))
    db.session.add(SubscriptionItem(subscription_product_id=membership.id, item_id='course-1', item_type='course'))
    db.session.add(CourseEnrollment(id='enr-1', user_id=user.id, course_id='course-1', is_active=True))
    db.session.commit()

    response = _manage(client, user_headers, 'cancel_immediately')

    assert response.get_json() == {'success': True, 'status': 'cancelled'}
    stripe_gateway.cancel_subscription.assert_called_once_with('sub_123')
    db.session.refresh(subscription)
    assert subscription.status == 'cancelled'
    assert subscription.cancelled_at is not None
    assert db.session.get(CourseEnrollment, 'enr-1').is_active is False


def test_update_price_creates_new_recurring_price(client, db, user, membership, user_headers, stripe_gateway):
    subscription = _subscription(db, user, membership)
    subscription.interval = 'yearly'
    db.session.commit()

    stripe_gateway.retrieve_subscription.return_value = {
        'items': {'data': [{'id': 'si_1', 'price': {'id': 'price_old'}}]}
    }
    stripe_gateway.retrieve_price.return_value = {'product': 'prod_stripe', 'recurring': {'interval': 'month'}}
    stripe_gateway.create_price.return_value = {'id': 'price_new'}

    response = _manage(client, user_headers, 'update_price', {'newAmount': 19.99})

    assert response.get_json() == {'success': True, 'newAmount': 19.99}
    stripe_gateway.create_price.assert_called_once_with(
        product='prod_stripe', unit_amount=1999, currency='usd', recurring={'interval': 'year'}
    )
    stripe_gateway.modify_subscription.assert_called_once_with(
        'sub_123', items=[{'id': 'si_1', 'price': 'price_new'}], proration_behavior='none'
    )
    db.session.refresh(subscription)
    assert subscription.amount == 19.99


def test_update_price_requires_amount(client, db, user, membership, user_headers, stripe_gateway):
    _subscription(db, user, membership)

    response = _manage(client, user_headers, 'update_price', {})
    assert response.status_code == 400
    assert response.get_json() == {'error': 'newAmount is required'}


def test_apply_percentage_coupon(client, db, user, membership, user_headers, stripe_gateway):
    subscription = _subscription(db, user, membership)
    coupon = Coupon(code='SPRING25', discount_type='percentage', percent_off=25, duration='repeating',
                    duration_in_months=3, applies_to_subscriptions=True)
    db.session.add(coupon)
    db.session.commit()
    stripe_gateway.create_coupon.return_value = {'id': 'co_stripe'}

    response = _manage(client, user_headers, 'apply_coupon', {'couponCode': ' spring25 '})

    assert response.get_json() == {
        'success': True,
        'couponApplied': 'SPRING25',
        'discountType': 'percentage',
        'discountAmount': 10.0,
    }
    stripe_gateway.create_coupon.assert_called_once_with(
        name='SPRING25', duration='repeating', duration_in_months=3, percent_off=25
    )
    stripe_gateway.modify_subscription.assert_called_once_with('sub_123', discounts=[{'coupon': 'co_stripe'}])
    db.session.refresh(coupon)
    db.session.refresh(subscription)
    assert coupon.stripe_coupon_id == 'co_stripe'
    assert coupon.times_redeemed == 1
    assert subscription.coupon_code == 'SPRING25'
    assert subscription.coupon_discount == 10.0


def test_apply_exhausted_coupon_is_rejected(client, db, user, membership, user_headers, stripe_gateway):
    _subscription(db, user, membership)
    db.session.add(Coupon(code='ONCE', discount_type='fixed', amount_off=5, max_redemptions=1, times_redeemed=1))
    db.session.commit()

    response = _manage(client, user_headers, 'apply_coupon', {'couponCode': 'ONCE'})
    assert response.status_code == 400
    assert response.get_json() == {'error': 'This coupon has reached its maximum redemptions'}
    stripe_gateway.modify_subscription.assert_not_called()


def test_remove_coupon_ignores_missing_stripe_discount(client, db, user, membership, user_headers, stripe_gateway):
    subscription = _subscription(db, user, membership, coupon_code='SPRING25', coupon_discount=10.0)
    stripe_gateway.delete_discount.side_effect = ProviderError('Stripe error: no discount')

    response = _manage(client, user_headers, 'remove_coupon')

    assert response.get_json() == {'success': True, 'couponRemoved': True}
    db.session.refresh(subscription)
    assert subscription.coupon_code is None


def test_update_payment_method_without_method_opens_portal(client, db, user, membership, user_headers,
                                                           stripe_gateway):
    _subscription(db, user, membership)
    stripe_gateway.retrieve_subscription.return_value = {'customer': 'cus_1'}
    stripe_gateway.create_portal_session.return_value = {'url': 'https://billing.stripe.com/session/abc'}

    response = _manage(client, user_headers, 'update_payment_method')

    assert response.get_json() == {'success': True, 'url': 'https://billing.stripe.com/session/abc'}
    stripe_gateway.create_portal_session.assert_called_once_with(
        customer='cus_1',
        return_url='https://example.test/account',
        flow_data={'type': 'payment_method_update'},
    )


class FakePayPalResponse:
    def __init__(self, status_code=204, payload=None):
        self.status_code = status_code
        self.ok = status_code < 400
        self.text = ''
        self._payload = payload or {}

    def json(self):
        return self._payload

    def raise_for_status(self):
        pass


@pytest.fixture
def paypal_calls(monkeypatch):
    calls = []

    def fake_post(url, **kwargs):
        calls.append(url)
        if url.endswith('/v1/oauth2/token'):
            return FakePayPalResponse(200, {'access_token': 'paypal-token'})
        return FakePayPalResponse(204)

    monkeypatch.setattr('services.paypal_gateway.requests.post', fake_post)
    return calls


def test_paypal_cancel_keeps_access_until_period_end(client, db, user, membership, user_headers, paypal_calls):
    period_end = datetime.utcnow() + timedelta(days=10)
    subscription = _subscription(db, user, membership, provider='paypal', provider_id='I-PAYPAL1',
                                 current_period_end=period_end)

    response = _manage(client, user_headers, 'cancel')

    body = response.get_json()
    assert body['status'] == 'pending_cancellation'
    assert paypal_calls[-1] == 'https://api-m.paypal.com/v1/billing/subscriptions/I-PAYPAL1/cancel'
    db.session.refresh(subscription)
    assert subscription.cancels_at == period_end


def test_paypal_cancel_after_period_end_is_immediate(client, db, user, membership, user_headers, paypal_calls):
    subscription = _subscription(db, user, membership, provider='paypal', provider_id='I-PAYPAL1',
                                 current_period_end=datetime.utcnow() - timedelta(days=1))

    response = _manage(client, user_headers, 'cancel')

    assert response.get_json() == {'success': True, 'status': 'cancelled'}
    db.session.refresh(subscription)
    assert subscription.cancelled_at is not None


def test_paypal_payment_update_alias(client, db, user, membership, user_headers, paypal_calls):
    _subscription(db, user, membership, provider='paypal', provider_id='I-PAYPAL1')

    response = _manage(client, user_headers, 'update_paypal_payment')

    body = response.get_json()
    assert body['url'] == 'https://www.paypal.com/myaccount/autopay/connect/I-PAYPAL1'
    assert paypal_calls == []


def test_paypal_coupon_only_blocked_by_explicit_false(client, db, user, membership, user_headers, paypal_calls):
    subscription = _subscription(db, user, membership, provider='paypal', provider_id='I-PAYPAL1')
    db.session.add(Coupon(code='Loyal10', discount_type='fixed', amount_off=10, applies_to_subscriptions=None))
    db.session.commit()

    response = _manage(client, user_headers, 'apply_coupon', {'couponCode': 'loyal10'})

    body = response.get_json()
    assert body['couponApplied'] == 'loyal10'
    assert body['discount'] == 10
    db.session.refresh(subscription)
    assert subscription.coupon_code == 'LOYAL10'


@pytest.mark.parametrize('action, expected_call, status', [
    ('pause', {'pause_collection': {'behavior': 'void'}}, 'paused'),
    ('resume', {'pause_collection': ''}, 'active'),
    ('reactivate', {'cancel_at_period_end': False}, 'active'),
])
def test_stripe_pause_resume_reactivate(client, db, user, membership, user_headers, stripe_gateway,
                                        action, expected_call, status):
    subscription = _subscription(db, user, membership, cancels_at=datetime(2026, 1, 1),
                                 paused_at=datetime(2025, 6, 1))
    stripe_gateway.modify_subscription.return_value = {}

    response = _manage(client, user_headers, action)

    assert response.get_json() == {'success': True, 'status': status}
    stripe_gateway.modify_subscription.assert_called_once_with('sub_123', **expected_call)
    db.session.refresh(subscription)
    assert subscription.status == status
    if action == 'pause':
        assert subscription.paused_at > datetime(2025, 6, 1)
    elif action == 'resume':
        assert subscription.paused_at is None
    else:
        assert subscription.cancels_at is None


def test_update_payment_method_with_method_id(client, db, user, membership, user_headers, stripe_gateway):
    subscription = _subscription(db, user, membership)
    stripe_gateway.retrieve_subscription.return_value = {'customer': 'cus_1'}

    response = _manage(client, user_headers, 'update_payment_method', {'paymentMethodId': 'pm_card'})

    assert response.get_json() == {'success': True, 'paymentMethodUpdated': True}
    stripe_gateway.attach_payment_method.assert_called_once_with('pm_card', 'cus_1')
    stripe_gateway.modify_subscription.assert_called_once_with('sub_123', default_payment_method='pm_card')
    stripe_gateway.modify_customer.assert_called_once_with(
        'cus_1', invoice_settings={'default_payment_method': 'pm_card'}
    )
    stripe_gateway.create_portal_session.assert_not_called()
    db.session.refresh(subscription)
    assert subscription.payment_provider == 'stripe'


def test_stripe_failure_rolls_back(client, db, user, membership, user_headers, stripe_gateway):
    subscription = _subscription(db, user, membership)
    stripe_gateway.modify_subscription.side_effect = ProviderError('Stripe error: No such subscription')

    response = _manage(client, user_headers, 'pause')

    assert response.status_code == 502
    assert response.get_json() == {'error': 'Stripe error: No such subscription'}
    db.session.refresh(subscription)
    assert subscription.status == 'active'


@pytest.mark.parametrize('action, endpoint, status', [
    ('pause', 'suspend', 'paused'),
    ('resume', 'activate', 'active'),
    ('reactivate', 'activate', 'active'),
])
def test_paypal_lifecycle_actions(client, db, user, membership, user_headers, paypal_calls,
                                  action, endpoint, status):
    subscription = _subscription(db, user, membership, provider='paypal', provider_id='I-PAYPAL1')
    if action != 'pause':
        subscription.status = 'paused'
        db.session.commit()

    response = _manage(client, user_headers, action)

    assert response.get_json() == {'success': True, 'status': status}
    assert paypal_calls == [
        'https://api-m.paypal.com/v1/oauth2/token',
        f"https://api-m.paypal.com/v1/billing/subscriptions/I-PAYPAL1/{endpoint}",
    ]
    db.session.refresh(subscription)
    assert subscription.status == status


def test_paypal_cancel_immediately_revokes_courses(client, db, user, membership, user_headers, paypal_calls):
    subscription = _subscription(db, user, membership, provider='paypal', provider_id='I-PAYPAL1',
                                 current_period_end=datetime.utcnow() + timedelta(days=10))
    db.session.add(Course(id='course-1', title='Flamenco Guitar'))
    db.session.add(SubscriptionItem(subscription_product_id=membership.id, item_id='course-1', item_type='course'))
    db.session.add(CourseEnrollment(id='enr-1', user_id=user.id, course_id='course-1', is_active=True))
    db.session.commit()

    response = _manage(client, user_headers, 'cancel_immediately')

    assert response.get_json() == {'success': True, 'status': 'cancelled'}
    assert paypal_calls[-1].endswith('/v1/billing/subscriptions/I-PAYPAL1/cancel')
    db.session.refresh(subscription)
    assert subscription.status == 'cancelled'
    assert db.session.get(CourseEnrollment, 'enr-1').is_active is False


def test_paypal_update_price_is_local_only(client, db, user, membership, user_headers, paypal_calls):
    subscription = _subscription(db, user, membership, provider='paypal', provider_id='I-PAYPAL1')

    response = _manage(client, user_headers, 'update_price', {'newAmount': '25'})

    body = response.get_json()
    assert body['newAmount'] == 25.0
    assert 'next renewal' in body['note']
    assert paypal_calls == []
    db.session.refresh(subscription)
    assert subscription.amount == 25.0


def test_paypal_rejection_maps_to_bad_gateway(client, db, user, membership, user_headers, monkeypatch):
    subscription = _subscription(db, user, membership, provider='paypal', provider_id='I-PAYPAL1')

    def fake_post(url, **kwargs):
        if url.endswith('/v1/oauth2/token'):
            return FakePayPalResponse(200, {'access_token': 'paypal-token'})
        response = FakePayPalResponse(422)
        response.text = '{"name":"UNPROCESSABLE_ENTITY"}'
        return response

    monkeypatch.setattr('services.paypal_gateway.requests.post', fake_post)

    response = _manage(client, user_headers, 'pause')

    assert response.status_code == 502
    assert response.get_json() == {'error': 'PayPal suspend failed: {"name":"UNPROCESSABLE_ENTITY"}'}
    db.session.refresh(subscription)
    assert subscription.status == 'active'


def test_malformed_paypal_token_response(client, db, user, membership, user_headers, monkeypatch):
    _subscription(db, user, membership, provider='paypal', provider_id='I-PAYPAL1')
    monkeypatch.setattr('services.paypal_gateway.requests.post',
                        lambda url, **kwargs: FakePayPalResponse(200, {'error': 'invalid_client'}))

    response = _manage(client, user_headers, 'cancel')

    assert response.status_code == 502
    assert response.get_json() == {'error': 'Failed to get PayPal access token'}
