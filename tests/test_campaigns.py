from email import message_from_string
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from kombu.exceptions import OperationalError

from core.database_models import (
    EmailCampaign, EmailContact, EmailList, EmailListMember, EmailSendLog, EmailTag, UserTag
)
from services.campaigns import CampaignDispatcher, build_recipients


def _contact(db, email, first_name=None, subscribed=True):
    contact = EmailContact(email=email, first_name=first_name, is_subscribed=subscribed)
    db.session.add(contact)
    db.session.flush()
    return contact


def _html_part(raw):
    message = message_from_string(raw)
    return message, message.get_payload()[1].get_payload(decode=True).decode('utf-8')


@pytest.fixture
def audience(db):
    ann = _contact(db, 'ann@example.com', 'Ann')
    ben = _contact(db, 'ben@example.com', 'Ben', subscribed=False)
    cal = _contact(db, 'cal@example.com', 'Cal')
    _contact(db, 'dee@example.com', 'Dee')

    db.session.add(EmailList(id='list-1', name='Newsletter'))
    db.session.add_all([
        EmailListMember(list_id='list-1', contact_id=ann.id),
        EmailListMember(list_id='list-1', contact_id=ben.id),
    ])
    db.session.add_all([EmailTag(id='tag-oud', name='oud'), EmailTag(id='tag-vip', name='vip')])
    db.session.add_all([
        UserTag(tag_id='tag-oud', email='ANN@example.com'),
        UserTag(tag_id='tag-oud', email='cal@example.com'),
        UserTag(tag_id='tag-vip', email='cal@example.com'),
    ])
    db.session.commit()


def _campaign(db, **fields):
    campaign = EmailCampaign(id='camp-1', name='Autumn launch', subject='New course',
                             body_html='<p>Hi {{ first_name }}</p>', **fields)
    db.session.add(campaign)
    db.session.commit()
    return campaign


def test_recipients_from_lists_and_tags_are_deduplicated(db, audience):
    campaign = _campaign(db, send_to_lists=['list-1'], include_tags=['tag-oud'])

    recipients = build_recipients(campaign)

    assert [r.email for r in recipients] == ['ann@example.com', 'cal@example.com']
    assert recipients[0].first_name == 'Ann'


def test_exclude_tags_win_over_includes(db, audience):
    campaign = _campaign(db, send_to_all=True, exclude_tags=['tag-vip'])

    emails = sorted(r.email for r in build_recipients(campaign))

    assert emails == ['ann@example.com', 'dee@example.com']


def test_send_campaign_requires_sendable_state(client, db, admin_headers):
    _campaign(db, status='sent')

    response = client.post('/api/email/campaigns/send', json={}, headers=admin_headers)
    assert response.status_code == 400
    assert response.get_json() == {'error': 'campaignId is required'}

    response = client.post('/api/email/campaigns/send', json={'campaignId': 'camp-1'}, headers=admin_headers)
    assert response.status_code == 400
    assert response.get_json() == {'error': 'Campaign is not in a sendable state'}


def test_send_campaign_delivers_to_every_recipient(client, db, audience, admin_headers, aws_clients):
    campaign = _campaign(db, send_to_all=True)
    ann = EmailContact.query.filter_by(email='ann@example.com').first()
    ann.first_name = '<b>Ann</b>'
    db.session.commit()

    response = client.post('/api/email/campaigns/send', json={'campaignId': 'camp-1'}, headers=admin_headers)

    assert response.status_code == 202
    body = response.get_json()
    assert body['success'] is True and body['queued'] is True
    assert body['taskId']

    db.session.refresh(campaign)
    assert campaign.status == 'sent'
    assert campaign.total_recipients == 3
    assert campaign.sent_count == 3
    assert campaign.sent_at is not None

    logs = EmailSendLog.query.filter_by(campaign_id='camp-1').all()
    assert sorted(log.email for log in logs) == ['ann@example.com', 'cal@example.com', 'dee@example.com']
    assert {log.status for log in logs} == {'sent'}

    ses = aws_clients['ses']
    assert ses.send_raw_email.call_count == 3
    ann_call = next(call.kwargs for call in ses.send_raw_email.call_args_list
                    if call.kwargs['Destinations'] == ['ann@example.com'])
    message, html = _html_part(ann_call['RawMessage']['Data'])
    assert message['List-Unsubscribe-Post'] == 'List-Unsubscribe=One-Click'
    assert message['List-Unsubscribe'].startswith('<https://example.test/unsubscribe?token=')
    assert '&lt;b&gt;Ann&lt;/b&gt;' in html


def test_failed_recipients_do_not_stop_the_campaign(client, db, audience, admin_headers, aws_clients):
    campaign = _campaign(db, send_to_all=True)
    rejected = ClientError({'Error': {'Code': 'MessageRejected', 'Message': 'Address blacklisted'}}, 'SendRawEmail')
    aws_clients['ses'].send_raw_email.side_effect = [{'MessageId': 'm-1'}, rejected, {'MessageId': 'm-3'}]

    response = client.post('/api/email/campaigns/send', json={'campaignId': 'camp-1'}, headers=admin_headers)

    assert response.status_code == 202
    db.session.refresh(campaign)
    assert campaign.status == 'sent'
    assert campaign.sent_count == 2
    failed = EmailSendLog.query.filter_by(campaign_id='camp-1', status='failed').one()
    assert failed.error_message == 'Address blacklisted'

    metrics = client.get('/api/email/campaigns/camp-1/metrics', headers=admin_headers).get_json()
    assert metrics['sent_count'] == 2
    assert metrics['failed_count'] == 1
    assert metrics['metrics']['delivery_rate']['value'] == 66.67
    assert metrics['metrics']['delivery_rate']['status'] == 'critical'
    assert metrics['recommendations'][0]['title'] == 'Low Delivery Rate Detected'


def test_metrics_for_unknown_campaign(client, admin_headers):
    response = client.get('/api/email/campaigns/nope/metrics', headers=admin_headers)
    assert response.status_code == 404
    assert response.get_json() == {'error': 'Campaign not found'}


def test_transactional_send(client, db, admin_headers, aws_clients):
    response = client.post('/api/email/send', json={
        'to': ['one@example.com', 'two@example.com'],
        'subject': 'Your receipt',
        'html': '<p>Thanks for your order</p>',
        'replyTo': 'support@arts-admin.com',
        'sender_domain': 'arts-admin.com',
    }, headers=admin_headers)

    assert response.get_json() == {'success': True, 'messageId': 'ses-message-1'}
    call = aws_clients['ses'].send_raw_email.call_args.kwargs
    assert call['Source'] == 'Left Brain <info@arts-admin.com>'
    assert call['Destinations'] == ['one@example.com', 'two@example.com']
    message, _ = _html_part(call['RawMessage']['Data'])
    assert message['Reply-To'] == 'support@arts-admin.com'
    assert EmailSendLog.query.filter_by(status='sent').count() == 2


def test_transactional_send_validation_and_failure(client, db, admin_headers, aws_clients):
    response = client.post('/api/email/send', json={'to': 'one@example.com'}, headers=admin_headers)
    assert response.status_code == 400
    assert response.get_json() == {'error': 'Missing required fields: to, subject, html'}

    aws_clients['ses'].send_raw_email.side_effect = ClientError(
        {'Error': {'Code': 'MessageRejected', 'Message': 'Email address is not verified.'}}, 'SendRawEmail'
    )
    response = client.post('/api/email/send', json={
        'to': 'one@example.com', 'subject': 'Hello', 'html': '<p>Hello</p>'
    }, headers=admin_headers)

    assert response.status_code == 502
    assert response.get_json() == {'error': 'Email address is not verified.'}
    log = EmailSendLog.query.one()
    assert log.status == 'failed'
    assert log.error_message == 'Email address is not verified.'


def test_only_known_placeholders_are_substituted(client, db, audience, admin_headers, aws_clients):
    campaign = _campaign(db, send_to_all=True)
    campaign.body_html = '<p>Hi {{first_name}}, your code is {{code}} {{ first_name }</p>'
    db.session.commit()

    response = client.post('/api/email/campaigns/send', json={'campaignId': 'camp-1'}, headers=admin_headers)

    assert response.status_code == 202
    assert EmailSendLog.query.filter_by(campaign_id='camp-1', status='sent').count() == 3
    ann_call = next(call.kwargs for call in aws_clients['ses'].send_raw_email.call_args_list
                    if call.kwargs['Destinations'] == ['ann@example.com'])
    _, html = _html_part(ann_call['RawMessage']['Data'])
    assert 'Hi Ann, your code is {{code}} {{ first_name }' in html


def test_unexpected_recipient_error_is_logged_as_failed(client, db, audience, admin_headers, aws_clients):
    campaign = _campaign(db, send_to_all=True)
    aws_clients['ses'].send_raw_email.side_effect = [
        {'MessageId': 'm-1'}, RuntimeError('connection reset'), {'MessageId': 'm-3'}
    ]

    client.post('/api/email/campaigns/send', json={'campaignId': 'camp-1'}, headers=admin_headers)

    db.session.refresh(campaign)
    assert campaign.status == 'sent'
    assert campaign.sent_count == 2
    assert EmailSendLog.query.filter_by(campaign_id='camp-1').count() == 3
    failed = EmailSendLog.query.filter_by(campaign_id='camp-1', status='failed').one()
    assert failed.error_message == 'connection reset'


def test_unreachable_broker_releases_the_campaign(client, db, audience, admin_headers, monkeypatch):
    campaign = _campaign(db, send_to_all=True)

    task = MagicMock(name='dispatch_campaign')
    task.delay.side_effect = OperationalError('Error 111 connecting to localhost:6379. Connection refused.')
    monkeypatch.setattr('api.email_crm.dispatch_campaign', task)

    response = client.post('/api/email/campaigns/send', json={'campaignId': 'camp-1'}, headers=admin_headers)

    assert response.status_code == 502
    assert response.get_json() == {'error': 'Failed to queue campaign for sending'}
    db.session.refresh(campaign)
    assert campaign.status == 'draft'


def test_dispatch_failure_marks_campaign_failed(app, db, audience, aws_clients, monkeypatch):
    campaign = _campaign(db, send_to_all=True, status='sending')

    def broken(campaign):
        raise RuntimeError('database went away')

    monkeypatch.setattr('services.campaigns.build_recipients', broken)

    with pytest.raises(RuntimeError):
        CampaignDispatcher().dispatch('camp-1')

    db.session.refresh(campaign)
    assert campaign.status == 'failed'
    aws_clients['ses'].send_raw_email.assert_not_called()


def test_sends_pause_every_ten_messages(app, db, aws_clients, monkeypatch):
    for n in range(21):
        _contact(db, f"fan{n}@example.com")
    _campaign(db, send_to_all=True)
    app.config['CAMPAIGN_THROTTLE_SECONDS'] = 0.1
    pauses = []
    monkeypatch.setattr('services.campaigns.time.sleep', pauses.append)

    stats = CampaignDispatcher().dispatch('camp-1')

    assert stats['sent_count'] == 21
    assert pauses == [0.1, 0.1]
