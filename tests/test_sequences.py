from datetime import datetime, timedelta
from email import message_from_string

import pytest
from botocore.exceptions import ClientError

from core.database_models import (
    EmailContact, EmailSendLog, EmailSequence, EmailSequenceEnrollment, EmailSequenceStep,
    EmailSequenceTemplate
)
from services.sequences import enroll, process_due_enrollments


@pytest.fixture
def sequence(db):
    seq = EmailSequence(id='seq-1', name='Course launch', trigger_type='manual')
    db.session.add(seq)
    db.session.add_all([
        EmailSequenceTemplate(id='tpl-1', name='Day 0', subject='Welcome {{ first_name }}',
                              body_html='<p>Start {{ course_name }} at {{ checkout_url }}</p>'),
        EmailSequenceTemplate(id='tpl-2', name='Day 1', subject='Still there?',
                              body_html='<p>Bye</p>', body_text='Bye {{ email }}'),
    ])
    db.session.add_all([
        EmailSequenceStep(sequence_id='seq-1', template_id='tpl-1', step_order=1, delay_minutes=0),
        EmailSequenceStep(sequence_id='seq-1', template_id='tpl-2', step_order=2, delay_minutes=1440),
    ])
    db.session.add(EmailContact(id='contact-1', email='rosa@gmail.com', first_name='Rosa'))
    db.session.commit()
    return seq


def _enroll(db, sequence, **kwargs):
    enrollment = enroll(sequence, 'Rosa@Gmail.com', contact_id='contact-1',
                        metadata={'course_name': 'Flamenco'}, **kwargs)
    db.session.commit()
    return enrollment


def test_enroll_skips_running_enrollments(db, sequence):
    first = _enroll(db, sequence)
    assert first.email == 'rosa@gmail.com'
    assert first.next_email_at <= datetime.utcnow()

    assert _enroll(db, sequence) is None
    assert _enroll(db, sequence, allow_duplicate=True) is not None

    first.status = 'completed'
    EmailSequenceEnrollment.query.filter(EmailSequenceEnrollment.id != first.id).delete()
    db.session.commit()
    assert _enroll(db, sequence) is not None


def test_steps_are_sent_in_order(db, sequence, aws_clients):
    enrollment = _enroll(db, sequence)

    assert process_due_enrollments() == {'processed': 1, 'errors': 0}

    db.session.refresh(enrollment)
    assert enrollment.current_step == 1
    assert enrollment.status == 'active'
    assert enrollment.next_email_at > datetime.utcnow() + timedelta(minutes=1430)

    call = aws_clients['ses'].send_raw_email.call_args.kwargs
    assert call['Destinations'] == ['rosa@gmail.com']
    message = message_from_string(call['RawMessage']['Data'])
    assert message['Subject'] == 'Welcome Rosa'
    html = message.get_payload()[1].get_payload(decode=True).decode('utf-8')
    assert 'Start Flamenco at https://example.test/checkout' in html

    # Not due again until tomorrow
    assert process_due_enrollments() == {'processed': 0, 'errors': 0}

    enrollment.next_email_at = datetime.utcnow() - timedelta(minutes=1)
    db.session.commit()
    assert process_due_enrollments() == {'processed': 1, 'errors': 0}

    db.session.refresh(enrollment)
    assert enrollment.current_step == 2
    assert enrollment.status == 'completed'
    assert enrollment.next_email_at is None
    assert enrollment.completed_at is not None

    logs = EmailSendLog.query.filter_by(enrollment_id=enrollment.id).order_by(EmailSendLog.sent_at).all()
    assert [log.template_id for log in logs] == ['tpl-1', 'tpl-2']


def test_inactive_sequence_pauses_enrollment(db, sequence, aws_clients):
    enrollment = _enroll(db, sequence)
    sequence.is_active = False
    db.session.commit()

    assert process_due_enrollments() == {'processed': 0, 'errors': 0}
    db.session.refresh(enrollment)
    assert enrollment.status == 'paused'
    aws_clients['ses'].send_raw_email.assert_not_called()


def test_send_failure_is_logged_and_retried(db, sequence, aws_clients):
    enrollment = _enroll(db, sequence)
    aws_clients['ses'].send_raw_email.side_effect = ClientError(
        {'Error': {'Code': 'Throttling', 'Message': 'Maximum sending rate exceeded.'}}, 'SendRawEmail'
    )

    assert process_due_enrollments() == {'processed': 0, 'errors': 1}

    db.session.refresh(enrollment)
    assert enrollment.current_step == 0
    assert enrollment.status == 'active'
    log = EmailSendLog.query.one()
    assert log.status == 'failed'
    assert log.error_message == 'Maximum sending rate exceeded.'


def test_process_endpoint(client, db, sequence, admin_headers, aws_clients):
    _enroll(db, sequence)

    response = client.post('/api/email/sequences/process', json={'limit': 10}, headers=admin_headers)

    assert response.get_json() == {'success': True, 'processed': 1, 'errors': 0}


def test_process_endpoint_rejects_bad_limit(client, admin_headers):
    response = client.post('/api/email/sequences/process', json={'limit': 'ten'}, headers=admin_headers)

    assert response.status_code == 400
    assert response.get_json() == {'error': 'limit must be a number'}


def test_template_styles_are_inlined(db, sequence, aws_clients):
    template = db.session.get(EmailSequenceTemplate, 'tpl-1')
    template.body_html = (
        '<html><head><style>.cta { color: #c0392b }</style></head>'
        '<body><p class="cta">Start {{ course_name }}</p></body></html>'
    )
    db.session.commit()
    _enroll(db, sequence)

    assert process_due_enrollments() == {'processed': 1, 'errors': 0}

    message = message_from_string(aws_clients['ses'].send_raw_email.call_args.kwargs['RawMessage']['Data'])
    html = message.get_payload()[1].get_payload(decode=True).decode('utf-8')
    assert 'style="color:#c0392b"' in html
    assert 'Start Flamenco' in html
