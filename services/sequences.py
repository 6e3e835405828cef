# services/sequences.py
"""
Drip sequence enrollment and delivery
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from flask import current_app

from core.database_models import (
    EmailSendLog, EmailSequence, EmailSequenceEnrollment, EmailSequenceStep, db
)
from core.step_logging import log_step
from core.template_engine import EmailTemplateEngine
from services.unsubscribe import unsubscribe_url
from services.ses_mailer import SESMailer

logger = logging.getLogger(__name__)

TAG = 'PROCESS-EMAIL-SEQUENCE'


def first_step(sequence_id: str) -> Optional[EmailSequenceStep]:
    return EmailSequenceStep.query.filter_by(sequence_id=sequence_id) \
        .order_by(EmailSequenceStep.step_order).first()


def step_at(sequence_id: str, step_order: int) -> Optional[EmailSequenceStep]:
    return EmailSequenceStep.query.filter_by(sequence_id=sequence_id, step_order=step_order).first()


def enroll(sequence: EmailSequence,
           email: str,
           contact_id: str = None,
           user_id: str = None,
           metadata: Dict[str, Any] = None,
           default_delay: int = 0,
           allow_duplicate: bool = False) -> Optional[EmailSequenceEnrollment]:
    """
    Start a contact on a sequence

    Returns None when the address (or user) is already in a run of the
    sequence that has not completed. The caller commits.
    """
    email = (email or '').strip().lower()

    if not allow_duplicate:
        match = EmailSequenceEnrollment.email == email
        if user_id:
            match = db.or_(match, EmailSequenceEnrollment.user_id == user_id)
        existing = EmailSequenceEnrollment.query.filter(
            EmailSequenceEnrollment.sequence_id == sequence.id,
            EmailSequenceEnrollment.status != 'completed',
            match
        ).first()
        if existing is not None:
            log_step(TAG, 'Already enrolled in sequence', {
                'sequenceId': sequence.id, 'existingStatus': existing.status
            })
            return None

    step = first_step(sequence.id)
    delay_minutes = (step.delay_minutes if step else 0) or default_delay

    enrollment = EmailSequenceEnrollment(
        sequence_id=sequence.id,
        contact_id=contact_id,
        user_id=user_id,
        email=email,
        status='active',
        current_step=0,
        next_email_at=datetime.utcnow() + timedelta(minutes=delay_minutes),
        metadata_=metadata or {},
    )
    db.session.add(enrollment)
    db.session.flush()
    log_step(TAG, 'Enrolled in sequence', {'sequenceId': sequence.id, 'enrollmentId': enrollment.id})
    return enrollment


def template_variables(enrollment: EmailSequenceEnrollment) -> Dict[str, str]:
    contact = enrollment.contact
    metadata = enrollment.metadata_ or {}
    cart_items = metadata.get('cart_items')
    if isinstance(cart_items, list):
        cart_items = ', '.join(
            str(item.get('name') or item.get('productName') or '') for item in cart_items
            if isinstance(item, dict)
        )
    else:
        cart_items = ''

    return {
        'first_name': (contact.first_name if contact else None) or 'there',
        'email': enrollment.email,
        'course_name': metadata.get('course_name') or '',
        'cart_items': cart_items,
        'checkout_url': f"{current_app.config['SITE_URL']}/checkout",
        'unsubscribe_url': unsubscribe_url(enrollment.email),
    }


class SequenceProcessor:
    """Sends the next due step for each active enrollment"""

    def __init__(self, mailer: SESMailer = None, engine: EmailTemplateEngine = None):
        self.mailer = mailer or SESMailer()
        self.engine = engine or EmailTemplateEngine()

    def process_due(self, limit: int = 50) -> Dict[str, int]:
        now = datetime.utcnow()
        due = EmailSequenceEnrollment.query.filter(
            EmailSequenceEnrollment.status == 'active',
            EmailSequenceEnrollment.next_email_at <= now
        ).order_by(EmailSequenceEnrollment.next_email_at).limit(limit).all()

        log_step(TAG, 'Found due enrollments', {'count': len(due)})

        processed = 0
        errors = 0
        for enrollment in due:
            try:
                if self._process_one(enrollment, now):
                    processed += 1
                db.session.commit()
            except Exception as e:
                db.session.rollback()
                errors += 1
                log_step(TAG, 'Error processing enrollment', {
                    'enrollmentId': enrollment.id, 'error': str(e)
                }, level=logging.ERROR)

        log_step(TAG, 'Processing complete', {'processed': processed, 'errors': errors})
        return {'processed': processed, 'errors': errors}

    def _process_one(self, enrollment: EmailSequenceEnrollment, now: datetime) -> bool:
        sequence = enrollment.sequence
        if sequence is None or not sequence.is_active:
            log_step(TAG, 'Sequence inactive, pausing enrollment', {'enrollmentId': enrollment.id})
            enrollment.status = 'paused'
            return False

        next_order = enrollment.current_step + 1
        step = step_at(sequence.id, next_order)
        if step is None:
            log_step(TAG, 'No more steps, completing enrollment', {'enrollmentId': enrollment.id})
            enrollment.status = 'completed'
            enrollment.completed_at = now
            return False

        template = step.template
        if template is None:
            log_step(TAG, 'Template not found for step', {'stepId': step.id}, level=logging.WARNING)
            return False

        rendered = self.engine.render(
            template.subject, template.body_html, template_variables(enrollment), template.body_text
        )
        log_step(TAG, 'Sending email', {'to': enrollment.email, 'subject': rendered.subject})

        result = self.mailer.send(
            enrollment.email, rendered.subject, rendered.html, rendered.text,
            headers={'List-Unsubscribe': f"<{unsubscribe_url(enrollment.email)}>"}
        )
        db.session.add(EmailSendLog(
            enrollment_id=enrollment.id,
            step_id=step.id,
            template_id=template.id,
            email=enrollment.email,
            subject=rendered.subject,
            status='sent' if result.success else 'failed',
            error_message=result.error,
        ))
        if not result.success:
            db.session.commit()
            raise RuntimeError(f"Failed to send email: {result.error}")

        enrollment.current_step = next_order
        following = step_at(sequence.id, next_order + 1)
        if following is None:
            enrollment.next_email_at = None
            enrollment.status = 'completed'
            enrollment.completed_at = now
        else:
            enrollment.next_email_at = now + timedelta(minutes=following.delay_minutes or 0)

        log_step(TAG, 'Email sent successfully', {'enrollmentId': enrollment.id, 'step': next_order})
        return True


def process_due_enrollments(limit: int = 50, mailer: SESMailer = None) -> Dict[str, int]:
    return SequenceProcessor(mailer=mailer).process_due(limit)
