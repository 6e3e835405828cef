# services/contacts.py
"""
Contact capture: opt-in form submissions and tag assignment
"""

import logging
from typing import Any, Dict, List, Optional

from email_validator import EmailNotValidError, validate_email

from core.database_models import (
    EmailContact, EmailSequence, EmailTag, OptinForm, OptinFormSubmission, Profile, UserTag, db
)
from core.errors import BadRequestError
from core.step_logging import log_step
from services.sequences import enroll

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    """Lower-cased address after syntax validation"""
    email = (email or '').strip()
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        raise BadRequestError('Invalid email format')
    return email.lower()


def upsert_contact(email: str, first_name: Optional[str] = None, source: Optional[str] = None,
                   resubscribe: bool = False) -> EmailContact:
    """Find a contact by address or create one; the caller commits"""
    email = email.strip().lower()
    contact = EmailContact.query.filter_by(email=email).first()
    if contact is None:
        contact = EmailContact(email=email, first_name=first_name or None, source=source, is_subscribed=True)
        db.session.add(contact)
        db.session.flush()
        return contact

    if first_name:
        contact.first_name = first_name
    if resubscribe:
        contact.is_subscribed = True
        contact.unsubscribed_at = None
    return contact


def add_tag(tag_id: str, email: Optional[str] = None, user_id: Optional[str] = None,
            source: str = 'manual', source_id: Optional[str] = None) -> UserTag:
    """Attach a tag once per (user, tag), or per (email, tag) when there is no user"""
    query = UserTag.query.filter_by(tag_id=tag_id)
    query = query.filter_by(user_id=user_id) if user_id else query.filter_by(email=email)
    existing = query.first()
    if existing is not None:
        return existing

    user_tag = UserTag(tag_id=tag_id, user_id=user_id, email=email, source=source, source_id=source_id)
    db.session.add(user_tag)
    return user_tag


class OptinService:
    TAG = 'SUBMIT-OPTIN-FORM'

    def submit(self, form_id: str, email: str, first_name: Optional[str] = None,
               ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> Dict[str, Any]:
        log_step(self.TAG, 'Request body', {'formId': form_id, 'email': email, 'firstName': first_name})

        if not form_id or not email:
            raise BadRequestError('formId and email are required')
        email = normalize_email(email)

        form = OptinForm.query.filter_by(id=form_id, is_active=True).first()
        if form is None:
            raise BadRequestError('Form not found or inactive')
        log_step(self.TAG, 'Form fetched', {'name': form.name})

        contact = upsert_contact(email, first_name, source=f"form:{form.name}", resubscribe=True)

        db.session.add(OptinFormSubmission(
            form_id=form.id,
            contact_id=contact.id,
            email=email,
            form_data={'firstName': first_name},
            ip_address=ip_address,
            user_agent=(user_agent or '')[:500] or None,
        ))

        tag_ids = form.tags_to_assign or []
        for tag_id in tag_ids:
            add_tag(tag_id, email=email, source='form_submit', source_id=form.id)
        if tag_ids:
            log_step(self.TAG, 'Tags assigned', {'count': len(tag_ids)})

        if form.sequence_id:
            sequence = EmailSequence.query.filter_by(id=form.sequence_id, is_active=True).first()
            if sequence is not None:
                enroll(sequence, email, contact_id=contact.id,
                       metadata={'source': 'form_submit', 'form_id': form.id})

        db.session.commit()
        log_step(self.TAG, 'Form submission completed successfully')
        return {
            'success': True,
            'message': form.success_message,
            'redirectUrl': form.redirect_url,
        }


def _sequences_for_tag(tag_id: str) -> List[EmailSequence]:
    # trigger_config is a JSON column, compared here instead of in SQL
    candidates = EmailSequence.query.filter_by(trigger_type='tag_added', is_active=True).all()
    return [seq for seq in candidates if (seq.trigger_config or {}).get('tag_id') == tag_id]


def assign_tag(user_id: Optional[str] = None, email: Optional[str] = None, tag_id: Optional[str] = None,
               tag_name: Optional[str] = None, source: Optional[str] = None,
               source_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Tag a user or address and start any sequences the tag triggers

    Raises:
        BadRequestError: missing identifiers or unknown tag
    """
    tag = 'ASSIGN-USER-TAG'
    log_step(tag, 'Request body', {'userId': user_id, 'email': email, 'tagId': tag_id, 'tagName': tag_name})

    if not tag_id and not tag_name:
        raise BadRequestError('Either tagId or tagName is required')
    if not user_id and not email:
        raise BadRequestError('Either userId or email is required')

    if tag_id:
        email_tag = db.session.get(EmailTag, tag_id)
        if email_tag is None:
            raise BadRequestError(f"Tag not found: {tag_id}")
    else:
        email_tag = EmailTag.query.filter_by(name=tag_name).first()
        if email_tag is None:
            raise BadRequestError(f"Tag not found: {tag_name}")

    email = email.strip().lower() if email else None
    add_tag(email_tag.id, email=email, user_id=user_id, source=source or 'manual', source_id=source_id)
    log_step(tag, 'Tag assigned successfully', {'tagId': email_tag.id, 'userId': user_id, 'email': email})

    sequences = _sequences_for_tag(email_tag.id)
    enrolled = 0
    if sequences:
        log_step(tag, 'Found sequences triggered by this tag', {'count': len(sequences)})

        enroll_email = email
        if not enroll_email and user_id:
            profile = db.session.get(Profile, user_id)
            enroll_email = profile.email.lower() if profile and profile.email else None

        contact = EmailContact.query.filter_by(email=enroll_email).first() if enroll_email else None
        if enroll_email is None:
            logger.warning(f"No address for user {user_id}; tag-triggered sequences skipped")
        else:
            for sequence in sequences:
                enrollment = enroll(sequence, enroll_email,
                                    contact_id=contact.id if contact else None,
                                    user_id=user_id,
                                    metadata={'source': 'tag_added', 'tag_id': email_tag.id})
                if enrollment is not None:
                    enrolled += 1

    db.session.commit()
    return {'success': True, 'tagId': email_tag.id, 'sequencesEnrolled': enrolled}
