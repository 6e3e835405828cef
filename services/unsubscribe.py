# services/unsubscribe.py
"""
Signed unsubscribe links
"""

import logging
from datetime import datetime
from typing import Optional

from flask import current_app
from itsdangerous import BadSignature, URLSafeSerializer

from core.database_models import EmailContact, db
from core.errors import BadRequestError
from core.step_logging import log_step

logger = logging.getLogger(__name__)

TAG = 'UNSUBSCRIBE'


def _serializer() -> URLSafeSerializer:
    return URLSafeSerializer(current_app.config['SECRET_KEY'],
                             salt=current_app.config.get('UNSUBSCRIBE_SALT', 'email-unsubscribe'))


def make_unsubscribe_token(email: str) -> str:
    return _serializer().dumps(email.strip().lower())


def read_unsubscribe_token(token: str) -> str:
    try:
        return _serializer().loads(token)
    except BadSignature:
        raise BadRequestError('Invalid or expired unsubscribe link')


def unsubscribe_url(email: str) -> str:
    return f"{current_app.config['SITE_URL']}/unsubscribe?token={make_unsubscribe_token(email)}"


def unsubscribe(token: str, reason: Optional[str] = None) -> EmailContact:
    """Mark the contact behind a token as unsubscribed; repeat calls are harmless"""
    if not token:
        raise BadRequestError('Missing unsubscribe token')

    email = read_unsubscribe_token(token)
    contact = EmailContact.query.filter_by(email=email).first()
    if contact is None:
        raise BadRequestError('Contact not found')

    if contact.is_subscribed:
        contact.is_subscribed = False
        contact.unsubscribed_at = datetime.utcnow()
    if reason:
        contact.unsubscribe_reason = reason
    db.session.commit()

    log_step(TAG, 'Contact unsubscribed', {'contactId': contact.id, 'reason': reason})
    return contact
