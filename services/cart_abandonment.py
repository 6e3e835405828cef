# services/cart_abandonment.py
"""
Abandoned-cart follow-up through the cart abandonment sequence
"""

import logging
from datetime import datetime
from typing import Any, Dict, List

from core.database_models import CartAbandonment, CourseEnrollment, EmailSequence, Profile, db
from core.errors import BadRequestError
from core.step_logging import log_step
from services.contacts import upsert_contact
from services.sequences import enroll

logger = logging.getLogger(__name__)

TAG = 'PROCESS-CART-ABANDONMENT'
DEFAULT_FIRST_DELAY_MINUTES = 60


def _item_course_id(item: Dict[str, Any]):
    return item.get('courseId') or item.get('course_id')


def cart_course_ids(cart_items: List[Dict[str, Any]]) -> List[str]:
    ids = []
    for item in cart_items or []:
        if item.get('productType') == 'course' or item.get('courseId'):
            course_id = _item_course_id(item)
            if course_id:
                ids.append(course_id)
    return ids


def owned_course_ids(user_id: str, course_ids: List[str]) -> set:
    rows = CourseEnrollment.query.filter(
        CourseEnrollment.user_id == user_id,
        CourseEnrollment.is_active.is_(True),
        CourseEnrollment.course_id.in_(course_ids)
    ).all()
    return {row.course_id for row in rows}


def _skipped(reason: str) -> Dict[str, Any]:
    log_step(TAG, 'Skipping abandonment', {'reason': reason})
    return {'success': True, 'skipped': True, 'reason': reason}


def _mark_recovered(abandonment: CartAbandonment) -> Dict[str, Any]:
    abandonment.recovered_at = datetime.utcnow()
    db.session.commit()
    return _skipped('already_owns_courses')


def process_abandonment(abandonment_id: str) -> Dict[str, Any]:
    """
    Enroll the cart's owner in the abandonment sequence unless there is nothing to recover

    Returns:
        ``{success, enrollmentId}`` or ``{success, skipped, reason}``
    """
    log_step(TAG, 'Processing abandonment', {'abandonmentId': abandonment_id})
    if not abandonment_id:
        raise BadRequestError('abandonmentId is required')

    abandonment = db.session.get(CartAbandonment, abandonment_id)
    if abandonment is None:
        raise BadRequestError('Cart abandonment record not found')

    if abandonment.recovered_at:
        return _skipped('already_recovered')
    if abandonment.recovery_email_sent:
        return _skipped('email_already_sent')
    if not abandonment.email:
        return _skipped('no_email')

    email = abandonment.email.strip().lower()
    cart_items = abandonment.cart_items or []
    course_ids = cart_course_ids(cart_items)
    log_step(TAG, 'Checking course ownership', {'email': email, 'courseIds': course_ids})

    if course_ids:
        if abandonment.user_id:
            owned = owned_course_ids(abandonment.user_id, course_ids)
            remaining = [item for item in cart_items
                         if not _item_course_id(item) or _item_course_id(item) not in owned]
            if owned and not remaining:
                return _mark_recovered(abandonment)

        # The address may belong to a different account than the cart's user
        profile = Profile.query.filter(db.func.lower(Profile.email) == email).first()
        if profile is not None and owned_course_ids(profile.id, course_ids) >= set(course_ids):
            return _mark_recovered(abandonment)

    sequence = EmailSequence.query.filter_by(trigger_type='cart_abandonment', is_active=True).first()
    if sequence is None:
        return _skipped('no_sequence')

    contact = upsert_contact(email, source='cart_abandonment')
    enrollment = enroll(
        sequence,
        email,
        contact_id=contact.id,
        user_id=abandonment.user_id,
        metadata={
            'source': 'cart_abandonment',
            'abandonment_id': abandonment.id,
            'cart_items': cart_items,
            'cart_total': abandonment.cart_total,
            'currency': abandonment.currency,
        },
        default_delay=DEFAULT_FIRST_DELAY_MINUTES,
        allow_duplicate=True,
    )

    abandonment.recovery_email_sent = True
    abandonment.sequence_enrollment_id = enrollment.id
    db.session.commit()

    log_step(TAG, 'Cart abandonment processed successfully', {'enrollmentId': enrollment.id})
    return {'success': True, 'enrollmentId': enrollment.id}
