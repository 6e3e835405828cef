# api/email_crm.py
"""
Email CRM API: campaigns, transactional sends, opt-ins, tags, sequences
"""

import logging

from flask import Blueprint, request, jsonify
from kombu.exceptions import OperationalError

from core.database_models import EmailSendLog, db
from core.errors import BadRequestError, ProviderError
from middleware.security import limiter, require_admin
from services.analytics import CampaignAnalytics
from services.campaigns import mark_sending, release_campaign
from services.cart_abandonment import process_abandonment
from services.contacts import OptinService, assign_tag
from services.sequences import process_due_enrollments
from services.ses_mailer import SESMailer, sender_for_domain
from services.unsubscribe import unsubscribe
from tasks.email_sender import dispatch_campaign

email_bp = Blueprint('email', __name__)
logger = logging.getLogger(__name__)


def _payload():
    return request.get_json(silent=True) or {}


@email_bp.route('/campaigns/send', methods=['POST'])
@require_admin
def send_campaign():
    campaign_id = _payload().get('campaignId')
    campaign, previous_status = mark_sending(campaign_id)
    try:
        task = dispatch_campaign.delay(campaign.id)
    except OperationalError as e:
        logger.error(f"Could not queue campaign {campaign.id}: {e}")
        release_campaign(campaign, previous_status)
        raise ProviderError('Failed to queue campaign for sending')
    logger.info(f"Campaign {campaign.id} queued as task {task.id}")
    return jsonify({'success': True, 'queued': True, 'taskId': task.id}), 202


@email_bp.route('/campaigns/<campaign_id>/metrics', methods=['GET'])
@require_admin
def campaign_metrics(campaign_id):
    force_refresh = request.args.get('refresh', 'false').lower() == 'true'
    report = CampaignAnalytics.from_config().campaign_report(campaign_id, force_refresh=force_refresh)
    return jsonify(report)


@email_bp.route('/send', methods=['POST'])
@require_admin
def send_email():
    """
    Transactional send

    Body: ``{to, subject, html, text?, replyTo?, sender_domain?}`` where
    ``to`` is one address or a list.
    """
    payload = _payload()
    to = payload.get('to')
    subject = payload.get('subject')
    html = payload.get('html')
    if not to or not subject or not html:
        raise BadRequestError('Missing required fields: to, subject, html')

    recipients = [to] if isinstance(to, str) else list(to)
    result = SESMailer().send(
        recipients, subject, html, payload.get('text'),
        sender=sender_for_domain(payload.get('sender_domain')),
        reply_to=payload.get('replyTo'),
    )

    for address in recipients:
        db.session.add(EmailSendLog(
            email=address,
            subject=subject,
            status='sent' if result.success else 'failed',
            error_message=result.error,
        ))
    db.session.commit()

    if not result.success:
        raise ProviderError(result.error or 'Failed to send email')
    return jsonify({'success': True, 'messageId': result.message_id})


@email_bp.route('/unsubscribe', methods=['POST'])
def unsubscribe_contact():
    payload = _payload()
    contact = unsubscribe(payload.get('token'), payload.get('reason'))
    return jsonify({'success': True, 'email': contact.email})


@email_bp.route('/unsubscribe/<token>', methods=['POST'])
def one_click_unsubscribe(token):
    # Mail clients post List-Unsubscribe=One-Click as a form body
    contact = unsubscribe(token, 'one-click')
    return jsonify({'success': True, 'email': contact.email})


@email_bp.route('/optin', methods=['POST'])
@limiter.limit("10 per minute")
def submit_optin():
    payload = _payload()
    result = OptinService().submit(
        payload.get('formId'),
        payload.get('email'),
        first_name=payload.get('firstName'),
        ip_address=request.headers.get('X-Forwarded-For', request.remote_addr),
        user_agent=request.headers.get('User-Agent'),
    )
    return jsonify(result)


@email_bp.route('/tags/assign', methods=['POST'])
@require_admin
def assign_user_tag():
    payload = _payload()
    result = assign_tag(
        user_id=payload.get('userId'),
        email=payload.get('email'),
        tag_id=payload.get('tagId'),
        tag_name=payload.get('tagName'),
        source=payload.get('source'),
        source_id=payload.get('sourceId'),
    )
    return jsonify(result)


@email_bp.route('/sequences/process', methods=['POST'])
@require_admin
def process_sequences():
    try:
        limit = int(_payload().get('limit') or 50)
    except (TypeError, ValueError):
        raise BadRequestError('limit must be a number')
    stats = process_due_enrollments(limit=limit)
    return jsonify({'success': True, **stats})


@email_bp.route('/cart-abandonment', methods=['POST'])
@require_admin
def cart_abandonment():
    return jsonify(process_abandonment(_payload().get('abandonmentId')))
