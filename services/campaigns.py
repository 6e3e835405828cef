# services/campaigns.py
"""
Bulk campaign dispatch

Recipients come from lists, include-tags and (optionally) the whole
subscribed audience, de-duplicated by address and filtered by exclude-tags.
Every recipient is attempted and gets a send-log row; failures are never fatal.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from flask import current_app
from sqlalchemy import func

from core.database_models import EmailCampaign, EmailContact, EmailListMember, EmailSendLog, UserTag, db
from core.errors import BadRequestError
from core.step_logging import log_step
from core.template_engine import EmailTemplateEngine, strip_tags
from services.ses_mailer import SESMailer
from services.unsubscribe import unsubscribe_url

logger = logging.getLogger(__name__)

TAG = 'SEND-CAMPAIGN'
SENDABLE_STATUSES = ('draft', 'scheduled')


@dataclass
class Recipient:
    email: str
    first_name: Optional[str] = None


def load_sendable_campaign(campaign_id: str) -> EmailCampaign:
    if not campaign_id:
        raise BadRequestError('campaignId is required')
    campaign = db.session.get(EmailCampaign, campaign_id)
    if campaign is None:
        raise BadRequestError('Campaign not found')
    if campaign.status not in SENDABLE_STATUSES:
        raise BadRequestError('Campaign is not in a sendable state')
    return campaign


def mark_sending(campaign_id: str) -> Tuple[EmailCampaign, str]:
    """Validate and lock a campaign for dispatch; returns it with its prior status"""
    campaign = load_sendable_campaign(campaign_id)
    previous_status = campaign.status
    log_step(TAG, 'Campaign fetched', {'name': campaign.name, 'status': previous_status})
    campaign.status = 'sending'
    db.session.commit()
    return campaign, previous_status


def release_campaign(campaign: EmailCampaign, status: str) -> None:
    """Undo mark_sending when the dispatch could not be queued"""
    campaign.status = status
    db.session.commit()
    log_step(TAG, 'Campaign released', {'campaignId': campaign.id, 'status': status}, level=logging.WARNING)


def _tagged_emails(tag_ids: List[str]) -> List[str]:
    rows = UserTag.query.filter(UserTag.tag_id.in_(tag_ids), UserTag.email.isnot(None)).all()
    return [row.email for row in rows]


def build_recipients(campaign: EmailCampaign) -> List[Recipient]:
    """Resolve the campaign audience in list, tag, everyone order"""
    candidates: List[Recipient] = []

    if campaign.send_to_lists:
        members = EmailListMember.query.join(EmailContact, EmailListMember.contact_id == EmailContact.id) \
            .filter(EmailListMember.list_id.in_(campaign.send_to_lists),
                    EmailContact.is_subscribed.is_(True)).all()
        candidates.extend(Recipient(m.contact.email, m.contact.first_name) for m in members)

    if campaign.include_tags:
        emails = {email.lower() for email in _tagged_emails(campaign.include_tags)}
        if emails:
            contacts = EmailContact.query.filter(
                func.lower(EmailContact.email).in_(emails),
                EmailContact.is_subscribed.is_(True)
            ).all()
            candidates.extend(Recipient(c.email, c.first_name) for c in contacts)

    if campaign.send_to_all:
        contacts = EmailContact.query.filter(EmailContact.is_subscribed.is_(True)) \
            .order_by(EmailContact.created_at).all()
        candidates.extend(Recipient(c.email, c.first_name) for c in contacts)

    unique: Dict[str, Recipient] = {}
    for recipient in candidates:
        unique.setdefault(recipient.email.lower(), recipient)

    if campaign.exclude_tags:
        excluded = {email.lower() for email in _tagged_emails(campaign.exclude_tags)}
        return [r for key, r in unique.items() if key not in excluded]
    return list(unique.values())


class CampaignDispatcher:
    """Sends one campaign to its whole audience"""

    def __init__(self,
                 mailer: SESMailer = None,
                 engine: EmailTemplateEngine = None,
                 on_event: Callable[[str, Dict[str, Any]], None] = None):
        self.mailer = mailer or SESMailer()
        self.engine = engine or EmailTemplateEngine(inline_css=False)
        self.on_event = on_event or (lambda event_type, data: None)
        config = current_app.config
        self.sender = config.get('CAMPAIGN_FROM_ADDRESS', 'noreply@worldmusicmethod.com')
        self.throttle_every = config.get('CAMPAIGN_THROTTLE_EVERY', 10)
        self.throttle_seconds = config.get('CAMPAIGN_THROTTLE_SECONDS', 0.1)

    def _send_one(self, campaign: EmailCampaign, recipient: Recipient) -> bool:
        variables = {'first_name': recipient.first_name or 'there', 'email': recipient.email}
        html = self.engine.substitute(campaign.body_html, variables, html=True)
        text = campaign.body_text or strip_tags(html)
        link = unsubscribe_url(recipient.email)

        result = self.mailer.send(
            recipient.email, campaign.subject, html, text,
            sender=self.sender,
            headers={
                'List-Unsubscribe': f"<{link}>",
                'List-Unsubscribe-Post': 'List-Unsubscribe=One-Click',
            },
        )
        db.session.add(EmailSendLog(
            campaign_id=campaign.id,
            email=recipient.email,
            subject=campaign.subject,
            status='sent' if result.success else 'failed',
            error_message=result.error,
        ))
        db.session.commit()

        if not result.success:
            log_step(TAG, 'Failed to send to recipient', {'email': recipient.email, 'error': result.error},
                     level=logging.WARNING)
        return result.success

    def _log_failure(self, campaign: EmailCampaign, recipient: Recipient, error: str) -> None:
        db.session.add(EmailSendLog(
            campaign_id=campaign.id,
            email=recipient.email,
            subject=campaign.subject,
            status='failed',
            error_message=error,
        ))
        db.session.commit()

    def dispatch(self, campaign_id: str) -> Dict[str, Any]:
        campaign = db.session.get(EmailCampaign, campaign_id)
        if campaign is None:
            raise BadRequestError('Campaign not found')

        try:
            recipients = build_recipients(campaign)
            campaign.total_recipients = len(recipients)
            db.session.commit()
            log_step(TAG, 'Recipients calculated', {'total': len(recipients)})
            self.on_event('campaign_started', {'total_recipients': len(recipients)})

            sent_count = 0
            for recipient in recipients:
                try:
                    delivered = self._send_one(campaign, recipient)
                except Exception as e:
                    db.session.rollback()
                    logger.error(f"Campaign {campaign_id}: send to {recipient.email} failed: {e}")
                    self._log_failure(campaign, recipient, str(e))
                    delivered = False

                if delivered:
                    sent_count += 1
                    if self.throttle_seconds and sent_count % self.throttle_every == 0:
                        time.sleep(self.throttle_seconds)

            campaign.status = 'sent'
            campaign.sent_at = datetime.utcnow()
            campaign.sent_count = sent_count
            db.session.commit()
        except Exception:
            db.session.rollback()
            campaign.status = 'failed'
            db.session.commit()
            raise

        stats = {
            'campaign_id': campaign.id,
            'status': campaign.status,
            'total_recipients': campaign.total_recipients,
            'sent_count': sent_count,
            'failed_count': campaign.total_recipients - sent_count,
        }
        self.on_event('campaign_completed', stats)
        log_step(TAG, 'Campaign sent', {'sentCount': sent_count, 'total': campaign.total_recipients})
        return stats
