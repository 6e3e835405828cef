# services/ses_mailer.py
"""
Amazon SES delivery

Messages are built as multipart/alternative MIME documents and sent with
SendRawEmail so that list-management headers survive. botocore signs every
request with SigV4.
"""

import logging
import uuid
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, parseaddr
from typing import Dict, List, Optional, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from flask import current_app

from core.template_engine import html_to_text

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    """Outcome of one SES call"""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


def create_ses_client():
    config = current_app.config
    kwargs = {'region_name': config.get('AWS_SES_REGION', 'eu-west-2')}
    if config.get('AWS_SES_ACCESS_KEY_ID') and config.get('AWS_SES_SECRET_ACCESS_KEY'):
        kwargs['aws_access_key_id'] = config['AWS_SES_ACCESS_KEY_ID']
        kwargs['aws_secret_access_key'] = config['AWS_SES_SECRET_ACCESS_KEY']
    return boto3.client('ses', **kwargs)


def sender_for_domain(domain: Optional[str]) -> str:
    """Display address for a sending domain, falling back to the default domain"""
    config = current_app.config
    addresses = config.get('EMAIL_SENDER_ADDRESSES', {})
    if domain and domain in addresses:
        return addresses[domain]
    if domain:
        logger.warning(f"Unknown sender domain {domain!r}, using default sender")
    return addresses[config.get('EMAIL_DEFAULT_SENDER_DOMAIN', 'worldmusicmethod.com')]


class SESMailer:

    def __init__(self, client=None):
        self.client = client or create_ses_client()

    def build_message(self,
                      to: List[str],
                      subject: str,
                      html: str,
                      text: Optional[str],
                      sender: str,
                      reply_to: Optional[str] = None,
                      headers: Optional[Dict[str, str]] = None) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = sender
        msg['To'] = ', '.join(to)
        msg['Date'] = formatdate(localtime=False, usegmt=True)
        domain = parseaddr(sender)[1].split('@')[-1] or 'localhost'
        msg['Message-ID'] = f"<{uuid.uuid4()}@{domain}>"

        if reply_to:
            msg['Reply-To'] = reply_to

        for name, value in (headers or {}).items():
            msg[name] = value

        msg.attach(MIMEText(text if text is not None else html_to_text(html), 'plain', 'utf-8'))
        msg.attach(MIMEText(html, 'html', 'utf-8'))
        return msg

    def send(self,
             to: Union[str, List[str]],
             subject: str,
             html: str,
             text: Optional[str] = None,
             sender: Optional[str] = None,
             reply_to: Optional[str] = None,
             headers: Optional[Dict[str, str]] = None) -> SendResult:
        """
        Send one message; failures are returned, never raised

        Args:
            to: One address or a list of addresses
            subject: Rendered subject
            html: Rendered HTML body
            text: Plain-text body, derived from the HTML when omitted
            sender: From header, defaults to the default domain's sender
            reply_to: Optional Reply-To
            headers: Extra headers such as List-Unsubscribe
        """
        recipients = [to] if isinstance(to, str) else list(to)
        sender = sender or sender_for_domain(None)
        msg = self.build_message(recipients, subject, html, text, sender, reply_to, headers)

        try:
            response = self.client.send_raw_email(
                Source=sender,
                Destinations=recipients,
                RawMessage={'Data': msg.as_string()},
            )
        except ClientError as e:
            error = e.response.get('Error', {}).get('Message', str(e))
            logger.error(f"SES rejected message to {recipients}: {error}")
            return SendResult(success=False, error=error)
        except BotoCoreError as e:
            logger.error(f"SES request failed for {recipients}: {e}")
            return SendResult(success=False, error=str(e))

        message_id = response.get('MessageId')
        logger.info(f"SES accepted message {message_id} for {len(recipients)} recipient(s)")
        return SendResult(success=True, message_id=message_id)
