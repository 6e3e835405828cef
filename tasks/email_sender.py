# tasks/email_sender.py
"""
Celery tasks for the long-running email work

Campaign fan-out, the sequence poller and cart-abandonment follow-ups run
here instead of inside the HTTP request. ``configure_celery`` in app.py
binds the tasks to the Flask application context.
"""

import json
from datetime import datetime
from typing import Any, Dict

import redis
from celery import Celery, Task
from celery.signals import task_failure, task_postrun, task_prerun
from celery.utils.log import get_task_logger
from flask import current_app, has_app_context

from services.campaigns import CampaignDispatcher
from services.cart_abandonment import process_abandonment
from services.sequences import process_due_enrollments

# Configure task logger
logger = get_task_logger(__name__)


class FlaskTask(Task):
    """Run task bodies inside the Flask app registered by ``configure_celery``"""

    def __call__(self, *args, **kwargs):
        flask_app = getattr(self.app, 'flask_app', None)
        # Eager calls from a request already have a context
        if has_app_context() or flask_app is None:
            return self.run(*args, **kwargs)
        with flask_app.app_context():
            return self.run(*args, **kwargs)


celery_app = Celery('platform_tasks', task_cls=FlaskTask)
celery_app.conf.update({
    # Serialization
    'task_serializer': 'json',
    'result_serializer': 'json',
    'accept_content': ['json'],

    # Timezone
    'timezone': 'UTC',
    'enable_utc': True,

    # Task Execution
    'task_acks_late': True,
    'task_reject_on_worker_lost': True,
    'worker_prefetch_multiplier': 1,

    'result_expires': 3600,  # 1 hour

    'task_routes': {
        'tasks.email_sender.dispatch_campaign': {'queue': 'campaign_management'},
        'tasks.email_sender.process_email_sequences': {'queue': 'email_sending'},
        'tasks.email_sender.process_cart_abandonment': {'queue': 'email_sending'},
    },

    'worker_send_task_events': True,
    'task_send_sent_event': True,
    'worker_hijack_root_logger': False,
})

_redis_clients: Dict[str, redis.Redis] = {}


def _realtime_client():
    redis_url = current_app.config.get('REDIS_URL')
    if not redis_url:
        return None
    if redis_url not in _redis_clients:
        _redis_clients[redis_url] = redis.Redis.from_url(redis_url, decode_responses=True)
    return _redis_clients[redis_url]


def publish_realtime_update(channel: str, data: Dict[str, Any]):
    """Publish real-time update via Redis"""
    client = _realtime_client()
    if client is None:
        return
    try:
        client.publish(channel, json.dumps({
            'timestamp': datetime.utcnow().isoformat(),
            'data': data
        }, default=str))
    except redis.RedisError as e:
        logger.warning(f"Failed to publish real-time update: {str(e)}")


@celery_app.task(bind=True)
def dispatch_campaign(self, campaign_id: str) -> Dict[str, Any]:
    """
    Send a campaign already marked ``sending`` to its whole audience

    Progress is published on ``campaign:<id>`` for dashboards.
    """
    logger.info(f"Starting campaign dispatch: {campaign_id}")
    channel = f'campaign:{campaign_id}'

    def on_event(event_type: str, data: Dict[str, Any]):
        publish_realtime_update(channel, {'type': event_type, **data})

    try:
        stats = CampaignDispatcher(on_event=on_event).dispatch(campaign_id)
    except Exception as e:
        logger.error(f"Campaign {campaign_id} dispatch failed: {str(e)}", exc_info=True)
        publish_realtime_update(channel, {'type': 'campaign_failed', 'error': str(e)})
        raise

    logger.info(f"Campaign {campaign_id}: {stats['sent_count']}/{stats['total_recipients']} sent")
    return stats


@celery_app.task(bind=True)
def process_email_sequences(self, limit: int = 50) -> Dict[str, int]:
    """Send every due sequence step; scheduled by beat"""
    stats = process_due_enrollments(limit=limit)
    if stats['processed'] or stats['errors']:
        logger.info(f"Sequence run: {stats}")
    return stats


@celery_app.task(bind=True)
def process_cart_abandonment(self, abandonment_id: str) -> Dict[str, Any]:
    return process_abandonment(abandonment_id)


# Celery signal handlers for monitoring
@task_prerun.connect
def task_prerun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, **extra):
    logger.info(f"Task {task.name} [{task_id}] starting")


@task_postrun.connect
def task_postrun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None,
                         retval=None, state=None, **extra):
    logger.info(f"Task {task.name} [{task_id}] completed with state: {state}")


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, einfo=None, **extra):
    logger.error(f"Task {sender.name} [{task_id}] failed: {exception}")
