# services/analytics.py
"""
Campaign delivery metrics built from the send log
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis
from flask import current_app
from sqlalchemy import func

from core.database_models import EmailCampaign, EmailSendLog, db
from core.errors import NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class Metric:
    """Individual metric definition"""
    name: str
    value: float
    unit: str
    benchmark: Optional[float] = None
    status: str = "normal"  # "good", "warning", "critical"


@dataclass
class Recommendation:
    category: str
    priority: str  # "low", "medium", "high", "critical"
    title: str
    description: str
    action: str


@dataclass
class CampaignReport:
    campaign_id: str
    timestamp: str
    status: str
    total_recipients: int
    sent_count: int
    failed_count: int
    metrics: Dict[str, Metric]
    recommendations: List[Recommendation] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CampaignAnalytics:
    """
    Delivery metrics for one campaign, cached briefly in Redis when available
    """

    INDUSTRY_BENCHMARKS = {
        'delivery_rate': 95.0,
        'failure_rate': 2.0,
    }

    # Metric thresholds for status determination
    STATUS_THRESHOLDS = {
        'delivery_rate': {'good': 98.0, 'warning': 95.0},
        'failure_rate': {'good': 1.0, 'warning': 3.0},
    }

    LOWER_IS_BETTER = ('failure_rate',)

    def __init__(self, redis_client: Optional[redis.Redis] = None, cache_ttl: int = 60):
        self.redis_client = redis_client
        self.cache_ttl = cache_ttl

    @classmethod
    def from_config(cls) -> 'CampaignAnalytics':
        redis_url = current_app.config.get('REDIS_URL')
        client = redis.Redis.from_url(redis_url, decode_responses=True) if redis_url else None
        return cls(redis_client=client)

    def get_metric_status(self, metric_name: str, value: float) -> str:
        """Determine metric status based on thresholds"""
        thresholds = self.STATUS_THRESHOLDS.get(metric_name)
        if not thresholds:
            return 'normal'

        if metric_name in self.LOWER_IS_BETTER:
            if value <= thresholds['good']:
                return 'good'
            elif value <= thresholds['warning']:
                return 'warning'
            return 'critical'

        if value >= thresholds['good']:
            return 'good'
        elif value >= thresholds['warning']:
            return 'warning'
        return 'critical'

    def _send_counts(self, campaign_id: str) -> Dict[str, int]:
        rows = db.session.query(EmailSendLog.status, func.count(EmailSendLog.id)) \
            .filter(EmailSendLog.campaign_id == campaign_id) \
            .group_by(EmailSendLog.status).all()
        return {status: count for status, count in rows}

    def _cache_get(self, key: str) -> Optional[Dict[str, Any]]:
        if self.redis_client is None:
            return None
        try:
            cached = self.redis_client.get(key)
            return json.loads(cached) if cached else None
        except redis.RedisError as e:
            logger.warning(f"Metrics cache read failed: {e}")
            return None

    def _cache_set(self, key: str, data: Dict[str, Any]) -> None:
        if self.redis_client is None:
            return
        try:
            self.redis_client.setex(key, self.cache_ttl, json.dumps(data, default=str))
        except redis.RedisError as e:
            logger.warning(f"Failed to cache metrics: {e}")

    def campaign_report(self, campaign_id: str, force_refresh: bool = False) -> Dict[str, Any]:
        campaign = db.session.get(EmailCampaign, campaign_id)
        if campaign is None:
            raise NotFoundError('Campaign not found')

        cache_key = f"campaign-metrics:{campaign_id}"
        # Campaigns still sending change on every request
        if not force_refresh and campaign.status == 'sent':
            cached = self._cache_get(cache_key)
            if cached:
                return cached

        counts = self._send_counts(campaign_id)
        sent = counts.get('sent', 0)
        failed = counts.get('failed', 0)
        attempted = sent + failed

        delivery_rate = (sent / attempted) * 100 if attempted else 0.0
        failure_rate = (failed / attempted) * 100 if attempted else 0.0

        metrics = {}
        if attempted:
            metrics['delivery_rate'] = Metric(
                name='Delivery Rate',
                value=round(delivery_rate, 2),
                unit='%',
                benchmark=self.INDUSTRY_BENCHMARKS['delivery_rate'],
                status=self.get_metric_status('delivery_rate', delivery_rate),
            )
            metrics['failure_rate'] = Metric(
                name='Failure Rate',
                value=round(failure_rate, 2),
                unit='%',
                benchmark=self.INDUSTRY_BENCHMARKS['failure_rate'],
                status=self.get_metric_status('failure_rate', failure_rate),
            )

        report = CampaignReport(
            campaign_id=campaign.id,
            timestamp=datetime.utcnow().isoformat(),
            status=campaign.status,
            total_recipients=campaign.total_recipients or 0,
            sent_count=campaign.sent_count or sent,
            failed_count=failed,
            metrics=metrics,
            recommendations=self._recommendations(metrics),
            summary=self._summary(metrics, attempted),
        ).to_dict()

        if campaign.status == 'sent':
            self._cache_set(cache_key, report)
        return report

    def _recommendations(self, metrics: Dict[str, Metric]) -> List[Recommendation]:
        recommendations = []
        delivery = metrics.get('delivery_rate')
        if delivery and delivery.value < 95:
            recommendations.append(Recommendation(
                category='deliverability',
                priority='critical' if delivery.value < 90 else 'high',
                title='Low Delivery Rate Detected',
                description=f'Current delivery rate is {delivery.value:.1f}%, below the recommended 95%',
                action='Check the SES sending quota, suppression list and sender domain verification',
            ))
        failure = metrics.get('failure_rate')
        if failure and failure.value > 5:
            recommendations.append(Recommendation(
                category='list_quality',
                priority='high',
                title='High Failure Rate Alert',
                description=f'{failure.value:.1f}% of sends were rejected',
                action='Review failed addresses in the send log and unsubscribe invalid contacts',
            ))
        return recommendations

    def _summary(self, metrics: Dict[str, Metric], attempted: int) -> Dict[str, Any]:
        summary = {'total_emails': attempted, 'key_insights': [], 'health_score': 0}

        delivery = metrics.get('delivery_rate')
        if delivery:
            summary['health_score'] = round(min(delivery.value, 100), 1)
            if delivery.value >= 98:
                summary['key_insights'].append("Excellent delivery performance")
            elif delivery.value >= 95:
                summary['key_insights'].append("Good delivery performance")
            else:
                summary['key_insights'].append("Delivery performance needs improvement")

        if attempted > 1000:
            summary['key_insights'].append("Large-scale campaign successfully processed")
        return summary
