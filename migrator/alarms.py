"""Failure alarms.

Publishes a structured message when a migration run fails, either to an
SNS topic or to an HTTP webhook with an optional HMAC signature. Alarm
delivery is best-effort: publishers log their own failures and never
raise, so the migration error always reaches the caller.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import requests

from .aws import sns_client
from .config import AlarmSettings

logger = logging.getLogger(__name__)

ALARM_SUBJECT = "Schema migrator failure"


@dataclass
class AlarmPayload:
    """Alarm message body."""

    message: str
    stack: Optional[str] = None
    version: Optional[str] = None
    batch_id: Optional[str] = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "stack": self.stack,
            "version": self.version,
            "batchId": self.batch_id,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)


class AlarmPublisher(Protocol):
    async def publish(self, payload: AlarmPayload) -> bool: ...


class SnsAlarmPublisher:
    """Publishes alarms to an SNS topic."""

    def __init__(self, topic_arn: str, client: Any = None, region: Optional[str] = None):
        self.topic_arn = topic_arn
        self._client = client
        self._region = region

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = sns_client(self._region)
        return self._client

    async def publish(self, payload: AlarmPayload) -> bool:
        try:
            await asyncio.to_thread(
                self.client.publish,
                TopicArn=self.topic_arn,
                Subject=ALARM_SUBJECT,
                Message=payload.to_json(),
            )
        except Exception as e:
            logger.error(f"Failed to publish migration alarm to {self.topic_arn}: {e}")
            return False
        logger.info(f"Published migration alarm to {self.topic_arn}")
        return True


class WebhookAlarmPublisher:
    """Posts alarms to an HTTP endpoint.

    When a secret is configured each request carries an
    ``X-Webhook-Signature: sha256=<hex>`` header computed over the body.
    """

    def __init__(self, url: str, secret: Optional[str] = None, timeout_seconds: int = 10):
        self.url = url
        self.secret = secret
        self.timeout_seconds = timeout_seconds

    def _compute_signature(self, body: str) -> str:
        if not self.secret:
            return ""
        signature = hmac.new(self.secret.encode(), body.encode(), hashlib.sha256).hexdigest()
        return f"sha256={signature}"

    def _get_headers(self, body: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "Namecard-Schema-Migrator/1.0",
            "X-Alarm-Subject": ALARM_SUBJECT,
        }
        signature = self._compute_signature(body)
        if signature:
            headers["X-Webhook-Signature"] = signature
        return headers

    def _deliver_sync(self, body: str) -> bool:
        try:
            response = requests.post(
                self.url,
                data=body,
                headers=self._get_headers(body),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            logger.error(f"Failed to deliver migration alarm to {self.url}: {e}")
            return False

        if response.status_code >= 400:
            logger.error(
                f"Migration alarm webhook {self.url} returned HTTP {response.status_code}"
            )
            return False
        return True

    async def publish(self, payload: AlarmPayload) -> bool:
        return await asyncio.to_thread(self._deliver_sync, payload.to_json())


def build_alarm_publisher(
    settings: AlarmSettings, region: Optional[str] = None
) -> Optional[AlarmPublisher]:
    """Select an alarm publisher from configuration.

    SNS wins over the webhook when both are configured. Returns None if
    neither is.
    """
    if settings.topic_arn:
        return SnsAlarmPublisher(settings.topic_arn, region=region)
    if settings.webhook_url:
        return WebhookAlarmPublisher(
            settings.webhook_url, settings.webhook_secret, settings.timeout_seconds
        )
    return None
