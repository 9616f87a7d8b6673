"""
Webhook Callbacks Service

Delivers confusion decisions to external receivers (LMS integrations,
instructor tooling, explanation pipelines running out of process).

Features:
- Configurable webhook endpoints with event filtering
- HMAC-SHA256 payload signatures
- Retry with exponential backoff
- Per-endpoint delivery history
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
import uuid
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from collections import deque

import aiohttp

from confusion_engine.core.metrics import increment_counter

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==================== Enums and Data Classes ====================

class WebhookEventType(str, Enum):
    """Types of webhook events"""
    CONFUSION_DETECTED = "confusion.detected"  # medium severity
    CONFUSION_HIGH = "confusion.high"          # high severity


class WebhookStatus(str, Enum):
    """Webhook delivery status"""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRYING = "retrying"


@dataclass
class WebhookEndpoint:
    """Webhook endpoint configuration"""
    id: str
    url: str
    secret: str  # For signature verification
    events: List[WebhookEventType]  # Events to receive
    active: bool = True
    created_at: datetime = field(default_factory=_utcnow)

    # Delivery settings
    max_retries: int = 3
    timeout_seconds: int = 10


@dataclass
class WebhookEvent:
    """A webhook event to be delivered"""
    id: str
    event_type: WebhookEventType
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=_utcnow)
    source: str = "confusion-engine"
    version: str = "1.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "version": self.version,
            "data": self.payload
        }


@dataclass
class WebhookDelivery:
    """Record of webhook delivery attempt"""
    id: str
    endpoint_id: str
    event: WebhookEvent
    status: WebhookStatus
    attempts: int = 0
    last_attempt: Optional[datetime] = None
    next_retry: Optional[datetime] = None
    response_code: Optional[int] = None
    error_message: Optional[str] = None
    delivered_at: Optional[datetime] = None


# ==================== Webhook Service ====================

class WebhookService:
    """
    Manages webhook subscriptions and event delivery.
    """

    MAX_HISTORY_PER_ENDPOINT = 100
    MAX_TRACKED_DELIVERIES = 5000
    BASE_RETRY_DELAY = 30  # seconds
    MAX_RETRY_DELAY = 3600

    def __init__(self, session_factory=None):
        self._endpoints: Dict[str, WebhookEndpoint] = {}
        self._deliveries: Dict[str, WebhookDelivery] = {}
        self._event_history: Dict[str, deque] = {}  # endpoint_id -> recent events
        self._retry_queue: List[WebhookDelivery] = []
        self._session_factory = session_factory or aiohttp.ClientSession

    def register_endpoint(self, endpoint: WebhookEndpoint) -> str:
        """
        Register a webhook endpoint.

        Args:
            endpoint: Webhook endpoint configuration

        Returns:
            Endpoint ID
        """
        self._endpoints[endpoint.id] = endpoint
        self._event_history[endpoint.id] = deque(maxlen=self.MAX_HISTORY_PER_ENDPOINT)
        logger.info(f"Registered webhook endpoint: {endpoint.id} -> {endpoint.url}")
        return endpoint.id

    def delete_endpoint(self, endpoint_id: str) -> bool:
        """Delete a webhook endpoint"""
        if endpoint_id in self._endpoints:
            del self._endpoints[endpoint_id]
            self._event_history.pop(endpoint_id, None)
            self._retry_queue = [d for d in self._retry_queue if d.endpoint_id != endpoint_id]
            logger.info(f"Deleted webhook endpoint: {endpoint_id}")
            return True
        return False

    def get_endpoint(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        """Get endpoint by ID"""
        return self._endpoints.get(endpoint_id)

    def list_endpoints(self, active_only: bool = False) -> List[Dict[str, Any]]:
        """List all endpoints"""
        endpoints = self._endpoints.values()
        if active_only:
            endpoints = [e for e in endpoints if e.active]

        return [
            {
                "id": e.id,
                "url": e.url,
                "events": [ev.value for ev in e.events],
                "active": e.active,
                "created_at": e.created_at.isoformat()
            }
            for e in endpoints
        ]

    def get_history(self, endpoint_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        history = self._event_history.get(endpoint_id)
        if history is None:
            return []
        return list(history)[-limit:]

    def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        return self._deliveries.get(delivery_id)

    async def emit_event(
        self,
        event_type: WebhookEventType,
        payload: Dict[str, Any],
    ) -> List[str]:
        """
        Emit a webhook event to every active endpoint subscribed to it.

        Returns:
            List of delivery IDs
        """
        event = WebhookEvent(
            id=f"evt_{uuid.uuid4().hex[:16]}",
            event_type=event_type,
            payload=payload
        )

        endpoints = [
            e for e in self._endpoints.values()
            if e.active and event_type in e.events
        ]

        # Endpoints are independent; deliver concurrently
        return list(await asyncio.gather(*[
            self._deliver_event(event, endpoint) for endpoint in endpoints
        ]))

    async def _deliver_event(
        self,
        event: WebhookEvent,
        endpoint: WebhookEndpoint
    ) -> str:
        """Deliver event to endpoint"""
        delivery_id = f"dlv_{event.id}_{endpoint.id}"

        delivery = WebhookDelivery(
            id=delivery_id,
            endpoint_id=endpoint.id,
            event=event,
            status=WebhookStatus.PENDING
        )
        self._track(delivery)

        # Record in history
        self._event_history[endpoint.id].append({
            "event_id": event.id,
            "type": event.event_type.value,
            "timestamp": event.timestamp.isoformat(),
            "delivery_id": delivery_id
        })

        success = await self._attempt_delivery(event, endpoint, delivery)

        if not success and delivery.attempts < endpoint.max_retries:
            self._schedule_retry(delivery)

        return delivery_id

    def _track(self, delivery: WebhookDelivery):
        self._deliveries[delivery.id] = delivery
        while len(self._deliveries) > self.MAX_TRACKED_DELIVERIES:
            self._deliveries.pop(next(iter(self._deliveries)))

    async def _attempt_delivery(
        self,
        event: WebhookEvent,
        endpoint: WebhookEndpoint,
        delivery: WebhookDelivery
    ) -> bool:
        """Attempt to deliver webhook"""
        delivery.attempts += 1
        delivery.last_attempt = _utcnow()

        payload_json = json.dumps(event.to_dict(), default=str)
        signature = self._generate_signature(payload_json, endpoint.secret)

        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": signature,
            "X-Webhook-Event": event.event_type.value,
            "X-Webhook-Delivery": delivery.id,
            "X-Webhook-Timestamp": str(int(time.time())),
            "User-Agent": "ConfusionEngine-Webhooks/1.0"
        }

        try:
            async with self._session_factory() as session:
                async with session.post(
                    endpoint.url,
                    data=payload_json,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=endpoint.timeout_seconds)
                ) as response:
                    delivery.response_code = response.status

                    if 200 <= response.status < 300:
                        delivery.status = WebhookStatus.DELIVERED
                        delivery.delivered_at = _utcnow()
                        increment_counter("webhook_deliveries_total", {"status": "delivered"})
                        logger.info(f"Webhook delivered: {delivery.id}")
                        return True

                    delivery.status = WebhookStatus.FAILED
                    delivery.error_message = f"HTTP {response.status}"
                    logger.warning(f"Webhook failed: {delivery.id} - {response.status}")

        except asyncio.TimeoutError:
            delivery.status = WebhookStatus.FAILED
            delivery.error_message = "Request timed out"
            logger.warning(f"Webhook timeout: {delivery.id}")

        except aiohttp.ClientError as e:
            delivery.status = WebhookStatus.FAILED
            delivery.error_message = str(e)
            logger.error(f"Webhook error: {delivery.id} - {e}")

        increment_counter("webhook_deliveries_total", {"status": "failed"})
        return False

    @staticmethod
    def _generate_signature(payload: str, secret: str) -> str:
        """Generate HMAC signature for webhook payload"""
        signature = hmac.new(
            secret.encode('utf-8'),
            payload.encode('utf-8'),
            hashlib.sha256
        ).hexdigest()
        return f"sha256={signature}"

    def verify_signature(
        self,
        payload: str,
        signature: str,
        secret: str
    ) -> bool:
        """Verify webhook signature"""
        expected = self._generate_signature(payload, secret)
        return hmac.compare_digest(signature, expected)

    def _schedule_retry(self, delivery: WebhookDelivery):
        """Schedule delivery retry with exponential backoff"""
        delivery.status = WebhookStatus.RETRYING

        delay = self.BASE_RETRY_DELAY * (2 ** (delivery.attempts - 1))
        delay = min(delay, self.MAX_RETRY_DELAY)

        delivery.next_retry = _utcnow() + timedelta(seconds=delay)
        self._retry_queue.append(delivery)

        logger.info(f"Scheduled retry for {delivery.id} in {delay}s")

    async def process_retry_queue(self, now: Optional[datetime] = None) -> int:
        """
        Process pending retries.

        Returns:
            Number of deliveries attempted
        """
        now = now or _utcnow()
        due = [
            d for d in self._retry_queue
            if d.next_retry and d.next_retry <= now
        ]

        for delivery in due:
            self._retry_queue.remove(delivery)

            endpoint = self._endpoints.get(delivery.endpoint_id)
            if not endpoint:
                continue

            success = await self._attempt_delivery(delivery.event, endpoint, delivery)

            if not success and delivery.attempts < endpoint.max_retries:
                self._schedule_retry(delivery)
            elif not success:
                delivery.status = WebhookStatus.FAILED
                logger.error(f"Webhook permanently failed after {delivery.attempts} attempts: {delivery.id}")

        return len(due)

    async def run_retry_loop(self, interval_seconds: float = 30.0):
        """Background task: process due retries until cancelled"""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.process_retry_queue()
            except Exception as e:
                logger.error(f"Webhook retry pass failed: {e}")

    @property
    def retry_queue_size(self) -> int:
        return len(self._retry_queue)

    def get_stats(self) -> Dict[str, Any]:
        statuses = [d.status for d in self._deliveries.values()]
        return {
            "endpoints": len(self._endpoints),
            "active_endpoints": sum(1 for e in self._endpoints.values() if e.active),
            "deliveries": len(statuses),
            "delivered": sum(1 for s in statuses if s == WebhookStatus.DELIVERED),
            "failed": sum(1 for s in statuses if s == WebhookStatus.FAILED),
            "retrying": len(self._retry_queue),
        }


# Global instance
webhook_service = WebhookService()


def get_webhook_service() -> WebhookService:
    """Dependency injection"""
    return webhook_service
