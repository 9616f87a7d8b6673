"""
Tests for webhook delivery service
"""
import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from confusion_engine.services.webhooks import (
    WebhookEndpoint,
    WebhookEventType,
    WebhookService,
    WebhookStatus,
)


def mock_session_factory(status: int = 200, error: Exception = None):
    """aiohttp.ClientSession stand-in returning a fixed status (or raising)"""
    response = MagicMock(status=status)
    post_cm = MagicMock()
    post_cm.__aenter__ = AsyncMock(return_value=response)
    post_cm.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    if error is not None:
        session.post = MagicMock(side_effect=error)
    else:
        session.post = MagicMock(return_value=post_cm)

    session_cm = MagicMock()
    session_cm.__aenter__ = AsyncMock(return_value=session)
    session_cm.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=session_cm), session


def endpoint(endpoint_id="wh_1", events=None, max_retries=3) -> WebhookEndpoint:
    return WebhookEndpoint(
        id=endpoint_id,
        url=f"https://lms.example.com/hooks/{endpoint_id}",
        secret="s3cret",
        events=events or [WebhookEventType.CONFUSION_HIGH],
        max_retries=max_retries,
    )


POINT = {"learner_id": "learner-1", "segment_id": "seg-1", "score": 0.6, "severity": "high"}


class TestSignatures:

    def test_round_trip(self):
        service = WebhookService()
        signature = service._generate_signature('{"a": 1}', "s3cret")

        assert signature.startswith("sha256=")
        assert service.verify_signature('{"a": 1}', signature, "s3cret") is True
        assert service.verify_signature('{"a": 2}', signature, "s3cret") is False


class TestEndpoints:

    def test_register_list_delete(self):
        service = WebhookService()
        service.register_endpoint(endpoint())

        [listed] = service.list_endpoints()
        assert listed["id"] == "wh_1"
        assert listed["events"] == ["confusion.high"]

        assert service.delete_endpoint("wh_1") is True
        assert service.delete_endpoint("wh_1") is False
        assert service.list_endpoints() == []


class TestDelivery:

    @pytest.mark.asyncio
    async def test_delivers_signed_payload(self):
        factory, session = mock_session_factory(status=200)
        service = WebhookService(session_factory=factory)
        service.register_endpoint(endpoint())

        [delivery_id] = await service.emit_event(WebhookEventType.CONFUSION_HIGH, POINT)

        kwargs = session.post.call_args.kwargs
        body = json.loads(kwargs["data"])
        assert body["type"] == "confusion.high"
        assert body["source"] == "confusion-engine"
        assert body["data"] == POINT
        assert service.verify_signature(kwargs["data"], kwargs["headers"]["X-Webhook-Signature"], "s3cret")
        assert service.get_delivery(delivery_id).status == WebhookStatus.DELIVERED
        assert service.get_history("wh_1")[0]["delivery_id"] == delivery_id

    @pytest.mark.asyncio
    async def test_only_subscribed_endpoints(self):
        factory, session = mock_session_factory(status=200)
        service = WebhookService(session_factory=factory)
        service.register_endpoint(endpoint("wh_high", [WebhookEventType.CONFUSION_HIGH]))
        service.register_endpoint(endpoint("wh_medium", [WebhookEventType.CONFUSION_DETECTED]))

        deliveries = await service.emit_event(WebhookEventType.CONFUSION_DETECTED, POINT)

        assert len(deliveries) == 1
        assert session.post.call_args.args[0].endswith("wh_medium")

    @pytest.mark.asyncio
    async def test_failure_scheduled_for_retry(self):
        factory, _ = mock_session_factory(status=503)
        service = WebhookService(session_factory=factory)
        service.register_endpoint(endpoint())

        [delivery_id] = await service.emit_event(WebhookEventType.CONFUSION_HIGH, POINT)

        delivery = service.get_delivery(delivery_id)
        assert delivery.status == WebhookStatus.RETRYING
        assert delivery.error_message == "HTTP 503"
        assert service.retry_queue_size == 1

    @pytest.mark.asyncio
    async def test_retry_redelivers_original_event(self):
        factory, session = mock_session_factory(status=503)
        service = WebhookService(session_factory=factory)
        service.register_endpoint(endpoint())
        [delivery_id] = await service.emit_event(WebhookEventType.CONFUSION_HIGH, POINT)
        delivery = service.get_delivery(delivery_id)

        session.post.return_value.__aenter__.return_value.status = 200
        attempted = await service.process_retry_queue(now=delivery.next_retry + timedelta(seconds=1))

        assert attempted == 1
        assert delivery.status == WebhookStatus.DELIVERED
        assert json.loads(session.post.call_args.kwargs["data"])["data"] == POINT
        assert service.retry_queue_size == 0

    @pytest.mark.asyncio
    async def test_retry_not_due_yet(self):
        factory, _ = mock_session_factory(status=503)
        service = WebhookService(session_factory=factory)
        service.register_endpoint(endpoint())
        await service.emit_event(WebhookEventType.CONFUSION_HIGH, POINT)

        assert await service.process_retry_queue() == 0
        assert service.retry_queue_size == 1

    @pytest.mark.asyncio
    async def test_client_error_without_retries_fails(self):
        factory, _ = mock_session_factory(error=aiohttp.ClientConnectionError("refused"))
        service = WebhookService(session_factory=factory)
        service.register_endpoint(endpoint(max_retries=1))

        [delivery_id] = await service.emit_event(WebhookEventType.CONFUSION_HIGH, POINT)

        delivery = service.get_delivery(delivery_id)
        assert delivery.status == WebhookStatus.FAILED
        assert "refused" in delivery.error_message
        assert service.retry_queue_size == 0
        assert service.get_stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_retry_loop_survives_failed_pass(self):
        service = WebhookService()
        service.process_retry_queue = AsyncMock(side_effect=[RuntimeError("boom"), 0, 0, 0])

        task = asyncio.create_task(service.run_retry_loop(interval_seconds=0))
        for _ in range(10):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert service.process_retry_queue.await_count >= 2
