"""
Root pytest configuration and shared fixtures.

Every test builds its own engine so asyncio objects are bound to the
test's event loop; the HTTP client overrides the app's dependency getters
with those instances (ASGITransport does not run the app lifespan).
"""
import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SNAPSHOT_CACHE_ENABLED", "false")

import pytest
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport

from confusion_engine.adaptive.confusion import (
    AnalyticsSink,
    BehavioralEvent,
    ConfusionEngine,
    FeedbackSignal,
    get_analytics_sink,
    get_confusion_engine,
)
from confusion_engine.core.metrics import reset_metrics
from confusion_engine.services.webhooks import WebhookService, get_webhook_service


T0 = 1_700_000_000_000  # ms since epoch


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: cross-component tests through the engine and HTTP API"
    )
    config.addinivalue_line(
        "markers", "unit: unit tests for isolated components"
    )


def _event_record(
    event_type: str,
    timestamp: int,
    learner_id: str = "learner-1",
    segment_id: str = "seg-1",
    content_id: str = "content-1",
    content_type: str = "text",
    **payload,
) -> dict:
    """Raw behavioral event as it arrives on the wire"""
    return {
        "learner_id": learner_id,
        "content_id": content_id,
        "segment_id": segment_id,
        "type": event_type,
        "timestamp": timestamp,
        "content_type": content_type,
        "payload": payload,
    }


def _feedback_record(explanation_id: str, outcome: str, timestamp: int = T0, learner_id: str = "learner-1") -> dict:
    return {
        "explanation_id": explanation_id,
        "learner_id": learner_id,
        "outcome": outcome,
        "timestamp": timestamp,
    }


@pytest.fixture
def make_event():
    """Factory for validated BehavioralEvents"""
    def _make(event_type: str, timestamp: int, **kwargs) -> BehavioralEvent:
        return BehavioralEvent.parse(_event_record(event_type, timestamp, **kwargs))
    return _make


@pytest.fixture
def make_feedback():
    """Factory for validated FeedbackSignals"""
    def _make(explanation_id: str, outcome: str, timestamp: int = T0, **kwargs) -> FeedbackSignal:
        return FeedbackSignal.parse(_feedback_record(explanation_id, outcome, timestamp, **kwargs))
    return _make


@pytest.fixture
def t0() -> int:
    """Reference timestamp for test timelines"""
    return T0


@pytest.fixture
def raw_event():
    """Factory for raw (unvalidated) event records"""
    return _event_record


@pytest.fixture
def raw_feedback():
    """Factory for raw (unvalidated) feedback records"""
    return _feedback_record


@pytest.fixture(autouse=True)
def clean_metrics():
    """Metrics are process-global; start every test from zero"""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def analytics() -> AnalyticsSink:
    return AnalyticsSink()


@pytest.fixture
async def engine(analytics) -> AsyncGenerator[ConfusionEngine, None]:
    """Running engine wired to a fresh analytics buffer"""
    engine = ConfusionEngine(lanes=2)
    engine.aggregator.add_sink(analytics.record_score)
    engine.publisher.register(analytics.record_point)
    await engine.start()
    yield engine
    await engine.stop()


@pytest.fixture
def webhook_service() -> WebhookService:
    return WebhookService()


@pytest.fixture
async def client(engine, analytics, webhook_service) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for testing"""
    from confusion_engine.main import app

    app.dependency_overrides[get_confusion_engine] = lambda: engine
    app.dependency_overrides[get_analytics_sink] = lambda: analytics
    app.dependency_overrides[get_webhook_service] = lambda: webhook_service
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test"
        ) as client:
            yield client
    finally:
        app.dependency_overrides = {}
