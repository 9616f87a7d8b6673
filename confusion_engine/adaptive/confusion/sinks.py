"""
Outbound sinks for scores and confusion points.

A sink is any callable taking one record. Plain callables run inline;
callables returning an awaitable are scheduled as tasks and never awaited on
the scoring path. Sink failures are logged and counted, never raised.
"""
from collections import deque
from typing import Any, Callable, Deque, List, Optional, Set
import asyncio
import inspect
import logging

from confusion_engine.core.metrics import increment_counter
from confusion_engine.services.webhooks import WebhookEventType
from .models import ConfusionPoint, ConfusionScore, Severity

logger = logging.getLogger(__name__)

Sink = Callable[[Any], Any]


class SinkFanout:
    """Delivers each record to every registered sink exactly once"""

    def __init__(self, stream: str):
        self.stream = stream
        self._sinks: List[Sink] = []
        self._inflight: Set[asyncio.Task] = set()

    def add(self, sink: Sink):
        self._sinks.append(sink)

    def remove(self, sink: Sink) -> bool:
        try:
            self._sinks.remove(sink)
            return True
        except ValueError:
            return False

    def __len__(self) -> int:
        return len(self._sinks)

    def emit(self, record: Any):
        for sink in self._sinks:
            try:
                result = sink(record)
            except Exception as e:
                self._failed(sink, e)
                continue
            if inspect.isawaitable(result):
                self._schedule(sink, result)

    def _schedule(self, sink: Sink, awaitable):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning(f"No running event loop; dropped async delivery to {_name(sink)} ({self.stream})")
            increment_counter("confusion_sink_errors_total", {"stream": self.stream})
            return
        task = loop.create_task(self._guard(sink, awaitable))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _guard(self, sink: Sink, awaitable):
        try:
            await awaitable
        except Exception as e:
            self._failed(sink, e)

    def _failed(self, sink: Sink, error: Exception):
        logger.error(f"Sink {_name(sink)} failed on {self.stream}: {error}")
        increment_counter("confusion_sink_errors_total", {"stream": self.stream})

    @property
    def pending(self) -> int:
        return len(self._inflight)

    async def drain(self):
        """Wait for every scheduled delivery to finish"""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)


def _name(sink: Sink) -> str:
    return getattr(sink, "__name__", type(sink).__name__)


class AnalyticsSink:
    """
    In-memory analytics buffer.

    Keeps the most recent scores and points for the read API; an external
    analytics exporter can page through ``recent_scores``.
    """

    MAX_HISTORY = 1000

    def __init__(self, max_history: int = MAX_HISTORY):
        self.scores: Deque[ConfusionScore] = deque(maxlen=max_history)
        self.points: Deque[ConfusionPoint] = deque(maxlen=max_history)

    def record_score(self, score: ConfusionScore):
        self.scores.append(score)

    def record_point(self, point: ConfusionPoint):
        self.points.append(point)

    def recent_scores(self, learner_id: Optional[str] = None, limit: int = 50) -> List[ConfusionScore]:
        items = [s for s in self.scores if learner_id is None or s.learner_id == learner_id]
        return items[-limit:]

    def recent_points(self, learner_id: Optional[str] = None, limit: int = 50) -> List[ConfusionPoint]:
        items = [p for p in self.points if learner_id is None or p.learner_id == learner_id]
        return items[-limit:]


class WebhookSink:
    """Forwards confusion points to the webhook dispatcher"""

    def __init__(self, service):
        self.service = service

    async def __call__(self, point: ConfusionPoint):
        event_type = (
            WebhookEventType.CONFUSION_HIGH
            if point.severity == Severity.HIGH
            else WebhookEventType.CONFUSION_DETECTED
        )
        await self.service.emit_event(event_type, point.model_dump(mode="json"))


# Global instance
analytics_sink = AnalyticsSink()


def get_analytics_sink() -> AnalyticsSink:
    """Dependency injection"""
    return analytics_sink
