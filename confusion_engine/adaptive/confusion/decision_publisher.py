"""
Confusion Decision Publisher

Turns medium/high ConfusionScores into ConfusionPoints and hands each one to
every registered downstream sink (explanation pipeline, webhook dispatcher,
analytics). Emission is at most once per evaluation and depends on severity
only; display caps and other delivery policies belong to the consumers.
"""
from typing import Optional
import logging

from confusion_engine.core.metrics import increment_counter
from .models import ConfusionPoint, ConfusionScore, Severity
from .sinks import Sink, SinkFanout

logger = logging.getLogger(__name__)


class ConfusionDecisionPublisher:

    def __init__(self):
        self.sinks = SinkFanout("points")
        self.published = 0

    def register(self, sink: Sink):
        self.sinks.add(sink)

    def unregister(self, sink: Sink) -> bool:
        return self.sinks.remove(sink)

    def publish(self, score: ConfusionScore) -> Optional[ConfusionPoint]:
        """Emit a ConfusionPoint for a qualifying score; returns None for low severity"""
        if score.severity == Severity.LOW:
            return None

        point = ConfusionPoint(
            segment_id=score.segment_id,
            learner_id=score.learner_id,
            content_id=score.content_id,
            content_type=score.content_type,
            score=score.score,
            severity=score.severity,
            triggering_heuristics=list(score.triggering_heuristics),
            timestamp=score.timestamp,
        )
        self.published += 1
        increment_counter("confusion_points_total", {"severity": point.severity.value})
        logger.info(
            f"Confusion point: learner={point.learner_id} segment={point.segment_id} "
            f"score={point.score:.2f} severity={point.severity.value} "
            f"heuristics={[h.value for h in point.triggering_heuristics]}"
        )
        self.sinks.emit(point)
        return point

    async def drain(self):
        await self.sinks.drain()
