"""
Score Aggregator

Combines heuristic contributions into one bounded score:

    score = min(1.0, sum(contributions))

and classifies it:

    low     score < 0.3
    medium  0.3 <= score < 0.6
    high    score >= 0.6

A ConfusionScore goes to the score sinks on every evaluation. Evaluation has
a 500ms budget measured from event receipt; a miss is logged and counted
and the score is still emitted.
"""
from typing import List, Optional, Tuple
import logging
import time

from confusion_engine.core.metrics import increment_counter, observe_histogram
from .heuristics import HeuristicEvaluator
from .models import ConfusionScore, HeuristicResult, Severity, clamp_unit
from .sinks import Sink, SinkFanout
from .weight_controller import AdaptiveWeightController

logger = logging.getLogger(__name__)

MEDIUM_THRESHOLD = 0.3
HIGH_THRESHOLD = 0.6


def classify(score: float) -> Severity:
    """Severity band for a score in [0, 1]"""
    if score < MEDIUM_THRESHOLD:
        return Severity.LOW
    if score < HIGH_THRESHOLD:
        return Severity.MEDIUM
    return Severity.HIGH


def aggregate(results: List[HeuristicResult]) -> float:
    total = sum(r.contribution for r in results)
    # Rounded to absorb float noise such as 0.1 + 0.2
    return round(clamp_unit(total), 9)


class ScoreAggregator:
    """
    Turns one window evaluation into a ConfusionScore.

    Args:
        evaluator: Heuristic Evaluator bound to the window and baseline stores
        weights: Weight controller handle; its published table is read per evaluation
        latency_budget_ms: Soft real-time budget per evaluation
    """

    def __init__(
        self,
        evaluator: HeuristicEvaluator,
        weights: AdaptiveWeightController,
        latency_budget_ms: float = 500,
    ):
        self.evaluator = evaluator
        self.weights = weights
        self.latency_budget_ms = latency_budget_ms
        self.score_sinks = SinkFanout("scores")
        self.budget_misses = 0

    def add_sink(self, sink: Sink):
        self.score_sinks.add(sink)

    def score(
        self,
        segment_id: str,
        learner_id: str,
        content_id: str,
        received_at: Optional[float] = None,
    ) -> Tuple[ConfusionScore, List[HeuristicResult]]:
        """
        Evaluate one (learner, segment) window and emit the score.

        Args:
            segment_id: Segment being scored
            learner_id: Learner being scored
            content_id: Content the segment belongs to
            received_at: ``time.perf_counter()`` at event receipt

        Returns:
            (ConfusionScore, per-heuristic results)
        """
        started = time.perf_counter()
        received_at = started if received_at is None else received_at

        table = self.weights.table()
        observation, baseline, results = self.evaluator.run(segment_id, learner_id, table.weights_for)

        value = aggregate(results)
        severity = classify(value)
        latency_ms = (time.perf_counter() - received_at) * 1000.0

        score = ConfusionScore(
            segment_id=segment_id,
            learner_id=learner_id,
            content_id=content_id,
            content_type=observation.content_type,
            score=value,
            severity=severity,
            triggering_heuristics=[r.heuristic_name for r in results if r.triggered],
            contributions={r.heuristic_name.value: r.contribution for r in results},
            timestamp=observation.now,
            weights_version=table.version,
            latency_ms=latency_ms,
        )

        observe_histogram("confusion_evaluation_seconds", time.perf_counter() - started)
        observe_histogram("confusion_event_to_score_seconds", latency_ms / 1000.0)
        increment_counter("confusion_scores_total", {"severity": severity.value})
        if latency_ms > self.latency_budget_ms:
            self.budget_misses += 1
            increment_counter("confusion_latency_budget_miss_total")
            logger.warning(
                f"Latency budget missed: learner={learner_id} segment={segment_id} "
                f"latency={latency_ms:.1f}ms budget={self.latency_budget_ms}ms"
            )

        self.score_sinks.emit(score)
        return score, results
