"""
Adaptive Weight Controller

Owns one HeuristicWeight record per (heuristic, content type) and moves it
in response to learner feedback on the explanations those heuristics caused:

- 5 negative signals since the last adjustment: weight -= 0.05, counter reset
- 10 positive signals since the last adjustment: weight += 0.05, counter reset
- Pattern reversal: when the positive ratio over the trailing feedback
  window swings by more than 50 points between its older and newer half,
  the pair goes back to its default weight with both counters at zero

Weights always stay in [0.0, 1.0]. Feedback tagged with one content type never
touches another content type's record.

The full table is published as an immutable, versioned WeightTable. Updates
build a new table and swap it in, so the Score Aggregator either sees the
table before an adjustment or after it. Writers are serialized per key.
"""
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from threading import Lock
from types import MappingProxyType
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Tuple
import logging

from .models import (
    DEFAULT_WEIGHTS,
    ContentType,
    ExplanationAttribution,
    FeedbackOutcome,
    FeedbackSignal,
    HeuristicName,
    HeuristicWeight,
    clamp_unit,
    utcnow,
)

logger = logging.getLogger(__name__)

WeightKey = Tuple[HeuristicName, ContentType]

DAY_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class WeightTable:
    """Immutable snapshot of every weight record"""
    version: int
    records: Mapping[WeightKey, HeuristicWeight]

    def get(self, heuristic: HeuristicName, content_type: ContentType) -> HeuristicWeight:
        return self.records[(heuristic, content_type)]

    def weight_for(self, heuristic: HeuristicName, content_type: ContentType) -> float:
        return self.records[(heuristic, content_type)].weight

    def weights_for(self, content_type: ContentType) -> Dict[HeuristicName, float]:
        return {name: self.weight_for(name, content_type) for name in HeuristicName}

    def to_list(self) -> List[Dict]:
        return [r.to_dict() for r in self.records.values()]


@dataclass(frozen=True)
class WeightAdjustment:
    """Audit entry for a weight change"""
    heuristic_name: HeuristicName
    content_type: ContentType
    previous_weight: float
    new_weight: float
    reason: str  # "negative_threshold", "positive_threshold", "pattern_reversal", "restore"
    timestamp: datetime = field(default_factory=utcnow)


class AdaptiveWeightController:
    """
    Feedback-driven weight recalibration.

    Args:
        negative_threshold: Negative signals needed for one step down
        positive_threshold: Positive signals needed for one step up
        step: Weight change per adjustment
        feedback_window_size: Max non-neutral signals kept for reversal detection
        feedback_window_days: Max age of signals kept for reversal detection
        reversal_delta: Ratio swing that counts as a pattern reversal
        min_reversal_samples: Signals needed before a reversal can be declared
    """

    NEGATIVE_THRESHOLD = 5
    POSITIVE_THRESHOLD = 10
    STEP = 0.05
    REVERSAL_DELTA = 0.5
    MIN_REVERSAL_SAMPLES = 10
    MAX_AUDIT_LOG = 500

    def __init__(
        self,
        negative_threshold: int = NEGATIVE_THRESHOLD,
        positive_threshold: int = POSITIVE_THRESHOLD,
        step: float = STEP,
        feedback_window_size: int = 20,
        feedback_window_days: int = 7,
        reversal_delta: float = REVERSAL_DELTA,
        min_reversal_samples: int = MIN_REVERSAL_SAMPLES,
        defaults: Mapping[HeuristicName, float] = None,
    ):
        self.negative_threshold = negative_threshold
        self.positive_threshold = positive_threshold
        self.step = step
        self.feedback_window_size = feedback_window_size
        self.feedback_window_ms = feedback_window_days * DAY_MS
        self.reversal_delta = reversal_delta
        self.min_reversal_samples = min_reversal_samples
        self.defaults = dict(defaults or DEFAULT_WEIGHTS)

        records = {
            (name, content_type): HeuristicWeight(
                heuristic_name=name,
                content_type=content_type,
                weight=self.defaults[name],
            )
            for name in HeuristicName
            for content_type in ContentType
        }
        self._table = WeightTable(version=0, records=MappingProxyType(records))
        self._publish_lock = Lock()
        self._key_locks: Dict[WeightKey, Lock] = {key: Lock() for key in records}
        # (timestamp, is_positive) per key, non-neutral signals only
        self._trailing: Dict[WeightKey, Deque[Tuple[int, bool]]] = {
            key: deque(maxlen=feedback_window_size) for key in records
        }
        self._audit: Deque[WeightAdjustment] = deque(maxlen=self.MAX_AUDIT_LOG)
        self._listeners = []

    # ------------------------------------------------------------------- reads

    def table(self) -> WeightTable:
        """Current published weight table (read-only)"""
        return self._table

    @property
    def version(self) -> int:
        return self._table.version

    def adjustments(self, limit: int = 50) -> List[WeightAdjustment]:
        return list(self._audit)[-limit:]

    def add_listener(self, listener):
        """Called with the new WeightTable after every publish"""
        self._listeners.append(listener)

    # ------------------------------------------------------------------ writes

    def apply_feedback(
        self,
        signal: FeedbackSignal,
        attribution: ExplanationAttribution,
    ) -> List[HeuristicWeight]:
        """
        Apply one feedback signal to every heuristic that triggered the explanation.

        Returns:
            The updated records (empty for neutral feedback)
        """
        if signal.outcome == FeedbackOutcome.NEUTRAL:
            logger.debug(f"Neutral feedback for {signal.explanation_id}; no weight change")
            return []

        updated = []
        for heuristic in dict.fromkeys(attribution.heuristics):
            key = (heuristic, attribution.content_type)
            with self._key_locks[key]:
                self._trailing[key].append((signal.timestamp, signal.outcome == FeedbackOutcome.POSITIVE))
                record = self._commit(key, lambda current: self._count(current, signal.outcome))
            updated.append(record)
        return updated

    def _count(self, current: HeuristicWeight, outcome: FeedbackOutcome) -> Tuple[HeuristicWeight, Optional[str]]:
        if outcome == FeedbackOutcome.NEGATIVE:
            count = current.negative_feedback_count + 1
            if count >= self.negative_threshold:
                return replace(
                    current,
                    weight=self._clamp(current.weight - self.step),
                    negative_feedback_count=0,
                    last_updated=utcnow(),
                ), "negative_threshold"
            return replace(current, negative_feedback_count=count, last_updated=utcnow()), None

        count = current.positive_feedback_count + 1
        if count >= self.positive_threshold:
            return replace(
                current,
                weight=self._clamp(current.weight + self.step),
                positive_feedback_count=0,
                last_updated=utcnow(),
            ), "positive_threshold"
        return replace(current, positive_feedback_count=count, last_updated=utcnow()), None

    @staticmethod
    def _clamp(weight: float) -> float:
        # Rounded so repeated 0.05 steps land on exact decimal weights
        return round(clamp_unit(weight), 6)

    def _commit(self, key: WeightKey, change) -> HeuristicWeight:
        """Copy-on-write publish of one record; caller holds the key lock"""
        with self._publish_lock:
            current = self._table.records[key]
            record, reason = change(current)
            records = dict(self._table.records)
            records[key] = record
            self._table = WeightTable(version=self._table.version + 1, records=MappingProxyType(records))
            table = self._table

        if reason is not None:
            self._audit.append(WeightAdjustment(
                heuristic_name=key[0],
                content_type=key[1],
                previous_weight=current.weight,
                new_weight=record.weight,
                reason=reason,
            ))
            logger.info(
                f"Weight {key[0].value}/{key[1].value}: {current.weight:.2f} -> {record.weight:.2f} ({reason})"
            )

        for listener in self._listeners:
            try:
                listener(table)
            except Exception as e:
                logger.error(f"Weight listener failed: {e}")
        return record

    # ---------------------------------------------------------- reversal scan

    def sentiment_halves(self, key: WeightKey, now_ms: int) -> Optional[Tuple[float, float]]:
        """Positive ratio of the older and newer half of the trailing window"""
        window = [
            (ts, positive) for ts, positive in self._trailing[key]
            if now_ms - ts <= self.feedback_window_ms
        ]
        if len(window) < self.min_reversal_samples:
            return None
        window.sort(key=lambda item: item[0])
        middle = len(window) // 2
        older, newer = window[:middle], window[middle:]
        return (
            sum(1 for _, p in older if p) / len(older),
            sum(1 for _, p in newer if p) / len(newer),
        )

    def scan_pattern_reversals(self, now_ms: int) -> List[WeightKey]:
        """
        Periodic scan: reset every pair whose feedback sentiment flipped.

        Returns:
            Keys that were reset
        """
        reset = []
        for key in list(self._trailing):
            with self._key_locks[key]:
                trailing = self._trailing[key]
                # Drop signals that aged out of the window
                while trailing and now_ms - trailing[0][0] > self.feedback_window_ms:
                    trailing.popleft()

                halves = self.sentiment_halves(key, now_ms)
                if halves is None:
                    continue
                older, newer = halves
                if abs(newer - older) <= self.reversal_delta:
                    continue

                logger.warning(
                    f"Feedback pattern reversal for {key[0].value}/{key[1].value}: "
                    f"{older:.2f} -> {newer:.2f}; resetting to default"
                )
                self._reset(key)
                reset.append(key)
        return reset

    def reset(self, heuristic: HeuristicName, content_type: ContentType) -> HeuristicWeight:
        key = (heuristic, content_type)
        with self._key_locks[key]:
            return self._reset(key)

    def _reset(self, key: WeightKey) -> HeuristicWeight:
        self._trailing[key].clear()
        default = self.defaults[key[0]]
        return self._commit(key, lambda current: (replace(
            current,
            weight=default,
            positive_feedback_count=0,
            negative_feedback_count=0,
            last_updated=utcnow(),
        ), "pattern_reversal"))

    def restore(self, records: Iterable[HeuristicWeight]) -> int:
        """Load previously persisted records (warm start)"""
        restored = 0
        for record in records:
            key = record.key
            if key not in self._key_locks:
                continue
            with self._key_locks[key]:
                self._commit(key, lambda current, r=record: (replace(r, weight=self._clamp(r.weight)), "restore"))
            restored += 1
        if restored:
            logger.info(f"Restored {restored} heuristic weight records")
        return restored
