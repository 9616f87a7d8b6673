"""
Cohort Baseline Store

Per-segment rolling statistics (dwell time, rewind count) derived from the
terminal metrics of every learner who finished the segment.

Each sample folds into an exponential moving average:

    avg' = avg + alpha * (sample - avg)
    var' = (1 - alpha) * (var + alpha * (sample - avg) ** 2)

A segment is only served from its own statistics once it has at least
``min_samples`` samples; before that a content-type default is returned
and nothing about the default is written back.

Records are frozen and replaced whole, so the scoring path always reads a
committed snapshot. The periodic ``recompute`` pass rebuilds every record
from the retained sample history and swaps the snapshot in one assignment.
"""
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from types import MappingProxyType
from typing import Deque, Dict, List, Mapping, Optional, Tuple
import logging
import math

from .models import (
    Baseline,
    CohortBaseline,
    ComputedBaseline,
    ContentType,
    DefaultBaseline,
    SegmentSample,
    utcnow,
)

logger = logging.getLogger(__name__)


# Cold-start defaults per content type: (avg dwell seconds, avg rewind count)
CONTENT_TYPE_DEFAULTS: Dict[ContentType, Tuple[float, float]] = {
    ContentType.TEXT: (30.0, 0.5),
    ContentType.VIDEO: (10.0, 0.5),
}


@dataclass
class _Fold:
    """Running EMA state"""
    avg_dwell: float = 0.0
    var_dwell: float = 0.0
    avg_rewind: float = 0.0
    count: int = 0

    def add(self, sample: SegmentSample, alpha: float):
        if self.count == 0:
            self.avg_dwell = sample.dwell_time
            self.var_dwell = 0.0
            self.avg_rewind = sample.rewind_count
        else:
            delta = sample.dwell_time - self.avg_dwell
            self.avg_dwell += alpha * delta
            self.var_dwell = (1 - alpha) * (self.var_dwell + alpha * delta * delta)
            self.avg_rewind += alpha * (sample.rewind_count - self.avg_rewind)
        self.count += 1


@dataclass
class _SegmentHistory:
    content_type: ContentType
    samples: Deque[SegmentSample]
    fold: _Fold = field(default_factory=_Fold)
    revision: int = 0
    total: int = 0


class CohortBaselineStore:
    """
    Rolling cohort statistics per segment.

    Args:
        alpha: EMA smoothing factor
        min_samples: Samples required before a segment's own statistics are served
        history_limit: Samples retained per segment for the full recompute pass
    """

    DEFAULT_ALPHA = 0.1
    DEFAULT_MIN_SAMPLES = 10
    DEFAULT_HISTORY_LIMIT = 1000

    def __init__(
        self,
        alpha: float = DEFAULT_ALPHA,
        min_samples: int = DEFAULT_MIN_SAMPLES,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        if not 0.0 < alpha <= 1.0:
            raise ValueError("alpha must be in (0, 1]")
        self.alpha = alpha
        self.min_samples = min_samples
        self.history_limit = history_limit

        self._snapshot: Mapping[str, CohortBaseline] = MappingProxyType({})
        self._history: Dict[str, _SegmentHistory] = {}
        self._lock = Lock()
        self._recomputes = 0

    # ------------------------------------------------------------------- reads

    def get(self, segment_id: str, content_type: Optional[ContentType] = None) -> Baseline:
        """
        Baseline for a segment.

        Returns the stored statistics when the segment has enough samples,
        otherwise the default for ``content_type`` (or the segment's recorded
        content type, or text).
        """
        stats = self._snapshot.get(segment_id)
        if stats is not None and stats.sample_size >= self.min_samples:
            return ComputedBaseline(stats=stats)

        if content_type is None:
            content_type = stats.content_type if stats is not None else ContentType.TEXT
        return self.default_for(segment_id, content_type)

    @staticmethod
    def default_for(segment_id: str, content_type: ContentType) -> DefaultBaseline:
        dwell, rewinds = CONTENT_TYPE_DEFAULTS[content_type]
        return DefaultBaseline(
            segment_id=segment_id,
            content_type=content_type,
            avg_dwell_time=dwell,
            avg_rewind_count=rewinds,
        )

    def stats(self, segment_id: str) -> Optional[CohortBaseline]:
        """Raw committed statistics, regardless of sample size"""
        return self._snapshot.get(segment_id)

    def snapshot(self) -> Mapping[str, CohortBaseline]:
        return self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)

    # ------------------------------------------------------------------ writes

    def update(
        self,
        segment_id: str,
        sample: SegmentSample,
        content_type: Optional[ContentType] = None,
    ) -> CohortBaseline:
        """Fold one learner's terminal segment metrics into the rolling average"""
        if not (math.isfinite(sample.dwell_time) and math.isfinite(sample.rewind_count)):
            raise ValueError(f"non-finite baseline sample for segment {segment_id}")
        if sample.dwell_time < 0 or sample.rewind_count < 0:
            raise ValueError(f"negative baseline sample for segment {segment_id}")

        with self._lock:
            history = self._history.get(segment_id)
            if history is None:
                history = _SegmentHistory(
                    content_type=content_type or ContentType.TEXT,
                    samples=deque(maxlen=self.history_limit),
                )
                self._history[segment_id] = history
            elif content_type is not None:
                history.content_type = content_type

            history.samples.append(sample)
            history.fold.add(sample, self.alpha)
            history.revision += 1
            history.total += 1

            record = _to_record(segment_id, history.fold, history.total, history.content_type)
            self._publish({segment_id: record})

        return record

    def delete(self, segment_id: str) -> bool:
        """Explicit data-retention deletion; the only way sample_size goes down"""
        with self._lock:
            existed = self._history.pop(segment_id, None) is not None
            if segment_id in self._snapshot:
                existed = True
                mapping = dict(self._snapshot)
                del mapping[segment_id]
                self._snapshot = MappingProxyType(mapping)
        if existed:
            logger.info(f"Deleted cohort baseline for segment {segment_id}")
        return existed

    def _publish(self, records: Dict[str, CohortBaseline]):
        mapping = dict(self._snapshot)
        mapping.update(records)
        self._snapshot = MappingProxyType(mapping)

    # --------------------------------------------------------------- recompute

    def recompute(self) -> int:
        """
        Full recompute pass over the retained sample history.

        Idempotent: running it twice with no new samples yields the same
        snapshot. Segments updated while the pass is running keep their newer
        record.

        Returns:
            Number of segments whose record was rebuilt
        """
        with self._lock:
            plan: List[Tuple[str, int, int, ContentType, List[SegmentSample]]] = [
                (seg, h.revision, h.total, h.content_type, list(h.samples))
                for seg, h in self._history.items()
            ]

        rebuilt: Dict[str, Tuple[int, _Fold, CohortBaseline]] = {}
        for segment_id, revision, total, content_type, samples in plan:
            fold = _Fold()
            for sample in samples:
                fold.add(sample, self.alpha)
            rebuilt[segment_id] = (revision, fold, _to_record(segment_id, fold, total, content_type))

        committed: Dict[str, CohortBaseline] = {}
        with self._lock:
            for segment_id, (revision, fold, record) in rebuilt.items():
                history = self._history.get(segment_id)
                if history is None or history.revision != revision:
                    continue
                current = self._snapshot.get(segment_id)
                if current is not None and _same_stats(current, record):
                    continue
                history.fold = fold
                committed[segment_id] = record
            if committed:
                self._publish(committed)
            self._recomputes += 1

        logger.info(
            f"Baseline recompute #{self._recomputes}: {len(plan)} segments scanned, "
            f"{len(committed)} records replaced"
        )
        return len(committed)


def _to_record(segment_id: str, fold: _Fold, total: int, content_type: ContentType) -> CohortBaseline:
    return CohortBaseline(
        segment_id=segment_id,
        avg_dwell_time=fold.avg_dwell,
        std_dev_dwell_time=math.sqrt(fold.var_dwell),
        avg_rewind_count=fold.avg_rewind,
        sample_size=total,
        last_updated=utcnow(),
        content_type=content_type,
    )


def _same_stats(a: CohortBaseline, b: CohortBaseline, tol: float = 1e-9) -> bool:
    return (
        a.sample_size == b.sample_size
        and a.content_type == b.content_type
        and abs(a.avg_dwell_time - b.avg_dwell_time) <= tol
        and abs(a.std_dev_dwell_time - b.std_dev_dwell_time) <= tol
        and abs(a.avg_rewind_count - b.avg_rewind_count) <= tol
    )
