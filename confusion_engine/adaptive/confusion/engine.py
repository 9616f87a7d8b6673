"""
Confusion Engine - ingestion, scheduling and background maintenance

Wires the components together:

    submit_event -> lane (keyed by learner+segment) -> WindowManager.record
        -> ScoreAggregator.score -> ConfusionDecisionPublisher.publish

    submit_feedback -> feedback worker -> AdaptiveWeightController.apply_feedback

Concurrency model:
- Every (learner, segment) key hashes to one lane and each lane has one
  worker, so a window only ever has one writer and no global lock is taken.
- Buffers are bounded per key and per lane. Under overload the oldest
  buffered event is dropped (logged and counted); producers never block.
- Baseline recompute, pattern-reversal scans and idle-window sweeps run as
  periodic tasks and publish snapshots the scoring path reads next time.

Nothing in here terminates the process: malformed records are dropped,
failures are logged and counted.
"""
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple
import asyncio
import logging
import time
import zlib

from confusion_engine.core.config import settings
from confusion_engine.core.metrics import increment_counter, set_gauge
from .attribution import AttributionLookup, ExplanationRegistry
from .baseline_store import CohortBaselineStore
from .decision_publisher import ConfusionDecisionPublisher
from .heuristics import HeuristicEvaluator
from .models import (
    BehavioralEvent,
    CohortBaseline,
    ConfusionEngineError,
    ConfusionScore,
    ExplanationAttribution,
    FeedbackSignal,
    HeuristicWeight,
    InvalidEventError,
    InvalidFeedbackError,
    UnknownExplanationError,
)
from .score_aggregator import ScoreAggregator
from .weight_controller import AdaptiveWeightController
from .window_manager import WindowKey, WindowManager

logger = logging.getLogger(__name__)


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _Lane:
    index: int
    pending: "OrderedDict[WindowKey, Deque[Tuple[BehavioralEvent, float]]]" = field(default_factory=OrderedDict)
    size: int = 0
    processed: int = 0
    dropped: int = 0
    wakeup: Optional[asyncio.Event] = None
    task: Optional[asyncio.Task] = None


class ConfusionEngine:
    """
    Confusion Detection & Adaptive Threshold Engine.

    Components can be injected for testing; anything omitted is built with
    defaults.
    """

    def __init__(
        self,
        windows: Optional[WindowManager] = None,
        baselines: Optional[CohortBaselineStore] = None,
        weights: Optional[AdaptiveWeightController] = None,
        publisher: Optional[ConfusionDecisionPublisher] = None,
        attribution_lookup: Optional[AttributionLookup] = None,
        snapshot_cache=None,
        lanes: int = 4,
        max_queue_size: int = 10_000,
        max_pending_per_key: int = 256,
        feedback_queue_size: int = 5_000,
        latency_budget_ms: float = 500,
        idle_timeout_ms: int = 300_000,
        sweep_interval_seconds: float = 30.0,
        recompute_interval_seconds: float = 24 * 60 * 60,
        reversal_scan_interval_seconds: float = 60.0,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        if lanes < 1:
            raise ValueError("at least one worker lane is required")

        self.windows = windows or WindowManager()
        self.baselines = baselines or CohortBaselineStore()
        self.weights = weights or AdaptiveWeightController()
        self.evaluator = HeuristicEvaluator(self.windows, self.baselines)
        self.aggregator = ScoreAggregator(self.evaluator, self.weights, latency_budget_ms)
        self.publisher = publisher or ConfusionDecisionPublisher()
        self.attribution_lookup = attribution_lookup or ExplanationRegistry()
        self.snapshot_cache = snapshot_cache

        self.max_queue_size = max_queue_size
        self.max_pending_per_key = max_pending_per_key
        self.idle_timeout_ms = idle_timeout_ms
        self.sweep_interval_seconds = sweep_interval_seconds
        self.recompute_interval_seconds = recompute_interval_seconds
        self.reversal_scan_interval_seconds = reversal_scan_interval_seconds
        self.clock = clock

        self._lanes = [_Lane(index=i) for i in range(lanes)]
        self._feedback: Deque[Tuple[FeedbackSignal, ExplanationAttribution]] = deque()
        self._feedback_queue_size = feedback_queue_size
        self._feedback_wakeup: Optional[asyncio.Event] = None
        self._background: List[asyncio.Task] = []
        self._pending = 0
        self._idle: Optional[asyncio.Event] = None
        self._running = False

        self._stats = {
            "events_accepted": 0,
            "events_rejected": 0,
            "events_dropped": 0,
            "events_stale": 0,
            "feedback_accepted": 0,
            "feedback_rejected": 0,
            "feedback_dropped": 0,
            "evaluation_errors": 0,
            "segments_completed": 0,
        }

        if self.snapshot_cache is not None:
            self.weights.add_listener(self.snapshot_cache.schedule_weights)

    @classmethod
    def from_settings(cls, settings, snapshot_cache=None, **overrides) -> "ConfusionEngine":
        """Build an engine from the application settings"""
        params = dict(
            windows=WindowManager(
                rewind_window_ms=settings.REWIND_WINDOW_MS,
                scroll_window_ms=settings.SCROLL_WINDOW_MS,
                high_velocity_threshold=settings.HIGH_VELOCITY_THRESHOLD,
            ),
            baselines=CohortBaselineStore(
                alpha=settings.BASELINE_ALPHA,
                min_samples=settings.BASELINE_MIN_SAMPLES,
            ),
            weights=AdaptiveWeightController(
                feedback_window_size=settings.FEEDBACK_WINDOW_SIZE,
                feedback_window_days=settings.FEEDBACK_WINDOW_DAYS,
            ),
            snapshot_cache=snapshot_cache,
            lanes=settings.WORKER_LANES,
            max_queue_size=settings.MAX_QUEUE_SIZE,
            max_pending_per_key=settings.MAX_PENDING_PER_KEY,
            feedback_queue_size=settings.FEEDBACK_QUEUE_SIZE,
            latency_budget_ms=settings.LATENCY_BUDGET_MS,
            idle_timeout_ms=settings.WINDOW_IDLE_TIMEOUT_MS,
            sweep_interval_seconds=settings.WINDOW_SWEEP_INTERVAL_SECONDS,
            recompute_interval_seconds=settings.BASELINE_RECOMPUTE_INTERVAL_SECONDS,
            reversal_scan_interval_seconds=settings.REVERSAL_SCAN_INTERVAL_SECONDS,
        )
        params.update(overrides)
        return cls(**params)

    # ==================== Synchronous core ====================

    def process_event(self, raw: Any, received_at: Optional[float] = None) -> Optional[ConfusionScore]:
        """
        Record one event and evaluate its window.

        Returns:
            The emitted ConfusionScore, or None if the event was invalid or stale
        """
        received_at = time.perf_counter() if received_at is None else received_at
        try:
            event = BehavioralEvent.parse(raw)
        except InvalidEventError as e:
            self._reject_event(raw, e)
            return None

        if not self.windows.record(event):
            self._stats["events_stale"] += 1
            increment_counter("confusion_stale_events_total")
            return None

        score, _ = self.aggregator.score(
            event.segment_id,
            event.learner_id,
            event.content_id,
            received_at=received_at,
        )
        self.publisher.publish(score)
        return score

    def process_feedback(self, raw: Any) -> List[HeuristicWeight]:
        """Validate, attribute and apply one feedback signal"""
        try:
            signal, attribution = self._attribute(raw)
        except InvalidFeedbackError as e:
            self._reject_feedback(raw, e)
            return []
        self._stats["feedback_accepted"] += 1
        return self.weights.apply_feedback(signal, attribution)

    def _attribute(self, raw: Any) -> Tuple[FeedbackSignal, ExplanationAttribution]:
        signal = FeedbackSignal.parse(raw)
        attribution = self.attribution_lookup(signal.explanation_id)
        if attribution is None:
            raise UnknownExplanationError(f"unknown explanation {signal.explanation_id}")
        return signal, attribution

    def complete_segment(self, segment_id: str, learner_id: str) -> Optional[CohortBaseline]:
        """Close a learner's window and fold its terminal metrics into the cohort baseline"""
        closed = self.windows.close(segment_id, learner_id)
        if closed is None:
            return None
        window, sample = closed
        self._stats["segments_completed"] += 1
        if sample.dwell_time <= 0:
            # A single event carries no dwell information
            return None
        return self.baselines.update(segment_id, sample, window.content_type)

    def sweep_idle(self, now_ms: Optional[int] = None) -> int:
        """Close idle windows and fold them into baselines"""
        now_ms = self.clock() if now_ms is None else now_ms
        folded = 0
        for window, sample in self.windows.expire_idle(now_ms, self.idle_timeout_ms):
            self._stats["segments_completed"] += 1
            if sample.dwell_time > 0:
                self.baselines.update(window.segment_id, sample, window.content_type)
                folded += 1
        set_gauge("confusion_active_windows", self.windows.window_count())
        return folded

    def recompute_baselines(self) -> int:
        """Idempotent full baseline recompute (the external scheduler's entry point)"""
        replaced = self.baselines.recompute()
        if self.snapshot_cache is not None:
            self.snapshot_cache.schedule_baselines(self.baselines.snapshot())
        return replaced

    async def recompute_baselines_async(self) -> int:
        """Recompute in a worker thread so live scoring keeps running"""
        replaced = await asyncio.to_thread(self.baselines.recompute)
        if self.snapshot_cache is not None:
            self.snapshot_cache.schedule_baselines(self.baselines.snapshot())
        return replaced

    def scan_pattern_reversals(self, now_ms: Optional[int] = None):
        now_ms = self.clock() if now_ms is None else now_ms
        return self.weights.scan_pattern_reversals(now_ms)

    def purge_learner(self, learner_id: str) -> int:
        return self.windows.purge_learner(learner_id)

    def _reject_event(self, raw: Any, error: ConfusionEngineError):
        self._stats["events_rejected"] += 1
        increment_counter("confusion_invalid_events_total")
        logger.warning(f"Dropped malformed event: {error} (learner={_field(raw, 'learner_id')})")

    def _reject_feedback(self, raw: Any, error: ConfusionEngineError):
        self._stats["feedback_rejected"] += 1
        increment_counter("confusion_invalid_feedback_total")
        logger.warning(f"Dropped feedback: {error} (explanation={_field(raw, 'explanation_id')})")

    # ==================== Ingestion lanes ====================

    def _route(self, key: WindowKey) -> _Lane:
        digest = zlib.crc32(f"{key[0]}\x1f{key[1]}".encode("utf-8"))
        return self._lanes[digest % len(self._lanes)]

    def submit_event(self, raw: Any) -> bool:
        """
        Enqueue an event without blocking.

        Returns:
            False if the event was malformed and dropped
        """
        try:
            event = BehavioralEvent.parse(raw)
        except InvalidEventError as e:
            self._reject_event(raw, e)
            return False

        received_at = time.perf_counter()
        key = event.key
        lane = self._route(key)

        backlog = lane.pending.get(key)
        if backlog is not None and len(backlog) >= self.max_pending_per_key:
            self._drop_oldest(lane, key, "key backlog full")
        elif lane.size >= self.max_queue_size:
            victim = key if backlog else max(lane.pending, key=lambda k: len(lane.pending[k]))
            self._drop_oldest(lane, victim, "lane queue full")

        backlog = lane.pending.get(key)
        if backlog is None:
            backlog = lane.pending[key] = deque()
        backlog.append((event, received_at))
        lane.size += 1
        self._pending += 1
        self._stats["events_accepted"] += 1

        if self._idle is not None:
            self._idle.clear()
        if lane.wakeup is not None:
            lane.wakeup.set()
        return True

    def _drop_oldest(self, lane: _Lane, key: WindowKey, reason: str):
        backlog = lane.pending[key]
        dropped, _ = backlog.popleft()
        if not backlog:
            del lane.pending[key]
        lane.size -= 1
        lane.dropped += 1
        self._stats["events_dropped"] += 1
        increment_counter("confusion_dropped_events_total", {"lane": str(lane.index)})
        logger.warning(
            f"Backpressure ({reason}): dropped event learner={dropped.learner_id} "
            f"segment={dropped.segment_id} ts={dropped.timestamp} lane={lane.index}"
        )
        self._task_done()

    def _task_done(self):
        self._pending -= 1
        if self._pending <= 0 and self._idle is not None:
            self._idle.set()

    async def _run_lane(self, lane: _Lane):
        while self._running:
            if not lane.pending:
                lane.wakeup.clear()
                await lane.wakeup.wait()
                continue

            key, backlog = lane.pending.popitem(last=False)
            event, received_at = backlog.popleft()
            lane.size -= 1
            if backlog:
                # Round-robin: a busy key goes to the back of the lane
                lane.pending[key] = backlog

            try:
                self.process_event(event, received_at=received_at)
                lane.processed += 1
            except Exception:
                self._stats["evaluation_errors"] += 1
                increment_counter("confusion_evaluation_errors_total")
                logger.exception(f"Evaluation failed for learner={key[0]} segment={key[1]}")
            finally:
                self._task_done()

            await asyncio.sleep(0)

    # ==================== Feedback ====================

    def submit_feedback(self, raw: Any) -> bool:
        """Validate and enqueue a feedback signal; weights update off the hot path"""
        try:
            signal, attribution = self._attribute(raw)
        except InvalidFeedbackError as e:
            self._reject_feedback(raw, e)
            return False

        if len(self._feedback) >= self._feedback_queue_size:
            dropped, _ = self._feedback.popleft()
            self._stats["feedback_dropped"] += 1
            increment_counter("confusion_dropped_feedback_total")
            logger.warning(f"Feedback queue full; dropped feedback for {dropped.explanation_id}")
            self._task_done()

        self._feedback.append((signal, attribution))
        self._pending += 1
        self._stats["feedback_accepted"] += 1
        if self._idle is not None:
            self._idle.clear()
        if self._feedback_wakeup is not None:
            self._feedback_wakeup.set()
        return True

    async def _run_feedback(self):
        while self._running:
            if not self._feedback:
                self._feedback_wakeup.clear()
                await self._feedback_wakeup.wait()
                continue

            signal, attribution = self._feedback.popleft()
            try:
                self.weights.apply_feedback(signal, attribution)
            except Exception:
                increment_counter("confusion_feedback_errors_total")
                logger.exception(f"Applying feedback {signal.explanation_id} failed")
            finally:
                self._task_done()
            await asyncio.sleep(0)

    # ==================== Lifecycle ====================

    async def start(self):
        """Start lane workers, the feedback worker and periodic maintenance"""
        if self._running:
            return
        self._running = True
        self._idle = asyncio.Event()
        if self._pending <= 0:
            self._idle.set()

        if self.snapshot_cache is not None:
            self.weights.restore(await self.snapshot_cache.load_weights())

        for lane in self._lanes:
            lane.wakeup = asyncio.Event()
            if lane.pending:
                lane.wakeup.set()
            lane.task = asyncio.create_task(self._run_lane(lane))

        self._feedback_wakeup = asyncio.Event()
        if self._feedback:
            self._feedback_wakeup.set()

        self._background = [
            asyncio.create_task(self._run_feedback()),
            asyncio.create_task(self._periodic("window_sweep", self.sweep_interval_seconds, self._sweep_task)),
            asyncio.create_task(self._periodic("reversal_scan", self.reversal_scan_interval_seconds, self._scan_task)),
            asyncio.create_task(self._periodic("baseline_recompute", self.recompute_interval_seconds, self.recompute_baselines_async)),
        ]
        logger.info(f"Confusion engine started with {len(self._lanes)} lanes")

    async def stop(self):
        """Stop all workers; buffered events that were not processed are discarded"""
        if not self._running:
            return
        self._running = False

        tasks = [lane.task for lane in self._lanes if lane.task] + self._background
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for lane in self._lanes:
            lane.task = None
        self._background = []

        await self.publisher.drain()
        await self.aggregator.score_sinks.drain()
        if self.snapshot_cache is not None:
            await self.snapshot_cache.drain()
        logger.info("Confusion engine stopped")

    async def join(self):
        """Wait until every buffered event and feedback signal has been processed"""
        if self._running and self._idle is not None:
            await self._idle.wait()
        await self.publisher.drain()
        await self.aggregator.score_sinks.drain()

    @property
    def running(self) -> bool:
        return self._running

    async def _periodic(self, name: str, interval: float, fn: Callable[[], Awaitable[Any]]):
        while self._running:
            await asyncio.sleep(interval)
            try:
                await fn()
            except Exception:
                increment_counter("confusion_background_errors_total", {"task": name})
                logger.exception(f"Background task {name} failed")

    async def _sweep_task(self):
        self.sweep_idle()

    async def _scan_task(self):
        self.scan_pattern_reversals()

    # ==================== Introspection ====================

    def stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "running": self._running,
            "pending": self._pending,
            "lanes": [
                {
                    "index": lane.index,
                    "queued": lane.size,
                    "keys": len(lane.pending),
                    "processed": lane.processed,
                    "dropped": lane.dropped,
                }
                for lane in self._lanes
            ],
            "feedback_queued": len(self._feedback),
            "active_windows": self.windows.window_count(),
            "baseline_segments": len(self.baselines),
            "weights_version": self.weights.version,
            "points_published": self.publisher.published,
            "latency_budget_misses": self.aggregator.budget_misses,
        }


def _field(raw: Any, name: str) -> Any:
    if isinstance(raw, dict):
        return raw.get(name)
    return getattr(raw, name, None)


# Global instance, replaced by the application lifespan
_engine: Optional[ConfusionEngine] = None


def get_confusion_engine() -> ConfusionEngine:
    """Dependency injection"""
    global _engine
    if _engine is None:
        _engine = ConfusionEngine.from_settings(settings)
    return _engine


def set_confusion_engine(engine: Optional[ConfusionEngine]):
    global _engine
    _engine = engine
