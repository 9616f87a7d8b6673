"""
Unit tests for the ConfusionEngine

Tests cover:
- Synchronous processing path
- Malformed input containment
- Lane routing, backpressure and join semantics
- Feedback queue and attribution
- Segment completion and idle sweeps feeding baselines
"""

import pytest

from confusion_engine.adaptive.confusion import (
    ConfusionEngine,
    ContentType,
    ExplanationRegistry,
    HeuristicName,
    Severity,
)
from confusion_engine.core.config import Settings
from confusion_engine.core.metrics import get_counter


class TestSynchronousPath:
    """Tests for process_event / process_feedback without workers"""

    def test_three_rewinds_score_high(self, raw_event, t0):
        engine = ConfusionEngine()
        points = []
        engine.publisher.register(points.append)

        scores = [engine.process_event(raw_event("rewind", t0 + offset)) for offset in (0, 5_000, 10_000)]

        assert [s.severity for s in scores] == [Severity.LOW, Severity.MEDIUM, Severity.HIGH]
        assert scores[-1].score == 0.6
        assert len(points) == 2

    def test_malformed_event_dropped(self, raw_event, t0):
        engine = ConfusionEngine()

        assert engine.process_event({"learner_id": "learner-1"}) is None
        assert engine.process_event(raw_event("teleport", t0)) is None
        assert engine.process_event(raw_event("rewind", -5)) is None
        assert engine.process_event("not a mapping") is None

        assert engine.stats()["events_rejected"] == 4
        assert get_counter("confusion_invalid_events_total") == 4
        assert engine.windows.window_count() == 0

    def test_scroll_without_direction_rejected(self, raw_event, t0):
        engine = ConfusionEngine()

        assert engine.process_event(raw_event("scroll", t0, velocity=1200)) is None
        assert engine.stats()["events_rejected"] == 1

    def test_negative_velocity_rejected(self, raw_event, t0):
        engine = ConfusionEngine()

        assert engine.process_event(raw_event("scroll", t0, direction="forward", velocity=-1)) is None

    def test_stale_event_counted(self, raw_event, t0):
        engine = ConfusionEngine()
        engine.process_event(raw_event("select", t0 + 60_000))

        assert engine.process_event(raw_event("rewind", t0)) is None
        assert engine.stats()["events_stale"] == 1
        assert get_counter("confusion_stale_events_total") == 1

    def test_process_feedback_unknown_explanation(self, raw_feedback):
        engine = ConfusionEngine()

        assert engine.process_feedback(raw_feedback("exp-missing", "negative")) == []
        assert engine.stats()["feedback_rejected"] == 1
        assert get_counter("confusion_invalid_feedback_total") == 1

    def test_process_feedback_invalid_outcome(self, raw_feedback):
        engine = ConfusionEngine()
        engine.attribution_lookup.register("exp-1", ["repeated_rewind"], "text")

        assert engine.process_feedback(raw_feedback("exp-1", "delighted")) == []
        assert engine.stats()["feedback_rejected"] == 1

    def test_failing_score_sink_does_not_stop_scoring(self, raw_event, t0):
        engine = ConfusionEngine()

        def broken(score):
            raise RuntimeError("analytics down")

        engine.aggregator.add_sink(broken)
        score = engine.process_event(raw_event("rewind", t0))

        assert score is not None
        assert get_counter("confusion_sink_errors_total", {"stream": "scores"}) == 1

    def test_reordered_short_pause_is_not_extended(self, raw_event, t0):
        """A 1s pause whose resume arrived first does not read as an open pause"""
        engine = ConfusionEngine()
        points = []
        engine.publisher.register(points.append)

        engine.process_event(raw_event("resume", t0 + 1_000))
        engine.process_event(raw_event("pause", t0))
        score = engine.process_event(raw_event("select", t0 + 20_000))

        assert HeuristicName.EXTENDED_PAUSE not in score.triggering_heuristics
        assert score.score == 0.0
        assert score.severity == Severity.LOW
        assert points == []


class TestLanes:
    """Tests for lane routing, backpressure and join"""

    def test_key_always_routes_to_same_lane(self):
        engine = ConfusionEngine(lanes=8)
        key = ("learner-1", "seg-1")

        assert engine._route(key) is engine._route(key)

    def test_requires_a_lane(self):
        with pytest.raises(ValueError):
            ConfusionEngine(lanes=0)

    def test_per_key_backpressure_drops_oldest(self, raw_event, t0):
        engine = ConfusionEngine(lanes=1, max_pending_per_key=2)

        for offset in (0, 1_000, 2_000):
            assert engine.submit_event(raw_event("rewind", t0 + offset)) is True

        stats = engine.stats()
        assert stats["events_dropped"] == 1
        assert stats["lanes"][0]["queued"] == 2
        assert get_counter("confusion_dropped_events_total", {"lane": "0"}) == 1
        backlog = engine._lanes[0].pending[("learner-1", "seg-1")]
        assert [e.timestamp for e, _ in backlog] == [t0 + 1_000, t0 + 2_000]

    def test_lane_backpressure_drops_from_largest_backlog(self, raw_event, t0):
        engine = ConfusionEngine(lanes=1, max_queue_size=3)

        for offset in (0, 1_000, 2_000):
            engine.submit_event(raw_event("select", t0 + offset, learner_id="busy"))
        engine.submit_event(raw_event("select", t0, learner_id="quiet"))

        lane = engine._lanes[0]
        assert lane.size == 3
        assert len(lane.pending[("busy", "seg-1")]) == 2
        assert len(lane.pending[("quiet", "seg-1")]) == 1

    def test_submit_rejects_malformed(self, raw_event, t0):
        engine = ConfusionEngine()

        assert engine.submit_event(raw_event("rewind", t0, learner_id="")) is False
        assert engine.stats()["pending"] == 0

    @pytest.mark.asyncio
    async def test_workers_drain_buffered_events(self, raw_event, t0, analytics):
        engine = ConfusionEngine(lanes=2)
        engine.aggregator.add_sink(analytics.record_score)
        engine.publisher.register(analytics.record_point)

        for learner in ("a", "b", "c"):
            for offset in (0, 5_000, 10_000):
                engine.submit_event(raw_event("rewind", t0 + offset, learner_id=learner))

        await engine.start()
        try:
            await engine.join()
        finally:
            await engine.stop()

        assert len(analytics.scores) == 9
        assert {p.learner_id for p in analytics.points if p.severity == Severity.HIGH} == {"a", "b", "c"}
        assert engine.stats()["pending"] == 0

    @pytest.mark.asyncio
    async def test_per_key_order_preserved(self, engine, analytics, raw_event, t0):
        for offset in range(0, 10_000, 1_000):
            engine.submit_event(raw_event("select", t0 + offset))
        await engine.join()

        timestamps = [s.timestamp for s in analytics.scores]
        assert timestamps == sorted(timestamps)
        assert len(timestamps) == 10

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self):
        engine = ConfusionEngine()
        await engine.start()
        await engine.start()
        assert engine.running is True

        await engine.stop()
        await engine.stop()
        assert engine.running is False


class TestFeedback:

    @pytest.mark.asyncio
    async def test_feedback_adjusts_weight(self, engine, raw_feedback, t0):
        engine.attribution_lookup.register("exp-1", [HeuristicName.REPEATED_REWIND], ContentType.TEXT)

        for i in range(5):
            assert engine.submit_feedback(raw_feedback("exp-1", "negative", t0 + i)) is True
        await engine.join()

        assert engine.weights.table().weight_for(HeuristicName.REPEATED_REWIND, ContentType.TEXT) == 0.35

    def test_unknown_explanation_rejected_on_submit(self, raw_feedback):
        engine = ConfusionEngine()

        assert engine.submit_feedback(raw_feedback("exp-missing", "positive")) is False
        assert engine.stats()["feedback_rejected"] == 1

    def test_feedback_queue_bounded(self, raw_feedback):
        engine = ConfusionEngine(feedback_queue_size=3)
        engine.attribution_lookup.register("exp-1", ["extended_pause"], "video")

        for _ in range(5):
            engine.submit_feedback(raw_feedback("exp-1", "positive"))

        stats = engine.stats()
        assert stats["feedback_queued"] == 3
        assert stats["feedback_dropped"] == 2

    def test_custom_attribution_lookup(self, raw_feedback):
        registry = ExplanationRegistry()
        registry.register("exp-9", ["rapid_scroll_back"], "text")
        engine = ConfusionEngine(attribution_lookup=registry.lookup)

        for _ in range(5):
            engine.process_feedback(raw_feedback("exp-9", "negative"))

        assert engine.weights.table().weight_for(HeuristicName.RAPID_SCROLL_BACK, ContentType.TEXT) == 0.15

    def test_scan_pattern_reversals(self, raw_feedback, t0):
        engine = ConfusionEngine()
        engine.attribution_lookup.register("exp-1", ["repeated_rewind"], "text")
        for i in range(10):
            engine.process_feedback(raw_feedback("exp-1", "positive", t0 + i))
        for i in range(10, 20):
            engine.process_feedback(raw_feedback("exp-1", "negative", t0 + i))

        reset = engine.scan_pattern_reversals(now_ms=t0 + 1_000)

        assert reset == [(HeuristicName.REPEATED_REWIND, ContentType.TEXT)]
        assert engine.weights.table().weight_for(HeuristicName.REPEATED_REWIND, ContentType.TEXT) == 0.4


class TestBaselineMaintenance:

    def test_complete_segment_folds_sample(self, raw_event, t0):
        engine = ConfusionEngine()
        engine.process_event(raw_event("rewind", t0, content_type="video"))
        engine.process_event(raw_event("select", t0 + 12_000, content_type="video"))

        record = engine.complete_segment("seg-1", "learner-1")

        assert record.sample_size == 1
        assert record.avg_dwell_time == 12.0
        assert record.avg_rewind_count == 1.0
        assert record.content_type == ContentType.VIDEO
        assert engine.windows.window_count() == 0

    def test_zero_dwell_segment_not_folded(self, raw_event, t0):
        engine = ConfusionEngine()
        engine.process_event(raw_event("select", t0))

        assert engine.complete_segment("seg-1", "learner-1") is None
        assert engine.baselines.stats("seg-1") is None
        assert engine.stats()["segments_completed"] == 1

    def test_complete_unknown_segment(self):
        assert ConfusionEngine().complete_segment("seg-1", "nobody") is None

    def test_sweep_idle(self, raw_event, t0):
        engine = ConfusionEngine(idle_timeout_ms=60_000)
        engine.process_event(raw_event("select", t0))
        engine.process_event(raw_event("select", t0 + 20_000))

        assert engine.sweep_idle(now_ms=t0 + 30_000) == 0
        assert engine.sweep_idle(now_ms=t0 + 90_000) == 1
        assert engine.baselines.stats("seg-1").avg_dwell_time == 20.0

    @pytest.mark.asyncio
    async def test_recompute_in_thread(self):
        engine = ConfusionEngine()
        assert await engine.recompute_baselines_async() == 0
        assert engine.recompute_baselines() == 0

    def test_purge_learner(self, raw_event, t0):
        engine = ConfusionEngine()
        engine.process_event(raw_event("select", t0))

        assert engine.purge_learner("learner-1") == 1


class TestFromSettings:

    def test_settings_applied(self):
        settings = Settings(WORKER_LANES=3, MAX_PENDING_PER_KEY=8, BASELINE_MIN_SAMPLES=5)
        engine = ConfusionEngine.from_settings(settings)

        assert len(engine.stats()["lanes"]) == 3
        assert engine.max_pending_per_key == 8
        assert engine.baselines.min_samples == 5

    def test_overrides(self):
        engine = ConfusionEngine.from_settings(Settings(), lanes=1)

        assert len(engine.stats()["lanes"]) == 1
