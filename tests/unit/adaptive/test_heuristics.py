"""
Unit tests for the Heuristic Evaluator

Each heuristic is checked as a pure function of (observation, baseline,
weight), then the evaluator is run against a real window.
"""

import pytest

from confusion_engine.adaptive.confusion import (
    DEFAULT_WEIGHTS,
    CohortBaselineStore,
    ContentType,
    HeuristicEvaluator,
    HeuristicName,
    WindowManager,
    WindowObservation,
)
from confusion_engine.adaptive.confusion.heuristics import (
    excessive_dwell,
    extended_pause,
    rapid_scroll_back,
    repeated_rewind,
)


def observation(**overrides) -> WindowObservation:
    values = dict(
        learner_id="learner-1",
        segment_id="seg-1",
        content_type=ContentType.TEXT,
        now=0,
        rewind_count=0,
        scroll_reversal=False,
        dwell_span_ms=0,
        longest_pause_ms=0,
    )
    values.update(overrides)
    return WindowObservation(**values)


@pytest.fixture
def text_default():
    return CohortBaselineStore.default_for("seg-1", ContentType.TEXT)


class TestRepeatedRewind:

    def test_two_rewinds_trigger(self, text_default):
        result = repeated_rewind(observation(rewind_count=2), text_default, 0.4)

        assert result.triggered is True
        assert result.contribution == pytest.approx(0.4)

    def test_contribution_scales_with_count(self, text_default):
        result = repeated_rewind(observation(rewind_count=3), text_default, 0.4)

        assert result.contribution == pytest.approx(0.6)

    def test_single_rewind_contributes_nothing(self, text_default):
        result = repeated_rewind(observation(rewind_count=1), text_default, 0.4)

        assert result.triggered is False
        assert result.contribution == 0.0
        assert result.weight == 0.4


class TestExcessiveDwell:

    def test_dwell_above_one_and_half_baseline(self, text_default):
        result = excessive_dwell(observation(dwell_span_ms=46_000), text_default, 0.3)

        assert result.triggered is True
        assert result.contribution == 0.3

    def test_threshold_is_strict(self, text_default):
        result = excessive_dwell(observation(dwell_span_ms=45_000), text_default, 0.3)

        assert result.triggered is False
        assert result.contribution == 0.0

    def test_video_default_is_shorter(self):
        baseline = CohortBaselineStore.default_for("seg-v", ContentType.VIDEO)
        result = excessive_dwell(observation(dwell_span_ms=16_000), baseline, 0.3)

        assert result.triggered is True


class TestRapidScrollBack:

    def test_reversal_triggers(self, text_default):
        result = rapid_scroll_back(observation(scroll_reversal=True), text_default, 0.2)

        assert result.triggered is True
        assert result.contribution == 0.2

    def test_no_reversal(self, text_default):
        assert rapid_scroll_back(observation(), text_default, 0.2).contribution == 0.0


class TestExtendedPause:

    def test_long_pause_scales(self, text_default):
        result = extended_pause(observation(longest_pause_ms=7_500), text_default, 0.1)

        assert result.triggered is True
        assert result.contribution == pytest.approx(0.15)

    def test_five_second_pause_does_not_trigger(self, text_default):
        result = extended_pause(observation(longest_pause_ms=5_000), text_default, 0.1)

        assert result.triggered is False
        assert result.contribution == 0.0


class TestHeuristicEvaluator:
    """Tests for the evaluator against live windows"""

    @pytest.fixture
    def evaluator(self):
        return HeuristicEvaluator(WindowManager(), CohortBaselineStore())

    def test_runs_every_heuristic(self, evaluator, make_event, t0):
        for offset in (0, 5_000, 10_000):
            evaluator.windows.record(make_event("rewind", t0 + offset))

        obs, baseline, results = evaluator.run("seg-1", "learner-1", lambda ct: DEFAULT_WEIGHTS)

        assert [r.heuristic_name for r in results] == list(HeuristicName)
        assert baseline.is_default is True
        assert obs.rewind_count == 3
        by_name = {r.heuristic_name: r for r in results}
        assert by_name[HeuristicName.REPEATED_REWIND].contribution == pytest.approx(0.6)
        assert all(
            r.contribution == 0.0 for r in results if r.heuristic_name != HeuristicName.REPEATED_REWIND
        )

    def test_weights_requested_for_window_content_type(self, evaluator, make_event, t0):
        evaluator.windows.record(make_event("select", t0, content_type="video"))
        requested = []

        def weights_for(content_type):
            requested.append(content_type)
            return DEFAULT_WEIGHTS

        evaluator.run("seg-1", "learner-1", weights_for)

        assert requested == [ContentType.VIDEO]

    def test_missing_window(self, evaluator):
        with pytest.raises(KeyError):
            evaluator.run("seg-1", "nobody", lambda ct: DEFAULT_WEIGHTS)
