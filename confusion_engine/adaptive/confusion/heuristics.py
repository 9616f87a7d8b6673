"""
Heuristic Evaluator

Four fixed heuristics, each a pure function of
(window observation, baseline, current weight) -> HeuristicResult:

| Heuristic          | Trigger                                   | Contribution           |
|--------------------|-------------------------------------------|------------------------|
| repeated_rewind    | rewinds in last 30s >= 2                  | weight * (count / 2)   |
| excessive_dwell    | dwell > 1.5 * baseline avg dwell          | weight                 |
| rapid_scroll_back  | fast forward scroll, then back, in 10s    | weight                 |
| extended_pause     | single pause > 5s                         | weight * (pause / 5s)  |

No heuristic reads another's result.
"""
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .baseline_store import CohortBaselineStore
from .models import Baseline, ContentType, HeuristicName, HeuristicResult
from .window_manager import WindowManager


REWIND_TRIGGER_COUNT = 2
DWELL_MULTIPLIER = 1.5
PAUSE_THRESHOLD_MS = 5_000


@dataclass(frozen=True)
class WindowObservation:
    """Everything the heuristics need from one window, read once per evaluation"""
    learner_id: str
    segment_id: str
    content_type: ContentType
    now: int
    rewind_count: int
    scroll_reversal: bool
    dwell_span_ms: int
    longest_pause_ms: int


def observe(windows: WindowManager, segment_id: str, learner_id: str) -> WindowObservation:
    """Read the window queries the heuristics depend on"""
    window = windows.get(segment_id, learner_id)
    if window is None:
        raise KeyError(f"no window for learner={learner_id} segment={segment_id}")
    return WindowObservation(
        learner_id=learner_id,
        segment_id=segment_id,
        content_type=window.content_type,
        now=window.now,
        rewind_count=windows.rewind_count(segment_id, learner_id),
        scroll_reversal=windows.has_scroll_reversal(segment_id, learner_id),
        dwell_span_ms=windows.dwell_span(segment_id, learner_id),
        longest_pause_ms=windows.longest_pause(segment_id, learner_id),
    )


def _result(name: HeuristicName, weight: float, triggered: bool, contribution: float) -> HeuristicResult:
    return HeuristicResult(
        heuristic_name=name,
        weight=weight,
        contribution=contribution if triggered else 0.0,
        triggered=triggered,
    )


def repeated_rewind(obs: WindowObservation, baseline: Baseline, weight: float) -> HeuristicResult:
    triggered = obs.rewind_count >= REWIND_TRIGGER_COUNT
    return _result(
        HeuristicName.REPEATED_REWIND,
        weight,
        triggered,
        weight * (obs.rewind_count / REWIND_TRIGGER_COUNT),
    )


def excessive_dwell(obs: WindowObservation, baseline: Baseline, weight: float) -> HeuristicResult:
    dwell_seconds = obs.dwell_span_ms / 1000.0
    triggered = dwell_seconds > DWELL_MULTIPLIER * baseline.avg_dwell_time
    return _result(HeuristicName.EXCESSIVE_DWELL, weight, triggered, weight)


def rapid_scroll_back(obs: WindowObservation, baseline: Baseline, weight: float) -> HeuristicResult:
    return _result(HeuristicName.RAPID_SCROLL_BACK, weight, obs.scroll_reversal, weight)


def extended_pause(obs: WindowObservation, baseline: Baseline, weight: float) -> HeuristicResult:
    triggered = obs.longest_pause_ms > PAUSE_THRESHOLD_MS
    return _result(
        HeuristicName.EXTENDED_PAUSE,
        weight,
        triggered,
        weight * (obs.longest_pause_ms / PAUSE_THRESHOLD_MS),
    )


HeuristicFn = Callable[[WindowObservation, Baseline, float], HeuristicResult]

HEURISTICS: Dict[HeuristicName, HeuristicFn] = {
    HeuristicName.REPEATED_REWIND: repeated_rewind,
    HeuristicName.EXCESSIVE_DWELL: excessive_dwell,
    HeuristicName.RAPID_SCROLL_BACK: rapid_scroll_back,
    HeuristicName.EXTENDED_PAUSE: extended_pause,
}


class HeuristicEvaluator:
    """
    Runs every heuristic against one (learner, segment) window.

    Args:
        windows: Window Manager the observations are read from
        baselines: Cohort Baseline Store the segment baseline is read from
        heuristics: Override the heuristic set (tests, experiments)
    """

    def __init__(
        self,
        windows: WindowManager,
        baselines: CohortBaselineStore,
        heuristics: Optional[Mapping[HeuristicName, HeuristicFn]] = None,
    ):
        self.windows = windows
        self.baselines = baselines
        self.heuristics = dict(heuristics or HEURISTICS)

    def run(
        self,
        segment_id: str,
        learner_id: str,
        weights_for: Callable[[ContentType], Mapping[HeuristicName, float]],
    ) -> Tuple[WindowObservation, Baseline, List[HeuristicResult]]:
        """Observe the window, look up the baseline and evaluate every heuristic"""
        observation = observe(self.windows, segment_id, learner_id)
        baseline = self.baselines.get(segment_id, observation.content_type)
        results = self.evaluate(observation, baseline, weights_for(observation.content_type))
        return observation, baseline, results

    def evaluate(
        self,
        observation: WindowObservation,
        baseline: Baseline,
        weights: Mapping[HeuristicName, float],
    ) -> List[HeuristicResult]:
        """
        Evaluate all heuristics.

        Args:
            observation: Window queries for the (learner, segment) pair
            baseline: Cohort baseline (computed or default) for the segment
            weights: Current weight per heuristic for the observation's content type

        Returns:
            One HeuristicResult per heuristic, in registration order
        """
        return [
            fn(observation, baseline, weights[name])
            for name, fn in self.heuristics.items()
        ]
