"""
Confusion Detection & Adaptive Threshold Engine

Components:
1. Window Manager: per (learner, segment) sliding windows of behavioral events
2. Cohort Baseline Store: EMA dwell/rewind statistics per segment
3. Heuristic Evaluator: repeated rewind, excessive dwell, rapid scroll-back, extended pause
4. Score Aggregator: weighted sum, severity classification, latency budget
5. Adaptive Weight Controller: feedback-driven weight steps and pattern-reversal resets
6. Decision Publisher: ConfusionPoints for medium/high severity
"""

from .models import (
    BehavioralEvent,
    EventPayload,
    EventType,
    ContentType,
    ScrollDirection,
    Severity,
    HeuristicName,
    FeedbackOutcome,
    FeedbackSignal,
    ExplanationAttribution,
    SegmentSample,
    CohortBaseline,
    ComputedBaseline,
    DefaultBaseline,
    HeuristicWeight,
    HeuristicResult,
    ConfusionScore,
    ConfusionPoint,
    DEFAULT_WEIGHTS,
    ConfusionEngineError,
    InvalidEventError,
    InvalidFeedbackError,
    UnknownExplanationError,
)

from .window_manager import WindowManager, SegmentWindow
from .baseline_store import CohortBaselineStore, CONTENT_TYPE_DEFAULTS
from .heuristics import HeuristicEvaluator, WindowObservation, HEURISTICS
from .score_aggregator import ScoreAggregator, classify
from .weight_controller import AdaptiveWeightController, WeightTable, WeightAdjustment
from .decision_publisher import ConfusionDecisionPublisher
from .attribution import AttributionLookup, ExplanationRegistry
from .sinks import (
    SinkFanout,
    AnalyticsSink,
    WebhookSink,
    get_analytics_sink,
)
from .engine import (
    ConfusionEngine,
    get_confusion_engine,
    set_confusion_engine,
)

__all__ = [
    # Records
    "BehavioralEvent",
    "EventPayload",
    "EventType",
    "ContentType",
    "ScrollDirection",
    "Severity",
    "HeuristicName",
    "FeedbackOutcome",
    "FeedbackSignal",
    "ExplanationAttribution",
    "SegmentSample",
    "CohortBaseline",
    "ComputedBaseline",
    "DefaultBaseline",
    "HeuristicWeight",
    "HeuristicResult",
    "ConfusionScore",
    "ConfusionPoint",
    "DEFAULT_WEIGHTS",
    # Errors
    "ConfusionEngineError",
    "InvalidEventError",
    "InvalidFeedbackError",
    "UnknownExplanationError",
    # Components
    "WindowManager",
    "SegmentWindow",
    "CohortBaselineStore",
    "CONTENT_TYPE_DEFAULTS",
    "HeuristicEvaluator",
    "WindowObservation",
    "HEURISTICS",
    "ScoreAggregator",
    "classify",
    "AdaptiveWeightController",
    "WeightTable",
    "WeightAdjustment",
    "ConfusionDecisionPublisher",
    "AttributionLookup",
    "ExplanationRegistry",
    # Sinks
    "SinkFanout",
    "AnalyticsSink",
    "WebhookSink",
    "get_analytics_sink",
    # Engine
    "ConfusionEngine",
    "get_confusion_engine",
    "set_confusion_engine",
]
