"""
Confusion Engine Data Model

Inbound records (BehavioralEvent, FeedbackSignal) and outbound records
(ConfusionScore, ConfusionPoint) are frozen pydantic models so they validate
on the way in and serialize on the way out. Internal state that is published
as snapshots (CohortBaseline, HeuristicWeight, HeuristicResult) uses frozen
dataclasses: a record is replaced, never edited.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


# ============================================================================
# ERRORS
# ============================================================================

class ConfusionEngineError(Exception):
    """Base class for anomalies the engine detects and contains"""


class InvalidEventError(ConfusionEngineError):
    """Behavioral event missing required fields or carrying out-of-range values"""


class InvalidFeedbackError(ConfusionEngineError):
    """Feedback signal missing required fields or carrying out-of-range values"""


class UnknownExplanationError(InvalidFeedbackError):
    """Feedback refers to an explanation the attribution lookup does not know"""


# ============================================================================
# ENUMS
# ============================================================================

class EventType(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    REWIND = "rewind"
    SCROLL = "scroll"
    REVISIT = "revisit"
    SELECT = "select"


class ContentType(str, Enum):
    TEXT = "text"
    VIDEO = "video"


class ScrollDirection(str, Enum):
    FORWARD = "forward"
    BACKWARD = "backward"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class HeuristicName(str, Enum):
    REPEATED_REWIND = "repeated_rewind"
    EXCESSIVE_DWELL = "excessive_dwell"
    RAPID_SCROLL_BACK = "rapid_scroll_back"
    EXTENDED_PAUSE = "extended_pause"


class FeedbackOutcome(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


DEFAULT_WEIGHTS: Dict[HeuristicName, float] = {
    HeuristicName.REPEATED_REWIND: 0.4,
    HeuristicName.EXCESSIVE_DWELL: 0.3,
    HeuristicName.RAPID_SCROLL_BACK: 0.2,
    HeuristicName.EXTENDED_PAUSE: 0.1,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp_unit(value: float) -> float:
    """Clamp into [0.0, 1.0]"""
    return max(0.0, min(1.0, value))


# ============================================================================
# INBOUND RECORDS
# ============================================================================

class EventPayload(BaseModel):
    """Type-specific event payload"""
    model_config = ConfigDict(frozen=True, extra="ignore")

    position: Optional[float] = None
    velocity: Optional[float] = Field(default=None, ge=0)  # px/s
    direction: Optional[ScrollDirection] = None
    duration: Optional[int] = Field(default=None, ge=0)  # ms


class BehavioralEvent(BaseModel):
    """A single learner interaction captured by the client SDK"""
    model_config = ConfigDict(frozen=True, extra="ignore")

    learner_id: str = Field(..., min_length=1)
    content_id: str = Field(..., min_length=1)
    segment_id: str = Field(..., min_length=1)
    type: EventType
    timestamp: int = Field(..., ge=0)  # ms since epoch
    content_type: ContentType = ContentType.TEXT
    payload: EventPayload = Field(default_factory=EventPayload)

    @model_validator(mode="after")
    def _check_payload(self) -> "BehavioralEvent":
        if self.type == EventType.SCROLL and self.payload.direction is None:
            raise ValueError("scroll events require a payload direction")
        return self

    @property
    def key(self) -> Tuple[str, str]:
        return (self.learner_id, self.segment_id)

    @classmethod
    def parse(cls, raw: Union["BehavioralEvent", Dict[str, Any]]) -> "BehavioralEvent":
        """Validate a raw record, raising InvalidEventError on any defect"""
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, dict):
            raise InvalidEventError(f"expected a mapping, got {type(raw).__name__}")
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise InvalidEventError(_summarize(e)) from e


class FeedbackSignal(BaseModel):
    """Learner judgment on an explanation's usefulness"""
    model_config = ConfigDict(frozen=True, extra="ignore")

    explanation_id: str = Field(..., min_length=1)
    learner_id: str = Field(..., min_length=1)
    outcome: FeedbackOutcome
    timestamp: int = Field(..., ge=0)

    @classmethod
    def parse(cls, raw: Union["FeedbackSignal", Dict[str, Any]]) -> "FeedbackSignal":
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, dict):
            raise InvalidFeedbackError(f"expected a mapping, got {type(raw).__name__}")
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise InvalidFeedbackError(_summarize(e)) from e


def _summarize(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'record'}: {err['msg']}"
        for err in error.errors()
    )


@dataclass(frozen=True)
class ExplanationAttribution:
    """Which heuristics (and content type) produced the explanation a feedback refers to"""
    explanation_id: str
    heuristics: Tuple[HeuristicName, ...]
    content_type: ContentType


@dataclass(frozen=True)
class SegmentSample:
    """One learner's terminal metrics for a segment"""
    dwell_time: float  # seconds
    rewind_count: float


# ============================================================================
# BASELINES
# ============================================================================

@dataclass(frozen=True)
class CohortBaseline:
    segment_id: str
    avg_dwell_time: float  # seconds
    std_dev_dwell_time: float
    avg_rewind_count: float
    sample_size: int
    last_updated: datetime
    content_type: ContentType = ContentType.TEXT


@dataclass(frozen=True)
class ComputedBaseline:
    """Baseline backed by enough cohort samples"""
    stats: CohortBaseline
    is_default: bool = field(default=False, init=False)

    @property
    def segment_id(self) -> str:
        return self.stats.segment_id

    @property
    def avg_dwell_time(self) -> float:
        return self.stats.avg_dwell_time

    @property
    def avg_rewind_count(self) -> float:
        return self.stats.avg_rewind_count

    @property
    def sample_size(self) -> int:
        return self.stats.sample_size


@dataclass(frozen=True)
class DefaultBaseline:
    """Content-type default used while a segment is cold"""
    segment_id: str
    content_type: ContentType
    avg_dwell_time: float
    avg_rewind_count: float
    sample_size: int = 0
    is_default: bool = field(default=True, init=False)


Baseline = Union[ComputedBaseline, DefaultBaseline]


# ============================================================================
# WEIGHTS & RESULTS
# ============================================================================

@dataclass(frozen=True)
class HeuristicWeight:
    heuristic_name: HeuristicName
    content_type: ContentType
    weight: float
    positive_feedback_count: int = 0
    negative_feedback_count: int = 0
    last_updated: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> Tuple[HeuristicName, ContentType]:
        return (self.heuristic_name, self.content_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "heuristic_name": self.heuristic_name.value,
            "content_type": self.content_type.value,
            "weight": self.weight,
            "positive_feedback_count": self.positive_feedback_count,
            "negative_feedback_count": self.negative_feedback_count,
            "last_updated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HeuristicWeight":
        return cls(
            heuristic_name=HeuristicName(data["heuristic_name"]),
            content_type=ContentType(data["content_type"]),
            weight=clamp_unit(float(data["weight"])),
            positive_feedback_count=int(data.get("positive_feedback_count", 0)),
            negative_feedback_count=int(data.get("negative_feedback_count", 0)),
            last_updated=datetime.fromisoformat(data["last_updated"]) if data.get("last_updated") else utcnow(),
        )


@dataclass(frozen=True)
class HeuristicResult:
    heuristic_name: HeuristicName
    weight: float
    contribution: float
    triggered: bool


# ============================================================================
# OUTBOUND RECORDS
# ============================================================================

class ConfusionScore(BaseModel):
    """Score produced once per evaluation cycle, for every severity"""
    model_config = ConfigDict(frozen=True)

    segment_id: str
    learner_id: str
    content_id: str
    content_type: ContentType
    score: float = Field(..., ge=0.0, le=1.0)
    severity: Severity
    triggering_heuristics: List[HeuristicName] = Field(default_factory=list)
    contributions: Dict[str, float] = Field(default_factory=dict)
    timestamp: int
    weights_version: int = 0
    latency_ms: float = 0.0


class ConfusionPoint(BaseModel):
    """Decision record emitted to downstream collaborators (medium/high only)"""
    model_config = ConfigDict(frozen=True)

    segment_id: str
    learner_id: str
    content_id: str
    content_type: ContentType
    score: float = Field(..., ge=0.0, le=1.0)
    severity: Severity
    triggering_heuristics: List[HeuristicName]
    timestamp: int
