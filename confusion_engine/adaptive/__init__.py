"""
Adaptive layer of the Confusion Engine

- Confusion detection: sliding-window behavioral heuristics scored against
  cohort baselines
- Adaptive thresholds: heuristic weights recalibrated from learner feedback
"""

from .confusion import (
    ConfusionEngine,
    ConfusionPoint,
    ConfusionScore,
    get_confusion_engine,
)

__all__ = [
    "ConfusionEngine",
    "ConfusionPoint",
    "ConfusionScore",
    "get_confusion_engine",
]
