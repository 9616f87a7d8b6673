"""
Explanation attribution lookup.

Feedback arrives keyed by explanation id. The explanation-tracking
collaborator knows which heuristics (and which content type) produced each
explanation; the engine only needs a callable ``lookup(explanation_id)``.
ExplanationRegistry is the in-process implementation the HTTP API feeds.
"""
from collections import OrderedDict
from threading import Lock
from typing import Iterable, Optional, Protocol, Union
import logging

from .models import ConfusionPoint, ContentType, ExplanationAttribution, HeuristicName

logger = logging.getLogger(__name__)


class AttributionLookup(Protocol):
    def __call__(self, explanation_id: str) -> Optional[ExplanationAttribution]:
        ...


class ExplanationRegistry:
    """Bounded explanation id -> attribution map (oldest entries evicted first)"""

    MAX_ENTRIES = 100_000

    def __init__(self, max_entries: int = MAX_ENTRIES):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, ExplanationAttribution]" = OrderedDict()
        self._lock = Lock()

    def register(
        self,
        explanation_id: str,
        heuristics: Iterable[Union[HeuristicName, str]],
        content_type: Union[ContentType, str],
    ) -> ExplanationAttribution:
        attribution = ExplanationAttribution(
            explanation_id=explanation_id,
            heuristics=tuple(HeuristicName(h) for h in heuristics),
            content_type=ContentType(content_type),
        )
        with self._lock:
            self._entries[explanation_id] = attribution
            self._entries.move_to_end(explanation_id)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        return attribution

    def register_point(self, explanation_id: str, point: ConfusionPoint) -> ExplanationAttribution:
        """Attribute an explanation to the heuristics of the point that requested it"""
        return self.register(explanation_id, point.triggering_heuristics, point.content_type)

    def lookup(self, explanation_id: str) -> Optional[ExplanationAttribution]:
        return self._entries.get(explanation_id)

    __call__ = lookup

    def __len__(self) -> int:
        return len(self._entries)
