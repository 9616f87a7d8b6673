"""
Segment Window Manager

Holds the short-lived, ordered event history for every (learner, segment)
pair and answers the time-local questions the heuristics ask:

- rewind_count: rewinds inside the last 30s
- has_scroll_reversal: a high-velocity forward scroll followed by a backward
  scroll inside the last 10s
- dwell_span: segment entry to most recent activity
- longest_pause: longest single pause inside the window

Eviction is lazy and happens on every write: after an insert, events older
than the horizon (the widest heuristic window) are dropped. Reads never
mutate and are O(window size).

Mutation of one window must come from a single writer. The engine routes
every key to exactly one worker lane, so no lock is taken here.
"""
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterator, List, Optional, Tuple
import logging

from .models import BehavioralEvent, ContentType, EventType, ScrollDirection, SegmentSample

logger = logging.getLogger(__name__)

WindowKey = Tuple[str, str]  # (learner_id, segment_id)


@dataclass
class SegmentWindow:
    """Recent history for one learner on one segment"""
    learner_id: str
    segment_id: str
    content_id: str
    content_type: ContentType
    entered_at: int
    last_activity: int
    events: Deque[BehavioralEvent] = field(default_factory=deque)
    rewinds_total: int = 0
    open_pause: Optional[BehavioralEvent] = None
    # (ended_at, duration_ms) for pauses that have finished
    pause_spans: Deque[Tuple[int, int]] = field(default_factory=deque)

    @property
    def now(self) -> int:
        return self.last_activity


class WindowManager:
    """
    Per-(learner, segment) sliding windows.

    Args:
        rewind_window_ms: Window used for rewind counting
        scroll_window_ms: Window used for scroll-reversal detection
        high_velocity_threshold: Forward scroll velocity (px/s) that counts as "rapid"
    """

    def __init__(
        self,
        rewind_window_ms: int = 30_000,
        scroll_window_ms: int = 10_000,
        high_velocity_threshold: float = 1000.0,
    ):
        self.rewind_window_ms = rewind_window_ms
        self.scroll_window_ms = scroll_window_ms
        self.high_velocity_threshold = high_velocity_threshold
        self.horizon_ms = max(rewind_window_ms, scroll_window_ms)
        self._windows: Dict[WindowKey, SegmentWindow] = {}

    # ------------------------------------------------------------------ writes

    def record(self, event: BehavioralEvent) -> bool:
        """
        Append an event to its window and evict everything outside the horizon.

        Returns:
            False if the event was already older than the horizon and discarded
        """
        key = (event.learner_id, event.segment_id)
        window = self._windows.get(key)

        if window is None:
            window = SegmentWindow(
                learner_id=event.learner_id,
                segment_id=event.segment_id,
                content_id=event.content_id,
                content_type=event.content_type,
                entered_at=event.timestamp,
                last_activity=event.timestamp,
            )
            self._windows[key] = window
        elif window.last_activity - event.timestamp > self.horizon_ms:
            logger.debug(
                f"Discarding stale event learner={event.learner_id} segment={event.segment_id} "
                f"ts={event.timestamp} now={window.last_activity}"
            )
            return False

        self._insert(window, event)
        window.entered_at = min(window.entered_at, event.timestamp)
        window.last_activity = max(window.last_activity, event.timestamp)

        if event.type == EventType.REWIND:
            window.rewinds_total += 1
        if event.type == EventType.PAUSE:
            self._on_pause(window, event)
        else:
            self._on_activity(window, event)

        self._evict(window)
        return True

    @staticmethod
    def _insert(window: SegmentWindow, event: BehavioralEvent):
        events = window.events
        if not events or events[-1].timestamp <= event.timestamp:
            events.append(event)
            return
        # Out-of-order arrival: walk back from the tail to keep timestamp order
        index = len(events)
        while index > 0 and events[index - 1].timestamp > event.timestamp:
            index -= 1
        events.insert(index, event)

    @staticmethod
    def _on_pause(window: SegmentWindow, event: BehavioralEvent):
        if event.payload.duration is not None:
            # Client already measured the pause; treat it as closed
            window.pause_spans.append((event.timestamp, event.payload.duration))
            return
        # A late pause may already have its resume (or other activity) in the window
        closer = next((e for e in window.events if _ends_pause(e, event)), None)
        if closer is not None:
            window.pause_spans.append((closer.timestamp, closer.timestamp - event.timestamp))
        elif window.open_pause is None or event.timestamp < window.open_pause.timestamp:
            window.open_pause = event

    @staticmethod
    def _on_activity(window: SegmentWindow, event: BehavioralEvent):
        pause = window.open_pause
        if pause is not None and _ends_pause(event, pause):
            window.pause_spans.append((event.timestamp, event.timestamp - pause.timestamp))
            window.open_pause = None
        elif event.type == EventType.RESUME and event.payload.duration is not None:
            window.pause_spans.append((event.timestamp, event.payload.duration))

    def _evict(self, window: SegmentWindow):
        boundary = window.last_activity - self.horizon_ms
        events = window.events
        while events and events[0].timestamp < boundary:
            events.popleft()
        spans = window.pause_spans
        while spans and spans[0][0] < boundary:
            spans.popleft()
        if window.open_pause is not None and window.open_pause.timestamp < boundary:
            # Only pauses follow an open pause; the oldest one left takes over
            window.open_pause = next(
                (e for e in events if e.type == EventType.PAUSE and e.payload.duration is None),
                None,
            )

    # ------------------------------------------------------------------- reads

    def get(self, segment_id: str, learner_id: str) -> Optional[SegmentWindow]:
        return self._windows.get((learner_id, segment_id))

    def _recent(self, window: SegmentWindow, within_ms: int) -> Iterator[BehavioralEvent]:
        boundary = window.now - within_ms
        for event in reversed(window.events):
            if event.timestamp < boundary:
                break
            yield event

    def rewind_count(self, segment_id: str, learner_id: str, within: Optional[int] = None) -> int:
        """Number of rewind events within the last ``within`` ms (default 30s)"""
        window = self.get(segment_id, learner_id)
        if window is None:
            return 0
        within = self.rewind_window_ms if within is None else within
        return sum(1 for e in self._recent(window, within) if e.type == EventType.REWIND)

    def has_scroll_reversal(self, segment_id: str, learner_id: str, within: Optional[int] = None) -> bool:
        """True if a backward scroll follows a high-velocity forward scroll within ``within`` ms"""
        window = self.get(segment_id, learner_id)
        if window is None:
            return False
        within = self.scroll_window_ms if within is None else within

        # Scanning newest to oldest: remember a backward scroll, then look for
        # an earlier rapid forward scroll
        seen_backward = False
        for event in self._recent(window, within):
            if event.type != EventType.SCROLL:
                continue
            direction = event.payload.direction
            if direction == ScrollDirection.BACKWARD:
                seen_backward = True
            elif (
                seen_backward
                and direction == ScrollDirection.FORWARD
                and (event.payload.velocity or 0.0) >= self.high_velocity_threshold
            ):
                return True
        return False

    def dwell_span(self, segment_id: str, learner_id: str) -> int:
        """Milliseconds between segment entry and most recent activity"""
        window = self.get(segment_id, learner_id)
        if window is None:
            return 0
        return window.last_activity - window.entered_at

    def longest_pause(self, segment_id: str, learner_id: str, within: Optional[int] = None) -> int:
        """Longest single pause (ms) that ended, or is still open, within the window"""
        window = self.get(segment_id, learner_id)
        if window is None:
            return 0
        within = self.horizon_ms if within is None else within
        boundary = window.now - within

        longest = 0
        for ended_at, duration in window.pause_spans:
            if ended_at >= boundary:
                longest = max(longest, duration)
        if window.open_pause is not None:
            longest = max(longest, window.now - window.open_pause.timestamp)
        return longest

    def window_count(self) -> int:
        return len(self._windows)

    def __len__(self) -> int:
        return len(self._windows)

    # ---------------------------------------------------------------- lifecycle

    def close(self, segment_id: str, learner_id: str) -> Optional[Tuple[SegmentWindow, SegmentSample]]:
        """Remove a finished window and return its terminal sample"""
        window = self._windows.pop((learner_id, segment_id), None)
        if window is None:
            return None
        return window, self._terminal_sample(window)

    def expire_idle(self, now_ms: int, idle_ms: int) -> List[Tuple[SegmentWindow, SegmentSample]]:
        """Close every window with no activity for ``idle_ms``"""
        stale = [k for k, w in self._windows.items() if now_ms - w.last_activity > idle_ms]
        closed = []
        for learner_id, segment_id in stale:
            result = self.close(segment_id, learner_id)
            if result is not None:
                closed.append(result)
        if closed:
            logger.debug(f"Expired {len(closed)} idle segment windows")
        return closed

    def purge_learner(self, learner_id: str) -> int:
        """Drop every window belonging to a learner (data-retention deletion)"""
        keys = [k for k in self._windows if k[0] == learner_id]
        for key in keys:
            del self._windows[key]
        if keys:
            logger.info(f"Purged {len(keys)} windows for learner {learner_id}")
        return len(keys)

    @staticmethod
    def _terminal_sample(window: SegmentWindow) -> SegmentSample:
        return SegmentSample(
            dwell_time=(window.last_activity - window.entered_at) / 1000.0,
            rewind_count=float(window.rewinds_total),
        )


def _ends_pause(event: BehavioralEvent, pause: BehavioralEvent) -> bool:
    """True if ``event`` is activity that closes ``pause`` in timestamp order"""
    if event is pause or event.type == EventType.PAUSE:
        return False
    if event.type == EventType.RESUME:
        return event.timestamp >= pause.timestamp
    return event.timestamp > pause.timestamp
