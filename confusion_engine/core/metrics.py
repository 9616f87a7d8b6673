"""
Prometheus-style metrics for the confusion engine.

Counters, gauges and histograms are kept in process and rendered in the
Prometheus text format by ``format_prometheus_metrics``. Every anomaly the
engine swallows (dropped events, invalid feedback, latency budget misses,
sink failures) is surfaced here and in the logs.
"""
from collections import defaultdict, deque
from threading import Lock
from typing import Deque, Dict, Optional, Tuple
import time
import logging

import numpy as np

logger = logging.getLogger(__name__)

HISTOGRAM_WINDOW = 2048
QUANTILES = (0.5, 0.95, 0.99)

LabelKey = Tuple[Tuple[str, str], ...]

_lock = Lock()
_counters: Dict[str, Dict[LabelKey, float]] = defaultdict(dict)
_gauges: Dict[str, Dict[LabelKey, float]] = defaultdict(dict)
_histograms: Dict[str, Dict[LabelKey, Deque[float]]] = defaultdict(dict)
_histogram_totals: Dict[str, Dict[LabelKey, Tuple[float, int]]] = defaultdict(dict)


def _label_key(labels: Optional[dict]) -> LabelKey:
    if not labels:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _render_labels(key: LabelKey, extra: Optional[Tuple[str, str]] = None) -> str:
    pairs = list(key) + ([extra] if extra else [])
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{_escape_label_value(v)}"' for k, v in pairs) + "}"


def _escape_label_value(value) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def increment_counter(name: str, labels: dict = None, amount: float = 1.0):
    """Increment a counter metric"""
    key = _label_key(labels)
    with _lock:
        _counters[name][key] = _counters[name].get(key, 0.0) + amount


def observe_histogram(name: str, value: float, labels: dict = None):
    """Record a histogram observation"""
    key = _label_key(labels)
    with _lock:
        series = _histograms[name].get(key)
        if series is None:
            series = _histograms[name][key] = deque(maxlen=HISTOGRAM_WINDOW)
        series.append(value)
        total, count = _histogram_totals[name].get(key, (0.0, 0))
        _histogram_totals[name][key] = (total + value, count + 1)


def set_gauge(name: str, value: float, labels: dict = None):
    """Set a gauge metric"""
    with _lock:
        _gauges[name][_label_key(labels)] = value


def get_counter(name: str, labels: dict = None) -> float:
    with _lock:
        return _counters.get(name, {}).get(_label_key(labels), 0.0)


def get_metrics() -> dict:
    """Get all metrics for export"""
    with _lock:
        return {
            "counters": {n: dict(v) for n, v in _counters.items()},
            "gauges": {n: dict(v) for n, v in _gauges.items()},
            "histograms": {n: {k: list(s) for k, s in v.items()} for n, v in _histograms.items()},
        }


def reset_metrics():
    """Reset metrics (useful for testing)."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _histograms.clear()
        _histogram_totals.clear()


class MetricsMiddleware:
    """
    ASGI middleware for automatic request metrics.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.perf_counter()
        method = scope.get("method", "UNKNOWN")
        path = scope.get("path", "/")

        status_code = 500
        try:
            async def send_wrapper(message):
                nonlocal status_code
                if message["type"] == "http.response.start":
                    status_code = message["status"]
                await send(message)

            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.perf_counter() - start_time
            labels = {"method": method, "endpoint": path, "status_code": str(status_code)}

            increment_counter("http_requests_total", labels)
            observe_histogram("http_request_duration_seconds", duration, {"endpoint": path})


def format_prometheus_metrics() -> str:
    """Format metrics in Prometheus text format"""
    snapshot = get_metrics()
    with _lock:
        totals = {n: dict(v) for n, v in _histogram_totals.items()}

    lines = []

    for name, series in sorted(snapshot["counters"].items()):
        lines.append(f"# TYPE {name} counter")
        for key, value in series.items():
            lines.append(f"{name}{_render_labels(key)} {value}")

    for name, series in sorted(snapshot["gauges"].items()):
        lines.append(f"# TYPE {name} gauge")
        for key, value in series.items():
            lines.append(f"{name}{_render_labels(key)} {value}")

    # Quantiles are computed over the retained observation window only
    for name, series in sorted(snapshot["histograms"].items()):
        lines.append(f"# TYPE {name} summary")
        for key, values in series.items():
            if values:
                quantiles = np.quantile(np.asarray(values, dtype=float), QUANTILES)
                for q, value in zip(QUANTILES, quantiles):
                    lines.append(f"{name}{_render_labels(key, ('quantile', str(q)))} {float(value)}")
            total, count = totals.get(name, {}).get(key, (0.0, 0))
            lines.append(f"{name}_sum{_render_labels(key)} {total}")
            lines.append(f"{name}_count{_render_labels(key)} {count}")

    return "\n".join(lines) + "\n"
