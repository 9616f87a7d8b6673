"""
Tests for in-process metrics and Prometheus formatting
"""
import pytest

from confusion_engine.core.metrics import (
    format_prometheus_metrics,
    get_counter,
    get_metrics,
    increment_counter,
    observe_histogram,
    set_gauge,
)


class TestCounters:

    def test_increment_with_labels(self):
        increment_counter("confusion_scores_total", {"severity": "high"})
        increment_counter("confusion_scores_total", {"severity": "high"})
        increment_counter("confusion_scores_total", {"severity": "low"})

        assert get_counter("confusion_scores_total", {"severity": "high"}) == 2
        assert get_counter("confusion_scores_total", {"severity": "low"}) == 1
        assert get_counter("confusion_scores_total") == 0

    def test_label_order_irrelevant(self):
        increment_counter("x_total", {"a": "1", "b": "2"})

        assert get_counter("x_total", {"b": "2", "a": "1"}) == 1


class TestPrometheusFormat:

    def test_counter_and_gauge_lines(self):
        increment_counter("confusion_dropped_events_total", {"lane": "0"}, amount=3)
        set_gauge("confusion_active_windows", 7)

        text = format_prometheus_metrics()

        assert "# TYPE confusion_dropped_events_total counter" in text
        assert 'confusion_dropped_events_total{lane="0"} 3.0' in text
        assert "confusion_active_windows 7" in text

    def test_label_values_escaped(self):
        increment_counter("http_requests_total", {"endpoint": '/a"b\\c\nd'})

        text = format_prometheus_metrics()

        assert 'http_requests_total{endpoint="/a\\"b\\\\c\\nd"} 1.0' in text

    def test_histogram_summary(self):
        for value in (1.0, 2.0, 3.0, 4.0):
            observe_histogram("confusion_evaluation_seconds", value)

        text = format_prometheus_metrics()

        assert "# TYPE confusion_evaluation_seconds summary" in text
        assert 'confusion_evaluation_seconds{quantile="0.5"} 2.5' in text
        assert "confusion_evaluation_seconds_count 4" in text
        assert "confusion_evaluation_seconds_sum 10.0" in text

    def test_get_metrics_snapshot(self):
        observe_histogram("h", 1.0)

        assert get_metrics()["histograms"]["h"][()] == [1.0]


class TestMetricsMiddleware:

    @pytest.mark.asyncio
    async def test_requests_counted(self, client):
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert get_counter(
            "http_requests_total", {"method": "GET", "endpoint": "/metrics", "status_code": "200"}
        ) == 1
