from __future__ import annotations

import threading
from collections import deque
from typing import Iterable, Optional

import httpx
import structlog
from prometheus_client import CollectorRegistry, start_http_server
from prometheus_client.core import SummaryMetricFamily
from prometheus_client.registry import Collector

from loadgen import RequestOutcome, percentile

logger = structlog.get_logger()

METRIC_NAMESPACE = "tester"
REQUEST_DURATION_METRIC = f"{METRIC_NAMESPACE}_request_duration_seconds"
DEFAULT_METRICS_PORT = 8082
DEFAULT_QUANTILES = (0.5, 0.9, 0.99)
DEFAULT_WINDOW_SIZE = 1024


def endpoint_path(url: str) -> str:
    path = httpx.URL(url).path
    return path or "/"


def _quantile_label(quantile: float) -> str:
    return repr(float(quantile))


class _Series:
    def __init__(self, window_size: int) -> None:
        self.count = 0
        self.total_s = 0.0
        self.window: deque[float] = deque(maxlen=window_size)


class RequestDurationCollector(Collector):
    # Quantiles cover the most recent window_size observations of each series;
    # counts and sums are cumulative.
    def __init__(
        self,
        quantiles: Iterable[float] = DEFAULT_QUANTILES,
        window_size: int = DEFAULT_WINDOW_SIZE,
    ) -> None:
        self.quantiles = tuple(quantiles)
        self.window_size = window_size
        self._lock = threading.Lock()
        self._series: dict[tuple[str, str], _Series] = {}

    def observe(self, path: str, status: str, duration_s: float) -> None:
        with self._lock:
            series = self._series.get((path, status))
            if series is None:
                series = _Series(self.window_size)
                self._series[(path, status)] = series
            series.count += 1
            series.total_s += duration_s
            series.window.append(duration_s)

    def observe_outcome(self, outcome: RequestOutcome) -> None:
        self.observe(endpoint_path(outcome.endpoint), outcome.status_label, outcome.duration_s)

    def collect(self):
        with self._lock:
            rows = [
                (path, status, series.count, series.total_s, list(series.window))
                for (path, status), series in sorted(self._series.items())
            ]

        family = SummaryMetricFamily(
            REQUEST_DURATION_METRIC,
            "Duration of load test requests in seconds.",
            labels=["path", "status"],
        )
        for path, status, count, total_s, window in rows:
            family.add_metric([path, status], count_value=count, sum_value=total_s)
            for quantile in self.quantiles:
                value = percentile(window, quantile * 100.0)
                family.add_sample(
                    REQUEST_DURATION_METRIC,
                    {"path": path, "status": status, "quantile": _quantile_label(quantile)},
                    float("nan") if value is None else value,
                )
        yield family


def build_registry(collector: RequestDurationCollector) -> CollectorRegistry:
    registry = CollectorRegistry()
    registry.register(collector)
    return registry


def serve_metrics(registry: CollectorRegistry, port: int = DEFAULT_METRICS_PORT, addr: str = "0.0.0.0") -> None:
    start_http_server(port, addr=addr, registry=registry)
    logger.info("metrics_server_started", port=port, addr=addr)


def metrics_url_for_port(port: Optional[int]) -> str:
    return f"http://localhost:{port or DEFAULT_METRICS_PORT}/metrics"
