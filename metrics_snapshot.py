from __future__ import annotations

import json
import math
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, TextIO

import httpx
import structlog

from exposition import DEFAULT_METRICS_PORT, REQUEST_DURATION_METRIC, metrics_url_for_port
from report import shorten

logger = structlog.get_logger()

# Requests per second is count / 60: the elapsed run time is unknown here, so
# every request is treated as if it arrived within one minute.
ASSUMED_WINDOW_S = 60.0
P90_QUANTILE = "0.9"
RULE = "-" * 80


class MetricsUnavailableError(RuntimeError):
    pass


@dataclass
class MetricRecord:
    endpoint: str
    status: str
    count: int = 0
    sum_s: float = 0.0
    p90_s: Optional[float] = None

    @property
    def avg_latency_ms(self) -> float:
        if self.count <= 0:
            return 0.0
        return (self.sum_s / self.count) * 1000.0

    @property
    def p90_ms(self) -> Optional[float]:
        if self.p90_s is None:
            return None
        return self.p90_s * 1000.0

    @property
    def approx_rps(self) -> float:
        return self.count / ASSUMED_WINDOW_S


def _parse_float(token: str) -> float:
    try:
        return float(token)
    except ValueError:
        return 0.0


def split_sample_line(line: str) -> Optional[tuple[str, str]]:
    line = line.strip()
    if not line:
        return None

    name_end = -1
    brace = line.find("{")
    space = _first_whitespace(line)
    if brace != -1 and (space == -1 or brace < space):
        name_end = _closing_brace(line, brace)
        if name_end == -1:
            return None
        name_end += 1
    else:
        name_end = space

    if name_end == -1:
        return None
    rest = line[name_end:].split()
    if not rest:
        return None
    return line[:name_end], rest[0]


def _first_whitespace(text: str) -> int:
    for index, char in enumerate(text):
        if char.isspace():
            return index
    return -1


def _closing_brace(text: str, start: int) -> int:
    in_quotes = False
    escaped = False
    for index in range(start + 1, len(text)):
        char = text[index]
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == '"':
            in_quotes = not in_quotes
        elif char == "}" and not in_quotes:
            return index
    return -1


def parse_labels(labelled_name: str) -> dict[str, str]:
    # Stops at the first malformed pair and keeps what was read before it.
    labels: dict[str, str] = {}
    start = labelled_name.find("{")
    if start == -1:
        return labels

    text = labelled_name
    index = start + 1
    length = len(text)
    while index < length:
        while index < length and text[index] in " ,":
            index += 1
        if index >= length or text[index] == "}":
            break

        equals = text.find("=", index)
        if equals == -1:
            break
        key = text[index:equals].strip()
        index = equals + 1
        if index >= length or text[index] != '"':
            break
        index += 1

        value_chars: list[str] = []
        closed = False
        while index < length:
            char = text[index]
            if char == "\\" and index + 1 < length:
                value_chars.append(_unescape(text[index + 1]))
                index += 2
                continue
            if char == '"':
                closed = True
                index += 1
                break
            value_chars.append(char)
            index += 1
        if not closed:
            break
        labels[key] = "".join(value_chars)
    return labels


def _unescape(char: str) -> str:
    if char == "n":
        return "\n"
    return char


def extract_label(labelled_name: str, label: str) -> str:
    return parse_labels(labelled_name).get(label, "")


def _base_name(labelled_name: str) -> str:
    brace = labelled_name.find("{")
    return labelled_name if brace == -1 else labelled_name[:brace]


def parse_snapshot(text: str, family: str = REQUEST_DURATION_METRIC) -> dict[tuple[str, str], MetricRecord]:
    records: dict[tuple[str, str], MetricRecord] = {}

    for line in text.splitlines():
        if family not in line or line.lstrip().startswith("#"):
            continue
        parts = split_sample_line(line)
        if parts is None:
            continue
        labelled_name, value_token = parts
        value = _parse_float(value_token)

        labels = parse_labels(labelled_name)
        endpoint = labels.get("path", "")
        status = labels.get("status", "")
        key = (endpoint, status)
        record = records.get(key)
        if record is None:
            record = MetricRecord(endpoint=endpoint, status=status)
            records[key] = record

        name = _base_name(labelled_name)
        if name.endswith("_count"):
            record.count = int(value) if math.isfinite(value) else 0
        elif name.endswith("_sum"):
            record.sum_s = value
        elif labels.get("quantile") == P90_QUANTILE:
            record.p90_s = value

    return records


def _fmt(value: Optional[float]) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.1f}"


def render_snapshot_table(records: dict[tuple[str, str], MetricRecord]) -> str:
    visible = [records[key] for key in sorted(records) if records[key].count > 0]
    if not visible:
        return "No metrics found. Load test may not be running."

    lines: list[str] = []
    lines.append("Load Test Results:")
    lines.append("------------------")
    lines.append(
        f"{'Endpoint':<35} {'Status':<7} {'Requests':<8} {'P90(ms)':<10} {'Avg(ms)':<10} {'RPS~':<10}"
    )
    lines.append(RULE)

    total_requests = 0
    for record in visible:
        lines.append(
            f"{shorten(record.endpoint, 34):<35} {record.status:<7} {record.count:<8d} "
            f"{_fmt(record.p90_ms):<10} {_fmt(record.avg_latency_ms):<10} {_fmt(record.approx_rps):<10}"
        )
        total_requests += record.count

    lines.append(RULE)
    lines.append(f"Total Requests: {total_requests}")
    lines.append(
        f"RPS~ is count/{ASSUMED_WINDOW_S:.0f}s: an approximation that assumes a "
        "one-minute observation window, not a measured rate."
    )
    return "\n".join(lines)


def format_server_stats(body: str) -> str:
    try:
        payload: Any = json.loads(body)
    except json.JSONDecodeError:
        return body
    return json.dumps(payload, indent=2)


class SnapshotReader:
    def __init__(
        self,
        base_url: str,
        metrics_url: Optional[str] = None,
        request_timeout_s: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.metrics_url = metrics_url or metrics_url_for_port(DEFAULT_METRICS_PORT)
        self.request_timeout_s = request_timeout_s
        self._client = client
        self._owns_client = False

    async def __aenter__(self) -> SnapshotReader:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.request_timeout_s)
            self._owns_client = True
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._owns_client = False

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("SnapshotReader must be used as an async context manager")
        return self._client

    async def fetch_metrics(self) -> str:
        client = self._require_client()
        try:
            response = await client.get(self.metrics_url)
        except httpx.HTTPError as exc:
            raise MetricsUnavailableError(
                f"metrics endpoint {self.metrics_url} unreachable: {exc}"
            ) from exc
        if response.status_code != 200:
            raise MetricsUnavailableError(
                f"metrics endpoint {self.metrics_url} returned HTTP {response.status_code}"
            )
        return response.text

    async def fetch_records(self) -> dict[tuple[str, str], MetricRecord]:
        return parse_snapshot(await self.fetch_metrics())

    async def fetch_server_stats(self) -> Optional[str]:
        client = self._require_client()
        try:
            response = await client.get(f"{self.base_url}/api/stats")
        except httpx.HTTPError as exc:
            logger.info("server_stats_unavailable", error=str(exc))
            return None
        if response.status_code == 404:
            return None
        return format_server_stats(response.text)

    async def show_current_stats(self, stream: Optional[TextIO] = None) -> None:
        out = stream or sys.stdout

        def emit(text: str = "") -> None:
            out.write(text + "\n")

        emit("Current Load Testing Statistics")
        emit("===============================")
        emit(f"Target: {self.base_url}")
        emit(f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        emit()

        try:
            records = await self.fetch_records()
        except MetricsUnavailableError:
            emit("No active load test found. Start one with: ramp-loadtest")
            emit("Tip: run the load test first, then check stats from another terminal.")
            raise

        emit(render_snapshot_table(records))

        emit()
        emit("Server Statistics:")
        emit("------------------")
        server_stats = await self.fetch_server_stats()
        if server_stats is None:
            emit("Server stats not available")
        else:
            emit(server_stats)
        out.flush()
