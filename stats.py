from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, replace
from typing import Any, Optional

from loadgen import now_unix_ms


@dataclass
class EndpointStats:
    endpoint: str
    total: int = 0
    success: int = 0
    errors: int = 0
    min_s: float = 0.0
    max_s: float = 0.0
    total_s: float = 0.0
    last_update_unix_ms: Optional[int] = None

    @property
    def avg_s(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.total_s / self.total

    @property
    def success_rate(self) -> float:
        return success_rate(self.success, self.total)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["avg_s"] = self.avg_s
        payload["success_rate_pct"] = self.success_rate
        return payload


def success_rate(success: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return float(success) / float(total) * 100.0


class StatsAggregator:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats: dict[str, EndpointStats] = {}

    def record(self, endpoint: str, duration_s: float, success: bool) -> None:
        updated_at = now_unix_ms()
        with self._lock:
            stats = self._stats.get(endpoint)
            if stats is None:
                stats = EndpointStats(endpoint=endpoint, min_s=duration_s, max_s=duration_s)
                self._stats[endpoint] = stats

            stats.total += 1
            stats.total_s += duration_s
            stats.last_update_unix_ms = updated_at
            if success:
                stats.success += 1
            else:
                stats.errors += 1
            if duration_s < stats.min_s:
                stats.min_s = duration_s
            if duration_s > stats.max_s:
                stats.max_s = duration_s

    def snapshot(self) -> dict[str, EndpointStats]:
        with self._lock:
            return {key: replace(value) for key, value in self._stats.items()}

    def get(self, endpoint: str) -> Optional[EndpointStats]:
        with self._lock:
            stats = self._stats.get(endpoint)
            return replace(stats) if stats is not None else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._stats)
