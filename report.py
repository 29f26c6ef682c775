from __future__ import annotations

import asyncio
import json
import math
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, TextIO

from stats import EndpointStats, StatsAggregator, success_rate

CLEAR_SCREEN = "\033[2J\033[H"
LIVE_RULE = "=" * 60
LIVE_DIVIDER = "-" * 60


def _fmt(value: Optional[float], digits: int = 1) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def _ms(seconds: float) -> float:
    return seconds * 1000.0


def shorten(name: str, width: int) -> str:
    if len(name) <= width:
        return name
    keep = max(0, width - 3)
    return "..." + name[len(name) - keep:]


def render_live_table(stats: dict[str, EndpointStats], now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    lines: list[str] = []
    lines.append("Live Load Testing Results")
    lines.append(LIVE_RULE)
    lines.append(
        f"{'Endpoint':<25} {'Total':<8} {'Success':<8} {'Errors':<8} "
        f"{'Min(ms)':<8} {'Max(ms)':<8} {'Avg(ms)':<8}"
    )
    lines.append(LIVE_DIVIDER)

    total = success = errors = 0
    for endpoint in sorted(stats):
        item = stats[endpoint]
        lines.append(
            f"{shorten(endpoint, 24):<25} {item.total:<8d} {item.success:<8d} {item.errors:<8d} "
            f"{_ms(item.min_s):<8.1f} {_ms(item.max_s):<8.1f} {_ms(item.avg_s):<8.1f}"
        )
        total += item.total
        success += item.success
        errors += item.errors

    lines.append(LIVE_DIVIDER)
    lines.append(f"{'TOTAL':<25} {total:<8d} {success:<8d} {errors:<8d}")
    lines.append("")
    lines.append(f"Last update: {now.strftime('%H:%M:%S')} | Press Ctrl+C to stop")
    return "\n".join(lines)


def render_summary(stats: dict[str, EndpointStats]) -> str:
    if not stats:
        return "No statistics collected yet."

    lines: list[str] = ["", "Load Testing Summary", "===================="]
    total = success = errors = 0
    for endpoint in sorted(stats):
        item = stats[endpoint]
        lines.append("")
        lines.append(endpoint)
        lines.append(
            f"   Requests: {item.total} (Success: {item.success}, Errors: {item.errors})"
        )
        lines.append(f"   Success Rate: {_fmt(item.success_rate)}%")
        lines.append(
            f"   Response Time: Min={_fmt(_ms(item.min_s))}ms, "
            f"Max={_fmt(_ms(item.max_s))}ms, Avg={_fmt(_ms(item.avg_s))}ms"
        )
        total += item.total
        success += item.success
        errors += item.errors

    overall = success_rate(success, total)
    error_rate = 100.0 - overall if total > 0 else 0.0
    lines.append("")
    lines.append("Overall Results:")
    lines.append(f"   Total Requests: {total}")
    lines.append(f"   Success Rate: {_fmt(overall)}% ({success}/{total})")
    lines.append(f"   Error Rate: {_fmt(error_rate)}% ({errors}/{total})")
    return "\n".join(lines)


def write_summary_json(output_path: Path, stats: dict[str, EndpointStats]) -> None:
    payload = [stats[endpoint].to_dict() for endpoint in sorted(stats)]
    output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


class LiveStatsPrinter:
    def __init__(
        self,
        aggregator: StatsAggregator,
        interval_s: float = 2.0,
        stream: Optional[TextIO] = None,
        clear_screen: bool = True,
    ) -> None:
        self.aggregator = aggregator
        self.interval_s = interval_s
        self.stream = stream
        self.clear_screen = clear_screen
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    def print_once(self) -> bool:
        stats = self.aggregator.snapshot()
        if not stats:
            return False
        stream = self.stream or sys.stdout
        if self.clear_screen:
            stream.write(CLEAR_SCREEN)
        stream.write(render_live_table(stats) + "\n")
        stream.flush()
        return True

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                return
            self.print_once()
