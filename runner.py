from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import httpx
import structlog

from exposition import DEFAULT_METRICS_PORT, RequestDurationCollector
from loadgen import (
    DEFAULT_ENDPOINT_PATHS,
    RequestOutcome,
    VirtualClientPool,
    build_endpoints,
    jitter_sleep,
)
from report import LiveStatsPrinter, render_summary, write_summary_json
from stats import StatsAggregator

logger = structlog.get_logger()


@dataclass
class RunConfig:
    base_url: str = "http://localhost:8000"
    max_clients: int = 10
    scale_interval_ms: int = 500
    random_sleep_us: int = 1000
    endpoint_paths: tuple[str, ...] = field(default_factory=lambda: DEFAULT_ENDPOINT_PATHS)
    metrics_port: int = DEFAULT_METRICS_PORT
    startup_delay_s: float = 0.0
    duration_s: Optional[float] = None
    timeout_s: Optional[float] = None
    live_interval_s: Optional[float] = 2.0
    summary_json: Optional[Path] = None
    seed: Optional[int] = None

    @property
    def queue_capacity(self) -> int:
        return max(1, self.max_clients * 2)

    def validate(self) -> None:
        if self.max_clients <= 0:
            raise ValueError(f"max_clients must be > 0, got {self.max_clients}")
        if self.scale_interval_ms < 0:
            raise ValueError(f"scale_interval_ms must be >= 0, got {self.scale_interval_ms}")
        if self.random_sleep_us < 0:
            raise ValueError(f"random_sleep_us must be >= 0, got {self.random_sleep_us}")
        if not self.endpoint_paths:
            raise ValueError("endpoint_paths cannot be empty")
        if self.duration_s is not None and self.duration_s <= 0:
            raise ValueError(f"duration_s must be > 0 when set, got {self.duration_s}")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0 when set, got {self.timeout_s}")


class RampController:
    def __init__(
        self,
        config: RunConfig,
        queue: asyncio.Queue[Optional[str]],
        pool: VirtualClientPool,
        stop_event: asyncio.Event,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.queue = queue
        self.pool = pool
        self.stop_event = stop_event
        self.rng = rng or random.Random(config.seed)
        self.endpoints = build_endpoints(config.base_url, config.endpoint_paths)
        self.step_history: list[int] = []
        self.enqueued = 0

    def pick_endpoint(self) -> str:
        return self.rng.choice(self.endpoints)

    async def _enqueue_one(self) -> None:
        await self.queue.put(self.pick_endpoint())
        self.enqueued += 1
        await jitter_sleep(self.rng, self.config.random_sleep_us, 0.000001)

    async def _wait_interval(self) -> None:
        interval_s = self.config.scale_interval_ms / 1000.0
        if interval_s <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=interval_s)
        except asyncio.TimeoutError:
            pass

    async def _sustain(self) -> None:
        while not self.stop_event.is_set():
            await self._enqueue_one()
            # Let workers run even when the jitter rolls zero.
            await asyncio.sleep(0)

    async def run(self) -> None:
        max_clients = self.config.max_clients
        for step in range(max_clients + 1):
            if self.stop_event.is_set():
                break
            added = self.pool.scale_to(step)
            self.step_history.append(self.pool.size)
            logger.info("ramp_step", step=step, active_clients=self.pool.size, added=added)

            if step == max_clients:
                logger.info("ramp_sustained", active_clients=self.pool.size)
                await self._sustain()
                break

            for _ in range(step):
                await self._enqueue_one()
            await self._wait_interval()
        logger.info("ramp_stopped", enqueued=self.enqueued, active_clients=self.pool.size)


def _limits_for(max_clients: int) -> httpx.Limits:
    max_connections = max(max_clients * 2, 16)
    return httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max(max_connections // 2, 8),
    )


async def run_load_test(
    config: RunConfig,
    *,
    aggregator: Optional[StatsAggregator] = None,
    collector: Optional[RequestDurationCollector] = None,
    stop_event: Optional[asyncio.Event] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> StatsAggregator:
    config.validate()
    aggregator = aggregator or StatsAggregator()
    stop_event = stop_event or asyncio.Event()

    if config.startup_delay_s > 0:
        logger.info("startup_delay", seconds=config.startup_delay_s)
        await asyncio.sleep(config.startup_delay_s)

    async def on_request_done(outcome: RequestOutcome) -> None:
        aggregator.record(outcome.endpoint, outcome.duration_s, outcome.success)
        if collector is not None:
            collector.observe_outcome(outcome)

    loop = asyncio.get_running_loop()
    deadline_handle = None
    if config.duration_s is not None:
        deadline_handle = loop.call_later(config.duration_s, stop_event.set)

    queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=config.queue_capacity)
    printer = (
        LiveStatsPrinter(aggregator, interval_s=config.live_interval_s)
        if config.live_interval_s
        else None
    )

    async with httpx.AsyncClient(
        limits=_limits_for(config.max_clients),
        timeout=config.timeout_s,
        transport=transport,
    ) as client:
        pool = VirtualClientPool(
            queue=queue,
            client=client,
            on_request_done=on_request_done,
            jitter_upper_ms=config.scale_interval_ms,
            seed=config.seed,
        )
        controller = RampController(config, queue, pool, stop_event)
        logger.info(
            "load_test_started",
            base_url=config.base_url,
            max_clients=config.max_clients,
            scale_interval_ms=config.scale_interval_ms,
        )
        try:
            if printer is not None:
                await printer.start()
            await controller.run()
            await pool.shutdown()
        finally:
            if deadline_handle is not None:
                deadline_handle.cancel()
            if printer is not None:
                await printer.stop()
            await pool.cancel()

    stats = aggregator.snapshot()
    print(render_summary(stats))
    if config.summary_json is not None:
        write_summary_json(config.summary_json, stats)
        logger.info("summary_written", path=str(config.summary_json))
    return aggregator
