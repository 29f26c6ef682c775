from __future__ import annotations

import asyncio
import math
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
import structlog

logger = structlog.get_logger()

# Status used when no HTTP response was received at all.
TRANSPORT_ERROR_STATUS = 500

DEFAULT_ENDPOINT_PATHS = ("/health", "/api/devices", "/api/images")


def now_unix_ms() -> int:
    return int(time.time() * 1000)


def percentile(values: list[float], pct: float) -> Optional[float]:
    if not values:
        return None
    if pct <= 0:
        return float(min(values))
    if pct >= 100:
        return float(max(values))
    ordered = sorted(values)
    index = (len(ordered) - 1) * (pct / 100.0)
    low = math.floor(index)
    high = math.ceil(index)
    if low == high:
        return float(ordered[low])
    fraction = index - low
    return float((ordered[low] * (1.0 - fraction)) + (ordered[high] * fraction))


def build_endpoints(base_url: str, paths: tuple[str, ...] = DEFAULT_ENDPOINT_PATHS) -> list[str]:
    base = base_url.rstrip("/")
    return [f"{base}{path}" for path in paths]


def is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


async def jitter_sleep(rng: random.Random, upper: int, unit_s: float) -> None:
    if upper <= 0:
        return
    units = rng.randrange(upper)
    if units:
        await asyncio.sleep(units * unit_s)


@dataclass
class RequestOutcome:
    endpoint: str
    duration_s: float
    success: bool
    status_code: int
    error: Optional[str] = None

    @property
    def status_label(self) -> str:
        return str(self.status_code)


async def execute_request(client: httpx.AsyncClient, url: str) -> RequestOutcome:
    started = time.perf_counter()
    try:
        async with client.stream("GET", url) as response:
            # Drain the body so the connection goes back to the pool.
            await response.aread()
            finished = time.perf_counter()
            status_code = int(response.status_code)
    except httpx.HTTPError as exc:
        duration_s = time.perf_counter() - started
        logger.warning("request_failed", url=url, error=str(exc))
        return RequestOutcome(
            endpoint=url,
            duration_s=duration_s,
            success=False,
            status_code=TRANSPORT_ERROR_STATUS,
            error=str(exc) or type(exc).__name__,
        )

    return RequestOutcome(
        endpoint=url,
        duration_s=finished - started,
        success=is_success(status_code),
        status_code=status_code,
    )


async def worker_loop(
    worker_id: int,
    queue: asyncio.Queue[Optional[str]],
    client: httpx.AsyncClient,
    rng: random.Random,
    jitter_upper_ms: int,
    on_request_done: Callable[[RequestOutcome], Awaitable[None]],
) -> None:
    while True:
        url = await queue.get()
        try:
            if url is None:
                return
            await jitter_sleep(rng, jitter_upper_ms, 0.001)
            try:
                outcome = await execute_request(client, url)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "request_crashed", worker_id=worker_id, url=url, error=str(exc)
                )
                outcome = RequestOutcome(
                    endpoint=url,
                    duration_s=0.0,
                    success=False,
                    status_code=TRANSPORT_ERROR_STATUS,
                    error=str(exc),
                )
            try:
                await on_request_done(outcome)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "outcome_callback_failed", worker_id=worker_id, url=url, error=str(exc)
                )
        finally:
            queue.task_done()


class VirtualClientPool:
    def __init__(
        self,
        queue: asyncio.Queue[Optional[str]],
        client: httpx.AsyncClient,
        on_request_done: Callable[[RequestOutcome], Awaitable[None]],
        jitter_upper_ms: int,
        seed: Optional[int] = None,
    ) -> None:
        self.queue = queue
        self.client = client
        self.on_request_done = on_request_done
        self.jitter_upper_ms = jitter_upper_ms
        self.seed = seed
        self._tasks: list[asyncio.Task[None]] = []
        self._closed = False

    @property
    def size(self) -> int:
        return len(self._tasks)

    def _worker_rng(self, worker_id: int) -> random.Random:
        if self.seed is None:
            return random.Random()
        return random.Random(self.seed + (worker_id * 971) + 17)

    def scale_to(self, target: int) -> int:
        if self._closed:
            raise RuntimeError("cannot scale a pool that has been shut down")
        added = 0
        while len(self._tasks) < target:
            worker_id = len(self._tasks)
            self._tasks.append(
                asyncio.create_task(
                    worker_loop(
                        worker_id=worker_id,
                        queue=self.queue,
                        client=self.client,
                        rng=self._worker_rng(worker_id),
                        jitter_upper_ms=self.jitter_upper_ms,
                        on_request_done=self.on_request_done,
                    ),
                    name=f"virtual-client-{worker_id}",
                )
            )
            added += 1
        return added

    async def shutdown(self) -> None:
        """Close the queue behind any pending work and wait for every worker."""
        if self._closed:
            return
        self._closed = True
        for _ in self._tasks:
            await self.queue.put(None)
        if self._tasks:
            await asyncio.gather(*self._tasks)

    async def cancel(self) -> None:
        self._closed = True
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
