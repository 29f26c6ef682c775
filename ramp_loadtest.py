from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

import structlog

from exposition import (
    DEFAULT_METRICS_PORT,
    RequestDurationCollector,
    build_registry,
    metrics_url_for_port,
    serve_metrics,
)
from metrics_snapshot import MetricsUnavailableError, SnapshotReader
from runner import RunConfig, run_load_test

logger = structlog.get_logger()


def configure_logging() -> None:
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Ramp-up HTTP load tester with live per-endpoint statistics."
    )

    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument(
        "--max-clients", type=int, default=10, help="Maximum number of virtual clients"
    )
    parser.add_argument(
        "--scale-interval-ms",
        type=int,
        default=500,
        help="Time between ramp steps, also the upper bound of per-request jitter",
    )
    parser.add_argument(
        "--random-sleep-us",
        type=int,
        default=1000,
        help="Random sleep from 0 up to this many microseconds between enqueues",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Show current statistics from a running load test and exit",
    )

    parser.add_argument("--metrics-port", type=int, default=DEFAULT_METRICS_PORT)
    parser.add_argument(
        "--metrics-url",
        default=None,
        help="Metrics endpoint read by --stats (defaults to localhost on --metrics-port)",
    )
    parser.add_argument("--startup-delay-s", type=float, default=5.0)
    parser.add_argument(
        "--duration-s",
        type=float,
        default=None,
        help="Stop after this many seconds instead of running until interrupted",
    )
    parser.add_argument("--timeout-s", type=float, default=None)
    parser.add_argument("--live-interval-s", type=float, default=2.0)
    parser.add_argument("--no-live", action="store_true", help="Disable the live table")
    parser.add_argument("--summary-json", type=Path, default=None)
    parser.add_argument("--seed", type=int, default=None)

    return parser


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.stats:
        return
    if args.max_clients <= 0:
        parser.error("--max-clients must be > 0")
    if args.scale_interval_ms < 0 or args.random_sleep_us < 0:
        parser.error("--scale-interval-ms and --random-sleep-us must be >= 0")
    if args.startup_delay_s < 0:
        parser.error("--startup-delay-s must be >= 0")
    if args.duration_s is not None and args.duration_s <= 0:
        parser.error("--duration-s must be > 0 when set")
    if args.timeout_s is not None and args.timeout_s <= 0:
        parser.error("--timeout-s must be > 0 when set")
    if not args.no_live and args.live_interval_s <= 0:
        parser.error("--live-interval-s must be > 0")
    if not 0 < args.metrics_port < 65536:
        parser.error("--metrics-port must be between 1 and 65535")


def config_from_args(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        base_url=args.base_url,
        max_clients=args.max_clients,
        scale_interval_ms=args.scale_interval_ms,
        random_sleep_us=args.random_sleep_us,
        metrics_port=args.metrics_port,
        startup_delay_s=args.startup_delay_s,
        duration_s=args.duration_s,
        timeout_s=args.timeout_s,
        live_interval_s=None if args.no_live else args.live_interval_s,
        summary_json=args.summary_json,
        seed=args.seed,
    )


async def _show_stats(args: argparse.Namespace) -> int:
    metrics_url = args.metrics_url or metrics_url_for_port(args.metrics_port)
    async with SnapshotReader(args.base_url, metrics_url=metrics_url) as reader:
        try:
            await reader.show_current_stats()
        except MetricsUnavailableError as exc:
            logger.error("metrics_unavailable", error=str(exc))
            return 1
    return 0


def _install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform; Ctrl+C then aborts without a summary.
            pass


async def _run_from_args(args: argparse.Namespace) -> int:
    config = config_from_args(args)

    collector = RequestDurationCollector()
    try:
        serve_metrics(build_registry(collector), port=config.metrics_port)
    except OSError as exc:
        logger.error("metrics_server_failed", port=config.metrics_port, error=str(exc))
        return 1

    stop_event = asyncio.Event()
    _install_stop_handlers(stop_event)
    await run_load_test(config, collector=collector, stop_event=stop_event)
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    _validate_args(parser, args)
    if args.stats:
        exit_code = asyncio.run(_show_stats(args))
    else:
        exit_code = asyncio.run(_run_from_args(args))
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
