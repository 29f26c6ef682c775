"""Tests for argument handling in the command-line entry point."""

import argparse
from pathlib import Path

import pytest

import ramp_loadtest
from metrics_snapshot import MetricsUnavailableError


@pytest.fixture(autouse=True)
def _keep_default_logging(monkeypatch):
    monkeypatch.setattr(ramp_loadtest, "configure_logging", lambda: None)


def _parse(*argv):
    parser = ramp_loadtest.build_parser()
    args = parser.parse_args(list(argv))
    ramp_loadtest._validate_args(parser, args)
    return args


def test_defaults():
    args = _parse()
    config = ramp_loadtest.config_from_args(args)

    assert config.max_clients == 10
    assert config.scale_interval_ms == 500
    assert config.random_sleep_us == 1000
    assert config.base_url == "http://localhost:8000"
    assert config.metrics_port == 8082
    assert config.live_interval_s == 2.0
    assert config.duration_s is None
    assert args.stats is False


def test_overrides():
    args = _parse(
        "--max-clients", "50",
        "--scale-interval-ms", "100",
        "--random-sleep-us", "10",
        "--base-url", "http://svc:9000",
        "--no-live",
        "--duration-s", "30",
        "--summary-json", "out.json",
    )
    config = ramp_loadtest.config_from_args(args)

    assert config.max_clients == 50
    assert config.scale_interval_ms == 100
    assert config.random_sleep_us == 10
    assert config.base_url == "http://svc:9000"
    assert config.live_interval_s is None
    assert config.duration_s == 30.0
    assert config.summary_json == Path("out.json")


@pytest.mark.parametrize(
    "argv",
    [
        ["--max-clients", "0"],
        ["--scale-interval-ms", "-1"],
        ["--duration-s", "0"],
        ["--timeout-s", "0"],
        ["--metrics-port", "70000"],
    ],
)
def test_invalid_arguments_exit_2(argv):
    with pytest.raises(SystemExit) as excinfo:
        _parse(*argv)
    assert excinfo.value.code == 2


def test_stats_mode_skips_ramp_validation():
    args = _parse("--stats", "--max-clients", "0")
    assert args.stats is True


def test_stats_mode_exits_1_when_metrics_unavailable(monkeypatch):
    async def fail(self, stream=None):
        raise MetricsUnavailableError("refused")

    monkeypatch.setattr(ramp_loadtest.SnapshotReader, "show_current_stats", fail)

    with pytest.raises(SystemExit) as excinfo:
        ramp_loadtest.main(["--stats", "--metrics-url", "http://127.0.0.1:1/metrics"])
    assert excinfo.value.code == 1


def test_stats_mode_exits_0_on_success(monkeypatch):
    async def ok(self, stream=None):
        return None

    monkeypatch.setattr(ramp_loadtest.SnapshotReader, "show_current_stats", ok)
    ramp_loadtest.main(["--stats"])


def test_metrics_bind_failure_is_fatal(monkeypatch):
    def refuse(registry, port, addr="0.0.0.0"):
        raise OSError("address already in use")

    called = []

    async def never(*args, **kwargs):
        called.append(True)

    monkeypatch.setattr(ramp_loadtest, "serve_metrics", refuse)
    monkeypatch.setattr(ramp_loadtest, "run_load_test", never)

    with pytest.raises(SystemExit) as excinfo:
        ramp_loadtest.main(["--startup-delay-s", "0"])
    assert excinfo.value.code == 1
    assert called == []


def test_parser_is_argparse():
    assert isinstance(ramp_loadtest.build_parser(), argparse.ArgumentParser)
