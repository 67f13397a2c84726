"""Tests for dagrun.core.logging — structlog configuration and context."""

from __future__ import annotations

import json

import structlog

from dagrun.core.logging import LogContext, bind_context, clear_context, configure_logging, get_logger


def test_json_logs_go_to_stderr(capsys):
    configure_logging(level="INFO", json_format=True, service="dagrun-test")
    get_logger("dagrun.test").info("scheduler.step_dispatched", instance="load[0]")

    captured = capsys.readouterr()
    assert captured.out == ""
    event = json.loads(captured.err.strip().splitlines()[-1])
    assert event["event"] == "scheduler.step_dispatched"
    assert event["instance"] == "load[0]"
    assert event["service.name"] == "dagrun-test"
    assert event["log.level"] == "info"
    assert "@timestamp" in event


def test_level_filters(capsys):
    configure_logging(level="WARNING", json_format=True)
    logger = get_logger("dagrun.test")
    logger.info("hidden")
    logger.warning("shown")

    lines = capsys.readouterr().err.strip().splitlines()
    assert [json.loads(line)["event"] for line in lines] == ["shown"]


def test_log_context_binds_and_unbinds():
    with LogContext(run_id="r1"):
        assert structlog.contextvars.get_contextvars() == {"run_id": "r1"}
    assert "run_id" not in structlog.contextvars.get_contextvars()


def test_clear_context():
    bind_context(run_id="r1", step="a")
    clear_context()
    assert structlog.contextvars.get_contextvars() == {}


def test_bound_context_appears_in_events(capsys):
    configure_logging(level="INFO", json_format=True)
    with LogContext(run_id="r42"):
        get_logger("dagrun.test").info("scheduler.run_started")
    event = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert event["run_id"] == "r42"


def test_logger_name_in_events(capsys):
    configure_logging(level="INFO", json_format=True)
    get_logger("dagrun.orchestration.scheduler").info("scheduler.run_started")
    event = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert event["logger"] == "dagrun.orchestration.scheduler"


def test_module_logger_created_before_configure(capsys):
    """Loggers made at import time pick up a later configuration."""
    logger = get_logger("dagrun.early")
    configure_logging(level="DEBUG", json_format=True)
    logger.debug("store.transition", instance="a")
    event = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert event["event"] == "store.transition"
    assert event["logger"] == "dagrun.early"


def test_console_renderer_at_info(capsys):
    configure_logging(level="INFO", json_format=False)
    get_logger("dagrun.test").info("scheduler.run_created", step_count=2)
    assert "scheduler.run_created" in capsys.readouterr().err
