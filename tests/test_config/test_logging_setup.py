import json

import structlog

from codeloop.config import Config
from codeloop.logging import configure_logging, get_logger, set_log_sink


def _configure_with_sink(level: str, fmt: str) -> list[str]:
    lines: list[str] = []
    cfg = Config()
    cfg.logging.level = level
    cfg.logging.format = fmt
    set_log_sink(lines.append)
    configure_logging(cfg)
    return lines


def test_json_logs_reach_sink_at_configured_level():
    try:
        lines = _configure_with_sink("WARNING", "json")
        log = get_logger("codeloop.tests.json")
        log.info("Executing tool", tool="lookup")
        log.warning("Tool timed out", tool="slow", timeout=1)
    finally:
        set_log_sink(None)
        structlog.reset_defaults()

    assert len(lines) == 1
    payload = json.loads(lines[0])
    assert payload["event"] == "Tool timed out"
    assert payload["level"] == "warning"
    assert payload["tool"] == "slow"
    assert payload["timeout"] == 1
    assert "timestamp" in payload


def test_console_format_writes_plain_lines_to_sink():
    try:
        lines = _configure_with_sink("debug", "console")
        get_logger("codeloop.tests.console").debug("Agent iteration", iteration=2)
    finally:
        set_log_sink(None)
        structlog.reset_defaults()

    assert len(lines) == 1
    assert "Agent iteration" in lines[0]
    assert "iteration" in lines[0]
