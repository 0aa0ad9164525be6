import logging
import os

import pytest

from finance_categorizer.logger import ColourizedFormatter, get_logging_config


def make_record(level: int = logging.WARNING) -> logging.LogRecord:
    return logging.LogRecord("finance_categorizer.test", level, __file__, 1, "budget at %s%%", (80,), None)


def test_formatter_colours_level_name_without_touching_record() -> None:
    formatter = ColourizedFormatter("%(levelname)s %(message)s", use_colors=True)
    record = make_record()

    output = formatter.format(record)

    assert output == "\x1b[33mWARNING\x1b[0m budget at 80%"
    assert record.levelname == "WARNING"


def test_formatter_without_colours() -> None:
    formatter = ColourizedFormatter("%(levelname)s %(message)s", use_colors=False)

    assert formatter.format(make_record(logging.ERROR)) == "ERROR budget at 80%"


def test_no_color_disables_colours(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NO_COLOR", "1")

    assert ColourizedFormatter("%(message)s").use_colors is False


def test_logging_config_levels(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("LOG_CLIENT_LEVEL", "error")
    monkeypatch.delenv("LOG_DIR", raising=False)

    config = get_logging_config()

    assert config["loggers"][""] == {"handlers": ["console"], "level": "DEBUG"}
    assert config["loggers"]["openai"]["level"] == "ERROR"
    assert config["loggers"]["httpx"]["propagate"] is False
    assert "file" not in config["handlers"]


def test_logging_config_adds_rotating_file_handler(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    log_dir = tmp_path / "logs"
    monkeypatch.setenv("LOG_DIR", str(log_dir))

    config = get_logging_config()

    handler = config["handlers"]["file"]
    assert handler["class"] == "logging.handlers.RotatingFileHandler"
    assert handler["filename"] == os.path.join(str(log_dir), "categorizer.log")
    assert handler["formatter"] == "plain"
    assert config["loggers"][""]["handlers"] == ["console", "file"]
    assert log_dir.is_dir()
