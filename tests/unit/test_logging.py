"""Unit tests for logging setup."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from sshfanout.logger import configure_logging, get_logger, parse_log_level


@pytest.fixture
def restore_logging() -> Iterator[None]:
    """Put the root logger and structlog back the way the test found them."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    asyncssh_level = logging.getLogger("asyncssh").level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger("asyncssh").setLevel(asyncssh_level)
    structlog.reset_defaults()


class TestParseLogLevel:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [("debug", logging.DEBUG), ("INFO", logging.INFO), ("Warning", logging.WARNING), (40, logging.ERROR)],
    )
    def test_valid_levels(self, value: str | int, expected: int) -> None:
        assert parse_log_level(value) == expected

    def test_invalid_level(self) -> None:
        with pytest.raises(ValueError, match="Invalid log level: loud"):
            parse_log_level("loud")


@pytest.mark.usefixtures("restore_logging")
class TestConfigureLogging:
    def test_console_handler_only(self) -> None:
        configure_logging(logging.INFO)

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.INFO
        assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)

    def test_file_receives_json_lines(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "sshfanout.log"
        configure_logging(logging.WARNING, log_file, logging.DEBUG, colors=False)

        get_logger("sshfanout.test", execution_id="abc").info("Batch started", total=3)

        record = json.loads(log_file.read_text().splitlines()[-1])
        assert record["event"] == "Batch started"
        assert record["level"] == "info"
        assert record["logger"] == "sshfanout.test"
        assert record["execution_id"] == "abc"
        assert record["total"] == 3
        assert "timestamp" in record
        assert "hostname" in record
        assert logging.getLogger().level == logging.DEBUG

    def test_file_level_filters(self, tmp_path: Path) -> None:
        log_file = tmp_path / "sshfanout.log"
        configure_logging(logging.WARNING, log_file, logging.ERROR, colors=False)

        log = get_logger("sshfanout.test")
        log.warning("not in file")
        log.error("in file")

        lines = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert [line["event"] for line in lines] == ["in file"]

    def test_stdlib_records_are_rendered(self, tmp_path: Path) -> None:
        log_file = tmp_path / "sshfanout.log"
        configure_logging(logging.WARNING, log_file, logging.DEBUG, colors=False)

        logging.getLogger("uvicorn.error").warning("Started server process")

        record = json.loads(log_file.read_text().splitlines()[-1])
        assert record["event"] == "Started server process"
        assert record["level"] == "warning"

    def test_asyncssh_is_quieted(self) -> None:
        configure_logging(logging.DEBUG)

        assert logging.getLogger("asyncssh").level == logging.WARNING

    def test_reconfiguring_replaces_handlers(self) -> None:
        configure_logging(logging.INFO)
        configure_logging(logging.DEBUG)

        assert len(logging.getLogger().handlers) == 1
