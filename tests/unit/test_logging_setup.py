"""Unit tests for JSON/text logging output and level selection."""

import json
import logging

import pytest

from bdg.logging_setup import log_with_context, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


@pytest.mark.unit
class TestLogLevels:
    def test_quiet_wins(self, tmp_path):
        setup_logging(level="DEBUG", quiet=True, log_file=tmp_path / "x.log")
        assert logging.getLogger().level == logging.ERROR

    def test_verbose(self, tmp_path):
        setup_logging(verbose=True, log_file=tmp_path / "x.log")
        assert logging.getLogger("bdg").level == logging.DEBUG

    def test_unknown_level_defaults_to_info(self, tmp_path):
        setup_logging(level="loud", log_file=tmp_path / "x.log")
        assert logging.getLogger().level == logging.INFO

    def test_websockets_never_below_info(self, tmp_path):
        setup_logging(verbose=True, log_file=tmp_path / "x.log")
        assert logging.getLogger("websockets").level == logging.INFO

    def test_handlers_not_duplicated(self, tmp_path):
        setup_logging(log_file=tmp_path / "x.log")
        setup_logging(log_file=tmp_path / "x.log")
        assert len(logging.getLogger().handlers) == 1


@pytest.mark.unit
class TestFormats:
    def test_json_lines_with_role_and_extra(self, tmp_path):
        log_file = tmp_path / "logs" / "daemon.log"
        setup_logging(format_type="json", level="INFO", log_file=log_file, process_role="daemon")

        log_with_context(logging.getLogger("bdg.daemon.server"), logging.INFO, "Daemon listening", socket="/tmp/s")
        logging.getLogger("bdg.daemon.server").debug("hidden")

        lines = log_file.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 1
        record = json.loads(lines[0])
        assert record["level"] == "INFO"
        assert record["logger"] == "bdg.daemon.server"
        assert record["role"] == "daemon"
        assert record["message"] == "Daemon listening"
        assert record["extra"] == {"socket": "/tmp/s"}

    def test_text_format(self, tmp_path):
        log_file = tmp_path / "worker.log"
        setup_logging(format_type="text", level="INFO", log_file=log_file, process_role="worker")

        logging.getLogger("bdg.daemon.worker").warning("CDP connection closed")

        line = log_file.read_text(encoding="utf-8").strip()
        assert "[WARNING] [worker] bdg.daemon.worker: CDP connection closed" in line
