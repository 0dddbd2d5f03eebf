# tests/test_logging_setup.py
"""
Tests for root logger configuration.
"""
import logging
from pathlib import Path

import pytest

from aiwg_workspace.config import AppSettings
from aiwg_workspace.logging_setup import resolve_log_file, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def make_settings(tmp_path: Path, **logging_overrides) -> AppSettings:
    return AppSettings(logging=logging_overrides, workspace={"root": tmp_path / ".aiwg"})


class TestSetupLogging:
    def test_console_only_by_default(self, tmp_path: Path):
        assert setup_logging(make_settings(tmp_path)) is None
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert len(root.handlers) == 1

    def test_verbose_forces_debug(self, tmp_path: Path):
        setup_logging(make_settings(tmp_path, level="WARNING"), verbose=True)
        assert logging.getLogger().level == logging.DEBUG

    def test_file_logging_under_workspace(self, tmp_path: Path):
        settings = make_settings(tmp_path, log_to_file=True, log_file="logs/ws.log")
        log_path = setup_logging(settings)

        assert log_path == tmp_path / ".aiwg" / "logs" / "ws.log"
        logging.getLogger("aiwg_workspace.test").info("hello")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "hello" in log_path.read_text()

    def test_absolute_log_file_kept(self, tmp_path: Path):
        target = tmp_path / "elsewhere.log"
        assert resolve_log_file(make_settings(tmp_path, log_file=str(target))) == target

    def test_missing_section_falls_back(self):
        assert setup_logging(object()) is None
