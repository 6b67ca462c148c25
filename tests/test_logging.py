"""Tests for the package-level log location."""

from __future__ import annotations

import logging
from pathlib import Path

import mj_ledger


def test_log_dir_defaults_to_hidden_folder_in_working_directory(tmp_path):
    assert mj_ledger.resolve_log_dir(environ={}, cwd=tmp_path) == tmp_path / ".logs"


def test_log_dir_honours_environment_override(tmp_path):
    target = tmp_path / "logs"

    resolved = mj_ledger.resolve_log_dir(environ={mj_ledger.LOG_DIR_ENV: str(target)}, cwd=Path("/elsewhere"))

    assert resolved == target


def test_console_only_reports_warnings():
    console = [
        handler
        for handler in mj_ledger.log.handlers
        if type(handler) is logging.StreamHandler
    ]

    assert [handler.level for handler in console] == [logging.WARNING]
    assert mj_ledger.LOG_FILE.name == "mj_ledger.log"
