"""Tests for the operator CLI argument handling."""

import logging
import sys

import pytest

from mnemo import cli


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("MNEMO_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.chdir(tmp_path)
    yield
    # setup_logging attaches handlers on every call
    logger = logging.getLogger("mnemo")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def _run(monkeypatch, *args: str) -> int:
    monkeypatch.setattr(sys, "argv", ["mnemo", *args])
    return cli.main()


def test_no_command_prints_usage(monkeypatch, capsys):
    assert _run(monkeypatch) == 1
    assert "Usage: mnemo" in capsys.readouterr().out


def test_wrong_arguments(monkeypatch, capsys):
    assert _run(monkeypatch, "stats") == 1
    assert "Unknown command" in capsys.readouterr().out


def test_init_creates_database(monkeypatch, tmp_path, capsys):
    assert _run(monkeypatch, "--debug", "init") == 0
    assert (tmp_path / "data" / "mnemo.db").exists()
    assert (tmp_path / "data" / "mnemo.log").exists()
    assert "Created:" in capsys.readouterr().out
