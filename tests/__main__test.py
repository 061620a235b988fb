from __future__ import annotations

import logging
from pathlib import Path
from unittest.mock import patch

import pytest

from walk_cache import __main__
from walk_cache.cacheerrors import DirectoryUnavailable

CONFIG_PATH = "tests/test_config.ini"


@pytest.fixture(autouse=True)
def clear_database_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_PATH", raising=False)


def test_parse_args():
    args = __main__.parse_args(["config", "--loop"])
    assert args.config == "config"
    assert args.loop is True
    assert args.paths == []


def test_parse_args_defaults():
    args = __main__.parse_args(["config", "/srv/a", "/srv/b", "-r"])
    assert args.config == "config"
    assert args.paths == ["/srv/a", "/srv/b"]
    assert args.recursive is True
    assert args.loop is False
    assert args.restore is False
    assert args.history is False


def test_main_runs_config_directories():
    with patch("walk_cache.__main__.Scanner.run") as mock_run:
        result = __main__.main(cli_args=[CONFIG_PATH])

    assert result == 0
    mock_run.assert_called_once_with(
        ["tests/fixture", "tests/mock_directory"],
        recursive=True,
    )


def test_main_runs_given_paths():
    with patch("walk_cache.__main__.Scanner.run") as mock_run:
        result = __main__.main(cli_args=[CONFIG_PATH, "/srv/data"])

    assert result == 0
    mock_run.assert_called_once_with(["/srv/data"], recursive=True)


def test_main_loop():
    with patch("walk_cache.__main__.Scanner.run_loop") as mock_loop:
        result = __main__.main(cli_args=[CONFIG_PATH, "--loop"])

    assert result == 0
    assert mock_loop.call_count == 1


def test_main_restore():
    cli_args = [CONFIG_PATH, "/srv/a", "/srv/b", "--restore"]

    with patch("walk_cache.__main__.Scanner.restore_modified_dates") as mock_restore:
        result = __main__.main(cli_args=cli_args)

    assert result == 0
    assert [call.args for call in mock_restore.call_args_list] == [
        ("/srv/a",),
        ("/srv/b",),
    ]


def test_main_history_of_unknown_directory(capsys: pytest.CaptureFixture) -> None:
    result = __main__.main(cli_args=[CONFIG_PATH, "/srv/never-scanned", "--history"])

    assert result == 0
    assert capsys.readouterr().out == "/srv/never-scanned (unknown)\n"


def test_main_returns_one_on_transient_error():
    error = DirectoryUnavailable("/srv/data", "Permission denied")

    with patch("walk_cache.__main__.Scanner.run", side_effect=error):
        result = __main__.main(cli_args=[CONFIG_PATH, "/srv/data"])

    assert result == 1


def test_main_create_config():
    cli_args = ["tests/new_test_config.ini", "--make-config"]

    with patch("walk_cache.__main__.write_new_config") as mock_write:
        result = __main__.main(cli_args=cli_args)

    assert result == 0
    mock_write.assert_called_once_with("tests/new_test_config.ini")


def test_main_creates_log_file_with_config():
    cli_args = [CONFIG_PATH, "--log-file"]

    try:
        with patch("walk_cache.__main__.Scanner.run") as mock_run:
            result = __main__.main(cli_args=cli_args)

        assert result == 0
        assert mock_run.call_count == 1
        assert Path("tests/test_config.log").exists()

    finally:
        for handler in logging.root.handlers[:]:
            if isinstance(handler, logging.FileHandler):
                handler.close()
                logging.root.handlers.remove(handler)

        Path("tests/test_config.log").unlink(missing_ok=True)
