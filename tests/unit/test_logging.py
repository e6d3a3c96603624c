"""Unit tests for logging and error output."""

import logging
from pathlib import Path

import pytest

import gupload


def log_path() -> Path:
    return Path.home() / ".gupload" / "gupload.log"


class TestSetupLogging:
    """Test handler configuration."""

    def test_log_file_created(self):
        gupload.setup_logging(verbosity=0)
        gupload.logger.info("upload started")

        for handler in gupload.logger.handlers:
            handler.flush()
        text = log_path().read_text()
        assert "Logging initialized (verbosity=0)" in text
        assert "upload started" in text

    def test_console_quiet_by_default(self):
        gupload.setup_logging(verbosity=0, log_file=False)

        (console,) = gupload.logger.handlers
        assert console.level == logging.WARNING
        assert gupload.logger.level == logging.DEBUG

    def test_debug_reaches_log_file_when_quiet(self):
        gupload.setup_logging(verbosity=0)
        gupload.logger.debug("resumable session saved")

        for handler in gupload.logger.handlers:
            handler.flush()
        assert "resumable session saved" in log_path().read_text()

    @pytest.mark.parametrize("verbosity", [1, 2])
    def test_verbose_console(self, verbosity):
        gupload.setup_logging(verbosity=verbosity, log_file=False)

        (console,) = gupload.logger.handlers
        assert console.level == logging.DEBUG

    def test_logger_names_at_vv(self):
        gupload.setup_logging(verbosity=2, log_file=False)

        (console,) = gupload.logger.handlers
        assert "%(name)s" in console.formatter._fmt

    def test_repeated_setup_replaces_handlers(self):
        gupload.setup_logging(verbosity=0)
        gupload.setup_logging(verbosity=1)

        assert len(gupload.logger.handlers) == 2

    def test_verbose_flag_logs_debug(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="gupload"):
            result = gupload.main(["-v", "account", "list"])

        assert result == 0
        assert any(record.levelno == logging.DEBUG for record in caplog.records)


class TestErrorOutput:
    """Test die() and colored output."""

    def test_die_prints_message_and_hint(self, capsys):
        code = gupload.die("Something broke", hint="Try again later", exit_code=3)

        assert code == 3
        err = capsys.readouterr().err
        assert "Error: Something broke" in err
        assert "Hint: Try again later" in err

    def test_die_is_logged(self, caplog):
        with caplog.at_level(logging.ERROR, logger="gupload"):
            gupload.die("Something broke")

        assert "Exited with code 1: Something broke" in caplog.text

    def test_no_color_when_not_tty(self, capsys):
        assert gupload.colorize("ok", "GREEN") == "ok"

    def test_no_color_env(self, monkeypatch):
        monkeypatch.setenv("NO_COLOR", "1")

        assert gupload.use_color() is False

    def test_forced_color(self):
        assert gupload.colorize("ok", "green", force=True) == f"{gupload.Colors.GREEN}ok{gupload.Colors.RESET}"

    @pytest.mark.parametrize(
        "size,expected",
        [(0, "0.0B"), (1023, "1023.0B"), (1024, "1.0KB"), (5 * 1024 * 1024, "5.0MB")],
    )
    def test_format_bytes(self, size, expected):
        assert gupload.format_bytes(size) == expected
