"""Tests for command execution, logging and signal handling."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from pathlib import Path

import pytest

from provisioner.errors import DirectoryApiError, SetupCancelled
from provisioner.events import EventSink
from provisioner.main import JsonFormatter, execute, setup_logging
from provisioner.retry import CancellationSignal


class TestExecute:
    """Tests for execute() exit codes."""

    def test_success(self, tmp_path: Path) -> None:
        async def work(cancel: CancellationSignal, events: EventSink) -> None:
            events.success("done")

        assert execute("test", work, log_file=tmp_path / "run.log") == 0

    def test_setup_error_exit_code(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        async def work(cancel: CancellationSignal, events: EventSink) -> None:
            raise DirectoryApiError("Graph API POST failed: Conflict", 409, "Request_MultipleObjectsWithSameKeyValue")

        assert execute("test", work, log_file=tmp_path / "run.log") == 20

        err = capsys.readouterr().err
        assert "Graph API Error" in err
        assert "HTTP status: 409" in err
        assert str(tmp_path / "run.log") in err

    def test_unexpected_error(self, tmp_path: Path) -> None:
        async def work(cancel: CancellationSignal, events: EventSink) -> None:
            raise RuntimeError("bug")

        assert execute("test", work, log_file=tmp_path / "run.log") == 1

    def test_first_signal_cancels_cooperatively(self, tmp_path: Path) -> None:
        observed: list[bool] = []

        async def work(cancel: CancellationSignal, events: EventSink) -> None:
            os.kill(os.getpid(), signal.SIGINT)
            try:
                await cancel.wait(5)
            except SetupCancelled:
                observed.append(cancel.is_set)
                raise

        assert execute("test", work, log_file=tmp_path / "run.log") == 130
        assert observed == [True]

    def test_second_signal_cancels_hard(self, tmp_path: Path) -> None:
        async def work(cancel: CancellationSignal, events: EventSink) -> None:
            os.kill(os.getpid(), signal.SIGINT)
            await asyncio.sleep(0.05)
            os.kill(os.getpid(), signal.SIGINT)
            # Ignores the CancellationSignal
            await asyncio.sleep(5)

        assert execute("test", work, log_file=tmp_path / "run.log") == 130


class TestLogging:
    """Tests for JSON logging."""

    def test_json_formatter_includes_extra(self) -> None:
        record = logging.LogRecord("provisioner.test", logging.INFO, __file__, 1, "Created", None, None)
        record.app_id = "app-1"

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Created"
        assert data["level"] == "INFO"
        assert data["app_id"] == "app-1"
        assert data["timestamp"].endswith("Z")

    def test_setup_logging_writes_file(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "run.log"

        assert setup_logging(log_file=log_file) == log_file
        logging.getLogger("provisioner.test").info("hello", extra={"phase": "auth"})

        for handler in logging.getLogger().handlers:
            handler.flush()
        line = json.loads(log_file.read_text().splitlines()[-1])
        assert line["message"] == "hello"
        assert line["phase"] == "auth"

    def test_setup_logging_replaces_own_handlers(self, tmp_path: Path) -> None:
        setup_logging(log_file=tmp_path / "a.log")
        setup_logging(log_file=tmp_path / "b.log")

        own = [h for h in logging.getLogger().handlers if getattr(h, "_provisioner", False)]
        assert len(own) == 2
