"""Command execution: logging setup, signal handling and exit codes.

Every CLI command runs its async work through ``execute``, which:
- writes a JSON-lines log file per command invocation
- turns SIGINT/SIGTERM into the run's CancellationSignal (a second signal
  cancels the task outright)
- maps SetupError subclasses to their exit codes and renders the error
  banner; anything else exits 1
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path

from . import console
from .config import DEFAULT_LOG_DIR
from .errors import EXIT_SUCCESS, EXIT_UNEXPECTED, SetupCancelled, SetupError
from .events import EventSink
from .retry import CancellationSignal

logger = logging.getLogger(__name__)

Work = Callable[[CancellationSignal, EventSink], Awaitable[None]]

# LogRecord attributes that are not user-supplied `extra` fields
_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON lines for the per-command log file."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def default_log_path(command: str) -> Path:
    timestamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    return DEFAULT_LOG_DIR / f"{command}-{timestamp}.log"


def setup_logging(verbose: bool = False, log_file: Path | None = None) -> Path | None:
    """Configure the root logger.

    The log file receives everything at DEBUG as JSON lines. stderr gets
    plain WARNING+ records, or DEBUG with ``verbose``.

    Returns:
        The log file path actually in use, or None if it could not be opened.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if getattr(handler, "_provisioner", False):
            root_logger.removeHandler(handler)
            handler.close()
    root_logger.setLevel(logging.DEBUG)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    stderr_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    stderr_handler._provisioner = True  # type: ignore[attr-defined]
    root_logger.addHandler(stderr_handler)

    active_log: Path | None = None
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            logger.warning("Could not open log file", extra={"path": str(log_file), "error": str(e)})
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(JsonFormatter())
            file_handler._provisioner = True  # type: ignore[attr-defined]
            root_logger.addHandler(file_handler)
            active_log = log_file

    # Reduce noise from Azure SDK and HTTP stack
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return active_log


async def _run_with_signals(work: Work, events: EventSink) -> None:
    cancel = CancellationSignal()
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    installed: list[signal.Signals] = []

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        if cancel.is_set and task is not None:
            task.cancel()
            return
        cancel.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)

    try:
        await work(cancel, events)
    except asyncio.CancelledError as e:
        raise SetupCancelled() from e
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def execute(
    command: str,
    work: Work,
    *,
    verbose: bool = False,
    log_file: Path | None = None,
) -> int:
    """Run ``work`` and return the process exit code."""
    active_log = setup_logging(verbose, log_file or default_log_path(command))

    events = EventSink()
    events.subscribe(console.ConsolePresenter(verbose=verbose))

    logger.info("Command started", extra={"command": command})
    try:
        asyncio.run(_run_with_signals(work, events))
    except SetupError as e:
        logger.error(
            "Command failed",
            extra={"command": command, "error_type": type(e).__name__, "exit_code": e.exit_code},
            exc_info=verbose,
        )
        console.render_error(e, active_log)
        return e.exit_code
    except Exception as e:
        logger.exception("Unexpected failure", extra={"command": command})
        console.render_error(e, active_log)
        return EXIT_UNEXPECTED

    logger.info("Command finished", extra={"command": command})
    return EXIT_SUCCESS
