"""Retry, polling and propagation-wait primitives.

All waits run in ticks of at most one second and check the run's
CancellationSignal on every tick, so an operator abort takes effect within
one tick instead of one full delay.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import RetryExhausted, SetupCancelled, is_transient
from .events import EventSink

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Longest single sleep between cancellation checks.
TICK_SECONDS = 1.0


class CancellationSignal:
    """Cooperative cancellation flag shared by the whole run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SetupCancelled()

    async def wait(self, seconds: float) -> None:
        """Sleep for up to ``seconds``; raise SetupCancelled as soon as cancelled."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise SetupCancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable``, abandoning it as soon as the run is cancelled.

        Raises:
            SetupCancelled: If cancelled before or while ``awaitable`` runs.
                The abandoned work is cancelled.
        """
        task = asyncio.ensure_future(awaitable)
        if self.is_set:
            task.cancel()
            raise SetupCancelled()
        cancelled = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait((task, cancelled), return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not task.done():
                task.cancel()
        if task.done():
            return task.result()
        raise SetupCancelled()


async def countdown(
    seconds: float,
    *,
    message: str,
    cancel: CancellationSignal | None = None,
    events: EventSink | None = None,
) -> None:
    """Wait ``seconds`` in ticks, emitting a WAIT event per tick."""
    signal = cancel or CancellationSignal()
    remaining = float(seconds)
    while remaining > 0:
        if events is not None:
            events.wait(message, remaining=remaining)
        tick = min(TICK_SECONDS, remaining)
        await signal.wait(tick)
        remaining -= tick
    signal.raise_if_cancelled()


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    operation_name: str,
    max_attempts: int = 5,
    delay_seconds: float = 3.0,
    cancel: CancellationSignal | None = None,
    retry_on: Callable[[BaseException], bool] = is_transient,
    events: EventSink | None = None,
) -> T:
    """Invoke ``operation`` until it succeeds or the attempt budget runs out.

    Args:
        operation: Zero-argument coroutine factory. Called once per attempt.
        operation_name: Human readable name used in events and errors.
        max_attempts: Total number of invocations allowed.
        delay_seconds: Fixed delay between attempts.
        cancel: Run-wide cancellation signal.
        retry_on: Predicate deciding whether a failure is worth another attempt.
            Failures it rejects propagate immediately and unwrapped.
        events: Optional sink for retry/wait progress.

    Returns:
        The first successful result.

    Raises:
        RetryExhausted: After ``max_attempts`` retryable failures, carrying the
            attempt count and the last underlying error.
        SetupCancelled: If cancelled before or during a wait.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 0
    while True:
        attempt += 1
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            return await operation()
        except SetupCancelled:
            raise
        except Exception as e:
            if not retry_on(e):
                raise
            logger.warning(
                "Operation attempt failed",
                extra={
                    "operation": operation_name,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "error": str(e),
                },
            )
            if attempt >= max_attempts:
                raise RetryExhausted(operation_name, max_attempts, e) from e
            if events is not None:
                events.warning(
                    f"Attempt {attempt}/{max_attempts} failed: {e}",
                    operation=operation_name,
                    attempt=attempt,
                )
        await countdown(
            delay_seconds,
            message=f"Retrying {operation_name}",
            cancel=cancel,
            events=events,
        )


async def poll_until(
    check: Callable[[], Awaitable[T]],
    is_ready: Callable[[T], bool],
    *,
    max_attempts: int = 10,
    delay_seconds: float = 2.0,
    cancel: CancellationSignal | None = None,
    description: str = "resource",
    events: EventSink | None = None,
) -> T | None:
    """Call ``check`` until ``is_ready`` accepts its result.

    Transient failures from ``check`` count as "not ready yet". Returns the
    accepted result, or None when the attempt budget runs out; the caller
    decides whether that is fatal.
    """
    for attempt in range(1, max_attempts + 1):
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            result = await check()
        except SetupCancelled:
            raise
        except Exception as e:
            if not is_transient(e):
                raise
            logger.debug(
                "Poll check failed transiently",
                extra={"description": description, "attempt": attempt, "error": str(e)},
            )
        else:
            if is_ready(result):
                return result

        if attempt < max_attempts:
            await countdown(
                delay_seconds,
                message=f"Waiting for {description} ({attempt}/{max_attempts})",
                cancel=cancel,
                events=events,
            )

    logger.warning(
        "Polling gave up",
        extra={"description": description, "max_attempts": max_attempts},
    )
    return None


async def propagation_wait(
    resource: str,
    seconds: float,
    *,
    cancel: CancellationSignal | None = None,
    events: EventSink | None = None,
) -> None:
    """Fixed wait for a visible resource to become usable."""
    if seconds <= 0:
        return
    if events is not None:
        events.step(f"Waiting {seconds:g}s for {resource} to propagate")
    await countdown(
        seconds,
        message=f"Waiting for {resource} propagation",
        cancel=cancel,
        events=events,
    )
