"""Retry orchestration for AI tasks.

Each attempt races the task's ``execute`` coroutine against a per-attempt
deadline and the caller's cancellation event. Whichever fires first decides
the outcome: a deadline yields a ``timeout`` error (that attempt only), the
cancellation event settles the whole task as ``cancelled`` immediately.

State machine per task::

    requesting -> success
    requesting -> retrying -> requesting -> ...
    requesting -> failure
    (any non-terminal) -> cancelled

Every transition is appended to the task's log, written to structlog as an
``ai_task_transition`` event and, when given, passed to the observer.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Generic, TypeVar

import httpx
import structlog

from feedgate.errors import TRUST_BOUNDARY_CODES, ErrorCode, ProxyError
from feedgate.models.ai import AiTaskErrorCode, AiTaskLog, AiTaskStatus, AiTaskType

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

log = structlog.get_logger()

T = TypeVar("T")

BASE_DELAY_MS = 700
RATE_LIMIT_DELAY_MS = 1200
MAX_JITTER_MS = 250

NEVER_RETRYABLE: frozenset[AiTaskErrorCode] = frozenset(
    {
        AiTaskErrorCode.CANCELLED,
        AiTaskErrorCode.AUTH,
        AiTaskErrorCode.INVALID_CONFIG,
        AiTaskErrorCode.EMPTY_RESULT,
    }
)
_RETRYABLE_BY_DEFAULT: frozenset[AiTaskErrorCode] = frozenset(
    {AiTaskErrorCode.TIMEOUT, AiTaskErrorCode.RATE_LIMIT, AiTaskErrorCode.NETWORK}
)


class AiTaskError(Exception):
    """Classified failure of an AI task attempt.

    ``retryable`` defaults per code and is forced off for codes that can
    never succeed on retry (cancelled, auth, invalid_config, empty_result).
    ``logs`` holds the task's transition log once the orchestrator gives up.
    """

    def __init__(
        self,
        code: AiTaskErrorCode,
        message: str,
        *,
        retryable: bool | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        if retryable is None:
            retryable = code in _RETRYABLE_BY_DEFAULT
        self.retryable = retryable and code not in NEVER_RETRYABLE
        self.http_status = http_status
        self.logs: list[AiTaskLog] = []


def cancelled_error() -> AiTaskError:
    return AiTaskError(AiTaskErrorCode.CANCELLED, "AI request cancelled.")


def classify_exception(exc: BaseException) -> AiTaskError:
    """Map an arbitrary attempt failure onto an AiTaskError."""
    if isinstance(exc, AiTaskError):
        return exc
    if isinstance(exc, ProxyError):
        if exc.code == ErrorCode.TOO_MANY_REQUESTS:
            code = AiTaskErrorCode.RATE_LIMIT
        elif exc.code == ErrorCode.UPSTREAM_TIMEOUT:
            code = AiTaskErrorCode.TIMEOUT
        elif exc.code == ErrorCode.EMPTY_RESULT:
            code = AiTaskErrorCode.EMPTY_RESULT
        elif exc.code in TRUST_BOUNDARY_CODES or exc.code == ErrorCode.INVALID_INPUT:
            code = AiTaskErrorCode.INVALID_CONFIG
        else:
            code = AiTaskErrorCode.NETWORK
        return AiTaskError(code, exc.message, http_status=exc.status)
    if isinstance(exc, (httpx.HTTPError, OSError)):
        return AiTaskError(AiTaskErrorCode.NETWORK, "AI request failed due to network error.")
    return AiTaskError(AiTaskErrorCode.PROVIDER, str(exc) or "AI provider failed.")


def compute_retry_delay(
    attempt: int, code: AiTaskErrorCode, rng: random.Random | None = None
) -> int:
    """Backoff in milliseconds after the zero-based ``attempt`` failed."""
    base = RATE_LIMIT_DELAY_MS if code == AiTaskErrorCode.RATE_LIMIT else BASE_DELAY_MS
    jitter = int((rng or random).random() * MAX_JITTER_MS)
    return base * 2**attempt + jitter


@dataclass
class TaskResult(Generic[T]):
    data: T
    logs: list[AiTaskLog] = field(default_factory=list)


@dataclass
class _TaskContext:
    task: AiTaskType
    entry_id: str
    cache_key: str | None
    on_log: Callable[[AiTaskLog], None] | None
    logs: list[AiTaskLog] = field(default_factory=list)

    def emit(
        self,
        status: AiTaskStatus,
        attempt: int,
        message: str,
        error: AiTaskError | None = None,
        retry_in_ms: int | None = None,
    ) -> None:
        entry = AiTaskLog(
            task=self.task,
            status=status,
            attempt=attempt,
            entry_id=self.entry_id,
            cache_key=self.cache_key,
            code=error.code if error else None,
            message=message,
            http_status=error.http_status if error else None,
            retry_in_ms=retry_in_ms,
            timestamp=datetime.now(UTC).isoformat(),
        )
        self.logs.append(entry)
        log.info("ai_task_transition", **entry.model_dump(exclude_none=True))
        if self.on_log is not None:
            self.on_log(entry)


class TaskRetryOrchestrator:
    """Runs AI task attempts with timeouts, backoff and cancellation.

    ``compute_delay`` is injectable so tests can run without real backoff.
    """

    def __init__(
        self,
        compute_delay: Callable[[int, AiTaskErrorCode], int] = compute_retry_delay,
    ) -> None:
        self._compute_delay = compute_delay

    async def run(
        self,
        *,
        task: AiTaskType,
        entry_id: str,
        execute: Callable[[], Awaitable[T]],
        max_retries: int,
        timeout_seconds: float,
        cancel: asyncio.Event | None = None,
        cache_key: str | None = None,
        on_log: Callable[[AiTaskLog], None] | None = None,
    ) -> TaskResult[T]:
        """Run ``execute`` until it succeeds, fails terminally or is cancelled.

        Raises AiTaskError carrying the last classified error and the log.
        """
        ctx = _TaskContext(task=task, entry_id=entry_id, cache_key=cache_key, on_log=on_log)
        attempt = 0

        while True:
            ctx.emit(AiTaskStatus.REQUESTING, attempt + 1, f"{task} request started.")
            try:
                data = await self._attempt(execute, timeout_seconds, cancel)
            except asyncio.CancelledError:
                ctx.emit(AiTaskStatus.CANCELLED, attempt + 1, "AI request cancelled.")
                raise
            except Exception as exc:
                error = classify_exception(exc)
            else:
                ctx.emit(AiTaskStatus.SUCCESS, attempt + 1, f"{task} request succeeded.")
                return TaskResult(data=data, logs=ctx.logs)

            if error.code == AiTaskErrorCode.CANCELLED:
                ctx.emit(AiTaskStatus.CANCELLED, attempt + 1, error.message, error)
                raise self._settle(error, ctx)

            if not error.retryable or attempt >= max_retries:
                ctx.emit(AiTaskStatus.FAILURE, attempt + 1, error.message, error)
                raise self._settle(error, ctx)

            retry_in_ms = self._compute_delay(attempt, error.code)
            ctx.emit(
                AiTaskStatus.RETRYING,
                attempt + 1,
                f"{error.message} Retrying.",
                error,
                retry_in_ms=retry_in_ms,
            )
            attempt += 1
            try:
                await _sleep(retry_in_ms, cancel)
            except AiTaskError as exc:
                ctx.emit(AiTaskStatus.CANCELLED, attempt, exc.message, exc)
                raise self._settle(exc, ctx) from error

    @staticmethod
    def _settle(error: AiTaskError, ctx: _TaskContext) -> AiTaskError:
        error.logs = ctx.logs
        return error

    @staticmethod
    async def _attempt(
        execute: Callable[[], Awaitable[T]],
        timeout_seconds: float,
        cancel: asyncio.Event | None,
    ) -> T:
        if cancel is not None and cancel.is_set():
            raise cancelled_error()

        attempt_task = asyncio.ensure_future(execute())
        waiters: set[asyncio.Future] = {attempt_task}
        cancel_waiter = None
        if cancel is not None:
            cancel_waiter = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_waiter)

        try:
            await asyncio.wait(
                waiters, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not attempt_task.done():
                # Aborts the in-flight network read.
                attempt_task.cancel()
                await asyncio.wait({attempt_task})

        if cancel is not None and cancel.is_set():
            raise cancelled_error()
        if attempt_task.cancelled():
            # Deadline expired before execute finished.
            raise AiTaskError(AiTaskErrorCode.TIMEOUT, "AI request timed out.")
        return attempt_task.result()


async def _sleep(delay_ms: int, cancel: asyncio.Event | None) -> None:
    """Backoff sleep that ends early with a cancelled error."""
    if cancel is None:
        await asyncio.sleep(delay_ms / 1000)
        return
    if cancel.is_set():
        raise cancelled_error()
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay_ms / 1000)
    except TimeoutError:
        return
    raise cancelled_error()
