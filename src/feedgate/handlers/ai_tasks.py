"""Handlers for the AI summary, translation and connection-probe flows.

Each returns an AiTaskResponse carrying the transition log. A classified
task failure becomes ``ok=False`` with the error details; it is not raised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeVar

import structlog
from pydantic import ValidationError

from feedgate.errors import ErrorCode, ProxyError
from feedgate.models.ai import (
    AiProbeRequest,
    AiSummaryRequest,
    AiTaskErrorCode,
    AiTaskErrorInfo,
    AiTaskResponse,
    AiTranslationRequest,
)
from feedgate.tasks import AiTaskError

if TYPE_CHECKING:
    import asyncio

    from pydantic import BaseModel

    from feedgate.models.ai import AiTaskLog
    from feedgate.state import AppState

M = TypeVar("M", bound="BaseModel")

# HTTP status used when a task fails without an upstream status of its own.
ERROR_STATUS: dict[AiTaskErrorCode, int] = {
    AiTaskErrorCode.TIMEOUT: 408,
    AiTaskErrorCode.RATE_LIMIT: 429,
    AiTaskErrorCode.AUTH: 401,
    AiTaskErrorCode.EMPTY_RESULT: 502,
    AiTaskErrorCode.NETWORK: 502,
    AiTaskErrorCode.INVALID_CONFIG: 400,
    AiTaskErrorCode.CANCELLED: 499,
    AiTaskErrorCode.PROVIDER: 502,
}


def response_status(response: AiTaskResponse) -> int:
    if response.ok or response.error is None:
        return 200
    return response.error.http_status or ERROR_STATUS[response.error.code]


def _parse(model: type[M], body: bytes) -> M:
    try:
        return model.model_validate_json(body or b"{}")
    except ValidationError as exc:
        raise ProxyError(ErrorCode.INVALID_INPUT, "Invalid AI task request") from exc


def _failed(exc: AiTaskError) -> AiTaskResponse:
    return AiTaskResponse(
        ok=False,
        error=AiTaskErrorInfo(
            code=exc.code,
            message=exc.message,
            retryable=exc.retryable,
            http_status=exc.http_status,
        ),
        logs=exc.logs,
    )


async def summary(
    body: bytes, state: AppState, cancel: asyncio.Event | None = None
) -> AiTaskResponse:
    request = _parse(AiSummaryRequest, body)
    structlog.get_logger().bind(operation="ai_summary").info(
        "handler_called", entry_id=request.input.id, force=request.force
    )
    logs: list[AiTaskLog] = []
    try:
        result = await state.ai_tasks.generate_summary(
            request.input,
            request.config,
            max_retries=request.max_retries,
            force=request.force,
            cancel=cancel,
            on_log=logs.append,
        )
    except AiTaskError as exc:
        return _failed(exc)
    return AiTaskResponse(ok=True, result=result, logs=logs)


async def translation(
    body: bytes, state: AppState, cancel: asyncio.Event | None = None
) -> AiTaskResponse:
    request = _parse(AiTranslationRequest, body)
    structlog.get_logger().bind(operation="ai_translation").info(
        "handler_called",
        entry_id=request.input.id,
        target_language=request.input.target_language,
        force=request.force,
    )
    logs: list[AiTaskLog] = []
    try:
        result = await state.ai_tasks.generate_translation(
            request.input,
            request.config,
            max_retries=request.max_retries,
            force=request.force,
            cancel=cancel,
            on_log=logs.append,
        )
    except AiTaskError as exc:
        return _failed(exc)
    return AiTaskResponse(ok=True, result=result, logs=logs)


async def probe(
    body: bytes, state: AppState, cancel: asyncio.Event | None = None
) -> AiTaskResponse:
    request = _parse(AiProbeRequest, body)
    structlog.get_logger().bind(operation="ai_probe").info(
        "handler_called", model=request.config.model
    )
    try:
        result = await state.ai_tasks.probe_connection(request.config, cancel=cancel)
    except AiTaskError as exc:
        return _failed(exc)
    return AiTaskResponse(ok=True, result=result)
