"""Handlers for tts-request and the structured provider route."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from feedgate.errors import ErrorCode, ProxyError
from feedgate.models.http import TtsProxyRequest
from feedgate.tts import parse_structured_body

if TYPE_CHECKING:
    from feedgate.models.http import ProxiedResponse
    from feedgate.state import AppState


def _check_body_size(body: bytes, state: AppState) -> None:
    if len(body) > state.settings.tts.json_body_max_bytes:
        raise ProxyError(ErrorCode.PAYLOAD_TOO_LARGE, "Request body too large")


async def handle(body: bytes, state: AppState) -> ProxiedResponse:
    """Dispatch a JSON tts-request record."""
    log = structlog.get_logger().bind(operation="tts_request")
    _check_body_size(body, state)
    try:
        request = TtsProxyRequest.model_validate_json(body or b"{}")
    except ValidationError as exc:
        raise ProxyError(ErrorCode.INVALID_INPUT, "Invalid TTS request record") from exc
    log.info("handler_called", url=request.url, method=request.method)
    return await state.tts.handle(request)


async def handle_structured(body: bytes, state: AppState) -> ProxiedResponse:
    log = structlog.get_logger().bind(operation="tts_structured")
    log.info("handler_called", body_bytes=len(body))
    _check_body_size(body, state)
    return await state.tts.structured(parse_structured_body(body))
