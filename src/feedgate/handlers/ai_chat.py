"""Handler for ai-chat-completion.

Always answers with a CompletionResult; gateway failures arrive as
``ok=False`` records rather than exceptions.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from feedgate.errors import ErrorCode, ProxyError
from feedgate.models.ai import CompletionRequest

if TYPE_CHECKING:
    from feedgate.models.ai import CompletionResult
    from feedgate.state import AppState


async def handle(body: bytes, state: AppState) -> CompletionResult:
    log = structlog.get_logger().bind(operation="ai_chat_completion")
    try:
        request = CompletionRequest.model_validate_json(body or b"{}")
    except ValidationError as exc:
        raise ProxyError(ErrorCode.INVALID_INPUT, "Invalid completion request") from exc
    log.info("handler_called", api_base=request.api_base, model=request.model)
    return await state.completion.complete(request)
