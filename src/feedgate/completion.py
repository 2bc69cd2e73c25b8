"""OpenAI-compatible chat completion gateway.

Gateway failures (trust-boundary rejection, admission denial, transport
errors, non-2xx statuses, empty content) are folded into a
``CompletionResult`` with ``ok=False`` so the caller always receives a
structured record.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import structlog

from feedgate.errors import ErrorCode, ProxyError
from feedgate.models.ai import CompletionRequest, CompletionResult

if TYPE_CHECKING:
    from feedgate.admission import AdmissionController
    from feedgate.config import AiSettings
    from feedgate.fetcher import BoundedFetcher
    from feedgate.resolver import SafeURLResolver

log = structlog.get_logger()

COMPLETIONS_PATH = "/chat/completions"


def extract_completion_content(payload: Any) -> str:
    """Return the first choice's message text, or "" when there is none.

    Content may be a plain string or a list of parts; string ``text`` fields
    of the parts are newline-joined.
    """
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts = [
            part["text"]
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
        return "\n".join(texts).strip()
    return ""


def _error_text(payload: Any, status: int) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, str) and error:
            return error
        if isinstance(error, dict) and isinstance(error.get("message"), str) and error["message"]:
            return error["message"]
        if isinstance(payload.get("message"), str) and payload["message"]:
            return payload["message"]
    return f"AI request failed with status {status}"


class AiCompletionGateway:
    def __init__(
        self,
        resolver: SafeURLResolver,
        admission: AdmissionController,
        fetcher: BoundedFetcher,
        settings: AiSettings,
    ) -> None:
        self._resolver = resolver
        self._admission = admission
        self._fetcher = fetcher
        self._settings = settings

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        api_base = request.api_base.strip().rstrip("/")
        model = request.model.strip()
        if not api_base:
            return _failure(ProxyError(ErrorCode.INVALID_INPUT, "Missing apiBase"))
        if not model:
            return _failure(ProxyError(ErrorCode.INVALID_INPUT, "Missing model"))

        try:
            return await self._complete(request, api_base, model)
        except ProxyError as exc:
            log.warning(
                "ai_completion_failed",
                api_base=api_base,
                code=exc.code,
                status=exc.status,
                message=exc.message,
            )
            return _failure(exc)

    async def _complete(
        self, request: CompletionRequest, api_base: str, model: str
    ) -> CompletionResult:
        base_url = await self._resolver.resolve(api_base)
        endpoint = base_url.copy_with(path=base_url.path.rstrip("/") + COMPLETIONS_PATH)

        headers = {"Content-Type": "application/json"}
        if request.api_key:
            headers["Authorization"] = f"Bearer {request.api_key}"
        temperature = (
            request.temperature if request.temperature is not None else self._settings.temperature
        )
        body = {
            "model": model,
            "temperature": temperature,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt},
            ],
        }
        timeout = (
            request.timeout_ms / 1000 if request.timeout_ms else self._settings.timeout_seconds
        )

        with self._admission.slot(base_url.host):
            response = await self._fetcher.fetch(
                endpoint,
                method="POST",
                headers=headers,
                content=json.dumps(body),
                timeout_seconds=timeout,
                max_bytes=self._settings.max_response_bytes,
            )

        try:
            payload = json.loads(response.body)
        except ValueError:
            payload = None

        if not response.ok:
            error = _error_text(payload, response.status)
            log.warning("ai_completion_upstream_error", status=response.status, error=error)
            return CompletionResult(ok=False, status=response.status, error=error)

        content = extract_completion_content(payload)
        if not content:
            raise ProxyError(ErrorCode.EMPTY_RESULT, "AI returned empty completion content.")

        log.info("ai_completion_complete", model=model, content_length=len(content))
        return CompletionResult(ok=True, status=response.status, content=content)


def _failure(exc: ProxyError) -> CompletionResult:
    return CompletionResult(ok=False, status=exc.status, error=exc.message, code=exc.code)
