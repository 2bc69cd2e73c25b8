"""AI summary, translation and connection-probe flows.

Each flow builds a prompt, runs the completion through the retry
orchestrator and parses the model's JSON reply into a result record.
Summaries and translations are read from and written to the result cache;
``force`` skips the cache read but still refreshes the stored result.
"""

from __future__ import annotations

import json
import re
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from pydantic import ValidationError

from feedgate.errors import TRUST_BOUNDARY_CODES, ErrorCode
from feedgate.feeds import strip_markup
from feedgate.models.ai import (
    AiProbeResult,
    AiSummary,
    AiTaskErrorCode,
    AiTaskType,
    AiTranslation,
    CompletionRequest,
)
from feedgate.tasks import AiTaskError

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Callable

    from feedgate.completion import AiCompletionGateway
    from feedgate.config import AiSettings, CacheSettings
    from feedgate.models.ai import (
        AiProviderConfig,
        AiSummaryInput,
        AiTaskLog,
        AiTranslationInput,
        CompletionResult,
    )
    from feedgate.protocols import ResultCacheProtocol
    from feedgate.tasks import TaskRetryOrchestrator

log = structlog.get_logger()

CachedT = TypeVar("CachedT", AiSummary, AiTranslation)

PROVIDER_NAME = "openai-compatible"
PROBE_ENTRY_ID = "__ai_probe__"

CONTENT_PROMPT_LIMIT = 9000
SUMMARY_PROMPT_LIMIT = 1200
SUMMARY_RESULT_LIMIT = 320
TRANSLATION_RESULT_LIMIT = 5000

LANGUAGE_NAMES: dict[str, str] = {
    "en": "English",
    "zh": "Chinese",
    "ja": "Japanese",
    "ko": "Korean",
    "fr": "French",
    "de": "German",
    "es": "Spanish",
}
OUTPUT_STYLES: frozenset[str] = frozenset({"full", "brief", "bullet"})

SUMMARY_SYSTEM_PROMPT = (
    "You are an assistant that produces concise article summaries. "
    "Output strict JSON only, no markdown."
)
TRANSLATION_SYSTEM_PROMPT = (
    "You are an assistant that translates article content. Keep meaning accurate. "
    "Output strict JSON only, no markdown."
)
PROBE_SYSTEM_PROMPT = "You are a connection probe. Reply with one short word."

_KANA = re.compile(r"[\u3040-\u30ff]")
_HANGUL = re.compile(r"[\uac00-\ud7af]")
_CJK = re.compile(r"[\u4e00-\u9fff]")
_LATIN = re.compile(r"[A-Za-z]")


# ---------------------------------------------------------------------------
# Cache keys
# ---------------------------------------------------------------------------


def _model_key(model: str) -> str:
    return (model or "default").strip().lower()


def build_summary_cache_key(
    entry_id: str, model: str, target_language: str = "en", provider: str = PROVIDER_NAME
) -> str:
    return f"summary:{entry_id}:{provider}:{_model_key(model)}:{target_language}"


def build_translation_cache_key(
    entry_id: str,
    model: str,
    target_language: str,
    output_style: str,
    provider: str = PROVIDER_NAME,
) -> str:
    return (
        f"translation:{entry_id}:{provider}:{_model_key(model)}:{target_language}:{output_style}"
    )


# ---------------------------------------------------------------------------
# Prompt construction and result parsing
# ---------------------------------------------------------------------------


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3].strip() + "..."


def parse_json_content(content: str) -> dict[str, Any] | None:
    """Parse a model reply as a JSON object.

    Tries the whole reply first, then the slice between the first ``{`` and
    the last ``}`` to tolerate prose or code fences around the object.
    """
    if not content:
        return None
    try:
        parsed = json.loads(content)
    except ValueError:
        first, last = content.find("{"), content.rfind("}")
        if first == -1 or last <= first:
            return None
        try:
            parsed = json.loads(content[first : last + 1])
        except ValueError:
            return None
    return parsed if isinstance(parsed, dict) else None


def detect_language(text: str) -> str:
    """Guess a supported language code from the script of ``text``."""
    if _KANA.search(text):
        return "ja"
    if _HANGUL.search(text):
        return "ko"
    if len(_CJK.findall(text)) > len(_LATIN.findall(text)):
        return "zh"
    return "en"


def normalize_language(value: Any, fallback: str) -> str:
    normalized = value.strip().lower() if isinstance(value, str) else ""
    return normalized if normalized in LANGUAGE_NAMES else fallback


def normalize_output_style(value: Any, fallback: str) -> str:
    normalized = value.strip().lower() if isinstance(value, str) else ""
    return normalized if normalized in OUTPUT_STYLES else fallback


def _string_list(value: Any, limit: int, fallback: list[str]) -> list[str]:
    if not isinstance(value, list):
        return fallback
    items = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return items[:limit] or fallback


def _article_lines(title: str, summary: str, content: str) -> list[str]:
    return [
        f"Title: {title}",
        f"Feed Summary: {truncate(summary, SUMMARY_PROMPT_LIMIT)}",
        f"Content: {truncate(strip_markup(content), CONTENT_PROMPT_LIMIT)}",
    ]


def build_summary_prompt(data: AiSummaryInput) -> str:
    language = data.target_language or "en"
    language_name = LANGUAGE_NAMES.get(language, language.upper())
    return "\n\n".join(
        [
            *_article_lines(data.title, data.summary, data.content),
            f"Output language: {language} ({language_name})",
            "Return JSON only with keys: summary, keyPoints, sentiment, questions.",
            "summary should be concise and practical. keyPoints should contain 3 bullets. "
            "questions should contain 2 follow-up questions.",
            "All returned text values must be written in the output language.",
        ]
    )


def build_translation_prompt(data: AiTranslationInput) -> str:
    return "\n\n".join(
        [
            *_article_lines(data.title, data.summary, data.content),
            f"Target language: {data.target_language}",
            f"Output style: {data.output_style}",
            "Return JSON only with keys: text, bullets, sourceLanguage, targetLanguage, "
            "outputStyle.",
            "If outputStyle is bullet, provide bullets as an array and text as a "
            "newline-joined form.",
        ]
    )


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def parse_summary_result(content: str, model: str) -> AiSummary:
    parsed = parse_json_content(content) or {}
    raw = parsed.get("summary")
    text = raw.strip() if isinstance(raw, str) else content.strip()
    summary = truncate(text, SUMMARY_RESULT_LIMIT)
    if not summary:
        raise AiTaskError(AiTaskErrorCode.EMPTY_RESULT, "AI returned empty summary.")
    sentiment = parsed.get("sentiment")
    if not isinstance(sentiment, str) or not sentiment.strip():
        sentiment = "Neutral"
    return AiSummary(
        summary=summary,
        key_points=_string_list(parsed.get("keyPoints"), 3, ["No key points returned."]),
        sentiment=sentiment.strip(),
        questions=_string_list(parsed.get("questions"), 2, ["What should be validated next?"]),
        model=model,
        created_at=_now_iso(),
    )


def parse_translation_result(content: str, data: AiTranslationInput, model: str) -> AiTranslation:
    parsed = parse_json_content(content) or {}
    output_style = normalize_output_style(parsed.get("outputStyle"), data.output_style)
    source_fallback = (
        data.source_language
        if data.source_language and data.source_language != "auto"
        else detect_language(content)
    )
    raw_text = parsed.get("text")
    text = truncate(
        raw_text.strip() if isinstance(raw_text, str) else content.strip(),
        TRANSLATION_RESULT_LIMIT,
    )

    bullets = None
    if output_style == "bullet":
        bullets = _string_list(parsed.get("bullets"), 6, []) or [
            line.strip() for line in text.splitlines() if line.strip()
        ][:6]
        text = "\n".join(bullets) or text
    if not text:
        raise AiTaskError(AiTaskErrorCode.EMPTY_RESULT, "AI returned empty translation.")

    return AiTranslation(
        text=text,
        bullets=bullets,
        source_language=normalize_language(parsed.get("sourceLanguage"), source_fallback),
        target_language=normalize_language(parsed.get("targetLanguage"), data.target_language),
        output_style=output_style,
        model=model,
        created_at=_now_iso(),
    )


def classify_completion(result: CompletionResult) -> AiTaskError:
    """Map a failed completion result onto a classified task error."""
    message = (result.error or "").strip()
    status = result.status
    if result.code is not None:
        code = ErrorCode(result.code)
        if code in TRUST_BOUNDARY_CODES or code == ErrorCode.INVALID_INPUT:
            return AiTaskError(AiTaskErrorCode.INVALID_CONFIG, message, http_status=status)
        if code == ErrorCode.TOO_MANY_REQUESTS:
            return AiTaskError(AiTaskErrorCode.RATE_LIMIT, message, http_status=status)
        if code == ErrorCode.UPSTREAM_TIMEOUT:
            return AiTaskError(AiTaskErrorCode.TIMEOUT, "AI request timed out.", http_status=status)
        if code == ErrorCode.EMPTY_RESULT:
            return AiTaskError(AiTaskErrorCode.EMPTY_RESULT, message, http_status=status)
        return AiTaskError(
            AiTaskErrorCode.NETWORK,
            message or "AI request failed due to network issues.",
            http_status=status,
        )

    if status in (401, 403):
        return AiTaskError(
            AiTaskErrorCode.AUTH, message or "AI authentication failed.", http_status=status
        )
    if status == 429:
        return AiTaskError(
            AiTaskErrorCode.RATE_LIMIT, message or "AI rate limit reached.", http_status=status
        )
    return AiTaskError(
        AiTaskErrorCode.PROVIDER,
        message or f"AI request failed with status {status}.",
        retryable=status >= 500 or status == 408,
        http_status=status,
    )


# ---------------------------------------------------------------------------
# Task service
# ---------------------------------------------------------------------------


class AiTaskService:
    """Runs the AI flows on top of the completion gateway and orchestrator."""

    def __init__(
        self,
        completion: AiCompletionGateway,
        orchestrator: TaskRetryOrchestrator,
        cache: ResultCacheProtocol | None,
        settings: AiSettings,
        cache_settings: CacheSettings,
    ) -> None:
        self._completion = completion
        self._orchestrator = orchestrator
        self._cache = cache
        self._settings = settings
        self._cache_settings = cache_settings

    def _normalize_config(self, config: AiProviderConfig) -> AiProviderConfig:
        timeout_ms = config.timeout_ms
        if not timeout_ms or timeout_ms <= 0:
            timeout_ms = int(self._settings.timeout_seconds * 1000)
        return config.model_copy(
            update={
                "api_base": config.api_base.strip() or self._settings.default_api_base,
                "api_key": config.api_key.strip(),
                "model": config.model.strip(),
                "timeout_ms": timeout_ms,
            }
        )

    async def _request(self, config: AiProviderConfig, system_prompt: str, user_prompt: str) -> str:
        if not config.model:
            raise AiTaskError(AiTaskErrorCode.INVALID_CONFIG, "AI model is required.")
        result = await self._completion.complete(
            CompletionRequest(
                api_base=config.api_base,
                api_key=config.api_key or None,
                model=config.model,
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                temperature=self._settings.temperature,
                timeout_ms=config.timeout_ms,
            )
        )
        if not result.ok:
            raise classify_completion(result)
        content = (result.content or "").strip()
        if not content:
            raise AiTaskError(AiTaskErrorCode.EMPTY_RESULT, "AI returned empty completion content.")
        return content

    async def generate_summary(
        self,
        data: AiSummaryInput,
        config: AiProviderConfig,
        *,
        max_retries: int | None = None,
        cache_key: str | None = None,
        force: bool = False,
        cancel: asyncio.Event | None = None,
        on_log: Callable[[AiTaskLog], None] | None = None,
    ) -> AiSummary:
        config = self._normalize_config(config)
        key = cache_key or build_summary_cache_key(data.id, config.model, data.target_language)
        if not force:
            cached = await self._lookup(key, AiSummary)
            if cached is not None:
                return cached

        async def execute() -> AiSummary:
            content = await self._request(config, SUMMARY_SYSTEM_PROMPT, build_summary_prompt(data))
            return parse_summary_result(content, config.model)

        result = await self._orchestrator.run(
            task=AiTaskType.SUMMARY,
            entry_id=data.id,
            execute=execute,
            max_retries=self._settings.max_retries if max_retries is None else max_retries,
            timeout_seconds=config.timeout_ms / 1000,
            cancel=cancel,
            cache_key=key,
            on_log=on_log,
        )
        await self._store(key, data.id, AiTaskType.SUMMARY, result.data.model_dump())
        return result.data

    async def generate_translation(
        self,
        data: AiTranslationInput,
        config: AiProviderConfig,
        *,
        max_retries: int | None = None,
        cache_key: str | None = None,
        force: bool = False,
        cancel: asyncio.Event | None = None,
        on_log: Callable[[AiTaskLog], None] | None = None,
    ) -> AiTranslation:
        config = self._normalize_config(config)
        data = data.model_copy(
            update={"output_style": normalize_output_style(data.output_style, "full")}
        )
        key = cache_key or build_translation_cache_key(
            data.id, config.model, data.target_language, data.output_style
        )
        if not force:
            cached = await self._lookup(key, AiTranslation)
            if cached is not None:
                return cached

        async def execute() -> AiTranslation:
            content = await self._request(
                config, TRANSLATION_SYSTEM_PROMPT, build_translation_prompt(data)
            )
            return parse_translation_result(content, data, config.model)

        result = await self._orchestrator.run(
            task=AiTaskType.TRANSLATION,
            entry_id=data.id,
            execute=execute,
            max_retries=self._settings.max_retries if max_retries is None else max_retries,
            timeout_seconds=config.timeout_ms / 1000,
            cancel=cancel,
            cache_key=key,
            on_log=on_log,
        )
        await self._store(key, data.id, AiTaskType.TRANSLATION, result.data.model_dump())
        return result.data

    async def probe_connection(
        self, config: AiProviderConfig, *, cancel: asyncio.Event | None = None
    ) -> AiProbeResult:
        """Single attempt, no retries: report the model and round-trip latency."""
        config = self._normalize_config(config)
        started = time.perf_counter()
        await self._orchestrator.run(
            task=AiTaskType.PROBE,
            entry_id=PROBE_ENTRY_ID,
            execute=lambda: self._request(config, PROBE_SYSTEM_PROMPT, "ping"),
            max_retries=0,
            timeout_seconds=config.timeout_ms / 1000,
            cancel=cancel,
        )
        latency_ms = max(0, round((time.perf_counter() - started) * 1000))
        return AiProbeResult(model=config.model, latency_ms=latency_ms)

    async def _store(
        self, key: str, entry_id: str, task: AiTaskType, payload: dict[str, Any]
    ) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.set(key, entry_id, task, payload, self._cache_settings.ttl_hours)
        except Exception:
            log.warning("result_cache_write_error", cache_key=key, exc_info=True)

    async def _lookup(self, key: str, record: type[CachedT]) -> CachedT | None:
        """Return the cached record for ``key``; unreadable rows count as a miss."""
        if self._cache is None:
            return None
        cached = await self._cache.get(key)
        if cached is None:
            return None
        try:
            result = record.model_validate(cached)
        except ValidationError:
            log.warning("result_cache_invalid_entry", cache_key=key, exc_info=True)
            return None
        log.debug("ai_result_cache_hit", cache_key=key)
        return result
