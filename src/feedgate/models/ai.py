from __future__ import annotations

from enum import StrEnum

from pydantic import Field

from feedgate.models.http import CallerRecord


class CompletionRequest(CallerRecord):
    api_base: str = ""
    api_key: str | None = None
    model: str = ""
    system_prompt: str = ""
    user_prompt: str = ""
    temperature: float | None = None
    timeout_ms: int | None = Field(default=None, gt=0)


class CompletionResult(CallerRecord):
    ok: bool
    status: int
    content: str | None = None
    error: str | None = None
    code: str | None = None  # ErrorCode of the failure, when the gateway produced it


class AiTaskType(StrEnum):
    SUMMARY = "summary"
    TRANSLATION = "translation"
    PROBE = "probe"


class AiTaskStatus(StrEnum):
    REQUESTING = "requesting"
    SUCCESS = "success"
    RETRYING = "retrying"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class AiTaskErrorCode(StrEnum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    EMPTY_RESULT = "empty_result"
    NETWORK = "network"
    INVALID_CONFIG = "invalid_config"
    CANCELLED = "cancelled"
    PROVIDER = "provider"


class AiTaskLog(CallerRecord):
    """One state transition of an AI task."""

    task: AiTaskType
    status: AiTaskStatus
    attempt: int
    entry_id: str
    cache_key: str | None = None
    code: AiTaskErrorCode | None = None
    message: str
    http_status: int | None = None
    retry_in_ms: int | None = None
    timestamp: str


class AiProviderConfig(CallerRecord):
    api_base: str = ""
    api_key: str = ""
    model: str = ""
    timeout_ms: int | None = None


class AiSummaryInput(CallerRecord):
    id: str
    title: str = ""
    content: str = ""
    summary: str = ""
    target_language: str = "en"


class AiSummary(CallerRecord):
    summary: str
    key_points: list[str]
    sentiment: str
    questions: list[str]
    model: str
    created_at: str


class AiTranslationInput(CallerRecord):
    id: str
    title: str = ""
    content: str = ""
    summary: str = ""
    source_language: str = "auto"
    target_language: str
    output_style: str = "full"


class AiTranslation(CallerRecord):
    text: str
    bullets: list[str] | None = None
    source_language: str
    target_language: str
    output_style: str
    model: str
    created_at: str


class AiProbeResult(CallerRecord):
    model: str
    latency_ms: int


class AiTaskErrorInfo(CallerRecord):
    code: AiTaskErrorCode
    message: str
    retryable: bool
    http_status: int | None = None


class AiSummaryRequest(CallerRecord):
    config: AiProviderConfig
    input: AiSummaryInput
    force: bool = False
    max_retries: int | None = Field(default=None, ge=0)


class AiTranslationRequest(CallerRecord):
    config: AiProviderConfig
    input: AiTranslationInput
    force: bool = False
    max_retries: int | None = Field(default=None, ge=0)


class AiProbeRequest(CallerRecord):
    config: AiProviderConfig


class AiTaskResponse(CallerRecord):
    """Outcome of an AI task run, with every state transition it went through."""

    ok: bool
    result: AiSummary | AiTranslation | AiProbeResult | None = None
    error: AiTaskErrorInfo | None = None
    logs: list[AiTaskLog] = []
