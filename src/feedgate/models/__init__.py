from __future__ import annotations

from feedgate.models.ai import (
    AiProbeRequest,
    AiProbeResult,
    AiProviderConfig,
    AiSummary,
    AiSummaryInput,
    AiSummaryRequest,
    AiTaskErrorCode,
    AiTaskErrorInfo,
    AiTaskLog,
    AiTaskResponse,
    AiTaskStatus,
    AiTaskType,
    AiTranslation,
    AiTranslationInput,
    AiTranslationRequest,
    CompletionRequest,
    CompletionResult,
)
from feedgate.models.cache import CachedImage
from feedgate.models.feeds import (
    CanonicalFeed,
    FeedEntry,
    FeedFetchResult,
    FeedInfo,
    HtmlFetchResult,
)
from feedgate.models.http import ProxiedResponse, StructuredTtsRequest, TtsProxyRequest

__all__ = [
    # feeds
    "FeedInfo",
    "FeedEntry",
    "CanonicalFeed",
    "FeedFetchResult",
    "HtmlFetchResult",
    # cache
    "CachedImage",
    # http
    "TtsProxyRequest",
    "StructuredTtsRequest",
    "ProxiedResponse",
    # ai
    "CompletionRequest",
    "CompletionResult",
    "AiTaskType",
    "AiTaskStatus",
    "AiTaskErrorCode",
    "AiTaskLog",
    "AiProviderConfig",
    "AiSummaryInput",
    "AiSummary",
    "AiTranslationInput",
    "AiTranslation",
    "AiProbeResult",
    "AiTaskErrorInfo",
    "AiSummaryRequest",
    "AiTranslationRequest",
    "AiProbeRequest",
    "AiTaskResponse",
]
