"""Unit tests for feedgate.ai."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import aiosqlite
import httpx
import pytest
import respx

from feedgate.ai import (
    AiTaskService,
    build_summary_cache_key,
    build_translation_cache_key,
    classify_completion,
    detect_language,
    parse_json_content,
    parse_summary_result,
    parse_translation_result,
    truncate,
)
from feedgate.cache import ResultCache
from feedgate.completion import AiCompletionGateway
from feedgate.config import AiSettings, CacheSettings
from feedgate.models.ai import (
    AiProviderConfig,
    AiSummaryInput,
    AiTaskErrorCode,
    AiTaskStatus,
    AiTaskType,
    AiTranslationInput,
    CompletionResult,
)
from feedgate.tasks import AiTaskError, TaskRetryOrchestrator

if TYPE_CHECKING:
    from pathlib import Path

    from feedgate.admission import AdmissionController
    from feedgate.fetcher import BoundedFetcher
    from feedgate.resolver import SafeURLResolver

ENDPOINT = "https://api.example/v1/chat/completions"
CONFIG = AiProviderConfig(api_base="https://api.example/v1", api_key="sk-test", model="GPT-Test")

SUMMARY_REPLY = json.dumps(
    {
        "summary": "Rust 2.0 ships.",
        "keyPoints": ["Faster builds", "New editions", "Better errors", "Extra"],
        "sentiment": "Positive",
        "questions": ["When?", "Why?", "How?"],
    }
)


def _reply(content: str) -> dict:
    return {"choices": [{"message": {"content": content}}]}


def _no_delay(attempt: int, code: AiTaskErrorCode) -> int:
    return 0


@pytest.fixture()
def service(
    resolver: SafeURLResolver,
    admission: AdmissionController,
    fetcher: BoundedFetcher,
    result_cache: ResultCache,
) -> AiTaskService:
    settings = AiSettings()
    completion = AiCompletionGateway(resolver, admission, fetcher, settings)
    return AiTaskService(
        completion,
        TaskRetryOrchestrator(compute_delay=_no_delay),
        result_cache,
        settings,
        CacheSettings(),
    )


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestCacheKeys:
    def test_summary_key(self) -> None:
        assert build_summary_cache_key("e1", " GPT-4o ") == "summary:e1:openai-compatible:gpt-4o:en"

    def test_summary_key_blank_model(self) -> None:
        assert build_summary_cache_key("e1", "", "zh") == "summary:e1:openai-compatible:default:zh"

    def test_translation_key(self) -> None:
        assert build_translation_cache_key("e1", "m", "ja", "bullet") == (
            "translation:e1:openai-compatible:m:ja:bullet"
        )


class TestTruncate:
    def test_short_text_untouched(self) -> None:
        assert truncate("abc", 3) == "abc"

    def test_long_text_within_limit(self) -> None:
        result = truncate("word " * 100, 20)
        assert len(result) <= 20
        assert result.endswith("...")


class TestParseJsonContent:
    def test_strict_json(self) -> None:
        assert parse_json_content('{"a": 1}') == {"a": 1}

    def test_object_inside_fences(self) -> None:
        content = 'Here you go:\n```json\n{"summary": "x"}\n```'
        assert parse_json_content(content) == {"summary": "x"}

    @pytest.mark.parametrize("content", ["", "no json here", "[1, 2]", "{broken"])
    def test_unusable(self, content: str) -> None:
        assert parse_json_content(content) is None


class TestDetectLanguage:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("Hello world", "en"),
            ("これはテストです", "ja"),
            ("안녕하세요", "ko"),
            ("这是一个测试", "zh"),
            ("AI 模型的发布", "zh"),
        ],
    )
    def test_scripts(self, text: str, expected: str) -> None:
        assert detect_language(text) == expected


class TestParseSummaryResult:
    def test_full_reply(self) -> None:
        summary = parse_summary_result(SUMMARY_REPLY, "gpt-test")
        assert summary.summary == "Rust 2.0 ships."
        assert summary.key_points == ["Faster builds", "New editions", "Better errors"]
        assert summary.sentiment == "Positive"
        assert summary.questions == ["When?", "Why?"]
        assert summary.model == "gpt-test"

    def test_defaults_for_missing_fields(self) -> None:
        summary = parse_summary_result('{"summary": "Just this."}', "m")
        assert summary.key_points == ["No key points returned."]
        assert summary.sentiment == "Neutral"
        assert summary.questions == ["What should be validated next?"]

    def test_plain_text_reply_used_as_summary(self) -> None:
        assert parse_summary_result("A plain answer.", "m").summary == "A plain answer."

    def test_summary_truncated(self) -> None:
        summary = parse_summary_result(json.dumps({"summary": "x" * 1000}), "m")
        assert len(summary.summary) <= 320

    def test_empty_summary_raises(self) -> None:
        with pytest.raises(AiTaskError) as exc_info:
            parse_summary_result('{"summary": "   "}', "m")
        assert exc_info.value.code == AiTaskErrorCode.EMPTY_RESULT


class TestParseTranslationResult:
    def _input(self, **overrides: str) -> AiTranslationInput:
        return AiTranslationInput(**({"id": "e1", "target_language": "zh"} | overrides))

    def test_full_reply(self) -> None:
        content = json.dumps(
            {"text": "你好", "sourceLanguage": "en", "targetLanguage": "zh", "outputStyle": "full"}
        )
        translation = parse_translation_result(content, self._input(), "m")
        assert translation.text == "你好"
        assert translation.bullets is None
        assert translation.source_language == "en"
        assert translation.target_language == "zh"

    def test_unknown_languages_fall_back(self) -> None:
        content = json.dumps({"text": "Bonjour", "sourceLanguage": "xx", "targetLanguage": "??"})
        translation = parse_translation_result(
            content, self._input(target_language="fr", source_language="en"), "m"
        )
        assert translation.source_language == "en"
        assert translation.target_language == "fr"

    def test_bullets_from_reply(self) -> None:
        content = json.dumps({"text": "ignored", "bullets": ["one", " ", "two"]})
        translation = parse_translation_result(content, self._input(output_style="bullet"), "m")
        assert translation.bullets == ["one", "two"]
        assert translation.text == "one\ntwo"

    def test_bullets_from_text_lines(self) -> None:
        lines = "\n".join(f"line {i}" for i in range(10))
        content = json.dumps({"text": lines, "outputStyle": "bullet"})
        translation = parse_translation_result(content, self._input(), "m")
        assert translation.output_style == "bullet"
        assert translation.bullets == [f"line {i}" for i in range(6)]

    def test_empty_raises(self) -> None:
        with pytest.raises(AiTaskError) as exc_info:
            parse_translation_result('{"text": ""}', self._input(), "m")
        assert exc_info.value.code == AiTaskErrorCode.EMPTY_RESULT


class TestClassifyCompletion:
    @pytest.mark.parametrize(
        ("status", "expected", "retryable"),
        [
            (401, AiTaskErrorCode.AUTH, False),
            (403, AiTaskErrorCode.AUTH, False),
            (429, AiTaskErrorCode.RATE_LIMIT, True),
            (500, AiTaskErrorCode.PROVIDER, True),
            (408, AiTaskErrorCode.PROVIDER, True),
            (400, AiTaskErrorCode.PROVIDER, False),
        ],
    )
    def test_upstream_statuses(
        self, status: int, expected: AiTaskErrorCode, retryable: bool
    ) -> None:
        error = classify_completion(CompletionResult(ok=False, status=status, error="x"))
        assert error.code == expected
        assert error.retryable is retryable
        assert error.http_status == status

    @pytest.mark.parametrize(
        ("code", "status", "expected"),
        [
            ("URL_BLOCKED", 403, AiTaskErrorCode.INVALID_CONFIG),
            ("INVALID_INPUT", 400, AiTaskErrorCode.INVALID_CONFIG),
            ("TOO_MANY_REQUESTS", 429, AiTaskErrorCode.RATE_LIMIT),
            ("UPSTREAM_TIMEOUT", 408, AiTaskErrorCode.TIMEOUT),
            ("EMPTY_RESULT", 502, AiTaskErrorCode.EMPTY_RESULT),
            ("UPSTREAM_ERROR", 502, AiTaskErrorCode.NETWORK),
        ],
    )
    def test_gateway_codes(self, code: str, status: int, expected: AiTaskErrorCode) -> None:
        result = CompletionResult(ok=False, status=status, error="x", code=code)
        assert classify_completion(result).code == expected


# ---------------------------------------------------------------------------
# AiTaskService
# ---------------------------------------------------------------------------


class TestGenerateSummary:
    async def test_generates_and_caches(
        self, service: AiTaskService, result_cache: ResultCache
    ) -> None:
        data = AiSummaryInput(id="e1", title="Rust", content="<p>Rust 2.0 is out.</p>")
        with respx.mock:
            route = respx.post(ENDPOINT).mock(
                return_value=httpx.Response(200, json=_reply(SUMMARY_REPLY))
            )
            summary = await service.generate_summary(data, CONFIG)
            again = await service.generate_summary(data, CONFIG)

        assert summary.summary == "Rust 2.0 ships."
        assert summary.model == "GPT-Test"
        assert again == summary
        assert route.call_count == 1

        prompt = json.loads(route.calls.last.request.content)["messages"][1]["content"]
        assert "Title: Rust" in prompt
        assert "Content: Rust 2.0 is out." in prompt
        assert "Output language: en (English)" in prompt

        cached = await result_cache.get(build_summary_cache_key("e1", "GPT-Test"))
        assert cached is not None

    async def test_force_skips_cache_read(self, service: AiTaskService) -> None:
        data = AiSummaryInput(id="e1")
        with respx.mock:
            route = respx.post(ENDPOINT).mock(
                return_value=httpx.Response(200, json=_reply(SUMMARY_REPLY))
            )
            await service.generate_summary(data, CONFIG)
            await service.generate_summary(data, CONFIG, force=True)
        assert route.call_count == 2

    async def test_retries_then_succeeds(self, service: AiTaskService) -> None:
        statuses: list[AiTaskStatus] = []
        with respx.mock:
            respx.post(ENDPOINT).mock(
                side_effect=[
                    httpx.Response(503, json={"error": "overloaded"}),
                    httpx.Response(200, json=_reply(SUMMARY_REPLY)),
                ]
            )
            await service.generate_summary(
                AiSummaryInput(id="e2"),
                CONFIG,
                on_log=lambda entry: statuses.append(entry.status),
            )
        assert statuses == [
            AiTaskStatus.REQUESTING,
            AiTaskStatus.RETRYING,
            AiTaskStatus.REQUESTING,
            AiTaskStatus.SUCCESS,
        ]

    async def test_auth_failure_not_retried(self, service: AiTaskService) -> None:
        with respx.mock:
            route = respx.post(ENDPOINT).mock(
                return_value=httpx.Response(401, json={"error": {"message": "Invalid key"}})
            )
            with pytest.raises(AiTaskError) as exc_info:
                await service.generate_summary(AiSummaryInput(id="e3"), CONFIG)
        assert route.call_count == 1
        assert exc_info.value.code == AiTaskErrorCode.AUTH
        assert exc_info.value.message == "Invalid key"

    async def test_missing_model_is_invalid_config(self, service: AiTaskService) -> None:
        with pytest.raises(AiTaskError) as exc_info:
            await service.generate_summary(
                AiSummaryInput(id="e4"), CONFIG.model_copy(update={"model": " "})
            )
        assert exc_info.value.code == AiTaskErrorCode.INVALID_CONFIG

    async def test_cache_write_failure_still_returns_result(
        self, service: AiTaskService, result_cache: ResultCache
    ) -> None:
        original_execute = result_cache._db.execute

        async def failing_execute(sql, *args, **kwargs):
            if sql.startswith("INSERT"):
                raise aiosqlite.OperationalError("disk full")
            return await original_execute(sql, *args, **kwargs)

        result_cache._db.execute = failing_execute  # type: ignore[assignment]
        with respx.mock:
            respx.post(ENDPOINT).mock(return_value=httpx.Response(200, json=_reply(SUMMARY_REPLY)))
            summary = await service.generate_summary(AiSummaryInput(id="e5"), CONFIG)
        result_cache._db.execute = original_execute  # type: ignore[assignment]

        assert summary.summary == "Rust 2.0 ships."

    async def test_closed_cache_still_returns_result(
        self,
        resolver: SafeURLResolver,
        admission: AdmissionController,
        fetcher: BoundedFetcher,
        tmp_path: Path,
    ) -> None:
        db = await aiosqlite.connect(str(tmp_path / "closed.db"))
        cache = ResultCache(db)
        await cache.init_db()
        await db.close()

        settings = AiSettings()
        closed_service = AiTaskService(
            AiCompletionGateway(resolver, admission, fetcher, settings),
            TaskRetryOrchestrator(compute_delay=_no_delay),
            cache,
            settings,
            CacheSettings(),
        )
        with respx.mock:
            respx.post(ENDPOINT).mock(return_value=httpx.Response(200, json=_reply(SUMMARY_REPLY)))
            summary = await closed_service.generate_summary(
                AiSummaryInput(id="e6"), CONFIG, force=True
            )
        assert summary.summary == "Rust 2.0 ships."

    async def test_mismatched_cached_payload_is_a_miss(
        self, service: AiTaskService, result_cache: ResultCache
    ) -> None:
        key = build_summary_cache_key("e7", "GPT-Test")
        await result_cache.set(key, "e7", AiTaskType.SUMMARY, {"summary": "stale"}, 24)
        with respx.mock:
            route = respx.post(ENDPOINT).mock(
                return_value=httpx.Response(200, json=_reply(SUMMARY_REPLY))
            )
            summary = await service.generate_summary(AiSummaryInput(id="e7"), CONFIG)

        assert route.call_count == 1
        assert summary.summary == "Rust 2.0 ships."
        stored = await result_cache.get(key)
        assert stored is not None
        assert stored["summary"] == "Rust 2.0 ships."


class TestGenerateTranslation:
    async def test_translation_cached_per_style(self, service: AiTaskService) -> None:
        reply = json.dumps({"text": "你好，世界", "sourceLanguage": "en", "targetLanguage": "zh"})
        data = AiTranslationInput(id="e1", target_language="zh", content="Hello, world")
        with respx.mock:
            route = respx.post(ENDPOINT).mock(return_value=httpx.Response(200, json=_reply(reply)))
            first = await service.generate_translation(data, CONFIG)
            await service.generate_translation(data, CONFIG)
            await service.generate_translation(
                data.model_copy(update={"output_style": "brief"}), CONFIG
            )

        assert first.text == "你好，世界"
        assert first.output_style == "full"
        assert route.call_count == 2

    async def test_unknown_style_normalised(self, service: AiTaskService) -> None:
        data = AiTranslationInput(id="e2", target_language="fr", output_style="poem")
        with respx.mock:
            route = respx.post(ENDPOINT).mock(
                return_value=httpx.Response(200, json=_reply('{"text": "Bonjour"}'))
            )
            translation = await service.generate_translation(data, CONFIG)
        prompt = json.loads(route.calls.last.request.content)["messages"][1]["content"]
        assert "Output style: full" in prompt
        assert translation.output_style == "full"


class TestProbeConnection:
    async def test_probe_reports_model_and_latency(self, service: AiTaskService) -> None:
        with respx.mock:
            respx.post(ENDPOINT).mock(return_value=httpx.Response(200, json=_reply("pong")))
            result = await service.probe_connection(CONFIG)
        assert result.model == "GPT-Test"
        assert result.latency_ms >= 0

    async def test_probe_never_retries(self, service: AiTaskService) -> None:
        with respx.mock:
            route = respx.post(ENDPOINT).mock(return_value=httpx.Response(503))
            with pytest.raises(AiTaskError):
                await service.probe_connection(CONFIG)
        assert route.call_count == 1
