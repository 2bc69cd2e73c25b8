"""Unit tests for feedgate.completion."""

from __future__ import annotations

import json

import httpx
import pytest
import respx

from feedgate.admission import AdmissionController
from feedgate.completion import AiCompletionGateway, extract_completion_content
from feedgate.config import AiSettings
from feedgate.errors import ErrorCode
from feedgate.fetcher import BoundedFetcher
from feedgate.models.ai import CompletionRequest
from feedgate.resolver import SafeURLResolver

ENDPOINT = "https://api.example/v1/chat/completions"


@pytest.fixture()
def gateway(
    resolver: SafeURLResolver, admission: AdmissionController, fetcher: BoundedFetcher
) -> AiCompletionGateway:
    return AiCompletionGateway(resolver, admission, fetcher, AiSettings())


def _request(**overrides: object) -> CompletionRequest:
    fields: dict[str, object] = {
        "api_base": "https://api.example/v1/",
        "api_key": "sk-test",
        "model": "gpt-test",
        "system_prompt": "Be brief.",
        "user_prompt": "Summarise this.",
    }
    return CompletionRequest(**(fields | overrides))


def _reply(content: object) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class TestExtractCompletionContent:
    def test_string_content(self) -> None:
        assert extract_completion_content(_reply("  hello  ")) == "hello"

    def test_list_of_parts(self) -> None:
        parts = [{"type": "text", "text": "a"}, {"type": "image"}, {"type": "text", "text": "b"}]
        assert extract_completion_content(_reply(parts)) == "a\nb"

    @pytest.mark.parametrize("payload", [None, [], {}, {"choices": []}, _reply(None)])
    def test_missing_content(self, payload: object) -> None:
        assert extract_completion_content(payload) == ""


class TestComplete:
    async def test_success(self, gateway: AiCompletionGateway) -> None:
        with respx.mock:
            route = respx.post(ENDPOINT).mock(
                return_value=httpx.Response(200, json=_reply("Done."))
            )
            result = await gateway.complete(_request(temperature=0.5))

        assert result.ok
        assert result.status == 200
        assert result.content == "Done."

        sent = route.calls.last.request
        assert sent.headers["authorization"] == "Bearer sk-test"
        body = json.loads(sent.content)
        assert body["model"] == "gpt-test"
        assert body["temperature"] == 0.5
        assert body["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Summarise this."},
        ]

    async def test_default_temperature_and_no_key(self, gateway: AiCompletionGateway) -> None:
        with respx.mock:
            route = respx.post(ENDPOINT).mock(return_value=httpx.Response(200, json=_reply("ok")))
            await gateway.complete(_request(api_key=None))
        sent = route.calls.last.request
        assert "authorization" not in sent.headers
        assert json.loads(sent.content)["temperature"] == 0.2

    async def test_empty_content_is_failure(self, gateway: AiCompletionGateway) -> None:
        with respx.mock:
            respx.post(ENDPOINT).mock(return_value=httpx.Response(200, json=_reply("   ")))
            result = await gateway.complete(_request())
        assert not result.ok
        assert result.code == ErrorCode.EMPTY_RESULT
        assert result.error == "AI returned empty completion content."

    async def test_upstream_error_status_and_message(self, gateway: AiCompletionGateway) -> None:
        with respx.mock:
            respx.post(ENDPOINT).mock(
                return_value=httpx.Response(
                    429, json={"error": {"message": "Rate limit reached", "type": "requests"}}
                )
            )
            result = await gateway.complete(_request())
        assert not result.ok
        assert result.status == 429
        assert result.error == "Rate limit reached"
        assert result.code is None

    async def test_non_json_error_body(self, gateway: AiCompletionGateway) -> None:
        with respx.mock:
            respx.post(ENDPOINT).mock(return_value=httpx.Response(500, text="<html>oops</html>"))
            result = await gateway.complete(_request())
        assert result.status == 500
        assert result.error == "AI request failed with status 500"

    async def test_blocked_api_base(self, gateway: AiCompletionGateway) -> None:
        result = await gateway.complete(_request(api_base="http://127.0.0.1:11434/v1"))
        assert not result.ok
        assert result.status == 403
        assert result.code == ErrorCode.URL_BLOCKED

    async def test_timeout_folded_into_result(self, gateway: AiCompletionGateway) -> None:
        with respx.mock:
            respx.post(ENDPOINT).mock(side_effect=httpx.ReadTimeout("slow"))
            result = await gateway.complete(_request())
        assert result.status == 408
        assert result.code == ErrorCode.UPSTREAM_TIMEOUT

    @pytest.mark.parametrize(
        ("overrides", "message"),
        [({"api_base": " "}, "Missing apiBase"), ({"model": ""}, "Missing model")],
    )
    async def test_missing_fields(
        self, gateway: AiCompletionGateway, overrides: dict[str, str], message: str
    ) -> None:
        result = await gateway.complete(_request(**overrides))
        assert result.status == 400
        assert result.error == message

    async def test_admission_denied(
        self, gateway: AiCompletionGateway, admission: AdmissionController
    ) -> None:
        for _ in range(admission.host_limit):
            admission.acquire("api.example")
        result = await gateway.complete(_request())
        assert result.status == 429
        assert result.code == ErrorCode.TOO_MANY_REQUESTS
