"""Text-to-speech gateway.

Two entry points share the admission and bounded-fetch pipeline:

- ``proxy`` relays an arbitrary request to a resolved TTS endpoint and
  returns the upstream status, headers and bytes under the audio cap.
- ``structured`` drives the DashScope (Qwen) multimodal-generation API:
  submit text, receive either an audio URL or inline base64 audio. A returned
  URL is treated as untrusted and goes back through the resolver before it
  is fetched.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import TYPE_CHECKING

import structlog

from feedgate.errors import ErrorCode, ProxyError
from feedgate.models.http import ProxiedResponse, StructuredTtsRequest

if TYPE_CHECKING:
    from feedgate.admission import AdmissionController
    from feedgate.config import TtsSettings
    from feedgate.fetcher import BoundedFetcher
    from feedgate.models.http import TtsProxyRequest
    from feedgate.resolver import SafeURLResolver

log = structlog.get_logger()

# Sentinel URL that selects the structured provider flow.
STRUCTURED_PROVIDER_PATH = "/fetch/tts/qwen"
GENERATION_PATH = "/services/aigc/multimodal-generation/generation"

_OPENAI_PATH_MARKERS = ("/chat/completions", "/audio/speech", "/responses")
_BODYLESS_METHODS = frozenset({"GET", "HEAD"})
_ERROR_DETAIL_LIMIT = 240


def normalize_provider_base(value: str | None, default: str) -> str:
    """Return the API base to use for the structured provider.

    Blank input falls back to ``default``. So does a base that looks like an
    OpenAI-compatible endpoint, which this provider does not speak.
    """
    normalized = (value or "").strip().rstrip("/")
    if not normalized:
        return default
    lowered = normalized.lower()
    if "/api-openai/" in lowered or any(marker in lowered for marker in _OPENAI_PATH_MARKERS):
        log.info("tts_api_base_substituted", requested=normalized, used=default)
        return default
    return normalized


def audio_type_for_format(audio_format: str | None) -> str:
    normalized = (audio_format or "").lower()
    if "mp3" in normalized:
        return "audio/mpeg"
    if "opus" in normalized or "ogg" in normalized:
        return "audio/ogg"
    return "audio/wav"


def upstream_error_detail(body: bytes) -> str:
    """Pull a human-readable message out of an upstream error body."""
    raw = body.decode("utf-8", errors="replace")
    if not raw:
        return ""
    try:
        parsed = json.loads(raw)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        for key in ("message", "code"):
            value = parsed.get(key)
            if isinstance(value, str) and value:
                return value
    return raw[:_ERROR_DETAIL_LIMIT]


class TtsGateway:
    def __init__(
        self,
        resolver: SafeURLResolver,
        admission: AdmissionController,
        fetcher: BoundedFetcher,
        settings: TtsSettings,
    ) -> None:
        self._resolver = resolver
        self._admission = admission
        self._fetcher = fetcher
        self._settings = settings

    async def handle(self, request: TtsProxyRequest) -> ProxiedResponse:
        """Dispatch a tts-request record to the passthrough or structured flow."""
        url = request.url.strip()
        if not url:
            raise ProxyError(ErrorCode.INVALID_INPUT, "Missing URL")
        if url == STRUCTURED_PROVIDER_PATH:
            return await self.structured(parse_structured_body(request.body))
        return await self.proxy(request)

    async def proxy(self, request: TtsProxyRequest) -> ProxiedResponse:
        target = await self._resolver.resolve(request.url)
        method = (request.method or "GET").upper()
        content = None if method in _BODYLESS_METHODS else request.body
        max_bytes = (
            request.max_bytes
            if request.max_bytes and request.max_bytes > 0
            else self._settings.audio_max_bytes
        )
        timeout = request.timeout_ms / 1000 if request.timeout_ms else None

        with self._admission.slot(target.host):
            response = await self._fetcher.fetch(
                target,
                method=method,
                headers=request.headers,
                content=content,
                timeout_seconds=timeout,
                max_bytes=max_bytes,
            )
        return ProxiedResponse(
            status=response.status,
            headers=dict(response.headers),
            body=response.body,
            final_url=response.url,
        )

    async def structured(self, request: StructuredTtsRequest) -> ProxiedResponse:
        text = request.text.strip()
        api_key = request.api_key.strip()
        if not text:
            raise ProxyError(ErrorCode.INVALID_INPUT, "Missing text")
        if not api_key:
            raise ProxyError(ErrorCode.INVALID_INPUT, "Missing apiKey")

        model = request.model.strip() or self._settings.default_model
        voice = request.voice.strip() or self._settings.default_voice
        api_base = normalize_provider_base(request.api_base, self._settings.default_api_base)
        base_url = await self._resolver.resolve(api_base)
        endpoint = base_url.copy_with(path=base_url.path.rstrip("/") + GENERATION_PATH)

        with self._admission.slot(base_url.host):
            response = await self._fetcher.fetch(
                endpoint,
                method="POST",
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {api_key}",
                },
                content=json.dumps({"model": model, "input": {"text": text, "voice": voice}}),
                # Inline base64 audio inflates the body by a third.
                max_bytes=self._settings.audio_max_bytes * 2,
            )
            if not response.ok:
                detail = upstream_error_detail(response.body) or "TTS provider request failed"
                log.warning("tts_provider_error", status=response.status, detail=detail)
                raise ProxyError(ErrorCode.UPSTREAM_ERROR, detail, status=response.status)

            audio = _audio_section(response.body)
            audio_url = audio.get("url") if isinstance(audio.get("url"), str) else ""
            audio_data = audio.get("data") if isinstance(audio.get("data"), str) else ""
            audio_format = audio.get("format") if isinstance(audio.get("format"), str) else ""

            if not audio_url and not audio_data:
                raise ProxyError(ErrorCode.UPSTREAM_ERROR, "TTS provider returned no audio payload")

            if audio_url:
                return await self._download_audio(audio_url, audio_format)

        try:
            decoded = base64.b64decode(audio_data, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise ProxyError(
                ErrorCode.UPSTREAM_ERROR, "TTS provider returned invalid audio payload"
            ) from exc
        if not decoded:
            raise ProxyError(ErrorCode.UPSTREAM_ERROR, "TTS provider returned empty audio payload")

        log.info("tts_audio_inline", bytes=len(decoded), model=model)
        return ProxiedResponse(
            status=200,
            headers=_audio_headers(audio_type_for_format(audio_format)),
            body=decoded,
            final_url=str(endpoint),
        )

    async def _download_audio(self, audio_url: str, audio_format: str) -> ProxiedResponse:
        # The provider is not trusted to hand back a safe destination.
        target = await self._resolver.resolve(audio_url)
        response = await self._fetcher.fetch(target, max_bytes=self._settings.audio_max_bytes)
        if not response.ok:
            raise ProxyError(
                ErrorCode.UPSTREAM_ERROR, "TTS audio download failed", status=response.status
            )
        content_type = response.media_type or audio_type_for_format(audio_format)
        log.info("tts_audio_downloaded", bytes=len(response.body), url=response.url)
        return ProxiedResponse(
            status=response.status,
            headers=_audio_headers(content_type),
            body=response.body,
            final_url=response.url,
        )


def parse_structured_body(body: str | bytes | None) -> StructuredTtsRequest:
    """Decode the JSON record for the structured flow. Empty body is ``{}``."""
    if not body or not body.strip():
        return StructuredTtsRequest()
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise ProxyError(ErrorCode.INVALID_INPUT, "Invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise ProxyError(ErrorCode.INVALID_INPUT, "Invalid JSON body")
    # Non-string fields are treated as absent.
    fields = {key: value for key, value in payload.items() if isinstance(value, str)}
    return StructuredTtsRequest.model_validate(fields)


def _audio_section(body: bytes) -> dict:
    try:
        payload = json.loads(body)
    except ValueError:
        return {}
    output = payload.get("output") if isinstance(payload, dict) else None
    audio = output.get("audio") if isinstance(output, dict) else None
    return audio if isinstance(audio, dict) else {}


def _audio_headers(content_type: str) -> dict[str, str]:
    return {
        "content-type": content_type,
        "cache-control": "no-store",
        "x-tts-provider": "qwen",
    }
