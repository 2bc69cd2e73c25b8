"""Handler for fetch-image.

Flow: resolve -> serve from cache on hit -> acquire a slot for the host ->
fetch with ``Accept: image/*`` -> reject on headers alone (non-2xx, declared
length over the cap, non-image type) -> read the bounded body -> transcode ->
cache with expiry -> release the slot.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from feedgate.errors import ErrorCode, ProxyError
from feedgate.models.cache import CachedImage
from feedgate.models.http import ProxiedResponse
from feedgate.transcoder import transcode

if TYPE_CHECKING:
    from collections.abc import Callable

    import httpx

    from feedgate.state import AppState


def reject_unusable_image(max_bytes: int) -> Callable[[httpx.Response], None]:
    """Build the header check run before an image body is read."""

    def check(response: httpx.Response) -> None:
        if not response.is_success:
            raise ProxyError(
                ErrorCode.UPSTREAM_ERROR,
                f"Upstream image request failed with status {response.status_code}",
                status=response.status_code,
            )
        declared = response.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > max_bytes:
            raise ProxyError(ErrorCode.PAYLOAD_TOO_LARGE, "Payload too large")
        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if not content_type.startswith("image/"):
            raise ProxyError(ErrorCode.UNSUPPORTED_CONTENT_TYPE, "Unsupported content type")

    return check


def _image_response(entry: CachedImage, cache_status: str, ttl_seconds: float) -> ProxiedResponse:
    return ProxiedResponse(
        status=200,
        headers={
            "content-type": entry.content_type,
            "cache-control": f"public, max-age={int(ttl_seconds)}",
            "x-image-cache": cache_status,
            "x-final-url": entry.final_url,
        },
        body=entry.body,
        final_url=entry.final_url,
    )


async def handle(url: str, state: AppState) -> ProxiedResponse:
    log = structlog.get_logger().bind(operation="fetch_image", url=url)
    log.info("handler_called")

    if not url:
        raise ProxyError(ErrorCode.INVALID_INPUT, "Missing url param")
    target = await state.resolver.resolve(url)
    settings = state.settings.image
    key = str(target)

    cached = state.image_cache.get(key)
    if cached is not None:
        log.info("image_cache_hit")
        return _image_response(cached, "HIT", settings.cache_ttl_seconds)

    with state.admission.slot(target.host):
        response = await state.fetcher.fetch(
            target,
            headers={"Accept": "image/*"},
            max_bytes=settings.max_bytes,
            inspect=reject_unusable_image(settings.max_bytes),
        )
        body, content_type = await asyncio.to_thread(
            transcode, response.body, response.media_type, settings.quality
        )
        entry = CachedImage(
            body=body,
            content_type=content_type,
            final_url=response.url,
            expires_at=state.image_cache.expiry(),
        )
        state.image_cache.put(key, entry)

    log.info("image_cache_miss", content_type=content_type, bytes=len(body))
    return _image_response(entry, "MISS", settings.cache_ttl_seconds)
