"""Handler for fetch-html."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from feedgate.errors import ErrorCode, ProxyError
from feedgate.models.feeds import HtmlFetchResult

if TYPE_CHECKING:
    from feedgate.state import AppState

DEFAULT_HTML_TYPE = "text/html; charset=utf-8"


async def handle(url: str, state: AppState, *, timeout_ms: int | None = None) -> HtmlFetchResult:
    log = structlog.get_logger().bind(operation="fetch_html", url=url)
    log.info("handler_called")

    if not url:
        raise ProxyError(ErrorCode.INVALID_INPUT, "Missing url param")
    if timeout_ms is not None and timeout_ms <= 0:
        raise ProxyError(ErrorCode.INVALID_INPUT, "timeoutMs must be positive")
    target = await state.resolver.resolve(url)

    with state.admission.slot(target.host):
        response = await state.fetcher.fetch(
            target,
            headers={"Accept": "text/html,application/xhtml+xml"},
            timeout_seconds=timeout_ms / 1000 if timeout_ms else None,
            max_bytes=state.settings.fetcher.document_max_bytes,
        )

    return HtmlFetchResult(
        status=response.status,
        final_url=response.url,
        content_type=response.headers.get("content-type") or DEFAULT_HTML_TYPE,
        html=response.text,
    )
