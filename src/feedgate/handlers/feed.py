"""Handler for fetch-feed.

Fetches a feed document through the trust boundary and admission control,
forwarding conditional-request validators. A 304 carries validators only.
Error statuses (>= 400) return the raw upstream document unparsed.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from feedgate.errors import ErrorCode, ProxyError
from feedgate.feeds import parse_feed
from feedgate.models.feeds import FeedFetchResult

if TYPE_CHECKING:
    from feedgate.state import AppState


async def handle(
    url: str,
    state: AppState,
    *,
    parse: bool = False,
    if_none_match: str | None = None,
    if_modified_since: str | None = None,
) -> FeedFetchResult:
    log = structlog.get_logger().bind(operation="fetch_feed", url=url)
    log.info("handler_called", parse=parse)

    if not url:
        raise ProxyError(ErrorCode.INVALID_INPUT, "Missing url param")
    target = await state.resolver.resolve(url)

    headers: dict[str, str] = {}
    if if_none_match:
        headers["If-None-Match"] = if_none_match
    if if_modified_since:
        headers["If-Modified-Since"] = if_modified_since

    with state.admission.slot(target.host):
        response = await state.fetcher.fetch(
            target,
            headers=headers,
            max_bytes=state.settings.fetcher.document_max_bytes,
        )

    result = FeedFetchResult(
        status=response.status,
        etag=response.headers.get("etag"),
        last_modified=response.headers.get("last-modified"),
        final_url=response.url,
    )
    if response.status == 304:
        log.info("feed_not_modified")
        return result

    if parse and response.status < 400:
        # feedparser is CPU-bound; keep it off the event loop.
        result.json_feed = await asyncio.to_thread(parse_feed, response.body, response.url)
        log.info("feed_fetched", status=response.status, entries=len(result.json_feed.entries))
    else:
        result.document = response.text
        log.info("feed_fetched", status=response.status, raw=True)
    return result
