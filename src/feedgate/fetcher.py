"""Size-bounded HTTP fetcher with per-hop SSRF validation.

All outbound I/O goes through a single BoundedFetcher instance. The fetcher
receives an httpx.AsyncClient via constructor injection; the lifespan owns
the client lifecycle. Redirects are followed manually so that every hop is
re-validated by the SafeURLResolver before it is requested.

Response bodies are streamed and counted chunk by chunk; the read is aborted
as soon as the running total exceeds the caller's cap, and the partial body
is discarded.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx
import structlog

from feedgate.errors import ErrorCode, ProxyError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Mapping

    from feedgate.config import FetcherSettings
    from feedgate.resolver import SafeURLResolver

log = structlog.get_logger()


def build_http_client(settings: FetcherSettings) -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    return httpx.AsyncClient(
        follow_redirects=False,
        timeout=httpx.Timeout(settings.timeout_seconds),
        headers={"User-Agent": settings.user_agent},
        limits=httpx.Limits(
            max_connections=settings.global_concurrency * 2,
            max_keepalive_connections=settings.global_concurrency,
        ),
    )


def _too_large() -> ProxyError:
    return ProxyError(ErrorCode.PAYLOAD_TOO_LARGE, "Payload too large")


async def iter_bounded(chunks: AsyncIterator[bytes], max_bytes: int) -> AsyncIterator[bytes]:
    """Yield chunks until the running total exceeds ``max_bytes``.

    A ``max_bytes`` of zero or less disables the cap.
    """
    total = 0
    async for chunk in chunks:
        if not chunk:
            continue
        total += len(chunk)
        if max_bytes > 0 and total > max_bytes:
            raise _too_large()
        yield chunk


async def read_bounded(response: httpx.Response, max_bytes: int) -> bytes:
    """Read a response body under ``max_bytes``.

    Streamed responses are counted incrementally. A response whose body was
    already loaded in full is checked after the fact with the same outcome.
    """
    if response.is_stream_consumed:
        body = response.content
        if max_bytes > 0 and len(body) > max_bytes:
            raise _too_large()
        return body

    parts: list[bytes] = []
    async for chunk in iter_bounded(response.aiter_bytes(), max_bytes):
        parts.append(chunk)
    return b"".join(parts)


@dataclass
class FetchedResponse:
    """A fully read upstream response."""

    status: int
    headers: httpx.Headers
    body: bytes
    url: str
    encoding: str | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def media_type(self) -> str:
        """Content type without parameters, lower-cased."""
        return self.headers.get("content-type", "").split(";")[0].strip().lower()

    @property
    def text(self) -> str:
        return self.body.decode(self.encoding or "utf-8", errors="replace")


class BoundedFetcher:
    """Executes single outbound requests under a deadline and a byte cap."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        resolver: SafeURLResolver,
        *,
        timeout_seconds: float = 15.0,
        max_redirects: int = 5,
    ) -> None:
        self._client = client
        self._resolver = resolver
        self._timeout_seconds = timeout_seconds
        self._max_redirects = max_redirects

    async def fetch(
        self,
        url: httpx.URL,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        content: bytes | str | None = None,
        timeout_seconds: float | None = None,
        max_bytes: int = 0,
        inspect: Callable[[httpx.Response], None] | None = None,
    ) -> FetchedResponse:
        """Fetch ``url`` (already validated by the resolver) and read its body.

        ``inspect`` runs against the final response before the body is read;
        it may raise ProxyError to reject the response on its headers alone.

        Raises ProxyError: UPSTREAM_TIMEOUT (408) when the deadline expires,
        PAYLOAD_TOO_LARGE (413) when the body exceeds ``max_bytes``,
        URL_BLOCKED (403) when a redirect leaves the trust boundary and
        UPSTREAM_ERROR (502) for transport failures.
        """
        deadline = timeout_seconds or self._timeout_seconds
        try:
            async with asyncio.timeout(deadline):
                return await self._fetch(
                    url,
                    method=method.upper(),
                    headers=dict(headers or {}),
                    content=content,
                    max_bytes=max_bytes,
                    inspect=inspect,
                )
        except (TimeoutError, httpx.TimeoutException) as exc:
            log.warning("fetch_timeout", url=str(url), timeout_seconds=deadline)
            raise ProxyError(ErrorCode.UPSTREAM_TIMEOUT, "Upstream timeout") from exc
        except httpx.HTTPError as exc:
            log.warning("fetch_transport_error", url=str(url), error=str(exc))
            raise ProxyError(
                ErrorCode.UPSTREAM_ERROR, f"Network error fetching {url}: {exc}"
            ) from exc

    async def _fetch(
        self,
        url: httpx.URL,
        *,
        method: str,
        headers: dict[str, str],
        content: bytes | str | None,
        max_bytes: int,
        inspect: Callable[[httpx.Response], None] | None,
    ) -> FetchedResponse:
        current = url
        for hop in range(self._max_redirects + 1):
            request = self._client.build_request(method, current, headers=headers, content=content)
            response = await self._client.send(request, stream=True)
            try:
                if response.is_redirect and "location" in response.headers:
                    if hop == self._max_redirects:
                        raise ProxyError(
                            ErrorCode.UPSTREAM_ERROR, f"Too many redirects fetching {url}"
                        )
                    target = current.join(response.headers["location"])
                    target = await self._resolver.resolve(str(target))
                    if target.host != current.host:
                        # Credentials never follow a redirect to another host.
                        headers = {k: v for k, v in headers.items() if k.lower() != "authorization"}
                    if response.status_code == 303 or (
                        response.status_code in (301, 302) and method == "POST"
                    ):
                        method, content = "GET", None
                    log.debug("fetch_redirect", source=str(current), target=str(target))
                    current = target
                    continue

                if inspect is not None:
                    inspect(response)
                body = await read_bounded(response, max_bytes)
            finally:
                await response.aclose()

            log.info(
                "fetch_complete",
                url=str(url),
                final_url=str(current),
                status_code=response.status_code,
                content_length=len(body),
            )
            return FetchedResponse(
                status=response.status_code,
                headers=response.headers,
                body=body,
                url=str(current),
                encoding=response.encoding,
            )

        # Unreachable but satisfies the type checker
        raise ProxyError(ErrorCode.UPSTREAM_ERROR, "Redirect loop")
