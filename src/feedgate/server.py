"""HTTP server entrypoint.

Responsibilities (and nothing more):
- Configure structlog
- Create AppState via the Starlette lifespan context manager
- Map routes onto the operation handlers
- Render ProxyError (and anything unexpected) as the JSON error envelope
- Start the HTTP transport
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sys
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite
import structlog
from starlette.applications import Starlette
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

import feedgate.handlers.ai_chat as h_ai_chat
import feedgate.handlers.ai_tasks as h_ai_tasks
import feedgate.handlers.feed as h_feed
import feedgate.handlers.health as h_health
import feedgate.handlers.html as h_html
import feedgate.handlers.image as h_image
import feedgate.handlers.tts as h_tts
from feedgate import __version__
from feedgate.admission import AdmissionController
from feedgate.ai import AiTaskService
from feedgate.cache import ResultCache
from feedgate.completion import AiCompletionGateway
from feedgate.config import Settings
from feedgate.errors import ErrorCode, ProxyError
from feedgate.fetcher import BoundedFetcher, build_http_client
from feedgate.image_cache import ImageCache
from feedgate.resolver import SafeURLResolver
from feedgate.state import AppState
from feedgate.tasks import TaskRetryOrchestrator, compute_retry_delay
from feedgate.transport import run_http_server
from feedgate.tts import TtsGateway

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    import httpx
    from starlette.requests import Request

    from feedgate.models.ai import AiTaskErrorCode
    from feedgate.models.http import ProxiedResponse
    from feedgate.protocols import ResultCacheProtocol

log = structlog.get_logger()

# Connection-level and framing headers never relayed from an upstream.
HOP_BY_HOP_HEADERS: frozenset[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "content-encoding",
        "content-length",
    }
)

DISCONNECT_POLL_SECONDS = 0.5


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [*shared_processors, structlog.processors.JSONRenderer()]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# State construction and lifespan
# ---------------------------------------------------------------------------


def build_app_state(
    settings: Settings,
    http_client: httpx.AsyncClient,
    *,
    resolver: SafeURLResolver | None = None,
    result_cache: ResultCacheProtocol | None = None,
    compute_delay: Callable[[int, AiTaskErrorCode], int] = compute_retry_delay,
) -> AppState:
    """Wire every gateway service around one client, resolver and admission controller."""
    resolver = resolver or SafeURLResolver()
    admission = AdmissionController(
        global_limit=settings.fetcher.global_concurrency,
        host_limit=settings.fetcher.host_concurrency,
    )
    fetcher = BoundedFetcher(
        http_client,
        resolver,
        timeout_seconds=settings.fetcher.timeout_seconds,
        max_redirects=settings.fetcher.max_redirects,
    )
    completion = AiCompletionGateway(resolver, admission, fetcher, settings.ai)
    return AppState(
        settings=settings,
        http_client=http_client,
        resolver=resolver,
        admission=admission,
        fetcher=fetcher,
        image_cache=ImageCache(
            ttl_seconds=settings.image.cache_ttl_seconds,
            capacity=settings.image.cache_capacity,
        ),
        tts=TtsGateway(resolver, admission, fetcher, settings.tts),
        completion=completion,
        ai_tasks=AiTaskService(
            completion,
            TaskRetryOrchestrator(compute_delay),
            result_cache,
            settings.ai,
            settings.cache,
        ),
        result_cache=result_cache,
    )


async def _run_cache_cleanup_scheduler(state: AppState) -> None:
    """Run result cache cleanup at startup, then on the configured interval."""
    interval_hours = state.settings.cache.cleanup_interval_hours
    while True:
        if state.result_cache is not None:
            await state.result_cache.cleanup_if_due(interval_hours)
        await asyncio.sleep(interval_hours * 3600)


@asynccontextmanager
async def lifespan(app: Starlette) -> AsyncGenerator[None, None]:
    """Create and tear down all shared resources for the server's lifetime."""
    settings: Settings = app.state.settings

    log.info("server_starting", version=__version__)

    http_client = build_http_client(settings.fetcher)

    db_path = Path(settings.cache.db_path).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    result_cache = ResultCache(db)
    await result_cache.init_db()

    state = build_app_state(settings, http_client, result_cache=result_cache)
    app.state.feedgate = state
    cleanup_task = asyncio.create_task(_run_cache_cleanup_scheduler(state))

    log.info(
        "server_started",
        version=__version__,
        host=settings.server.host,
        port=settings.server.port,
    )

    try:
        yield
    finally:
        cleanup_task.cancel()
        with suppress(asyncio.CancelledError):
            await cleanup_task
        await http_client.aclose()
        await db.close()
        log.info("server_stopping")


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def _state(request: Request) -> AppState:
    return request.app.state.feedgate


def relay_headers(headers: dict[str, str]) -> dict[str, str]:
    """Drop hop-by-hop and encoding headers from an upstream header map."""
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}


def _bytes_response(proxied: ProxiedResponse) -> Response:
    return Response(
        proxied.body,
        status_code=proxied.status,
        headers=relay_headers(proxied.headers),
    )


def _operation(
    name: str,
) -> Callable[[Callable[[Request], Awaitable[Response]]], Callable[[Request], Awaitable[Response]]]:
    """Render ProxyError as the error envelope; never let an exception escape raw."""

    def decorator(
        endpoint: Callable[[Request], Awaitable[Response]],
    ) -> Callable[[Request], Awaitable[Response]]:
        @functools.wraps(endpoint)
        async def wrapper(request: Request) -> Response:
            try:
                return await endpoint(request)
            except ProxyError as exc:
                log.warning(
                    "operation_error",
                    operation=name,
                    code=exc.code,
                    status=exc.status,
                    message=exc.message,
                )
                return JSONResponse(exc.to_dict(), status_code=exc.status)
            except Exception:
                log.error("operation_unexpected_error", operation=name, exc_info=True)
                error = ProxyError(ErrorCode.UPSTREAM_ERROR, "Proxy error")
                return JSONResponse(error.to_dict(), status_code=error.status)

        return wrapper

    return decorator


async def _watch_disconnect(request: Request, cancel: asyncio.Event) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)
    cancel.set()


async def _with_disconnect_cancel(request: Request, run: Callable[[asyncio.Event], Awaitable]):
    """Run an AI task that is cancelled if the caller goes away."""
    cancel = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    try:
        return await run(cancel)
    finally:
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@_operation("system_health")
async def health(request: Request) -> Response:
    return JSONResponse(await h_health.handle(_state(request)))


@_operation("fetch_feed")
async def fetch_rss(request: Request) -> Response:
    result = await h_feed.handle(
        request.query_params.get("url", ""),
        _state(request),
        parse=request.query_params.get("format") == "json",
        if_none_match=request.headers.get("if-none-match"),
        if_modified_since=request.headers.get("if-modified-since"),
    )
    headers = {"X-Final-Url": result.final_url or ""}
    if result.etag:
        headers["ETag"] = result.etag
    if result.last_modified:
        headers["Last-Modified"] = result.last_modified

    if result.status == 304:
        return Response(status_code=304, headers=headers)
    if result.json_feed is not None:
        return JSONResponse(
            result.json_feed.model_dump(), status_code=result.status, headers=headers
        )
    return Response(
        result.document or "",
        status_code=result.status,
        headers=headers,
        media_type="application/xml; charset=utf-8",
    )


@_operation("fetch_html")
async def fetch_html(request: Request) -> Response:
    raw_timeout = request.query_params.get("timeoutMs")
    try:
        timeout_ms = int(raw_timeout) if raw_timeout else None
    except ValueError as exc:
        raise ProxyError(ErrorCode.INVALID_INPUT, "Invalid timeoutMs") from exc
    result = await h_html.handle(
        request.query_params.get("url", ""), _state(request), timeout_ms=timeout_ms
    )
    return Response(
        result.html,
        status_code=result.status,
        headers={"X-Final-Url": result.final_url},
        media_type=result.content_type,
    )


@_operation("fetch_image")
async def fetch_image(request: Request) -> Response:
    url = request.query_params.get("url", "")
    return _bytes_response(await h_image.handle(url, _state(request)))


@_operation("tts_request")
async def fetch_tts(request: Request) -> Response:
    return _bytes_response(await h_tts.handle(await request.body(), _state(request)))


@_operation("tts_structured")
async def fetch_tts_structured(request: Request) -> Response:
    return _bytes_response(await h_tts.handle_structured(await request.body(), _state(request)))


@_operation("ai_chat_completion")
async def ai_chat_completion(request: Request) -> Response:
    result = await h_ai_chat.handle(await request.body(), _state(request))
    return JSONResponse(
        result.model_dump(by_alias=True, exclude_none=True),
        status_code=200 if result.ok else result.status,
    )


def _ai_task_route(
    name: str, handler: Callable[..., Awaitable[h_ai_tasks.AiTaskResponse]]
) -> Callable[[Request], Awaitable[Response]]:
    @_operation(name)
    async def endpoint(request: Request) -> Response:
        body = await request.body()
        state = _state(request)
        response = await _with_disconnect_cancel(
            request, lambda cancel: handler(body, state, cancel)
        )
        return JSONResponse(
            response.model_dump(mode="json", by_alias=True, exclude_none=True),
            status_code=h_ai_tasks.response_status(response),
        )

    return endpoint


ROUTES = [
    Route("/health", health, methods=["GET"]),
    Route("/fetch/rss", fetch_rss, methods=["GET"]),
    Route("/fetch/html", fetch_html, methods=["GET"]),
    Route("/fetch/image", fetch_image, methods=["GET"]),
    Route("/fetch/tts", fetch_tts, methods=["POST"]),
    Route("/fetch/tts/qwen", fetch_tts_structured, methods=["POST"]),
    Route("/ai/chat-completion", ai_chat_completion, methods=["POST"]),
    Route("/ai/summary", _ai_task_route("ai_summary", h_ai_tasks.summary), methods=["POST"]),
    Route(
        "/ai/translation",
        _ai_task_route("ai_translation", h_ai_tasks.translation),
        methods=["POST"],
    ),
    Route("/ai/probe", _ai_task_route("ai_probe", h_ai_tasks.probe), methods=["POST"]),
]


def create_app(settings: Settings | None = None, *, state: AppState | None = None) -> Starlette:
    """Build the Starlette app.

    With a prebuilt ``state`` (tests) the lifespan is skipped and the state is
    used as-is; otherwise the lifespan creates it on startup.
    """
    app = Starlette(routes=ROUTES, lifespan=None if state is not None else lifespan)
    app.state.settings = state.settings if state is not None else (settings or Settings())
    if state is not None:
        app.state.feedgate = state
    return app


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    settings = Settings()
    _setup_logging(settings)
    run_http_server(create_app(settings), settings)


if __name__ == "__main__":
    main()
