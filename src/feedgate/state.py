"""Application state container.

AppState is created once at server startup (inside the Starlette lifespan)
and handed to every operation handler. It exclusively owns the process-wide
mutable services: the admission counters and the image cache.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import httpx

    from feedgate.admission import AdmissionController
    from feedgate.ai import AiTaskService
    from feedgate.completion import AiCompletionGateway
    from feedgate.config import Settings
    from feedgate.fetcher import BoundedFetcher
    from feedgate.image_cache import ImageCache
    from feedgate.protocols import ResultCacheProtocol
    from feedgate.resolver import SafeURLResolver
    from feedgate.tts import TtsGateway


@dataclass
class AppState:
    """Holds all shared runtime state. Passed to every operation handler."""

    settings: Settings
    http_client: httpx.AsyncClient
    resolver: SafeURLResolver
    admission: AdmissionController
    fetcher: BoundedFetcher
    image_cache: ImageCache
    tts: TtsGateway
    completion: AiCompletionGateway
    ai_tasks: AiTaskService
    result_cache: ResultCacheProtocol | None = None
    started_at: float = field(default_factory=time.monotonic)
