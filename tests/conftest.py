"""Shared test fixtures for the feedgate test suite."""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiosqlite
import httpx
import pytest

from feedgate.admission import AdmissionController
from feedgate.cache import ResultCache
from feedgate.config import Settings
from feedgate.fetcher import BoundedFetcher
from feedgate.resolver import SafeURLResolver
from feedgate.server import build_app_state

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from feedgate.state import AppState

PUBLIC_ADDRESS = "93.184.216.34"


async def public_lookup(hostname: str) -> list[str]:
    """DNS stub: every name resolves to a single public address."""
    return [PUBLIC_ADDRESS]


def no_delay(attempt: int, code: object) -> int:
    return 0


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(cache={"db_path": str(tmp_path / "results.db")})


@pytest.fixture()
def resolver() -> SafeURLResolver:
    return SafeURLResolver(lookup=public_lookup)


@pytest.fixture()
def admission() -> AdmissionController:
    return AdmissionController(global_limit=8, host_limit=3)


@pytest.fixture()
async def http_client() -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(follow_redirects=False) as client:
        yield client


@pytest.fixture()
def fetcher(http_client: httpx.AsyncClient, resolver: SafeURLResolver) -> BoundedFetcher:
    return BoundedFetcher(http_client, resolver, timeout_seconds=5.0)


@pytest.fixture()
async def result_cache() -> AsyncIterator[ResultCache]:
    async with aiosqlite.connect(":memory:") as db:
        cache = ResultCache(db)
        await cache.init_db()
        yield cache


@pytest.fixture()
def app_state(
    settings: Settings,
    http_client: httpx.AsyncClient,
    resolver: SafeURLResolver,
    result_cache: ResultCache,
) -> AppState:
    """Fully wired AppState with pinned DNS, in-memory SQLite and no retry backoff."""
    return build_app_state(
        settings,
        http_client,
        resolver=resolver,
        result_cache=result_cache,
        compute_delay=no_delay,
    )
