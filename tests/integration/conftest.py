"""Fixtures for wire-level tests against the Starlette app."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import pytest

from feedgate.server import create_app

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from feedgate.state import AppState


@pytest.fixture()
async def client(app_state: AppState) -> AsyncIterator[httpx.AsyncClient]:
    """ASGI client for the app. Upstream calls still go through respx."""
    app = create_app(state=app_state)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://localhost"
    ) as client:
        yield client
