"""Handler for system-health."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from feedgate import __version__

if TYPE_CHECKING:
    from feedgate.state import AppState


async def handle(state: AppState) -> dict:
    return {
        "status": "ok",
        "version": __version__,
        "uptime": int(time.monotonic() - state.started_at),
    }
