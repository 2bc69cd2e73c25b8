"""Protocol interfaces for swappable components.

The AI task flows and AppState reference these protocols, not the concrete
implementations, so tests can substitute lightweight in-memory doubles.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from feedgate.models.ai import AiTaskType


class ResultCacheProtocol(Protocol):
    """Interface for the AI result cache backend."""

    async def get(self, cache_key: str) -> dict[str, Any] | None: ...

    async def set(
        self,
        cache_key: str,
        entry_id: str,
        task: AiTaskType,
        payload: dict[str, Any],
        ttl_hours: int,
    ) -> None: ...

    async def cleanup_if_due(self, interval_hours: int) -> None: ...

    async def cleanup_expired(self) -> None: ...
