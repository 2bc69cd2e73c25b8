"""SQLite cache for AI summaries and translations.

Keyed by the cache keys built in ``feedgate.ai``. Read failures return
``None`` (treated as a miss) and write failures are logged and ignored, so a
broken cache never prevents a generated result from reaching the caller.
Errors are logged with ``exc_info=True`` to stay observable on stderr.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog

if TYPE_CHECKING:
    from feedgate.models.ai import AiTaskType

log = structlog.get_logger()

_CREATE_RESULT_TABLE = """
CREATE TABLE IF NOT EXISTS ai_results (
    cache_key   TEXT PRIMARY KEY,
    entry_id    TEXT NOT NULL,
    task        TEXT NOT NULL,
    payload     TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    expires_at  TEXT NOT NULL
)
"""

_CREATE_RESULT_INDEX = "CREATE INDEX IF NOT EXISTS idx_results_expires ON ai_results(expires_at)"

_CREATE_METADATA_TABLE = """
CREATE TABLE IF NOT EXISTS server_metadata (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""


class ResultCache:
    """SQLite-backed AI result cache implementing ResultCacheProtocol."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def init_db(self) -> None:
        """Create tables and set WAL mode. Called once at startup."""
        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute(_CREATE_RESULT_TABLE)
        await self._db.execute(_CREATE_RESULT_INDEX)
        await self._db.execute(_CREATE_METADATA_TABLE)
        await self._db.commit()

    async def get(self, cache_key: str) -> dict[str, Any] | None:
        """Return the stored payload, or ``None`` on miss, expiry or read failure."""
        try:
            cursor = await self._db.execute(
                "SELECT payload, expires_at FROM ai_results WHERE cache_key = ?",
                (cache_key,),
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            if datetime.now(UTC) > datetime.fromisoformat(row[1]):
                return None
            payload = json.loads(row[0])
        except (aiosqlite.Error, ValueError):
            log.warning("result_cache_read_error", key=cache_key, exc_info=True)
            return None
        return payload if isinstance(payload, dict) else None

    async def set(
        self,
        cache_key: str,
        entry_id: str,
        task: AiTaskType,
        payload: dict[str, Any],
        ttl_hours: int,
    ) -> None:
        """Write a result. Non-fatal on failure."""
        try:
            now = datetime.now(UTC)
            expires_at = now + timedelta(hours=ttl_hours)
            await self._db.execute(
                "INSERT OR REPLACE INTO ai_results "
                "(cache_key, entry_id, task, payload, created_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    cache_key,
                    entry_id,
                    str(task),
                    json.dumps(payload),
                    now.isoformat(),
                    expires_at.isoformat(),
                ),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("result_cache_write_error", key=cache_key, exc_info=True)

    async def cleanup_if_due(self, interval_hours: int) -> None:
        """Run cleanup only if ``interval_hours`` have elapsed since the last run."""
        try:
            cursor = await self._db.execute(
                "SELECT value FROM server_metadata WHERE key = 'last_cleanup_at'"
            )
            row = await cursor.fetchone()
            if row is not None:
                last_run = datetime.fromisoformat(row[0])
                if datetime.now(UTC) - last_run < timedelta(hours=interval_hours):
                    log.debug("result_cache_cleanup_skipped", reason="not_due")
                    return
        except aiosqlite.Error:
            log.warning("result_cache_metadata_read_error", exc_info=True)

        await self.cleanup_expired()

        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO server_metadata (key, value) VALUES ('last_cleanup_at', ?)",
                (datetime.now(UTC).isoformat(),),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("result_cache_metadata_write_error", exc_info=True)

    async def cleanup_expired(self) -> None:
        """Delete expired results. Non-fatal on failure."""
        try:
            cursor = await self._db.execute(
                "DELETE FROM ai_results WHERE expires_at < ?",
                (datetime.now(UTC).isoformat(),),
            )
            deleted = cursor.rowcount
            await self._db.commit()
            log.info("result_cache_cleanup_complete", deleted=deleted)
        except aiosqlite.Error:
            log.warning("result_cache_cleanup_error", exc_info=True)
