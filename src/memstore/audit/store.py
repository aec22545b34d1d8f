"""Redis-backed append-only audit log.

Conflict entries live in one sorted set per owner,
``{prefix}:audit:conflict_log:{owner}`` (score = ``created_at`` epoch), with a
global id index ``{prefix}:audit:conflict_index`` for counts and recency.
Maintenance summaries live in ``{prefix}:audit:runs``.  Members are the
entries' JSON documents; nothing is ever rewritten or removed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from datetime import UTC
from typing import Any

from pydantic import ValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]

from memstore.audit.schemas import ConflictAuditEntry
from memstore.audit.schemas import MaintenanceRunSummary
from memstore.config import StoreConfig

logger = logging.getLogger(__name__)


def _score(value: datetime | None) -> float | str:
    return value.timestamp() if value is not None else "-inf"


class AuditLog:
    """Append-only conflict and maintenance audit trail."""

    def __init__(self, redis: Redis, *, config: StoreConfig | None = None) -> None:
        self._redis = redis
        self.config = config or StoreConfig()
        prefix = self.config.key_prefix
        self._conflicts_prefix = f"{prefix}:audit:conflict_log"
        self._conflicts_all = f"{prefix}:audit:conflict_index"
        self._runs_key = f"{prefix}:audit:runs"

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def stage_conflict(self, pipe: Any, entry: ConflictAuditEntry) -> None:
        """Queue *entry* on a MULTI pipeline owned by the caller."""
        score = entry.created_at.timestamp()
        pipe.zadd(self._owner_key(entry.owner_agent), {entry.model_dump_json(): score})
        pipe.zadd(self._conflicts_all, {entry.id: score})

    async def append_conflict(self, entry: ConflictAuditEntry) -> None:
        """Append *entry* in its own transaction."""
        pipe = self._redis.pipeline(transaction=True)
        self.stage_conflict(pipe, entry)
        await pipe.execute()

    async def append_run(self, summary: MaintenanceRunSummary) -> None:
        await self._redis.zadd(
            self._runs_key,
            {summary.model_dump_json(): summary.created_at.timestamp()},
        )

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def read_conflicts(
        self,
        owner_agent: str,
        *,
        since: datetime | None = None,
    ) -> list[ConflictAuditEntry]:
        """Entries for *owner_agent* created at or after *since*, oldest first."""
        raw = await self._redis.zrangebyscore(
            self._owner_key(owner_agent), _score(since), "+inf"
        )
        entries: list[ConflictAuditEntry] = []
        for item in raw:
            try:
                entries.append(ConflictAuditEntry.model_validate_json(item))
            except ValidationError:
                logger.warning("Skipping malformed conflict entry for %s", owner_agent)
        return entries

    async def read_runs(
        self,
        *,
        since: datetime | None = None,
    ) -> list[MaintenanceRunSummary]:
        raw = await self._redis.zrangebyscore(self._runs_key, _score(since), "+inf")
        runs: list[MaintenanceRunSummary] = []
        for item in raw:
            try:
                runs.append(MaintenanceRunSummary.model_validate_json(item))
            except ValidationError:
                logger.warning("Skipping malformed maintenance run entry")
        return runs

    async def conflict_count(self) -> int:
        return await self._redis.zcard(self._conflicts_all)

    async def run_count(self) -> int:
        return await self._redis.zcard(self._runs_key)

    async def last_conflict_at(self) -> datetime | None:
        return await self._last_timestamp(self._conflicts_all)

    async def last_run_at(self) -> datetime | None:
        return await self._last_timestamp(self._runs_key)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _owner_key(self, owner_agent: str) -> str:
        return f"{self._conflicts_prefix}:{owner_agent}"

    async def _last_timestamp(self, key: str) -> datetime | None:
        newest = await self._redis.zrevrange(key, 0, 0, withscores=True)
        if not newest:
            return None
        _, score = newest[0]
        return datetime.fromtimestamp(float(score), tz=UTC)
