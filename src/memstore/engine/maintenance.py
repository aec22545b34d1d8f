"""Daily maintenance cycle: backfill, decay, archive, consolidate, trim.

Each scope is processed under its scope lock so a cycle never interleaves
with a live ingestion conflict check on the same scope.  Every step is
idempotent, and a failing step is recorded in the run summary instead of
aborting the cycle.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Awaitable
from collections.abc import Callable
from datetime import datetime
from datetime import timedelta
from time import perf_counter

from memstore.audit.schemas import ConflictAuditEntry
from memstore.audit.schemas import MaintenanceRunDetails
from memstore.audit.schemas import MaintenanceRunSummary
from memstore.audit.schemas import MaintenanceStepError
from memstore.audit.schemas import ResolutionKind
from memstore.audit.store import AuditLog
from memstore.concurrency import ScopeLocks
from memstore.config import MaintenanceConfig
from memstore.engine.ingestion import IngestionPipeline
from memstore.engine.resolver import ConflictResolver
from memstore.errors import MaintenanceRunFailed
from memstore.index.follower import IndexFollower
from memstore.index.vector_index import VectorIndex
from memstore.memory.schemas import MemoryRecord
from memstore.memory.schemas import MemoryStatus
from memstore.memory.schemas import Scope
from memstore.memory.schemas import utcnow
from memstore.memory.store import RecordStore
from memstore.observability import record_latency
from memstore.observability import record_outcome

logger = logging.getLogger(__name__)

_DAY = timedelta(days=1)


def decay_step(
    record: MemoryRecord,
    now: datetime,
    *,
    factor: float,
    floor: float,
) -> MemoryRecord | None:
    """Apply whole elapsed days of decay, or ``None`` if none are due.

    Days are counted from the later of the last access and the last decay
    anchor, and the anchor advances by exactly the days applied, so a rerun
    within the same day changes nothing.
    """
    if record.status != MemoryStatus.active:
        return None
    anchor = record.last_accessed_at
    if record.decayed_at is not None and record.decayed_at > anchor:
        anchor = record.decayed_at
    days = math.floor((now - anchor) / _DAY)
    if days < 1:
        return None
    importance = record.importance * factor**days
    if importance < floor:
        importance = min(record.importance, floor)
    return record.model_copy(
        update={"importance": importance, "decayed_at": anchor + days * _DAY}
    )


class MaintenanceEngine:
    """Runs the maintenance cycle over every scope in the store."""

    def __init__(
        self,
        store: RecordStore,
        index: VectorIndex,
        audit: AuditLog,
        *,
        resolver: ConflictResolver | None = None,
        locks: ScopeLocks | None = None,
        ingestion: IngestionPipeline | None = None,
        follower: IndexFollower | None = None,
        config: MaintenanceConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._index = index
        self._audit = audit
        self._resolver = resolver or ConflictResolver()
        self._locks = locks or ScopeLocks()
        self._ingestion = ingestion
        self._follower = follower
        self.config = config or MaintenanceConfig()
        self._clock = clock
        cfg = self.config
        if not 0.0 < cfg.decay_factor < 1.0:
            raise ValueError("decay_factor must be in (0, 1)")
        if not 0.0 < cfg.importance_floor <= 1.0:
            raise ValueError("importance_floor must be in (0, 1]")

    async def run_cycle(self) -> MaintenanceRunSummary:
        """Run one cycle and persist its summary."""
        start = perf_counter()
        now = self._clock()
        errors: list[MaintenanceStepError] = []
        backfilled = backfill_failed = 0

        if self.config.backfill_on_cycle and self._ingestion is not None:
            try:
                result = await self._ingestion.backfill_embeddings(
                    self.config.backfill_batch_size
                )
                backfilled, backfill_failed = result.processed, result.failed
            except Exception as exc:
                errors.append(self._failure("backfill", "*", exc))

        if self._follower is not None:
            try:
                await self._follower.catch_up()
            except Exception as exc:
                errors.append(self._failure("index_sync", "*", exc))

        decayed = archived = consolidated = 0
        scopes = await self._store.list_scopes()
        for scope in scopes:
            async with self._locks.hold(scope):
                decayed += await self._step("decay", scope, now, self._decay, errors)
                archived += await self._step("archive", scope, now, self._archive, errors)
                consolidated += await self._step(
                    "consolidate", scope, now, self._consolidate, errors
                )

        try:
            await self._store.trim_index_log(
                self._store.config.index_log_retention_days
            )
        except Exception as exc:
            errors.append(self._failure("index_log", "*", exc))

        summary = MaintenanceRunSummary(
            archived_count=archived,
            consolidated_count=consolidated,
            decayed_count=decayed,
            details=MaintenanceRunDetails(
                scopes_processed=len(scopes),
                backfilled_count=backfilled,
                backfill_failed_count=backfill_failed,
                errors=tuple(errors),
            ),
            created_at=now,
        )
        await self._audit.append_run(summary)

        record_outcome("maintenance.decayed", decayed)
        record_outcome("maintenance.archived", archived)
        record_outcome("maintenance.consolidated", consolidated)
        record_outcome("maintenance.step_errors", len(errors))
        record_latency(
            operation="maintenance.run_cycle",
            duration_ms=(perf_counter() - start) * 1000,
            ok=summary.ok,
        )
        logger.info(
            "Maintenance run %s: %d scopes, decayed=%d archived=%d consolidated=%d errors=%d",
            summary.id,
            len(scopes),
            decayed,
            archived,
            consolidated,
            len(errors),
        )
        return summary

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _step(
        self,
        name: str,
        scope: Scope,
        now: datetime,
        step: Callable[[Scope, datetime], Awaitable[int]],
        errors: list[MaintenanceStepError],
    ) -> int:
        try:
            return await step(scope, now)
        except Exception as exc:
            errors.append(self._failure(name, scope.key, exc))
            return 0

    def _failure(self, step: str, scope_key: str, exc: Exception) -> MaintenanceStepError:
        failure = MaintenanceRunFailed(step, scope_key, str(exc) or type(exc).__name__)
        logger.exception("%s", failure)
        return MaintenanceStepError(
            step=failure.step, scope=failure.scope_key, message=failure.message
        )

    async def _decay(self, scope: Scope, now: datetime) -> int:
        cfg = self.config
        count = 0
        for record in await self._store.active_records(scope):
            updated = await self._store.update(
                record.id,
                lambda current: decay_step(
                    current, now, factor=cfg.decay_factor, floor=cfg.importance_floor
                ),
            )
            if updated is not None:
                count += 1
        return count

    async def _archive(self, scope: Scope, now: datetime) -> int:
        cfg = self.config
        cutoff = now - timedelta(days=cfg.archive_min_age_days)

        def archive(current: MemoryRecord) -> MemoryRecord | None:
            if (
                current.status != MemoryStatus.active
                or current.importance >= cfg.archive_threshold
                or current.last_accessed_at > cutoff
            ):
                return None
            return current.model_copy(update={"status": MemoryStatus.archived})

        count = 0
        for record in await self._store.active_records(scope):
            if archive(record) is None:
                continue
            if await self._store.update(record.id, archive) is not None:
                self._index.remove(record.id)
                count += 1
        return count

    async def _consolidate(self, scope: Scope, now: datetime) -> int:
        records = [r for r in await self._store.active_records(scope) if r.embedding]
        if len(records) < 2:
            return 0
        k = self.config.consolidation_neighbors + 1
        candidates = {
            r.id: [rid for rid, _ in self._index.query(r.embedding, scope, k)]
            for r in records
        }
        count = 0
        for plan in self._resolver.plan_consolidation(records, candidates):
            representative = plan.representative
            for loser in plan.losers:
                similarity = plan.similarities[loser.id]
                entry = ConflictAuditEntry(
                    owner_agent=representative.owner_agent,
                    winning_id=representative.id,
                    losing_id=loser.id,
                    similarity_score=similarity,
                    resolution=ResolutionKind.consolidated,
                    reason=(
                        f"duplicate cluster of {len(plan.losers) + 1}; "
                        f"folded into most accessed record (similarity {similarity:.4f})"
                    ),
                    created_at=now,
                )
                if await self._store.supersede(
                    loser.id, representative.id, audit=entry, absorb_access=True
                ):
                    self._index.remove(loser.id)
                    count += 1
        return count
