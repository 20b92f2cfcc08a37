"""
Sync Coordinator — serializes syncs per (kind, merchant) without losing work.

Webhooks for the same merchant arrive in bursts (a catalog edit can fire
several catalog.version.updated events in a second). Only one sync of a
given kind may run per merchant; triggers that arrive while it runs are
collapsed into a single follow-up run once it finishes.

  execute_with_queue(kind, merchant_id, sync_fn)
    idle  → run now, persist RUNNING → SUCCESS/FAILED in sync_history
    busy  → mark pending, return {"queued": True} immediately
    busy elsewhere (fresh RUNNING row from another process)
          → return {"queued": True, "deferred": True}; the caller retries
    done  → if pending: spawn one follow-up run in the background

In-memory flags are a cache of sync_history. initialize() rebuilds them at
process start and marks crash-orphaned RUNNING rows as interrupted.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import get_settings
from db.models import (
    SYNC_FAILED,
    SYNC_INTERRUPTED,
    SYNC_RUNNING,
    SYNC_SUCCESS,
    SyncHistory,
)
from db.session import upsert

logger = structlog.get_logger()

SyncFn = Callable[[], Awaitable[Any]]


@dataclass
class _SyncFlags:
    in_progress: bool = False
    pending: bool = False
    # Set when in_progress was restored from sync_history rather than by a run in this process.
    restored: bool = False


class SyncCoordinator:
    """Per-process owner of sync flags. Construct once and pass it to callers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        stale_after: timedelta | None = None,
    ):
        self._session_factory = session_factory
        self._stale_after = stale_after or timedelta(minutes=get_settings().stale_sync_minutes)
        self._flags: dict[tuple[str, str], _SyncFlags] = {}
        self._background: set[asyncio.Task] = set()

    def _state(self, kind: str, merchant_id) -> _SyncFlags:
        key = (str(kind), str(merchant_id))
        if key not in self._flags:
            self._flags[key] = _SyncFlags()
        return self._flags[key]

    async def execute_with_queue(self, kind: str, merchant_id: uuid.UUID, sync_fn: SyncFn) -> dict[str, Any]:
        kind = getattr(kind, "value", kind)
        state = self._state(kind, merchant_id)

        if not state.in_progress or state.restored:
            # sync_history shows runs owned by other processes (other Celery workers).
            running_elsewhere = await self._still_running(kind, merchant_id)
            # Flags may have changed while we awaited; only act on the state we checked.
            if not state.in_progress and running_elsewhere:
                state.in_progress = True
                state.restored = True
            elif state.restored and running_elsewhere is False:
                state.restored = False
                state.in_progress = False

        if state.in_progress:
            state.pending = True
            if state.restored:
                # Owned by another process: the caller retries.
                logger.info("sync_queue.deferred", sync_type=kind, merchant_id=str(merchant_id))
                return {"queued": True, "deferred": True}
            logger.info("sync_queue.queued", sync_type=kind, merchant_id=str(merchant_id))
            return {"queued": True}

        state.in_progress = True
        state.pending = False
        started = time.monotonic()
        try:
            await self._persist_start(kind, merchant_id)
            try:
                result = await sync_fn()
            except Exception as exc:  # noqa: BLE001
                duration = time.monotonic() - started
                logger.error(
                    "sync_queue.failed",
                    sync_type=kind,
                    merchant_id=str(merchant_id),
                    error=str(exc),
                    exc_info=True,
                )
                await self._persist_finish(kind, merchant_id, SYNC_FAILED, duration, error=str(exc))
                return {"error": str(exc)}

            duration = time.monotonic() - started
            await self._persist_finish(kind, merchant_id, SYNC_SUCCESS, duration, records=_record_count(result))
            return {"result": result}
        finally:
            follow_up = state.pending
            state.pending = False
            state.in_progress = False
            state.restored = False
            if follow_up:
                self._spawn_follow_up(kind, merchant_id, sync_fn)

    def _spawn_follow_up(self, kind: str, merchant_id, sync_fn: SyncFn) -> None:
        logger.info("sync_queue.follow_up", sync_type=kind, merchant_id=str(merchant_id))
        task = asyncio.get_running_loop().create_task(self.execute_with_queue(kind, merchant_id, sync_fn))
        self._background.add(task)
        task.add_done_callback(lambda t: self._follow_up_done(t, kind, merchant_id))

    def _follow_up_done(self, task: asyncio.Task, kind: str, merchant_id) -> None:
        self._background.discard(task)
        if task.cancelled():
            logger.warning("sync_queue.follow_up_cancelled", sync_type=kind, merchant_id=str(merchant_id))
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "sync_queue.follow_up_crashed",
                sync_type=kind,
                merchant_id=str(merchant_id),
                error=str(exc),
                exc_info=exc,
            )
            return
        result = task.result()
        if "error" in result:
            logger.error(
                "sync_queue.follow_up_failed",
                sync_type=kind,
                merchant_id=str(merchant_id),
                error=result["error"],
            )

    async def drain(self) -> None:
        """Wait for outstanding follow-up runs, including follow-ups they spawn."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Status ─────────────────────────────────────────────────────────

    def is_in_progress(self, kind: str, merchant_id) -> bool:
        return self._state(getattr(kind, "value", kind), merchant_id).in_progress

    def get_status(self) -> dict[str, dict[str, bool]]:
        return {
            f"{kind}:{merchant_id}": {"in_progress": flags.in_progress, "pending": flags.pending}
            for (kind, merchant_id), flags in self._flags.items()
        }

    def clear(self) -> None:
        self._flags.clear()

    # ── Persistence (best-effort) ──────────────────────────────────────

    async def _persist_start(self, kind: str, merchant_id) -> None:
        now = datetime.utcnow()
        try:
            async with self._session_factory() as db:
                stmt = upsert(db, SyncHistory).values(
                    id=uuid.uuid4(),
                    sync_type=kind,
                    merchant_id=merchant_id,
                    status=SYNC_RUNNING,
                    started_at=now,
                    records_synced=0,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["sync_type", "merchant_id"],
                    set_={
                        "status": SYNC_RUNNING,
                        "started_at": now,
                        "completed_at": None,
                        "error_message": None,
                    },
                )
                await db.execute(stmt)
                await db.commit()
        except Exception as exc:  # noqa: BLE001
            logger.warning("sync_queue.persist_start_failed", sync_type=kind, merchant_id=str(merchant_id), error=str(exc))

    async def _persist_finish(
        self,
        kind: str,
        merchant_id,
        status: str,
        duration_seconds: float,
        records: int = 0,
        error: str | None = None,
    ) -> None:
        now = datetime.utcnow()
        values = {
            "status": status,
            "completed_at": now,
            "duration_seconds": round(duration_seconds, 3),
            "error_message": error,
        }
        if status == SYNC_SUCCESS:
            values.update(records_synced=records, synced_at=now)
        try:
            async with self._session_factory() as db:
                await db.execute(
                    update(SyncHistory)
                    .where(SyncHistory.sync_type == kind, SyncHistory.merchant_id == merchant_id)
                    .values(**values)
                )
                await db.commit()
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "sync_queue.persist_finish_failed", sync_type=kind, merchant_id=str(merchant_id), error=str(exc)
            )

    async def _still_running(self, kind: str, merchant_id) -> bool | None:
        """True when sync_history holds a fresh RUNNING row. None when the check failed."""
        cutoff = datetime.utcnow() - self._stale_after
        try:
            async with self._session_factory() as db:
                row = (
                    await db.execute(
                        select(SyncHistory.status, SyncHistory.started_at).where(
                            SyncHistory.sync_type == kind, SyncHistory.merchant_id == merchant_id
                        )
                    )
                ).first()
        except Exception as exc:  # noqa: BLE001
            logger.warning("sync_queue.status_check_failed", sync_type=kind, merchant_id=str(merchant_id), error=str(exc))
            return None
        if row is None:
            return False
        return row.status == SYNC_RUNNING and row.started_at is not None and row.started_at >= cutoff

    # ── Startup recovery ───────────────────────────────────────────────

    async def initialize(self) -> dict[str, int]:
        """Reconcile in-memory flags with sync_history after a restart.

        Never raises: a failed recovery only costs one possibly-overlapping sync.
        """
        summary = {"interrupted": 0, "restored": 0}
        cutoff = datetime.utcnow() - self._stale_after
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(SyncHistory)
                    .where(SyncHistory.status == SYNC_RUNNING, SyncHistory.started_at < cutoff)
                    .values(
                        status=SYNC_INTERRUPTED,
                        completed_at=datetime.utcnow(),
                        error_message="Interrupted by process restart",
                    )
                )
                summary["interrupted"] = result.rowcount or 0

                rows = (
                    await db.execute(
                        select(SyncHistory.sync_type, SyncHistory.merchant_id).where(
                            SyncHistory.status == SYNC_RUNNING
                        )
                    )
                ).all()
                await db.commit()

            for row in rows:
                state = self._state(row.sync_type, row.merchant_id)
                state.in_progress = True
                state.restored = True
            summary["restored"] = len(rows)
        except Exception as exc:  # noqa: BLE001
            logger.error("sync_queue.initialize_failed", error=str(exc), exc_info=True)
            return summary

        if summary["interrupted"]:
            logger.warning("sync_queue.interrupted_syncs", count=summary["interrupted"])
        if summary["restored"]:
            logger.info("sync_queue.restored_in_progress", count=summary["restored"])
        return summary


def _record_count(result: Any) -> int:
    """Best guess at records synced from a sync's stats dict."""
    if not isinstance(result, dict):
        return 0
    for key in ("records_synced", "items", "updated", "invoices_processed", "count"):
        value = result.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return 0
