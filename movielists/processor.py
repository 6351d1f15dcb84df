"""Drains the operation queue, globally on a timer or for one owner on demand.

Records are grouped by ``(owner_id, target_list_id)``. A group is walked in
enqueue order and stops at the first record that is not ready or did not
settle, so a later mutation never overtakes an earlier one on the same list.
Different groups run concurrently.
"""

import asyncio
import contextlib
import logging
import uuid
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import queue as queue_store
from .auth import store_session
from .config import QueueSettings, queue_settings
from .database import async_session
from .executor import (
    OUTCOME_COMPLETED,
    OUTCOME_FAILED_PERMANENT,
    OUTCOME_RETRY_SCHEDULED,
    OUTCOME_SKIPPED,
    ExecutionResult,
    SyncExecutor,
)
from .models import QueuedOperation, utc_now

logger = logging.getLogger(__name__)


def _empty_summary() -> dict[str, int]:
    return {
        "picked": 0,
        "processed": 0,
        OUTCOME_COMPLETED: 0,
        OUTCOME_RETRY_SCHEDULED: 0,
        OUTCOME_FAILED_PERMANENT: 0,
        OUTCOME_SKIPPED: 0,
    }


def group_by_list(operations: list[QueuedOperation]) -> dict[tuple, list[QueuedOperation]]:
    groups: dict[tuple, list[QueuedOperation]] = {}
    for operation in operations:
        groups.setdefault(operation.key, []).append(operation)
    return groups


class QueueProcessor:
    def __init__(
        self,
        executor: SyncExecutor | None = None,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        settings: QueueSettings | None = None,
    ) -> None:
        self.settings = settings or queue_settings
        self.session_factory = session_factory
        self.executor = executor or SyncExecutor(session_factory=session_factory, settings=self.settings)
        self.enabled = self.settings.enabled
        self.last_processed_at: datetime | None = None
        self.last_cleanup_at: datetime | None = None
        self.total_runs = 0
        self.total_failed_runs = 0
        self._task: asyncio.Task | None = None
        self._triggered: set[asyncio.Task] = set()

    async def process_ready(self, owner_id: int | None = None) -> dict[str, int]:
        """Process eligible records, for one owner or for everyone."""
        async with self.session_factory() as db:
            active = await queue_store.get_active_operations(db, owner_id, limit=self.settings.batch_size)

        summary = _empty_summary()
        groups = group_by_list(active)
        if not groups:
            return summary

        semaphore = asyncio.Semaphore(self.settings.concurrency)

        async def _worker(operations: list[QueuedOperation]) -> list[ExecutionResult]:
            async with semaphore:
                return await self._process_group(operations)

        results = await asyncio.gather(*(_worker(ops) for ops in groups.values()))
        for group_results in results:
            for result in group_results:
                summary["picked"] += 1
                summary[result.outcome] += 1
                if result.outcome != OUTCOME_SKIPPED:
                    summary["processed"] += 1

        logger.info(
            "Queue run (owner=%s): %s processed, %s completed, %s retrying, %s failed permanently",
            owner_id if owner_id is not None else "all",
            summary["processed"],
            summary[OUTCOME_COMPLETED],
            summary[OUTCOME_RETRY_SCHEDULED],
            summary[OUTCOME_FAILED_PERMANENT],
        )
        return summary

    async def _process_group(self, operations: list[QueuedOperation]) -> list[ExecutionResult]:
        results = []
        for operation in operations:
            if not queue_store.is_ready(operation):
                break
            result = await self.executor.execute(operation.id)
            results.append(result)
            if not result.settled:
                break
        return results

    async def run_once(self, owner_id: int | None = None) -> dict[str, int] | None:
        """One processing pass that records run statistics and never raises."""
        self.total_runs += 1
        try:
            summary = await self.process_ready(owner_id)
        except Exception:
            self.total_failed_runs += 1
            logger.exception("Queue processing run failed")
            return None
        self.last_processed_at = utc_now()
        return summary

    async def cleanup(self, days_old: int | None = None) -> int:
        days_old = self.settings.retention_days if days_old is None else days_old
        async with self.session_factory() as db:
            deleted = await queue_store.cleanup_old_operations(db, days_old)
        self.last_cleanup_at = utc_now()
        return deleted

    async def _cleanup_if_due(self) -> None:
        now = utc_now()
        if self.last_cleanup_at and (now - self.last_cleanup_at).total_seconds() < self.settings.cleanup_interval:
            return
        try:
            await self.cleanup()
        except Exception:
            logger.exception("Queue cleanup failed")

    async def recover_stale(self) -> int:
        """Release claims left behind by a crashed or cancelled run."""
        async with self.session_factory() as db:
            return await queue_store.recover_stale_claims(db, self.settings.claim_lease_seconds)

    async def _loop(self) -> None:
        # The app drains the queue once at startup, so the first pass waits.
        while True:
            await asyncio.sleep(self.settings.process_interval)
            if not self.enabled:
                continue
            try:
                await self.recover_stale()
            except Exception:
                logger.exception("Stale claim recovery failed")
            await self.run_once()
            await self._cleanup_if_due()

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        logger.info(
            "Starting queue processor (interval=%ss, enabled=%s)",
            self.settings.process_interval, self.enabled,
        )
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Queue processor stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = bool(enabled)
        logger.info("Queue processor %s", "enabled" if self.enabled else "disabled")

    async def process_now(self, owner_id: int | None = None) -> dict[str, int]:
        # Explicit requests run even while the periodic loop is disabled.
        return await self.process_ready(owner_id)

    def trigger(self, owner_id: int | None = None) -> asyncio.Task:
        """Schedule a run in the background and return immediately."""
        task = asyncio.create_task(self.run_once(owner_id))
        self._triggered.add(task)
        task.add_done_callback(self._triggered.discard)
        return task

    async def retry_operation(self, owner_id: int, operation_id: uuid.UUID) -> dict:
        async with self.session_factory() as db:
            operation = await queue_store.reset_for_retry(db, owner_id, operation_id)
        summary = await self.process_ready(owner_id)
        async with self.session_factory() as db:
            operation = await queue_store.get_operation(db, operation.id)
        return {"operation": operation, "summary": summary}

    async def retry_user_operations(self, owner_id: int) -> dict:
        async with self.session_factory() as db:
            reset = await queue_store.reset_user_failed(db, owner_id)
        summary = await self.process_ready(owner_id)
        return {"reset": reset, "summary": summary}

    async def restore_session(
        self,
        db: AsyncSession,
        owner_id: int,
        session_id: str,
        username: str | None = None,
    ) -> asyncio.Task:
        """Store a renewed provider session and replay what waited on it.

        Records that gave up with ``session_expired`` go back to pending, then
        a scoped run is scheduled for the owner.
        """
        await store_session(db, owner_id, session_id, username)
        await queue_store.reset_session_expired(db, owner_id)
        return self.trigger(owner_id)

    async def status(self) -> dict:
        async with self.session_factory() as db:
            stats = await queue_store.get_queue_stats(db)
        return {
            "enabled": self.enabled,
            "running": self.running,
            "interval_seconds": self.settings.process_interval,
            "last_processed_at": self.last_processed_at.isoformat() if self.last_processed_at else None,
            "last_cleanup_at": self.last_cleanup_at.isoformat() if self.last_cleanup_at else None,
            "total_runs": self.total_runs,
            "total_failed_runs": self.total_failed_runs,
            "queue_stats": stats,
        }


queue_processor = QueueProcessor()
