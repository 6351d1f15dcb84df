"""Runs one queued operation against the remote list API."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import config, tmdb
from . import queue as queue_store
from .auth import get_user_session
from .cache import ListCache, list_cache
from .config import QueueSettings, queue_settings
from .database import async_session
from .errors import DuplicateMovie, ListAPIError, NotFound, reason_for
from .events import ListEventBus, event_bus
from .models import QueuedOperation
from .operations import (
    AddMoviePayload,
    ClearListPayload,
    CreateListPayload,
    DeleteListPayload,
    OperationPayload,
    RemoveMoviePayload,
    TogglePrivacyPayload,
    UpdateListPayload,
    parse_payload,
)

logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_RETRY_SCHEDULED = "retry_scheduled"
OUTCOME_FAILED_PERMANENT = "failed_permanent"
OUTCOME_SKIPPED = "skipped"

# Outcomes after which a later operation on the same list may run.
SETTLED_OUTCOMES = (OUTCOME_COMPLETED, OUTCOME_FAILED_PERMANENT)


@dataclass
class ExecutionResult:
    operation_id: uuid.UUID
    outcome: str
    reason: str | None = None
    result: Any = None
    data: dict = field(default_factory=dict)

    @property
    def settled(self) -> bool:
        return self.outcome in SETTLED_OUTCOMES


def _already_applied(payload: OperationPayload, exc: BaseException) -> bool:
    """Errors that mean an earlier attempt already reached the remote state."""
    if isinstance(exc, DuplicateMovie):
        return isinstance(payload, AddMoviePayload)
    if isinstance(exc, NotFound):
        return isinstance(payload, (RemoveMoviePayload, ClearListPayload, DeleteListPayload))
    return False


class SyncExecutor:
    def __init__(
        self,
        client: tmdb.ListClient | None = None,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        settings: QueueSettings | None = None,
        cache: ListCache | None = None,
        bus: ListEventBus | None = None,
        call_timeout: float = config.LIST_CALL_TIMEOUT,
    ) -> None:
        self.client = client or tmdb
        self.session_factory = session_factory
        self.settings = settings or queue_settings
        self.cache = cache or list_cache
        self.bus = bus or event_bus
        self.call_timeout = call_timeout

    async def dispatch(
        self,
        session_id: str,
        operation: QueuedOperation,
        payload: OperationPayload,
    ) -> Any:
        list_id = operation.target_list_id
        if isinstance(payload, CreateListPayload):
            return await self.client.create_list(session_id, payload.name, payload.description, payload.is_public)
        if isinstance(payload, UpdateListPayload):
            return await self.client.update_list(session_id, list_id, payload.remote_fields())
        if isinstance(payload, TogglePrivacyPayload):
            return await self.client.update_list(session_id, list_id, {"public": payload.is_public})
        if isinstance(payload, DeleteListPayload):
            return await self.client.delete_list(session_id, list_id)
        if isinstance(payload, ClearListPayload):
            return await self.client.clear_list(session_id, list_id)
        if isinstance(payload, AddMoviePayload):
            return await self.client.add_movie(session_id, list_id, payload.movie_id)
        if isinstance(payload, RemoveMoviePayload):
            return await self.client.remove_movie(session_id, list_id, payload.movie_id)
        raise ValueError(f"Unsupported operation type: {operation.operation_type}")

    async def execute(self, operation_id: uuid.UUID) -> ExecutionResult:
        """Claim, run and record one operation.

        Returns ``skipped`` when the claim is lost; the record is then left
        untouched for whoever holds it.
        """
        async with self.session_factory() as db:
            operation = await queue_store.claim_operation(db, operation_id)
            if operation is None:
                return ExecutionResult(operation_id, OUTCOME_SKIPPED)
            return await self._run_claimed(db, operation)

    async def _run_claimed(self, db: AsyncSession, operation: QueuedOperation) -> ExecutionResult:
        try:
            payload = parse_payload(operation.operation_type, operation.payload)
        except ValueError as exc:
            logger.error("Operation %s has an invalid payload: %s", operation.id, exc)
            return await self._record_failure(db, operation, exc)

        try:
            session_id = await get_user_session(db, operation.owner_id)
            result = await asyncio.wait_for(
                self.dispatch(session_id, operation, payload),
                timeout=self.call_timeout,
            )
        except (ListAPIError, TimeoutError) as exc:
            if _already_applied(payload, exc):
                logger.info(
                    "Operation %s already applied remotely (%s); completing",
                    operation.id, reason_for(exc),
                )
                return await self._record_success(db, operation, None)
            return await self._record_failure(db, operation, exc)
        except asyncio.CancelledError:
            # The remote outcome is unknown; hand the record back before unwinding.
            await queue_store.release_claim(db, operation, "attempt cancelled")
            raise
        except Exception as exc:
            # Keep the record out of in_progress; unknown errors are not retried.
            logger.exception("Unexpected error executing operation %s", operation.id)
            return await self._record_failure(db, operation, exc)

        return await self._record_success(db, operation, result)

    async def _record_success(self, db: AsyncSession, operation: QueuedOperation, result: Any) -> ExecutionResult:
        await queue_store.mark_completed(db, operation)
        data = {"operation_id": str(operation.id), "operation_type": operation.operation_type}
        list_id = operation.target_list_id
        if isinstance(result, dict) and result.get("id") is not None and list_id is None:
            data["created_list_id"] = result["id"]
            list_id = result["id"]
        if list_id is not None:
            self.cache.invalidate_list(list_id)
        self.cache.invalidate_user(operation.owner_id)
        self.bus.publish_stale(operation.owner_id, list_id, **data)
        return ExecutionResult(operation.id, OUTCOME_COMPLETED, result=result, data=data)

    async def _record_failure(self, db: AsyncSession, operation: QueuedOperation, exc: BaseException) -> ExecutionResult:
        status = await queue_store.mark_failed(db, operation, exc, self.settings)
        if status == queue_store.STATUS_FAILED:
            outcome = OUTCOME_RETRY_SCHEDULED
        elif status == queue_store.STATUS_FAILED_PERMANENT:
            outcome = OUTCOME_FAILED_PERMANENT
        else:
            outcome = OUTCOME_SKIPPED
        return ExecutionResult(operation.id, outcome, reason=reason_for(exc))
