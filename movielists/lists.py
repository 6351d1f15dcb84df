"""Entry point for every list mutation and the cached read side.

Each mutation makes one bounded synchronous attempt against the remote API.
Transient failures are queued for the background processor; permanent and
credential failures are returned to the caller as-is.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import config, tmdb
from . import queue as queue_store
from .auth import get_user_session
from .cache import MISS, ListCache, list_cache
from .errors import (
    DuplicateMovie,
    ListAPIError,
    SessionExpired,
    is_credential_error,
    is_transient,
    reason_for,
)
from .models import QueuedOperation
from .operations import (
    ADD_MOVIE,
    CLEAR_LIST,
    CREATE_LIST,
    DELETE_LIST,
    REMOVE_MOVIE,
    TOGGLE_PRIVACY,
    UPDATE_LIST,
    AddMoviePayload,
    ClearListPayload,
    CreateListPayload,
    DeleteListPayload,
    OperationPayload,
    RemoveMoviePayload,
    TogglePrivacyPayload,
    UpdateListPayload,
)
from .results import Applied, Failed, ListResult, Queued

logger = logging.getLogger(__name__)

NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500

VALIDATION_ERROR = "validation_error"


def validate_list_fields(name: str | None, description: str | None, *, name_required: bool = True) -> str | None:
    """Return the first validation message for list fields, or ``None``."""
    if name is None or not name.strip():
        if name_required or name is not None:
            return "name_required"
    else:
        length = len(name.strip())
        if length < NAME_MIN_LENGTH:
            return "name_too_short"
        if length > NAME_MAX_LENGTH:
            return "name_too_long"
    if description is not None and len(description) > DESCRIPTION_MAX_LENGTH:
        return "description_too_long"
    return None


def _movie_id_of(item: dict) -> int | None:
    value = item.get("id", item.get("movie_id"))
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ListService:
    def __init__(
        self,
        client: tmdb.ListClient | None = None,
        cache: ListCache | None = None,
        call_timeout: float = config.LIST_CALL_TIMEOUT,
    ) -> None:
        self.client = client or tmdb
        self.cache = cache or list_cache
        self.call_timeout = call_timeout

    async def _attempt(
        self,
        db: AsyncSession,
        owner_id: int,
        operation_type: str,
        list_id: int | None,
        payload: OperationPayload,
        call: Callable[[str], Awaitable[Any]],
        rollback: Callable[[], None] | None = None,
    ) -> ListResult:
        try:
            session_id = await get_user_session(db, owner_id)
        except SessionExpired:
            if rollback:
                rollback()
            return Failed(SessionExpired.reason, "Session expired. Please re-authenticate.")

        if list_id is not None and await queue_store.has_active_operations(db, owner_id, list_id):
            # Going direct would overtake the queued changes on this list.
            operation = await queue_store.enqueue_operation(db, operation_type, owner_id, list_id, payload)
            logger.info(
                "%s for owner %s queued as %s behind earlier changes to list %s",
                operation_type, owner_id, operation.id, list_id,
            )
            return Queued(operation.id)

        try:
            result = await asyncio.wait_for(call(session_id), timeout=self.call_timeout)
        except (ListAPIError, TimeoutError) as exc:
            reason = reason_for(exc)
            if is_transient(exc) and not is_credential_error(exc):
                operation = await queue_store.enqueue_operation(db, operation_type, owner_id, list_id, payload)
                logger.info(
                    "%s for owner %s queued as %s after %s",
                    operation_type, owner_id, operation.id, reason,
                )
                return Queued(operation.id)
            if rollback:
                rollback()
            logger.info("%s for owner %s failed: %s", operation_type, owner_id, reason)
            message = getattr(exc, "message", None)
            if isinstance(exc, DuplicateMovie):
                message = "Movie is already in this list"
            return Failed(reason, message)

        return Applied(result)

    def _invalidate(self, owner_id: int, list_id: int | None = None) -> None:
        if list_id is not None:
            self.cache.invalidate_list(list_id)
        self.cache.invalidate_user(owner_id)

    def _snapshot(self, list_id: int) -> Callable[[], None]:
        """Capture cached list state so an optimistic write can be undone."""
        cached_list = self.cache.peek_list(list_id)
        cached_items = self.cache.peek_list_items(list_id)

        def restore() -> None:
            self.cache.invalidate_list(list_id)
            if cached_list is not MISS:
                self.cache.put_list(cached_list)
            if cached_items is not MISS:
                self.cache.put_list_items(list_id, cached_items)

        return restore

    def _write_items(self, list_id: int, mutate: Callable[[list[dict]], list[dict]]) -> None:
        items = self.cache.peek_list_items(list_id)
        if items is MISS:
            return
        items = mutate(items)
        self.cache.put_list_items(list_id, items)
        cached_list = self.cache.peek_list(list_id)
        if cached_list is not MISS:
            cached_list["items"] = items
            cached_list["item_count"] = len(items)
            self.cache.put_list(cached_list)

    def _write_list(self, list_id: int, fields: dict) -> None:
        cached_list = self.cache.peek_list(list_id)
        if cached_list is not MISS:
            cached_list.update(fields)
            self.cache.put_list(cached_list)

    def _finish(self, result: ListResult, owner_id: int, list_id: int | None = None) -> ListResult:
        # Applied results are re-read from the remote; queued ones keep the optimistic cache.
        if isinstance(result, Applied):
            self._invalidate(owner_id, list_id)
        elif isinstance(result, Queued):
            self.cache.invalidate_user(owner_id)
        return result

    async def create_list(
        self,
        db: AsyncSession,
        owner_id: int,
        name: str,
        description: str = "",
        is_public: bool = False,
    ) -> ListResult:
        error = validate_list_fields(name, description)
        if error:
            return Failed(VALIDATION_ERROR, error)
        name = name.strip()
        description = (description or "").strip()
        payload = CreateListPayload(name=name, description=description, is_public=is_public)

        async def call(session_id: str):
            return await self.client.create_list(session_id, name, description, is_public)

        result = await self._attempt(db, owner_id, CREATE_LIST, None, payload, call)
        return self._finish(result, owner_id)

    async def update_list(
        self,
        db: AsyncSession,
        owner_id: int,
        list_id: int,
        name: str | None = None,
        description: str | None = None,
        is_public: bool | None = None,
    ) -> ListResult:
        error = validate_list_fields(name, description, name_required=False)
        if error:
            return Failed(VALIDATION_ERROR, error)
        payload = UpdateListPayload(
            name=name.strip() if name is not None else None,
            description=description.strip() if description is not None else None,
            is_public=is_public,
        )
        fields = payload.remote_fields()
        if not fields:
            return Failed(VALIDATION_ERROR, "no_changes")

        restore = self._snapshot(list_id)
        self._write_list(list_id, fields)

        async def call(session_id: str):
            return await self.client.update_list(session_id, list_id, fields)

        result = await self._attempt(db, owner_id, UPDATE_LIST, list_id, payload, call, restore)
        return self._finish(result, owner_id, list_id)

    async def toggle_privacy(self, db: AsyncSession, owner_id: int, list_id: int, is_public: bool) -> ListResult:
        payload = TogglePrivacyPayload(is_public=is_public)
        restore = self._snapshot(list_id)
        self._write_list(list_id, {"public": is_public})

        async def call(session_id: str):
            return await self.client.update_list(session_id, list_id, {"public": is_public})

        result = await self._attempt(db, owner_id, TOGGLE_PRIVACY, list_id, payload, call, restore)
        return self._finish(result, owner_id, list_id)

    async def delete_list(self, db: AsyncSession, owner_id: int, list_id: int) -> ListResult:
        payload = DeleteListPayload()

        async def call(session_id: str):
            await self.client.delete_list(session_id, list_id)
            return {"id": list_id, "deleted": True}

        result = await self._attempt(db, owner_id, DELETE_LIST, list_id, payload, call)
        return self._finish(result, owner_id, list_id)

    async def clear_list(self, db: AsyncSession, owner_id: int, list_id: int) -> ListResult:
        payload = ClearListPayload()
        restore = self._snapshot(list_id)
        self._write_items(list_id, lambda items: [])

        async def call(session_id: str):
            await self.client.clear_list(session_id, list_id)
            return {"id": list_id, "cleared": True}

        result = await self._attempt(db, owner_id, CLEAR_LIST, list_id, payload, call, restore)
        return self._finish(result, owner_id, list_id)

    async def add_movie(self, db: AsyncSession, owner_id: int, list_id: int, movie_id: int) -> ListResult:
        payload = AddMoviePayload(movie_id=movie_id)
        cached_items = self.cache.get_list_items(list_id)
        if cached_items is not MISS and any(_movie_id_of(item) == movie_id for item in cached_items):
            return Failed(DuplicateMovie.reason, "Movie is already in this list")

        restore = self._snapshot(list_id)
        self._write_items(list_id, lambda items: [*items, {"id": movie_id}])

        async def call(session_id: str):
            await self.client.add_movie(session_id, list_id, movie_id)
            return {"list_id": list_id, "movie_id": movie_id}

        result = await self._attempt(db, owner_id, ADD_MOVIE, list_id, payload, call, restore)
        return self._finish(result, owner_id, list_id)

    async def remove_movie(self, db: AsyncSession, owner_id: int, list_id: int, movie_id: int) -> ListResult:
        payload = RemoveMoviePayload(movie_id=movie_id)
        restore = self._snapshot(list_id)
        self._write_items(list_id, lambda items: [i for i in items if _movie_id_of(i) != movie_id])

        async def call(session_id: str):
            await self.client.remove_movie(session_id, list_id, movie_id)
            return {"list_id": list_id, "movie_id": movie_id}

        result = await self._attempt(db, owner_id, REMOVE_MOVIE, list_id, payload, call, restore)
        return self._finish(result, owner_id, list_id)

    async def get_user_lists(self, db: AsyncSession, owner_id: int) -> list[dict]:
        cached = self.cache.get_user_lists(owner_id)
        if cached is not MISS:
            return cached
        session_id = await get_user_session(db, owner_id)
        lists = await self.client.get_account_lists(session_id, owner_id)
        self.cache.put_user_lists(owner_id, lists)
        return lists

    async def get_list(self, db: AsyncSession, owner_id: int, list_id: int) -> dict:
        cached = self.cache.get_list(list_id)
        if cached is not MISS:
            return cached
        session_id = await get_user_session(db, owner_id)
        list_data = await self.client.fetch_list(session_id, list_id)
        self.cache.put_list(list_data)
        self.cache.put_list_items(list_id, list_data.get("items") or [])
        return list_data

    async def get_list_movies(self, db: AsyncSession, owner_id: int, list_id: int) -> list[dict]:
        cached = self.cache.get_list_items(list_id)
        if cached is not MISS:
            return cached
        return (await self.get_list(db, owner_id, list_id)).get("items") or []

    async def movie_in_list(self, db: AsyncSession, owner_id: int, list_id: int, movie_id: int) -> bool:
        items = await self.get_list_movies(db, owner_id, list_id)
        return any(_movie_id_of(item) == movie_id for item in items)

    async def get_list_stats(self, db: AsyncSession, owner_id: int, list_id: int) -> dict:
        list_data = await self.get_list(db, owner_id, list_id)
        pending = await db.scalar(
            select(func.count(QueuedOperation.id)).where(
                QueuedOperation.owner_id == owner_id,
                QueuedOperation.target_list_id == list_id,
                QueuedOperation.status.in_(queue_store.ACTIVE_STATUSES),
            )
        )
        return {
            "list_id": list_id,
            "name": list_data.get("name"),
            "item_count": int(list_data.get("item_count") or len(list_data.get("items") or [])),
            "public": bool(list_data.get("public")),
            "pending_operations": int(pending or 0),
        }

    async def get_user_lists_summary(self, db: AsyncSession, owner_id: int) -> dict:
        lists = await self.get_user_lists(db, owner_id)
        queue_stats = await queue_store.get_user_stats(db, owner_id)
        public_lists = sum(1 for entry in lists if entry.get("public"))
        return {
            "total_lists": len(lists),
            "total_items": sum(int(entry.get("item_count") or 0) for entry in lists),
            "public_lists": public_lists,
            "private_lists": len(lists) - public_lists,
            "pending_operations": queue_stats["pending_count"],
            "failed_operations": queue_stats["failed_count"],
        }

    async def sync_list(self, db: AsyncSession, owner_id: int, list_id: int) -> dict:
        self.cache.invalidate_list(list_id)
        return await self.get_list(db, owner_id, list_id)

    async def sync_all_lists(self, db: AsyncSession, owner_id: int) -> list[dict]:
        previous = self.cache.get_user_lists(owner_id)
        if previous is not MISS:
            for entry in previous:
                if entry.get("id") is not None:
                    self.cache.invalidate_list(int(entry["id"]))
        self.cache.invalidate_user(owner_id)
        lists = await self.get_user_lists(db, owner_id)
        for entry in lists:
            if entry.get("id") is not None:
                self.cache.invalidate_list(int(entry["id"]))
        return lists


list_service = ListService()
