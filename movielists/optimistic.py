"""Tentative list state shown to a UI session before the real outcome is known.

A UI session holds one ``ListStateReconciler``. Each mutating action first
calls a ``begin_*`` method, which changes the local state immediately and
returns a correlation id, then hands the facade's result to ``resolve``.
Entries that were queued stay visible until a ``lists_stale`` event or a
refresh replaces them with authoritative data.
"""

import copy
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .events import LISTS_STALE, ListEvent
from .results import Applied, Failed, ListResult, Queued

logger = logging.getLogger(__name__)

MARKER_OPTIMISTIC = "optimistic"
MARKER_QUEUED = "queued"

RESOLVED_CONFIRMED = "confirmed"
RESOLVED_QUEUED = "queued"
RESOLVED_REVERTED = "reverted"

FAILURE_MESSAGES = {
    "duplicate_movie": "This movie is already in your list.",
    "session_expired": "Your session has expired. Please sign in again.",
    "not_found": "That list no longer exists.",
    "unauthorized": "You are not allowed to change this list.",
    "validation_error": "Please check the list details and try again.",
}

Refresher = Callable[[Any], Awaitable[dict | None]]


@dataclass
class OptimisticEntry:
    correlation_id: str
    action: str
    list_key: Any
    movie_id: int | None = None
    marker: str = MARKER_OPTIMISTIC
    operation_id: str | None = None
    snapshot: dict | None = None
    fields: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Resolution:
    correlation_id: str
    status: str
    message: str | None = None
    reason: str | None = None


def failure_message(reason: str, message: str | None = None) -> str:
    if reason in FAILURE_MESSAGES:
        return FAILURE_MESSAGES[reason]
    return message or "Something went wrong. Please try again."


class ListStateReconciler:
    def __init__(self, lists: list[dict] | None = None, refresh: Refresher | None = None) -> None:
        self.lists: dict[Any, dict] = {}
        self.entries: dict[str, OptimisticEntry] = {}
        self._refresh = refresh
        self._ids = itertools.count(1)
        for list_data in lists or []:
            self.lists[list_data["id"]] = copy.deepcopy(list_data)

    def _next_id(self) -> str:
        return f"opt-{next(self._ids)}"

    def _snapshot(self, list_key: Any) -> dict | None:
        current = self.lists.get(list_key)
        return copy.deepcopy(current) if current is not None else None

    def _track(self, action: str, list_key: Any, movie_id: int | None = None, **fields) -> OptimisticEntry:
        entry = OptimisticEntry(
            correlation_id=self._next_id(),
            action=action,
            list_key=list_key,
            movie_id=movie_id,
            snapshot=self._snapshot(list_key),
            fields=fields,
        )
        self.entries[entry.correlation_id] = entry
        return entry

    def _tag(self, target: dict, entry: OptimisticEntry) -> None:
        target["_marker"] = entry.marker
        target["_correlation_id"] = entry.correlation_id

    def begin_create_list(self, name: str, description: str = "", is_public: bool = False) -> str:
        correlation_id = self._next_id()
        entry = OptimisticEntry(correlation_id, "create_list", correlation_id)
        self.entries[correlation_id] = entry
        tentative = {
            "id": correlation_id,
            "name": name,
            "description": description,
            "public": is_public,
            "item_count": 0,
            "items": [],
        }
        self._tag(tentative, entry)
        self.lists[correlation_id] = tentative
        return correlation_id

    def begin_update_list(self, list_id: Any, **fields) -> str:
        entry = self._track("update_list", list_id, **fields)
        target = self.lists.setdefault(list_id, {"id": list_id, "items": []})
        target.update(fields)
        self._tag(target, entry)
        return entry.correlation_id

    def begin_toggle_privacy(self, list_id: Any, is_public: bool) -> str:
        entry = self._track("toggle_privacy", list_id, public=is_public)
        target = self.lists.setdefault(list_id, {"id": list_id, "items": []})
        target["public"] = is_public
        self._tag(target, entry)
        return entry.correlation_id

    def begin_clear_list(self, list_id: Any) -> str:
        entry = self._track("clear_list", list_id)
        target = self.lists.setdefault(list_id, {"id": list_id, "items": []})
        target["items"] = []
        target["item_count"] = 0
        self._tag(target, entry)
        return entry.correlation_id

    def begin_delete_list(self, list_id: Any) -> str:
        entry = self._track("delete_list", list_id)
        self.lists.pop(list_id, None)
        return entry.correlation_id

    def begin_add_movie(self, list_id: Any, movie: dict | int) -> str:
        movie = {"id": movie} if isinstance(movie, int) else dict(movie)
        entry = self._track("add_movie", list_id, int(movie["id"]))
        target = self.lists.setdefault(list_id, {"id": list_id, "items": []})
        self._tag(movie, entry)
        target.setdefault("items", []).append(movie)
        target["item_count"] = len(target["items"])
        return entry.correlation_id

    def begin_remove_movie(self, list_id: Any, movie_id: int) -> str:
        entry = self._track("remove_movie", list_id, int(movie_id))
        target = self.lists.get(list_id)
        if target is not None:
            target["items"] = [item for item in target.get("items", []) if item.get("id") != movie_id]
            target["item_count"] = len(target["items"])
        return entry.correlation_id

    def _tagged(self, entry: OptimisticEntry) -> dict | None:
        target = self.lists.get(entry.list_key)
        if target is None:
            return None
        if entry.action == "add_movie":
            for item in target.get("items", []):
                if item.get("_correlation_id") == entry.correlation_id:
                    return item
            return None
        if target.get("_correlation_id") == entry.correlation_id:
            return target
        return None

    def _untag(self, entry: OptimisticEntry) -> None:
        target = self._tagged(entry)
        if target is not None:
            target.pop("_marker", None)
            target.pop("_correlation_id", None)

    def _revert(self, entry: OptimisticEntry) -> None:
        if entry.action == "create_list":
            self.lists.pop(entry.list_key, None)
        elif entry.action == "add_movie":
            target = self.lists.get(entry.list_key)
            if target is not None:
                target["items"] = [
                    item for item in target.get("items", [])
                    if item.get("_correlation_id") != entry.correlation_id
                ]
                target["item_count"] = len(target["items"])
        elif entry.snapshot is not None:
            self.lists[entry.list_key] = entry.snapshot
        else:
            self.lists.pop(entry.list_key, None)

    async def resolve(self, correlation_id: str, result: ListResult) -> Resolution:
        entry = self.entries.get(correlation_id)
        if entry is None:
            raise KeyError(correlation_id)

        if isinstance(result, Applied):
            del self.entries[correlation_id]
            self._untag(entry)
            if entry.action == "create_list" and isinstance(result.result, dict) and result.result.get("id") is not None:
                created = self.lists.pop(entry.list_key, None) or {}
                created.update(result.result)
                self.lists[result.result["id"]] = created
                entry.list_key = result.result["id"]
            if entry.action != "delete_list":
                await self.refresh(entry.list_key)
            return Resolution(correlation_id, RESOLVED_CONFIRMED)

        if isinstance(result, Queued):
            entry.marker = MARKER_QUEUED
            entry.operation_id = str(result.operation_id)
            target = self._tagged(entry)
            if target is not None:
                target["_marker"] = MARKER_QUEUED
            return Resolution(correlation_id, RESOLVED_QUEUED, "Saved locally. Will sync when the connection recovers.")

        if isinstance(result, Failed):
            del self.entries[correlation_id]
            self._revert(entry)
            logger.debug("Reverted %s (%s): %s", entry.action, correlation_id, result.reason)
            return Resolution(
                correlation_id,
                RESOLVED_REVERTED,
                failure_message(result.reason, result.message),
                result.reason,
            )

        raise TypeError(f"Unknown list result: {result!r}")

    def _reapply(self, entry: OptimisticEntry, target: dict) -> None:
        items = target.setdefault("items", [])
        if entry.action == "add_movie" and all(item.get("id") != entry.movie_id for item in items):
            movie = {"id": entry.movie_id}
            self._tag(movie, entry)
            items.append(movie)
        elif entry.action == "remove_movie":
            target["items"] = [item for item in items if item.get("id") != entry.movie_id]
        elif entry.action in ("update_list", "toggle_privacy"):
            target.update(entry.fields)
            self._tag(target, entry)
        elif entry.action == "clear_list":
            target["items"] = []
            self._tag(target, entry)
        target["item_count"] = len(target["items"])

    def apply_remote(self, list_data: dict) -> None:
        """Replace a list with authoritative data, keeping still-queued changes on top."""
        list_id = list_data["id"]
        target = copy.deepcopy(list_data)
        target.setdefault("items", [])
        for entry in self.entries.values():
            if entry.list_key == list_id and entry.marker == MARKER_QUEUED:
                self._reapply(entry, target)
        self.lists[list_id] = target

    async def refresh(self, list_id: Any) -> None:
        if self._refresh is None:
            return
        fresh = await self._refresh(list_id)
        if fresh is None:
            self.lists.pop(list_id, None)
        else:
            self.apply_remote(fresh)

    async def handle_event(self, event: ListEvent) -> None:
        """Settle queued entries named by a ``lists_stale`` event and refresh."""
        if event.event_type != LISTS_STALE:
            return
        operation_id = event.data.get("operation_id")
        for correlation_id, entry in list(self.entries.items()):
            if operation_id is not None and entry.operation_id == operation_id:
                del self.entries[correlation_id]
                if entry.action == "create_list":
                    # The refresh below brings in the real list.
                    self.lists.pop(entry.list_key, None)
        if event.list_id is not None:
            await self.refresh(event.list_id)

    def pending(self) -> list[OptimisticEntry]:
        return list(self.entries.values())
