import copy
import time

from . import config

MISS = object()


class ListCache:
    """TTL cache of remote list data. Never authoritative; always overwritable."""

    def __init__(self, ttl: float = config.LIST_CACHE_TTL) -> None:
        self.ttl = ttl
        self._user_lists: dict[int, tuple[float, list[dict]]] = {}
        self._lists: dict[int, tuple[float, dict]] = {}
        self._items: dict[int, tuple[float, list[dict]]] = {}
        self.hits = 0
        self.misses = 0

    def _read(self, store: dict, key: int, count: bool = True):
        entry = store.get(key)
        if entry is None or (time.time() - entry[0]) >= self.ttl:
            if entry is not None:
                store.pop(key, None)
            if count:
                self.misses += 1
            return MISS
        if count:
            self.hits += 1
        return copy.deepcopy(entry[1])

    def get_user_lists(self, owner_id: int):
        return self._read(self._user_lists, owner_id)

    def put_user_lists(self, owner_id: int, lists: list[dict]) -> None:
        self._user_lists[owner_id] = (time.time(), copy.deepcopy(lists))

    def get_list(self, list_id: int):
        return self._read(self._lists, list_id)

    def put_list(self, list_data: dict) -> None:
        self._lists[int(list_data["id"])] = (time.time(), copy.deepcopy(list_data))

    def get_list_items(self, list_id: int):
        return self._read(self._items, list_id)

    def put_list_items(self, list_id: int, items: list[dict]) -> None:
        self._items[list_id] = (time.time(), copy.deepcopy(items))

    def peek_list(self, list_id: int):
        """Like ``get_list`` but left out of the hit/miss stats."""
        return self._read(self._lists, list_id, count=False)

    def peek_list_items(self, list_id: int):
        return self._read(self._items, list_id, count=False)

    def invalidate_list(self, list_id: int) -> None:
        self._lists.pop(list_id, None)
        self._items.pop(list_id, None)

    def invalidate_user(self, owner_id: int) -> None:
        self._user_lists.pop(owner_id, None)

    def clear(self) -> None:
        self._user_lists.clear()
        self._lists.clear()
        self._items.clear()
        self.hits = 0
        self.misses = 0

    def stats(self) -> dict:
        lookups = self.hits + self.misses
        now = time.time()
        stamps = [
            stamp
            for store in (self._user_lists, self._lists, self._items)
            for stamp, _ in store.values()
        ]
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 3) if lookups else 0.0,
            "cached_lists": len(self._lists),
            "cached_user_lists": len(self._user_lists),
            "oldest_entry_age": round(now - min(stamps), 1) if stamps else None,
        }


list_cache = ListCache()
