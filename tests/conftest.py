import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TMDB_API_KEY", "test-key")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("QUEUE_PROCESSOR_ENABLED", "false")

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from movielists.auth import store_session
from movielists.cache import ListCache
from movielists.config import QueueSettings
from movielists.errors import DuplicateMovie, NotFound
from movielists.events import ListEventBus
from movielists.executor import SyncExecutor
from movielists.lists import ListService
from movielists.models import Base, QueuedOperation, utc_now
from movielists.processor import QueueProcessor

OWNER_A = 101
OWNER_B = 202


class FakeListClient:
    """In-memory stand-in for the remote list API.

    ``fail(method, *errors)`` makes the next calls to ``method`` raise the
    given errors in order; ``delay`` makes every call sleep first.
    """

    def __init__(self) -> None:
        self.lists: dict[int, dict] = {}
        self.calls: list[tuple] = []
        self.failures: dict[str, list[BaseException]] = {}
        self.delay = 0.0
        self._next_id = 1000

    def seed(self, list_id: int, name: str = "Favourites", movie_ids=(), owner_id: int = OWNER_A) -> dict:
        self.lists[list_id] = {
            "id": list_id,
            "name": name,
            "description": "",
            "public": False,
            "owner_id": owner_id,
            "items": [{"id": movie_id, "title": f"Movie {movie_id}"} for movie_id in movie_ids],
        }
        return self.lists[list_id]

    def fail(self, method: str, *errors: BaseException) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def calls_to(self, method: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == method]

    async def _enter(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        if self.delay:
            await asyncio.sleep(self.delay)
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def _get(self, list_id: int) -> dict:
        if list_id not in self.lists:
            raise NotFound("The resource you requested could not be found.", status=404)
        return self.lists[list_id]

    def _view(self, list_data: dict) -> dict:
        items = [dict(item) for item in list_data["items"]]
        return {**list_data, "items": items, "item_count": len(items)}

    async def create_list(self, session_id, name, description="", is_public=False):
        await self._enter("create_list", name)
        self._next_id += 1
        self.lists[self._next_id] = {
            "id": self._next_id,
            "name": name,
            "description": description,
            "public": is_public,
            "items": [],
        }
        return self._view(self.lists[self._next_id])

    async def update_list(self, session_id, list_id, fields):
        await self._enter("update_list", list_id, dict(fields))
        list_data = self._get(list_id)
        list_data.update(fields)
        return {"id": list_id, **fields}

    async def delete_list(self, session_id, list_id):
        await self._enter("delete_list", list_id)
        self._get(list_id)
        del self.lists[list_id]

    async def clear_list(self, session_id, list_id):
        await self._enter("clear_list", list_id)
        self._get(list_id)["items"] = []

    async def add_movie(self, session_id, list_id, movie_id):
        await self._enter("add_movie", list_id, movie_id)
        items = self._get(list_id)["items"]
        if any(item["id"] == movie_id for item in items):
            raise DuplicateMovie("The item/record you are trying to create already exists.", status=403)
        items.append({"id": movie_id, "title": f"Movie {movie_id}"})

    async def remove_movie(self, session_id, list_id, movie_id):
        await self._enter("remove_movie", list_id, movie_id)
        list_data = self._get(list_id)
        if not any(item["id"] == movie_id for item in list_data["items"]):
            raise NotFound("The resource you requested could not be found.", status=404)
        list_data["items"] = [item for item in list_data["items"] if item["id"] != movie_id]

    async def fetch_list(self, session_id, list_id):
        await self._enter("fetch_list", list_id)
        return self._view(self._get(list_id))

    async def fetch_list_movies(self, session_id, list_id):
        return (await self.fetch_list(session_id, list_id))["items"]

    async def get_account_lists(self, session_id, account_id):
        await self._enter("get_account_lists", account_id)
        return [
            {k: v for k, v in self._view(data).items() if k != "items"}
            for data in self.lists.values()
            if data.get("owner_id", account_id) == account_id
        ]


@pytest.fixture()
async def async_engine(tmp_path):
    # A file database gives every session its own connection, so concurrent
    # claims behave as they would against a real server.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'movielists.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(async_engine):
    return async_sessionmaker(bind=async_engine, expire_on_commit=False)


@pytest.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture()
async def sessions(db_session):
    await store_session(db_session, OWNER_A, "session-a")
    await store_session(db_session, OWNER_B, "session-b")


@pytest.fixture()
def client():
    return FakeListClient()


@pytest.fixture()
def settings():
    return QueueSettings(
        max_retries=3,
        base_delay_seconds=30,
        max_delay_seconds=600,
        batch_size=100,
        concurrency=4,
        enabled=False,
    )


@pytest.fixture()
def cache():
    return ListCache(ttl=300)


@pytest.fixture()
def bus():
    return ListEventBus()


@pytest.fixture()
def executor(client, session_factory, settings, cache, bus):
    return SyncExecutor(client=client, session_factory=session_factory, settings=settings, cache=cache, bus=bus)


@pytest.fixture()
def processor(executor, session_factory, settings):
    return QueueProcessor(executor=executor, session_factory=session_factory, settings=settings)


@pytest.fixture()
def service(client, cache):
    return ListService(client=client, cache=cache, call_timeout=0.5)


@pytest.fixture()
def make_due(session_factory):
    """Move an operation's backoff deadline into the past."""

    async def _make_due(operation_id):
        async with session_factory() as db:
            await db.execute(
                update(QueuedOperation)
                .where(QueuedOperation.id == operation_id)
                .values(next_eligible_at=utc_now() - timedelta(seconds=1))
            )
            await db.commit()

    return _make_due
