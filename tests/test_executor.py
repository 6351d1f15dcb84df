from movielists import queue as queue_store
from movielists.auth import invalidate_sessions
from movielists.cache import MISS
from movielists.errors import AccessDenied, NetworkError, RateLimited, SessionExpired
from movielists.events import LISTS_STALE

from .conftest import OWNER_A


async def test_successful_operation_completes_and_signals_stale(
    db_session, sessions, client, executor, bus, cache
):
    client.seed(42, movie_ids=[1])
    cache.put_list(client.lists[42])
    cache.put_user_lists(OWNER_A, [{"id": 42}])
    subscription = bus.subscribe(OWNER_A)

    operation = await queue_store.enqueue_operation(db_session, "add_movie", OWNER_A, 42, {"movie_id": 7})
    result = await executor.execute(operation.id)

    assert result.outcome == "completed"
    assert client.calls_to("add_movie") == [("add_movie", 42, 7)]
    assert (await queue_store.get_operation(db_session, operation.id)).status == "completed"

    event = subscription.get_nowait()
    assert event.event_type == LISTS_STALE
    assert event.owner_id == OWNER_A
    assert event.list_id == 42
    assert event.data["operation_id"] == str(operation.id)
    assert cache.get_list(42) is MISS
    assert cache.get_user_lists(OWNER_A) is MISS


async def test_lost_claim_is_skipped_without_remote_call(db_session, sessions, client, executor):
    client.seed(42)
    operation = await queue_store.enqueue_operation(db_session, "clear_list", OWNER_A, 42, {})
    await queue_store.claim_operation(db_session, operation.id)

    result = await executor.execute(operation.id)
    assert result.outcome == "skipped"
    assert client.calls == []


async def test_transient_error_schedules_retry(db_session, sessions, client, executor, settings):
    client.seed(42)
    client.fail("add_movie", RateLimited("slow down", status=429))
    operation = await queue_store.enqueue_operation(db_session, "add_movie", OWNER_A, 42, {"movie_id": 7})

    result = await executor.execute(operation.id)
    stored = await queue_store.get_operation(db_session, operation.id)

    assert result.outcome == "retry_scheduled"
    assert result.reason == "rate_limited"
    assert stored.status == "failed"
    assert stored.retry_count == 1
    assert not queue_store.is_ready(stored)


async def test_remote_session_expired_is_permanent(db_session, sessions, client, executor):
    client.seed(42)
    client.fail("add_movie", SessionExpired("Authentication failed", status=401))
    operation = await queue_store.enqueue_operation(db_session, "add_movie", OWNER_A, 42, {"movie_id": 7})

    result = await executor.execute(operation.id)
    stored = await queue_store.get_operation(db_session, operation.id)

    assert result.outcome == "failed_permanent"
    assert result.reason == "session_expired"
    assert stored.status == "failed_permanent"
    assert stored.retry_count == 1


async def test_missing_local_session_is_permanent(db_session, sessions, client, executor):
    client.seed(42)
    await invalidate_sessions(db_session, OWNER_A)
    operation = await queue_store.enqueue_operation(db_session, "add_movie", OWNER_A, 42, {"movie_id": 7})

    result = await executor.execute(operation.id)
    assert result.outcome == "failed_permanent"
    assert result.reason == "session_expired"
    assert client.calls == []


async def test_permanent_remote_error_is_not_retried(db_session, sessions, client, executor):
    client.seed(42)
    client.fail("update_list", AccessDenied("not yours", status=403))
    operation = await queue_store.enqueue_operation(db_session, "update_list", OWNER_A, 42, {"name": "Renamed"})

    result = await executor.execute(operation.id)
    assert result.outcome == "failed_permanent"
    assert result.reason == "unauthorized"


async def test_add_of_movie_already_present_counts_as_done(db_session, sessions, client, executor):
    client.seed(42, movie_ids=[7])
    operation = await queue_store.enqueue_operation(db_session, "add_movie", OWNER_A, 42, {"movie_id": 7})

    result = await executor.execute(operation.id)
    assert result.outcome == "completed"
    assert (await queue_store.get_operation(db_session, operation.id)).status == "completed"


async def test_remove_of_missing_movie_counts_as_done(db_session, sessions, client, executor):
    client.seed(42, movie_ids=[])
    operation = await queue_store.enqueue_operation(db_session, "remove_movie", OWNER_A, 42, {"movie_id": 7})

    result = await executor.execute(operation.id)
    assert result.outcome == "completed"


async def test_not_found_on_update_is_permanent(db_session, sessions, client, executor):
    operation = await queue_store.enqueue_operation(db_session, "toggle_privacy", OWNER_A, 99, {"is_public": True})
    result = await executor.execute(operation.id)
    assert result.outcome == "failed_permanent"
    assert result.reason == "not_found"


async def test_toggle_privacy_updates_visibility(db_session, sessions, client, executor):
    client.seed(42)
    operation = await queue_store.enqueue_operation(db_session, "toggle_privacy", OWNER_A, 42, {"is_public": True})
    await executor.execute(operation.id)
    assert client.calls_to("update_list") == [("update_list", 42, {"public": True})]
    assert client.lists[42]["public"] is True


async def test_queued_create_list_round_trip(db_session, sessions, client, executor, bus):
    subscription = bus.subscribe(OWNER_A)
    operation = await queue_store.enqueue_operation(
        db_session, "create_list", OWNER_A, None, {"name": "Heist Films", "description": "", "is_public": True}
    )

    result = await executor.execute(operation.id)
    stored = await queue_store.get_operation(db_session, operation.id)

    assert result.outcome == "completed"
    assert stored.status == "completed"
    new_id = result.data["created_list_id"]
    fetched = await client.fetch_list("session-a", new_id)
    assert fetched["name"] == "Heist Films"
    assert fetched["public"] is True
    assert subscription.get_nowait().list_id == new_id


async def test_timeout_around_remote_call_is_transient(db_session, sessions, client, executor):
    client.seed(42)
    client.delay = 0.2
    executor.call_timeout = 0.05
    operation = await queue_store.enqueue_operation(db_session, "clear_list", OWNER_A, 42, {})

    result = await executor.execute(operation.id)
    assert result.outcome == "retry_scheduled"
    assert result.reason == "timeout"


async def test_network_error_then_success(db_session, sessions, client, executor, make_due):
    client.seed(42)
    client.fail("remove_movie", NetworkError("connection reset"))
    client.lists[42]["items"].append({"id": 7})
    operation = await queue_store.enqueue_operation(db_session, "remove_movie", OWNER_A, 42, {"movie_id": 7})

    assert (await executor.execute(operation.id)).outcome == "retry_scheduled"
    await make_due(operation.id)
    assert (await executor.execute(operation.id)).outcome == "completed"
    assert client.lists[42]["items"] == []


async def test_unknown_remote_failure_is_recorded(db_session, sessions, client, executor):
    client.seed(42)
    client.fail("add_movie", RuntimeError("boom"))
    operation = await queue_store.enqueue_operation(db_session, "add_movie", OWNER_A, 42, {"movie_id": 3})

    result = await executor.execute(operation.id)
    stored = await queue_store.get_operation(db_session, operation.id)
    assert result.outcome == "failed_permanent"
    assert stored.status == "failed_permanent"
    assert "boom" in stored.error_message
