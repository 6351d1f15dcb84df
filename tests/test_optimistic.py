import uuid

import pytest

from movielists.errors import DuplicateMovie, RequestTimeout
from movielists.events import ListEvent
from movielists.optimistic import (
    MARKER_OPTIMISTIC,
    MARKER_QUEUED,
    ListStateReconciler,
)
from movielists.results import Applied, Failed, Queued

from .conftest import OWNER_A


def movie_ids(reconciler, list_id):
    return [item["id"] for item in reconciler.lists[list_id]["items"]]


def marker_of(reconciler, list_id, movie_id):
    for item in reconciler.lists[list_id]["items"]:
        if item["id"] == movie_id:
            return item.get("_marker")
    raise AssertionError(f"movie {movie_id} not shown")


async def test_add_is_shown_immediately_as_optimistic():
    reconciler = ListStateReconciler([{"id": 42, "name": "Favourites", "items": [{"id": 1}]}])
    reconciler.begin_add_movie(42, {"id": 7, "title": "Movie 7"})

    assert movie_ids(reconciler, 42) == [1, 7]
    assert marker_of(reconciler, 42, 7) == MARKER_OPTIMISTIC
    assert reconciler.lists[42]["item_count"] == 2


async def test_applied_result_replaces_state_with_fresh_fetch():
    fetched = []

    async def refresh(list_id):
        fetched.append(list_id)
        return {"id": 42, "name": "Favourites", "item_count": 2, "items": [{"id": 1}, {"id": 7, "title": "Seven"}]}

    reconciler = ListStateReconciler([{"id": 42, "items": [{"id": 1}]}], refresh=refresh)
    correlation_id = reconciler.begin_add_movie(42, 7)
    resolution = await reconciler.resolve(correlation_id, Applied({"list_id": 42, "movie_id": 7}))

    assert resolution.status == "confirmed"
    assert fetched == [42]
    assert marker_of(reconciler, 42, 7) is None
    assert reconciler.lists[42]["items"][1]["title"] == "Seven"
    assert reconciler.pending() == []


async def test_queued_result_keeps_change_with_queued_marker():
    reconciler = ListStateReconciler([{"id": 42, "items": []}])
    correlation_id = reconciler.begin_add_movie(42, 7)
    operation_id = uuid.uuid4()

    resolution = await reconciler.resolve(correlation_id, Queued(operation_id))

    assert resolution.status == "queued"
    assert marker_of(reconciler, 42, 7) == MARKER_QUEUED
    assert reconciler.pending()[0].operation_id == str(operation_id)


async def test_failed_add_is_reverted_with_message():
    reconciler = ListStateReconciler([{"id": 42, "items": [{"id": 1}]}])
    correlation_id = reconciler.begin_add_movie(42, 7)

    resolution = await reconciler.resolve(correlation_id, Failed("unauthorized"))

    assert resolution.status == "reverted"
    assert resolution.reason == "unauthorized"
    assert movie_ids(reconciler, 42) == [1]
    assert reconciler.pending() == []


async def test_duplicate_movie_message_says_it_is_already_there():
    reconciler = ListStateReconciler([{"id": 42, "items": [{"id": 7}]}])
    correlation_id = reconciler.begin_add_movie(42, 7)

    resolution = await reconciler.resolve(correlation_id, Failed("duplicate_movie"))

    assert "already in your list" in resolution.message
    assert movie_ids(reconciler, 42) == [7]


async def test_failed_remove_and_update_restore_previous_state():
    reconciler = ListStateReconciler([{"id": 42, "name": "Before", "items": [{"id": 1}, {"id": 2}]}])
    remove_id = reconciler.begin_remove_movie(42, 2)
    assert movie_ids(reconciler, 42) == [1]
    await reconciler.resolve(remove_id, Failed("network_error", "Network down"))
    assert movie_ids(reconciler, 42) == [1, 2]

    update_id = reconciler.begin_update_list(42, name="After")
    assert reconciler.lists[42]["name"] == "After"
    resolution = await reconciler.resolve(update_id, Failed("api_error", "Remote said no"))
    assert reconciler.lists[42]["name"] == "Before"
    assert resolution.message == "Remote said no"


async def test_create_and_delete_list_lifecycle():
    reconciler = ListStateReconciler()
    create_id = reconciler.begin_create_list("Heists")
    assert reconciler.lists[create_id]["_marker"] == MARKER_OPTIMISTIC

    await reconciler.resolve(create_id, Applied({"id": 555, "name": "Heists", "items": []}))
    assert create_id not in reconciler.lists
    assert reconciler.lists[555]["name"] == "Heists"

    delete_id = reconciler.begin_delete_list(555)
    assert 555 not in reconciler.lists
    await reconciler.resolve(delete_id, Failed("server_error"))
    assert reconciler.lists[555]["name"] == "Heists"


async def test_unknown_correlation_id_raises():
    reconciler = ListStateReconciler()
    with pytest.raises(KeyError):
        await reconciler.resolve("opt-99", Applied())


async def test_refresh_keeps_other_queued_changes_visible():
    reconciler = ListStateReconciler([{"id": 42, "items": []}])
    first = reconciler.begin_add_movie(42, 7)
    second = reconciler.begin_add_movie(42, 8)
    await reconciler.resolve(first, Queued(uuid.uuid4()))
    await reconciler.resolve(second, Queued(uuid.uuid4()))

    reconciler.apply_remote({"id": 42, "items": [{"id": 7}]})
    assert movie_ids(reconciler, 42) == [7, 8]
    assert marker_of(reconciler, 42, 7) is None
    assert marker_of(reconciler, 42, 8) == MARKER_QUEUED


async def test_timeout_then_background_sync_end_to_end(db_session, sessions, client, service, processor, bus):
    client.seed(42)
    client.fail("add_movie", RequestTimeout("read timed out"))
    subscription = bus.subscribe(OWNER_A)

    async def refresh(list_id):
        return await service.sync_list(db_session, OWNER_A, list_id)

    reconciler = ListStateReconciler([await service.get_list(db_session, OWNER_A, 42)], refresh=refresh)
    correlation_id = reconciler.begin_add_movie(42, 7)
    result = await service.add_movie(db_session, OWNER_A, 42, 7)
    assert isinstance(result, Queued)

    await reconciler.resolve(correlation_id, result)
    assert marker_of(reconciler, 42, 7) == MARKER_QUEUED

    summary = await processor.process_ready()
    assert summary["completed"] == 1

    await reconciler.handle_event(subscription.get_nowait())
    assert movie_ids(reconciler, 42) == [7]
    assert marker_of(reconciler, 42, 7) is None
    assert reconciler.pending() == []


async def test_duplicate_end_to_end_is_removed_not_retried(db_session, sessions, client, service):
    client.seed(42)
    client.fail("add_movie", DuplicateMovie("already exists", status=403))

    reconciler = ListStateReconciler([await service.get_list(db_session, OWNER_A, 42)])
    correlation_id = reconciler.begin_add_movie(42, 7)
    result = await service.add_movie(db_session, OWNER_A, 42, 7)
    resolution = await reconciler.resolve(correlation_id, result)

    assert result.reason == "duplicate_movie"
    assert resolution.status == "reverted"
    assert movie_ids(reconciler, 42) == []
    assert len(client.calls_to("add_movie")) == 1


async def test_events_for_other_types_are_ignored():
    reconciler = ListStateReconciler([{"id": 42, "items": []}])
    correlation_id = reconciler.begin_add_movie(42, 7)
    await reconciler.resolve(correlation_id, Queued(uuid.uuid4()))
    await reconciler.handle_event(ListEvent("something_else", OWNER_A, 42))
    assert len(reconciler.pending()) == 1


async def test_clear_list_confirmed_queued_and_reverted():
    async def refresh(list_id):
        return {"id": list_id, "name": "Favourites", "public": False, "items": []}

    reconciler = ListStateReconciler([{"id": 42, "items": [{"id": 1}, {"id": 2}]}], refresh=refresh)
    confirmed = reconciler.begin_clear_list(42)
    assert movie_ids(reconciler, 42) == []
    assert reconciler.lists[42]["_marker"] == MARKER_OPTIMISTIC
    resolution = await reconciler.resolve(confirmed, Applied({"id": 42, "cleared": True}))
    assert resolution.status == "confirmed"
    assert "_marker" not in reconciler.lists[42]
    assert reconciler.lists[42]["name"] == "Favourites"

    reconciler.apply_remote({"id": 42, "items": [{"id": 3}]})
    queued = reconciler.begin_clear_list(42)
    await reconciler.resolve(queued, Queued(uuid.uuid4()))
    assert reconciler.lists[42]["_marker"] == MARKER_QUEUED
    reconciler.apply_remote({"id": 42, "items": [{"id": 3}, {"id": 4}]})
    assert movie_ids(reconciler, 42) == []
    assert reconciler.lists[42]["item_count"] == 0

    reverted_list = ListStateReconciler([{"id": 43, "item_count": 1, "items": [{"id": 5}]}])
    failed = reverted_list.begin_clear_list(43)
    resolution = await reverted_list.resolve(failed, Failed("unauthorized"))
    assert resolution.status == "reverted"
    assert movie_ids(reverted_list, 43) == [5]
    assert reverted_list.lists[43]["item_count"] == 1


async def test_toggle_privacy_confirmed_queued_and_reverted():
    async def refresh(list_id):
        return {"id": list_id, "public": True, "items": []}

    reconciler = ListStateReconciler([{"id": 42, "public": False, "items": []}], refresh=refresh)
    confirmed = reconciler.begin_toggle_privacy(42, True)
    assert reconciler.lists[42]["public"] is True
    resolution = await reconciler.resolve(confirmed, Applied({"id": 42, "public": True}))
    assert resolution.status == "confirmed"
    assert reconciler.lists[42]["public"] is True
    assert "_marker" not in reconciler.lists[42]

    queued = reconciler.begin_toggle_privacy(42, False)
    await reconciler.resolve(queued, Queued(uuid.uuid4()))
    assert reconciler.lists[42]["_marker"] == MARKER_QUEUED
    reconciler.apply_remote({"id": 42, "public": True, "items": []})
    assert reconciler.lists[42]["public"] is False
    assert reconciler.lists[42]["_marker"] == MARKER_QUEUED

    reverted_list = ListStateReconciler([{"id": 43, "public": True, "items": []}])
    failed = reverted_list.begin_toggle_privacy(43, False)
    resolution = await reverted_list.resolve(failed, Failed("session_expired"))
    assert resolution.status == "reverted"
    assert "sign in again" in resolution.message
    assert reverted_list.lists[43]["public"] is True
    assert reverted_list.pending() == []
