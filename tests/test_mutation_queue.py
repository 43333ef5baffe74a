"""Tests de la cola de mutaciones y su persistencia local."""

import json

import pytest

from studysync.services.local_storage import FileLocalStorage, MemoryLocalStorage
from studysync.services.mutation_queue import QUEUE_STORAGE_KEY, MutationQueue
from studysync.services.sync_status import StatusBroadcaster


@pytest.fixture
def status() -> StatusBroadcaster:
    return StatusBroadcaster()


@pytest.fixture
def queue(storage, status, clock) -> MutationQueue:
    return MutationQueue(storage, status, clock=clock)


class TestCoalescing:

    def test_same_entity_keeps_single_item_with_latest_values(self, queue, clock):
        first = queue.enqueue("create", "tasks", "t-1", {"title": "a"})
        first.attempts = 2
        clock.advance(500)

        second = queue.enqueue("update", "tasks", "t-1", {"title": "b"})

        assert len(queue) == 1
        assert second is first
        assert second.operation == "update"
        assert second.data == {"title": "b"}
        assert second.timestamp == clock.now
        assert second.attempts == 2

    def test_different_collections_are_not_coalesced(self, queue):
        queue.enqueue("update", "tasks", "x-1", {"a": 1})
        queue.enqueue("update", "subjects", "x-1", {"a": 1})

        assert len(queue) == 2

    def test_new_items_start_with_zero_attempts(self, queue):
        item = queue.enqueue("delete", "tasks", "t-3")
        assert item.attempts == 0
        assert item.last_attempt is None
        assert item.data is None

    def test_pending_count_is_published(self, queue, status):
        seen = []
        status.subscribe(lambda s: seen.append(s.pending_changes))

        queue.enqueue("update", "tasks", "t-1", {"done": True})
        queue.enqueue("update", "tasks", "t-2", {"done": True})
        queue.enqueue("update", "tasks", "t-1", {"done": False})

        assert seen[-1] == 2
        assert status.snapshot().pending_changes == len(queue)


class TestPersistence:

    def test_every_enqueue_is_persisted(self, queue, storage):
        queue.enqueue("create", "tasks", "temp-1", {"title": "x"})

        stored = json.loads(storage.get(QUEUE_STORAGE_KEY))
        assert stored[0]["entity_id"] == "temp-1"
        assert stored[0]["operation"] == "create"

    def test_round_trip_after_restart(self, queue, storage, clock):
        queue.enqueue("create", "tasks", "temp-1", {"title": "x"})
        queue.enqueue("update", "tasks", "t-9", {"completed": True})
        queue.enqueue("delete", "tasks", "t-3")
        queue.oldest(1)[0].attempts = 3
        queue.persist()
        before = [item.model_dump() for item in queue.items()]

        status = StatusBroadcaster()
        reloaded = MutationQueue(storage, status, clock=clock)
        count = reloaded.load_from_disk()

        assert count == 3
        assert status.snapshot().pending_changes == 3
        assert [item.model_dump() for item in reloaded.items()] == before

    def test_corrupted_storage_loads_as_empty(self, status, clock):
        storage = MemoryLocalStorage({QUEUE_STORAGE_KEY: "{no es json"})
        queue = MutationQueue(storage, status, clock=clock)

        assert queue.load_from_disk() == 0
        assert len(queue) == 0
        assert status.snapshot().pending_changes == 0

    def test_invalid_items_load_as_empty(self, status, clock):
        payload = json.dumps([{"id": "1", "operation": "upsert"}])
        queue = MutationQueue(MemoryLocalStorage({QUEUE_STORAGE_KEY: payload}), status, clock=clock)

        assert queue.load_from_disk() == 0

    def test_undecodable_file_loads_as_empty(self, tmp_path, status, clock):
        (tmp_path / f"{QUEUE_STORAGE_KEY}.json").write_bytes(b"\xff\xfe[garbage")
        queue = MutationQueue(FileLocalStorage(tmp_path), status, clock=clock)

        assert queue.load_from_disk() == 0
        assert status.snapshot().pending_changes == 0

        queue.enqueue("update", "tasks", "t-1", {"done": True})
        assert json.loads((tmp_path / f"{QUEUE_STORAGE_KEY}.json").read_text())[0]["entity_id"] == "t-1"

    def test_file_storage_survives_new_instance(self, tmp_path, status, clock):
        queue = MutationQueue(FileLocalStorage(tmp_path), status, clock=clock)
        queue.enqueue("update", "sessions", "s-1", {"minutes": 25})

        reloaded = MutationQueue(FileLocalStorage(tmp_path), StatusBroadcaster(), clock=clock)

        assert reloaded.load_from_disk() == 1
        assert reloaded.items()[0].data == {"minutes": 25}


class TestRekey:

    def test_rekey_changes_entity_id(self, queue):
        item = queue.enqueue("update", "tasks", "temp-1", {"title": "x"})

        queue.rekey(item, "srv-1")

        assert queue.find("tasks", "srv-1") is item
        assert queue.find("tasks", "temp-1") is None

    def test_rekey_collision_keeps_newest(self, queue, clock):
        old = queue.enqueue("update", "tasks", "srv-1", {"title": "old"})
        old.attempts = 4
        clock.advance(10)
        new = queue.enqueue("update", "tasks", "temp-1", {"title": "new"})

        survivor = queue.rekey(new, "srv-1")

        assert len(queue) == 1
        assert survivor is new
        assert survivor.attempts == 4

    def test_rewrite_references(self, queue):
        queue.enqueue("create", "tasks", "temp-t", {"subject_id": "temp-s", "title": "x"})

        assert queue.rewrite_references("temp-s", "srv-s") == 1
        assert queue.items()[0].data["subject_id"] == "srv-s"

    def test_rewrite_references_inside_lists_and_dicts(self, queue):
        queue.enqueue("create", "plans", "temp-p", {
            "subject_ids": ["temp-s", "srv-1"],
            "slots": [{"subject_id": "temp-s"}],
            "meta": {"origin": {"subject_id": "temp-s"}},
        })
        queue.enqueue("update", "tasks", "t-1", {"title": "sin referencias"})

        assert queue.rewrite_references("temp-s", "srv-s") == 1
        data = queue.items()[0].data
        assert data["subject_ids"] == ["srv-s", "srv-1"]
        assert data["slots"][0]["subject_id"] == "srv-s"
        assert data["meta"]["origin"]["subject_id"] == "srv-s"


class TestFileLocalStorage:

    def test_get_set_remove(self, tmp_path):
        storage = FileLocalStorage(tmp_path / "store")

        assert storage.get("syncQueue") is None
        storage.set("syncQueue", "[]")
        assert storage.get("syncQueue") == "[]"
        storage.remove("syncQueue")
        assert storage.get("syncQueue") is None

    def test_rejects_unsafe_keys(self, tmp_path):
        storage = FileLocalStorage(tmp_path)

        with pytest.raises(ValueError):
            storage.set("../escape", "x")
