"""Tests for TaskQueueStore persistence."""

import json
import os
import time

from agent_queue.models.queue_snapshot import CURRENT_SCHEMA_VERSION, QueueSnapshot
from agent_queue.models.queued_task import QueuedTask, TaskStatus
from agent_queue.services.task_queue_store import TaskQueueStore


def make_snapshot(*titles) -> QueueSnapshot:
    return QueueSnapshot(
        tasks=[QueuedTask(title=t, prompt=t, repo_path="/tmp") for t in titles]
    )


def read_payload(path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class TestLoad:
    """Test loading snapshots from disk."""

    def test_missing_file_returns_none(self, tmp_path):
        store = TaskQueueStore(str(tmp_path / "queue.json"))
        assert store.load() is None

    def test_corrupt_file_is_moved_aside(self, tmp_path):
        queue_file = tmp_path / "queue.json"
        queue_file.write_text("{not json")
        store = TaskQueueStore(str(queue_file))

        assert store.load() is None
        assert not queue_file.exists()
        backups = [p.name for p in tmp_path.iterdir() if ".corrupted." in p.name]
        assert len(backups) == 1

    def test_invalid_tasks_are_treated_as_corrupt(self, tmp_path):
        queue_file = tmp_path / "queue.json"
        queue_file.write_text(json.dumps({"schema_version": 1, "tasks": [{"id": "x"}]}))
        store = TaskQueueStore(str(queue_file))
        assert store.load() is None
        assert not queue_file.exists()

    def test_running_tasks_recovered_and_written_back(self, tmp_path):
        queue_file = tmp_path / "queue.json"
        snapshot = make_snapshot("a")
        snapshot.tasks[0].mark_running("attempt-1")
        queue_file.write_text(json.dumps(snapshot.to_dict()))

        store = TaskQueueStore(str(queue_file))
        loaded = store.load()

        assert loaded.tasks[0].status == TaskStatus.PENDING
        assert store.recovered_task_ids == [snapshot.tasks[0].id]
        assert read_payload(queue_file)["tasks"][0]["status"] == "pending"

    def test_load_without_recovery_keeps_running(self, tmp_path):
        queue_file = tmp_path / "queue.json"
        snapshot = make_snapshot("a")
        snapshot.tasks[0].mark_running("attempt-1")
        queue_file.write_text(json.dumps(snapshot.to_dict()))

        store = TaskQueueStore(str(queue_file))
        loaded = store.load(recover=False)

        assert loaded.tasks[0].status == TaskStatus.RUNNING
        assert store.recovered_task_ids == []
        assert read_payload(queue_file)["tasks"][0]["status"] == "running"


class TestSave:
    """Test debounced and immediate saves."""

    def test_save_immediately_writes_versioned_snapshot(self, tmp_path):
        queue_file = tmp_path / "nested" / "queue.json"
        store = TaskQueueStore(str(queue_file))

        assert store.save_immediately(make_snapshot("a", "b"))
        payload = read_payload(queue_file)
        assert payload["schema_version"] == CURRENT_SCHEMA_VERSION
        assert [t["title"] for t in payload["tasks"]] == ["a", "b"]
        assert "saved_at" in payload
        assert not [p for p in queue_file.parent.iterdir() if p.suffix == ".tmp"]

    def test_debounced_saves_coalesce(self, tmp_path):
        queue_file = tmp_path / "queue.json"
        store = TaskQueueStore(str(queue_file), debounce_seconds=0.2)

        store.save(make_snapshot("first"))
        store.save(make_snapshot("second"))
        assert store.has_pending_save
        assert not queue_file.exists()

        time.sleep(0.6)
        assert not store.has_pending_save
        assert [t["title"] for t in read_payload(queue_file)["tasks"]] == ["second"]

    def test_save_immediately_flushes_pending(self, tmp_path):
        queue_file = tmp_path / "queue.json"
        store = TaskQueueStore(str(queue_file), debounce_seconds=30)

        store.save(make_snapshot("pending"))
        assert store.save_immediately()
        assert [t["title"] for t in read_payload(queue_file)["tasks"]] == ["pending"]
        assert not store.save_immediately()

    def test_zero_debounce_writes_synchronously(self, tmp_path):
        queue_file = tmp_path / "queue.json"
        store = TaskQueueStore(str(queue_file), debounce_seconds=0)
        store.save(make_snapshot("now"))
        assert queue_file.exists()

    def test_write_failure_returns_false(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        store = TaskQueueStore(str(blocker / "queue.json"))
        assert store.save_immediately(make_snapshot("a")) is False

    def test_round_trip_through_disk(self, tmp_path):
        queue_file = tmp_path / "queue.json"
        store = TaskQueueStore(str(queue_file))
        original = make_snapshot("a", "b")
        store.save_immediately(original)

        loaded = TaskQueueStore(str(queue_file)).load()
        assert [t.id for t in loaded.tasks] == [t.id for t in original.tasks]
        assert os.path.getsize(queue_file) > 0
