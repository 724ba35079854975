"""
Tests for the offline sync queue in sync_queue.py.
"""
import pytest
import random
import threading
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from completions import create_completion, get_completions, get_outcome_on_date
from database import get_all_tasks
from errors import ConflictError, NotFoundError, TransientStoreError, ValidationError
from sync_queue import (
    ENTITY_COMPLETION,
    ENTITY_TASK,
    LocalMirror,
    SyncOperation,
    SyncQueue,
    SyncStatus,
    completion_entity_id,
    generate_offline_id,
    store_sender,
)

USER_ID = "user-1"


class Recorder:
    """send() stand-in that records entries and can fail on demand."""

    def __init__(self, failures=None, results=None):
        self.sent = []
        self.failures = failures or {}
        self.results = results or {}

    def __call__(self, entry):
        self.sent.append(entry)
        failure = self.failures.get(entry.entity_id)
        if failure is not None:
            if isinstance(failure, list):
                if failure:
                    raise failure.pop(0)
            else:
                raise failure
        return self.results.get(entry.entity_id)


def replay(entries, base=None):
    mirror = LocalMirror()
    if base is not None:
        mirror.state.update({k: dict(v) for k, v in base.items()})
    for entry in entries:
        mirror.apply(entry)
    return mirror.state


class TestEnqueue:
    """Tests for enqueue()."""

    def test_entries_are_ordered(self):
        queue = SyncQueue()
        first = queue.enqueue("CREATE", ENTITY_TASK, "t1", {"title": "Run"})
        second = queue.enqueue(SyncOperation.UPDATE, ENTITY_TASK, "t1", {"time": "07:00"})

        assert second.id > first.id
        assert [e.status for e in queue.pending()] == [SyncStatus.PENDING, SyncStatus.PENDING]

    def test_unknown_operation(self):
        with pytest.raises(ValidationError):
            SyncQueue().enqueue("UPSERT", ENTITY_TASK, "t1")

    def test_missing_entity_id(self):
        with pytest.raises(ValidationError):
            SyncQueue().enqueue("DELETE", ENTITY_TASK, "")

    def test_mirror_applied_optimistically(self):
        mirror = LocalMirror()
        queue = SyncQueue(mirror=mirror)
        queue.enqueue("CREATE", ENTITY_TASK, "t1", {"title": "Run"})
        queue.enqueue("UPDATE", ENTITY_TASK, "t1", {"time": "07:00"})
        assert mirror.get(ENTITY_TASK, "t1") == {"title": "Run", "time": "07:00"}

        queue.enqueue("DELETE", ENTITY_TASK, "t1")
        assert mirror.get(ENTITY_TASK, "t1") is None

    def test_offline_ids_unique(self):
        ids = {generate_offline_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(i.startswith("offline_") for i in ids)


class TestOptimize:
    """Collapsing superseded entries."""

    def test_delete_supersedes_earlier_entries(self):
        queue = SyncQueue()
        queue.enqueue("CREATE", ENTITY_TASK, "t1", {"title": "Run"})
        queue.enqueue("UPDATE", ENTITY_TASK, "t1", {"title": "Jog"})
        queue.enqueue("DELETE", ENTITY_TASK, "t1")

        assert queue.optimize() == 2
        assert [e.operation for e in queue.pending()] == [SyncOperation.DELETE]

    def test_consecutive_updates_merge(self):
        """Later fields win, earlier fields survive."""
        queue = SyncQueue()
        queue.enqueue("UPDATE", ENTITY_TASK, "t1", {"title": "Jog", "time": "07:00"})
        queue.enqueue("UPDATE", ENTITY_TASK, "t1", {"title": "Run"})

        queue.optimize()
        [entry] = queue.pending()
        assert entry.payload == {"title": "Run", "time": "07:00"}

    def test_create_not_merged_with_update(self):
        queue = SyncQueue()
        queue.enqueue("CREATE", ENTITY_TASK, "t1", {"title": "Run"})
        queue.enqueue("UPDATE", ENTITY_TASK, "t1", {"time": "07:00"})
        queue.enqueue("UPDATE", ENTITY_TASK, "t1", {"duration": 45})

        queue.optimize()
        pending = queue.pending()
        assert [e.operation for e in pending] == [SyncOperation.CREATE, SyncOperation.UPDATE]
        assert pending[1].payload == {"time": "07:00", "duration": 45}

    def test_entities_are_independent(self):
        queue = SyncQueue()
        queue.enqueue("UPDATE", ENTITY_TASK, "t1", {"title": "A"})
        queue.enqueue("DELETE", ENTITY_TASK, "t2")
        queue.enqueue("UPDATE", ENTITY_TASK, "t1", {"title": "B"})

        queue.optimize()
        assert [(e.entity_id, e.operation) for e in queue.pending()] == [
            ("t2", SyncOperation.DELETE), ("t1", SyncOperation.UPDATE),
        ]

    def test_final_state_preserved(self):
        """Replaying the optimized queue ends where the original does."""
        rng = random.Random(7)
        for _ in range(200):
            queue = SyncQueue()
            base = {(ENTITY_TASK, "t1"): {"title": "server copy"}} if rng.random() < 0.5 else None
            for _ in range(rng.randint(1, 8)):
                operation = rng.choice(["CREATE", "UPDATE", "UPDATE", "DELETE"])
                payload = None
                if operation != "DELETE":
                    field = rng.choice(["title", "time", "duration"])
                    payload = {field: rng.randint(0, 9)}
                queue.enqueue(operation, ENTITY_TASK, "t1", payload)

            original = replay(queue.entries(), base)
            queue.optimize()
            assert replay(queue.entries(), base) == original


class TestDrain:
    """Replaying entries through send()."""

    def test_fifo_and_completed(self):
        queue = SyncQueue()
        queue.enqueue("UPDATE", ENTITY_TASK, "t1", {"title": "A"})
        queue.enqueue("DELETE", ENTITY_TASK, "t2")
        send = Recorder()

        report = queue.drain(send)

        assert [e.entity_id for e in send.sent] == ["t1", "t2"]
        assert (report.completed, report.failed, report.remaining) == (2, 0, 0)
        assert queue.stats()["completed"] == 2

    def test_drain_optimizes_first(self):
        queue = SyncQueue()
        queue.enqueue("UPDATE", ENTITY_TASK, "t1", {"title": "A"})
        queue.enqueue("UPDATE", ENTITY_TASK, "t1", {"time": "07:00"})
        send = Recorder()

        queue.drain(send)
        assert len(send.sent) == 1
        assert send.sent[0].payload == {"title": "A", "time": "07:00"}

    @pytest.mark.parametrize("error", [
        ValidationError("title", "required"),
        ConflictError("duplicate"),
        NotFoundError("Task"),
    ])
    def test_terminal_failure_moves_on(self, error):
        queue = SyncQueue()
        queue.enqueue("UPDATE", ENTITY_TASK, "bad", {"title": ""})
        queue.enqueue("UPDATE", ENTITY_TASK, "good", {"title": "ok"})

        report = queue.drain(Recorder(failures={"bad": error}))

        assert (report.completed, report.failed, report.remaining) == (1, 1, 0)
        [failed] = queue.failed()
        assert failed.entity_id == "bad"
        assert failed.last_error == str(error)

    def test_transient_failure_stops_drain(self):
        """Later entries never overtake a retried one."""
        queue = SyncQueue()
        queue.enqueue("UPDATE", ENTITY_TASK, "t1", {"title": "A"})
        queue.enqueue("UPDATE", ENTITY_TASK, "t2", {"title": "B"})
        send = Recorder(failures={"t1": [TransientStoreError("database is locked")]})

        report = queue.drain(send)
        assert (report.completed, report.failed, report.remaining) == (0, 0, 2)
        assert queue.pending()[0].retry_count == 1
        assert [e.entity_id for e in send.sent] == ["t1"]

        report = queue.drain(send)
        assert (report.completed, report.remaining) == (2, 0)
        assert [e.entity_id for e in send.sent] == ["t1", "t1", "t2"]

    def test_connection_errors_are_transient(self):
        queue = SyncQueue()
        queue.enqueue("DELETE", ENTITY_TASK, "t1")
        report = queue.drain(Recorder(failures={"t1": [ConnectionError("offline")]}))
        assert report.remaining == 1
        assert queue.failed() == []

    def test_retries_exhausted(self):
        queue = SyncQueue(max_retries=2)
        queue.enqueue("DELETE", ENTITY_TASK, "t1")
        queue.enqueue("DELETE", ENTITY_TASK, "t2")
        send = Recorder(failures={"t1": TimeoutError("slow")})

        queue.drain(send)
        report = queue.drain(send)

        assert report.failed == 1
        assert report.completed == 1
        assert queue.failed()[0].retry_count == 2

    def test_max_retries_from_environment(self, monkeypatch):
        monkeypatch.setenv("TRACKER_SYNC_MAX_RETRIES", "5")
        assert SyncQueue().max_retries == 5

    def test_unexpected_error_propagates(self):
        queue = SyncQueue()
        queue.enqueue("DELETE", ENTITY_TASK, "t1")
        with pytest.raises(KeyError):
            queue.drain(Recorder(failures={"t1": KeyError("boom")}))
        assert queue.pending()[0].status == SyncStatus.PENDING


class TestOfflineIdRemapping:
    """Server ids replace offline ids after a CREATE syncs."""

    def test_later_entries_follow_server_id(self):
        mirror = LocalMirror()
        queue = SyncQueue(mirror=mirror)
        offline_id = generate_offline_id()
        queue.enqueue("CREATE", ENTITY_TASK, offline_id, {"title": "Run"})
        queue.enqueue("UPDATE", ENTITY_TASK, offline_id, {"time": "07:00"})
        queue.enqueue("CREATE", ENTITY_COMPLETION, completion_entity_id(offline_id, "2024-01-03"),
                      {"task_id": offline_id, "date": "2024-01-03"})
        send = Recorder(results={offline_id: {"id": "srv-1"}})

        queue.drain(send)

        assert [e.entity_id for e in send.sent] == [offline_id, "srv-1", "srv-1|2024-01-03"]
        assert send.sent[2].payload["task_id"] == "srv-1"
        assert mirror.get(ENTITY_TASK, "srv-1") == {"title": "Run", "time": "07:00"}
        assert mirror.get(ENTITY_TASK, offline_id) is None
        assert mirror.get(ENTITY_COMPLETION, "srv-1|2024-01-03")["task_id"] == "srv-1"


class TestHousekeeping:
    """Tests for clear_completed() and stats()."""

    def test_clear_completed(self):
        queue = SyncQueue()
        queue.enqueue("DELETE", ENTITY_TASK, "t1")
        queue.enqueue("DELETE", ENTITY_TASK, "t2")
        queue.drain(Recorder(failures={"t2": NotFoundError("Task")}))

        assert queue.clear_completed() == 1
        assert queue.stats() == {"total": 1, "pending": 0, "failed": 1, "completed": 0}


class TestStoreSender:
    """Draining against the local store."""

    def test_offline_task_and_completion_sync(self, test_db):
        queue = SyncQueue()
        offline_id = generate_offline_id()
        queue.enqueue("CREATE", ENTITY_TASK, offline_id, {
            "id": offline_id,
            "title": "Run",
            "recurrence": {"type": "weekly", "days": [1, 3, 5], "startDate": "2024-01-01"},
        })
        queue.enqueue("UPDATE", ENTITY_TASK, offline_id, {"time": "07:00"})
        queue.enqueue("CREATE", ENTITY_COMPLETION, completion_entity_id(offline_id, "2024-01-03"),
                      {"task_id": offline_id, "date": "2024-01-03", "outcome": "completed"})

        report = queue.drain(store_sender(USER_ID))

        assert (report.completed, report.failed) == (3, 0)
        [task] = get_all_tasks(USER_ID)
        assert task.id != offline_id
        assert task.time == "07:00"
        assert get_outcome_on_date(USER_ID, task.id, "2024-01-03") == "completed"

    def test_repeated_completion_upserts(self, make_task):
        """Two queued writes for one (task, day) never make two rows."""
        task = make_task("Run", {"type": "daily"})
        queue = SyncQueue()
        key = completion_entity_id(task.id, "2024-01-03")
        queue.enqueue("CREATE", ENTITY_COMPLETION, key, {"task_id": task.id, "date": "2024-01-03"})
        queue.enqueue("CREATE", ENTITY_COMPLETION, key,
                      {"task_id": task.id, "date": "2024-01-03", "outcome": "not_completed"})

        report = queue.drain(store_sender(USER_ID))

        assert report.completed == 2
        assert get_outcome_on_date(USER_ID, task.id, "2024-01-03") == "not_completed"

    def test_update_missing_task_fails(self, test_db):
        queue = SyncQueue()
        queue.enqueue("UPDATE", ENTITY_TASK, "missing", {"title": "x"})
        report = queue.drain(store_sender(USER_ID))
        assert report.failed == 1

    def test_completion_delete(self, make_task):
        task = make_task("Run", {"type": "daily"})
        queue = SyncQueue()
        key = completion_entity_id(task.id, "2024-01-03")
        queue.enqueue("CREATE", ENTITY_COMPLETION, key, {"task_id": task.id, "date": "2024-01-03"})
        queue.drain(store_sender(USER_ID))
        queue.enqueue("DELETE", ENTITY_COMPLETION, key)
        queue.drain(store_sender(USER_ID))

        assert get_outcome_on_date(USER_ID, task.id, "2024-01-03") is None

    def test_note_only_update_keeps_outcome(self, make_task):
        task = make_task("Run", {"type": "daily"})
        create_completion(USER_ID, task.id, "2024-01-03", "not_completed")
        queue = SyncQueue()
        queue.enqueue("UPDATE", ENTITY_COMPLETION, completion_entity_id(task.id, "2024-01-03"),
                      {"task_id": task.id, "date": "2024-01-03", "note": "tired"})

        report = queue.drain(store_sender(USER_ID))

        assert (report.completed, report.failed) == (1, 0)
        [completion] = get_completions(USER_ID, task.id)
        assert completion.outcome == "not_completed"
        assert completion.note == "tired"

    def test_outcome_only_update(self, make_task):
        """The (task, day) of an update comes from the entity id, not the payload."""
        task = make_task("Run", {"type": "daily"})
        create_completion(USER_ID, task.id, "2024-01-03", note="easy pace")
        queue = SyncQueue()
        queue.enqueue("UPDATE", ENTITY_COMPLETION, completion_entity_id(task.id, "2024-01-03"),
                      {"outcome": "not_completed"})

        report = queue.drain(store_sender(USER_ID))

        assert (report.completed, report.failed) == (1, 0)
        [completion] = get_completions(USER_ID, task.id)
        assert completion.outcome == "not_completed"
        assert completion.note == "easy pace"

    def test_store_matches_mirror_after_update(self, make_task):
        task = make_task("Run", {"type": "daily"})
        key = completion_entity_id(task.id, "2024-01-03")
        mirror = LocalMirror()
        queue = SyncQueue(mirror=mirror)
        queue.enqueue("CREATE", ENTITY_COMPLETION, key, {"outcome": "rolled_over"})
        queue.enqueue("UPDATE", ENTITY_COMPLETION, key, {"note": "moved to Friday"})

        queue.drain(store_sender(USER_ID))

        [completion] = get_completions(USER_ID, task.id)
        assert mirror.get(ENTITY_COMPLETION, key) == {"outcome": "rolled_over", "note": "moved to Friday"}
        assert (completion.outcome, completion.note) == ("rolled_over", "moved to Friday")

    def test_update_of_missing_completion_fails(self, make_task):
        task = make_task("Run", {"type": "daily"})
        queue = SyncQueue()
        queue.enqueue("UPDATE", ENTITY_COMPLETION, completion_entity_id(task.id, "2024-01-03"), {"note": "x"})

        report = queue.drain(store_sender(USER_ID))

        assert report.failed == 1
        assert "Completion" in queue.failed()[0].last_error
        assert get_completions(USER_ID, task.id) == []


class TestLocking:
    """enqueue(), optimize() and drain() never interleave."""

    def test_enqueue_waits_for_drain(self):
        queue = SyncQueue()
        queue.enqueue("DELETE", ENTITY_TASK, "t1")
        sending = threading.Event()
        release = threading.Event()

        def send(entry):
            sending.set()
            release.wait(timeout=5)

        drainer = threading.Thread(target=queue.drain, args=(send,))
        drainer.start()
        assert sending.wait(timeout=5)

        enqueuer = threading.Thread(target=queue.enqueue, args=("DELETE", ENTITY_TASK, "t2"))
        enqueuer.start()
        enqueuer.join(timeout=0.2)
        assert enqueuer.is_alive()

        release.set()
        drainer.join(timeout=5)
        enqueuer.join(timeout=5)

        first, second = queue.entries()
        assert (first.entity_id, first.status) == ("t1", SyncStatus.COMPLETED)
        assert (second.entity_id, second.status) == ("t2", SyncStatus.PENDING)

    def test_concurrent_enqueue_and_optimize(self):
        """Updates enqueued from several threads while optimizing all end up merged."""
        queue = SyncQueue()
        queue.enqueue("CREATE", ENTITY_TASK, "t1", {"title": "Run"})
        done = threading.Event()

        def writer(n):
            for i in range(50):
                queue.enqueue("UPDATE", ENTITY_TASK, "t1", {f"field_{n}_{i}": i})

        def optimizer():
            while not done.is_set():
                queue.optimize()

        background = threading.Thread(target=optimizer)
        background.start()
        writers = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for thread in writers:
            thread.start()
        for thread in writers:
            thread.join(timeout=10)
        done.set()
        background.join(timeout=10)
        queue.optimize()

        create, update = queue.entries()
        assert create.operation == SyncOperation.CREATE
        assert len(update.payload) == 8 * 50
        assert len({entry.id for entry in queue.entries()}) == 2
