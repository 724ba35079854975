"""
Offline sync queue.

A client working offline records each mutation here and applies it to its
local mirror right away. When connectivity returns, drain() replays the
pending entries in order against the server. optimize() first collapses
superseded entries per (entity_type, entity_id):

- a DELETE drops every earlier entry for the entity and stays alone
- an UPDATE replaces an immediately preceding UPDATE (payloads merged, later wins)
- a CREATE is never merged with later updates

Collapsing only saves round trips; replaying the optimized queue ends in the
same state as replaying the original one.

One SyncQueue belongs to one client session. Its lock serializes enqueue,
optimize and drain.
"""
import logging
import os
import threading
import time
import uuid
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel

from errors import ConflictError, NotFoundError, TransientStoreError, ValidationError

logger = logging.getLogger(__name__)

ENTITY_TASK = "task"
ENTITY_COMPLETION = "completion"

# Payload keys that may hold another entity's id
REFERENCE_KEYS = ("task_id", "parent_id", "source_task_id")

# Fields a completion UPDATE may change; (task, day) comes from the entity id
COMPLETION_FIELDS = ("outcome", "note")

TERMINAL_ERRORS = (ValidationError, ConflictError, NotFoundError)
TRANSIENT_ERRORS = (TransientStoreError, ConnectionError, TimeoutError)


class SyncOperation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SyncStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncEntry(BaseModel):
    id: int
    operation: SyncOperation
    entity_type: str
    entity_id: str
    payload: Optional[dict] = None
    timestamp: float
    status: SyncStatus = SyncStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.entity_type, self.entity_id)


class DrainReport(BaseModel):
    completed: int = 0
    failed: int = 0
    remaining: int = 0


def generate_offline_id() -> str:
    """Id for an entity created while offline, replaced by the server's id on sync."""
    return f"offline_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def completion_entity_id(task_id: str, date_key: str) -> str:
    """Completions are keyed by (task, day), so that is their queue identity."""
    return f"{task_id}|{date_key}"


class LocalMirror:
    """Client-side copy of entity state, updated optimistically as mutations are queued."""

    def __init__(self):
        self.state: dict[tuple[str, str], dict] = {}

    def apply(self, entry: SyncEntry):
        key = entry.key
        if entry.operation == SyncOperation.CREATE:
            self.state[key] = dict(entry.payload or {})
        elif entry.operation == SyncOperation.UPDATE:
            if key in self.state:
                self.state[key] = {**self.state[key], **(entry.payload or {})}
        else:
            self.state.pop(key, None)

    def rename(self, entity_type: str, old_id: str, new_id: str):
        if (entity_type, old_id) in self.state:
            self.state[(entity_type, new_id)] = self.state.pop((entity_type, old_id))
        for kind, entity_id in list(self.state):
            if entity_id.startswith(f"{old_id}|"):
                self.state[(kind, new_id + entity_id[len(old_id):])] = self.state.pop((kind, entity_id))
        for values in self.state.values():
            for ref in REFERENCE_KEYS:
                if values.get(ref) == old_id:
                    values[ref] = new_id

    def get(self, entity_type: str, entity_id: str) -> Optional[dict]:
        return self.state.get((entity_type, entity_id))


class SyncQueue:
    def __init__(self, mirror: Optional[LocalMirror] = None, max_retries: Optional[int] = None):
        self._lock = threading.RLock()
        self._entries: list[SyncEntry] = []
        self._next_id = 1
        self.mirror = mirror
        if max_retries is None:
            max_retries = int(os.getenv("TRACKER_SYNC_MAX_RETRIES", "3"))
        self.max_retries = max_retries

    def enqueue(self, operation, entity_type: str, entity_id: str, payload: Optional[dict] = None) -> SyncEntry:
        try:
            operation = SyncOperation(operation)
        except ValueError:
            raise ValidationError("operation", f"must be one of: {', '.join(op.value for op in SyncOperation)}")
        if not entity_type or not entity_id:
            raise ValidationError("entity", "entity_type and entity_id are required")

        with self._lock:
            entry = SyncEntry(
                id=self._next_id,
                operation=operation,
                entity_type=entity_type,
                entity_id=entity_id,
                payload=dict(payload) if payload is not None else None,
                timestamp=time.time(),
            )
            self._next_id += 1
            self._entries.append(entry)
            if self.mirror is not None:
                self.mirror.apply(entry)
            return entry.model_copy()

    def entries(self) -> list[SyncEntry]:
        with self._lock:
            return [entry.model_copy() for entry in self._entries]

    def pending(self) -> list[SyncEntry]:
        return [entry for entry in self.entries() if entry.status == SyncStatus.PENDING]

    def failed(self) -> list[SyncEntry]:
        return [entry for entry in self.entries() if entry.status == SyncStatus.FAILED]

    def optimize(self) -> int:
        """Collapse superseded pending entries. Returns how many were removed."""
        with self._lock:
            grouped: dict[tuple[str, str], list[SyncEntry]] = {}
            removed: set[int] = set()

            for entry in self._entries:
                if entry.status != SyncStatus.PENDING:
                    continue
                group = grouped.setdefault(entry.key, [])

                if entry.operation == SyncOperation.DELETE:
                    removed.update(item.id for item in group)
                    group[:] = [entry]
                elif entry.operation == SyncOperation.UPDATE and group and group[-1].operation == SyncOperation.UPDATE:
                    previous = group[-1]
                    entry.payload = {**(previous.payload or {}), **(entry.payload or {})}
                    removed.add(previous.id)
                    group[-1] = entry
                else:
                    group.append(entry)

            if removed:
                self._entries = [entry for entry in self._entries if entry.id not in removed]
                logger.debug("Sync queue optimized, removed %d superseded entries", len(removed))
            return len(removed)

    def drain(self, send: Callable[[SyncEntry], Any]) -> DrainReport:
        """
        Replay pending entries in order through send().

        Validation, conflict and not-found failures mark the entry failed and
        move on. Transient failures leave it pending (until max_retries) and
        stop the drain so nothing later overtakes it.
        """
        with self._lock:
            self.optimize()
            report = DrainReport()

            for entry in [e for e in self._entries if e.status == SyncStatus.PENDING]:
                entry.status = SyncStatus.IN_PROGRESS
                try:
                    result = send(entry.model_copy())
                except TERMINAL_ERRORS as e:
                    entry.status = SyncStatus.FAILED
                    entry.last_error = str(e)
                    report.failed += 1
                    logger.error("Sync entry %d (%s %s %s) failed: %s", entry.id, entry.operation.value,
                                 entry.entity_type, entry.entity_id, e)
                    continue
                except TRANSIENT_ERRORS as e:
                    entry.retry_count += 1
                    entry.last_error = str(e)
                    if entry.retry_count >= self.max_retries:
                        entry.status = SyncStatus.FAILED
                        report.failed += 1
                        logger.error("Sync entry %d gave up after %d attempts: %s", entry.id, entry.retry_count, e)
                        continue
                    entry.status = SyncStatus.PENDING
                    logger.warning("Sync entry %d will be retried (%d/%d): %s", entry.id, entry.retry_count,
                                   self.max_retries, e)
                    break
                except Exception:
                    entry.status = SyncStatus.PENDING
                    raise

                entry.status = SyncStatus.COMPLETED
                entry.last_error = None
                report.completed += 1
                if entry.operation == SyncOperation.CREATE:
                    self._adopt_server_id(entry, result)

            report.remaining = sum(1 for e in self._entries if e.status == SyncStatus.PENDING)
            return report

    def _adopt_server_id(self, entry: SyncEntry, result):
        """Point later entries (and the mirror) at the id the server assigned to a created entity."""
        if isinstance(result, dict):
            server_id = result.get("id")
        else:
            server_id = getattr(result, "id", None)
        if not server_id or server_id == entry.entity_id:
            return

        offline_id = entry.entity_id
        for later in self._entries:
            if later.status != SyncStatus.PENDING:
                continue
            if later.key == entry.key:
                later.entity_id = server_id
            elif later.entity_id.startswith(f"{offline_id}|"):
                later.entity_id = server_id + later.entity_id[len(offline_id):]
            if later.payload:
                for ref in REFERENCE_KEYS:
                    if later.payload.get(ref) == offline_id:
                        later.payload[ref] = server_id
        if self.mirror is not None:
            self.mirror.rename(entry.entity_type, offline_id, server_id)
        logger.info("Replaced offline id %s with %s", offline_id, server_id)

    def clear_completed(self) -> int:
        with self._lock:
            before = len(self._entries)
            self._entries = [entry for entry in self._entries if entry.status != SyncStatus.COMPLETED]
            return before - len(self._entries)

    def stats(self) -> dict:
        entries = self.entries()
        return {
            "total": len(entries),
            "pending": sum(1 for e in entries if e.status == SyncStatus.PENDING),
            "failed": sum(1 for e in entries if e.status == SyncStatus.FAILED),
            "completed": sum(1 for e in entries if e.status == SyncStatus.COMPLETED),
        }


def store_sender(user_id: str) -> Callable[[SyncEntry], Any]:
    """
    send() for drain() that replays entries against the local store through
    the same task and ledger operations the API uses.
    """
    from completions import create_completion, delete_completion, update_completion_on_date
    from database import create_task_db, delete_task_db, update_task_db
    from models import TaskCreate, TaskUpdate

    def send(entry: SyncEntry):
        payload = entry.payload or {}
        if entry.entity_type == ENTITY_TASK:
            if entry.operation == SyncOperation.CREATE:
                data = TaskCreate(**payload)
                if data.id is None or data.id.startswith("offline_"):
                    data = data.model_copy(update={"id": None})
                return create_task_db(user_id, data)
            if entry.operation == SyncOperation.UPDATE:
                changes = TaskUpdate(**payload)
                updates = {field: getattr(changes, field) for field in changes.model_fields_set}
                task = update_task_db(user_id, entry.entity_id, **updates)
                if task is None:
                    raise NotFoundError("Task")
                return task
            if not delete_task_db(user_id, entry.entity_id):
                logger.debug("Task %s already deleted", entry.entity_id)
            return None

        if entry.entity_type == ENTITY_COMPLETION:
            task_id, _, day = entry.entity_id.partition("|")
            if entry.operation == SyncOperation.DELETE:
                return delete_completion(user_id, task_id, day)
            if entry.operation == SyncOperation.UPDATE:
                fields = {field: payload[field] for field in COMPLETION_FIELDS if field in payload}
                return update_completion_on_date(user_id, task_id, day, **fields)
            return create_completion(user_id, task_id, day, payload.get("outcome"), payload.get("note"))

        raise ValidationError("entity_type", f"unsupported entity type '{entry.entity_type}'")

    return send
