"""
Completion ledger: one record per (task, canonical date) saying what happened.

Writes go through the upsert path so the (task_id, date) uniqueness constraint
never produces a second row. Reads are plain lookups keyed by canonical date;
nothing here evaluates recurrence.
"""
import logging
import sqlite3
from typing import Iterable, Optional

from dates import Clock, date_key, system_clock, to_canonical_date, to_iso
from database import (
    delete_completion_db,
    find_completions_db,
    find_tasks_db,
    get_completion_by_id_db,
    get_completion_db,
    get_task_db,
    transaction,
    update_completion_db,
    update_task_db,
    upsert_completion_db,
)
from errors import NotFoundError, ValidationError
from models import (
    OUTCOMES,
    Completion,
    CompletionCreate,
    CompletionRef,
    NoRecurrence,
    RolloverResult,
    Task,
    ToggleResult,
)
from recurrence import next_occurrence

logger = logging.getLogger(__name__)


def validate_outcome(outcome: Optional[str]):
    if outcome is not None and outcome not in OUTCOMES:
        raise ValidationError("outcome", f"must be one of: {', '.join(OUTCOMES)}")


def require_task(user_id: str, task_id: str, conn: Optional[sqlite3.Connection] = None) -> Task:
    task = get_task_db(user_id, task_id, conn=conn)
    if task is None:
        raise NotFoundError("Task")
    return task


class CompletionLedger:
    """
    In-memory index over a set of completion records for O(1) lookups.
    Used by the projector, which asks the same questions for every
    (task, date) pair in a range.
    """

    def __init__(self, completions: Iterable[Completion] = ()):
        self._by_key: dict[tuple, Completion] = {}
        self._by_task: dict[str, set] = {}
        for completion in completions:
            self.add(completion)

    @classmethod
    def load(cls, user_id: str, task_ids: Optional[list[str]] = None, start_date=None, end_date=None,
             conn: Optional[sqlite3.Connection] = None) -> "CompletionLedger":
        return cls(find_completions_db(user_id, task_ids, start_date, end_date, conn=conn))

    def add(self, completion: Completion):
        day = to_canonical_date(completion.date)
        self._by_key[(completion.task_id, day)] = completion
        self._by_task.setdefault(completion.task_id, set()).add(day)

    def get(self, task_id: str, date) -> Optional[Completion]:
        return self._by_key.get((task_id, to_canonical_date(date)))

    def has_record_on_date(self, task_id: str, date) -> bool:
        """Any record on that date, whatever its outcome."""
        return (task_id, to_canonical_date(date)) in self._by_key

    def is_completed_on_date(self, task_id: str, date) -> bool:
        completion = self.get(task_id, date)
        return completion is not None and completion.effective_outcome == "completed"

    def get_outcome_on_date(self, task_id: str, date) -> Optional[str]:
        completion = self.get(task_id, date)
        return completion.effective_outcome if completion is not None else None

    def has_any_completion(self, task_id: str) -> bool:
        return bool(self._by_task.get(task_id))

    def __len__(self):
        return len(self._by_key)


# Read contract against the store

def is_completed_on_date(user_id: str, task_id: str, date) -> bool:
    return get_outcome_on_date(user_id, task_id, date) == "completed"


def get_outcome_on_date(user_id: str, task_id: str, date) -> Optional[str]:
    day = to_canonical_date(date)
    with transaction() as db:
        if get_task_db(user_id, task_id, conn=db) is None:
            return None
        completion = get_completion_db(task_id, day, conn=db)
    return completion.effective_outcome if completion is not None else None


def get_completions(user_id: str, task_id: Optional[str] = None, start_date=None, end_date=None) -> list[Completion]:
    start = to_canonical_date(start_date, "start_date") if start_date is not None else None
    end = to_canonical_date(end_date, "end_date") if end_date is not None else None
    return find_completions_db(user_id, [task_id] if task_id else None, start, end)


# Off-schedule pairs

def find_off_schedule_task(user_id: str, source_task_id: str, date, conn=None) -> Optional[Task]:
    """The off-schedule instance of source_task_id on date, if one exists."""
    key = date_key(date)
    candidates = find_tasks_db(user_id, conn=conn, source_task_id=source_task_id, is_off_schedule=True)
    for task in candidates:
        if task.start_date and task.start_date.startswith(key):
            return task
    return None


def off_schedule_twin_id(user_id: str, task: Task, date, conn=None) -> Optional[str]:
    """
    The other half of the off-schedule pair task belongs to on date: the source
    for an instance, or the instance for a source. None outside a pair.
    """
    if task.is_off_schedule:
        if task.source_task_id and task.start_date and task.start_date.startswith(date_key(date)):
            return task.source_task_id
        return None
    if not task.is_recurring:
        return None
    instance = find_off_schedule_task(user_id, task.id, date, conn=conn)
    return instance.id if instance is not None else None


def _upsert_pair(user_id: str, task: Task, day, outcome: Optional[str], note: Optional[str], conn) -> Completion:
    completion = upsert_completion_db(task.id, day, outcome, note, conn=conn)
    twin_id = off_schedule_twin_id(user_id, task, day, conn=conn)
    if twin_id is not None:
        upsert_completion_db(twin_id, day, completion.outcome, completion.note, conn=conn)
    return completion


def _delete_pair(user_id: str, task: Task, day, conn) -> bool:
    removed = delete_completion_db(task.id, day, conn=conn)
    twin_id = off_schedule_twin_id(user_id, task, day, conn=conn)
    if twin_id is not None:
        delete_completion_db(twin_id, day, conn=conn)
    return removed


def _update_pair(user_id: str, task: Task, existing: Completion, fields: dict, conn) -> Completion:
    completion = update_completion_db(existing.id, conn=conn, **fields)
    twin_id = off_schedule_twin_id(user_id, task, existing.date, conn=conn)
    if twin_id is not None:
        upsert_completion_db(twin_id, existing.date, completion.outcome, completion.note, conn=conn)
    return completion


# Writes
#
# A write to either half of an off-schedule pair is applied to both halves in
# the same transaction.

def create_completion(user_id: str, task_id: str, date, outcome: Optional[str] = None,
                      note: Optional[str] = None, conn: Optional[sqlite3.Connection] = None) -> Completion:
    """Record an outcome for (task, date). Re-recording the same pair updates it in place."""
    validate_outcome(outcome)
    day = to_canonical_date(date)
    with transaction(conn) as db:
        task = require_task(user_id, task_id, conn=db)
        return _upsert_pair(user_id, task, day, outcome or "completed", note or None, db)


def _validate_update(fields: dict):
    if "outcome" in fields:
        if fields["outcome"] is None:
            raise ValidationError("outcome", "cannot be cleared on update, delete the completion instead")
        validate_outcome(fields["outcome"])


def update_completion(user_id: str, completion_id: str, **fields) -> Completion:
    _validate_update(fields)
    with transaction() as db:
        existing = get_completion_by_id_db(user_id, completion_id, conn=db)
        if existing is None:
            raise NotFoundError("Completion")
        task = require_task(user_id, existing.task_id, conn=db)
        return _update_pair(user_id, task, existing, fields, db)


def update_completion_on_date(user_id: str, task_id: str, date, **fields) -> Completion:
    """Change outcome and/or note of the record for (task, date). Fields not given keep their values."""
    _validate_update(fields)
    day = to_canonical_date(date)
    with transaction() as db:
        task = require_task(user_id, task_id, conn=db)
        existing = get_completion_db(task.id, day, conn=db)
        if existing is None:
            raise NotFoundError("Completion")
        return _update_pair(user_id, task, existing, fields, db)


def delete_completion(user_id: str, task_id: str, date, conn: Optional[sqlite3.Connection] = None) -> bool:
    """Remove the record for (task, date). Returns False when there was none."""
    day = to_canonical_date(date)
    with transaction(conn) as db:
        task = require_task(user_id, task_id, conn=db)
        return _delete_pair(user_id, task, day, db)


def batch_create_completions(user_id: str, items: list[CompletionCreate],
                             conn: Optional[sqlite3.Connection] = None) -> list[Completion]:
    """
    Upsert several completions as one unit. Either every record is written
    or, if any task is missing or any write fails, none are.
    """
    if not items:
        raise ValidationError("completions", "must not be empty")
    prepared = []
    for item in items:
        validate_outcome(item.outcome)
        prepared.append((item.task_id, to_canonical_date(item.date), item.outcome or "completed", item.note or None))

    with transaction(conn) as db:
        tasks = {
            task_id: require_task(user_id, task_id, conn=db)
            for task_id in dict.fromkeys(task_id for task_id, _, _, _ in prepared)
        }
        return [
            _upsert_pair(user_id, tasks[task_id], day, outcome, note, db)
            for task_id, day, outcome, note in prepared
        ]


def batch_delete_completions(user_id: str, items: list[CompletionRef],
                             conn: Optional[sqlite3.Connection] = None) -> int:
    if not items:
        raise ValidationError("completions", "must not be empty")
    prepared = [(item.task_id, to_canonical_date(item.date)) for item in items]

    with transaction(conn) as db:
        tasks = {
            task_id: require_task(user_id, task_id, conn=db)
            for task_id in dict.fromkeys(task_id for task_id, _ in prepared)
        }
        return sum(_delete_pair(user_id, tasks[task_id], day, db) for task_id, day in prepared)


def toggle_occurrence(user_id: str, task_id: str, date=None, clock: Clock = system_clock) -> ToggleResult:
    """
    Check or uncheck a task for a date, keeping the task's schedule and status
    in step with the ledger.

    Checking an undated task schedules it for today and completes it there.
    Checking a non-recurring task marks it complete; unchecking reverts it to
    in_progress (if it was started) or todo. A parent's check/uncheck is
    applied to its subtasks in the same transaction.
    """
    today = clock.today()

    with transaction() as db:
        task = require_task(user_id, task_id, conn=db)
        undated = task.recurrence is None or (task.recurrence.type == "none" and not task.recurrence.start_date)
        target = today if undated or date is None else to_canonical_date(date)

        existing = get_completion_db(task.id, target, conn=db)
        was_completed = existing is not None and existing.effective_outcome == "completed"
        subtasks = find_tasks_db(user_id, conn=db, parent_id=task.id)

        if was_completed:
            refs = [CompletionRef(task_id=task.id, date=to_iso(target))]
            for subtask in subtasks:
                completion = get_completion_db(subtask.id, target, conn=db)
                if completion is not None and completion.effective_outcome == "completed":
                    refs.append(CompletionRef(task_id=subtask.id, date=to_iso(target)))
            batch_delete_completions(user_id, refs, conn=db)

            if not task.is_recurring:
                new_status = "in_progress" if task.started_at else "todo"
                update_task_db(user_id, task.id, conn=db, status=new_status)
        else:
            updates = {}
            if undated:
                updates = {
                    "recurrence": NoRecurrence(type="none", start_date=to_iso(today)),
                    "time": clock.current_time(),
                    "status": "complete",
                }
            elif not task.is_recurring and not task.time:
                updates = {"time": clock.current_time(), "status": "complete"}
            elif not task.is_recurring:
                updates = {"status": "complete"}
            if updates:
                update_task_db(user_id, task.id, conn=db, **updates)

            items = [CompletionCreate(task_id=task.id, date=to_iso(target), outcome="completed")]
            for subtask in subtasks:
                completion = get_completion_db(subtask.id, target, conn=db)
                if completion is None or completion.effective_outcome != "completed":
                    items.append(CompletionCreate(task_id=subtask.id, date=to_iso(target), outcome="completed"))
            batch_create_completions(user_id, items, conn=db)

        task = get_task_db(user_id, task.id, conn=db)

    logger.info("Toggled task %s on %s: completed=%s", task_id, to_iso(target), not was_completed)
    return ToggleResult(task=task, date=to_iso(target), completed=not was_completed)


def rollover_occurrence(user_id: str, task_id: str, date) -> RolloverResult:
    """Mark a recurring task's occurrence as rolled over and report when it comes up next."""
    day = to_canonical_date(date)
    with transaction() as db:
        task = require_task(user_id, task_id, conn=db)
        if not task.is_recurring:
            raise ValidationError("task", "only recurring tasks can be rolled over")
        completion = _upsert_pair(user_id, task, day, "rolled_over", None, db)

    upcoming = next_occurrence(task.recurrence, day)
    return RolloverResult(completion=completion, next_date=to_iso(upcoming) if upcoming else None)
