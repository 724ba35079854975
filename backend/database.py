import sqlite3
import json
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Optional
from contextlib import contextmanager

from dotenv import load_dotenv

from dates import to_iso
from errors import (
    ConflictError,
    TrackerError,
    TransactionError,
    TransientStoreError,
)
from models import Completion, Task, TaskCreate, dump_recurrence, parse_recurrence

logger = logging.getLogger(__name__)

load_dotenv()
DATABASE_PATH = os.getenv("TRACKER_DATABASE_PATH", "tracker.db")

TASK_COLUMNS = (
    "title", "section_id", "parent_id", "time", "duration", "recurrence", "status",
    "started_at", "completion_type", "content", "source_task_id", "is_off_schedule",
    "is_rollover",
)


@contextmanager
def get_db():
    """Context manager for database connections."""
    conn = sqlite3.connect(DATABASE_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: Optional[sqlite3.Connection] = None):
    """
    Run a block of statements atomically.

    Commits when the block finishes, rolls back on any exception. When an open
    connection is passed in, the block joins that caller's transaction instead
    and commit/rollback are left to the caller.

    Store failures are re-raised as tracker errors: a uniqueness violation
    becomes ConflictError, a locked/busy database TransientStoreError, anything
    else TransactionError. Tracker errors raised inside the block pass through.
    """
    if conn is not None:
        yield conn
        return

    with get_db() as conn:
        try:
            yield conn
            conn.commit()
        except TrackerError as e:
            conn.rollback()
            logger.warning("Rolled back transaction: %s", e)
            raise
        except sqlite3.IntegrityError as e:
            conn.rollback()
            logger.warning("Rolled back transaction on constraint violation: %s", e)
            raise ConflictError(str(e))
        except sqlite3.OperationalError as e:
            conn.rollback()
            logger.warning("Rolled back transaction, store unavailable: %s", e)
            raise TransientStoreError(str(e))
        except Exception as e:
            conn.rollback()
            logger.warning("Rolled back transaction: %s", e)
            raise TransactionError(f"Transaction failed: {e}") from e


def init_db():
    """Initialize database by running Alembic migrations."""
    import subprocess

    # Run alembic upgrade from the backend directory
    backend_dir = os.path.dirname(os.path.abspath(__file__))
    subprocess.run(
        ["alembic", "upgrade", "head"],
        cwd=backend_dir,
        env={**os.environ, "TRACKER_DATABASE_PATH": os.path.abspath(DATABASE_PATH)},
        check=True
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_task(row, tag_ids: list[str], subtask_ids: list[str]) -> Task:
    """Convert a database row to a Task model."""
    recurrence = json.loads(row["recurrence"]) if row["recurrence"] else None
    return Task(
        id=row["id"],
        title=row["title"],
        section_id=row["section_id"],
        parent_id=row["parent_id"],
        time=row["time"],
        duration=row["duration"],
        recurrence=parse_recurrence(recurrence),
        status=row["status"],
        started_at=row["started_at"],
        completion_type=row["completion_type"],
        content=row["content"],
        source_task_id=row["source_task_id"],
        is_off_schedule=bool(row["is_off_schedule"]),
        is_rollover=bool(row["is_rollover"]),
        created_at=row["created_at"],
        tag_ids=tag_ids,
        subtask_ids=subtask_ids,
    )


def _row_to_completion(row) -> Completion:
    return Completion(
        id=row["id"],
        task_id=row["task_id"],
        date=row["date"],
        outcome=row["outcome"],
        note=row["note"],
        created_at=row["created_at"],
    )


def _load_tasks(conn, rows) -> list[Task]:
    """Attach tag ids and subtask ids to task rows."""
    if not rows:
        return []
    ids = [row["id"] for row in rows]
    placeholders = ", ".join("?" for _ in ids)

    tags: dict[str, list[str]] = {}
    for tag_row in conn.execute(
        f"SELECT task_id, tag_id FROM task_tags WHERE task_id IN ({placeholders}) ORDER BY tag_id",
        ids
    ).fetchall():
        tags.setdefault(tag_row["task_id"], []).append(tag_row["tag_id"])

    children: dict[str, list[str]] = {}
    for child_row in conn.execute(
        f"SELECT id, parent_id FROM tasks WHERE parent_id IN ({placeholders}) ORDER BY created_at, id",
        ids
    ).fetchall():
        children.setdefault(child_row["parent_id"], []).append(child_row["id"])

    return [_row_to_task(row, tags.get(row["id"], []), children.get(row["id"], [])) for row in rows]


# Task operations

def create_task_db(user_id: str, task_data: TaskCreate, conn: Optional[sqlite3.Connection] = None) -> Task:
    """
    Insert a task, optionally with a caller-supplied id.
    A duplicate id raises ConflictError (or sqlite3.IntegrityError inside a
    caller's transaction, mapped by that transaction).
    """
    task_id = task_data.id or str(uuid.uuid4())
    created_at = _now()
    recurrence = dump_recurrence(task_data.recurrence)

    with transaction(conn) as db:
        db.execute(
            """INSERT INTO tasks
               (id, user_id, title, section_id, parent_id, time, duration, recurrence, status,
                completion_type, content, source_task_id, is_off_schedule, is_rollover, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                task_id, user_id, task_data.title, task_data.section_id, task_data.parent_id,
                task_data.time, task_data.duration,
                json.dumps(recurrence) if recurrence is not None else None,
                task_data.status, task_data.completion_type, task_data.content,
                task_data.source_task_id, int(task_data.is_off_schedule),
                int(task_data.is_rollover), created_at,
            )
        )
        if task_data.tag_ids:
            set_task_tags_db(task_id, task_data.tag_ids, conn=db)
        return get_task_db(user_id, task_id, conn=db)


def get_task_db(user_id: str, task_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Task]:
    with transaction(conn) as db:
        row = db.execute(
            "SELECT * FROM tasks WHERE id = ? AND user_id = ?",
            (task_id, user_id)
        ).fetchone()
        if not row:
            return None
        return _load_tasks(db, [row])[0]


def get_all_tasks(user_id: str, root_only: bool = False, conn: Optional[sqlite3.Connection] = None) -> list[Task]:
    query = "SELECT * FROM tasks WHERE user_id = ?"
    if root_only:
        query += " AND parent_id IS NULL"
    query += " ORDER BY created_at, id"
    with transaction(conn) as db:
        rows = db.execute(query, (user_id,)).fetchall()
        return _load_tasks(db, rows)


def find_tasks_db(user_id: str, conn: Optional[sqlite3.Connection] = None, **equals) -> list[Task]:
    """Find tasks matching every column=value pair given, e.g. source_task_id="t1"."""
    conditions = ["user_id = ?"]
    values: list = [user_id]
    for field, value in equals.items():
        if field not in TASK_COLUMNS and field != "id":
            raise ValueError(f"Unknown task column: {field}")
        if value is None:
            conditions.append(f"{field} IS NULL")
        else:
            conditions.append(f"{field} = ?")
            values.append(int(value) if isinstance(value, bool) else value)

    with transaction(conn) as db:
        rows = db.execute(
            f"SELECT * FROM tasks WHERE {' AND '.join(conditions)} ORDER BY created_at, id",
            values
        ).fetchall()
        return _load_tasks(db, rows)


def update_task_db(user_id: str, task_id: str, conn: Optional[sqlite3.Connection] = None, **updates) -> Optional[Task]:
    """
    Update a task with any fields provided.
    Only updates fields that differ from current values.

    Args:
        user_id: Owner of the task
        task_id: Task ID to update
        **updates: Field names and values to update (title, status, recurrence, tag_ids, ...)
    """
    tag_ids = updates.pop("tag_ids", None)

    with transaction(conn) as db:
        row = db.execute(
            "SELECT * FROM tasks WHERE id = ? AND user_id = ?",
            (task_id, user_id)
        ).fetchone()
        if not row:
            return None

        # Filter updates: only include fields that differ from current values
        changes = {}
        for field, new_value in updates.items():
            if field not in TASK_COLUMNS:
                continue

            if field == "recurrence":
                recurrence = dump_recurrence(parse_recurrence(new_value))
                new_value = json.dumps(recurrence) if recurrence is not None else None
            elif isinstance(new_value, bool):
                # Convert bool to int for comparison with SQLite storage
                new_value = int(new_value)

            # Only include if different
            if new_value != row[field]:
                changes[field] = new_value

        # Execute UPDATE only if there are actual changes
        if changes:
            set_clause = ", ".join(f"{field} = ?" for field in changes.keys())
            values = list(changes.values()) + [task_id, user_id]
            db.execute(f"UPDATE tasks SET {set_clause} WHERE id = ? AND user_id = ?", values)

        if tag_ids is not None:
            set_task_tags_db(task_id, tag_ids, conn=db)

        # Return updated task (re-fetch to get current state)
        return get_task_db(user_id, task_id, conn=db)


def delete_task_db(user_id: str, task_id: str, conn: Optional[sqlite3.Connection] = None) -> bool:
    """
    Delete a task. Subtasks, completions and tag links cascade; off-schedule
    instances derived from the task are removed with it.
    """
    with transaction(conn) as db:
        db.execute(
            "DELETE FROM tasks WHERE source_task_id = ? AND is_off_schedule = 1 AND user_id = ?",
            (task_id, user_id)
        )
        cursor = db.execute("DELETE FROM tasks WHERE id = ? AND user_id = ?", (task_id, user_id))
        return cursor.rowcount > 0


def set_task_tags_db(task_id: str, tag_ids: list[str], conn: Optional[sqlite3.Connection] = None):
    """Replace the tag associations of a task."""
    with transaction(conn) as db:
        db.execute("DELETE FROM task_tags WHERE task_id = ?", (task_id,))
        db.executemany(
            "INSERT INTO task_tags (task_id, tag_id) VALUES (?, ?)",
            [(task_id, tag_id) for tag_id in dict.fromkeys(tag_ids)]
        )


# Completion operations

def get_completion_db(task_id: str, date, conn: Optional[sqlite3.Connection] = None) -> Optional[Completion]:
    with transaction(conn) as db:
        row = db.execute(
            "SELECT * FROM task_completions WHERE task_id = ? AND date = ?",
            (task_id, to_iso(date))
        ).fetchone()
        return _row_to_completion(row) if row else None


def get_completion_by_id_db(user_id: str, completion_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Completion]:
    with transaction(conn) as db:
        row = db.execute(
            """SELECT c.* FROM task_completions c
               JOIN tasks t ON t.id = c.task_id
               WHERE c.id = ? AND t.user_id = ?""",
            (completion_id, user_id)
        ).fetchone()
        return _row_to_completion(row) if row else None


def insert_completion_db(task_id: str, date, outcome: Optional[str] = None, note: Optional[str] = None,
                         conn: Optional[sqlite3.Connection] = None) -> Completion:
    """Plain insert. A second row for the same (task, date) violates the unique constraint."""
    completion_id = str(uuid.uuid4())
    with transaction(conn) as db:
        db.execute(
            """INSERT INTO task_completions (id, task_id, date, outcome, note, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (completion_id, task_id, to_iso(date), outcome, note, _now())
        )
        return get_completion_db(task_id, date, conn=db)


def upsert_completion_db(task_id: str, date, outcome: Optional[str] = None, note: Optional[str] = None,
                         conn: Optional[sqlite3.Connection] = None) -> Completion:
    """Insert a completion, or update outcome/note in place if (task, date) already has one."""
    completion_id = str(uuid.uuid4())
    with transaction(conn) as db:
        db.execute(
            """INSERT INTO task_completions (id, task_id, date, outcome, note, created_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(task_id, date) DO UPDATE SET outcome = excluded.outcome, note = excluded.note""",
            (completion_id, task_id, to_iso(date), outcome, note, _now())
        )
        return get_completion_db(task_id, date, conn=db)


def update_completion_db(completion_id: str, conn: Optional[sqlite3.Connection] = None, **updates) -> Optional[Completion]:
    changes = {field: value for field, value in updates.items() if field in ("outcome", "note")}
    with transaction(conn) as db:
        if changes:
            set_clause = ", ".join(f"{field} = ?" for field in changes.keys())
            db.execute(
                f"UPDATE task_completions SET {set_clause} WHERE id = ?",
                list(changes.values()) + [completion_id]
            )
        row = db.execute("SELECT * FROM task_completions WHERE id = ?", (completion_id,)).fetchone()
        return _row_to_completion(row) if row else None


def delete_completion_db(task_id: str, date, conn: Optional[sqlite3.Connection] = None) -> bool:
    with transaction(conn) as db:
        cursor = db.execute(
            "DELETE FROM task_completions WHERE task_id = ? AND date = ?",
            (task_id, to_iso(date))
        )
        return cursor.rowcount > 0


def find_completions_db(
    user_id: str,
    task_ids: Optional[list[str]] = None,
    start_date=None,
    end_date=None,
    conn: Optional[sqlite3.Connection] = None,
) -> list[Completion]:
    """Completions of the user's tasks, newest first, optionally filtered by task and date range."""
    conditions = ["t.user_id = ?"]
    values: list = [user_id]
    if task_ids is not None:
        if not task_ids:
            return []
        conditions.append(f"c.task_id IN ({', '.join('?' for _ in task_ids)})")
        values.extend(task_ids)
    if start_date is not None:
        conditions.append("c.date >= ?")
        values.append(to_iso(start_date))
    if end_date is not None:
        conditions.append("c.date <= ?")
        values.append(to_iso(end_date))

    with transaction(conn) as db:
        rows = db.execute(
            f"""SELECT c.* FROM task_completions c
                JOIN tasks t ON t.id = c.task_id
                WHERE {' AND '.join(conditions)}
                ORDER BY c.date DESC, c.task_id""",
            values
        ).fetchall()
        return [_row_to_completion(row) for row in rows]
