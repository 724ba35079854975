"""
Shared pytest fixtures for backend tests.
Each test gets its own SQLite file with the current schema.
"""
import pytest
import sqlite3
import sys
import os
from datetime import datetime

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
from dates import FixedClock
from models import TaskCreate, parse_recurrence

USER_ID = "user-1"
OTHER_USER_ID = "user-2"

SCHEMA = """
    CREATE TABLE tasks (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        section_id TEXT,
        parent_id TEXT REFERENCES tasks(id) ON DELETE CASCADE,
        time TEXT,
        duration INTEGER DEFAULT 30,
        recurrence TEXT,
        status TEXT DEFAULT 'todo',
        started_at TEXT,
        completion_type TEXT DEFAULT 'checkbox',
        content TEXT,
        source_task_id TEXT,
        is_off_schedule INTEGER DEFAULT 0,
        is_rollover INTEGER DEFAULT 0,
        created_at TEXT NOT NULL
    );

    CREATE UNIQUE INDEX ux_tasks_off_schedule
    ON tasks(source_task_id, substr(json_extract(recurrence, '$.startDate'), 1, 10))
    WHERE is_off_schedule = 1;

    CREATE TABLE task_completions (
        id TEXT PRIMARY KEY,
        task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        date TEXT NOT NULL,
        outcome TEXT,
        note TEXT,
        created_at TEXT NOT NULL,
        UNIQUE(task_id, date)
    );

    CREATE TABLE task_tags (
        task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        tag_id TEXT NOT NULL,
        PRIMARY KEY (task_id, tag_id)
    );
"""


@pytest.fixture
def test_db(monkeypatch, tmp_path):
    """
    Create an isolated test database for each test.
    Uses a temp file (not :memory:) because database.py opens new connections per operation.
    """
    db_path = str(tmp_path / "test.db")
    monkeypatch.setattr(database, "DATABASE_PATH", db_path)
    monkeypatch.setattr(database, "init_db", lambda: None)

    # Create tables directly (skip alembic for tests)
    conn = sqlite3.connect(db_path)
    conn.executescript(SCHEMA)
    conn.commit()
    conn.close()

    yield db_path


@pytest.fixture
def make_task(test_db):
    """Factory creating a task for USER_ID. recurrence may be a dict in its JSON shape."""
    def _make(title="Task", recurrence=None, user_id=USER_ID, **fields):
        return database.create_task_db(
            user_id,
            TaskCreate(title=title, recurrence=parse_recurrence(recurrence), **fields),
        )
    return _make


@pytest.fixture
def clock():
    """Wednesday 2024-01-10, 09:30 local time."""
    return FixedClock(datetime(2024, 1, 10, 9, 30))


@pytest.fixture
def app_client(test_db, clock, monkeypatch):
    """
    Create a test client for the FastAPI app, acting as USER_ID.
    Mocks init_db to skip alembic migrations and pins the clock.
    """
    from fastapi.testclient import TestClient
    import main

    # Skip alembic in tests - tables already created by test_db fixture
    monkeypatch.setattr(database, "init_db", lambda: None)
    main.app.dependency_overrides[main.get_clock] = lambda: clock

    with TestClient(main.app, headers={"X-User-Id": USER_ID}) as client:
        yield client

    main.app.dependency_overrides.clear()
