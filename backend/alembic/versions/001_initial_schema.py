"""Initial schema - tasks, completions and tag links

Revision ID: 001
Revises: None
Create Date: 2025-03-03

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy import text

revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()

    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS tasks (
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
        )
    """))
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_tasks_user ON tasks(user_id)"))
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_tasks_source ON tasks(source_task_id)"))

    # Completions started out as plain "done on this date" markers
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS task_completions (
            id TEXT PRIMARY KEY,
            task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
            date TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(task_id, date)
        )
    """))

    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS task_tags (
            task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
            tag_id TEXT NOT NULL,
            PRIMARY KEY (task_id, tag_id)
        )
    """))


def downgrade() -> None:
    conn = op.get_bind()
    conn.execute(text("DROP TABLE IF EXISTS task_tags"))
    conn.execute(text("DROP TABLE IF EXISTS task_completions"))
    conn.execute(text("DROP TABLE IF EXISTS tasks"))
