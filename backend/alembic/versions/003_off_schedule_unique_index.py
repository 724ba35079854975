"""One off-schedule instance per source task and date

Revision ID: 003
Revises: 002
Create Date: 2025-05-02

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy import text

revision: str = '003'
down_revision: Union[str, None] = '002'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()

    # Drop duplicates left by earlier clients, keeping the oldest instance
    conn.execute(text("""
        DELETE FROM tasks
        WHERE is_off_schedule = 1
          AND id NOT IN (
            SELECT MIN(id) FROM tasks
            WHERE is_off_schedule = 1
            GROUP BY source_task_id, substr(json_extract(recurrence, '$.startDate'), 1, 10)
          )
    """))

    conn.execute(text("""
        CREATE UNIQUE INDEX IF NOT EXISTS ux_tasks_off_schedule
        ON tasks(source_task_id, substr(json_extract(recurrence, '$.startDate'), 1, 10))
        WHERE is_off_schedule = 1
    """))


def downgrade() -> None:
    conn = op.get_bind()
    conn.execute(text("DROP INDEX IF EXISTS ux_tasks_off_schedule"))
