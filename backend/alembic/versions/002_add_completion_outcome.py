"""Add outcome and note to task_completions

Revision ID: 002
Revises: 001
Create Date: 2025-04-14

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy import text

revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()

    columns = {row[1] for row in conn.execute(text("PRAGMA table_info(task_completions)")).fetchall()}

    # Existing rows keep a NULL outcome, which reads as "completed"
    if "outcome" not in columns:
        conn.execute(text("ALTER TABLE task_completions ADD COLUMN outcome TEXT"))

    if "note" not in columns:
        conn.execute(text("ALTER TABLE task_completions ADD COLUMN note TEXT"))


def downgrade() -> None:
    # SQLite doesn't support DROP COLUMN easily, so downgrade is a no-op
    pass
