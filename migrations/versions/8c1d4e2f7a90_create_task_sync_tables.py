"""create tasks, steps, websocket updates and rubric output history tables

Revision ID: 8c1d4e2f7a90
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision = "8c1d4e2f7a90"
down_revision = None
branch_labels = None
depends_on = None

_INDEXES: dict[str, list[tuple[str, list[str], bool]]] = {
    "tasks": [
        ("ix_tasks_name", ["name"], True),
        ("ix_tasks_status", ["status"], False),
    ],
    "steps": [
        ("ix_steps_task_id", ["task_id"], False),
        ("ix_steps_status", ["status"], False),
    ],
    "websocket_updates": [
        ("ix_websocket_updates_update_type", ["update_type"], False),
        ("ix_websocket_updates_task_id", ["task_id"], False),
        ("ix_websocket_updates_step_id", ["step_id"], False),
        ("ix_websocket_updates_created_at", ["created_at"], False),
    ],
    "rubric_shell_output_history": [
        ("ix_rubric_shell_output_history_step_id", ["step_id"], False),
        ("ix_rubric_shell_output_history_task_id", ["task_id"], False),
        ("ix_rubric_shell_output_history_criterion_id", ["criterion_id"], False),
        ("ix_rubric_shell_output_history_created_at", ["created_at"], False),
    ],
}


def _ensure_indexes(inspector: sa.Inspector, table: str) -> None:
    existing = {index["name"] for index in inspector.get_indexes(table)}
    for name, columns, unique in _INDEXES[table]:
        if name not in existing:
            op.create_index(name, table, columns, unique=unique)


def upgrade() -> None:
    """Create the step orchestration tables when absent."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    table_names = set(inspector.get_table_names())

    if "tasks" not in table_names:
        op.create_table(
            "tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("status", sa.String(), nullable=False, server_default="active"),
            sa.Column("local_path", sa.String(), nullable=True),
            sa.Column("settings", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    if "steps" not in table_names:
        op.create_table(
            "steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("task_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(), nullable=False, server_default=""),
            sa.Column("status", sa.String(), nullable=False, server_default="active"),
            sa.Column("settings", sa.JSON(), nullable=False),
            sa.Column("results", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["task_id"], ["tasks.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )

    if "websocket_updates" not in table_names:
        op.create_table(
            "websocket_updates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("update_type", sa.String(), nullable=False),
            sa.Column("task_id", sa.Integer(), nullable=True),
            sa.Column("step_id", sa.Integer(), nullable=True),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    if "rubric_shell_output_history" not in table_names:
        op.create_table(
            "rubric_shell_output_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("step_id", sa.Integer(), nullable=False),
            sa.Column("task_id", sa.Integer(), nullable=False),
            sa.Column("criterion_id", sa.String(), nullable=False, server_default=""),
            sa.Column("assignment", sa.String(), nullable=False, server_default=""),
            sa.Column("status", sa.String(), nullable=False, server_default=""),
            sa.Column("output", sa.Text(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    refreshed = sa.inspect(bind)
    for table in _INDEXES:
        _ensure_indexes(refreshed, table)


def downgrade() -> None:
    """Drop the step orchestration tables."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    table_names = set(inspector.get_table_names())
    for table in ("rubric_shell_output_history", "websocket_updates", "steps", "tasks"):
        if table not in table_names:
            continue
        indexes = {index["name"] for index in inspector.get_indexes(table)}
        for name, _, _ in reversed(_INDEXES[table]):
            if name in indexes:
                op.drop_index(name, table_name=table)
        op.drop_table(table)
