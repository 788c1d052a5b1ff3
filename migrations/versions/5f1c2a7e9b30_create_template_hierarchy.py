"""create_template_hierarchy

Create template hierarchy tables (templates → phases → steps → tasks),
role usage counters and the read-only role directory.

Revision ID: 5f1c2a7e9b30
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5f1c2a7e9b30"
down_revision = None
branch_labels = None
depends_on = None

_ACTIVE_PG = sa.text("is_archived IS FALSE")
_ACTIVE_SQLITE = sa.text("is_archived = 0")


def _audit_columns():
    return [
        sa.Column("created_by", sa.String(length=255), nullable=False, server_default="system"),
        sa.Column("updated_by", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _archive_columns():
    return [
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "department_roles" not in existing_tables:
        op.create_table(
            "department_roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("role_name", sa.String(length=200), nullable=False),
            sa.Column("department_name", sa.String(length=200), nullable=True),
            sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.PrimaryKeyConstraint("id"),
        )

    if "project_templates" not in existing_tables:
        op.create_table(
            "project_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            *_archive_columns(),
            *_audit_columns(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_project_templates_template_name", "project_templates", ["template_name"])
        op.create_index("ix_project_templates_is_archived", "project_templates", ["is_archived"])
        op.create_index(
            "uq_project_templates_active_name", "project_templates", ["template_name"],
            unique=True, postgresql_where=_ACTIVE_PG, sqlite_where=_ACTIVE_SQLITE,
        )

    if "template_phases" not in existing_tables:
        op.create_table(
            "template_phases",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("phase_name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("phase_order", sa.Integer(), nullable=False),
            *_archive_columns(),
            *_audit_columns(),
            sa.ForeignKeyConstraint(["template_id"], ["project_templates.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_template_phases_template_id", "template_phases", ["template_id"])
        op.create_index("ix_template_phases_is_archived", "template_phases", ["is_archived"])
        op.create_index(
            "uq_template_phases_active_order", "template_phases", ["template_id", "phase_order"],
            unique=True, postgresql_where=_ACTIVE_PG, sqlite_where=_ACTIVE_SQLITE,
        )

    if "phase_steps" not in existing_tables:
        op.create_table(
            "phase_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("phase_id", sa.Integer(), nullable=False),
            sa.Column("step_name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("step_order", sa.Integer(), nullable=False),
            *_archive_columns(),
            *_audit_columns(),
            sa.ForeignKeyConstraint(["phase_id"], ["template_phases.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_phase_steps_phase_id", "phase_steps", ["phase_id"])
        op.create_index("ix_phase_steps_is_archived", "phase_steps", ["is_archived"])
        op.create_index(
            "uq_phase_steps_active_order", "phase_steps", ["phase_id", "step_order"],
            unique=True, postgresql_where=_ACTIVE_PG, sqlite_where=_ACTIVE_SQLITE,
        )

    if "step_tasks" not in existing_tables:
        op.create_table(
            "step_tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("step_id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("task_name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("task_order", sa.Integer(), nullable=False),
            sa.Column("estimated_days", sa.Integer(), nullable=True),
            sa.Column("assigned_role_id", sa.Integer(), nullable=True),
            sa.Column("category", sa.String(length=20), nullable=True),
            sa.Column("checklist_items", sa.JSON(), nullable=False),
            sa.Column("parent_task_id", sa.Integer(), nullable=True),
            *_archive_columns(),
            *_audit_columns(),
            sa.ForeignKeyConstraint(["step_id"], ["phase_steps.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["template_id"], ["project_templates.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["parent_task_id"], ["step_tasks.id"], ondelete="SET NULL"),
            sa.CheckConstraint(
                "estimated_days IS NULL OR estimated_days >= 0", name="ck_step_task_estimated_days",
            ),
            sa.CheckConstraint(
                "category IS NULL OR category IN ('monitor','coordinate','execute')",
                name="ck_step_task_category",
            ),
            sa.CheckConstraint(
                "parent_task_id IS NULL OR parent_task_id != id", name="ck_step_task_no_self_parent",
            ),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_step_tasks_step_id", "step_tasks", ["step_id"])
        op.create_index("ix_step_tasks_template_id", "step_tasks", ["template_id"])
        op.create_index("ix_step_tasks_assigned_role_id", "step_tasks", ["assigned_role_id"])
        op.create_index("ix_step_tasks_parent_task_id", "step_tasks", ["parent_task_id"])
        op.create_index("ix_step_tasks_is_archived", "step_tasks", ["is_archived"])
        op.create_index(
            "uq_step_tasks_active_template_order", "step_tasks", ["template_id", "task_order"],
            unique=True, postgresql_where=_ACTIVE_PG, sqlite_where=_ACTIVE_SQLITE,
        )

    if "template_roles" not in existing_tables:
        op.create_table(
            "template_roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("role_usage_count", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("first_used_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["template_id"], ["project_templates.id"], ondelete="CASCADE"),
            sa.CheckConstraint("role_usage_count >= 0", name="ck_template_roles_usage_count"),
            sa.UniqueConstraint("template_id", "role_id", name="uq_template_roles_template_role"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_template_roles_template_id", "template_roles", ["template_id"])
        op.create_index("ix_template_roles_role_id", "template_roles", ["role_id"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for table in ("template_roles", "step_tasks", "phase_steps", "template_phases",
                  "project_templates", "department_roles"):
        if table in existing_tables:
            op.drop_table(table)
