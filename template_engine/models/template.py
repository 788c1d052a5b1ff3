"""
Workflow Template Engine
Template hierarchy domain models.

Models:
    - ProjectTemplate:     reusable workflow definition (top level)
    - TemplatePhase:       ordered phase within a template
    - PhaseStep:           ordered step within a phase
    - StepTask:            task within a step; ordered template-wide, optional parent task
    - TemplateRoleUsage:   per-template per-role counter of task assignments
    - DepartmentRole:      read-only role directory used to resolve role names

Architecture:
    ProjectTemplate ──1:N──▶ TemplatePhase ──1:N──▶ PhaseStep ──1:N──▶ StepTask
    StepTask ──N:1──▶ StepTask  (parent_task_id, any step/phase of the same template)
    ProjectTemplate ──1:N──▶ TemplateRoleUsage

Ordering:
    phase_order  unique per template   among non-archived phases
    step_order   unique per phase      among non-archived steps
    task_order   unique per TEMPLATE   among non-archived tasks (one global sequence)

    StepTask carries a denormalised ``template_id`` so the template-wide
    task order can be enforced by a partial unique index.
"""

from datetime import datetime, timezone

from template_engine.models import db
from template_engine.models.archive import ArchiveMixin
from template_engine.models.base import AuditMixin


# ── Constants ────────────────────────────────────────────────────────────────

TASK_CATEGORIES = {"monitor", "coordinate", "execute"}

NAME_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 1000

UNKNOWN_TASK_NAME = "Unknown task"
UNKNOWN_ROLE_NAME = "Unknown Role"
UNKNOWN_DEPARTMENT_NAME = "Unknown Department"

_ACTIVE_SQLITE = "is_archived = 0"
_ACTIVE_PG = "is_archived IS FALSE"


def _active_unique_index(name, *cols):
    """Unique index over *cols* restricted to non-archived rows."""
    return db.Index(
        name,
        *cols,
        unique=True,
        sqlite_where=db.text(_ACTIVE_SQLITE),
        postgresql_where=db.text(_ACTIVE_PG),
    )


# ═════════════════════════════════════════════════════════════════════════════
# 1. ProjectTemplate
# ═════════════════════════════════════════════════════════════════════════════


class ProjectTemplate(ArchiveMixin, AuditMixin, db.Model):
    """Top-level reusable workflow definition."""

    __tablename__ = "project_templates"

    id = db.Column(db.Integer, primary_key=True)
    template_name = db.Column(db.String(NAME_MAX_LENGTH), nullable=False, index=True)
    description = db.Column(db.Text, default="")

    __table_args__ = (
        _active_unique_index("uq_project_templates_active_name", "template_name"),
    )

    phases = db.relationship(
        "TemplatePhase", backref="template", lazy="dynamic",
        cascade="all, delete-orphan", order_by="TemplatePhase.phase_order",
    )
    role_usages = db.relationship(
        "TemplateRoleUsage", backref="template", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        result = {
            "id": self.id,
            "template_name": self.template_name,
            "description": self.description,
            "is_archived": self.is_archived,
        }
        result.update(self._audit_dict())
        return result

    def __repr__(self):
        return f"<ProjectTemplate {self.id}: {self.template_name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. TemplatePhase
# ═════════════════════════════════════════════════════════════════════════════


class TemplatePhase(ArchiveMixin, AuditMixin, db.Model):
    """Ordered phase within a template."""

    __tablename__ = "template_phases"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("project_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    phase_name = db.Column(db.String(NAME_MAX_LENGTH), nullable=False)
    description = db.Column(db.Text, default="")
    phase_order = db.Column(
        db.Integer, nullable=False, default=1,
        comment="Position within the template; negative only while a reorder is staged",
    )

    __table_args__ = (
        _active_unique_index("uq_template_phases_active_order", "template_id", "phase_order"),
    )

    steps = db.relationship(
        "PhaseStep", backref="phase", lazy="dynamic",
        cascade="all, delete-orphan", order_by="PhaseStep.step_order",
    )

    def to_dict(self):
        result = {
            "id": self.id,
            "template_id": self.template_id,
            "phase_name": self.phase_name,
            "description": self.description,
            "phase_order": self.phase_order,
            "is_archived": self.is_archived,
        }
        result.update(self._audit_dict())
        return result

    def __repr__(self):
        return f"<TemplatePhase {self.id}: #{self.phase_order} {self.phase_name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. PhaseStep
# ═════════════════════════════════════════════════════════════════════════════


class PhaseStep(ArchiveMixin, AuditMixin, db.Model):
    """Ordered step within a phase."""

    __tablename__ = "phase_steps"

    id = db.Column(db.Integer, primary_key=True)
    phase_id = db.Column(
        db.Integer, db.ForeignKey("template_phases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_name = db.Column(db.String(NAME_MAX_LENGTH), nullable=False)
    description = db.Column(db.Text, default="")
    step_order = db.Column(db.Integer, nullable=False, default=1)

    __table_args__ = (
        _active_unique_index("uq_phase_steps_active_order", "phase_id", "step_order"),
    )

    tasks = db.relationship(
        "StepTask", backref="step", lazy="dynamic",
        cascade="all, delete-orphan", order_by="StepTask.task_order",
    )

    def to_dict(self):
        result = {
            "id": self.id,
            "phase_id": self.phase_id,
            "step_name": self.step_name,
            "description": self.description,
            "step_order": self.step_order,
            "is_archived": self.is_archived,
        }
        result.update(self._audit_dict())
        return result

    def __repr__(self):
        return f"<PhaseStep {self.id}: #{self.step_order} {self.step_name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. StepTask
# ═════════════════════════════════════════════════════════════════════════════


class StepTask(ArchiveMixin, AuditMixin, db.Model):
    """
    Task within a step.

    ``task_order`` is one sequence across the whole template, not per step.
    ``parent_task_id`` may point at any task of the same template; the
    service layer keeps it acyclic and order-respecting.
    """

    __tablename__ = "step_tasks"

    id = db.Column(db.Integer, primary_key=True)
    step_id = db.Column(
        db.Integer, db.ForeignKey("phase_steps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    template_id = db.Column(
        db.Integer, db.ForeignKey("project_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
        comment="Denormalised from step → phase → template",
    )
    task_name = db.Column(db.String(NAME_MAX_LENGTH), nullable=False)
    description = db.Column(db.Text, default="")
    task_order = db.Column(db.Integer, nullable=False, default=1)
    estimated_days = db.Column(db.Integer, nullable=True)
    assigned_role_id = db.Column(
        db.Integer, nullable=True, index=True,
        comment="Non-owning reference into the role directory",
    )
    category = db.Column(
        db.String(20), nullable=True,
        comment="monitor | coordinate | execute",
    )
    checklist_items = db.Column(
        db.JSON, nullable=False, default=list,
        comment='[{"id": str, "text": str, "order": int}], order dense 1..N',
    )
    parent_task_id = db.Column(
        db.Integer, db.ForeignKey("step_tasks.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )

    __table_args__ = (
        _active_unique_index("uq_step_tasks_active_template_order", "template_id", "task_order"),
        db.CheckConstraint(
            "estimated_days IS NULL OR estimated_days >= 0",
            name="ck_step_task_estimated_days",
        ),
        db.CheckConstraint(
            "category IS NULL OR category IN ('monitor','coordinate','execute')",
            name="ck_step_task_category",
        ),
        db.CheckConstraint(
            "parent_task_id IS NULL OR parent_task_id != id",
            name="ck_step_task_no_self_parent",
        ),
    )

    parent = db.relationship("StepTask", remote_side=[id], foreign_keys=[parent_task_id])

    def position(self):
        """Canonical workflow position: (phase_order, step_order, task_order)."""
        step = self.step
        return (step.phase.phase_order, step.step_order, self.task_order)

    def _parent_summary(self):
        if self.parent_task_id is None:
            return None, None
        parent = db.session.get(StepTask, self.parent_task_id)
        if parent is None:
            return UNKNOWN_TASK_NAME, None
        return parent.task_name, parent.is_archived

    def to_dict(self, include_position=False):
        parent_name, parent_archived = self._parent_summary()
        result = {
            "id": self.id,
            "step_id": self.step_id,
            "template_id": self.template_id,
            "task_name": self.task_name,
            "description": self.description,
            "task_order": self.task_order,
            "estimated_days": self.estimated_days,
            "assigned_role_id": self.assigned_role_id,
            "category": self.category,
            "checklist_items": list(self.checklist_items or []),
            "parent_task_id": self.parent_task_id,
            "parent_task_name": parent_name,
            "parent_is_archived": parent_archived,
            "is_archived": self.is_archived,
        }
        if include_position:
            step = self.step
            result["step_name"] = step.step_name
            result["step_order"] = step.step_order
            result["phase_id"] = step.phase_id
            result["phase_name"] = step.phase.phase_name
            result["phase_order"] = step.phase.phase_order
        result.update(self._audit_dict())
        return result

    def __repr__(self):
        return f"<StepTask {self.id}: #{self.task_order} {self.task_name[:40]}>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. TemplateRoleUsage
# ═════════════════════════════════════════════════════════════════════════════


class TemplateRoleUsage(db.Model):
    """How many non-archived tasks of a template are assigned to a role."""

    __tablename__ = "template_roles"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("project_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    role_id = db.Column(db.Integer, nullable=False, index=True)
    role_usage_count = db.Column(db.Integer, nullable=False, default=1)
    first_used_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    last_used_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("template_id", "role_id", name="uq_template_roles_template_role"),
        db.CheckConstraint("role_usage_count >= 0", name="ck_template_roles_usage_count"),
    )

    def to_dict(self, role=None):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "role_id": self.role_id,
            "role_name": role.role_name if role else UNKNOWN_ROLE_NAME,
            "department_name": role.department_name if role else UNKNOWN_DEPARTMENT_NAME,
            "role_usage_count": self.role_usage_count,
            "first_used_at": self.first_used_at.isoformat() if self.first_used_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }

    def __repr__(self):
        return f"<TemplateRoleUsage template={self.template_id} role={self.role_id} x{self.role_usage_count}>"


# ═════════════════════════════════════════════════════════════════════════════
# 6. DepartmentRole (read-only directory)
# ═════════════════════════════════════════════════════════════════════════════


class DepartmentRole(db.Model):
    """Role directory row. Managed outside the engine; read here for display names."""

    __tablename__ = "department_roles"

    id = db.Column(db.Integer, primary_key=True)
    role_name = db.Column(db.String(NAME_MAX_LENGTH), nullable=False)
    department_name = db.Column(db.String(NAME_MAX_LENGTH), nullable=True)
    is_archived = db.Column(db.Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<DepartmentRole {self.id}: {self.role_name}>"
