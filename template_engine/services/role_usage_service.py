"""
Role usage bookkeeping — per-template counters of task role assignments.

Counter rules:
    task created / restored with a role   → +1
    task archived with a role             → -1
    task role changed                     → -1 old, +1 new
    counter reaching 0                    → row deleted

The increment/decrement helpers only flush; they run inside the caller's
unit of work (task create, archive, duplicate ...).
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func

from template_engine.core.exceptions import NotFoundError
from template_engine.models import db
from template_engine.models.template import (
    DepartmentRole,
    ProjectTemplate,
    StepTask,
    TemplateRoleUsage,
)

logger = logging.getLogger(__name__)


def _usage_row(template_id, role_id):
    return TemplateRoleUsage.query.filter_by(template_id=template_id, role_id=role_id).first()


def add_role_usage(template_id, role_id):
    """Increment (or create) the counter for *role_id* in a template."""
    if role_id is None:
        return
    now = datetime.now(timezone.utc)
    row = _usage_row(template_id, role_id)
    if row is None:
        row = TemplateRoleUsage(
            template_id=template_id, role_id=role_id,
            role_usage_count=1, first_used_at=now, last_used_at=now,
        )
        db.session.add(row)
    else:
        row.role_usage_count += 1
        row.last_used_at = now
    db.session.flush()


def remove_role_usage(template_id, role_id):
    """Decrement the counter for *role_id*; delete the row when it reaches 0."""
    if role_id is None:
        return
    row = _usage_row(template_id, role_id)
    if row is None:
        logger.warning(
            "No role usage row to decrement: template=%s role=%s", template_id, role_id,
            extra={"template_id": template_id},
        )
        return
    row.role_usage_count -= 1
    if row.role_usage_count <= 0:
        db.session.delete(row)
    db.session.flush()


def update_role_usage(template_id, old_role_id, new_role_id):
    """Move one usage from *old_role_id* to *new_role_id*."""
    if old_role_id == new_role_id:
        return
    remove_role_usage(template_id, old_role_id)
    add_role_usage(template_id, new_role_id)


def rebuild_template_roles(template_id, commit=True):
    """
    Recount role usage for a template from its non-archived tasks.

    Returns:
        Number of distinct roles recorded.
    """
    TemplateRoleUsage.query.filter_by(template_id=template_id).delete(synchronize_session=False)

    rows = (
        db.session.query(
            StepTask.assigned_role_id,
            func.count(StepTask.id),
            func.min(StepTask.created_at),
            func.max(StepTask.updated_at),
        )
        .filter(
            StepTask.template_id == template_id,
            StepTask.assigned_role_id.isnot(None),
            StepTask.is_archived.is_(False),
        )
        .group_by(StepTask.assigned_role_id)
        .all()
    )
    now = datetime.now(timezone.utc)
    for role_id, usage_count, first_used, last_used in rows:
        db.session.add(TemplateRoleUsage(
            template_id=template_id,
            role_id=role_id,
            role_usage_count=usage_count,
            first_used_at=first_used or now,
            last_used_at=last_used or now,
        ))
    db.session.flush()
    if commit:
        db.session.commit()

    logger.info("Rebuilt role usage for template id=%s: %d roles", template_id, len(rows),
                extra={"template_id": template_id})
    return len(rows)


def rebuild_all_template_roles():
    """Rebuild counters for every non-archived template. Returns {template_id: roles}."""
    result = {}
    for template in ProjectTemplate.query_active().order_by(ProjectTemplate.id).all():
        result[template.id] = rebuild_template_roles(template.id, commit=False)
    db.session.commit()
    return result


def list_template_roles(template_id):
    """Roles used by a template, most used first, with directory names resolved."""
    template = db.session.get(ProjectTemplate, template_id)
    if template is None:
        raise NotFoundError(resource="ProjectTemplate", resource_id=template_id)

    usages = TemplateRoleUsage.query.filter_by(template_id=template_id).all()
    role_ids = {u.role_id for u in usages}
    roles = {}
    if role_ids:
        roles = {r.id: r for r in DepartmentRole.query.filter(DepartmentRole.id.in_(role_ids)).all()}

    items = [u.to_dict(role=roles.get(u.role_id)) for u in usages]
    items.sort(key=lambda d: (-d["role_usage_count"], d["role_name"]))
    return items


def get_role_usage_stats():
    """Platform-wide role usage summary."""
    row = db.session.query(
        func.count(func.distinct(TemplateRoleUsage.template_id)),
        func.count(TemplateRoleUsage.id),
        func.count(func.distinct(TemplateRoleUsage.role_id)),
        func.coalesce(func.sum(TemplateRoleUsage.role_usage_count), 0),
    ).one()
    return {
        "templates_with_roles": row[0],
        "total_template_role_relationships": row[1],
        "unique_roles_used": row[2],
        "total_role_assignments": int(row[3]),
    }
