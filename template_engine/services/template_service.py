"""
Template hierarchy — Service Layer.

Business logic for:
    - Templates:  CRUD, archive/restore, nested tree read, unique active names
    - Phases:     CRUD, archive/restore, append-at-end ordering
    - Steps:      CRUD, archive/restore, append-at-end ordering
    - Tasks:      CRUD, archive/restore, step moves, parent routing, role usage
    - Checklists: add / edit / remove / reorder / replace (order kept dense 1..N)
    - Reorder:    thin dispatch onto the ordering primitive

Archiving is the delete path.  Archiving never renumbers surviving siblings;
restoring appends the node at the end of its scope.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from template_engine.core.exceptions import (
    ConflictError,
    NotFoundError,
    OutOfOrderError,
    ValidationError,
)
from template_engine.models import db
from template_engine.models.template import (
    DESCRIPTION_MAX_LENGTH,
    NAME_MAX_LENGTH,
    TASK_CATEGORIES,
    PhaseStep,
    ProjectTemplate,
    StepTask,
    TemplatePhase,
)
from template_engine.services import ordering, role_usage_service, task_graph

logger = logging.getLogger(__name__)

ORDER_FIELDS = {"phase_order", "step_order", "task_order"}


# ── Field validation ─────────────────────────────────────────────────────────


def validate_name(value, field):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", details={"field": field})
    value = value.strip()
    if len(value) > NAME_MAX_LENGTH:
        raise ValidationError(
            f"{field} must be at most {NAME_MAX_LENGTH} characters",
            details={"field": field, "max_length": NAME_MAX_LENGTH},
        )
    return value


def _validate_description(value):
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError("description must be a string", details={"field": "description"})
    if len(value) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(
            f"description must be at most {DESCRIPTION_MAX_LENGTH} characters",
            details={"field": "description", "max_length": DESCRIPTION_MAX_LENGTH},
        )
    return value


def _validate_estimated_days(value):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(
            "estimated_days must be a non-negative integer", details={"field": "estimated_days"},
        )
    return value


def _validate_category(value):
    if value is None:
        return None
    if value not in TASK_CATEGORIES:
        raise ValidationError(
            f"category must be one of {sorted(TASK_CATEGORIES)}",
            details={"field": "category", "allowed": sorted(TASK_CATEGORIES)},
        )
    return value


def _validate_role_id(value):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("assigned_role_id must be an integer", details={"field": "assigned_role_id"})
    return value


def _reject_order_fields(data):
    given = ORDER_FIELDS & set(data)
    if given:
        raise ValidationError(
            "Order fields cannot be set directly; use the reorder operation",
            details={"fields": sorted(given)},
        )


def _commit(resource, field, value):
    """Commit, translating a unique-index violation into ConflictError."""
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity violation on %s.%s=%r: %s", resource, field, value, exc.orig)
        raise ConflictError(resource, field, value) from exc


# ── Loaders ──────────────────────────────────────────────────────────────────


def _get_live(model, pk, resource=None):
    obj = db.session.get(model, pk)
    name = resource or model.__name__
    if obj is None:
        raise NotFoundError(resource=name, resource_id=pk)
    if obj.is_archived:
        raise NotFoundError(resource=name, resource_id=pk, reason="archived")
    return obj


def get_template(template_id, include_archived=False):
    template = db.session.get(ProjectTemplate, template_id)
    if template is None or (template.is_archived and not include_archived):
        raise NotFoundError(resource="ProjectTemplate", resource_id=template_id)
    return template


def get_live_phase(phase_id):
    """Non-archived phase of a non-archived template."""
    phase = _get_live(TemplatePhase, phase_id)
    if phase.template.is_archived:
        raise NotFoundError(resource="TemplatePhase", resource_id=phase_id, reason="template archived")
    return phase


def get_live_step(step_id):
    """Non-archived step under a non-archived phase and template."""
    step = _get_live(PhaseStep, step_id)
    if step.phase.is_archived or step.phase.template.is_archived:
        raise NotFoundError(resource="PhaseStep", resource_id=step_id, reason="owner archived")
    return step


def get_task(task_id):
    task = db.session.get(StepTask, task_id)
    if task is None:
        raise NotFoundError(resource="StepTask", resource_id=task_id)
    return task


# ═════════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════════


def ensure_name_available(name, exclude_id=None):
    q = ProjectTemplate.query_active().filter(ProjectTemplate.template_name == name)
    if exclude_id is not None:
        q = q.filter(ProjectTemplate.id != exclude_id)
    if db.session.query(q.exists()).scalar():
        raise ConflictError("ProjectTemplate", "template_name", name)


def list_templates(search=None, include_archived=False):
    """Query of templates, newest first. Callers paginate."""
    q = ProjectTemplate.query if include_archived else ProjectTemplate.query_active()
    if search:
        q = q.filter(ProjectTemplate.template_name.ilike(f"%{search}%"))
    return q.order_by(ProjectTemplate.created_at.desc(), ProjectTemplate.id.desc())


def create_template(data, actor="system"):
    name = validate_name(data.get("template_name"), "template_name")
    ensure_name_available(name)
    template = ProjectTemplate(
        template_name=name,
        description=_validate_description(data.get("description")),
        created_by=actor,
    )
    db.session.add(template)
    _commit("ProjectTemplate", "template_name", name)
    logger.info("Template created id=%s name=%s", template.id, name,
                extra={"template_id": template.id})
    return template


def update_template(template_id, data, actor="system"):
    template = get_template(template_id)
    if "template_name" in data:
        name = validate_name(data["template_name"], "template_name")
        ensure_name_available(name, exclude_id=template.id)
        template.template_name = name
    if "description" in data:
        template.description = _validate_description(data["description"])
    template.touch(actor)
    _commit("ProjectTemplate", "template_name", template.template_name)
    logger.info("Template updated id=%s", template.id, extra={"template_id": template.id})
    return template


def archive_template(template_id, actor="system"):
    template = get_template(template_id)
    template.archive()
    template.touch(actor)
    db.session.commit()
    logger.info("Template archived id=%s", template.id, extra={"template_id": template.id})
    return template


def restore_template(template_id, actor="system"):
    template = db.session.get(ProjectTemplate, template_id)
    if template is None:
        raise NotFoundError(resource="ProjectTemplate", resource_id=template_id)
    if not template.is_archived:
        return template
    ensure_name_available(template.template_name, exclude_id=template.id)
    template.restore()
    template.touch(actor)
    _commit("ProjectTemplate", "template_name", template.template_name)
    logger.info("Template restored id=%s", template.id, extra={"template_id": template.id})
    return template


def get_template_tree(template_id):
    """Nested phases → steps → tasks, ordered, archived nodes excluded."""
    template = get_template(template_id)
    phases = (
        TemplatePhase.query_active()
        .filter_by(template_id=template.id)
        .order_by(TemplatePhase.phase_order)
        .all()
    )
    phase_ids = [p.id for p in phases]
    steps = (
        PhaseStep.query_active()
        .filter(PhaseStep.phase_id.in_(phase_ids))
        .order_by(PhaseStep.step_order)
        .all()
    ) if phase_ids else []
    step_ids = [s.id for s in steps]
    tasks = (
        StepTask.query_active()
        .filter(StepTask.step_id.in_(step_ids))
        .order_by(StepTask.task_order)
        .all()
    ) if step_ids else []

    tasks_by_step = {}
    for t in tasks:
        tasks_by_step.setdefault(t.step_id, []).append(t.to_dict())
    steps_by_phase = {}
    for s in steps:
        d = s.to_dict()
        d["tasks"] = tasks_by_step.get(s.id, [])
        steps_by_phase.setdefault(s.phase_id, []).append(d)

    result = template.to_dict()
    result["phases"] = []
    for p in phases:
        d = p.to_dict()
        d["steps"] = steps_by_phase.get(p.id, [])
        result["phases"].append(d)
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Phases
# ═════════════════════════════════════════════════════════════════════════════


def list_phases(template_id, include_archived=False):
    template = get_template(template_id)
    q = TemplatePhase.query if include_archived else TemplatePhase.query_active()
    return q.filter_by(template_id=template.id).order_by(TemplatePhase.phase_order).all()


def create_phase(template_id, data, actor="system"):
    """Append a new phase at the end of a template."""
    _reject_order_fields(data)
    template = _get_live(ProjectTemplate, template_id)
    phase = TemplatePhase(
        template_id=template.id,
        phase_name=validate_name(data.get("phase_name"), "phase_name"),
        description=_validate_description(data.get("description")),
        phase_order=ordering.next_order("template", template.id),
        created_by=actor,
    )
    db.session.add(phase)
    _commit("TemplatePhase", "phase_order", phase.phase_order)
    logger.info("Phase created id=%s order=%s", phase.id, phase.phase_order,
                extra={"template_id": template.id})
    return phase


def update_phase(phase_id, data, actor="system"):
    _reject_order_fields(data)
    phase = get_live_phase(phase_id)
    if "phase_name" in data:
        phase.phase_name = validate_name(data["phase_name"], "phase_name")
    if "description" in data:
        phase.description = _validate_description(data["description"])
    phase.touch(actor)
    db.session.commit()
    logger.info("Phase updated id=%s", phase.id, extra={"template_id": phase.template_id})
    return phase


def archive_phase(phase_id, actor="system"):
    phase = _get_live(TemplatePhase, phase_id)
    phase.archive()
    phase.touch(actor)
    db.session.commit()
    logger.info("Phase archived id=%s", phase.id, extra={"template_id": phase.template_id})
    return phase


def restore_phase(phase_id, actor="system"):
    phase = db.session.get(TemplatePhase, phase_id)
    if phase is None:
        raise NotFoundError(resource="TemplatePhase", resource_id=phase_id)
    if not phase.is_archived:
        return phase
    if phase.template.is_archived:
        raise NotFoundError(resource="ProjectTemplate", resource_id=phase.template_id, reason="archived")
    phase.phase_order = ordering.next_order("template", phase.template_id)
    phase.restore()
    phase.touch(actor)
    _commit("TemplatePhase", "phase_order", phase.phase_order)
    logger.info("Phase restored id=%s order=%s", phase.id, phase.phase_order,
                extra={"template_id": phase.template_id})
    return phase


# ═════════════════════════════════════════════════════════════════════════════
# Steps
# ═════════════════════════════════════════════════════════════════════════════


def list_steps(phase_id, include_archived=False):
    phase = get_live_phase(phase_id)
    q = PhaseStep.query if include_archived else PhaseStep.query_active()
    return q.filter_by(phase_id=phase.id).order_by(PhaseStep.step_order).all()


def create_step(phase_id, data, actor="system"):
    """Append a new step at the end of a phase."""
    _reject_order_fields(data)
    phase = get_live_phase(phase_id)
    step = PhaseStep(
        phase_id=phase.id,
        step_name=validate_name(data.get("step_name"), "step_name"),
        description=_validate_description(data.get("description")),
        step_order=ordering.next_order("phase", phase.id),
        created_by=actor,
    )
    db.session.add(step)
    _commit("PhaseStep", "step_order", step.step_order)
    logger.info("Step created id=%s phase=%s order=%s", step.id, phase.id, step.step_order,
                extra={"template_id": phase.template_id})
    return step


def update_step(step_id, data, actor="system"):
    _reject_order_fields(data)
    step = get_live_step(step_id)
    if "step_name" in data:
        step.step_name = validate_name(data["step_name"], "step_name")
    if "description" in data:
        step.description = _validate_description(data["description"])
    step.touch(actor)
    db.session.commit()
    logger.info("Step updated id=%s", step.id)
    return step


def archive_step(step_id, actor="system"):
    step = _get_live(PhaseStep, step_id)
    step.archive()
    step.touch(actor)
    db.session.commit()
    logger.info("Step archived id=%s", step.id)
    return step


def restore_step(step_id, actor="system"):
    step = db.session.get(PhaseStep, step_id)
    if step is None:
        raise NotFoundError(resource="PhaseStep", resource_id=step_id)
    if not step.is_archived:
        return step
    if step.phase.is_archived:
        raise NotFoundError(resource="TemplatePhase", resource_id=step.phase_id, reason="archived")
    step.step_order = ordering.next_order("phase", step.phase_id)
    step.restore()
    step.touch(actor)
    _commit("PhaseStep", "step_order", step.step_order)
    logger.info("Step restored id=%s order=%s", step.id, step.step_order)
    return step


# ═════════════════════════════════════════════════════════════════════════════
# Tasks
# ═════════════════════════════════════════════════════════════════════════════


def list_step_tasks(step_id, include_archived=False):
    step = get_live_step(step_id)
    q = StepTask.query if include_archived else StepTask.query_active()
    return q.filter_by(step_id=step.id).order_by(StepTask.task_order).all()


def list_template_tasks(template_id):
    """Live tasks of a template in canonical workflow position."""
    template = get_template(template_id)
    return task_graph.live_template_tasks(template.id)


def create_task(step_id, data, actor="system"):
    """
    Create a task at the end of its template's global task sequence.

    Args:
        step_id: Owning step (must be live).
        data: task_name (required), description, estimated_days,
              assigned_role_id, category, checklist_items, parent_task_id.

    Returns:
        The created StepTask.
    """
    _reject_order_fields(data)
    step = get_live_step(step_id)
    template_id = step.phase.template_id

    task = StepTask(
        step_id=step.id,
        template_id=template_id,
        task_name=validate_name(data.get("task_name"), "task_name"),
        description=_validate_description(data.get("description")),
        estimated_days=_validate_estimated_days(data.get("estimated_days")),
        assigned_role_id=_validate_role_id(data.get("assigned_role_id")),
        category=_validate_category(data.get("category")),
        checklist_items=normalize_checklist(data.get("checklist_items") or []),
        task_order=ordering.next_order("template_tasks", template_id),
        created_by=actor,
    )
    db.session.add(task)
    try:
        db.session.flush()
        parent_id = data.get("parent_task_id")
        if parent_id is not None:
            task_graph.validate_parent(task, parent_id)
            task.parent_task_id = parent_id
        role_usage_service.add_role_usage(template_id, task.assigned_role_id)
    except Exception:
        db.session.rollback()
        raise
    _commit("StepTask", "task_order", task.task_order)
    logger.info("Task created id=%s step=%s order=%s", task.id, step.id, task.task_order,
                extra={"template_id": template_id, "task_id": task.id})
    return task


def _check_children_positions(task):
    """After a step move, every live child must still come after *task*."""
    pos = task_graph.canonical_position(task)
    children = StepTask.query_active().filter(StepTask.parent_task_id == task.id).all()
    for child in children:
        if task_graph.is_live(child) and task_graph.canonical_position(child) < pos:
            raise OutOfOrderError(
                f"Moving task {task.id} would place it after its child task {child.id}",
                details={"task_id": task.id, "child_task_id": child.id},
            )


def _move_task(task, new_step_id):
    target = get_live_step(new_step_id)
    if target.phase.template_id != task.template_id:
        raise ValidationError(
            "A task can only move to a step of the same template",
            details={"task_id": task.id, "step_id": new_step_id},
        )
    task.step_id = target.id
    db.session.flush()
    db.session.expire(task, ["step"])


def update_task(task_id, data, actor="system"):
    """
    Update whitelisted task fields.

    ``step_id`` moves the task to another live step of the same template
    (global order unchanged).  ``parent_task_id`` goes through the graph
    validator.  A role change moves one role-usage count.
    """
    _reject_order_fields(data)
    task = get_task(task_id)
    if not task_graph.is_live(task):
        raise NotFoundError(resource="StepTask", resource_id=task_id, reason="archived")
    old_role_id = task.assigned_role_id

    try:
        if "task_name" in data:
            task.task_name = validate_name(data["task_name"], "task_name")
        if "description" in data:
            task.description = _validate_description(data["description"])
        if "estimated_days" in data:
            task.estimated_days = _validate_estimated_days(data["estimated_days"])
        if "category" in data:
            task.category = _validate_category(data["category"])
        if "checklist_items" in data:
            task.checklist_items = normalize_checklist(data["checklist_items"] or [])
        if "assigned_role_id" in data:
            task.assigned_role_id = _validate_role_id(data["assigned_role_id"])

        moved = "step_id" in data and data["step_id"] != task.step_id
        if moved:
            _move_task(task, data["step_id"])

        if "parent_task_id" in data:
            task_graph.validate_parent(task, data["parent_task_id"])
            task.parent_task_id = data["parent_task_id"]
        elif moved and task.parent_task_id is not None:
            parent = db.session.get(StepTask, task.parent_task_id)
            if task_graph.is_live(parent):
                task_graph.validate_parent(task, parent.id)
        if moved:
            _check_children_positions(task)

        if task.assigned_role_id != old_role_id:
            role_usage_service.update_role_usage(task.template_id, old_role_id, task.assigned_role_id)
        task.touch(actor)
    except Exception:
        db.session.rollback()
        raise
    db.session.commit()
    logger.info("Task updated id=%s fields=%s", task.id, sorted(data),
                extra={"template_id": task.template_id, "task_id": task.id})
    return task


def archive_task(task_id, actor="system"):
    task = _get_live(StepTask, task_id)
    task.archive()
    task.touch(actor)
    role_usage_service.remove_role_usage(task.template_id, task.assigned_role_id)
    db.session.commit()
    logger.info("Task archived id=%s", task.id,
                extra={"template_id": task.template_id, "task_id": task.id})
    return task


def restore_task(task_id, actor="system"):
    task = get_task(task_id)
    if not task.is_archived:
        return task
    step = task.step
    if step.is_archived or step.phase.is_archived or step.phase.template.is_archived:
        raise NotFoundError(resource="PhaseStep", resource_id=step.id, reason="archived")
    task.task_order = ordering.next_order("template_tasks", task.template_id)
    task.restore()
    task.touch(actor)
    role_usage_service.add_role_usage(task.template_id, task.assigned_role_id)
    _commit("StepTask", "task_order", task.task_order)
    logger.info("Task restored id=%s order=%s", task.id, task.task_order,
                extra={"template_id": task.template_id, "task_id": task.id})
    return task


# ═════════════════════════════════════════════════════════════════════════════
# Checklist items
# ═════════════════════════════════════════════════════════════════════════════


def new_checklist_id():
    return uuid.uuid4().hex


def _renumber(items):
    return [
        {"id": item["id"], "text": item["text"], "order": index}
        for index, item in enumerate(items, start=1)
    ]


def normalize_checklist(items, regenerate_ids=False):
    """
    Validate a checklist payload and renumber it 1..N.

    Accepts dicts with ``text`` (and optionally ``id`` / ``order``) or plain
    strings.  Input order follows ``order`` when every item carries one.
    """
    if not isinstance(items, list):
        raise ValidationError("checklist_items must be a list", details={"field": "checklist_items"})

    parsed = []
    for raw in items:
        if isinstance(raw, str):
            raw = {"text": raw}
        if not isinstance(raw, dict):
            raise ValidationError("checklist item must be an object", details={"field": "checklist_items"})
        text = raw.get("text")
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("checklist item text is required", details={"field": "checklist_items"})
        item_id = raw.get("id")
        if regenerate_ids or not item_id:
            item_id = new_checklist_id()
        parsed.append({"id": str(item_id), "text": text.strip(), "order": raw.get("order")})

    if parsed and all(isinstance(p["order"], int) for p in parsed):
        parsed.sort(key=lambda p: p["order"])

    ids = [p["id"] for p in parsed]
    if len(set(ids)) != len(ids):
        raise ValidationError("checklist item ids must be unique", details={"field": "checklist_items"})
    return _renumber(parsed)


def _live_task_for_checklist(task_id):
    task = get_task(task_id)
    if not task_graph.is_live(task):
        raise NotFoundError(resource="StepTask", resource_id=task_id, reason="archived")
    return task


def _save_checklist(task, items, actor, action):
    task.checklist_items = _renumber(items)
    task.touch(actor)
    db.session.commit()
    logger.info("Checklist %s on task id=%s (%d items)", action, task.id, len(task.checklist_items),
                extra={"task_id": task.id})
    return task.checklist_items


def _find_item(task, item_id):
    items = list(task.checklist_items or [])
    for index, item in enumerate(items):
        if item["id"] == item_id:
            return items, index
    raise NotFoundError(resource="ChecklistItem", resource_id=item_id)


def add_checklist_item(task_id, text, actor="system"):
    task = _live_task_for_checklist(task_id)
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("checklist item text is required", details={"field": "text"})
    items = list(task.checklist_items or [])
    item = {"id": new_checklist_id(), "text": text.strip()}
    items.append(item)
    _save_checklist(task, items, actor, "item added")
    return next(i for i in task.checklist_items if i["id"] == item["id"])


def update_checklist_item(task_id, item_id, text, actor="system"):
    task = _live_task_for_checklist(task_id)
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("checklist item text is required", details={"field": "text"})
    items, index = _find_item(task, item_id)
    items[index] = {**items[index], "text": text.strip()}
    _save_checklist(task, items, actor, "item updated")
    return task.checklist_items[index]


def remove_checklist_item(task_id, item_id, actor="system"):
    task = _live_task_for_checklist(task_id)
    items, index = _find_item(task, item_id)
    del items[index]
    return _save_checklist(task, items, actor, "item removed")


def reorder_checklist(task_id, item_ids, actor="system"):
    task = _live_task_for_checklist(task_id)
    items = list(task.checklist_items or [])
    by_id = {item["id"]: item for item in items}
    if not isinstance(item_ids, list) or len(item_ids) != len(by_id) or set(item_ids) != set(by_id):
        raise ValidationError(
            "item_ids must list every checklist item exactly once",
            details={"expected": sorted(by_id)},
        )
    return _save_checklist(task, [by_id[i] for i in item_ids], actor, "reordered")


# ═════════════════════════════════════════════════════════════════════════════
# Reorder dispatch
# ═════════════════════════════════════════════════════════════════════════════


def reorder_siblings(scope_kind, scope_id, ordered_ids, actor="system"):
    """
    Reorder phases of a template (``template``), steps of a phase
    (``phase``) or tasks of a step (``step``, reusing the step's slots).
    """
    if scope_kind not in ("template", "phase", "step"):
        raise ValidationError(
            f"Unknown scope_kind '{scope_kind}'", details={"allowed": ["phase", "step", "template"]},
        )
    return ordering.reorder(scope_kind, scope_id, ordered_ids, actor=actor)


def reorder_tasks_globally(template_id, ordered_task_ids, actor="system"):
    """Rewrite the whole template task sequence to 1..N in the given order."""
    return ordering.reorder("template_tasks", template_id, ordered_task_ids, actor=actor)


def count_live_template_nodes(template_id):
    """Phase/step/task counts under non-archived ancestors."""
    phase_count = (
        db.session.query(func.count(TemplatePhase.id))
        .filter(TemplatePhase.template_id == template_id, TemplatePhase.is_archived.is_(False))
        .scalar()
    )
    step_q = (
        db.session.query(PhaseStep.id)
        .join(TemplatePhase, PhaseStep.phase_id == TemplatePhase.id)
        .filter(
            TemplatePhase.template_id == template_id,
            TemplatePhase.is_archived.is_(False),
            PhaseStep.is_archived.is_(False),
        )
    )
    step_count = step_q.count()
    task_q = (
        db.session.query(StepTask)
        .join(PhaseStep, StepTask.step_id == PhaseStep.id)
        .join(TemplatePhase, PhaseStep.phase_id == TemplatePhase.id)
        .filter(
            TemplatePhase.template_id == template_id,
            TemplatePhase.is_archived.is_(False),
            PhaseStep.is_archived.is_(False),
            StepTask.is_archived.is_(False),
        )
    )
    task_count = task_q.count()
    parented_count = task_q.filter(StepTask.parent_task_id.isnot(None)).count()
    return {
        "phase_count": phase_count or 0,
        "step_count": step_count,
        "task_count": task_count,
        "parented_task_count": parented_count,
    }
