"""
Copy engine — copy a step's tasks into another step, or a whole step into a phase.

Copies are appended to the end of the target template's global task
sequence in source order.  Parent links are remapped in two passes:

    parent copied in the same call       → the parent's copy
    parent outside the copied set        → kept, unless unlink_external_parents
                                           or the target is another template
"""

import logging

from template_engine.core.exceptions import InvalidTargetError, NotFoundError, ValidationError
from template_engine.models import db
from template_engine.models.template import PhaseStep, StepTask, TemplatePhase
from template_engine.services import ordering, role_usage_service, task_graph, template_service

logger = logging.getLogger(__name__)

DEFAULT_STEP_COPY_SUFFIX = "Copy"


def _source_step(step_id):
    step = db.session.get(PhaseStep, step_id)
    if step is None:
        raise NotFoundError(resource="PhaseStep", resource_id=step_id)
    if step.is_archived or step.phase.is_archived:
        raise NotFoundError(resource="PhaseStep", resource_id=step_id, reason="archived")
    return step


def _target_step(step_id):
    step = db.session.get(PhaseStep, step_id)
    if step is None or step.is_archived or step.phase.is_archived or step.phase.template.is_archived:
        raise InvalidTargetError(resource="Target step", resource_id=step_id)
    return step


def _target_phase(phase_id):
    phase = db.session.get(TemplatePhase, phase_id)
    if phase is None or phase.is_archived or phase.template.is_archived:
        raise InvalidTargetError(resource="Target phase", resource_id=phase_id)
    return phase


def _copy_name(name, suffix):
    if not suffix:
        return name
    return template_service.validate_name(f"{name} ({suffix})", "task_name")


def _copy_tasks(source_step, target_step, name_suffix, unlink_external_parents, actor):
    """Create-all-then-link copy. Flushes only; the caller commits."""
    source_template_id = source_step.phase.template_id
    target_template_id = target_step.phase.template_id
    cross_template = source_template_id != target_template_id

    sources = (
        StepTask.query_active()
        .filter_by(step_id=source_step.id)
        .order_by(StepTask.task_order)
        .all()
    )
    if not sources:
        return {}

    next_order = ordering.next_order("template_tasks", target_template_id)
    pairs = []
    for offset, src in enumerate(sources):
        copy = StepTask(
            step_id=target_step.id,
            template_id=target_template_id,
            task_name=_copy_name(src.task_name, name_suffix),
            description=src.description,
            task_order=next_order + offset,
            estimated_days=src.estimated_days,
            assigned_role_id=src.assigned_role_id,
            category=src.category,
            checklist_items=template_service.normalize_checklist(
                list(src.checklist_items or []), regenerate_ids=True,
            ),
            parent_task_id=None,
            created_by=actor,
        )
        db.session.add(copy)
        pairs.append((src, copy))
    db.session.flush()

    id_map = {src.id: copy.id for src, copy in pairs}

    for src, copy in pairs:
        if src.parent_task_id is None:
            continue
        if src.parent_task_id in id_map:
            copy.parent_task_id = id_map[src.parent_task_id]
        elif cross_template or unlink_external_parents:
            logger.info("Copy of task id=%s: external parent id=%s unlinked",
                        src.id, src.parent_task_id, extra={"template_id": target_template_id})
        else:
            copy.parent_task_id = src.parent_task_id
            parent = db.session.get(StepTask, src.parent_task_id)
            if task_graph.is_live(parent) and parent.position() > copy.position():
                logger.warning(
                    "Copy id=%s keeps external parent id=%s positioned after it",
                    copy.id, parent.id, extra={"template_id": target_template_id},
                )

    for _src, copy in pairs:
        role_usage_service.add_role_usage(target_template_id, copy.assigned_role_id)
    db.session.flush()
    return id_map


def copy_tasks_to_step(source_step_id, target_step_id, name_suffix=None,
                       unlink_external_parents=False, actor="system"):
    """
    Copy all non-archived tasks of one step into another.

    Returns:
        (copied_count, {old_task_id: new_task_id})

    Raises:
        NotFoundError: source step missing or archived.
        InvalidTargetError: target step missing or archived.
        ValidationError: same-step copy without a name suffix.
    """
    source = _source_step(source_step_id)
    target = _target_step(target_step_id)
    if source.id == target.id and not name_suffix:
        raise ValidationError(
            "Copying tasks into the same step requires a name suffix",
            details={"step_id": source.id},
        )

    try:
        id_map = _copy_tasks(source, target, name_suffix, unlink_external_parents, actor)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Copied %d tasks from step id=%s to step id=%s", len(id_map), source.id, target.id,
                extra={"template_id": target.phase.template_id})
    return len(id_map), id_map


def copy_step_to_phase(source_step_id, target_phase_id, new_step_name=None, name_suffix=None,
                       unlink_external_parents=False, actor="system"):
    """
    Copy a step and all its tasks to the end of a phase.

    The new step is named *new_step_name*, or "<source name> (Copy)".

    Returns:
        (new_step, {old_task_id: new_task_id})
    """
    source = _source_step(source_step_id)
    target_phase = _target_phase(target_phase_id)
    step_name = template_service.validate_name(
        new_step_name or f"{source.step_name} ({DEFAULT_STEP_COPY_SUFFIX})", "step_name",
    )

    try:
        new_step = PhaseStep(
            phase_id=target_phase.id,
            step_name=step_name,
            description=source.description,
            step_order=ordering.next_order("phase", target_phase.id),
            created_by=actor,
        )
        db.session.add(new_step)
        db.session.flush()
        id_map = _copy_tasks(source, new_step, name_suffix, unlink_external_parents, actor)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Copied step id=%s to phase id=%s as step id=%s (%d tasks)",
                source.id, target_phase.id, new_step.id, len(id_map),
                extra={"template_id": target_phase.template_id})
    return new_step, id_map
