"""
Template duplication — complexity report and deep copy.

Duplication runs in one transaction:
    1. new template row
    2. phases and steps in order
    3. every task, parent links left empty, old→new id map recorded
    4. parent links rewritten through the map (unmapped parents → NULL)
    5. role usage counters rebuilt for the new template

Any failure rolls the whole thing back; no partial template is ever visible.
"""

from __future__ import annotations

import logging
import math

from flask import current_app
from sqlalchemy.exc import IntegrityError

from template_engine.core.exceptions import ConflictError, TooLargeError
from template_engine.models import db
from template_engine.models.template import (
    PhaseStep,
    ProjectTemplate,
    StepTask,
    TemplatePhase,
)
from template_engine.services import role_usage_service, task_graph, template_service

logger = logging.getLogger(__name__)

DEFAULT_MAX_TASKS = 10000
DEFAULT_MS_PER_TASK = 5


def _max_tasks() -> int:
    return int(current_app.config.get("TEMPLATE_DUPLICATE_MAX_TASKS", DEFAULT_MAX_TASKS))


def get_complexity(template_id: int) -> dict:
    """
    Size of a template as seen by duplication.

    Counts cover non-archived nodes under non-archived ancestors.
    ``estimated_seconds`` = ceil(task_count × DUPLICATE_MS_PER_TASK / 1000).
    """
    template = template_service.get_template(template_id)
    counts = template_service.count_live_template_nodes(template.id)
    ms_per_task = int(current_app.config.get("DUPLICATE_MS_PER_TASK", DEFAULT_MS_PER_TASK))
    limit = _max_tasks()
    return {
        "template_id": template.id,
        "template_name": template.template_name,
        **counts,
        "estimated_seconds": math.ceil(counts["task_count"] * ms_per_task / 1000),
        "max_tasks": limit,
        "exceeds_limit": counts["task_count"] > limit,
    }


def _copy_structure(source, new_template, actor):
    """Copy live phases, steps and tasks. Returns (task pairs, id map)."""
    phases = (
        TemplatePhase.query_active()
        .filter_by(template_id=source.id)
        .order_by(TemplatePhase.phase_order)
        .all()
    )
    step_map = {}
    for phase_index, phase in enumerate(phases, start=1):
        new_phase = TemplatePhase(
            template_id=new_template.id,
            phase_name=phase.phase_name,
            description=phase.description,
            phase_order=phase_index,
            created_by=actor,
        )
        db.session.add(new_phase)
        db.session.flush()

        steps = (
            PhaseStep.query_active()
            .filter_by(phase_id=phase.id)
            .order_by(PhaseStep.step_order)
            .all()
        )
        for step_index, step in enumerate(steps, start=1):
            new_step = PhaseStep(
                phase_id=new_phase.id,
                step_name=step.step_name,
                description=step.description,
                step_order=step_index,
                created_by=actor,
            )
            db.session.add(new_step)
            step_map[step.id] = new_step
    db.session.flush()

    # Global task order is compacted to 1..N, keeping the source sequence
    tasks = sorted(task_graph.live_template_tasks(source.id), key=lambda t: t.task_order)
    pairs = []
    for order, task in enumerate(tasks, start=1):
        copy = StepTask(
            step_id=step_map[task.step_id].id,
            template_id=new_template.id,
            task_name=task.task_name,
            description=task.description,
            task_order=order,
            estimated_days=task.estimated_days,
            assigned_role_id=task.assigned_role_id,
            category=task.category,
            checklist_items=template_service.normalize_checklist(
                list(task.checklist_items or []), regenerate_ids=True,
            ),
            parent_task_id=None,
            created_by=actor,
        )
        db.session.add(copy)
        pairs.append((task, copy))
    db.session.flush()

    id_map = {src.id: copy.id for src, copy in pairs}
    return pairs, id_map


def _link_parents(pairs, id_map):
    """Second pass: point each copy at the copy of its source parent."""
    dropped = 0
    for src, copy in pairs:
        if src.parent_task_id is None:
            continue
        mapped = id_map.get(src.parent_task_id)
        if mapped is None:
            dropped += 1
        copy.parent_task_id = mapped
    db.session.flush()
    return dropped


def duplicate_template(template_id: int, new_name: str, actor: str = "system") -> ProjectTemplate:
    """
    Deep-copy a template under a new name.

    Raises:
        NotFoundError: source missing or archived.
        ValidationError: new_name invalid.
        TooLargeError: live task count exceeds TEMPLATE_DUPLICATE_MAX_TASKS (nothing written).
        ConflictError: an active template already has new_name.
    """
    source = template_service.get_template(template_id)
    name = template_service.validate_name(new_name, "template_name")

    complexity = get_complexity(source.id)
    if complexity["exceeds_limit"]:
        raise TooLargeError(
            f"Template has {complexity['task_count']} tasks; duplication is limited to "
            f"{complexity['max_tasks']}",
            details={"task_count": complexity["task_count"], "max_tasks": complexity["max_tasks"]},
        )
    template_service.ensure_name_available(name)

    try:
        new_template = ProjectTemplate(
            template_name=name,
            description=source.description,
            created_by=actor,
        )
        db.session.add(new_template)
        db.session.flush()

        pairs, id_map = _copy_structure(source, new_template, actor)
        dropped = _link_parents(pairs, id_map)
        role_usage_service.rebuild_template_roles(new_template.id, commit=False)
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("ProjectTemplate", "template_name", name) from exc
    except Exception:
        db.session.rollback()
        logger.exception("Duplication of template id=%s failed; rolled back", template_id,
                         extra={"template_id": template_id})
        raise

    if dropped:
        logger.warning("Duplicate id=%s: %d parent links pointed outside the copy and were cleared",
                       new_template.id, dropped, extra={"template_id": new_template.id})
    logger.info(
        "Template id=%s duplicated as id=%s name=%s (%d tasks)",
        source.id, new_template.id, name, len(pairs),
        extra={"template_id": new_template.id},
    )
    return new_template
