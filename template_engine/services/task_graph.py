"""
Task Graph Validator — parent-task dependencies across steps and phases.

A task may name one parent task anywhere in the same template.  The graph
must stay acyclic and every parent must sit at or before its child in
canonical workflow position (phase_order, step_order, task_order).

Traversals are iterative (work-list + visited-set) and bounded by
``TASK_GRAPH_MAX_NODES``.  Meeting a node twice means the stored graph
already contains a cycle; that is reported as DataIntegrityError rather
than repaired or looped on.
"""

from __future__ import annotations

import logging

from flask import current_app

from template_engine.core.exceptions import (
    CycleError,
    DataIntegrityError,
    NotFoundError,
    OutOfOrderError,
    SelfReferenceError,
    ValidationError,
)
from template_engine.models import db
from template_engine.models.template import PhaseStep, StepTask, TemplatePhase

logger = logging.getLogger(__name__)

DEFAULT_MAX_NODES = 50000


def _max_nodes() -> int:
    return int(current_app.config.get("TASK_GRAPH_MAX_NODES", DEFAULT_MAX_NODES))


def is_live(task: StepTask | None) -> bool:
    """True when the task and its step and phase are all non-archived."""
    if task is None or task.is_archived:
        return False
    step = task.step
    return not step.is_archived and not step.phase.is_archived


def canonical_position(task: StepTask) -> tuple[int, int, int]:
    return task.position()


def _load_live_task(task_id, resource="StepTask") -> StepTask:
    task = db.session.get(StepTask, task_id)
    if task is None:
        raise NotFoundError(resource=resource, resource_id=task_id)
    if not is_live(task):
        raise NotFoundError(resource=resource, resource_id=task_id, reason="archived")
    return task


# ── Traversal ────────────────────────────────────────────────────────────────


def get_descendant_ids(task_id: int) -> set[int]:
    """Ids of every non-archived task whose parent chain leads to *task_id*."""
    limit = _max_nodes()
    visited: set[int] = set()
    frontier = [task_id]

    while frontier:
        children = (
            db.session.query(StepTask.id)
            .filter(
                StepTask.parent_task_id.in_(frontier),
                StepTask.is_archived.is_(False),
            )
            .all()
        )
        frontier = []
        for (child_id,) in children:
            if child_id == task_id or child_id in visited:
                raise DataIntegrityError(
                    f"Stored parent links form a cycle through task {child_id}",
                    details={"task_id": task_id, "revisited": child_id},
                )
            visited.add(child_id)
            frontier.append(child_id)
        if len(visited) > limit:
            raise DataIntegrityError(
                f"Descendant traversal of task {task_id} exceeded {limit} nodes",
                details={"task_id": task_id, "limit": limit},
            )
    return visited


def get_ancestor_ids(task_id: int) -> list[int]:
    """Parent chain of *task_id*, nearest first, stopping at an archived or missing parent."""
    limit = _max_nodes()
    chain: list[int] = []
    visited = {task_id}

    task = db.session.get(StepTask, task_id)
    current_id = task.parent_task_id if task else None
    while current_id is not None:
        if current_id in visited:
            raise DataIntegrityError(
                f"Stored parent links form a cycle through task {current_id}",
                details={"task_id": task_id, "revisited": current_id},
            )
        if len(chain) >= limit:
            raise DataIntegrityError(
                f"Ancestor traversal of task {task_id} exceeded {limit} nodes",
                details={"task_id": task_id, "limit": limit},
            )
        parent = db.session.get(StepTask, current_id)
        if parent is None or parent.is_archived:
            break
        visited.add(current_id)
        chain.append(current_id)
        current_id = parent.parent_task_id
    return chain


def get_descendants(task_id: int) -> list[StepTask]:
    _load_live_task(task_id)
    ids = get_descendant_ids(task_id)
    if not ids:
        return []
    return _ordered_tasks(StepTask.query.filter(StepTask.id.in_(ids)))


def get_ancestors(task_id: int) -> list[StepTask]:
    _load_live_task(task_id)
    ids = get_ancestor_ids(task_id)
    by_id = {t.id: t for t in StepTask.query.filter(StepTask.id.in_(ids)).all()} if ids else {}
    return [by_id[i] for i in ids]


def _ordered_tasks(query) -> list[StepTask]:
    return (
        query.join(PhaseStep, StepTask.step_id == PhaseStep.id)
        .join(TemplatePhase, PhaseStep.phase_id == TemplatePhase.id)
        .order_by(TemplatePhase.phase_order, PhaseStep.step_order, StepTask.task_order)
        .all()
    )


def live_template_tasks(template_id: int) -> list[StepTask]:
    """Non-archived tasks under non-archived steps and phases, in canonical order."""
    return _ordered_tasks(
        StepTask.query.filter(
            StepTask.template_id == template_id,
            StepTask.is_archived.is_(False),
            PhaseStep.is_archived.is_(False),
            TemplatePhase.is_archived.is_(False),
        )
    )


# ── Validation ───────────────────────────────────────────────────────────────


def validate_parent(child: StepTask, parent_task_id: int | None) -> StepTask | None:
    """
    Check that *parent_task_id* may become the parent of *child*.

    Returns:
        The parent task, or None when detaching.

    Raises:
        SelfReferenceError, NotFoundError, ValidationError, CycleError, OutOfOrderError
    """
    if parent_task_id is None:
        return None

    if parent_task_id == child.id:
        raise SelfReferenceError(
            "A task cannot be its own parent", details={"task_id": child.id},
        )

    parent = _load_live_task(parent_task_id, resource="Parent task")

    if parent.template_id != child.template_id:
        raise ValidationError(
            "Parent task must belong to the same template",
            details={"task_id": child.id, "parent_task_id": parent.id},
        )

    if child.id is not None and parent.id in get_descendant_ids(child.id):
        raise CycleError(
            f"Task {parent.id} is a descendant of task {child.id}",
            details={"task_id": child.id, "parent_task_id": parent.id},
        )

    child_pos = canonical_position(child)
    parent_pos = canonical_position(parent)
    if parent_pos > child_pos:
        raise OutOfOrderError(
            "Parent task must come before the child in the workflow",
            details={
                "task_id": child.id,
                "parent_task_id": parent.id,
                "task_position": list(child_pos),
                "parent_position": list(parent_pos),
            },
        )
    return parent


def validate_and_set_parent(task_id: int, parent_task_id: int | None, actor: str = "system") -> StepTask:
    """
    Validate and persist the parent of a task. ``None`` detaches it.

    Raises:
        NotFoundError: child (or candidate parent) missing or archived.
        SelfReferenceError: parent == child.
        ValidationError: parent belongs to another template.
        CycleError: parent is a descendant of the child.
        OutOfOrderError: parent is positioned after the child.
    """
    child = _load_live_task(task_id)
    validate_parent(child, parent_task_id)

    child.parent_task_id = parent_task_id
    child.touch(actor)
    db.session.commit()
    logger.info("Task id=%s parent set to %s", task_id, parent_task_id,
                extra={"task_id": task_id, "template_id": child.template_id})
    return child


def get_available_parents(task_id: int | None = None, step_id: int | None = None) -> list[StepTask]:
    """
    Tasks that may be chosen as parent.

    For an existing task: live tasks of its template positioned before it,
    excluding itself and its descendants.  For a task about to be created in
    *step_id*: live tasks positioned at or before the end of that step.
    """
    if task_id is not None:
        task = _load_live_task(task_id)
        template_id = task.template_id
        limit_pos = canonical_position(task)
        excluded = get_descendant_ids(task.id) | {task.id}
    elif step_id is not None:
        step = db.session.get(PhaseStep, step_id)
        if step is None or step.is_archived or step.phase.is_archived:
            raise NotFoundError(resource="PhaseStep", resource_id=step_id)
        template_id = step.phase.template_id
        limit_pos = (step.phase.phase_order, step.step_order, float("inf"))
        excluded = set()
    else:
        raise ValidationError("task_id or step_id is required")

    return [
        t for t in live_template_tasks(template_id)
        if t.id not in excluded and canonical_position(t) < limit_pos
    ]
