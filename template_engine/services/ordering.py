"""
Ordering Primitive — sibling re-sequencing for the template hierarchy.

Scopes:
    template        phases of a template          (phase_order, 1..N)
    phase           steps of a phase              (step_order, 1..N)
    step            tasks of one step             (reuses the step's global task_order slots)
    template_tasks  all tasks of a template       (task_order, 1..N)

Two-pass algorithm:
    pass 1  every listed row → staging order  -(999 + final)
    pass 2  every listed row → final order

Staging values are negative, pairwise distinct and never collide with a live
order, so no intermediate state breaks the partial unique indexes even when
each pass is committed on its own (``REORDER_COMMIT_PER_PASS``).  A staged
row encodes its intended final value, which lets ``complete_staged_orders``
finish an interrupted pass 2 deterministically.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from template_engine.core.exceptions import (
    ConflictError,
    DataIntegrityError,
    NotFoundError,
    ValidationError,
)
from template_engine.models import db
from template_engine.models.template import (
    PhaseStep,
    ProjectTemplate,
    StepTask,
    TemplatePhase,
)
from template_engine.services import task_graph

logger = logging.getLogger(__name__)

STAGING_BASE = 999


def staging_value(final_order: int) -> int:
    """Negative placeholder that encodes *final_order*."""
    return -(STAGING_BASE + final_order)


def final_from_staging(value: int) -> int:
    """Inverse of :func:`staging_value`."""
    return -value - STAGING_BASE


# ── Scope descriptors ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class _Scope:
    kind: str
    model: type
    order_attr: str
    owner_attr: str
    owner_model: type
    reuse_slots: bool = False

    @property
    def order_column(self):
        return getattr(self.model, self.order_attr)

    @property
    def owner_column(self):
        return getattr(self.model, self.owner_attr)


SCOPES = {
    "template": _Scope("template", TemplatePhase, "phase_order", "template_id", ProjectTemplate),
    "phase": _Scope("phase", PhaseStep, "step_order", "phase_id", TemplatePhase),
    "step": _Scope("step", StepTask, "task_order", "step_id", PhaseStep, reuse_slots=True),
    "template_tasks": _Scope("template_tasks", StepTask, "task_order", "template_id", ProjectTemplate),
}


def _get_scope(kind: str) -> _Scope:
    scope = SCOPES.get(kind)
    if scope is None:
        raise ValidationError(
            f"Unknown reorder scope '{kind}'",
            details={"allowed": sorted(SCOPES)},
        )
    return scope


def _index_scope(scope: _Scope, scope_id: int) -> tuple[_Scope, int]:
    """Scope whose unique index the orders live in.

    Task orders are unique per template, so staged tasks of a step are
    completed against their whole template.
    """
    if scope.kind != "step":
        return scope, scope_id
    step = db.session.get(PhaseStep, scope_id)
    if step is None:
        raise NotFoundError(resource="PhaseStep", resource_id=scope_id)
    return SCOPES["template_tasks"], step.phase.template_id


def _require_owner(scope: _Scope, scope_id: int):
    owner = db.session.get(scope.owner_model, scope_id)
    if owner is None or owner.is_archived:
        raise NotFoundError(
            resource=scope.owner_model.__name__,
            resource_id=scope_id,
            reason="archived" if owner is not None else None,
        )
    return owner


def _active_rows(scope: _Scope, scope_id: int) -> list:
    return (
        scope.model.query_active()
        .filter(scope.owner_column == scope_id)
        .order_by(scope.order_column, scope.model.id)
        .all()
    )


def _listed_rows(scope: _Scope, scope_id: int) -> list:
    """Rows a caller must name in ``ordered_ids``.

    For the global task sequence these are the live tasks, the same set
    ``live_template_tasks`` returns.
    """
    if scope.kind == "template_tasks":
        return task_graph.live_template_tasks(scope_id)
    return _active_rows(scope, scope_id)


def _hidden_tasks(template_id: int, listed_ids) -> list[StepTask]:
    """Non-archived tasks under an archived step or phase, by current order."""
    return (
        StepTask.query_active()
        .filter(StepTask.template_id == template_id, StepTask.id.notin_(listed_ids))
        .order_by(StepTask.task_order, StepTask.id)
        .all()
    )


def next_order(scope_kind: str, scope_id: int) -> int:
    """Order for a node appended to the end of a scope: max(active)+1."""
    scope = SCOPES[scope_kind]
    current_max = (
        db.session.query(func.max(scope.order_column))
        .filter(scope.owner_column == scope_id, scope.model.is_archived.is_(False))
        .scalar()
    )
    return max(current_max or 0, 0) + 1


# ── Passes ───────────────────────────────────────────────────────────────────


def _write_pass(rows: list, order_attr: str, values: list[int], label: str) -> None:
    """Assign ``values[i]`` to ``rows[i]`` and flush as one unit."""
    for row, value in zip(rows, values):
        setattr(row, order_attr, value)
    db.session.flush()
    logger.debug("Reorder pass '%s' flushed %d rows", label, len(rows))


def _commit_per_pass() -> bool:
    return bool(current_app.config.get("REORDER_COMMIT_PER_PASS", False))


def _validate_ordered_ids(rows: list, ordered_ids) -> None:
    if not isinstance(ordered_ids, (list, tuple)):
        raise ValidationError("ordered_ids must be a list of ids")
    if any(not isinstance(i, int) or isinstance(i, bool) for i in ordered_ids):
        raise ValidationError("ordered_ids must contain integers only")

    counts = Counter(ordered_ids)
    duplicates = sorted(i for i, n in counts.items() if n > 1)
    seen = set(counts)
    expected = {row.id for row in rows}
    unknown = sorted(seen - expected)
    missing = sorted(expected - seen)
    if duplicates or unknown or missing:
        raise ValidationError(
            "ordered_ids must list every live sibling exactly once",
            details={"duplicates": duplicates, "unknown": unknown, "missing": missing},
        )


def _restore_snapshot(rows: list, order_attr: str, snapshot: dict[int, int], scope_desc: str) -> None:
    """Put committed staged rows back to their pre-reorder orders."""
    try:
        _write_pass(rows, order_attr, [snapshot[row.id] for row in rows], "restore")
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Reorder restore failed for %s: %s", scope_desc, exc)
        raise DataIntegrityError(
            f"Reorder of {scope_desc} failed and the previous order could not be restored; "
            "rows remain staged for repair",
            details={"ids": [row.id for row in rows]},
        ) from exc
    logger.warning("Reorder of %s failed in pass 2; previous order restored", scope_desc)


def reorder(scope_kind: str, scope_id: int, ordered_ids, actor: str = "system") -> list:
    """
    Re-sequence the non-archived rows of a scope to match *ordered_ids*.

    Args:
        scope_kind: One of ``template``, ``phase``, ``step``, ``template_tasks``.
        scope_id: PK of the owning template / phase / step.
        ordered_ids: Every live row id of the scope, in the new order. For
            ``template_tasks`` that is the ``live_template_tasks`` set; tasks
            under an archived step or phase follow it in their current order.
        actor: Recorded as ``updated_by`` on moved rows.

    Returns:
        The rows in their new order.

    Raises:
        NotFoundError: scope owner missing or archived.
        ValidationError: list is not exactly the live sibling set.
        ConflictError: a concurrent writer took one of the target orders.
        DataIntegrityError: pass 2 and the snapshot restore both failed.
    """
    scope = _get_scope(scope_kind)
    _require_owner(scope, scope_id)

    index_scope, index_scope_id = _index_scope(scope, scope_id)
    if _has_staged_rows(index_scope, index_scope_id):
        logger.warning(
            "Found staged orders in %s %s; completing interrupted reorder first",
            index_scope.kind, index_scope_id,
        )
        complete_staged_orders(index_scope.kind, index_scope_id)

    rows = _listed_rows(scope, scope_id)
    _validate_ordered_ids(rows, ordered_ids)

    by_id = {row.id: row for row in rows}
    ordered_rows = [by_id[i] for i in ordered_ids]
    moved_rows = list(ordered_rows)
    if scope.kind == "template_tasks":
        # tasks under archived steps/phases keep their relative order after the live ones
        moved_rows += _hidden_tasks(scope_id, list(by_id))
    if scope.reuse_slots:
        finals = sorted(getattr(row, scope.order_attr) for row in rows)
    else:
        finals = list(range(1, len(moved_rows) + 1))

    if all(getattr(row, scope.order_attr) == final for row, final in zip(moved_rows, finals)):
        logger.debug("Reorder of %s %s is a no-op", scope_kind, scope_id)
        return ordered_rows

    snapshot = {row.id: getattr(row, scope.order_attr) for row in moved_rows}
    scope_desc = f"{scope_kind} {scope_id}"
    per_pass = _commit_per_pass()

    try:
        _write_pass(moved_rows, scope.order_attr, [staging_value(f) for f in finals], "staging")
        if per_pass:
            db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError(scope.model.__name__, scope.order_attr, scope_desc) from exc
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Reorder staging pass failed for %s", scope_desc)
        raise

    try:
        _write_pass(moved_rows, scope.order_attr, finals, "final")
        for row in moved_rows:
            row.touch(actor)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        if per_pass:
            _restore_snapshot(moved_rows, scope.order_attr, snapshot, scope_desc)
        if isinstance(exc, IntegrityError):
            raise ConflictError(scope.model.__name__, scope.order_attr, scope_desc) from exc
        logger.exception("Reorder final pass failed for %s", scope_desc)
        raise

    logger.info("Reordered %s %s: %d rows", scope_kind, scope_id, len(moved_rows))
    return ordered_rows


# ── Recovery ─────────────────────────────────────────────────────────────────


def _has_staged_rows(scope: _Scope, scope_id: int) -> bool:
    return db.session.query(
        scope.model.query_active()
        .filter(scope.owner_column == scope_id, scope.order_column < 0)
        .exists()
    ).scalar()


def complete_staged_orders(scope_kind: str, scope_id: int) -> int:
    """
    Finish an interrupted pass 2: move every staged row of the scope to the
    final order its staging value encodes.

    A staged row whose final order has since been taken by another live row
    is appended at the end of the scope instead.

    Returns:
        Number of rows repaired.
    """
    scope = _get_scope(scope_kind)
    index_scope, index_scope_id = _index_scope(scope, scope_id)

    staged = (
        index_scope.model.query_active()
        .filter(index_scope.owner_column == index_scope_id, index_scope.order_column < 0)
        .order_by(index_scope.order_column.desc())
        .all()
    )
    if not staged:
        return 0

    live = {
        value for (value,) in db.session.query(index_scope.order_column).filter(
            index_scope.owner_column == index_scope_id,
            index_scope.model.is_archived.is_(False),
            index_scope.order_column > 0,
        )
    }
    tail = max(live | {final_from_staging(getattr(r, index_scope.order_attr)) for r in staged}) + 1

    finals = []
    for row in staged:
        final = final_from_staging(getattr(row, index_scope.order_attr))
        if final in live:
            logger.warning(
                "Staged %s id=%s lost order %d to another row; appending at %d",
                index_scope.model.__name__, row.id, final, tail,
            )
            final = tail
            tail += 1
        live.add(final)
        finals.append(final)

    try:
        _write_pass(staged, index_scope.order_attr, finals, "repair")
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise DataIntegrityError(
            f"Could not complete staged orders for {index_scope.kind} {index_scope_id}",
            details={"ids": [row.id for row in staged]},
        ) from exc

    logger.warning(
        "Completed %d staged orders in %s %s", len(staged), index_scope.kind, index_scope_id,
    )
    return len(staged)


def count_staged_rows() -> int:
    """Number of non-archived rows currently holding a staging order."""
    total = 0
    for scope in (SCOPES["template"], SCOPES["phase"], SCOPES["template_tasks"]):
        total += scope.model.query_active().filter(scope.order_column < 0).count()
    return total


def repair_all_staged() -> int:
    """Sweep every scope that holds staged rows. Used by ``flask repair-ordering``."""
    repaired = 0
    for scope in (SCOPES["template"], SCOPES["phase"], SCOPES["template_tasks"]):
        owner_ids = [
            owner_id for (owner_id,) in db.session.query(scope.owner_column)
            .filter(scope.order_column < 0, scope.model.is_archived.is_(False))
            .distinct()
        ]
        for owner_id in owner_ids:
            repaired += complete_staged_orders(scope.kind, owner_id)
    return repaired
