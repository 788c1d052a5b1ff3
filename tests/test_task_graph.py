"""
tests/test_task_graph.py — Parent-task graph validation and traversal.

Covers:
    1. Accepting parents (same step, earlier step, earlier phase) and detaching
    2. Rejections in check order: self, missing/archived, cross-template, cycle, out-of-order
    3. Corrupted stored graphs and traversal bounds
    4. Ancestors, descendants, available parents
"""

import pytest

from template_engine.core.exceptions import (
    CycleError,
    DataIntegrityError,
    NotFoundError,
    OutOfOrderError,
    SelfReferenceError,
    ValidationError,
)
from template_engine.models import db as _db
from template_engine.models.template import StepTask
from template_engine.services import task_graph, template_service


def _task(step_id, name, **fields):
    return template_service.create_task(step_id, {"task_name": name, **fields}).id


def _chain(step_id, length):
    """t1 ← t2 ← ... ← tN, each the parent of the next."""
    ids = []
    for i in range(1, length + 1):
        parent = ids[-1] if ids else None
        ids.append(_task(step_id, f"t{i}", parent_task_id=parent))
    return ids


# ── 1. Accepted parents ─────────────────────────────────────────────────────


class TestAcceptedParents:

    def test_parent_in_same_step(self, step):
        a, b = _task(step.id, "a"), _task(step.id, "b")
        child = task_graph.validate_and_set_parent(b, a, actor="carol")
        assert child.parent_task_id == a
        assert child.updated_by == "carol"

    def test_parent_in_earlier_phase(self, template, step):
        a = _task(step.id, "a")
        later_phase = template_service.create_phase(template.id, {"phase_name": "Later"})
        later_step = template_service.create_step(later_phase.id, {"step_name": "S"})
        b = _task(later_step.id, "b")

        assert task_graph.validate_and_set_parent(b, a).parent_task_id == a

    def test_detach(self, step):
        a = _task(step.id, "a")
        b = _task(step.id, "b", parent_task_id=a)
        assert task_graph.validate_and_set_parent(b, None).parent_task_id is None

    def test_step_order_outranks_task_order(self, phase, step):
        # parent has the higher task_order but sits in the earlier step
        later = template_service.create_step(phase.id, {"step_name": "Later"})
        child = _task(later.id, "child")
        parent = _task(step.id, "parent")
        assert task_graph.validate_and_set_parent(child, parent).parent_task_id == parent


# ── 2. Rejections ───────────────────────────────────────────────────────────


class TestRejectedParents:

    def test_self_reference(self, step):
        a = _task(step.id, "a")
        with pytest.raises(SelfReferenceError):
            task_graph.validate_and_set_parent(a, a)

    def test_missing_child(self):
        with pytest.raises(NotFoundError):
            task_graph.validate_and_set_parent(999, None)

    def test_missing_parent(self, step):
        a = _task(step.id, "a")
        with pytest.raises(NotFoundError):
            task_graph.validate_and_set_parent(a, 999)

    def test_archived_parent(self, step):
        a, b = _task(step.id, "a"), _task(step.id, "b")
        template_service.archive_task(a)
        with pytest.raises(NotFoundError):
            task_graph.validate_and_set_parent(b, a)

    def test_parent_under_archived_step(self, phase, step):
        a = _task(step.id, "a")
        other = template_service.create_step(phase.id, {"step_name": "Other"})
        b = _task(other.id, "b")
        template_service.archive_step(step.id)
        with pytest.raises(NotFoundError):
            task_graph.validate_and_set_parent(b, a)

    def test_cross_template(self, step):
        other_t = template_service.create_template({"template_name": "Other"})
        other_p = template_service.create_phase(other_t.id, {"phase_name": "P"})
        other_s = template_service.create_step(other_p.id, {"step_name": "S"})
        foreign = _task(other_s.id, "foreign")
        a = _task(step.id, "a")

        with pytest.raises(ValidationError) as exc:
            task_graph.validate_and_set_parent(a, foreign)
        assert exc.type is ValidationError

    def test_cycle(self, step):
        a = _task(step.id, "a")
        b = _task(step.id, "b", parent_task_id=a)
        c = _task(step.id, "c", parent_task_id=b)
        with pytest.raises(CycleError):
            task_graph.validate_and_set_parent(a, c)

    def test_out_of_order(self, step):
        a, b = _task(step.id, "a"), _task(step.id, "b")
        with pytest.raises(OutOfOrderError) as exc:
            task_graph.validate_and_set_parent(a, b)
        assert exc.value.details["parent_position"] > exc.value.details["task_position"]

    def test_parent_in_later_phase(self, template, step):
        a = _task(step.id, "a")
        later_phase = template_service.create_phase(template.id, {"phase_name": "Later"})
        later_step = template_service.create_step(later_phase.id, {"step_name": "S"})
        b = _task(later_step.id, "b")
        with pytest.raises(OutOfOrderError):
            task_graph.validate_and_set_parent(a, b)

    def test_rejection_leaves_parent_unchanged(self, step):
        a = _task(step.id, "a")
        b = _task(step.id, "b", parent_task_id=a)
        with pytest.raises(SelfReferenceError):
            task_graph.validate_and_set_parent(b, b)
        assert _db.session.get(StepTask, b).parent_task_id == a


# ── 3. Corrupted graphs ─────────────────────────────────────────────────────


class TestCorruptedGraph:

    def test_stored_cycle_reported(self, step):
        a, b, c = _task(step.id, "a"), _task(step.id, "b"), _task(step.id, "c")
        _db.session.get(StepTask, a).parent_task_id = b
        _db.session.get(StepTask, b).parent_task_id = a
        _db.session.commit()

        with pytest.raises(DataIntegrityError):
            task_graph.get_descendant_ids(a)
        with pytest.raises(DataIntegrityError):
            task_graph.validate_and_set_parent(a, c)

    def test_ancestor_walk_detects_cycle(self, step):
        a, b = _task(step.id, "a"), _task(step.id, "b")
        _db.session.get(StepTask, a).parent_task_id = b
        _db.session.get(StepTask, b).parent_task_id = a
        _db.session.commit()

        with pytest.raises(DataIntegrityError):
            task_graph.get_ancestor_ids(a)

    def test_traversal_bound(self, app, step, monkeypatch):
        ids = _chain(step.id, 4)
        monkeypatch.setitem(app.config, "TASK_GRAPH_MAX_NODES", 2)
        with pytest.raises(DataIntegrityError):
            task_graph.get_descendant_ids(ids[0])


# ── 4. Traversal helpers ────────────────────────────────────────────────────


class TestTraversal:

    def test_descendants_and_ancestors(self, step):
        t1, t2, t3 = _chain(step.id, 3)
        assert [t.id for t in task_graph.get_descendants(t1)] == [t2, t3]
        assert [t.id for t in task_graph.get_ancestors(t3)] == [t2, t1]

    def test_archived_descendants_skipped(self, step):
        t1, t2, t3 = _chain(step.id, 3)
        template_service.archive_task(t2)
        assert task_graph.get_descendant_ids(t1) == set()

    def test_available_parents_for_existing_task(self, step):
        t1, t2, t3 = _chain(step.id, 3)
        loose = _task(step.id, "loose")
        available = [t.id for t in task_graph.get_available_parents(task_id=t2)]
        assert available == [t1]
        available = [t.id for t in task_graph.get_available_parents(task_id=loose)]
        assert available == [t1, t2, t3]

    def test_available_parents_for_new_task_in_step(self, phase, step):
        later = template_service.create_step(phase.id, {"step_name": "Later"})
        a = _task(step.id, "a")
        b = _task(later.id, "b")
        assert [t.id for t in task_graph.get_available_parents(step_id=step.id)] == [a]
        assert [t.id for t in task_graph.get_available_parents(step_id=later.id)] == [a, b]

    def test_available_parents_requires_context(self):
        with pytest.raises(ValidationError):
            task_graph.get_available_parents()
