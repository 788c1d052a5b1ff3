"""
tests/test_template_service.py — Template hierarchy service layer.

Covers:
    1. Template CRUD, unique active names, archive/restore
    2. Phase and step append ordering, archive gaps, restore at the end
    3. Task creation: global order, validation, role usage, order fields rejected
    4. Task updates and step moves
    5. Task archive/restore and parent serialization
    6. Checklist items: dense ordering, id handling
    7. Tree read and live node counts
"""

import pytest

from template_engine.core.exceptions import (
    ConflictError,
    NotFoundError,
    OutOfOrderError,
    ValidationError,
)
from template_engine.models import db as _db
from template_engine.models.template import StepTask, TemplateRoleUsage
from template_engine.services import template_service as svc


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════


def _make_task(step_id, name="Task", **fields):
    return svc.create_task(step_id, {"task_name": name, **fields})


def _usage(template_id, role_id):
    row = TemplateRoleUsage.query.filter_by(template_id=template_id, role_id=role_id).first()
    return row.role_usage_count if row else 0


# ═════════════════════════════════════════════════════════════════════════════
# 1. Templates
# ═════════════════════════════════════════════════════════════════════════════


class TestTemplates:

    def test_create_and_get(self):
        t = svc.create_template({"template_name": "  Onboarding  ", "description": "HR flow"}, actor="alice")
        fetched = svc.get_template(t.id)
        assert fetched.template_name == "Onboarding"
        assert fetched.created_by == "alice"

    @pytest.mark.parametrize("name", [None, "", "   ", "x" * 201, 42])
    def test_invalid_name_rejected(self, name):
        with pytest.raises(ValidationError):
            svc.create_template({"template_name": name})

    def test_description_too_long(self):
        with pytest.raises(ValidationError):
            svc.create_template({"template_name": "T", "description": "d" * 1001})

    def test_duplicate_active_name_conflicts(self, template):
        with pytest.raises(ConflictError):
            svc.create_template({"template_name": "Test Template"})

    def test_archived_name_can_be_reused(self, template):
        svc.archive_template(template.id)
        again = svc.create_template({"template_name": "Test Template"})
        assert again.id != template.id

    def test_restore_conflicts_when_name_taken(self, template):
        svc.archive_template(template.id)
        svc.create_template({"template_name": "Test Template"})
        with pytest.raises(ConflictError):
            svc.restore_template(template.id)

    def test_archived_template_hidden(self, template):
        svc.archive_template(template.id)
        with pytest.raises(NotFoundError):
            svc.get_template(template.id)
        assert svc.get_template(template.id, include_archived=True).is_archived is True
        assert svc.list_templates().count() == 0
        assert svc.list_templates(include_archived=True).count() == 1

    def test_search(self):
        svc.create_template({"template_name": "Film Shoot"})
        svc.create_template({"template_name": "Office Move"})
        names = [t.template_name for t in svc.list_templates(search="film")]
        assert names == ["Film Shoot"]

    def test_update_rename(self, template):
        svc.update_template(template.id, {"template_name": "Renamed"}, actor="bob")
        t = svc.get_template(template.id)
        assert t.template_name == "Renamed"
        assert t.updated_by == "bob"


# ═════════════════════════════════════════════════════════════════════════════
# 2. Phases & steps
# ═════════════════════════════════════════════════════════════════════════════


class TestPhasesAndSteps:

    def test_phases_append(self, template):
        orders = [svc.create_phase(template.id, {"phase_name": f"P{i}"}).phase_order for i in range(3)]
        assert orders == [1, 2, 3]

    def test_order_fields_rejected_on_create(self, template):
        with pytest.raises(ValidationError) as exc:
            svc.create_phase(template.id, {"phase_name": "P", "phase_order": 5})
        assert "phase_order" in str(exc.value.details)

    def test_order_fields_rejected_on_update(self, step):
        with pytest.raises(ValidationError):
            svc.update_step(step.id, {"step_order": 3})

    def test_archive_leaves_gap_and_new_phase_appends(self, template):
        p1 = svc.create_phase(template.id, {"phase_name": "P1"})
        p2 = svc.create_phase(template.id, {"phase_name": "P2"})
        p3 = svc.create_phase(template.id, {"phase_name": "P3"})

        svc.archive_phase(p2.id)
        p4 = svc.create_phase(template.id, {"phase_name": "P4"})

        assert [p.phase_order for p in svc.list_phases(template.id)] == [1, 3, 4]
        assert [p.id for p in svc.list_phases(template.id)] == [p1.id, p3.id, p4.id]

    def test_restore_appends_at_end(self, template):
        p1 = svc.create_phase(template.id, {"phase_name": "P1"})
        svc.create_phase(template.id, {"phase_name": "P2"})
        svc.archive_phase(p1.id)

        restored = svc.restore_phase(p1.id)

        assert restored.phase_order == 3
        assert restored.is_archived is False

    def test_restore_phase_of_archived_template(self, template, phase):
        svc.archive_phase(phase.id)
        svc.archive_template(template.id)
        with pytest.raises(NotFoundError):
            svc.restore_phase(phase.id)

    def test_step_under_archived_phase_not_found(self, phase, step):
        svc.archive_phase(phase.id)
        with pytest.raises(NotFoundError):
            svc.get_live_step(step.id)
        with pytest.raises(NotFoundError):
            svc.create_step(phase.id, {"step_name": "S2"})

    def test_restore_step_requires_live_phase(self, phase, step):
        svc.archive_step(step.id)
        svc.archive_phase(phase.id)
        with pytest.raises(NotFoundError):
            svc.restore_step(step.id)

    def test_steps_append_per_phase(self, template, phase):
        other = svc.create_phase(template.id, {"phase_name": "Other"})
        a = svc.create_step(phase.id, {"step_name": "A"})
        b = svc.create_step(other.id, {"step_name": "B"})
        assert (a.step_order, b.step_order) == (1, 1)


# ═════════════════════════════════════════════════════════════════════════════
# 3. Task creation
# ═════════════════════════════════════════════════════════════════════════════


class TestTaskCreate:

    def test_task_order_is_template_wide(self, template, phase):
        s1 = svc.create_step(phase.id, {"step_name": "S1"})
        s2 = svc.create_step(phase.id, {"step_name": "S2"})
        orders = [
            _make_task(s1.id, "a").task_order,
            _make_task(s2.id, "b").task_order,
            _make_task(s1.id, "c").task_order,
        ]
        assert orders == [1, 2, 3]

    def test_fields_validated(self, step):
        with pytest.raises(ValidationError):
            _make_task(step.id, estimated_days=-1)
        with pytest.raises(ValidationError):
            _make_task(step.id, category="improvise")
        with pytest.raises(ValidationError):
            _make_task(step.id, task_order=9)

    def test_category_and_days_stored(self, step):
        task = _make_task(step.id, category="monitor", estimated_days=0)
        assert (task.category, task.estimated_days) == ("monitor", 0)

    def test_role_usage_incremented(self, template, step):
        _make_task(step.id, "a", assigned_role_id=7)
        _make_task(step.id, "b", assigned_role_id=7)
        assert _usage(template.id, 7) == 2

    def test_invalid_parent_rolls_back_task(self, step):
        with pytest.raises(NotFoundError):
            _make_task(step.id, parent_task_id=999)
        assert StepTask.query.count() == 0

    def test_create_with_parent(self, step):
        parent = _make_task(step.id, "parent")
        child = _make_task(step.id, "child", parent_task_id=parent.id)
        assert child.parent_task_id == parent.id


# ═════════════════════════════════════════════════════════════════════════════
# 4. Task updates
# ═════════════════════════════════════════════════════════════════════════════


class TestTaskUpdate:

    def test_role_change_moves_usage(self, template, step):
        task = _make_task(step.id, assigned_role_id=1)
        svc.update_task(task.id, {"assigned_role_id": 2})
        assert (_usage(template.id, 1), _usage(template.id, 2)) == (0, 1)

    def test_move_to_step_keeps_global_order(self, phase, step):
        other = svc.create_step(phase.id, {"step_name": "Other"})
        task = _make_task(step.id)
        moved = svc.update_task(task.id, {"step_id": other.id})
        assert moved.step_id == other.id
        assert moved.task_order == 1

    def test_move_to_other_template_rejected(self, step):
        other_t = svc.create_template({"template_name": "Other"})
        other_p = svc.create_phase(other_t.id, {"phase_name": "P"})
        other_s = svc.create_step(other_p.id, {"step_name": "S"})
        task = _make_task(step.id)
        with pytest.raises(ValidationError):
            svc.update_task(task.id, {"step_id": other_s.id})

    def test_move_parent_after_child_rejected(self, phase, step):
        later = svc.create_step(phase.id, {"step_name": "Later"})
        parent = _make_task(step.id, "parent")
        _make_task(step.id, "child", parent_task_id=parent.id)

        with pytest.raises(OutOfOrderError):
            svc.update_task(parent.id, {"step_id": later.id})
        assert _db.session.get(StepTask, parent.id).step_id == step.id


# ═════════════════════════════════════════════════════════════════════════════
# 5. Task archive / restore
# ═════════════════════════════════════════════════════════════════════════════


class TestTaskArchive:

    def test_archive_decrements_and_restore_appends(self, template, step):
        a = _make_task(step.id, "a", assigned_role_id=3)
        _make_task(step.id, "b")

        svc.archive_task(a.id)
        assert _usage(template.id, 3) == 0

        restored = svc.restore_task(a.id)
        assert restored.task_order == 3
        assert _usage(template.id, 3) == 1

    def test_restore_under_archived_step(self, step):
        task = _make_task(step.id)
        svc.archive_task(task.id)
        svc.archive_step(step.id)
        with pytest.raises(NotFoundError):
            svc.restore_task(task.id)

    def test_archived_parent_still_serialized(self, step):
        parent = _make_task(step.id, "Parent")
        child = _make_task(step.id, "Child", parent_task_id=parent.id)
        svc.archive_task(parent.id)

        data = _db.session.get(StepTask, child.id).to_dict()

        assert data["parent_task_id"] == parent.id
        assert data["parent_task_name"] == "Parent"
        assert data["parent_is_archived"] is True

    def test_unresolvable_parent_serialized_as_unknown(self):
        orphan = StepTask(task_name="Orphan", parent_task_id=424242)
        data = orphan.to_dict()
        assert data["parent_task_name"] == "Unknown task"
        assert data["parent_is_archived"] is None

    def test_replace_checklist_via_update(self, step):
        task = _make_task(step.id, checklist_items=["a", "b", "c"])
        updated = svc.update_task(task.id, {"checklist_items": [{"text": "only"}]})
        assert [(i["text"], i["order"]) for i in updated.checklist_items] == [("only", 1)]

    def test_archived_task_cannot_be_updated(self, step):
        task = _make_task(step.id)
        svc.archive_task(task.id)
        with pytest.raises(NotFoundError):
            svc.update_task(task.id, {"task_name": "x"})


# ═════════════════════════════════════════════════════════════════════════════
# 6. Checklist items
# ═════════════════════════════════════════════════════════════════════════════


class TestChecklist:

    def test_normalize_assigns_ids_and_dense_order(self):
        items = svc.normalize_checklist([
            {"text": "second", "order": 20},
            "plain",
        ])
        assert [i["order"] for i in items] == [1, 2]
        assert all(i["id"] for i in items)

    def test_normalize_sorts_by_order_when_complete(self):
        items = svc.normalize_checklist([
            {"id": "b", "text": "B", "order": 5},
            {"id": "a", "text": "A", "order": 1},
        ])
        assert [(i["id"], i["order"]) for i in items] == [("a", 1), ("b", 2)]

    def test_normalize_rejects_duplicate_ids(self):
        with pytest.raises(ValidationError):
            svc.normalize_checklist([{"id": "x", "text": "1"}, {"id": "x", "text": "2"}])

    def test_regenerate_ids(self):
        items = svc.normalize_checklist([{"id": "x", "text": "1"}], regenerate_ids=True)
        assert items[0]["id"] != "x"

    def test_add_remove_keeps_order_dense(self, step):
        task = _make_task(step.id)
        first = svc.add_checklist_item(task.id, "one")
        svc.add_checklist_item(task.id, "two")
        svc.add_checklist_item(task.id, "three")

        items = svc.remove_checklist_item(task.id, first["id"])

        assert [(i["text"], i["order"]) for i in items] == [("two", 1), ("three", 2)]

    def test_update_and_reorder(self, step):
        task = _make_task(step.id, checklist_items=["a", "b"])
        ids = [i["id"] for i in task.checklist_items]

        svc.update_checklist_item(task.id, ids[0], "A!")
        items = svc.reorder_checklist(task.id, [ids[1], ids[0]])

        assert [(i["text"], i["order"]) for i in items] == [("b", 1), ("A!", 2)]

    def test_reorder_requires_every_item(self, step):
        task = _make_task(step.id, checklist_items=["a", "b"])
        with pytest.raises(ValidationError):
            svc.reorder_checklist(task.id, [task.checklist_items[0]["id"]])

    def test_unknown_item(self, step):
        task = _make_task(step.id)
        with pytest.raises(NotFoundError):
            svc.remove_checklist_item(task.id, "nope")


# ═════════════════════════════════════════════════════════════════════════════
# 7. Tree & counts
# ═════════════════════════════════════════════════════════════════════════════


class TestTreeAndCounts:

    def test_tree_excludes_archived(self, template, phase, step):
        keep = _make_task(step.id, "keep")
        gone = _make_task(step.id, "gone")
        svc.archive_task(gone.id)

        tree = svc.get_template_tree(template.id)

        tasks = tree["phases"][0]["steps"][0]["tasks"]
        assert [t["id"] for t in tasks] == [keep.id]

    def test_counts_ignore_tasks_under_archived_step(self, template, phase, step):
        other = svc.create_step(phase.id, {"step_name": "Other"})
        parent = _make_task(step.id, "p")
        _make_task(step.id, "c", parent_task_id=parent.id)
        _make_task(other.id, "o")
        svc.archive_step(other.id)

        counts = svc.count_live_template_nodes(template.id)

        assert counts == {
            "phase_count": 1,
            "step_count": 1,
            "task_count": 2,
            "parented_task_count": 1,
        }
