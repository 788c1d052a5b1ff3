"""
tests/test_copy_service.py — Copying tasks between steps and steps between phases.

Covers:
    1. Parent remapping: in-set parents follow the copy, external parents kept or unlinked
    2. Ordering: copies appended to the end of the target template, source order kept
    3. Role usage and checklist ids on copies
    4. Same-step copies, invalid targets, archived sources
    5. Cross-template copies
    6. Whole-step copy into a phase
"""

import logging

import pytest

from template_engine.core.exceptions import InvalidTargetError, NotFoundError, ValidationError
from template_engine.models import db as _db
from template_engine.models.template import PhaseStep, StepTask, TemplateRoleUsage
from template_engine.services import copy_service
from template_engine.services import template_service as svc


# ═════════════════════════════════════════════════════════════════════════════
# Fixtures
# ═════════════════════════════════════════════════════════════════════════════


@pytest.fixture()
def layout(template, phase):
    """
    Step "Prep" holds X.  Step "Work" holds c1, c2 (parent c1) and c3 (parent X).
    Step "Target" is empty.
    """
    prep = svc.create_step(phase.id, {"step_name": "Prep"})
    work = svc.create_step(phase.id, {"step_name": "Work"})
    target = svc.create_step(phase.id, {"step_name": "Target"})

    x = svc.create_task(prep.id, {"task_name": "X"})
    c1 = svc.create_task(work.id, {"task_name": "c1", "assigned_role_id": 5,
                                   "checklist_items": ["one"]})
    c2 = svc.create_task(work.id, {"task_name": "c2", "parent_task_id": c1.id})
    c3 = svc.create_task(work.id, {"task_name": "c3", "parent_task_id": x.id})
    return {
        "template_id": template.id,
        "prep": prep.id, "work": work.id, "target": target.id,
        "x": x.id, "c1": c1.id, "c2": c2.id, "c3": c3.id,
    }


def _get(task_id):
    return _db.session.get(StepTask, task_id)


def _other_template_step():
    t = svc.create_template({"template_name": "Elsewhere"})
    p = svc.create_phase(t.id, {"phase_name": "P"})
    return t, svc.create_step(p.id, {"step_name": "S"})


# ═════════════════════════════════════════════════════════════════════════════
# 1. Parent remapping
# ═════════════════════════════════════════════════════════════════════════════


class TestParentRemap:

    def test_external_parent_kept(self, layout):
        count, id_map = copy_service.copy_tasks_to_step(layout["work"], layout["target"])

        assert count == 3
        assert set(id_map) == {layout["c1"], layout["c2"], layout["c3"]}
        assert _get(id_map[layout["c1"]]).parent_task_id is None
        assert _get(id_map[layout["c2"]]).parent_task_id == id_map[layout["c1"]]
        assert _get(id_map[layout["c3"]]).parent_task_id == layout["x"]

    def test_external_parent_unlinked(self, layout):
        _, id_map = copy_service.copy_tasks_to_step(
            layout["work"], layout["target"], unlink_external_parents=True,
        )
        assert _get(id_map[layout["c2"]]).parent_task_id == id_map[layout["c1"]]
        assert _get(id_map[layout["c3"]]).parent_task_id is None

    def test_kept_parent_after_copy_is_logged(self, layout, caplog):
        # X moved after the target step: the kept link points forward
        svc.reorder_siblings("phase", _get(layout["x"]).step.phase_id,
                             [layout["work"], layout["target"], layout["prep"]])

        with caplog.at_level(logging.WARNING, logger="template_engine.services.copy_service"):
            _, id_map = copy_service.copy_tasks_to_step(layout["work"], layout["target"])

        assert _get(id_map[layout["c3"]]).parent_task_id == layout["x"]
        assert any("positioned after it" in r.getMessage() for r in caplog.records)

    def test_originals_untouched(self, layout):
        copy_service.copy_tasks_to_step(layout["work"], layout["target"])
        assert _get(layout["c2"]).parent_task_id == layout["c1"]
        assert _get(layout["c3"]).parent_task_id == layout["x"]
        assert _get(layout["c1"]).step_id == layout["work"]


# ═════════════════════════════════════════════════════════════════════════════
# 2. Ordering
# ═════════════════════════════════════════════════════════════════════════════


class TestCopyOrdering:

    def test_copies_appended_in_source_order(self, layout):
        _, id_map = copy_service.copy_tasks_to_step(layout["work"], layout["target"])
        orders = [_get(id_map[layout[k]]).task_order for k in ("c1", "c2", "c3")]
        assert orders == [5, 6, 7]

    def test_archived_source_tasks_skipped(self, layout):
        svc.archive_task(layout["c3"])
        count, id_map = copy_service.copy_tasks_to_step(layout["work"], layout["target"])
        assert count == 2
        assert layout["c3"] not in id_map

    def test_empty_step(self, layout):
        assert copy_service.copy_tasks_to_step(layout["target"], layout["prep"]) == (0, {})


# ═════════════════════════════════════════════════════════════════════════════
# 3. Role usage & checklists
# ═════════════════════════════════════════════════════════════════════════════


class TestCopyBookkeeping:

    def test_role_usage_incremented_per_copy(self, layout):
        copy_service.copy_tasks_to_step(layout["work"], layout["target"])
        row = TemplateRoleUsage.query.filter_by(template_id=layout["template_id"], role_id=5).one()
        assert row.role_usage_count == 2

    def test_checklist_ids_regenerated(self, layout):
        _, id_map = copy_service.copy_tasks_to_step(layout["work"], layout["target"])
        original = _get(layout["c1"]).checklist_items
        copied = _get(id_map[layout["c1"]]).checklist_items
        assert [i["text"] for i in copied] == ["one"]
        assert copied[0]["id"] != original[0]["id"]


# ═════════════════════════════════════════════════════════════════════════════
# 4. Guards
# ═════════════════════════════════════════════════════════════════════════════


class TestCopyGuards:

    def test_same_step_requires_suffix(self, layout):
        with pytest.raises(ValidationError):
            copy_service.copy_tasks_to_step(layout["work"], layout["work"])
        assert StepTask.query.count() == 4

    def test_same_step_with_suffix(self, layout):
        _, id_map = copy_service.copy_tasks_to_step(layout["work"], layout["work"], name_suffix="v2")
        assert _get(id_map[layout["c1"]]).task_name == "c1 (v2)"
        assert _get(id_map[layout["c1"]]).step_id == layout["work"]

    def test_archived_target(self, layout):
        svc.archive_step(layout["target"])
        with pytest.raises(InvalidTargetError):
            copy_service.copy_tasks_to_step(layout["work"], layout["target"])

    def test_missing_target(self, layout):
        with pytest.raises(InvalidTargetError) as exc:
            copy_service.copy_tasks_to_step(layout["work"], 9999)
        assert exc.value.code == "ERR_INVALID_TARGET"

    def test_archived_source(self, layout):
        svc.archive_step(layout["work"])
        with pytest.raises(NotFoundError) as exc:
            copy_service.copy_tasks_to_step(layout["work"], layout["target"])
        assert exc.type is NotFoundError


# ═════════════════════════════════════════════════════════════════════════════
# 5. Cross-template
# ═════════════════════════════════════════════════════════════════════════════


class TestCrossTemplate:

    def test_external_parents_severed(self, layout):
        other_t, other_s = _other_template_step()

        count, id_map = copy_service.copy_tasks_to_step(layout["work"], other_s.id)

        assert count == 3
        copies = {k: _get(id_map[layout[k]]) for k in ("c1", "c2", "c3")}
        assert {c.template_id for c in copies.values()} == {other_t.id}
        assert copies["c2"].parent_task_id == copies["c1"].id
        assert copies["c3"].parent_task_id is None
        assert [c.task_order for c in copies.values()] == [1, 2, 3]

    def test_role_usage_lands_on_target_template(self, layout):
        other_t, other_s = _other_template_step()
        copy_service.copy_tasks_to_step(layout["work"], other_s.id)
        row = TemplateRoleUsage.query.filter_by(template_id=other_t.id, role_id=5).one()
        assert row.role_usage_count == 1


# ═════════════════════════════════════════════════════════════════════════════
# 6. Step → phase
# ═════════════════════════════════════════════════════════════════════════════


class TestCopyStepToPhase:

    def test_default_name_and_append(self, layout, phase):
        new_step, id_map = copy_service.copy_step_to_phase(layout["work"], phase.id, actor="erin")

        assert new_step.step_name == "Work (Copy)"
        assert new_step.step_order == 4
        assert new_step.created_by == "erin"
        assert len(id_map) == 3
        assert {_get(i).step_id for i in id_map.values()} == {new_step.id}

    def test_custom_name_and_suffix(self, layout, phase):
        new_step, id_map = copy_service.copy_step_to_phase(
            layout["work"], phase.id, new_step_name="Rework", name_suffix="redo",
        )
        assert new_step.step_name == "Rework"
        assert _get(id_map[layout["c2"]]).task_name == "c2 (redo)"

    def test_into_other_template(self, layout):
        other_t, other_s = _other_template_step()
        new_step, id_map = copy_service.copy_step_to_phase(layout["work"], other_s.phase_id)

        assert new_step.phase.template_id == other_t.id
        assert _get(id_map[layout["c3"]]).parent_task_id is None

    def test_archived_phase_target(self, layout, template):
        other = svc.create_phase(template.id, {"phase_name": "Gone"})
        svc.archive_phase(other.id)
        with pytest.raises(InvalidTargetError):
            copy_service.copy_step_to_phase(layout["work"], other.id)
        assert PhaseStep.query.filter_by(phase_id=other.id).count() == 0
