"""
Template hierarchy blueprint.

REST API for templates, phases, steps, tasks and their ordering / copying.

Endpoint groups:
  Templates        GET/POST          /api/v1/templates
                   GET/PUT/DELETE    /api/v1/templates/<id>
                   POST              /api/v1/templates/<id>/restore
                   GET               /api/v1/templates/<id>/tree
                   GET               /api/v1/templates/<id>/complexity
                   POST              /api/v1/templates/<id>/duplicate
  Role usage       GET               /api/v1/templates/<id>/roles
                   POST              /api/v1/templates/<id>/roles/rebuild
                   GET               /api/v1/templates/roles/stats
  Phases           GET/POST          /api/v1/templates/<id>/phases
                   PUT               /api/v1/templates/<id>/phases/reorder
                   PUT/DELETE        /api/v1/phases/<id>     POST .../restore
  Steps            GET/POST          /api/v1/phases/<id>/steps
                   PUT               /api/v1/phases/<id>/steps/reorder
                   PUT/DELETE        /api/v1/steps/<id>      POST .../restore
                   POST              /api/v1/steps/<id>/copy-tasks
                   POST              /api/v1/steps/<id>/copy-to-phase
  Tasks            GET               /api/v1/templates/<id>/tasks
                   PUT               /api/v1/templates/<id>/tasks/reorder
                   GET/POST          /api/v1/steps/<id>/tasks
                   PUT               /api/v1/steps/<id>/tasks/reorder
                   GET/PUT/DELETE    /api/v1/tasks/<id>      POST .../restore
                   PUT               /api/v1/tasks/<id>/parent
                   GET               /api/v1/tasks/<id>/descendants | ancestors | available-parents
  Checklist        POST              /api/v1/tasks/<id>/checklist
                   PUT/DELETE        /api/v1/tasks/<id>/checklist/<item_id>
                   PUT               /api/v1/tasks/<id>/checklist/reorder

The acting user is read from the X-User header (default "system").
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request
from werkzeug.exceptions import HTTPException

from template_engine.blueprints import paginate_query
from template_engine.core.exceptions import (
    ConflictError,
    DataIntegrityError,
    NotFoundError,
    ValidationError,
)
from template_engine.services import (
    copy_service,
    duplication_service,
    role_usage_service,
    task_graph,
    template_service,
)
from template_engine.utils.errors import E, api_error

logger = logging.getLogger(__name__)

template_bp = Blueprint("templates", __name__, url_prefix="/api/v1")


@template_bp.before_request
def _resolve_actor():
    g.actor = (request.headers.get("X-User") or "system").strip()[:255] or "system"


# ── Error handlers ────────────────────────────────────────────────────────────


@template_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(error.code, str(error), status=404)


@template_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(error.code, str(error), status=422, details=error.details)


@template_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(error.code, str(error), status=409, details={"field": error.field})


@template_bp.errorhandler(DataIntegrityError)
def _handle_integrity(error: DataIntegrityError):
    logger.error("Data integrity error endpoint=%s: %s", request.endpoint, error)
    return api_error(error.code, str(error), status=500, details=error.details)


@template_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in template_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Request helpers ───────────────────────────────────────────────────────────


def _body():
    """Parsed JSON object body, or a 400 error tuple."""
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_TYPE, "Request body must be a JSON object")
    return data, None


def _id_list(data, key):
    """Required list of ints from *data*, or a 400 error tuple."""
    if key not in data:
        return None, api_error(E.VALIDATION_REQUIRED, f"{key} is required")
    value = data[key]
    if not isinstance(value, list) or any(isinstance(v, bool) or not isinstance(v, int) for v in value):
        return None, api_error(E.VALIDATION_TYPE, f"{key} must be a list of integers")
    return value, None


def _check_id_field(data, key, nullable=True):
    """400 error tuple when *key* is present and not an int (or null), else None."""
    if key not in data:
        return None
    value = data[key]
    if value is None and nullable:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        suffix = " or null" if nullable else ""
        return api_error(E.VALIDATION_TYPE, f"{key} must be an integer{suffix}")
    return None


def _optional_bool(data, key):
    value = data.get(key, False)
    if not isinstance(value, bool):
        return None, api_error(E.VALIDATION_TYPE, f"{key} must be a boolean")
    return value, None


def _include_archived() -> bool:
    return request.args.get("include_archived", "false").lower() in ("1", "true", "yes")


# ═════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════


@template_bp.route("/templates", methods=["GET"])
def list_templates():
    """List templates.

    Query params: search, include_archived, limit, offset
    """
    query = template_service.list_templates(
        search=request.args.get("search"), include_archived=_include_archived(),
    )
    items, total = paginate_query(query)
    return jsonify({"items": [t.to_dict() for t in items], "total": total}), 200


@template_bp.route("/templates", methods=["POST"])
def create_template():
    data, err = _body()
    if err:
        return err
    if not data.get("template_name"):
        return api_error(E.VALIDATION_REQUIRED, "template_name is required")
    template = template_service.create_template(data, actor=g.actor)
    return jsonify(template.to_dict()), 201


@template_bp.route("/templates/<int:template_id>", methods=["GET"])
def get_template(template_id):
    template = template_service.get_template(template_id, include_archived=_include_archived())
    return jsonify(template.to_dict()), 200


@template_bp.route("/templates/<int:template_id>", methods=["PUT"])
def update_template(template_id):
    data, err = _body()
    if err:
        return err
    template = template_service.update_template(template_id, data, actor=g.actor)
    return jsonify(template.to_dict()), 200


@template_bp.route("/templates/<int:template_id>", methods=["DELETE"])
def archive_template(template_id):
    template = template_service.archive_template(template_id, actor=g.actor)
    return jsonify(template.to_dict()), 200


@template_bp.route("/templates/<int:template_id>/restore", methods=["POST"])
def restore_template(template_id):
    template = template_service.restore_template(template_id, actor=g.actor)
    return jsonify(template.to_dict()), 200


@template_bp.route("/templates/<int:template_id>/tree", methods=["GET"])
def get_template_tree(template_id):
    return jsonify(template_service.get_template_tree(template_id)), 200


@template_bp.route("/templates/<int:template_id>/complexity", methods=["GET"])
def get_complexity(template_id):
    return jsonify(duplication_service.get_complexity(template_id)), 200


@template_bp.route("/templates/<int:template_id>/duplicate", methods=["POST"])
def duplicate_template(template_id):
    """Deep-copy a template.

    Body: { template_name }
    Returns: the new template (201).
    """
    data, err = _body()
    if err:
        return err
    if not data.get("template_name"):
        return api_error(E.VALIDATION_REQUIRED, "template_name is required")
    template = duplication_service.duplicate_template(template_id, data["template_name"], actor=g.actor)
    return jsonify(template.to_dict()), 201


# ── Role usage ────────────────────────────────────────────────────────────────


@template_bp.route("/templates/<int:template_id>/roles", methods=["GET"])
def list_template_roles(template_id):
    return jsonify({"items": role_usage_service.list_template_roles(template_id)}), 200


@template_bp.route("/templates/<int:template_id>/roles/rebuild", methods=["POST"])
def rebuild_template_roles(template_id):
    template_service.get_template(template_id)
    count = role_usage_service.rebuild_template_roles(template_id)
    return jsonify({"template_id": template_id, "roles": count}), 200


@template_bp.route("/templates/roles/stats", methods=["GET"])
def role_usage_stats():
    return jsonify(role_usage_service.get_role_usage_stats()), 200


# ═════════════════════════════════════════════════════════════════════════
# Phases
# ═════════════════════════════════════════════════════════════════════════


@template_bp.route("/templates/<int:template_id>/phases", methods=["GET"])
def list_phases(template_id):
    phases = template_service.list_phases(template_id, include_archived=_include_archived())
    return jsonify([p.to_dict() for p in phases]), 200


@template_bp.route("/templates/<int:template_id>/phases", methods=["POST"])
def create_phase(template_id):
    data, err = _body()
    if err:
        return err
    if not data.get("phase_name"):
        return api_error(E.VALIDATION_REQUIRED, "phase_name is required")
    phase = template_service.create_phase(template_id, data, actor=g.actor)
    return jsonify(phase.to_dict()), 201


@template_bp.route("/templates/<int:template_id>/phases/reorder", methods=["PUT"])
def reorder_phases(template_id):
    data, err = _body()
    if err:
        return err
    ordered_ids, err = _id_list(data, "ordered_ids")
    if err:
        return err
    phases = template_service.reorder_siblings("template", template_id, ordered_ids, actor=g.actor)
    return jsonify([p.to_dict() for p in phases]), 200


@template_bp.route("/phases/<int:phase_id>", methods=["PUT"])
def update_phase(phase_id):
    data, err = _body()
    if err:
        return err
    phase = template_service.update_phase(phase_id, data, actor=g.actor)
    return jsonify(phase.to_dict()), 200


@template_bp.route("/phases/<int:phase_id>", methods=["DELETE"])
def archive_phase(phase_id):
    phase = template_service.archive_phase(phase_id, actor=g.actor)
    return jsonify(phase.to_dict()), 200


@template_bp.route("/phases/<int:phase_id>/restore", methods=["POST"])
def restore_phase(phase_id):
    phase = template_service.restore_phase(phase_id, actor=g.actor)
    return jsonify(phase.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Steps
# ═════════════════════════════════════════════════════════════════════════


@template_bp.route("/phases/<int:phase_id>/steps", methods=["GET"])
def list_steps(phase_id):
    steps = template_service.list_steps(phase_id, include_archived=_include_archived())
    return jsonify([s.to_dict() for s in steps]), 200


@template_bp.route("/phases/<int:phase_id>/steps", methods=["POST"])
def create_step(phase_id):
    data, err = _body()
    if err:
        return err
    if not data.get("step_name"):
        return api_error(E.VALIDATION_REQUIRED, "step_name is required")
    step = template_service.create_step(phase_id, data, actor=g.actor)
    return jsonify(step.to_dict()), 201


@template_bp.route("/phases/<int:phase_id>/steps/reorder", methods=["PUT"])
def reorder_steps(phase_id):
    data, err = _body()
    if err:
        return err
    ordered_ids, err = _id_list(data, "ordered_ids")
    if err:
        return err
    steps = template_service.reorder_siblings("phase", phase_id, ordered_ids, actor=g.actor)
    return jsonify([s.to_dict() for s in steps]), 200


@template_bp.route("/steps/<int:step_id>", methods=["PUT"])
def update_step(step_id):
    data, err = _body()
    if err:
        return err
    step = template_service.update_step(step_id, data, actor=g.actor)
    return jsonify(step.to_dict()), 200


@template_bp.route("/steps/<int:step_id>", methods=["DELETE"])
def archive_step(step_id):
    step = template_service.archive_step(step_id, actor=g.actor)
    return jsonify(step.to_dict()), 200


@template_bp.route("/steps/<int:step_id>/restore", methods=["POST"])
def restore_step(step_id):
    step = template_service.restore_step(step_id, actor=g.actor)
    return jsonify(step.to_dict()), 200


@template_bp.route("/steps/<int:step_id>/copy-tasks", methods=["POST"])
def copy_tasks(step_id):
    """Copy the step's tasks into another (or the same) step.

    Body: { target_step_id, name_suffix?, unlink_external_parents? }
    Returns: { copied_count, id_mapping }
    """
    data, err = _body()
    if err:
        return err
    target_step_id = data.get("target_step_id")
    if isinstance(target_step_id, bool) or not isinstance(target_step_id, int):
        return api_error(E.VALIDATION_REQUIRED, "target_step_id is required")
    unlink, err = _optional_bool(data, "unlink_external_parents")
    if err:
        return err
    copied, id_map = copy_service.copy_tasks_to_step(
        step_id, target_step_id,
        name_suffix=data.get("name_suffix"),
        unlink_external_parents=unlink,
        actor=g.actor,
    )
    return jsonify({
        "copied_count": copied,
        "id_mapping": {str(k): v for k, v in id_map.items()},
    }), 201


@template_bp.route("/steps/<int:step_id>/copy-to-phase", methods=["POST"])
def copy_step_to_phase(step_id):
    """Copy the step with all its tasks to the end of a phase.

    Body: { target_phase_id, new_step_name?, name_suffix?, unlink_external_parents? }
    Returns: { step, copied_count, id_mapping }
    """
    data, err = _body()
    if err:
        return err
    target_phase_id = data.get("target_phase_id")
    if isinstance(target_phase_id, bool) or not isinstance(target_phase_id, int):
        return api_error(E.VALIDATION_REQUIRED, "target_phase_id is required")
    unlink, err = _optional_bool(data, "unlink_external_parents")
    if err:
        return err
    new_step, id_map = copy_service.copy_step_to_phase(
        step_id, target_phase_id,
        new_step_name=data.get("new_step_name"),
        name_suffix=data.get("name_suffix"),
        unlink_external_parents=unlink,
        actor=g.actor,
    )
    return jsonify({
        "step": new_step.to_dict(),
        "copied_count": len(id_map),
        "id_mapping": {str(k): v for k, v in id_map.items()},
    }), 201


# ═════════════════════════════════════════════════════════════════════════
# Tasks
# ═════════════════════════════════════════════════════════════════════════


@template_bp.route("/templates/<int:template_id>/tasks", methods=["GET"])
def list_template_tasks(template_id):
    tasks = template_service.list_template_tasks(template_id)
    return jsonify([t.to_dict(include_position=True) for t in tasks]), 200


@template_bp.route("/templates/<int:template_id>/tasks/reorder", methods=["PUT"])
def reorder_template_tasks(template_id):
    data, err = _body()
    if err:
        return err
    ordered_ids, err = _id_list(data, "ordered_ids")
    if err:
        return err
    tasks = template_service.reorder_tasks_globally(template_id, ordered_ids, actor=g.actor)
    return jsonify([t.to_dict() for t in tasks]), 200


@template_bp.route("/steps/<int:step_id>/tasks", methods=["GET"])
def list_step_tasks(step_id):
    tasks = template_service.list_step_tasks(step_id, include_archived=_include_archived())
    return jsonify([t.to_dict() for t in tasks]), 200


@template_bp.route("/steps/<int:step_id>/tasks", methods=["POST"])
def create_task(step_id):
    data, err = _body()
    if err:
        return err
    if not data.get("task_name"):
        return api_error(E.VALIDATION_REQUIRED, "task_name is required")
    err = _check_id_field(data, "parent_task_id")
    if err:
        return err
    task = template_service.create_task(step_id, data, actor=g.actor)
    return jsonify(task.to_dict()), 201


@template_bp.route("/steps/<int:step_id>/tasks/reorder", methods=["PUT"])
def reorder_step_tasks(step_id):
    data, err = _body()
    if err:
        return err
    ordered_ids, err = _id_list(data, "ordered_ids")
    if err:
        return err
    tasks = template_service.reorder_siblings("step", step_id, ordered_ids, actor=g.actor)
    return jsonify([t.to_dict() for t in tasks]), 200


@template_bp.route("/tasks/<int:task_id>", methods=["GET"])
def get_task(task_id):
    task = template_service.get_task(task_id)
    return jsonify(task.to_dict(include_position=True)), 200


@template_bp.route("/tasks/<int:task_id>", methods=["PUT"])
def update_task(task_id):
    data, err = _body()
    if err:
        return err
    err = _check_id_field(data, "parent_task_id") or _check_id_field(data, "step_id", nullable=False)
    if err:
        return err
    task = template_service.update_task(task_id, data, actor=g.actor)
    return jsonify(task.to_dict()), 200


@template_bp.route("/tasks/<int:task_id>", methods=["DELETE"])
def archive_task(task_id):
    task = template_service.archive_task(task_id, actor=g.actor)
    return jsonify(task.to_dict()), 200


@template_bp.route("/tasks/<int:task_id>/restore", methods=["POST"])
def restore_task(task_id):
    task = template_service.restore_task(task_id, actor=g.actor)
    return jsonify(task.to_dict()), 200


@template_bp.route("/tasks/<int:task_id>/parent", methods=["PUT"])
def set_task_parent(task_id):
    """Validate and set (or clear) the parent task.

    Body: { parent_task_id: int | null }
    """
    data, err = _body()
    if err:
        return err
    if "parent_task_id" not in data:
        return api_error(E.VALIDATION_REQUIRED, "parent_task_id is required (null to detach)")
    err = _check_id_field(data, "parent_task_id")
    if err:
        return err
    task = task_graph.validate_and_set_parent(task_id, data["parent_task_id"], actor=g.actor)
    return jsonify(task.to_dict()), 200


@template_bp.route("/tasks/<int:task_id>/descendants", methods=["GET"])
def get_descendants(task_id):
    return jsonify([t.to_dict() for t in task_graph.get_descendants(task_id)]), 200


@template_bp.route("/tasks/<int:task_id>/ancestors", methods=["GET"])
def get_ancestors(task_id):
    return jsonify([t.to_dict() for t in task_graph.get_ancestors(task_id)]), 200


@template_bp.route("/tasks/<int:task_id>/available-parents", methods=["GET"])
def get_available_parents(task_id):
    tasks = task_graph.get_available_parents(task_id=task_id)
    return jsonify([t.to_dict(include_position=True) for t in tasks]), 200


@template_bp.route("/steps/<int:step_id>/available-parents", methods=["GET"])
def get_available_parents_for_step(step_id):
    tasks = task_graph.get_available_parents(step_id=step_id)
    return jsonify([t.to_dict(include_position=True) for t in tasks]), 200


# ── Checklist ─────────────────────────────────────────────────────────────────


@template_bp.route("/tasks/<int:task_id>/checklist", methods=["POST"])
def add_checklist_item(task_id):
    data, err = _body()
    if err:
        return err
    if not data.get("text"):
        return api_error(E.VALIDATION_REQUIRED, "text is required")
    item = template_service.add_checklist_item(task_id, data["text"], actor=g.actor)
    return jsonify(item), 201


@template_bp.route("/tasks/<int:task_id>/checklist/reorder", methods=["PUT"])
def reorder_checklist(task_id):
    data, err = _body()
    if err:
        return err
    item_ids = data.get("item_ids")
    if not isinstance(item_ids, list):
        return api_error(E.VALIDATION_REQUIRED, "item_ids is required")
    items = template_service.reorder_checklist(task_id, item_ids, actor=g.actor)
    return jsonify(items), 200


@template_bp.route("/tasks/<int:task_id>/checklist/<item_id>", methods=["PUT"])
def update_checklist_item(task_id, item_id):
    data, err = _body()
    if err:
        return err
    if not data.get("text"):
        return api_error(E.VALIDATION_REQUIRED, "text is required")
    item = template_service.update_checklist_item(task_id, item_id, data["text"], actor=g.actor)
    return jsonify(item), 200


@template_bp.route("/tasks/<int:task_id>/checklist/<item_id>", methods=["DELETE"])
def remove_checklist_item(task_id, item_id):
    items = template_service.remove_checklist_item(task_id, item_id, actor=g.actor)
    return jsonify(items), 200
