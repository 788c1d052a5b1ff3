"""
Sample "Feature Film" template used by ``flask seed-sample-template``.

Parents are referenced by task name inside the sample and resolved after
all tasks exist.
"""

import logging

from template_engine.models.template import ProjectTemplate
from template_engine.services import template_service

logger = logging.getLogger(__name__)

SAMPLE_TEMPLATE_NAME = "Feature Film"

SAMPLE_TEMPLATE = {
    "template_name": SAMPLE_TEMPLATE_NAME,
    "description": "Feature film production from casting through final delivery.",
    "phases": [
        {
            "phase_name": "Pre-Production",
            "steps": [
                {
                    "step_name": "Casting",
                    "tasks": [
                        {"task_name": "Audition Actors", "category": "execute", "estimated_days": 10,
                         "checklist_items": ["Book audition space", "Publish casting call"]},
                        {"task_name": "Callback Selections", "category": "coordinate", "estimated_days": 3,
                         "parent": "Audition Actors"},
                    ],
                },
                {
                    "step_name": "Budget & Schedule",
                    "tasks": [
                        {"task_name": "Draft Shooting Schedule", "category": "execute", "estimated_days": 5},
                        {"task_name": "Lock Budget", "category": "coordinate", "estimated_days": 2,
                         "parent": "Draft Shooting Schedule"},
                    ],
                },
            ],
        },
        {
            "phase_name": "Production",
            "steps": [
                {
                    "step_name": "Principal Photography",
                    "tasks": [
                        {"task_name": "Daily Call Sheets", "category": "coordinate", "estimated_days": 30,
                         "parent": "Lock Budget"},
                        {"task_name": "Dailies Review", "category": "monitor", "estimated_days": 30,
                         "parent": "Daily Call Sheets"},
                    ],
                },
            ],
        },
        {
            "phase_name": "Post-Production",
            "steps": [
                {
                    "step_name": "Editing",
                    "tasks": [
                        {"task_name": "Assemble Cut", "category": "execute", "estimated_days": 20,
                         "parent": "Dailies Review"},
                        {"task_name": "Picture Lock", "category": "coordinate", "estimated_days": 5,
                         "parent": "Assemble Cut",
                         "checklist_items": ["Director sign-off", "Producer sign-off"]},
                    ],
                },
            ],
        },
    ],
}


def seed_sample_template(actor="system"):
    """Create the sample template unless an active one with the same name exists.

    Returns:
        The template, or None when it already existed.
    """
    existing = ProjectTemplate.query_active().filter_by(template_name=SAMPLE_TEMPLATE_NAME).first()
    if existing is not None:
        logger.info("Sample template already present id=%s", existing.id)
        return None

    template = template_service.create_template(SAMPLE_TEMPLATE, actor=actor)
    task_ids = {}
    for phase_data in SAMPLE_TEMPLATE["phases"]:
        phase = template_service.create_phase(template.id, phase_data, actor=actor)
        for step_data in phase_data["steps"]:
            step = template_service.create_step(phase.id, step_data, actor=actor)
            for task_data in step_data["tasks"]:
                payload = {k: v for k, v in task_data.items() if k != "parent"}
                if "parent" in task_data:
                    payload["parent_task_id"] = task_ids[task_data["parent"]]
                task = template_service.create_task(step.id, payload, actor=actor)
                task_ids[task.task_name] = task.id

    logger.info("Seeded sample template id=%s with %d tasks", template.id, len(task_ids),
                extra={"template_id": template.id})
    return template
