"""Central lifecycle status reference used by help/status reporting."""

from __future__ import annotations

from typing import Any

STATUS_REFERENCE_SCHEMA = "status_reference_v1"

AGENT_STAGE_LIFECYCLE = [
    {
        "status": "idle",
        "meaning": "No task has been started, or the session was reset.",
        "typical_transitions": ["awaiting_permissions"],
    },
    {
        "status": "awaiting_permissions",
        "meaning": "Task recorded; the user must review and approve file/GitHub permissions.",
        "typical_transitions": ["planning", "idle"],
    },
    {
        "status": "planning",
        "meaning": "The model is producing a step-by-step plan for the task.",
        "typical_transitions": ["awaiting_plan_approval", "error", "awaiting_permissions"],
    },
    {
        "status": "awaiting_plan_approval",
        "meaning": "Plan ready; the user approves it to start execution or rejects it.",
        "typical_transitions": ["executing", "completed", "awaiting_permissions"],
    },
    {
        "status": "executing",
        "meaning": "The model is proposing file changes for the current step.",
        "typical_transitions": ["awaiting_step_approval", "completed", "error"],
    },
    {
        "status": "awaiting_step_approval",
        "meaning": "Proposed changes for the step are waiting for the user's review.",
        "typical_transitions": ["executing", "completed", "error", "awaiting_permissions"],
    },
    {
        "status": "completed",
        "meaning": "All approved steps are applied (or the run was stopped/rejected).",
        "typical_transitions": ["awaiting_permissions", "idle"],
    },
    {
        "status": "error",
        "meaning": "Planning, execution or applying a step failed; see the session error.",
        "typical_transitions": ["awaiting_permissions", "idle"],
    },
]

GITHUB_PUBLISH_LIFECYCLE = [
    {
        "status": "idle",
        "meaning": "Nothing drafted for GitHub yet.",
        "typical_transitions": ["drafting"],
    },
    {
        "status": "drafting",
        "meaning": "The model is writing the commit message and pull request text.",
        "typical_transitions": ["awaiting_review", "error"],
    },
    {
        "status": "awaiting_review",
        "meaning": "Draft ready; the user may edit it and then publish.",
        "typical_transitions": ["publishing", "drafting"],
    },
    {
        "status": "publishing",
        "meaning": "Committing the changeset to the task branch and opening the pull request.",
        "typical_transitions": ["published", "error"],
    },
    {
        "status": "published",
        "meaning": "Commit pushed and pull request opened (or reused).",
        "typical_transitions": ["drafting"],
    },
    {
        "status": "error",
        "meaning": "Drafting or publishing failed; see the GitHub error.",
        "typical_transitions": ["drafting", "publishing"],
    },
]

STATUS_LIFECYCLES = [
    {
        "type": "agent_session",
        "label": "Agent lifecycle",
        "description": "Stages of an agent-mode session.",
        "statuses": AGENT_STAGE_LIFECYCLE,
    },
    {
        "type": "github_publish",
        "label": "GitHub publish lifecycle",
        "description": "Stages of publishing a completed agent session to GitHub.",
        "statuses": GITHUB_PUBLISH_LIFECYCLE,
    },
]


def get_status_reference() -> dict[str, Any]:
    """Return a machine-parseable lifecycle reference payload."""
    return {
        "schema": STATUS_REFERENCE_SCHEMA,
        "lifecycles": [
            {
                "type": lifecycle["type"],
                "label": lifecycle["label"],
                "description": lifecycle["description"],
                "statuses": [
                    {
                        "status": status["status"],
                        "meaning": status["meaning"],
                        "typical_transitions": list(status["typical_transitions"]),
                    }
                    for status in lifecycle["statuses"]
                ],
            }
            for lifecycle in STATUS_LIFECYCLES
        ],
    }
