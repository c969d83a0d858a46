"""Agent mode: the stage machine behind plan -> approve -> execute -> approve.

``AgentOrchestrator`` drives one agent session over a ``VirtualFileSystem``.
Transitions that only need the user's say-so (approving, rejecting,
stopping) are plain method calls. The two that call the model, planning and
step execution, are split in two: the transition moves the session into
``planning``/``executing`` and ``run_pending()`` does the AI work. That lets
the API run the AI call inline or hand the session to an rq worker.

GitHub publishing has its own stage (``github_stage``) that only starts once
the agent is ``completed``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields
from typing import Any

from atelier.ai import CompletionClient, CompletionError
from atelier.db import AgentSessionRow
from atelier.github import (
    GitHubClient,
    GitHubError,
    PublishChange,
    build_deterministic_branch_name,
)
from atelier.prompts import (
    GITHUB_DRAFT_OUTPUT_SCHEMA,
    PLAN_OUTPUT_SCHEMA,
    STEP_OUTPUT_SCHEMA,
    build_github_draft_messages,
    build_plan_messages,
    build_pr_body,
    build_step_messages,
    parse_model_json,
)
from atelier.vfs import VirtualFileSystem, normalize_path

log = logging.getLogger(__name__)

IDLE = "idle"
AWAITING_PERMISSIONS = "awaiting_permissions"
PLANNING = "planning"
AWAITING_PLAN_APPROVAL = "awaiting_plan_approval"
EXECUTING = "executing"
AWAITING_STEP_APPROVAL = "awaiting_step_approval"
COMPLETED = "completed"
ERROR = "error"

GITHUB_IDLE = "idle"
GITHUB_DRAFTING = "drafting"
GITHUB_AWAITING_REVIEW = "awaiting_review"
GITHUB_PUBLISHING = "publishing"
GITHUB_PUBLISHED = "published"
GITHUB_ERROR = "error"

CHANGE_TYPES = ("modify", "create", "delete")
GITHUB_PERMISSIONS = ("create_branch", "commit", "push", "open_pull_request")


class AgentStageError(RuntimeError):
    """Operation is not allowed in the session's current stage."""


class ChangeApplicationError(ValueError):
    """A proposed change could not be applied to the workspace."""


# -- types --


@dataclass
class AgentPermissions:
    read: bool = True
    modify: bool = True
    create: bool = True
    delete: bool = False
    create_branch: bool = False
    commit: bool = False
    push: bool = False
    open_pull_request: bool = False

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> AgentPermissions:
        known = {f.name for f in fields(cls)}
        return cls(**{k: bool(v) for k, v in (data or {}).items() if k in known})

    def updated(self, **flags: bool) -> AgentPermissions:
        unknown = set(flags) - {f.name for f in fields(self)}
        if unknown:
            raise ValueError(f"Unknown permissions: {sorted(unknown)}")
        data = self.to_dict()
        data.update({k: bool(v) for k, v in flags.items()})
        return AgentPermissions(**data)

    def missing_github_permissions(self) -> list[str]:
        return [name for name in GITHUB_PERMISSIONS if not getattr(self, name)]


@dataclass
class AgentPlanStep:
    id: str
    title: str
    description: str
    files_to_read: list[str] = field(default_factory=list)
    files_to_modify: list[str] = field(default_factory=list)
    files_to_create: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "filesToRead": self.files_to_read,
            "filesToModify": self.files_to_modify,
            "filesToCreate": self.files_to_create,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentPlanStep:
        return cls(
            id=data["id"],
            title=data["title"],
            description=data["description"],
            files_to_read=list(data.get("filesToRead", [])),
            files_to_modify=list(data.get("filesToModify", [])),
            files_to_create=list(data.get("filesToCreate", [])),
        )

    def context_paths(self) -> list[str]:
        """Files the executor sees: reads and modifications, normalized, de-duplicated."""
        paths = self.files_to_read + self.files_to_modify
        return list(dict.fromkeys(normalize_path(p) for p in paths))


@dataclass
class AgentPlan:
    summary: str
    steps: list[AgentPlanStep]

    def to_dict(self) -> dict[str, Any]:
        return {"summary": self.summary, "steps": [s.to_dict() for s in self.steps]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentPlan:
        return cls(
            summary=data["summary"],
            steps=[AgentPlanStep.from_dict(s) for s in data["steps"]],
        )


@dataclass
class AgentStepChange:
    file_path: str
    change_type: str
    updated_content: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"filePath": self.file_path, "changeType": self.change_type}
        if self.updated_content is not None:
            data["updatedContent"] = self.updated_content
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentStepChange:
        return cls(
            file_path=data["filePath"],
            change_type=data["changeType"],
            updated_content=data.get("updatedContent"),
        )


@dataclass
class AgentStepResult:
    step_id: str
    summary: str
    changes: list[AgentStepChange]

    def to_dict(self) -> dict[str, Any]:
        return {
            "stepId": self.step_id,
            "summary": self.summary,
            "changes": [c.to_dict() for c in self.changes],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentStepResult:
        return cls(
            step_id=data["stepId"],
            summary=data["summary"],
            changes=[AgentStepChange.from_dict(c) for c in data["changes"]],
        )


@dataclass
class AgentAppliedChange(AgentStepChange):
    original_content: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["originalContent"] = self.original_content
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentAppliedChange:
        return cls(
            file_path=data["filePath"],
            change_type=data["changeType"],
            updated_content=data.get("updatedContent"),
            original_content=data.get("originalContent"),
        )


def _loads(text: str | None) -> Any:
    return json.loads(text) if text else None


def _dumps(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


@dataclass
class AgentState:
    task: str = ""
    stage: str = IDLE
    permissions: AgentPermissions = field(default_factory=AgentPermissions)
    plan: AgentPlan | None = None
    current_step_index: int = -1
    step_result: AgentStepResult | None = None
    applied_changes: list[AgentAppliedChange] = field(default_factory=list)
    error: str | None = None
    github_stage: str = GITHUB_IDLE
    github_draft: dict[str, Any] | None = None
    github_result: dict[str, Any] | None = None
    github_error: str | None = None

    @property
    def current_step(self) -> AgentPlanStep | None:
        if self.plan is None or not 0 <= self.current_step_index < len(self.plan.steps):
            return None
        return self.plan.steps[self.current_step_index]

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task,
            "stage": self.stage,
            "permissions": self.permissions.to_dict(),
            "plan": self.plan.to_dict() if self.plan else None,
            "current_step_index": self.current_step_index,
            "step_result": self.step_result.to_dict() if self.step_result else None,
            "applied_changes": [c.to_dict() for c in self.applied_changes],
            "error": self.error,
            "github_stage": self.github_stage,
            "github_draft": self.github_draft,
            "github_result": self.github_result,
            "github_error": self.github_error,
        }

    def to_row(self) -> dict[str, Any]:
        """Column values for ``db.save_agent_state`` (JSON columns as text)."""
        data = self.to_dict()
        for key in ("permissions", "plan", "step_result", "applied_changes"):
            data[key] = _dumps(data[key])
        for key in ("github_draft", "github_result"):
            data[key] = _dumps(data[key])
        return data

    @classmethod
    def from_row(cls, row: AgentSessionRow) -> AgentState:
        plan = _loads(row["plan"])
        step_result = _loads(row["step_result"])
        return cls(
            task=row["task"],
            stage=row["stage"],
            permissions=AgentPermissions.from_dict(_loads(row["permissions"])),
            plan=AgentPlan.from_dict(plan) if plan else None,
            current_step_index=row["current_step_index"],
            step_result=AgentStepResult.from_dict(step_result) if step_result else None,
            applied_changes=[
                AgentAppliedChange.from_dict(c) for c in _loads(row["applied_changes"]) or []
            ],
            error=row["error"],
            github_stage=row["github_stage"],
            github_draft=_loads(row["github_draft"]),
            github_result=_loads(row["github_result"]),
            github_error=row["github_error"],
        )


# -- applying changes --


def apply_step_changes(
    vfs: VirtualFileSystem,
    changes: list[AgentStepChange],
    permissions: AgentPermissions,
) -> list[AgentAppliedChange]:
    """Apply *changes* to *vfs* in order, returning them with their prior content.

    Raises ChangeApplicationError on the first change that breaks a
    permission or refers to a missing file. Changes before it stay applied.
    """
    applied: list[AgentAppliedChange] = []
    for change in changes:
        path = normalize_path(change.file_path)
        node = vfs.find_file(path)
        original = node.get("content", "") if node else None

        if change.change_type == "modify":
            if not permissions.modify:
                raise ChangeApplicationError("Modify permission not granted.")
            if node is None:
                raise ChangeApplicationError(f"File not found for modify: {path}")
            if change.updated_content is None:
                raise ChangeApplicationError(f"Missing updatedContent for modify: {path}")
            vfs.write_file(node["id"], change.updated_content)
        elif change.change_type == "create":
            if not permissions.create:
                raise ChangeApplicationError("Create permission not granted.")
            if change.updated_content is None:
                raise ChangeApplicationError(f"Missing updatedContent for create: {path}")
            if node is not None:
                vfs.write_file(node["id"], change.updated_content)
            else:
                try:
                    vfs.create_file_by_path(path, change.updated_content)
                except ValueError as e:
                    raise ChangeApplicationError(f"Cannot create {path}: {e}") from e
        elif change.change_type == "delete":
            if not permissions.delete:
                raise ChangeApplicationError("Delete permission not granted.")
            if node is None:
                raise ChangeApplicationError(f"File not found for delete: {path}")
            vfs.delete_node(node["id"])
        else:
            raise ChangeApplicationError(f"Unknown change type '{change.change_type}' for {path}")

        applied.append(
            AgentAppliedChange(
                file_path=path,
                change_type=change.change_type,
                updated_content=change.updated_content,
                original_content=original,
            )
        )
    return applied


def merge_applied_changes(
    existing: list[AgentAppliedChange], incoming: list[AgentAppliedChange]
) -> list[AgentAppliedChange]:
    """One entry per path in first-touch order; the first original_content wins."""
    merged: dict[str, AgentAppliedChange] = {c.file_path: c for c in existing}
    for change in incoming:
        previous = merged.get(change.file_path)
        original = change.original_content
        if previous is not None and previous.original_content is not None:
            original = previous.original_content
        merged[change.file_path] = AgentAppliedChange(
            file_path=change.file_path,
            change_type=change.change_type,
            updated_content=change.updated_content,
            original_content=original,
        )
    return list(merged.values())


# -- orchestrator --


class AgentOrchestrator:
    def __init__(
        self,
        state: AgentState,
        vfs: VirtualFileSystem,
        client: CompletionClient | None = None,
        *,
        on_transition: Callable[[str, str], None] | None = None,
    ):
        self.state = state
        self.vfs = vfs
        self.client = client
        self.on_transition = on_transition

    def _set_stage(self, stage: str) -> None:
        old = self.state.stage
        self.state.stage = stage
        if old != stage:
            log.info("Agent stage %s -> %s", old, stage)
            if self.on_transition:
                self.on_transition(old, stage)

    def _fail(self, message: str) -> None:
        self.state.error = message
        self._set_stage(ERROR)

    def _require_stage(self, action: str, *allowed: str) -> None:
        if self.state.stage not in allowed:
            raise AgentStageError(f"Cannot {action} while agent is '{self.state.stage}'.")

    def _require_client(self) -> CompletionClient:
        if self.client is None:
            raise AgentStageError("No completion client configured for this agent.")
        return self.client

    # -- user transitions --

    def start_task(self, task: str) -> None:
        if self.state.stage in (PLANNING, EXECUTING):
            raise AgentStageError("Cannot start a new task while the agent is working.")
        task = (task or "").strip()
        if not task:
            raise ValueError("Task cannot be empty.")
        self.state = AgentState(task=task, stage=self.state.stage, permissions=AgentPermissions())
        self._set_stage(AWAITING_PERMISSIONS)

    def set_permissions(self, **flags: bool) -> AgentPermissions:
        if self.state.stage in (PLANNING, EXECUTING):
            raise AgentStageError("Permissions cannot change while the agent is working.")
        self.state.permissions = self.state.permissions.updated(**flags)
        return self.state.permissions

    def approve_permissions(self) -> None:
        self._require_stage("approve permissions", AWAITING_PERMISSIONS)
        self.state.error = None
        self._set_stage(PLANNING)

    def approve_plan(self) -> None:
        self._require_stage("approve the plan", AWAITING_PLAN_APPROVAL)
        self._begin_step(0)

    def reject_plan(self) -> None:
        self._require_stage("reject the plan", AWAITING_PLAN_APPROVAL)
        self.state.plan = None
        self._set_stage(COMPLETED)

    def approve_step(self) -> list[AgentAppliedChange]:
        """Apply the pending step and queue the next one (or finish)."""
        self._require_stage("approve a step", AWAITING_STEP_APPROVAL)
        result = self.state.step_result
        plan = self.state.plan
        if result is None or plan is None:
            raise AgentStageError("No step result is waiting for approval.")
        try:
            # Dry run on a copy so a bad change leaves the workspace untouched.
            scratch = VirtualFileSystem(self.vfs.get_structure())
            apply_step_changes(scratch, result.changes, self.state.permissions)
            applied = apply_step_changes(self.vfs, result.changes, self.state.permissions)
        except ChangeApplicationError as e:
            log.warning("Step %s could not be applied: %s", result.step_id, e)
            self._fail(str(e))
            return []
        self.state.applied_changes = merge_applied_changes(self.state.applied_changes, applied)
        self.state.step_result = None
        log.info("Applied %d change(s) from step %s", len(applied), result.step_id)

        next_index = self.state.current_step_index + 1
        if next_index >= len(plan.steps):
            self._set_stage(COMPLETED)
        else:
            self._begin_step(next_index)
        return applied

    def stop_execution(self) -> None:
        self._require_stage("stop execution", EXECUTING, AWAITING_STEP_APPROVAL)
        self.state.step_result = None
        self._set_stage(COMPLETED)

    def revoke_permissions(self) -> None:
        self._require_stage(
            "revoke permissions",
            PLANNING,
            AWAITING_PLAN_APPROVAL,
            EXECUTING,
            AWAITING_STEP_APPROVAL,
            COMPLETED,
            ERROR,
        )
        self.state.plan = None
        self.state.step_result = None
        self.state.current_step_index = -1
        self._set_stage(AWAITING_PERMISSIONS)

    def reset(self) -> None:
        self.state = AgentState(stage=self.state.stage)
        self._set_stage(IDLE)

    def _begin_step(self, index: int) -> None:
        self.state.current_step_index = index
        self.state.error = None
        self._set_stage(EXECUTING)

    # -- AI work --

    def needs_work(self) -> bool:
        if self.state.stage in (PLANNING, EXECUTING):
            return True
        return self.state.github_stage == GITHUB_DRAFTING

    def run_pending(self) -> None:
        """Do the AI call owed by the current stage, if any."""
        if self.state.stage == PLANNING:
            self.run_planning()
        elif self.state.stage == EXECUTING:
            self.run_step()
        if self.state.github_stage == GITHUB_DRAFTING:
            self.run_github_draft()

    def run_planning(self) -> None:
        self._require_stage("plan", PLANNING)
        client = self._require_client()
        try:
            messages = build_plan_messages(
                self.state.task, self.vfs.list_file_paths(), self.state.permissions.to_dict()
            )
            text = client.complete(messages)
            data = parse_model_json(
                text, PLAN_OUTPUT_SCHEMA, "Agent plan response did not match schema."
            )
            plan = AgentPlan.from_dict(data)
        except (CompletionError, ValueError) as e:
            log.exception("Planning failed for task %r", self.state.task)
            self._fail(str(e) or "Failed to generate plan")
            return
        self.state.plan = plan
        log.info("Plan ready: %d step(s)", len(plan.steps))
        self._set_stage(AWAITING_PLAN_APPROVAL)

    def run_step(self) -> None:
        self._require_stage("execute a step", EXECUTING)
        client = self._require_client()
        step = self.state.current_step
        if step is None:
            self._fail(f"No plan step at index {self.state.current_step_index}.")
            return
        try:
            messages = build_step_messages(
                self.state.task,
                step.title,
                step.description,
                self.state.permissions.to_dict(),
                self.vfs.list_file_paths(),
                self.vfs.read_files_by_path(step.context_paths()),
            )
            text = client.complete(messages)
            data = parse_model_json(
                text, STEP_OUTPUT_SCHEMA, "Agent step response did not match schema."
            )
        except (CompletionError, ValueError) as e:
            log.exception("Step %s failed", step.id)
            self._fail(str(e) or "Failed to execute step")
            return
        self.state.step_result = AgentStepResult(
            step_id=step.id,
            summary=data["summary"],
            changes=[AgentStepChange.from_dict(c) for c in data["changes"]],
        )
        log.info(
            "Step %s proposed %d change(s)", step.id, len(self.state.step_result.changes)
        )
        self._set_stage(AWAITING_STEP_APPROVAL)

    # -- GitHub --

    def _set_github_stage(self, stage: str) -> None:
        old = self.state.github_stage
        self.state.github_stage = stage
        if old != stage:
            log.info("GitHub stage %s -> %s", old, stage)

    def _github_fail(self, message: str) -> None:
        self.state.github_error = message
        self._set_github_stage(GITHUB_ERROR)

    def begin_github_draft(self, repo_full_name: str, base_branch: str) -> None:
        """Move to ``drafting``; ``run_github_draft`` asks the model for the draft."""
        self._require_stage("draft a pull request", COMPLETED)
        if self.state.github_stage in (GITHUB_DRAFTING, GITHUB_PUBLISHING):
            raise AgentStageError(f"GitHub publish is already '{self.state.github_stage}'.")
        if not repo_full_name or not base_branch:
            raise ValueError("Missing GitHub repository context.")
        if not self.state.applied_changes:
            raise ValueError("No agent changes available to publish.")
        self.state.github_draft = {"repoFullName": repo_full_name, "baseBranch": base_branch}
        self.state.github_result = None
        self.state.github_error = None
        self._set_github_stage(GITHUB_DRAFTING)

    def run_github_draft(self) -> None:
        if self.state.github_stage != GITHUB_DRAFTING:
            raise AgentStageError(
                f"Cannot draft while GitHub stage is '{self.state.github_stage}'."
            )
        client = self._require_client()
        context = self.state.github_draft or {}
        repo_full_name = context.get("repoFullName", "")
        base_branch = context.get("baseBranch", "")
        changes = [(c.change_type, c.file_path) for c in self.state.applied_changes]
        try:
            text = client.complete(
                build_github_draft_messages(self.state.task, repo_full_name, base_branch, changes)
            )
            data = parse_model_json(
                text, GITHUB_DRAFT_OUTPUT_SCHEMA, "Invalid GitHub draft response from AI"
            )
        except (CompletionError, ValueError) as e:
            log.exception("GitHub draft failed")
            self._github_fail(str(e) or "Failed to generate GitHub draft")
            return
        files = list(dict.fromkeys(c.file_path for c in self.state.applied_changes))
        risks = data.get("risks", [])
        assumptions = data.get("assumptions", [])
        self.state.github_draft = {
            "repoFullName": repo_full_name,
            "baseBranch": base_branch,
            "branchName": build_deterministic_branch_name(self.state.task, base_branch),
            "commitMessage": data["commitMessage"].strip(),
            "prTitle": data["prTitle"].strip(),
            "summary": data["summary"],
            "risks": risks,
            "assumptions": assumptions,
            "prBody": build_pr_body(data["summary"], files, risks, assumptions),
        }
        self._set_github_stage(GITHUB_AWAITING_REVIEW)

    def edit_github_draft(self, **fields_: str) -> dict[str, Any]:
        """Let the reviewer adjust commit message, PR title or body before publishing."""
        if self.state.github_stage != GITHUB_AWAITING_REVIEW or not self.state.github_draft:
            raise AgentStageError("There is no GitHub draft awaiting review.")
        allowed = {"commitMessage", "prTitle", "prBody"}
        unknown = set(fields_) - allowed
        if unknown:
            raise ValueError(f"Draft fields cannot be edited: {sorted(unknown)}")
        for key, value in fields_.items():
            if not (value or "").strip():
                raise ValueError(f"{key} cannot be empty.")
            self.state.github_draft[key] = value.strip() if key != "prBody" else value
        return self.state.github_draft

    def publish_changes(self) -> list[PublishChange]:
        """The cumulative changeset with content read from the current VFS."""
        contents = self.vfs.read_files_by_path([c.file_path for c in self.state.applied_changes])
        changes = []
        for change in self.state.applied_changes:
            if change.change_type == "delete":
                changes.append(PublishChange(path=change.file_path, change_type="delete"))
                continue
            content = contents.get(change.file_path)
            if content is None:
                raise ValueError(f"Missing content for {change.file_path}")
            changes.append(
                PublishChange(
                    path=change.file_path, change_type=change.change_type, content=content
                )
            )
        return changes

    def publish_github(self, github: GitHubClient, owner: str, repo: str) -> dict[str, Any]:
        self.begin_publish()
        return self.finish_publish(github, owner, repo)

    def begin_publish(self) -> None:
        """Check the reviewed draft and move the GitHub stage to publishing."""
        self._require_stage("publish", COMPLETED)
        draft = self.state.github_draft
        # A failed publish can be retried with the same reviewed draft.
        if self.state.github_stage not in (GITHUB_AWAITING_REVIEW, GITHUB_ERROR) or not (
            draft and draft.get("branchName")
        ):
            raise AgentStageError("Review a GitHub draft before publishing.")
        if not self.state.applied_changes:
            raise ValueError("No agent changes available to publish.")
        missing = self.state.permissions.missing_github_permissions()
        if missing:
            raise PermissionError(f"GitHub permissions not granted: {', '.join(missing)}")

        self.state.github_error = None
        self._set_github_stage(GITHUB_PUBLISHING)

    def finish_publish(self, github: GitHubClient, owner: str, repo: str) -> dict[str, Any]:
        """Push the changeset to the task branch and open the pull request.

        Publish failures move the GitHub stage to error and return ``{}``.
        """
        draft = self.state.github_draft
        if self.state.github_stage != GITHUB_PUBLISHING or not draft:
            raise AgentStageError("Publishing has not been started for this session.")
        try:
            result = github.publish_agent_changes(
                owner,
                repo,
                task=self.state.task,
                base_branch=draft["baseBranch"],
                branch_name=draft["branchName"],
                commit_message=draft["commitMessage"],
                pr_title=draft["prTitle"],
                pr_body=draft["prBody"],
                changes=self.publish_changes(),
            )
        except (GitHubError, ValueError) as e:
            log.exception("Publishing to %s/%s failed", owner, repo)
            self._github_fail(str(e) or "Failed to publish changes")
            return {}
        self.state.github_result = result.to_dict()
        self._set_github_stage(GITHUB_PUBLISHED)
        return self.state.github_result
