"""Prompts and output schemas for agent mode and terminal assist.

Every agent call asks for a bare JSON object. The model's reply goes through
``extract_json_from_text`` and is validated against the matching schema
below before any of it reaches the workspace.
"""

from __future__ import annotations

import json

from jsonschema import ValidationError, validate

from atelier.ai import extract_json_from_text

PLAN_OUTPUT_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "summary": {"type": "string", "minLength": 1},
        "steps": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "title": {"type": "string", "minLength": 1},
                    "description": {"type": "string", "minLength": 1},
                    "filesToRead": {"type": "array", "items": {"type": "string"}},
                    "filesToModify": {"type": "array", "items": {"type": "string"}},
                    "filesToCreate": {"type": "array", "items": {"type": "string"}},
                },
                "required": [
                    "id",
                    "title",
                    "description",
                    "filesToRead",
                    "filesToModify",
                    "filesToCreate",
                ],
            },
        },
    },
    "required": ["summary", "steps"],
}

STEP_OUTPUT_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "summary": {"type": "string", "minLength": 1},
        "changes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "filePath": {"type": "string", "minLength": 1},
                    "changeType": {"type": "string", "enum": ["modify", "create", "delete"]},
                    "updatedContent": {"type": "string"},
                },
                "required": ["filePath", "changeType"],
            },
        },
    },
    "required": ["summary", "changes"],
}

GITHUB_DRAFT_OUTPUT_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "commitMessage": {"type": "string", "minLength": 1},
        "prTitle": {"type": "string", "minLength": 1},
        "summary": {"type": "string", "minLength": 1},
        "risks": {"type": "array", "items": {"type": "string"}},
        "assumptions": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["commitMessage", "prTitle", "summary"],
}


class AgentResponseError(ValueError):
    """Model output could not be parsed into the expected shape."""


def parse_model_json(text: str, schema: dict, error_message: str) -> dict:
    try:
        data = json.loads(extract_json_from_text(text))
    except (ValueError, json.JSONDecodeError) as e:
        raise AgentResponseError(f"{error_message} ({e})") from e
    try:
        validate(instance=data, schema=schema)
    except ValidationError as e:
        raise AgentResponseError(f"{error_message} ({e.message})") from e
    return data


# -- planner --

PLANNER_SYSTEM_PROMPT = "\n".join(
    [
        "You are an autonomous planning assistant for a code editor.",
        "Return ONLY valid JSON matching the schema:",
        '{ "summary": string, "steps": [{ "id": string, "title": string, '
        '"description": string, "filesToRead": string[], "filesToModify": string[], '
        '"filesToCreate": string[] }] }',
        "Rules:",
        "- Use only file paths that exist in the workspace list for reads/modifications.",
        "- For new files, include their full path under filesToCreate.",
        "- Keep steps small and sequential.",
        "- No extra keys, no markdown.",
    ]
)


def _bool(value: bool) -> str:
    return "true" if value else "false"


def _file_permission_fields(permissions: dict[str, bool]) -> str:
    return ", ".join(
        f"{key}={_bool(permissions.get(key, False))}"
        for key in ("read", "modify", "create", "delete")
    )


def build_plan_messages(
    task: str, workspace_files: list[str], permissions: dict[str, bool]
) -> list[dict[str, str]]:
    permission_line = " ".join(
        [
            "Permissions for this task:",
            _file_permission_fields(permissions),
            "Plan must respect permissions (no modify/create/delete if not allowed).",
        ]
    )
    user_prompt = "\n".join(
        [f"Task: {task}", permission_line, "Workspace files:", "\n".join(workspace_files)]
    )
    return [
        {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


# -- executor --

EXECUTOR_SYSTEM_PROMPT = "\n".join(
    [
        "You are an execution assistant that proposes code changes for a step.",
        "Return ONLY valid JSON matching the schema:",
        '{ "summary": string, "changes": [{ "filePath": string, '
        '"changeType": "modify"|"create"|"delete", "updatedContent"?: string }] }',
        "Rules:",
        "- For modify/create, include full updatedContent (entire file).",
        "- For delete, omit updatedContent.",
        "- Only touch files in the step plan.",
        "- No markdown, no extra keys.",
    ]
)


def build_step_messages(
    task: str,
    step_title: str,
    step_description: str,
    permissions: dict[str, bool],
    existing_files: list[str],
    file_contents: dict[str, str],
) -> list[dict[str, str]]:
    github_fields = ", ".join(
        f"{label}={_bool(permissions.get(key, False))}"
        for key, label in (
            ("create_branch", "createBranch"),
            ("commit", "commit"),
            ("push", "push"),
            ("open_pull_request", "openPullRequest"),
        )
    )
    permission_line = " ".join(
        [
            "Permissions for this task:",
            _file_permission_fields(permissions) + ",",
            github_fields,
            "Do not propose changes outside these permissions.",
        ]
    )
    file_context = "\n\n".join(
        f"FILE: {path}\n{content}" for path, content in file_contents.items()
    )
    user_prompt = "\n".join(
        [
            f"Task: {task}",
            f"Step: {step_title} - {step_description}",
            permission_line,
            "Existing workspace files:",
            "\n".join(existing_files),
            "Current file contents for this step:",
            file_context or "(no files provided)",
        ]
    )
    return [
        {"role": "system", "content": EXECUTOR_SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


# -- GitHub draft --

GITHUB_DRAFT_SYSTEM_PROMPT = "\n".join(
    [
        "You write GitHub commit messages and pull request metadata for an AI agent.",
        "Return ONLY valid JSON matching the schema:",
        '{ "commitMessage": string, "prTitle": string, "summary": string, '
        '"risks": string[], "assumptions": string[] }',
        "Rules:",
        '- commitMessage must follow conventional commits (e.g., "feat: ...")',
        "- commitMessage must explain WHY the change was made, not just what.",
        "- prTitle should be concise and human-readable.",
        "- summary should be 1-3 sentences.",
        "- risks/assumptions can be empty arrays.",
        "- No markdown outside JSON.",
    ]
)


def build_github_draft_messages(
    task: str, repo_full_name: str, base_branch: str, changes: list[tuple[str, str]]
) -> list[dict[str, str]]:
    """*changes* is a list of ``(change_type, file_path)`` pairs."""
    change_summary = "\n".join(f"{kind.upper()}: {path}" for kind, path in changes)
    user_prompt = "\n".join(
        [
            f"Task: {task}",
            f"Repository: {repo_full_name}",
            f"Base branch: {base_branch}",
            "Changes:",
            change_summary or "(no changes listed)",
        ]
    )
    return [
        {"role": "system", "content": GITHUB_DRAFT_SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items) if items else "- None"


def build_pr_body(summary: str, files: list[str], risks: list[str], assumptions: list[str]) -> str:
    return "\n".join(
        [
            "## Summary",
            summary.strip(),
            "",
            "## Files Modified",
            _bullets(files),
            "",
            "## Risks & Assumptions",
            _bullets(risks),
            _bullets(assumptions),
        ]
    )


# -- terminal assist --

TERMINAL_ASSIST_KINDS = ("explain", "summarize", "fix")
MAX_ASSIST_OUTPUT_CHARS = 20_000

TERMINAL_ASSIST_SYSTEM_PROMPT = """\
You are an AI coding assistant focused on terminal output analysis.
Rules:
- Read-only assistance only.
- Never run commands or modify files.
- Provide clear, concise explanations and next steps.
- If unsure, state assumptions explicitly.
Response format:
- Summary
- Root cause (if applicable)
- Suggested fixes
- Files likely involved (if any)"""

_ASSIST_HEADERS = {
    "summarize": "Summarize the terminal output.",
    "fix": "Suggest possible fixes for the failure.",
    "explain": "Explain why the command failed.",
}


def build_terminal_assist_messages(
    kind: str, output: str, command: str | None = None
) -> list[dict[str, str]]:
    if kind not in _ASSIST_HEADERS:
        raise ValueError(f"Invalid assist kind '{kind}'. Must be one of: {TERMINAL_ASSIST_KINDS}")
    if not output:
        raise ValueError("Terminal output cannot be empty")
    if len(output) > MAX_ASSIST_OUTPUT_CHARS:
        raise ValueError(f"Terminal output exceeds {MAX_ASSIST_OUTPUT_CHARS} characters")
    user_prompt = "\n".join(
        [
            _ASSIST_HEADERS[kind],
            f"Command: {command}" if command else "Command: (not provided)",
            "Terminal output:",
            output,
        ]
    )
    return [
        {"role": "system", "content": TERMINAL_ASSIST_SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]
