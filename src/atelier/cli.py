from __future__ import annotations

import contextlib
import json
import logging
import sys
from collections.abc import Iterator

import click

from atelier import __version__, config
from atelier.agent import AgentPermissions
from atelier.agent_sessions import (
    AGENT_ACTIONS,
    apply_agent_action,
    draft_github_changes,
    edit_github_draft,
    get_agent_session_view,
    list_agent_session_views,
    publish_github_changes,
    set_agent_permissions,
    start_agent_session,
)
from atelier.ai import get_completion_client
from atelier.db import (
    VALID_TEAM_ROLES,
    connect,
    count_user_workspaces,
    list_agent_logs,
    list_ai_audit_logs,
    list_status_history,
    total_user_storage,
)
from atelier.git_status import workspace_git_status
from atelier.github import GitHubClient, build_deterministic_branch_name, parse_github_url
from atelier.github_import import import_repository
from atelier.prompts import TERMINAL_ASSIST_KINDS
from atelier.status_reference import get_status_reference
from atelier.teams import add_team_member, create_team, team_members
from atelier.terminal import (
    format_sse,
    run_in_active_workspace,
    run_sandboxed_command,
    terminal_assist,
)
from atelier.vfs import VirtualFileSystem
from atelier.workspaces import (
    WorkspaceSession,
    assign_workspace_team,
    create_workspace,
    delete_workspace,
    format_bytes,
    get_active_workspace,
    list_workspaces,
    load_workspace,
    rename_workspace,
    set_active_workspace,
)

log = logging.getLogger(__name__)


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click normally writes plain-text usage errors to stderr.  Every command
    prints JSON, so this subclass intercepts Click exceptions and emits a
    JSON error object on stdout.  Unknown commands get fuzzy-matched
    suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _echo(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@contextlib.contextmanager
def _domain_errors() -> Iterator[None]:
    """Report library errors (not found, access, bad input, upstream) as CLI errors."""
    try:
        yield
    except (LookupError, PermissionError, ValueError, RuntimeError) as e:
        raise click.ClickException(str(e)) from e


def _not_found(entity: str, identifier: str) -> click.ClickException:
    """Build a ClickException with an actionable suggestion for missing entities."""
    hints = {
        "workspace": "Run 'atelier workspace list' to see your workspaces.",
        "agent session": "Run 'atelier agent list WORKSPACE_ID' to see sessions.",
    }
    msg = f"{entity.capitalize()} '{identifier}' not found."
    hint = hints.get(entity)
    if hint:
        msg += f"\n{hint}"
    return click.ClickException(msg)


def _user_option(fn):  # type: ignore[no-untyped-def]
    return click.option(
        "--user",
        "-u",
        default=None,
        help="Act as this user (default: $ATELIER_USER, then $USER).",
    )(fn)


def _user(user: str | None) -> str:
    return user or config.default_user()


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
def main():
    """Workspaces, agent mode and GitHub publishing for the browser code editor.

    \b
    Quick start:
      atelier workspace create "My app"                 New empty workspace
      atelier github import https://github.com/o/r      Clone a repo as a workspace
      atelier agent start WORKSPACE_ID "Add a navbar"   Start an agent task
      atelier agent approve-permissions SESSION_ID      Let the agent plan
      atelier terminal run "npm run build"              Sandboxed package scripts

    \b
    Key concepts:
      workspace   A named project: virtual file tree plus editor tabs
      agent       Plan, then propose and apply changes one approved step at a time
      github      Turn a completed agent session into a branch, commit and PR
    """


@main.command()
@_user_option
def status(user: str | None):
    """Show storage usage, queue health and lifecycle stages."""
    from atelier.queue import get_queue_counts_safe

    user_id = _user(user)
    with connect() as conn:
        used = total_user_storage(conn, user_id)
        usage = {
            "user": user_id,
            "workspaces": count_user_workspaces(conn, user_id),
            "max_workspaces": config.WORKSPACE_MAX_COUNT_PER_USER,
            "storage": f"{format_bytes(used)} / {format_bytes(config.WORKSPACE_MAX_STORAGE_BYTES)}",
        }
        active = get_active_workspace(conn, user_id)

    _echo(
        {
            "usage": usage,
            "active_workspace": active.metadata() if active else None,
            "queue": get_queue_counts_safe(),
        }
    )


@main.command("help-status")
def help_status():
    """Show lifecycle stage definitions for agent sessions and GitHub publishing."""
    click.echo(json.dumps(get_status_reference(), indent=2, sort_keys=False))


# -- workspace --


@main.group()
def workspace():
    """Create, inspect and edit workspaces."""


@workspace.command("create")
@click.argument("name")
@click.option(
    "--source",
    type=click.Choice(["manual", "zip", "github"]),
    default="manual",
    show_default=True,
)
@click.option(
    "--vfs",
    "vfs_file",
    type=click.File("r"),
    default=None,
    help="JSON file holding a VFS structure ('-' for stdin).",
)
@_user_option
def workspace_create(name: str, source: str, vfs_file, user: str | None):
    """Create a workspace (empty unless --vfs is given)."""
    vfs = None
    if vfs_file is not None:
        try:
            vfs = json.load(vfs_file)
        except json.JSONDecodeError as e:
            raise click.ClickException(f"Invalid VFS JSON: {e}") from e
    with connect() as conn, _domain_errors():
        ws = create_workspace(conn, _user(user), name, source=source, vfs=vfs)
    _echo(ws.metadata())


@workspace.command("list")
@_user_option
def workspace_list(user: str | None):
    """List workspaces, most recently opened first."""
    with connect() as conn:
        _echo(list_workspaces(conn, _user(user)))


@workspace.command("show")
@click.argument("workspace_id")
@click.option("--full", is_flag=True, help="Include the file tree and editor state.")
@_user_option
def workspace_show(workspace_id: str, full: bool, user: str | None):
    """Show a workspace (marks it as opened)."""
    with connect() as conn, _domain_errors():
        ws = load_workspace(conn, _user(user), workspace_id)
    if ws is None:
        raise _not_found("workspace", workspace_id)
    _echo(ws.to_dict() if full else ws.metadata())


@workspace.command("open")
@click.argument("workspace_id")
@_user_option
def workspace_open(workspace_id: str, user: str | None):
    """Open a workspace and make it the active one."""
    with connect() as conn, _domain_errors():
        session = WorkspaceSession.open(conn, _user(user), workspace_id)
        data = session.workspace.metadata()
        data["files"] = session.vfs.list_file_paths()
    _echo(data)


@workspace.command("active")
@_user_option
def workspace_active(user: str | None):
    """Show the active workspace."""
    with connect() as conn, _domain_errors():
        ws = get_active_workspace(conn, _user(user))
    _echo(ws.metadata() if ws else None)


@workspace.command("close")
@_user_option
def workspace_close(user: str | None):
    """Clear the active workspace."""
    with connect() as conn:
        set_active_workspace(conn, _user(user), None)
    _echo({"active_workspace_id": None})


@workspace.command("rename")
@click.argument("workspace_id")
@click.argument("name")
@_user_option
def workspace_rename(workspace_id: str, name: str, user: str | None):
    """Rename a workspace."""
    with connect() as conn, _domain_errors():
        ws = rename_workspace(conn, _user(user), workspace_id, name)
    _echo(ws.metadata())


@workspace.command("delete")
@click.argument("workspace_id")
@_user_option
def workspace_delete(workspace_id: str, user: str | None):
    """Delete a workspace permanently."""
    with connect() as conn, _domain_errors():
        deleted = delete_workspace(conn, _user(user), workspace_id)
    if not deleted:
        raise _not_found("workspace", workspace_id)
    _echo({"id": workspace_id, "deleted": True})


@workspace.command("files")
@click.argument("workspace_id")
@_user_option
def workspace_files(workspace_id: str, user: str | None):
    """List file paths in a workspace."""
    with connect() as conn, _domain_errors():
        ws = load_workspace(conn, _user(user), workspace_id, touch=False)
    if ws is None:
        raise _not_found("workspace", workspace_id)
    _echo(VirtualFileSystem(ws.vfs).list_file_paths())


@workspace.command("cat")
@click.argument("workspace_id")
@click.argument("path")
@_user_option
def workspace_cat(workspace_id: str, path: str, user: str | None):
    """Print a file's content."""
    with connect() as conn, _domain_errors():
        ws = load_workspace(conn, _user(user), workspace_id, touch=False)
    if ws is None:
        raise _not_found("workspace", workspace_id)
    node = VirtualFileSystem(ws.vfs).find_file(path)
    if node is None:
        raise click.ClickException(f"File '{path}' not found.")
    _echo({"path": path, "content": node.get("content") or ""})


@workspace.command("write")
@click.argument("workspace_id")
@click.argument("path")
@click.option(
    "--file",
    "-f",
    "source",
    type=click.File("r"),
    default="-",
    help="Read content from this file (default: stdin).",
)
@_user_option
def workspace_write(workspace_id: str, path: str, source, user: str | None):
    """Write a file, creating it and its folders when missing."""
    content = source.read()
    with connect() as conn, _domain_errors():
        ws = load_workspace(conn, _user(user), workspace_id, touch=False)
        if ws is None:
            raise _not_found("workspace", workspace_id)
        session = WorkspaceSession(conn, _user(user), ws)
        node_id = session.write_file_by_path(path, content)
        _echo(
            {
                "id": node_id,
                "path": session.vfs.get_node_path(node_id),
                "storage": format_bytes(session.workspace.storage_bytes),
            }
        )


@workspace.command("git-status")
@click.argument("workspace_id")
@_user_option
def workspace_git_status_cmd(workspace_id: str, user: str | None):
    """Show per-file changes against the imported repository."""
    with connect() as conn, _domain_errors():
        _echo(workspace_git_status(conn, _user(user), workspace_id))


@workspace.command("assign-team")
@click.argument("workspace_id")
@click.argument("team_id", required=False)
@_user_option
def workspace_assign_team(workspace_id: str, team_id: str | None, user: str | None):
    """Share a workspace with a team (omit TEAM_ID to unshare)."""
    with connect() as conn, _domain_errors():
        ws = assign_workspace_team(conn, _user(user), workspace_id, team_id)
    _echo(ws.metadata())


@workspace.command("audit")
@click.argument("workspace_id")
@_user_option
def workspace_audit(workspace_id: str, user: str | None):
    """Show AI audit entries (applied agent steps, GitHub publishes)."""
    with connect() as conn, _domain_errors():
        ws = load_workspace(conn, _user(user), workspace_id, touch=False)
        if ws is None:
            raise _not_found("workspace", workspace_id)
        _echo(list_ai_audit_logs(conn, ws.id))


# -- team --


@main.group()
def team():
    """Create teams and manage members."""


@team.command("create")
@click.argument("name")
@_user_option
def team_create(name: str, user: str | None):
    """Create a team owned by the current user."""
    with connect() as conn, _domain_errors():
        _echo(dict(create_team(conn, name, _user(user))))


@team.command("add-member")
@click.argument("team_id")
@click.argument("member")
@click.option(
    "--role",
    type=click.Choice(sorted(VALID_TEAM_ROLES)),
    default="editor",
    show_default=True,
)
@_user_option
def team_add_member(team_id: str, member: str, role: str, user: str | None):
    """Add MEMBER to a team or change their role."""
    with connect() as conn, _domain_errors():
        membership = add_team_member(
            conn, team_id, inviter_id=_user(user), user_id=member, role=role
        )
    _echo(dict(membership))


@team.command("members")
@click.argument("team_id")
@_user_option
def team_members_cmd(team_id: str, user: str | None):
    """List team members."""
    with connect() as conn, _domain_errors():
        _echo([dict(m) for m in team_members(conn, team_id, user_id=_user(user))])


# -- agent --


@main.group()
def agent():
    """Run agent-mode sessions: permissions, plan, step approvals."""


_PERMISSION_NAMES = tuple(AgentPermissions().to_dict())


def _permission_options(fn):  # type: ignore[no-untyped-def]
    fn = click.option(
        "--deny",
        multiple=True,
        type=click.Choice(_PERMISSION_NAMES),
        help="Withhold a permission (repeatable).",
    )(fn)
    return click.option(
        "--grant",
        multiple=True,
        type=click.Choice(_PERMISSION_NAMES),
        help="Grant a permission (repeatable), e.g. --grant delete --grant push.",
    )(fn)


def _permission_flags(grant: tuple[str, ...], deny: tuple[str, ...]) -> dict[str, bool]:
    overlap = set(grant) & set(deny)
    if overlap:
        raise click.ClickException(f"Cannot both grant and deny: {', '.join(sorted(overlap))}")
    flags = {name: True for name in grant}
    flags.update({name: False for name in deny})
    return flags


_background_option = click.option(
    "--background",
    "-b",
    is_flag=True,
    help="Queue the AI work on a worker instead of running it inline.",
)


@agent.command("start")
@click.argument("workspace_id")
@click.argument("task")
@_permission_options
@_user_option
def agent_start(
    workspace_id: str,
    task: str,
    grant: tuple[str, ...],
    deny: tuple[str, ...],
    user: str | None,
):
    """Start an agent session for TASK and wait for permission approval."""
    with connect() as conn, _domain_errors():
        _echo(
            start_agent_session(
                conn,
                _user(user),
                workspace_id,
                task,
                permissions=_permission_flags(grant, deny) or None,
            )
        )


@agent.command("show")
@click.argument("session_id")
@_user_option
def agent_show(session_id: str, user: str | None):
    """Show an agent session: stage, plan, proposed and applied changes."""
    with connect() as conn, _domain_errors():
        _echo(get_agent_session_view(conn, _user(user), session_id))


@agent.command("list")
@click.argument("workspace_id")
@click.option("--limit", "-n", type=click.IntRange(min=0), default=20, show_default=True)
@_user_option
def agent_list(workspace_id: str, limit: int, user: str | None):
    """List recent agent sessions of a workspace."""
    with connect() as conn, _domain_errors():
        _echo(list_agent_session_views(conn, _user(user), workspace_id, limit=limit))


@agent.command("permissions")
@click.argument("session_id")
@_permission_options
@_user_option
def agent_permissions(
    session_id: str, grant: tuple[str, ...], deny: tuple[str, ...], user: str | None
):
    """Change the permissions of a session."""
    flags = _permission_flags(grant, deny)
    if not flags:
        raise click.ClickException("Pass --grant or --deny, e.g. --grant delete.")
    with connect() as conn, _domain_errors():
        _echo(set_agent_permissions(conn, _user(user), session_id, flags))


_ACTION_HELP = {
    "approve_permissions": "Approve the permissions and let the agent plan.",
    "approve_plan": "Approve the plan and start on the first step.",
    "reject_plan": "Reject the plan and end the session.",
    "approve_step": "Apply the proposed changes and move to the next step.",
    "stop": "Stop execution; changes applied so far are kept.",
    "revoke": "Revoke permissions and return to permission review.",
    "reset": "Reset the session to idle.",
}


def _register_action(action: str) -> None:
    @agent.command(action.replace("_", "-"), help=_ACTION_HELP[action])
    @click.argument("session_id")
    @_background_option
    @_user_option
    def _command(session_id: str, background: bool, user: str | None):
        with connect() as conn, _domain_errors():
            _echo(
                apply_agent_action(
                    conn, _user(user), session_id, action, background=background
                )
            )


for _action in AGENT_ACTIONS:
    _register_action(_action)


@agent.command("logs")
@click.argument("session_id")
@click.option(
    "--level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
)
@_user_option
def agent_logs(session_id: str, level: str | None, user: str | None):
    """Show log records captured while the session was worked on."""
    with connect() as conn, _domain_errors():
        session = get_agent_session_view(conn, _user(user), session_id)
        _echo(list_agent_logs(conn, session["id"], level=level.upper() if level else None))


@agent.command("history")
@click.argument("session_id")
@_user_option
def agent_history(session_id: str, user: str | None):
    """Show the stage transition history of a session."""
    with connect() as conn, _domain_errors():
        session = get_agent_session_view(conn, _user(user), session_id)
        _echo(
            {
                "agent": list_status_history(
                    conn, entity_type="agent_session", entity_id=session["id"]
                ),
                "github": list_status_history(
                    conn, entity_type="github_publish", entity_id=session["id"]
                ),
            }
        )


# -- github --


@main.group()
def github():
    """Import repositories and publish agent changes as pull requests."""


@github.command("import")
@click.argument("url")
@click.option("--branch", default=None, help="Branch to clone (default: main).")
@click.option("--name", default=None, help="Workspace name (default: repository name).")
@_user_option
def github_import(url: str, branch: str | None, name: str | None, user: str | None):
    """Clone a GitHub repository into a new workspace."""
    with connect() as conn, _domain_errors():
        ws = import_repository(conn, _user(user), url, branch=branch, name=name)
    _echo(ws.metadata())


@github.command("branches")
@click.argument("url")
def github_branches(url: str):
    """List branches of a repository."""
    parsed = parse_github_url(url)
    if parsed is None:
        raise click.ClickException("Invalid GitHub repository URL")
    with _domain_errors():
        _echo(GitHubClient().list_branches(*parsed))


@github.command("branch-name")
@click.argument("task")
@click.option("--base", "base_branch", default="main", show_default=True)
def github_branch_name(task: str, base_branch: str):
    """Show the branch an agent task publishes to."""
    _echo({"branch_name": build_deterministic_branch_name(task, base_branch)})


@github.command("draft")
@click.argument("session_id")
@click.option(
    "--base", "base_branch", default=None, help="Base branch (default: the imported branch)."
)
@_background_option
@_user_option
def github_draft(session_id: str, base_branch: str | None, background: bool, user: str | None):
    """Draft the commit message and pull request for a completed session."""
    with connect() as conn, _domain_errors():
        _echo(
            draft_github_changes(
                conn, _user(user), session_id, base_branch=base_branch, background=background
            )
        )


@github.command("edit-draft")
@click.argument("session_id")
@click.option("--commit-message", default=None)
@click.option("--title", "pr_title", default=None)
@click.option("--body", "pr_body", default=None)
@_user_option
def github_edit_draft(
    session_id: str,
    commit_message: str | None,
    pr_title: str | None,
    pr_body: str | None,
    user: str | None,
):
    """Edit the drafted commit message or pull request text."""
    fields = {
        key: value
        for key, value in (
            ("commitMessage", commit_message),
            ("prTitle", pr_title),
            ("prBody", pr_body),
        )
        if value is not None
    }
    if not fields:
        raise click.ClickException("Nothing to edit: pass --commit-message, --title or --body.")
    with connect() as conn, _domain_errors():
        _echo(edit_github_draft(conn, _user(user), session_id, fields))


@github.command("publish")
@click.argument("session_id")
@_user_option
def github_publish(session_id: str, user: str | None):
    """Commit the session's changes to its branch and open a pull request."""
    with connect() as conn, _domain_errors():
        _echo(publish_github_changes(conn, _user(user), session_id))


# -- terminal --


@main.group()
def terminal():
    """Sandboxed package-manager commands and AI help for their output."""


@terminal.command("run")
@click.argument("command")
@click.option("--workspace", "-w", "workspace_id", default=None, help="Default: active workspace.")
@click.option("--sse", is_flag=True, help="Frame events as server-sent events.")
@_user_option
@click.pass_context
def terminal_run(
    ctx: click.Context, command: str, workspace_id: str | None, sse: bool, user: str | None
):
    """Run COMMAND in the sandbox, one JSON event per line.

    Exits with the command's exit code.
    """
    with connect() as conn, _domain_errors():
        if workspace_id:
            ws = load_workspace(conn, _user(user), workspace_id, touch=False)
            if ws is None:
                raise _not_found("workspace", workspace_id)
            events = run_sandboxed_command(command, ws.vfs)
        else:
            events = run_in_active_workspace(conn, _user(user), command)

    exit_code = 0

    def tracked():
        nonlocal exit_code
        for event in events:
            if event["type"] == "exit":
                exit_code = event["exitCode"]
            yield event

    if sse:
        for frame in format_sse(tracked()):
            click.echo(frame, nl=False)
    else:
        for event in tracked():
            click.echo(json.dumps(event))
    sys.stdout.flush()
    ctx.exit(exit_code)


@terminal.command("assist")
@click.argument("kind", type=click.Choice(TERMINAL_ASSIST_KINDS))
@click.option(
    "--output",
    "-o",
    "output_file",
    type=click.File("r"),
    default="-",
    help="Terminal output to analyze (default: stdin).",
)
@click.option("--command", "-c", default=None, help="The command that produced the output.")
def terminal_assist_cmd(kind: str, output_file, command: str | None):
    """Explain, summarize or suggest fixes for terminal output."""
    output = output_file.read()
    with _domain_errors():
        response = terminal_assist(kind, output, get_completion_client(), command=command)
    _echo({"kind": kind, "response": response})


if __name__ == "__main__":
    main()
