"""Team roles and the permission checks built on them."""

from __future__ import annotations

import logging
import sqlite3

from atelier.db import (
    TEAM_ROLE_RANKS,
    TeamMembershipRow,
    TeamRow,
    get_team,
    get_team_role,
    list_team_members,
    upsert_team_membership,
)
from atelier.db import create_team as _insert_team

log = logging.getLogger(__name__)

OWNER = "owner"
ADMIN = "admin"
EDITOR = "editor"
VIEWER = "viewer"


class TeamPermissionError(PermissionError):
    """Caller's team role is below what the operation needs."""


def has_role_at_least(role: str | None, minimum: str) -> bool:
    if role is None:
        return False
    return TEAM_ROLE_RANKS.get(role, 0) >= TEAM_ROLE_RANKS[minimum]


def can_modify_workspace(role: str | None) -> bool:
    return has_role_at_least(role, EDITOR)


def can_delete_workspace(role: str | None) -> bool:
    return has_role_at_least(role, ADMIN)


def can_manage_members(role: str | None) -> bool:
    return has_role_at_least(role, ADMIN)


def ensure_team_role(conn: sqlite3.Connection, team_id: str, user_id: str, minimum: str) -> str:
    """Return the caller's role, raising TeamPermissionError when it is too low."""
    role = get_team_role(conn, team_id, user_id)
    if not has_role_at_least(role, minimum):
        raise TeamPermissionError(
            f"User '{user_id}' needs role '{minimum}' on team '{team_id}' (has: {role or 'none'})"
        )
    return role  # type: ignore[return-value]


def create_team(conn: sqlite3.Connection, name: str, owner_id: str) -> TeamRow:
    team = _insert_team(conn, name, owner_id)
    log.info("Team %s created by %s", team["id"], owner_id)
    return team


def add_team_member(
    conn: sqlite3.Connection,
    team_id: str,
    *,
    inviter_id: str,
    user_id: str,
    role: str,
) -> TeamMembershipRow:
    """Add or re-role a member. Only admins and owners may do this, and only
    an owner may hand out the owner role."""
    if get_team(conn, team_id) is None:
        raise LookupError(f"Team '{team_id}' not found")
    inviter_role = ensure_team_role(conn, team_id, inviter_id, ADMIN)
    if role == OWNER and inviter_role != OWNER:
        raise TeamPermissionError("Only a team owner can grant the owner role")
    membership = upsert_team_membership(conn, team_id, user_id, role, invited_by=inviter_id)
    log.info("Team %s: %s is now %s (by %s)", team_id, user_id, role, inviter_id)
    return membership


def team_members(
    conn: sqlite3.Connection, team_id: str, *, user_id: str
) -> list[TeamMembershipRow]:
    ensure_team_role(conn, team_id, user_id, VIEWER)
    return list_team_members(conn, team_id)
