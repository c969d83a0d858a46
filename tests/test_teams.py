"""Tests for atelier.teams."""

import pytest

from atelier.teams import (
    ADMIN,
    EDITOR,
    OWNER,
    VIEWER,
    TeamPermissionError,
    add_team_member,
    can_delete_workspace,
    can_manage_members,
    can_modify_workspace,
    create_team,
    ensure_team_role,
    has_role_at_least,
    team_members,
)


@pytest.mark.parametrize(
    ("role", "minimum", "expected"),
    [
        (OWNER, ADMIN, True),
        (ADMIN, ADMIN, True),
        (EDITOR, ADMIN, False),
        (VIEWER, VIEWER, True),
        (None, VIEWER, False),
        ("bogus", VIEWER, False),
    ],
)
def test_has_role_at_least(role, minimum, expected):
    assert has_role_at_least(role, minimum) is expected


def test_capability_helpers():
    assert can_modify_workspace(EDITOR)
    assert not can_modify_workspace(VIEWER)
    assert can_delete_workspace(ADMIN)
    assert not can_delete_workspace(EDITOR)
    assert can_manage_members(OWNER)
    assert not can_manage_members(None)


def test_create_team_makes_creator_owner(db_conn):
    team = create_team(db_conn, "Platform", "alice")
    members = team_members(db_conn, team["id"], user_id="alice")
    assert [(m["user_id"], m["role"]) for m in members] == [("alice", OWNER)]


def test_create_team_requires_name(db_conn):
    with pytest.raises(ValueError):
        create_team(db_conn, "  ", "alice")


def test_admin_adds_and_rerolls_members(db_conn):
    team = create_team(db_conn, "Platform", "alice")
    add_team_member(db_conn, team["id"], inviter_id="alice", user_id="bob", role=ADMIN)
    add_team_member(db_conn, team["id"], inviter_id="bob", user_id="carol", role=VIEWER)
    membership = add_team_member(
        db_conn, team["id"], inviter_id="bob", user_id="carol", role=EDITOR
    )

    assert membership["role"] == EDITOR
    assert membership["invited_by"] == "bob"
    roles = {m["user_id"]: m["role"] for m in team_members(db_conn, team["id"], user_id="carol")}
    assert roles == {"alice": OWNER, "bob": ADMIN, "carol": EDITOR}


def test_editor_cannot_add_members(db_conn):
    team = create_team(db_conn, "Platform", "alice")
    add_team_member(db_conn, team["id"], inviter_id="alice", user_id="bob", role=EDITOR)
    with pytest.raises(TeamPermissionError, match="needs role 'admin'"):
        add_team_member(db_conn, team["id"], inviter_id="bob", user_id="carol", role=VIEWER)


def test_only_owner_grants_owner(db_conn):
    team = create_team(db_conn, "Platform", "alice")
    add_team_member(db_conn, team["id"], inviter_id="alice", user_id="bob", role=ADMIN)
    with pytest.raises(TeamPermissionError, match="owner"):
        add_team_member(db_conn, team["id"], inviter_id="bob", user_id="carol", role=OWNER)


def test_unknown_team_and_invalid_role(db_conn):
    with pytest.raises(LookupError):
        add_team_member(db_conn, "missing", inviter_id="alice", user_id="bob", role=VIEWER)
    team = create_team(db_conn, "Platform", "alice")
    with pytest.raises(ValueError, match="Invalid role"):
        add_team_member(db_conn, team["id"], inviter_id="alice", user_id="bob", role="guest")


def test_non_members_cannot_list_members(db_conn):
    team = create_team(db_conn, "Platform", "alice")
    with pytest.raises(PermissionError):
        team_members(db_conn, team["id"], user_id="mallory")


def test_ensure_team_role_returns_role(db_conn):
    team = create_team(db_conn, "Platform", "alice")
    assert ensure_team_role(db_conn, team["id"], "alice", ADMIN) == OWNER
