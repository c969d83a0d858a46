"""Tests for atelier.github against a routed fake requests session."""

import base64
import re
from unittest.mock import MagicMock

import pytest
import requests

from atelier import config
from atelier.github import (
    BranchNameMismatchError,
    GitHubClient,
    GitHubError,
    PublishChange,
    _djb2_hex,
    build_deterministic_branch_name,
    build_tree_entries,
    parse_github_url,
)

API = "https://api.example.test"
REPO = "/repos/alice/demo"


def _response(status_code: int, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.reason = "Error"
    resp.content = b"" if payload is None else b"{}"
    resp.json.return_value = payload
    return resp


class FakeSession:
    """Answers ``(method, path)`` from a route table and records every request."""

    def __init__(self, routes: dict):
        self.routes = routes
        self.headers: dict = {}
        self.requests: list[tuple[str, str, dict | None]] = []

    def request(self, method, url, *, json=None, params=None, timeout=None):
        path = url.removeprefix(API)
        self.requests.append((method, path, json))
        if (method, path) not in self.routes:
            return _response(404, {"message": "Not Found"})
        status, payload = self.routes[(method, path)]
        return _response(status, payload)


def _client(routes: dict) -> tuple[GitHubClient, FakeSession]:
    session = FakeSession(routes)
    return GitHubClient("tok", api_url=API, session=session), session


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://github.com/alice/demo", ("alice", "demo")),
        ("https://github.com/alice/demo.git", ("alice", "demo")),
        ("git@github.com:alice/demo.git", ("alice", "demo")),
        ("https://gitlab.com/alice/demo", None),
        ("", None),
    ],
)
def test_parse_github_url(url, expected):
    assert parse_github_url(url) == expected


def test_branch_name_is_deterministic():
    name = build_deterministic_branch_name("Add a navbar!", "main")
    assert re.fullmatch(r"agent/add-a-navbar-[0-9a-f]{6}", name)
    assert build_deterministic_branch_name("Add a navbar!", "main") == name
    assert build_deterministic_branch_name("Add a navbar!", "dev") != name


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Add a navbar:main", "542db01c"),
        # Astral characters hash as two UTF-16 surrogates.
        ("Fix 🚀 émoji bug please now and then again and again:main", "11c083a9"),
    ],
)
def test_djb2_hex_vectors(text, expected):
    assert _djb2_hex(text) == expected


def test_branch_name_vector():
    assert build_deterministic_branch_name("Add a navbar", "main") == "agent/add-a-navbar-542db0"


def test_branch_name_slug_is_bounded():
    name = build_deterministic_branch_name("x" * 80, "main")
    slug = name.removeprefix("agent/").rsplit("-", 1)[0]
    assert slug == "x" * 40
    assert build_deterministic_branch_name("!!!", "main").startswith("agent/agent-task-")


def test_build_tree_entries():
    entries = build_tree_entries(
        [PublishChange("/src/a.ts", "modify", "A"), PublishChange("/old.ts", "delete")]
    )
    assert entries == [
        {"path": "src/a.ts", "mode": "100644", "type": "blob", "content": "A"},
        {"path": "old.ts", "mode": "100644", "type": "blob", "sha": None},
    ]
    with pytest.raises(ValueError, match="Missing updatedContent"):
        build_tree_entries([PublishChange("/a.ts", "create")])


def test_client_requires_token(monkeypatch):
    monkeypatch.setattr(config, "GITHUB_TOKEN", None)
    with pytest.raises(GitHubError, match="GITHUB_TOKEN"):
        GitHubClient()


def test_client_sets_auth_header():
    _, session = _client({})
    assert session.headers["Authorization"] == "Bearer tok"


def test_error_carries_status_and_message():
    client, _ = _client({("GET", REPO): (403, {"message": "Resource not accessible"})})
    with pytest.raises(GitHubError, match="Resource not accessible") as exc_info:
        client.ensure_repo_access("alice", "demo")
    assert exc_info.value.status_code == 403


def test_network_error_is_wrapped():
    session = MagicMock()
    session.headers = {}
    session.request.side_effect = requests.ConnectionError("down")
    client = GitHubClient("tok", api_url=API, session=session)
    with pytest.raises(GitHubError, match="failed: down"):
        client.list_branches("alice", "demo")


def test_list_branches():
    client, _ = _client({("GET", f"{REPO}/branches"): (200, [{"name": "main"}, {"name": "dev"}])})
    assert client.list_branches("alice", "demo") == ["main", "dev"]


def test_get_ref_sha_missing_branch():
    client, _ = _client({})
    assert client.get_ref_sha("alice", "demo", "nope") is None


def test_clone_repository_walks_dirs_and_skips_failures():
    encoded = base64.b64encode(b"hello").decode()
    client, _ = _client(
        {
            ("GET", f"{REPO}/contents/"): (
                200,
                [
                    {"type": "file", "path": "README.md"},
                    {"type": "dir", "path": "src"},
                    {"type": "file", "path": "broken.bin"},
                ],
            ),
            ("GET", f"{REPO}/contents/src"): (200, [{"type": "file", "path": "src/a.ts"}]),
            ("GET", f"{REPO}/contents/README.md"): (
                200,
                {"content": encoded, "encoding": "base64"},
            ),
            ("GET", f"{REPO}/contents/src/a.ts"): (200, {"content": "raw", "encoding": "none"}),
        }
    )
    files = client.clone_repository("alice", "demo", "main")
    assert files == {"README.md": "hello", "src/a.ts": "raw"}


def test_clone_repository_respects_max_files():
    client, _ = _client(
        {
            ("GET", f"{REPO}/contents/"): (
                200,
                [{"type": "file", "path": "a"}, {"type": "file", "path": "b"}],
            ),
            ("GET", f"{REPO}/contents/a"): (200, {"content": "A"}),
            ("GET", f"{REPO}/contents/b"): (200, {"content": "B"}),
        }
    )
    assert client.clone_repository("alice", "demo", max_files=1) == {"a": "A"}


# -- publish --

TASK = "Add a navbar"
BRANCH = build_deterministic_branch_name(TASK, "main")
CHANGES = [PublishChange("/src/Navbar.tsx", "create", "nav")]


def _publish_routes(*, branch_exists: bool, open_pr: dict | None = None) -> dict:
    routes = {
        ("GET", REPO): (200, {"full_name": "alice/demo"}),
        ("GET", f"{REPO}/git/ref/heads/main"): (200, {"object": {"sha": "base-sha"}}),
        ("POST", f"{REPO}/git/refs"): (201, {"object": {"sha": "base-sha"}}),
        ("GET", f"{REPO}/git/commits/base-sha"): (200, {"tree": {"sha": "tree-0"}}),
        ("GET", f"{REPO}/git/commits/head-sha"): (200, {"tree": {"sha": "tree-0"}}),
        ("POST", f"{REPO}/git/trees"): (201, {"sha": "tree-1"}),
        ("POST", f"{REPO}/git/commits"): (201, {"sha": "commit-1"}),
        ("PATCH", f"{REPO}/git/refs/heads/{BRANCH}"): (200, {}),
        ("GET", f"{REPO}/pulls"): (200, [open_pr] if open_pr else []),
        ("POST", f"{REPO}/pulls"): (
            201,
            {"number": 5, "html_url": "https://github.com/alice/demo/pull/5"},
        ),
    }
    if branch_exists:
        routes[("GET", f"{REPO}/git/ref/heads/{BRANCH}")] = (200, {"object": {"sha": "head-sha"}})
    return routes


def _publish(client: GitHubClient, **overrides):
    kwargs = dict(
        task=TASK,
        base_branch="main",
        branch_name=BRANCH,
        commit_message="feat: add navbar",
        pr_title="Add navbar",
        pr_body="body",
        changes=CHANGES,
    )
    kwargs.update(overrides)
    return client.publish_agent_changes("alice", "demo", **kwargs)


def test_publish_creates_branch_commit_and_pr():
    client, session = _client(_publish_routes(branch_exists=False))

    result = _publish(client)

    assert result.to_dict() == {
        "branch_name": BRANCH,
        "commit_sha": "commit-1",
        "pr_url": "https://github.com/alice/demo/pull/5",
        "pr_number": 5,
    }
    sent = {(m, p): body for m, p, body in session.requests}
    assert sent[("POST", f"{REPO}/git/refs")] == {"ref": f"refs/heads/{BRANCH}", "sha": "base-sha"}
    assert sent[("POST", f"{REPO}/git/trees")]["base_tree"] == "tree-0"
    assert sent[("POST", f"{REPO}/git/commits")]["parents"] == ["base-sha"]
    assert sent[("PATCH", f"{REPO}/git/refs/heads/{BRANCH}")] == {"sha": "commit-1", "force": False}
    assert sent[("POST", f"{REPO}/pulls")]["head"] == BRANCH


def test_publish_reuses_existing_branch_and_pr():
    open_pr = {"number": 9, "html_url": "https://github.com/alice/demo/pull/9"}
    client, session = _client(_publish_routes(branch_exists=True, open_pr=open_pr))

    result = _publish(client)

    assert result.pr_number == 9
    methods = [(m, p) for m, p, _ in session.requests]
    assert ("POST", f"{REPO}/git/refs") not in methods
    assert ("POST", f"{REPO}/pulls") not in methods
    commit = next(body for m, p, body in session.requests if p == f"{REPO}/git/commits")
    assert commit["parents"] == ["head-sha"]


def test_publish_missing_base_branch():
    routes = _publish_routes(branch_exists=False)
    del routes[("GET", f"{REPO}/git/ref/heads/main")]
    client, _ = _client(routes)
    with pytest.raises(GitHubError, match="Base branch 'main' not found"):
        _publish(client)


@pytest.mark.parametrize(
    ("overrides", "error", "message"),
    [
        ({"changes": []}, ValueError, "No changes"),
        ({"branch_name": "main"}, ValueError, "cannot match the base branch"),
        ({"branch_name": "agent/other"}, BranchNameMismatchError, "mismatch"),
    ],
)
def test_publish_validates_before_calling_github(overrides, error, message):
    client, session = _client({})
    with pytest.raises(error, match=message):
        _publish(client, **overrides)
    assert session.requests == []
