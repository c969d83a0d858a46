"""GitHub REST operations: repository import and agent change publishing.

Functions raise GitHubError (a RuntimeError) on API failures so they can be
used from the CLI, the API layer and job workers alike.
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import asdict, dataclass

import requests

from atelier import config

log = logging.getLogger(__name__)

_GITHUB_URL_RE = re.compile(r"github\.com[/:]([^/]+)/([^/.]+)")

BRANCH_PREFIX = "agent/"
BRANCH_SLUG_MAX_LEN = 40
BRANCH_HASH_LEN = 6
DEFAULT_MAX_CLONE_FILES = 1000
REQUEST_TIMEOUT_SECONDS = 30


class GitHubError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class BranchNameMismatchError(ValueError):
    pass


def parse_github_url(url: str) -> tuple[str, str] | None:
    """``(owner, repo)`` for https, ``.git`` and ``git@`` GitHub URLs, else None."""
    match = _GITHUB_URL_RE.search(url or "")
    if not match:
        return None
    return match.group(1), match.group(2)


# -- branch naming --


def _branch_slug(task: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", task.lower()).strip("-")
    return slug[:BRANCH_SLUG_MAX_LEN]


def _djb2_hex(text: str) -> str:
    """32-bit djb2-xor over UTF-16 code units, as 8 zero-padded hex digits."""
    data = text.encode("utf-16-le")
    h = 5381
    for i in range(0, len(data), 2):
        unit = int.from_bytes(data[i : i + 2], "little")
        h = (((h << 5) + h) ^ unit) & 0xFFFFFFFF
    return f"{h:08x}"


def build_deterministic_branch_name(task: str, base_branch: str) -> str:
    """Stable branch for a task, so re-publishing the same task reuses it."""
    slug = _branch_slug(task) or "agent-task"
    digest = _djb2_hex(f"{task}:{base_branch}")[:BRANCH_HASH_LEN]
    return f"{BRANCH_PREFIX}{slug}-{digest}"


# -- publish payload --


@dataclass
class PublishChange:
    path: str
    change_type: str
    content: str | None = None


@dataclass
class PublishResult:
    branch_name: str
    commit_sha: str
    pr_url: str
    pr_number: int

    def to_dict(self) -> dict:
        return asdict(self)


def build_tree_entries(changes: list[PublishChange]) -> list[dict]:
    entries = []
    for change in changes:
        path = change.path.lstrip("/")
        if change.change_type == "delete":
            entries.append({"path": path, "mode": "100644", "type": "blob", "sha": None})
            continue
        if change.content is None:
            raise ValueError(f"Missing updatedContent for {change.change_type}: {path}")
        entries.append(
            {"path": path, "mode": "100644", "type": "blob", "content": change.content}
        )
    return entries


class GitHubClient:
    def __init__(
        self,
        token: str | None = None,
        *,
        api_url: str | None = None,
        session: requests.Session | None = None,
    ):
        self.token = token or config.GITHUB_TOKEN
        if not self.token:
            raise GitHubError("GitHub token is required. Set GITHUB_TOKEN.")
        self.api_url = (api_url or config.GITHUB_API_URL).rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {self.token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
        allow_404: bool = False,
    ):
        try:
            resp = self.session.request(
                method,
                f"{self.api_url}{path}",
                json=json,
                params=params,
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            raise GitHubError(f"GitHub request {method} {path} failed: {e}") from e
        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code >= 400:
            detail = resp.reason
            try:
                detail = resp.json().get("message", detail)
            except ValueError:
                pass
            raise GitHubError(
                f"GitHub {method} {path} failed ({resp.status_code}): {detail}",
                resp.status_code,
            )
        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    # -- repository --

    def ensure_repo_access(self, owner: str, repo: str) -> dict:
        return self._request("GET", f"/repos/{owner}/{repo}")

    def list_branches(self, owner: str, repo: str) -> list[str]:
        data = self._request("GET", f"/repos/{owner}/{repo}/branches", params={"per_page": 100})
        return [b["name"] for b in data]

    def fetch_repository_contents(
        self, owner: str, repo: str, path: str = "", ref: str | None = None
    ) -> list[dict]:
        params = {"ref": ref} if ref else None
        data = self._request("GET", f"/repos/{owner}/{repo}/contents/{path}", params=params)
        return data if isinstance(data, list) else [data]

    def fetch_file_content(self, owner: str, repo: str, path: str, ref: str | None = None) -> str:
        params = {"ref": ref} if ref else None
        data = self._request("GET", f"/repos/{owner}/{repo}/contents/{path}", params=params)
        content = data.get("content") or ""
        if content and data.get("encoding") == "base64":
            return base64.b64decode(content).decode("utf-8")
        return content

    def clone_repository(
        self,
        owner: str,
        repo: str,
        branch: str | None = None,
        *,
        max_files: int = DEFAULT_MAX_CLONE_FILES,
    ) -> dict[str, str]:
        """Fetch up to *max_files* files as ``{path: content}``.

        Files that fail to fetch or decode (binaries) are logged and skipped.
        """
        files: dict[str, str] = {}

        def walk(path: str) -> None:
            for item in self.fetch_repository_contents(owner, repo, path, branch):
                if len(files) >= max_files:
                    return
                if item.get("type") == "file":
                    try:
                        files[item["path"]] = self.fetch_file_content(
                            owner, repo, item["path"], branch
                        )
                    except (GitHubError, ValueError) as e:
                        log.warning("Skipping %s/%s:%s (%s)", owner, repo, item["path"], e)
                elif item.get("type") == "dir":
                    walk(item["path"])

        walk("")
        log.info("Cloned %d files from %s/%s@%s", len(files), owner, repo, branch or "default")
        return files

    # -- git data --

    def get_ref_sha(self, owner: str, repo: str, branch: str) -> str | None:
        data = self._request(
            "GET", f"/repos/{owner}/{repo}/git/ref/heads/{branch}", allow_404=True
        )
        if data is None:
            return None
        return data["object"]["sha"]

    def get_commit(self, owner: str, repo: str, sha: str) -> dict:
        return self._request("GET", f"/repos/{owner}/{repo}/git/commits/{sha}")

    def create_branch(self, owner: str, repo: str, branch: str, from_sha: str) -> str:
        data = self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/refs",
            json={"ref": f"refs/heads/{branch}", "sha": from_sha},
        )
        return data["object"]["sha"]

    def get_or_create_branch(self, owner: str, repo: str, branch: str, base_branch: str) -> str:
        """Head SHA of *branch*, branching it from *base_branch* if it does not exist."""
        head = self.get_ref_sha(owner, repo, branch)
        if head is not None:
            return head
        base_sha = self.get_ref_sha(owner, repo, base_branch)
        if base_sha is None:
            raise GitHubError(f"Base branch '{base_branch}' not found in {owner}/{repo}", 404)
        log.info("Creating branch %s from %s (%s)", branch, base_branch, base_sha[:7])
        return self.create_branch(owner, repo, branch, base_sha)

    def create_tree(
        self, owner: str, repo: str, base_tree: str, changes: list[PublishChange]
    ) -> str:
        data = self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/trees",
            json={"base_tree": base_tree, "tree": build_tree_entries(changes)},
        )
        return data["sha"]

    def create_commit(
        self, owner: str, repo: str, message: str, tree_sha: str, parents: list[str]
    ) -> str:
        data = self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/commits",
            json={"message": message, "tree": tree_sha, "parents": parents},
        )
        return data["sha"]

    def update_branch_ref(self, owner: str, repo: str, branch: str, sha: str) -> None:
        self._request(
            "PATCH",
            f"/repos/{owner}/{repo}/git/refs/heads/{branch}",
            json={"sha": sha, "force": False},
        )

    def find_open_pull_request(self, owner: str, repo: str, branch: str) -> dict | None:
        data = self._request(
            "GET",
            f"/repos/{owner}/{repo}/pulls",
            params={"head": f"{owner}:{branch}", "state": "open"},
        )
        return data[0] if data else None

    def open_pull_request(
        self, owner: str, repo: str, *, title: str, head: str, base: str, body: str
    ) -> dict:
        return self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "head": head, "base": base, "body": body},
        )

    # -- publish --

    def publish_agent_changes(
        self,
        owner: str,
        repo: str,
        *,
        task: str,
        base_branch: str,
        branch_name: str,
        commit_message: str,
        pr_title: str,
        pr_body: str,
        changes: list[PublishChange],
    ) -> PublishResult:
        """Commit *changes* on the task's branch and open (or reuse) its pull request.

        The branch must be the deterministic one for ``task``/``base_branch``.
        A branch that already exists is committed on top of, not recreated.
        """
        if not changes:
            raise ValueError("No changes to publish.")
        if branch_name == base_branch:
            raise ValueError("Branch name cannot match the base branch.")
        expected = build_deterministic_branch_name(task, base_branch)
        if branch_name != expected:
            raise BranchNameMismatchError("Branch name mismatch for this task.")

        self.ensure_repo_access(owner, repo)
        head_sha = self.get_or_create_branch(owner, repo, branch_name, base_branch)
        base_tree = self.get_commit(owner, repo, head_sha)["tree"]["sha"]
        tree_sha = self.create_tree(owner, repo, base_tree, changes)
        commit_sha = self.create_commit(owner, repo, commit_message, tree_sha, [head_sha])
        self.update_branch_ref(owner, repo, branch_name, commit_sha)

        pr = self.find_open_pull_request(owner, repo, branch_name)
        if pr is None:
            pr = self.open_pull_request(
                owner, repo, title=pr_title, head=branch_name, base=base_branch, body=pr_body
            )
        else:
            log.info("Reusing open PR #%s for %s", pr["number"], branch_name)
        log.info(
            "Published %d change(s) to %s/%s@%s (commit %s)",
            len(changes),
            owner,
            repo,
            branch_name,
            commit_sha[:7],
        )
        return PublishResult(
            branch_name=branch_name,
            commit_sha=commit_sha,
            pr_url=pr["html_url"],
            pr_number=pr["number"],
        )
