"""GitHub issue and PR operations via the `gh` CLI."""

from __future__ import annotations

import json
import logging
import re
import subprocess
from pathlib import Path
from typing import Any

from rite.models import ChangeRequest, WorkItem

logger = logging.getLogger(__name__)

PR_FIELDS = (
    "number,headRefName,baseRefName,headRefOid,state,isDraft,mergeable,title,body,url"
)


class PRNotFoundError(Exception):
    """Raised when no PR is found for the given branch or number."""

    def __init__(self, ref: str | int) -> None:
        self.ref = ref
        super().__init__(f"No PR found for '{ref}'.")


class GitHubUnavailableError(Exception):
    """Raised when the `gh` CLI is unavailable or returns an error."""

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        super().__init__(
            f"GitHub CLI unavailable: {reason}" if reason else "GitHub CLI unavailable."
        )


def _gh(args: list[str], cwd: str | Path | None = None, timeout: int = 60) -> str:
    try:
        result = subprocess.run(
            ["gh", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise GitHubUnavailableError("gh not installed")
    except subprocess.TimeoutExpired:
        raise GitHubUnavailableError(f"gh {args[0]} {args[1]} timed out")
    except subprocess.CalledProcessError as e:
        raise GitHubUnavailableError(e.stderr.strip() or f"exit {e.returncode}")
    return result.stdout


def _gh_json(args: list[str], cwd: str | Path | None = None) -> Any:
    output = _gh(args, cwd=cwd)
    try:
        return json.loads(output)
    except json.JSONDecodeError:
        raise GitHubUnavailableError(f"unparseable output from gh {args[0]}")


def _number_from_url(url: str) -> int:
    match = re.search(r"/(\d+)\s*$", url.strip())
    if not match:
        raise GitHubUnavailableError(f"unexpected gh output: {url.strip()!r}")
    return int(match.group(1))


def _to_change_request(data: dict[str, Any]) -> ChangeRequest:
    return ChangeRequest(
        number=data["number"],
        branch=data.get("headRefName", ""),
        base=data.get("baseRefName", "main"),
        head_oid=data.get("headRefOid", ""),
        state=data.get("state", "OPEN").upper(),
        draft=data.get("isDraft", False),
        mergeable=data.get("mergeable") or "UNKNOWN",
        title=data.get("title", ""),
        body=data.get("body") or "",
        url=data.get("url"),
    )


# -- Issues --


def get_issue(repo_path: str | Path, number: int) -> WorkItem:
    data = _gh_json(
        ["issue", "view", str(number), "--json", "number,title,body,state,labels"],
        cwd=repo_path,
    )
    return WorkItem(
        number=data["number"],
        title=data["title"],
        body=data.get("body") or "",
        state=data.get("state", "OPEN").upper(),
        labels=[label["name"] for label in data.get("labels", [])],
    )


def close_issue(repo_path: str | Path, number: int, comment: str | None = None) -> None:
    args = ["issue", "close", str(number)]
    if comment:
        args += ["--comment", comment]
    _gh(args, cwd=repo_path)


def reopen_issue(repo_path: str | Path, number: int) -> None:
    _gh(["issue", "reopen", str(number)], cwd=repo_path)


def ensure_label(repo_path: str | Path, name: str, color: str = "d4c5f9") -> None:
    """Create a label if missing. Failures are logged."""
    try:
        _gh(["label", "create", name, "--color", color, "--force"], cwd=repo_path)
    except GitHubUnavailableError as e:
        logger.warning("Could not ensure label %s: %s", name, e)


def create_issue(
    repo_path: str | Path, title: str, body: str, labels: list[str] | None = None
) -> int:
    """Create an issue and return its number."""
    args = ["issue", "create", "--title", title, "--body", body]
    for label in labels or []:
        ensure_label(repo_path, label)
        args += ["--label", label]
    return _number_from_url(_gh(args, cwd=repo_path))


def search_open_issues(repo_path: str | Path, title_query: str) -> list[dict[str, Any]]:
    """Open issues whose title contains ``title_query``."""
    data = _gh_json(
        [
            "issue",
            "list",
            "--state",
            "open",
            "--search",
            f'in:title "{title_query}"',
            "--json",
            "number,title,state",
        ],
        cwd=repo_path,
    )
    return [issue for issue in data if title_query.lower() in issue["title"].lower()]


def list_issues_by_label(
    repo_path: str | Path, label: str, state: str = "open"
) -> list[int]:
    data = _gh_json(
        [
            "issue",
            "list",
            "--label",
            label,
            "--state",
            state,
            "--json",
            "number",
        ],
        cwd=repo_path,
    )
    return [issue["number"] for issue in data]


# -- Pull requests --


def list_prs(repo_path: str | Path, state: str = "open") -> list[ChangeRequest]:
    data = _gh_json(
        ["pr", "list", "--state", state, "--json", PR_FIELDS, "--limit", "100"],
        cwd=repo_path,
    )
    return [_to_change_request(pr) for pr in data]


def find_pr_for_branch(
    repo_path: str | Path, branch: str, state: str = "open"
) -> ChangeRequest | None:
    data = _gh_json(
        [
            "pr",
            "list",
            "--head",
            branch,
            "--state",
            state,
            "--json",
            PR_FIELDS,
            "--limit",
            "1",
        ],
        cwd=repo_path,
    )
    if not data:
        return None
    return _to_change_request(data[0])


def get_pr(repo_path: str | Path, number: int) -> ChangeRequest:
    try:
        data = _gh_json(["pr", "view", str(number), "--json", PR_FIELDS], cwd=repo_path)
    except GitHubUnavailableError as e:
        if "no pull requests found" in e.reason.lower():
            raise PRNotFoundError(number)
        raise
    return _to_change_request(data)


def create_pr(
    repo_path: str | Path,
    branch: str,
    base: str,
    title: str,
    body: str,
    draft: bool = False,
) -> ChangeRequest:
    """Create a PR for ``branch``, reusing an existing open one."""
    existing = find_pr_for_branch(repo_path, branch)
    if existing is not None:
        logger.info("Reusing open PR #%s for %s", existing.number, branch)
        return existing

    args = [
        "pr",
        "create",
        "--head",
        branch,
        "--base",
        base,
        "--title",
        title,
        "--body",
        body,
    ]
    if draft:
        args.append("--draft")
    number = _number_from_url(_gh(args, cwd=repo_path))
    logger.info("Created PR #%s for %s", number, branch)
    return get_pr(repo_path, number)


def mark_ready(repo_path: str | Path, number: int) -> None:
    _gh(["pr", "ready", str(number)], cwd=repo_path)


def pr_comments(repo_path: str | Path, number: int) -> list[dict[str, Any]]:
    """Comments on a PR as dicts with author, body and createdAt."""
    data = _gh_json(["pr", "view", str(number), "--json", "comments"], cwd=repo_path)
    return [
        {
            "author": (c.get("author") or {}).get("login", ""),
            "body": c.get("body") or "",
            "createdAt": c.get("createdAt", ""),
        }
        for c in data.get("comments", [])
    ]


def comment_pr(repo_path: str | Path, number: int, body: str) -> None:
    _gh(["pr", "comment", str(number), "--body", body], cwd=repo_path)


def close_pr(repo_path: str | Path, number: int, comment: str | None = None) -> None:
    args = ["pr", "close", str(number)]
    if comment:
        args += ["--comment", comment]
    _gh(args, cwd=repo_path)


def merge_pr(repo_path: str | Path, number: int, expected_head: str) -> None:
    """Squash-merge a PR, rejected by GitHub if the head moved."""
    _gh(
        [
            "pr",
            "merge",
            str(number),
            "--squash",
            "--delete-branch",
            "--match-head-commit",
            expected_head,
        ],
        cwd=repo_path,
        timeout=120,
    )


def pr_diff(repo_path: str | Path, number: int) -> str:
    return _gh(["pr", "diff", str(number)], cwd=repo_path, timeout=120)


def pr_files(repo_path: str | Path, number: int) -> list[str]:
    data = _gh_json(["pr", "view", str(number), "--json", "files"], cwd=repo_path)
    return [f["path"] for f in data.get("files", [])]


def checks_failing(repo_path: str | Path, number: int) -> bool:
    """True if any completed status check on the PR concluded unsuccessfully."""
    data = _gh_json(
        ["pr", "view", str(number), "--json", "statusCheckRollup"], cwd=repo_path
    )
    for check in data.get("statusCheckRollup") or []:
        conclusion = (check.get("conclusion") or check.get("state") or "").upper()
        if conclusion in ("FAILURE", "ERROR", "TIMED_OUT", "CANCELLED"):
            return True
    return False


def auth_ok() -> bool:
    """True if `gh auth status` reports a usable login."""
    try:
        _gh(["auth", "status"], timeout=30)
    except GitHubUnavailableError:
        return False
    return True
