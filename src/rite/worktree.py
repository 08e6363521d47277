from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# Merges that only bring mainline into a work branch. They never count as
# fresh work when comparing review timestamps against commit times.
MAINLINE_SYNC_PATTERNS = [
    re.compile(r"^Merge branch '?(main|master|develop)'?"),
    re.compile(r"^Merge branch .*(main|master|develop)"),
    re.compile(r"^Merge pull request .* from .*/main"),
    re.compile(r"^Merge remote-tracking branch '?origin/(main|master|develop)'?"),
]

_PUSH_REJECTED_MARKERS = ("[rejected]", "non-fast-forward", "fetch first")


class PushRejectedError(Exception):
    """Raised when the remote refuses a push because it moved ahead."""

    def __init__(self, branch: str, output: str = "") -> None:
        self.branch = branch
        self.output = output
        super().__init__(f"Push of '{branch}' rejected: remote has newer commits.")


@dataclass
class DivergenceInfo:
    """Remote-ahead state of a branch relative to the local copy."""

    ahead_remote: int  # commits on origin/<branch> missing locally
    sync_commits: int
    foreign_commits: int

    @property
    def diverged(self) -> bool:
        return self.ahead_remote > 0

    @property
    def has_foreign_edits(self) -> bool:
        return self.foreign_commits > 0

    @property
    def kind(self) -> str:
        if not self.diverged:
            return "none"
        return "foreign_edits" if self.has_foreign_edits else "sync_only"


def _git(
    path: str | Path, *args: str, check: bool = True
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", "-C", str(path), *args],
        capture_output=True,
        text=True,
        check=check,
    )


def sanitize_branch_name(branch: str) -> str:
    """Sanitize a branch name for use as a directory name."""
    name = branch.replace("/", "-")
    name = re.sub(r"[^\w\-.]", "", name)
    name = name.strip("-.")
    return name or "worktree"


def slugify(text: str) -> str:
    """Convert text to a branch-safe slug (lowercase, dashes, no special chars)."""
    text = text.lower().strip()
    text = re.sub(r"[^a-z0-9]+", "-", text)
    text = text.strip("-")
    return text or "task"


def branch_for_issue(prefix: str, number: int, title: str) -> str:
    """Branch name for an issue, e.g. rite/issue-42-fix-login."""
    return f"{prefix}/issue-{number}-{slugify(title)[:40].strip('-')}"


def get_current_repo() -> Path | None:
    """Return the main repository root if cwd is inside a git repo.

    When inside a worktree, resolves to the main repository (not the worktree).
    """
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--git-common-dir"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
    git_common_dir = Path(result.stdout.strip())
    if not git_common_dir.is_absolute():
        git_common_dir = (Path.cwd() / git_common_dir).resolve()
    return git_common_dir.parent


def get_default_branch(repo_path: str | Path) -> str:
    """Return the default branch name (main or master) for a repo."""
    result = _git(repo_path, "symbolic-ref", "refs/remotes/origin/HEAD", check=False)
    if result.returncode == 0:
        # refs/remotes/origin/main -> main
        return result.stdout.strip().rsplit("/", 1)[-1]

    for branch in ("main", "master"):
        result = _git(repo_path, "rev-parse", "--verify", branch, check=False)
        if result.returncode == 0:
            return branch

    return "main"


def create_worktree(
    repo_path: str | Path, branch: str, base_dir: Path, base: str | None = None
) -> Path:
    """Create a git worktree for a branch, creating the branch if needed.

    Returns the worktree path.
    """
    repo_path = Path(repo_path)
    worktree_path = base_dir / repo_path.name / sanitize_branch_name(branch)
    worktree_path.parent.mkdir(parents=True, exist_ok=True)

    local = _git(repo_path, "rev-parse", "--verify", branch, check=False)
    cmd = ["worktree", "add"]
    if local.returncode == 0:
        cmd += [str(worktree_path), branch]
    else:
        remote = _git(
            repo_path, "rev-parse", "--verify", f"origin/{branch}", check=False
        )
        if remote.returncode == 0:
            cmd += ["-b", branch, str(worktree_path), f"origin/{branch}"]
        else:
            start = base or get_default_branch(repo_path)
            cmd += ["-b", branch, str(worktree_path), start]

    _git(repo_path, *cmd)
    logger.info("Created worktree %s for %s", worktree_path, branch)
    return worktree_path


def find_worktree(repo_path: str | Path, branch: str) -> Path | None:
    """Return the worktree path with ``branch`` checked out, if any."""
    result = _git(repo_path, "worktree", "list", "--porcelain", check=False)
    if result.returncode != 0:
        return None

    current: Path | None = None
    for line in result.stdout.splitlines():
        if line.startswith("worktree "):
            current = Path(line[len("worktree ") :])
        elif line == f"branch refs/heads/{branch}" and current is not None:
            return current
    return None


def remove_worktree(repo_path: str | Path, worktree_path: str | Path) -> None:
    """Force-remove a worktree. Raises CalledProcessError on failure."""
    _git(repo_path, "worktree", "remove", "--force", str(worktree_path))
    _git(repo_path, "worktree", "prune", check=False)


def delete_branch(repo_path: str | Path, branch: str, remote: bool = False) -> None:
    """Delete a local branch, and optionally its remote counterpart.

    Failures are logged, never raised.
    """
    result = _git(repo_path, "branch", "-D", branch, check=False)
    if result.returncode != 0:
        logger.warning("Could not delete branch %s: %s", branch, result.stderr.strip())
    if remote:
        result = _git(repo_path, "push", "origin", "--delete", branch, check=False)
        if result.returncode != 0:
            logger.warning(
                "Could not delete remote branch %s: %s", branch, result.stderr.strip()
            )


def current_branch(path: str | Path) -> str | None:
    result = _git(path, "rev-parse", "--abbrev-ref", "HEAD", check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def head_oid(path: str | Path, ref: str = "HEAD") -> str | None:
    result = _git(path, "rev-parse", "--verify", ref, check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def has_uncommitted_changes(path: str | Path, check: bool = False) -> bool:
    """Check whether the working copy has staged, unstaged or untracked changes.

    With ``check``, a failing ``git status`` raises instead of reading as clean.
    """
    result = _git(path, "status", "--porcelain", check=check)
    return result.returncode == 0 and bool(result.stdout.strip())


def commit_all(path: str | Path, message: str) -> bool:
    """Stage and commit everything. Returns False if there was nothing to commit."""
    if not has_uncommitted_changes(path):
        return False
    _git(path, "add", "-A")
    _git(path, "commit", "-m", message)
    return True


def fetch(path: str | Path, *refs: str) -> bool:
    result = _git(path, "fetch", "origin", *refs, check=False)
    if result.returncode != 0:
        logger.warning("git fetch failed: %s", result.stderr.strip())
        return False
    return True


def push(path: str | Path, branch: str, set_upstream: bool = False) -> None:
    """Push a branch without force.

    Raises PushRejectedError when the remote moved ahead, and
    CalledProcessError for any other failure.
    """
    args = ["push"]
    if set_upstream:
        args.append("-u")
    args += ["origin", branch]
    result = _git(path, *args, check=False)
    if result.returncode == 0:
        return
    output = result.stderr + result.stdout
    if any(marker in output for marker in _PUSH_REJECTED_MARKERS):
        raise PushRejectedError(branch, output)
    raise subprocess.CalledProcessError(
        result.returncode, result.args, result.stdout, result.stderr
    )


def is_mainline_sync_merge(subject: str) -> bool:
    return any(pattern.search(subject) for pattern in MAINLINE_SYNC_PATTERNS)


def latest_work_commit_time(path: str | Path, ref: str = "HEAD") -> datetime | None:
    """Commit time (UTC) of the newest commit on ``ref`` that is real work.

    Mainline-sync merges are skipped so that a routine sync never masks
    a review that was posted after the last genuine push.
    Returns None when the log contains only sync merges. Raises
    CalledProcessError when the log cannot be read.
    """
    result = _git(path, "log", "--format=%ct%x09%s", "-n", "200", ref)
    for line in result.stdout.splitlines():
        epoch, _, subject = line.partition("\t")
        if is_mainline_sync_merge(subject):
            continue
        return datetime.fromtimestamp(int(epoch), tz=timezone.utc)
    return None


def count_commits(path: str | Path, revision_range: str) -> int | None:
    result = _git(path, "rev-list", "--count", revision_range, check=False)
    if result.returncode != 0:
        return None
    return int(result.stdout.strip())


def commits_behind(path: str | Path, base: str) -> int | None:
    """Count commits on origin/<base> since the branch forked from it."""
    merge_base = _git(path, "merge-base", "HEAD", f"origin/{base}", check=False)
    if merge_base.returncode != 0:
        return None
    return count_commits(path, f"{merge_base.stdout.strip()}..origin/{base}")


def is_ancestor(path: str | Path, commit: str, ref: str) -> bool:
    result = _git(path, "merge-base", "--is-ancestor", commit, ref, check=False)
    return result.returncode == 0


def detect_divergence(path: str | Path, branch: str, base: str) -> DivergenceInfo:
    """Compare HEAD with origin/<branch> after fetching.

    Remote-only commits already reachable from origin/<base>, or that are
    mainline-sync merges, count as sync. Anything else is a foreign edit.
    """
    fetch(path, branch, base)
    result = _git(
        path, "log", "--format=%H%x09%s", f"HEAD..origin/{branch}", check=False
    )
    if result.returncode != 0:
        return DivergenceInfo(ahead_remote=0, sync_commits=0, foreign_commits=0)

    sync = foreign = 0
    for line in result.stdout.splitlines():
        sha, _, subject = line.partition("\t")
        if is_mainline_sync_merge(subject) or is_ancestor(path, sha, f"origin/{base}"):
            sync += 1
        else:
            foreign += 1
    return DivergenceInfo(
        ahead_remote=sync + foreign, sync_commits=sync, foreign_commits=foreign
    )


def merge_ref(path: str | Path, ref: str) -> bool:
    """Merge ``ref`` into the checked-out branch.

    On conflict the merge is aborted and False is returned, leaving the
    branch exactly as it was.
    """
    result = _git(path, "merge", ref, "--no-edit", check=False)
    if result.returncode == 0:
        return True
    logger.warning("Merge of %s failed: %s", ref, result.stdout.strip())
    _git(path, "merge", "--abort", check=False)
    return False


def stash(path: str | Path) -> bool:
    """Stash local changes. Returns True if something was stashed."""
    if not has_uncommitted_changes(path):
        return False
    _git(path, "stash", "push", "--include-untracked", "-m", "rite: auto-stash")
    return True


def stash_pop(path: str | Path) -> None:
    result = _git(path, "stash", "pop", check=False)
    if result.returncode != 0:
        logger.warning(
            "Could not restore stashed changes in %s (kept in stash list)", path
        )


def has_diff_against(path: str | Path, base: str) -> bool:
    """True when the branch carries changes relative to origin/<base>."""
    result = _git(path, "diff", "--quiet", f"origin/{base}...HEAD", check=False)
    return result.returncode == 1


def changed_files(path: str | Path, base: str) -> list[str]:
    result = _git(path, "diff", "--name-only", f"origin/{base}...HEAD", check=False)
    if result.returncode != 0:
        return []
    return [line for line in result.stdout.splitlines() if line]


def commit_subjects(path: str | Path, revision_range: str) -> list[str]:
    result = _git(path, "log", "--format=%s", revision_range, check=False)
    if result.returncode != 0:
        return []
    return [line for line in result.stdout.splitlines() if line]
