"""Claude Code sessions: development/fix runs and --print review runs."""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from rite.models import ClassificationItem, WorkItem
from rite.worktree import commit_all

logger = logging.getLogger(__name__)

# Development sessions only edit the working copy. Every version-control
# and GitHub write goes through the workflow, never through the assistant.
DISALLOWED_TOOLS = [
    "Bash(git push:*)",
    "Bash(git commit:*)",
    "Bash(git reset:*)",
    "Bash(git rebase:*)",
    "Bash(git merge:*)",
    "Bash(git checkout:*)",
    "Bash(git branch -D:*)",
    "Bash(git worktree:*)",
    "Bash(gh:*)",
]

_CREDENTIAL_MARKERS = (
    "oauth token has expired",
    "invalid api key",
    "please run /login",
    "authentication_error",
)

SALVAGE_MESSAGE = "WIP: salvage after session timeout"


class ClaudeSessionError(Exception):
    """Raised when a Claude session fails, times out, or returns nothing."""

    def __init__(
        self, role: str, reason: str, credentials_expired: bool = False
    ) -> None:
        self.role = role
        self.reason = reason
        self.credentials_expired = credentials_expired
        super().__init__(f"Claude {role} session failed: {reason}")


@dataclass
class SessionResult:
    completed: bool
    timed_out: bool = False
    salvaged: bool = False
    output: str = ""


def _credentials_expired(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _CREDENTIAL_MARKERS)


def run_print(
    prompt: str,
    model: str,
    timeout: int,
    cwd: str | Path | None = None,
    role: str = "review",
    attempts: int = 2,
) -> str:
    """Run ``claude --print`` with the prompt on stdin and return stdout.

    An empty response is retried (the CLI occasionally exits 0 with no
    output on transient API errors).
    """
    for attempt in range(1, attempts + 1):
        try:
            result = subprocess.run(
                ["claude", "--print", "--model", model],
                input=prompt,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError:
            raise ClaudeSessionError(role, "claude CLI not installed")
        except subprocess.TimeoutExpired:
            raise ClaudeSessionError(role, f"timed out after {timeout}s")

        if result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip()
            raise ClaudeSessionError(
                role,
                f"exit {result.returncode}: {detail[:200]}",
                credentials_expired=_credentials_expired(detail),
            )
        output = result.stdout.strip()
        if output:
            return output
        if attempt < attempts:
            logger.warning(
                "Claude returned empty %s output (attempt %d/%d), retrying",
                role,
                attempt,
                attempts,
            )
            time.sleep(3)
    raise ClaudeSessionError(role, f"empty output after {attempts} attempts")


def development_command(model: str, prompt: str, auto: bool) -> list[str]:
    cmd = ["claude", "--model", model, "--disallowedTools", *DISALLOWED_TOOLS]
    if auto:
        cmd = [
            "claude",
            "--print",
            "--dangerously-skip-permissions",
            "--model",
            model,
            "--disallowedTools",
            *DISALLOWED_TOOLS,
        ]
    # -- ends the variadic --disallowedTools list before the prompt.
    return [*cmd, "--", prompt]


def run_development_session(
    worktree_path: str | Path,
    prompt: str,
    model: str,
    timeout: int,
    auto: bool,
) -> SessionResult:
    """Run a development (or fix) session in the worktree.

    Unsupervised sessions run headless; supervised ones attach to the
    terminal. On timeout the process is killed and any changes it left
    behind are committed so the work survives.
    """
    cmd = development_command(model, prompt, auto)
    logger.info(
        "Starting %s development session in %s",
        "headless" if auto else "interactive",
        worktree_path,
    )
    try:
        result = subprocess.run(
            cmd,
            cwd=worktree_path,
            capture_output=auto,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise ClaudeSessionError("development", "claude CLI not installed")
    except subprocess.TimeoutExpired:
        logger.warning("Development session timed out after %ss", timeout)
        salvaged = commit_all(worktree_path, SALVAGE_MESSAGE)
        if salvaged:
            logger.info("Salvaged uncommitted changes in %s", worktree_path)
        return SessionResult(completed=False, timed_out=True, salvaged=salvaged)

    output = (result.stdout or "") if auto else ""
    if result.returncode != 0:
        detail = (result.stderr or "").strip() or output
        raise ClaudeSessionError(
            "development",
            f"exit {result.returncode}: {detail[:200]}",
            credentials_expired=_credentials_expired(detail),
        )
    return SessionResult(completed=True, output=output)


def development_prompt(issue: WorkItem, branch: str, notes: str = "") -> str:
    sections = [
        f"Implement GitHub issue #{issue.number}: {issue.title}",
        "",
        issue.body.strip() or "(no description)",
        "",
        f"You are working on branch `{branch}` in this directory.",
        "Edit files and run tests as needed. Do not commit, push, or use `gh`;",
        "the workflow records and publishes your changes.",
    ]
    if notes:
        sections += ["", "Recent security findings in this project:", notes.strip()]
    return "\n".join(sections)


def fix_prompt(issue: WorkItem, items: list[ClassificationItem], retry: int) -> str:
    lines = [
        f"Address review feedback for issue #{issue.number}: {issue.title}",
        f"(fix round {retry})",
        "",
        "Fix these items in the working copy:",
        "",
    ]
    for item in items:
        lines.append(f"- [{item.severity}] {item.title} ({item.state.value})")
        if item.reasoning:
            lines.append(f"  {item.reasoning}")
    lines += [
        "",
        "Do not commit, push, or use `gh`; the workflow handles that.",
    ]
    return "\n".join(lines)
