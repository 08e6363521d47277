from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_DIR = Path.home() / ".config" / "rite"
CONFIG_FILE = CONFIG_DIR / "config.toml"

DEFAULT_WORKTREE_DIR = Path.home() / ".local" / "share" / "rite" / "worktrees"

# Per-project state lives here (snapshots, cache, notes, session).
STATE_DIR_NAME = ".rite"

DEFAULT_CONFIG = """\
[workflow]
max_retries = 3
stale_branch_threshold = 10
# branch_prefix = "rite"

[session]
max_issues = 8
max_hours = 4

[claude]
dev_model = "claude-sonnet-4-5-20250929"
review_model = "claude-opus-4-5-20251101"
# Seconds before a development session is killed and its work salvaged.
timeout = 7200
assessment_timeout = 120

[review]
poll_interval = 10
poll_max_wait = 300

[worktrees]
base_dir = "~/.local/share/rite/worktrees"

[notifications]
# Shell command run for each notification, with RITE_NOTIFY_* in its env.
# command = "notify-send \\"$RITE_NOTIFY_TITLE\\" \\"$RITE_NOTIFY_MESSAGE\\""

# [blockers]
# bypass = false
# protected_scripts = ["deploy.sh", "release.sh"]
# infrastructure = "infrastructure/|cdk/|terraform/"
"""

DEFAULT_PATTERNS = {
    "infrastructure": (
        r"infrastructure/|cdk/|terraform/|cloudformation/|\.github/workflows/|\.claude/"
    ),
    "migrations": r"prisma/migrations/|migrations/|db/migrate/|alembic/",
    "auth": r"auth/|Auth|authentication|authorization|cognito|oauth",
    "docs": r"Technical-Specs|Architecture|CLAUDE\.md|ARCHITECTURE\.md",
    "expensive": r"\b(rds|aurora|nat|ec2|fargate|sagemaker|redshift)\b",
}

DEFAULT_PROTECTED_SCRIPTS = [
    "deploy.sh",
    "release.sh",
    "setup-env.sh",
    "bootstrap.sh",
]

# Environment overrides: RITE_<NAME> -> (attribute, type)
_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "RITE_MAX_RETRIES": ("max_retries", int),
    "RITE_MAX_ISSUES_PER_SESSION": ("max_issues_per_session", int),
    "RITE_MAX_SESSION_HOURS": ("max_session_hours", float),
    "RITE_ASSESSMENT_TIMEOUT": ("assessment_timeout", int),
    "RITE_CLAUDE_TIMEOUT": ("claude_timeout", int),
    "RITE_STALE_BRANCH_THRESHOLD": ("stale_branch_threshold", int),
    "RITE_DEV_MODEL": ("dev_model", str),
    "RITE_REVIEW_MODEL": ("review_model", str),
    "RITE_NOTIFY_COMMAND": ("notify_command", str),
}


def _load_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "rb") as f:
        return tomllib.load(f)


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge two parsed TOML documents, section by section."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


@dataclass
class Config:
    project_root: Path
    max_retries: int = 3
    max_issues_per_session: int = 8
    max_session_hours: float = 4
    assessment_timeout: int = 120
    claude_timeout: int = 7200
    stale_branch_threshold: int = 10
    dev_model: str = "claude-sonnet-4-5-20250929"
    review_model: str = "claude-opus-4-5-20251101"
    worktree_dir: Path = DEFAULT_WORKTREE_DIR
    branch_prefix: str = "rite"
    review_poll_interval: float = 10
    review_poll_max_wait: float = 300
    notify_command: str | None = None
    followup_label: str = "tech-debt"
    bypass_blockers: bool = False
    patterns: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PATTERNS))
    protected_scripts: list[str] = field(
        default_factory=lambda: list(DEFAULT_PROTECTED_SCRIPTS)
    )

    @property
    def state_dir(self) -> Path:
        return self.project_root / STATE_DIR_NAME

    @classmethod
    def load(cls, project_root: Path | str | None = None) -> Config:
        root = Path(project_root) if project_root else Path.cwd()
        data = _merge(
            _load_toml(CONFIG_FILE),
            _load_toml(root / STATE_DIR_NAME / "config.toml"),
        )

        workflow = data.get("workflow", {})
        session = data.get("session", {})
        claude = data.get("claude", {})
        review = data.get("review", {})
        worktrees = data.get("worktrees", {})
        notifications = data.get("notifications", {})
        blockers = data.get("blockers", {})

        patterns = dict(DEFAULT_PATTERNS)
        for key in DEFAULT_PATTERNS:
            if key in blockers:
                patterns[key] = blockers[key]

        config = cls(
            project_root=root,
            max_retries=workflow.get("max_retries", 3),
            stale_branch_threshold=workflow.get("stale_branch_threshold", 10),
            branch_prefix=workflow.get("branch_prefix", "rite"),
            followup_label=workflow.get("followup_label", "tech-debt"),
            max_issues_per_session=session.get("max_issues", 8),
            max_session_hours=session.get("max_hours", 4),
            dev_model=claude.get("dev_model", "claude-sonnet-4-5-20250929"),
            review_model=claude.get("review_model", "claude-opus-4-5-20251101"),
            claude_timeout=claude.get("timeout", 7200),
            assessment_timeout=claude.get("assessment_timeout", 120),
            review_poll_interval=review.get("poll_interval", 10),
            review_poll_max_wait=review.get("poll_max_wait", 300),
            worktree_dir=Path(
                worktrees.get("base_dir", str(DEFAULT_WORKTREE_DIR))
            ).expanduser(),
            notify_command=notifications.get("command"),
            bypass_blockers=blockers.get("bypass", False),
            patterns=patterns,
            protected_scripts=blockers.get(
                "protected_scripts", list(DEFAULT_PROTECTED_SCRIPTS)
            ),
        )

        for env_name, (attr, cast) in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                try:
                    setattr(config, attr, cast(value))
                except ValueError:
                    raise ValueError(f"Invalid value for {env_name}: {value!r}")
        if _env_flag("RITE_BYPASS_BLOCKERS"):
            config.bypass_blockers = True

        if config.max_retries < 0:
            raise ValueError("max_retries must be >= 0.")
        return config


def get_config(project_root: Path | str | None = None) -> Config:
    return Config.load(project_root)


def ensure_config() -> Path:
    """Create default config file if it doesn't exist. Returns config path."""
    if not CONFIG_FILE.exists():
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        CONFIG_FILE.write_text(DEFAULT_CONFIG)
    return CONFIG_FILE
