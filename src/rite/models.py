from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

SEVERITIES = ("CRITICAL", "HIGH", "MEDIUM", "LOW")


class Phase(str, Enum):
    PRE_START = "pre_start"
    DEVELOPMENT = "development"
    PUSH_REVIEW = "push_review"
    ASSESS_RESOLVE = "assess_resolve"
    MERGE = "merge"
    COMPLETION = "completion"

    @property
    def order(self) -> int:
        return list(Phase).index(self)


class ItemState(str, Enum):
    ACTIONABLE_NOW = "ACTIONABLE_NOW"
    ACTIONABLE_LATER = "ACTIONABLE_LATER"
    DISMISSED = "DISMISSED"


@dataclass
class WorkItem:
    number: int
    title: str
    body: str = ""
    state: str = "OPEN"  # OPEN, CLOSED
    labels: list[str] = field(default_factory=list)


@dataclass
class ChangeRequest:
    number: int
    branch: str
    base: str
    head_oid: str
    state: str  # OPEN, CLOSED, MERGED
    draft: bool = False
    mergeable: str = "UNKNOWN"  # MERGEABLE, CONFLICTING, UNKNOWN
    title: str = ""
    body: str = ""
    url: str | None = None

    @property
    def is_open(self) -> bool:
        return self.state == "OPEN"


@dataclass
class ReviewArtifact:
    author: str
    body: str
    created_at: str  # ISO-8601 UTC, e.g. 2026-01-31T12:00:00Z
    kind: str  # review, assessment, followup-marker


@dataclass
class ClassificationItem:
    title: str
    state: ItemState
    severity: str
    category: str = "CodeQuality"
    reasoning: str = ""
    context: str = ""
    fix_effort: str | None = None
    defer_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClassificationItem:
        return cls(
            title=data["title"],
            state=ItemState(data["state"]),
            severity=data["severity"],
            category=data.get("category", "CodeQuality"),
            reasoning=data.get("reasoning", ""),
            context=data.get("context", ""),
            fix_effort=data.get("fix_effort"),
            defer_reason=data.get("defer_reason"),
        )


@dataclass
class ClassificationResult:
    items: list[ClassificationItem]
    model: str
    source: str = "assistant"  # assistant, cache, fallback

    def by_state(self, state: ItemState) -> list[ClassificationItem]:
        return [item for item in self.items if item.state == state]

    @property
    def now(self) -> list[ClassificationItem]:
        return self.by_state(ItemState.ACTIONABLE_NOW)

    @property
    def later(self) -> list[ClassificationItem]:
        return self.by_state(ItemState.ACTIONABLE_LATER)

    @property
    def dismissed(self) -> list[ClassificationItem]:
        return self.by_state(ItemState.DISMISSED)


@dataclass
class WorkflowSnapshot:
    work_item: int
    phase: Phase
    retry_count: int = 0
    pr_number: int | None = None
    worktree_path: str | None = None
    mode: str = "supervised"  # supervised, auto
    timestamp: str = ""
    vcs_status: str = ""
    reroute_count: int = 0
    version: int = 1

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowSnapshot:
        return cls(
            work_item=int(data["work_item"]),
            phase=Phase(data["phase"]),
            retry_count=int(data.get("retry_count", 0)),
            pr_number=data.get("pr_number"),
            worktree_path=data.get("worktree_path"),
            mode=data.get("mode", "supervised"),
            timestamp=data.get("timestamp", ""),
            vcs_status=data.get("vcs_status", ""),
            reroute_count=int(data.get("reroute_count", 0)),
            version=int(data.get("version", 1)),
        )


@dataclass
class BlockerDecision:
    type: str
    urgency: str  # urgent, high, normal
    work_item: int
    details: str = ""
    approved: bool = False


@dataclass
class SeveritySummary:
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0

    @property
    def total(self) -> int:
        return self.critical + self.high + self.medium + self.low

    @property
    def is_clean(self) -> bool:
        return self.total == 0


# -- Assessment outcomes --


@dataclass
class Merge:
    tracking_issue: int | None = None


@dataclass
class FixAndRetry:
    items: list[ClassificationItem] = field(default_factory=list)


@dataclass
class Escalate:
    issue: int | None = None
    items: list[ClassificationItem] = field(default_factory=list)


@dataclass
class StaleReroute:
    reason: str = ""


AssessmentOutcome = Merge | FixAndRetry | Escalate | StaleReroute
