"""Review classification into ACTIONABLE_NOW / ACTIONABLE_LATER / DISMISSED.

Results are cached by a content hash of the review text, the model and the
project context, so an unchanged review always routes the same way.
Responses that do not follow the output contract are replaced by a
severity-only heuristic, and those heuristic results are never cached.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

from rite.claude import ClaudeSessionError, run_print
from rite.models import (
    SEVERITIES,
    ClassificationItem,
    ClassificationResult,
    ItemState,
    WorkItem,
)
from rite.review import REVIEW_DATA_RE, parse_severity_summary, strip_markers

logger = logging.getLogger(__name__)

ASSESSMENT_DATA_RE = re.compile(
    r"<!-- rite-assessment-data\s*(\{.*?\})\s*-->", re.DOTALL
)
HEADING_RE = re.compile(
    r"^###\s+(?P<title>.+?)\s+-\s+(?P<state>ACTIONABLE_NOW|ACTIONABLE_LATER|DISMISSED)\s*$"
)
FIELD_RE = re.compile(r"^\*\*(?P<name>[A-Za-z ]+):\*\*\s*(?P<value>.*)$")
SEVERITY_RE = re.compile(r"\b(CRITICAL|HIGH|MEDIUM|LOW)\b")

REQUIRED_FIELDS = ("title", "state", "severity", "category", "reasoning")

# Severities kept when the assistant cannot be used.
FALLBACK_SEVERITIES = ("CRITICAL", "HIGH")

ASSESSMENT_PROMPT = """\
You are assessing a code review. Classify EVERY finding in the review into
exactly one of ACTIONABLE_NOW, ACTIONABLE_LATER or DISMISSED.

Rules:
- Make a definitive decision for each item. Given identical input you must
  produce identical output.
- When uncertain between two states, choose the more conservative one:
  ACTIONABLE_NOW over ACTIONABLE_LATER, ACTIONABLE_LATER over DISMISSED.
- CRITICAL security findings are always ACTIONABLE_NOW.
- ACTIONABLE_NOW: security issues, bugs breaking the feature, anything within
  the issue scope, quick fixes a reasonable engineer would include.
- ACTIONABLE_LATER: valid concerns in unrelated systems, large refactors,
  public API breaks, new dependencies, anything needing design discussion.
- DISMISSED: style preferences, speculative suggestions, theoretical edge
  cases, duplicates of an ACTIONABLE_NOW item.

For each item output exactly:

### {{title}} - {{ACTIONABLE_NOW|ACTIONABLE_LATER|DISMISSED}}

**Severity:** {{CRITICAL|HIGH|MEDIUM|LOW}}
**Category:** {{Security|CodeQuality|Standards|ScopeCreep|QuickWin}}
**Reasoning:** {{1-2 sentences}}
**Fix Effort:** {{<10min|<1hr|>1hr}} (ACTIONABLE_NOW only)
**Defer Reason:** {{why it can wait}} (ACTIONABLE_LATER only)

Then end with one hidden block holding the same items as JSON:
<!-- rite-assessment-data {{"items": [{{"title": "...", "state": "...", \
"severity": "...", "category": "...", "reasoning": "...", "fix_effort": "...", \
"defer_reason": "..."}}]}} -->

ORIGINAL ISSUE SCOPE:
{issue}

PROJECT CONTEXT:
{context}

REVIEW:
{review}
"""


class ClassificationError(Exception):
    """Raised when an assessment response does not follow the output contract."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Unusable classification: {reason}")


def cache_key(review_text: str, model: str, project_context: str = "") -> str:
    context_hash = hashlib.sha256(project_context.encode()).hexdigest()
    digest = hashlib.sha256()
    for part in (review_text, model, context_hash):
        digest.update(part.encode())
        digest.update(b"\0")
    return digest.hexdigest()


class ClassificationCache:
    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"assessment-{key}.json"

    def get(self, key: str) -> ClassificationResult | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
            items = [ClassificationItem.from_dict(i) for i in data["items"]]
        except (OSError, ValueError, KeyError) as e:
            logger.warning("Discarding corrupt cache entry %s: %s", path.name, e)
            return None
        return ClassificationResult(items=items, model=data["model"], source="cache")

    def put(self, key: str, result: ClassificationResult) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        data = {"model": result.model, "items": [i.to_dict() for i in result.items]}
        self._path(key).write_text(json.dumps(data, indent=2) + "\n")


def _item_from_data(data: dict[str, Any]) -> ClassificationItem:
    missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
    if missing:
        raise ClassificationError(f"item missing {', '.join(missing)}")
    severity = str(data["severity"]).upper()
    if severity not in SEVERITIES:
        raise ClassificationError(f"unknown severity {data['severity']!r}")
    try:
        state = ItemState(str(data["state"]).upper())
    except ValueError:
        raise ClassificationError(f"unknown state {data['state']!r}")
    return ClassificationItem(
        title=str(data["title"]).strip(),
        state=state,
        severity=severity,
        category=str(data["category"]),
        reasoning=str(data["reasoning"]),
        context=str(data.get("context") or ""),
        fix_effort=data.get("fix_effort") or None,
        defer_reason=data.get("defer_reason") or None,
    )


def _parse_data_block(text: str) -> list[ClassificationItem] | None:
    match = ASSESSMENT_DATA_RE.search(text)
    if not match:
        return None
    try:
        data = json.loads(match.group(1))
    except json.JSONDecodeError as e:
        raise ClassificationError(f"invalid JSON data block ({e})")
    if not isinstance(data, dict) or not isinstance(data.get("items"), list):
        raise ClassificationError("data block has no items list")
    return [_item_from_data(item) for item in data["items"]]


def _parse_markdown(text: str) -> list[ClassificationItem]:
    items: list[dict[str, Any]] = []
    for line in text.splitlines():
        line = line.strip()
        heading = HEADING_RE.match(line)
        if heading:
            items.append({"title": heading["title"], "state": heading["state"]})
            continue
        field = FIELD_RE.match(line)
        if field and items:
            name = field["name"].strip().lower().replace(" ", "_")
            items[-1][name] = field["value"].strip()
    return [_item_from_data(item) for item in items]


def enforce_contract(items: list[ClassificationItem]) -> list[ClassificationItem]:
    """Promote CRITICAL security findings to ACTIONABLE_NOW."""
    for item in items:
        if (
            item.severity == "CRITICAL"
            and item.category.lower() == "security"
            and item.state != ItemState.ACTIONABLE_NOW
        ):
            logger.warning("Promoting CRITICAL security item %r to NOW", item.title)
            item.state = ItemState.ACTIONABLE_NOW
    return items


def parse_assessment(text: str, model: str) -> ClassificationResult:
    """Parse an assistant response. Raises ClassificationError if non-conforming.

    The trailing JSON block is authoritative when present; otherwise the
    markdown headings are parsed. A response with no items at all is only
    accepted when it explicitly says so with an empty data block.
    """
    items = _parse_data_block(text)
    if items is None:
        items = _parse_markdown(text)
        if not items:
            raise ClassificationError("no classified items found")
    return ClassificationResult(items=enforce_contract(items), model=model)


def _review_findings(review_text: str) -> list[tuple[str, str]]:
    """(title, severity) pairs from a review's data block or its headings."""
    match = REVIEW_DATA_RE.search(review_text)
    if match:
        try:
            data = json.loads(match.group(1))
            parsed = [
                (str(i["title"]), str(i["severity"]).upper())
                for i in data.get("items", [])
            ]
            if parsed:
                return parsed
        except (ValueError, KeyError, TypeError, AttributeError):
            pass

    findings: list[tuple[str, str]] = []
    for line in strip_markers(review_text).splitlines():
        if not line.startswith("### "):
            continue
        severity = SEVERITY_RE.search(line.upper())
        if severity:
            findings.append((line[4:].strip(), severity.group(1)))
    return findings


def fallback_classify(review_text: str, model: str) -> ClassificationResult:
    """Heuristic used when the assistant is unusable: keep CRITICAL and HIGH.

    Findings the summary counts but the text does not itemize become
    placeholder items, so a CRITICAL or HIGH count never vanishes.
    """
    items = [
        ClassificationItem(
            title=title,
            state=ItemState.ACTIONABLE_NOW,
            severity=severity,
            category="CodeQuality",
            reasoning="Kept by severity filter (assessment unavailable).",
        )
        for title, severity in _review_findings(review_text)
        if severity in FALLBACK_SEVERITIES
    ]
    summary = parse_severity_summary(review_text)
    if summary is not None:
        for severity in FALLBACK_SEVERITIES:
            found = sum(1 for item in items if item.severity == severity)
            for n in range(found, getattr(summary, severity.lower())):
                items.append(
                    ClassificationItem(
                        title=f"Unitemized {severity} finding {n + 1} (see review)",
                        state=ItemState.ACTIONABLE_NOW,
                        severity=severity,
                        category="CodeQuality",
                        reasoning="Counted in the review summary but not itemized.",
                    )
                )
    return ClassificationResult(items=items, model=model, source="fallback")


class Classifier:
    def __init__(
        self,
        cache_dir: Path,
        model: str,
        timeout: int,
        runner: Callable[..., str] = run_print,
    ) -> None:
        self.cache = ClassificationCache(cache_dir)
        self.model = model
        self.timeout = timeout
        self.runner = runner

    def build_prompt(
        self, review_text: str, project_context: str, issue: WorkItem | None
    ) -> str:
        scope = f"#{issue.number} {issue.title}\n\n{issue.body}" if issue else "(none)"
        return ASSESSMENT_PROMPT.format(
            issue=scope.strip(),
            context=project_context.strip() or "(none)",
            review=strip_markers(review_text),
        )

    def classify(
        self,
        review_text: str,
        project_context: str = "",
        issue: WorkItem | None = None,
    ) -> ClassificationResult:
        """Classify a review, serving identical input from the cache.

        Expired assistant credentials propagate as ClaudeSessionError; every
        other failure degrades to ``fallback_classify``.
        """
        key = cache_key(review_text, self.model, project_context)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("Using cached classification %s", key[:12])
            return cached

        prompt = self.build_prompt(review_text, project_context, issue)
        try:
            response = self.runner(
                prompt, self.model, self.timeout, role="assessment"
            )
            result = parse_assessment(response, self.model)
        except ClaudeSessionError as e:
            if e.credentials_expired:
                raise
            logger.warning("Assessment session failed, using severity filter: %s", e)
            return fallback_classify(review_text, self.model)
        except ClassificationError as e:
            logger.warning("Rejected assessment response, using severity filter: %s", e)
            return fallback_classify(review_text, self.model)

        self.cache.put(key, result)
        return result
