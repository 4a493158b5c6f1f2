"""Data models for distill: chunks, reflections, rules, commits and jobs.

Persistent models carry ``to_dict`` / ``from_dict`` so they round-trip through
the JSON rule document and vector store payloads. Result models are plain
dataclasses returned by pipeline stages for reporting.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# =============================================================================
# Time helpers
# =============================================================================


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


# =============================================================================
# Enums
# =============================================================================


class RuleStatus(str, Enum):
    """Lifecycle state of a rule."""

    PROPOSED = "proposed"
    ACTIVE = "active"
    PRUNED = "pruned"


class RuleOrigin(str, Enum):
    """Which stage produced a rule."""

    INSIGHT_EXTRACTION = "insight-extraction"
    REFLECTION = "reflection"
    MANUAL = "manual"


class ApprovalMode(str, Enum):
    """How accepted rules enter the store."""

    AUTONOMOUS = "autonomous"  # active immediately, capacity permitting
    SUPERVISED = "supervised"  # proposed, activated by `apply`
    MANUAL = "manual"  # proposed, activated by `apply`


class FailureType(str, Enum):
    """Failure signals recognized in a session transcript."""

    RETRY_LOOP = "retry-loop"
    BACKTRACKING = "backtracking"
    GIT_REVERT = "git-revert"
    ERROR_MESSAGE = "error-message"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


# =============================================================================
# Session data
# =============================================================================


@dataclass
class SessionChunk:
    """A bounded transcript span stored with its embedding in the vector store.

    Created by the external embedder as pending; only the quality scorer
    writes ``quality_score`` / ``pending_score``.
    """

    id: int | str
    session_id: str
    text: str
    quality_score: int | None = None
    pending_score: bool = False
    session_date: datetime | None = None
    embedding: list[float] | None = None

    @classmethod
    def from_payload(
        cls, point_id: int | str, payload: Mapping[str, Any], embedding: list[float] | None = None
    ) -> SessionChunk:
        score = payload.get("quality_score")
        return cls(
            id=point_id,
            session_id=str(payload.get("session_id") or ""),
            text=str(payload.get("chunk_text") or payload.get("text") or ""),
            quality_score=int(score) if isinstance(score, (int, float)) else None,
            pending_score=bool(payload.get("pending_score", False)),
            session_date=parse_timestamp(payload.get("date") or payload.get("session_date")),
            embedding=embedding,
        )


@dataclass
class FailureSignal:
    """A failure detected in a transcript, as emitted by the failure classifier."""

    type: FailureType
    description: str
    context: str


@dataclass
class Reflection:
    """A root-cause analysis of one detected failure.

    ``id`` is derived from (session_id, failure_index), so processing the same
    session twice overwrites rather than duplicates.
    """

    id: str
    session_id: str
    failure_index: int
    date: datetime
    failure_description: str
    root_cause: str
    reflection_text: str
    prevention_rule: str
    quality_score: int = 0

    @property
    def summary(self) -> str:
        """Canonical text that gets embedded for retrieval."""
        return f"{self.failure_description} | {self.root_cause} | {self.reflection_text}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "reflection_id": self.id,
            "session_id": self.session_id,
            "failure_index": self.failure_index,
            "date": format_timestamp(self.date),
            "failure_description": self.failure_description,
            "root_cause": self.root_cause,
            "reflection": self.reflection_text,
            "prevention_rule": self.prevention_rule,
            "quality_score": self.quality_score,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Reflection:
        return cls(
            id=str(payload.get("reflection_id", "")),
            session_id=str(payload.get("session_id", "")),
            failure_index=int(payload.get("failure_index", 0)),
            date=parse_timestamp(payload.get("date")) or utcnow(),
            failure_description=str(payload.get("failure_description", "")),
            root_cause=str(payload.get("root_cause", "")),
            reflection_text=str(payload.get("reflection", "")),
            prevention_rule=str(payload.get("prevention_rule", "")),
            quality_score=int(payload.get("quality_score", 0)),
        )


# =============================================================================
# Rules
# =============================================================================


@dataclass
class RuleCandidate:
    """A rule proposed by a pipeline stage, consumed by the RuleManager."""

    text: str
    origin: RuleOrigin
    source_session_ids: list[str] = field(default_factory=list)
    discovered_at: datetime = field(default_factory=utcnow)


@dataclass
class Rule:
    """A short natural-language guidance statement and its lifecycle state."""

    id: str
    text: str
    status: RuleStatus
    origin: RuleOrigin
    created_at: datetime
    last_reinforced_at: datetime
    reinforcement_count: int = 0
    categories: list[str] = field(default_factory=list)
    source_session_ids: list[str] = field(default_factory=list)

    def days_since_reinforced(self, now: datetime) -> float:
        return (now - self.last_reinforced_at).total_seconds() / 86400

    def is_stale(self, now: datetime, staleness_days: float, min_reinforcement: int) -> bool:
        return (
            self.status == RuleStatus.ACTIVE
            and self.days_since_reinforced(now) > staleness_days
            and self.reinforcement_count < min_reinforcement
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "status": self.status.value,
            "origin": self.origin.value,
            "created_at": format_timestamp(self.created_at),
            "last_reinforced_at": format_timestamp(self.last_reinforced_at),
            "reinforcement_count": self.reinforcement_count,
            "categories": list(self.categories),
            "source_session_ids": list(self.source_session_ids),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Rule:
        created = parse_timestamp(data.get("created_at")) or utcnow()
        return cls(
            id=str(data["id"]),
            text=str(data["text"]),
            status=RuleStatus(data.get("status", RuleStatus.PROPOSED.value)),
            origin=RuleOrigin(data.get("origin", RuleOrigin.MANUAL.value)),
            created_at=created,
            last_reinforced_at=parse_timestamp(data.get("last_reinforced_at")) or created,
            reinforcement_count=int(data.get("reinforcement_count", 0)),
            categories=list(data.get("categories") or []),
            source_session_ids=list(data.get("source_session_ids") or []),
        )


@dataclass
class RuleChange:
    """Before/after snapshots of one rule within a commit (None = absent)."""

    rule_id: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None

    def to_dict(self) -> dict[str, Any]:
        return {"rule_id": self.rule_id, "before": self.before, "after": self.after}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RuleChange:
        return cls(rule_id=str(data["rule_id"]), before=data.get("before"), after=data.get("after"))


@dataclass
class Commit:
    """One named, atomic, revertible mutation of the rule store."""

    id: str
    message: str
    timestamp: datetime
    version: int
    changes: list[RuleChange] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "message": self.message,
            "timestamp": format_timestamp(self.timestamp),
            "version": self.version,
            "changes": [c.to_dict() for c in self.changes],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Commit:
        return cls(
            id=str(data["id"]),
            message=str(data.get("message", "")),
            timestamp=parse_timestamp(data.get("timestamp")) or utcnow(),
            version=int(data.get("version", 0)),
            changes=[RuleChange.from_dict(c) for c in data.get("changes", [])],
        )


# =============================================================================
# Jobs
# =============================================================================


@dataclass
class Job:
    """A deferred unit of work. Execution is at-least-once."""

    job_id: str
    type: str
    status: JobStatus
    priority: int
    payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    attempts: int = 0
    dedupe_key: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "type": self.type,
            "status": self.status.value,
            "priority": self.priority,
            "payload": self.payload,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "attempts": self.attempts,
            "dedupe_key": self.dedupe_key,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Job:
        created = parse_timestamp(data.get("created_at")) or utcnow()
        return cls(
            job_id=str(data["job_id"]),
            type=str(data["type"]),
            status=JobStatus(data.get("status", JobStatus.QUEUED.value)),
            priority=int(data.get("priority", 0)),
            payload=dict(data.get("payload") or {}),
            created_at=created,
            updated_at=parse_timestamp(data.get("updated_at")) or created,
            attempts=int(data.get("attempts", 0)),
            dedupe_key=data.get("dedupe_key"),
            error=data.get("error"),
        )


# =============================================================================
# Stage Results
# =============================================================================


@dataclass
class ScoreResult:
    """Outcome of one quality scoring run."""

    selected: int = 0
    scored: int = 0
    prefiltered: int = 0  # subset of scored, assigned by heuristics
    failed: int = 0  # soft failures, left pending
    skipped: int = 0  # not attempted (budget exhausted), left pending


@dataclass
class ScoreStats:
    total: int = 0
    scored: int = 0
    pending: int = 0
    distribution: dict[int, int] = field(default_factory=dict)

    @property
    def unscored(self) -> int:
        return self.total - self.scored

    @property
    def average(self) -> float:
        if not self.scored:
            return 0.0
        return sum(score * n for score, n in self.distribution.items()) / self.scored


@dataclass
class AddResult:
    """Outcome of RuleManager.add_rule.

    ``applied`` is True only when the rule became active. ``reason`` is one of
    ``active``, ``proposed``, ``capacity``, ``unvalidated``, ``duplicate``,
    ``empty`` or ``dry-run``.
    """

    applied: bool
    reason: str
    rule: Rule | None = None
    commit_id: str | None = None

    @property
    def stored(self) -> bool:
        return self.rule is not None and self.commit_id is not None


@dataclass
class InsightResult:
    status: str = "ok"  # "ok" | "insufficient-data"
    high_count: int = 0
    low_count: int = 0
    pairs: int = 0
    batches: int = 0
    batches_failed: int = 0
    candidates_found: int = 0
    applied: int = 0
    proposed: int = 0
    rejected: dict[str, int] = field(default_factory=dict)


@dataclass
class ReflectionResult:
    sessions: int = 0
    failures: int = 0
    reflections_stored: int = 0
    rules_added: int = 0
    failed: int = 0  # unparsed blocks, failed calls and failed stores


@dataclass
class ApplyDiff:
    """Proposals activated (or that would be) by one apply call."""

    activated: list[Rule] = field(default_factory=list)
    deferred: list[Rule] = field(default_factory=list)
    dry_run: bool = False
    commit_id: str | None = None


@dataclass
class PruneResult:
    pruned: list[Rule] = field(default_factory=list)
    flagged: list[Rule] = field(default_factory=list)
    commit_id: str | None = None


@dataclass
class RuleReview:
    counts: dict[str, int] = field(default_factory=dict)
    active: list[Rule] = field(default_factory=list)
    proposed: list[Rule] = field(default_factory=list)
    stale_prune_candidates: list[Rule] = field(default_factory=list)
    max_active_rules: int = 0


@dataclass
class TrackResult:
    rules_checked: int = 0
    reinforced: dict[str, int] = field(default_factory=dict)  # rule_id -> increments
    failed: int = 0
    commit_id: str | None = None


@dataclass
class ReinforcementStats:
    by_status: dict[str, int] = field(default_factory=dict)
    by_origin: dict[str, int] = field(default_factory=dict)
    by_category: dict[str, int] = field(default_factory=dict)
    per_rule: list[tuple[str, int, datetime]] = field(default_factory=list)
    average_reinforcement: float = 0.0
    proven: int = 0  # active rules reinforced 10+ times
