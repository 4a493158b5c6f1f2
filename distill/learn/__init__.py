"""distill learn: unsupervised rule mining from session logs.

Architecture:
    Quality Scorer  →  Insight Extractor  ──┐
    (pending chunks)   (high/low contrast)  │
                                            ├──►  RuleManager  ◄──  ReinforcementTracker
    Failure detector → Reflection Generator ┘     (RuleStore:       (usage signals)
    (transcripts)      (root-cause lessons)        commits, caps)

Chunk state lives in the vector store and moves only through conditional
payload patches. Rule state lives in one versioned JSON document and moves
only through RuleStore transactions, each a named, revertible commit.
"""

from .categorizer import categorize_rule
from .failures import detect_failures
from .insights import InsightExtractor, pair_chunks, parse_rule_bullets
from .jobs import JobQueue
from .models import (
    ApprovalMode,
    Reflection,
    Rule,
    RuleCandidate,
    RuleOrigin,
    RuleStatus,
    SessionChunk,
)
from .reflections import ReflectionGenerator, parse_reflections
from .reinforcement import ReinforcementTracker
from .rules import RuleManager
from .scorer import QualityScorer, parse_score, prefilter_score
from .store import RuleStore
from .validation import RuleValidator, parse_verdict

__all__ = [
    "ApprovalMode",
    "InsightExtractor",
    "JobQueue",
    "QualityScorer",
    "Reflection",
    "ReflectionGenerator",
    "ReinforcementTracker",
    "Rule",
    "RuleCandidate",
    "RuleManager",
    "RuleOrigin",
    "RuleStatus",
    "RuleStore",
    "RuleValidator",
    "SessionChunk",
    "categorize_rule",
    "detect_failures",
    "pair_chunks",
    "parse_reflections",
    "parse_rule_bullets",
    "parse_score",
    "parse_verdict",
    "prefilter_score",
]
