"""Text normalization and token-overlap similarity for rule deduplication."""

from __future__ import annotations

import re

_WHITESPACE = re.compile(r"\s+")
_TOKEN = re.compile(r"[a-z0-9_./-]+")
_TRAILING_PUNCT = re.compile(r"[\s.!;:,]+$")


def normalize_rule_text(text: str) -> str:
    """Comparison key for a rule: trimmed, whitespace-collapsed, case-folded.

    Only used for comparison. Stored rule text keeps its original casing.
    """
    collapsed = _WHITESPACE.sub(" ", text.strip()).casefold()
    return _TRAILING_PUNCT.sub("", collapsed)


def tokenize(text: str) -> set[str]:
    return set(_TOKEN.findall(normalize_rule_text(text)))


def token_similarity(a: str, b: str) -> float:
    """Jaccard overlap of the word tokens of two texts, in [0, 1]."""
    ta, tb = tokenize(a), tokenize(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)
