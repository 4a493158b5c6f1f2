"""Rule validation: a model check before a candidate may auto-activate.

Only consulted in autonomous mode. The model is asked whether a candidate is
specific, consistent with the active rules, coherent and concise, and answers
``VALID`` or ``INVALID: <reason>``. Anything else counts as not validated.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from ..clients import GenerationService
from ..errors import ServiceUnavailable, SoftFailure
from .models import Rule, RuleStatus

logger = logging.getLogger(__name__)

# Words above which a rule is rejected without asking the model
MAX_RULE_WORDS = 50

_VALIDATE_PROMPT = """You are a rule validator for a developer assistant. Evaluate this proposed rule:

"{text}"

Existing rules:
{existing}

Check these criteria:
1. SPECIFIC: Is it actionable and specific? (Reject vague rules like "be careful" or "try harder")
2. NON-CONTRADICTING: Does it contradict any existing rule?
3. COHERENT: Is it well-formed and does it make sense?
4. CONCISE: Is it under {max_words} words?

Respond with exactly one line: VALID or INVALID: <reason>"""

_VERDICT = re.compile(r"^[\s*_`\"']*(VALID|INVALID)\b[\s*_`\"']*:?\s*(.*)$", re.IGNORECASE)


@dataclass
class Verdict:
    valid: bool
    reason: str


def parse_verdict(reply: str) -> Verdict:
    """Read the first non-empty line of a validator reply.

    ``VALID`` passes. ``INVALID: reason`` and anything unrecognized fail.
    """
    line = next((ln.strip() for ln in (reply or "").splitlines() if ln.strip()), "")
    match = _VERDICT.match(line)
    if not match:
        return Verdict(False, f"unrecognized verdict: {line[:80]!r}")
    if match.group(1).upper() == "VALID":
        return Verdict(True, "passed validation")
    return Verdict(False, match.group(2).strip() or "invalid")


class RuleValidator:
    """Asks the generation service to vet a candidate against the active rules.

    Args:
        generator: Model that answers VALID / INVALID.
        max_words: Candidates longer than this fail without a model call.
    """

    def __init__(self, generator: GenerationService, max_words: int = MAX_RULE_WORDS) -> None:
        self._generator = generator
        self.max_words = max_words

    def build_prompt(self, text: str, rules: Sequence[Rule]) -> str:
        existing = "\n".join(f"- {r.text}" for r in rules if r.status == RuleStatus.ACTIVE)
        return _VALIDATE_PROMPT.format(
            text=text, existing=existing or "(none)", max_words=self.max_words
        )

    def validate(self, text: str, rules: Sequence[Rule]) -> Verdict:
        """Never raises for service trouble: a failed call is a failed validation."""
        if len(text.split()) > self.max_words:
            return Verdict(False, f"longer than {self.max_words} words")
        try:
            reply = self._generator.generate(self.build_prompt(text, rules))
        except (SoftFailure, ServiceUnavailable) as e:
            logger.warning("Rule validation call failed: %s", e)
            return Verdict(False, f"validation failed: {e}")
        verdict = parse_verdict(reply)
        logger.debug("Validation of %r: %s", text[:60], verdict.reason)
        return verdict
