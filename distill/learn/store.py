"""Durable rule store: one ordered JSON document of rules plus a commit log.

Every mutation runs as a transaction: take the backend's exclusive lock,
reload the latest document, let the caller mutate a working copy, diff it
against what was loaded, validate invariants, then write the new document
with the commit appended. Callers re-check each rule's current status inside
the transaction, which makes every transition an (identity + state)
conditional update even across processes.

Document layout:
    {
      "version": 7,
      "rules": [{...Rule.to_dict()...}, ...],
      "commits": [{...Commit.to_dict()...}, ...]
    }
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from ..errors import InvariantViolation, StoreError
from ..storage import DocumentBackend
from .models import Commit, Rule, RuleChange, RuleStatus, utcnow
from .similarity import normalize_rule_text

logger = logging.getLogger(__name__)


def check_invariants(
    rules: Iterable[Rule], max_active_rules: int, active_before: int | None = None
) -> None:
    """Raise InvariantViolation if the rule set breaks a store invariant.

    - no two active/proposed rules share normalized text
    - at most ``max_active_rules`` rules are active

    With ``active_before`` the cap only rejects a change that grows the active
    count past it. A document already over a lowered cap can still shrink.
    """
    live = [r for r in rules if r.status in (RuleStatus.ACTIVE, RuleStatus.PROPOSED)]
    seen = Counter(normalize_rule_text(r.text) for r in live)
    dupes = [text for text, n in seen.items() if n > 1]
    if dupes:
        raise InvariantViolation(f"duplicate rule text among active/proposed: {dupes[0]!r}")

    active = sum(1 for r in live if r.status == RuleStatus.ACTIVE)
    if active > max_active_rules and (active_before is None or active > active_before):
        raise InvariantViolation(f"{active} active rules exceeds the cap of {max_active_rules}")


class Transaction:
    """Mutable working copy of the rule list inside RuleStore.transaction()."""

    def __init__(self, rules: list[Rule], now: datetime, message: str) -> None:
        self.rules = rules
        self.now = now
        self.message = message
        self.commit: Commit | None = None

    def get(self, rule_id: str) -> Rule | None:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    def with_status(self, status: RuleStatus) -> list[Rule]:
        return [r for r in self.rules if r.status == status]

    def active_count(self) -> int:
        return sum(1 for r in self.rules if r.status == RuleStatus.ACTIVE)

    def add(self, rule: Rule) -> None:
        if self.get(rule.id) is not None:
            raise InvariantViolation(f"rule id {rule.id} already exists")
        self.rules.append(rule)

    def remove(self, rule_id: str) -> None:
        self.rules = [r for r in self.rules if r.id != rule_id]

    def replace(self, rule: Rule) -> None:
        for i, existing in enumerate(self.rules):
            if existing.id == rule.id:
                self.rules[i] = rule
                return
        self.rules.append(rule)


class RuleStore:
    """Versioned, commit-logged rule document on top of a DocumentBackend.

    Args:
        backend: Where the document lives.
        max_active_rules: Active-rule cap enforced on every commit.
    """

    def __init__(self, backend: DocumentBackend, max_active_rules: int = 30) -> None:
        self._backend = backend
        self.max_active_rules = max_active_rules

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _load(self) -> dict[str, Any]:
        doc = self._backend.load()
        if not doc:
            return {"version": 0, "rules": [], "commits": []}
        if not isinstance(doc.get("rules"), list):
            raise StoreError("rule document has no 'rules' list")
        doc.setdefault("version", 0)
        doc.setdefault("commits", [])
        return doc

    def rules(self) -> list[Rule]:
        return [Rule.from_dict(r) for r in self._load()["rules"]]

    def version(self) -> int:
        return int(self._load()["version"])

    def commits(self) -> list[Commit]:
        return [Commit.from_dict(c) for c in self._load()["commits"]]

    def get_commit(self, commit_id: str) -> Commit | None:
        for commit in self.commits():
            if commit.id == commit_id:
                return commit
        return None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    @contextmanager
    def transaction(self, message: str, now: datetime | None = None) -> Iterator[Transaction]:
        """Run one atomic, named mutation.

        Yields a Transaction whose ``rules`` may be edited in place and whose
        ``message`` may be refined once the outcome is known. On clean
        exit the changes are validated and written as one commit (available as
        ``txn.commit``). No changes means no commit. An exception inside the
        block, or an invariant violation, writes nothing.
        """
        with self._backend.exclusive():
            doc = self._load()
            loaded = [Rule.from_dict(r) for r in doc["rules"]]
            before = {r.id: r.to_dict() for r in loaded}
            active_before = sum(1 for r in loaded if r.status == RuleStatus.ACTIVE)
            txn = Transaction(loaded, now or utcnow(), message)

            yield txn

            after = {r.id: r.to_dict() for r in txn.rules}
            changes = [
                RuleChange(rule_id=rid, before=before.get(rid), after=after.get(rid))
                for rid in list(before) + [rid for rid in after if rid not in before]
                if before.get(rid) != after.get(rid)
            ]
            if not changes:
                logger.debug("Transaction %r made no changes", message)
                return

            check_invariants(txn.rules, self.max_active_rules, active_before)

            version = int(doc["version"]) + 1
            commit = Commit(
                id=uuid.uuid4().hex[:12],
                message=txn.message,
                timestamp=txn.now,
                version=version,
                changes=changes,
            )
            self._backend.save(
                {
                    "version": version,
                    "rules": [r.to_dict() for r in txn.rules],
                    "commits": doc["commits"] + [commit.to_dict()],
                }
            )
            txn.commit = commit
            logger.info("Committed %s: %s (%d change(s))", commit.id, txn.message, len(changes))
