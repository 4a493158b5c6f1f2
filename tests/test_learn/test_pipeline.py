"""End-to-end: score chunks, mine insights, apply, reinforce, prune, revert."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from distill.learn import (
    InsightExtractor,
    QualityScorer,
    ReflectionGenerator,
    ReinforcementTracker,
    RuleManager,
)
from distill.learn.models import RuleOrigin, RuleStatus

COLLECTION = "session-embeddings"
SCORES = [9, 8, 1, 2, 7, 3, 9, 1, 6, 5]
START = datetime(2026, 2, 1, tzinfo=timezone.utc)


def _seed_sessions(store, llm) -> None:
    for i in range(len(SCORES)):
        text = f"Session s{i} worked through the deploy script and the migration runner step {i}."
        store.add(
            COLLECTION,
            i + 1,
            {
                "session_id": f"s{i}",
                "chunk_text": text,
                "pending_score": True,
                "date": (START + timedelta(days=i)).isoformat(),
            },
            vector=llm.embed(text),
        )


def test_full_learning_loop(vector_store, llm, rule_store, config):
    config = replace(config, prefilter_enabled=False)
    manager = RuleManager(rule_store, config)
    _seed_sessions(vector_store, llm)

    # 1. Score every pending chunk
    llm.replies = [str(s) for s in SCORES]
    scored = QualityScorer(vector_store, llm, config).score_pending()

    assert scored.scored == 10
    assert QualityScorer(vector_store, llm, config).score_stats().pending == 0

    # 2. Four high (>= 7) and four low (<= 3) chunks make four pairs and one call
    llm.prompts.clear()
    llm.replies = [
        "PAIR 1:\n- Run migrations in a transaction so failures roll back\n"
        "PAIR 2:\n- Read the deploy script before editing its flags\n"
    ]
    insights = InsightExtractor(vector_store, llm, manager, config).extract_insights()

    assert (insights.high_count, insights.low_count, insights.pairs) == (4, 4, 4)
    assert len(llm.prompts) == 1
    assert insights.proposed == 2
    assert {r.status for r in rule_store.rules()} == {RuleStatus.PROPOSED}

    # 3. Supervised mode: nothing is active until apply
    diff = manager.apply_pending_proposals()

    assert len(diff.activated) == 2
    assert manager.review().counts["active"] == 2

    # 4. A reflection adds a third, proposed rule
    llm.replies = [
        "FAILURE 1:\n"
        "ROOT_CAUSE: Reset the branch without saving work\n"
        "REFLECTION: Should have stashed first\n"
        "PREVENTION_RULE: Stash local changes before any git reset\n"
    ]
    reflections = ReflectionGenerator(vector_store, llm, llm, manager, config).process_session(
        "s-fail", {"messages": [{"role": "assistant", "content": "git reset --hard"}]}
    )

    assert reflections.rules_added == 1
    reflection_rule = next(r for r in rule_store.rules() if r.origin == RuleOrigin.REFLECTION)
    assert reflection_rule.status == RuleStatus.PROPOSED

    # 5. Reinforcement keeps one rule alive past the staleness window
    tracker = ReinforcementTracker(rule_store, config)
    first = diff.activated[0]
    later = datetime.now(timezone.utc) + timedelta(days=61)
    tracker.record(first.id, now=later - timedelta(days=1))

    pruned = manager.prune_stale(later)

    assert [r.id for r in pruned.pruned] == [diff.activated[1].id]
    assert tracker.stats().by_status == {"proposed": 1, "active": 1, "pruned": 1}

    # 6. The prune is one commit and reverts cleanly
    manager.revert(pruned.commit_id)

    assert manager.review().counts["active"] == 2
