"""Tests for the quality scorer: parsing, heuristics and pending semantics."""

from __future__ import annotations

from dataclasses import replace

import pytest

from distill.errors import ServiceTimeout, ServiceUnavailable
from distill.learn.scorer import QualityScorer, parse_score, prefilter_score

COLLECTION = "session-embeddings"

USEFUL_TEXT = (
    "We looked at the cache layer and the handler together, then wrote a helper "
    "that keeps the config in one place for every request."
)


def _pending(store, n: int, session_id: str = "s1", text: str = USEFUL_TEXT) -> list[int]:
    ids = []
    for i in range(n):
        point = len(store.collections.get(COLLECTION, {})) + 1
        store.add(
            COLLECTION,
            point,
            {"session_id": session_id, "chunk_text": f"{text} #{i}", "pending_score": True},
        )
        ids.append(point)
    return ids


def _scorer(store, llm, config, **kwargs) -> QualityScorer:
    return QualityScorer(store, llm, replace(config, prefilter_enabled=False), **kwargs)


class TestParseScore:
    @pytest.mark.parametrize(
        "reply, expected",
        [("7", 7), ("Score: 7", 7), ("7/10", 7), ("8.", 8), ("  0 ", 0), ("10", 10)],
    )
    def test_accepts_bare_integers(self, reply, expected):
        assert parse_score(reply) == expected

    @pytest.mark.parametrize("reply", ["", "eleven", "11", "-1", "7 because it is good", "7.5"])
    def test_rejects_everything_else(self, reply):
        assert parse_score(reply) is None


class TestPrefilter:
    def test_tiny_text_is_noise(self):
        assert prefilter_score("ok") == 1

    def test_encoded_blob_is_noise(self):
        assert prefilter_score("data: " + "QUJD" * 80) == 1

    def test_npm_errors_score_two(self):
        assert prefilter_score("npm ERR! code ENOENT\nnpm ERR! missing script: build") == 2

    def test_strong_signal_goes_to_model(self):
        assert prefilter_score("After a long search, the root cause was a stale lockfile.") is None

    def test_two_weak_signals_go_to_model(self):
        text = "We need to refactor this module because the architecture is tangled."
        assert prefilter_score(text) is None

    def test_short_routine_command_scores_three(self):
        assert prefilter_score("$ git status\nnothing to commit, working tree clean") == 3

    def test_default_is_four(self):
        assert prefilter_score(USEFUL_TEXT) == 4


class TestScorePending:
    def test_valid_scores_are_persisted(self, vector_store, llm, config):
        ids = _pending(vector_store, 3)
        llm.replies = ["9", "Score: 2", "5/10"]

        result = _scorer(vector_store, llm, config).score_pending()

        assert result.scored == 3
        assert result.failed == 0
        scores = [vector_store.payload(COLLECTION, i)["quality_score"] for i in ids]
        assert scores == [9, 2, 5]
        assert all(not vector_store.payload(COLLECTION, i)["pending_score"] for i in ids)

    def test_unparsable_reply_leaves_chunk_pending(self, vector_store, llm, config):
        ids = _pending(vector_store, 2)
        llm.replies = ["I'd say about seven", "12"]

        result = _scorer(vector_store, llm, config).score_pending()

        assert result.scored == 0
        assert result.failed == 2
        for i in ids:
            payload = vector_store.payload(COLLECTION, i)
            assert payload["pending_score"] is True
            assert "quality_score" not in payload

    def test_timeout_mid_batch_is_item_local(self, vector_store, llm, config):
        ids = _pending(vector_store, 3)
        llm.replies = ["6", ServiceTimeout("ollama"), "4"]

        result = _scorer(vector_store, llm, config).score_pending()

        assert result.scored == 2
        assert result.failed == 1
        assert vector_store.payload(COLLECTION, ids[1])["pending_score"] is True

    def test_rerun_after_success_makes_no_mutations(self, vector_store, llm, config):
        _pending(vector_store, 4)
        llm.default_reply = "7"
        scorer = _scorer(vector_store, llm, config)
        scorer.score_pending()
        patches = len(vector_store.patches)
        prompts = len(llm.prompts)

        again = scorer.score_pending()

        assert again.selected == 0
        assert len(vector_store.patches) == patches
        assert len(llm.prompts) == prompts

    def test_chunk_scored_concurrently_is_not_overwritten(self, vector_store, config):
        (point,) = _pending(vector_store, 1)

        class RacingLLM:
            def generate(self, prompt):
                # Another invocation scores the chunk while we wait for the model
                vector_store.payload(COLLECTION, point).update(
                    {"quality_score": 8, "pending_score": False}
                )
                return "3"

        _scorer(vector_store, RacingLLM(), config).score_pending()

        assert vector_store.payload(COLLECTION, point)["quality_score"] == 8

    def test_budget_exhaustion_leaves_remainder_pending(self, vector_store, llm, config):
        ids = _pending(vector_store, 5)
        ticks = iter([0, 0, 100, 400, 400, 400, 400])
        scorer = _scorer(
            vector_store, llm, replace(config, score_budget_seconds=300), clock=lambda: next(ticks)
        )

        result = scorer.score_pending()

        assert result.scored == 2
        assert result.skipped == 3
        assert [vector_store.payload(COLLECTION, i)["pending_score"] for i in ids] == [
            False,
            False,
            True,
            True,
            True,
        ]

    def test_batch_is_bounded(self, vector_store, llm, config):
        _pending(vector_store, 7)
        scorer = _scorer(vector_store, llm, replace(config, score_batch_limit=5))

        assert scorer.score_pending().selected == 5

    def test_session_filter(self, vector_store, llm, config):
        _pending(vector_store, 2, session_id="a")
        _pending(vector_store, 3, session_id="b")

        result = _scorer(vector_store, llm, config).score_pending(session_id="b")

        assert result.selected == 3

    def test_rescore_overwrites_existing_scores(self, vector_store, llm, config):
        vector_store.add(
            COLLECTION,
            1,
            {"session_id": "s", "chunk_text": USEFUL_TEXT, "quality_score": 2, "pending_score": False},
        )
        llm.replies = ["8"]

        result = _scorer(vector_store, llm, config).score_pending(rescore=True)

        assert result.scored == 1
        assert vector_store.payload(COLLECTION, 1)["quality_score"] == 8

    def test_heuristics_skip_the_model(self, vector_store, llm, config):
        vector_store.add(
            COLLECTION, 1, {"session_id": "s", "chunk_text": "ok", "pending_score": True}
        )

        result = QualityScorer(vector_store, llm, config).score_pending()

        assert result.prefiltered == 1
        assert llm.prompts == []
        assert vector_store.payload(COLLECTION, 1)["quality_score"] == 1

    def test_timeout_selecting_batch_is_unavailable(self, vector_store, llm, config):
        class SlowStore(type(vector_store)):
            def scroll(self, *args, **kwargs):
                raise ServiceTimeout("qdrant")

        with pytest.raises(ServiceUnavailable):
            _scorer(SlowStore(), llm, config).score_pending()


class TestMarkPendingAndStats:
    def test_mark_pending_flags_only_unscored(self, vector_store, llm, config):
        vector_store.add(COLLECTION, 1, {"session_id": "s", "chunk_text": "a"})
        vector_store.add(
            COLLECTION, 2, {"session_id": "s", "chunk_text": "b", "quality_score": 6}
        )
        vector_store.add(COLLECTION, 3, {"session_id": "s", "chunk_text": "c", "pending_score": True})

        marked = _scorer(vector_store, llm, config).mark_pending()

        assert marked == 1
        assert vector_store.payload(COLLECTION, 1)["pending_score"] is True
        assert "pending_score" not in vector_store.payload(COLLECTION, 2)

    def test_score_stats(self, vector_store, llm, config):
        for point, score in enumerate([9, 9, 3], start=1):
            vector_store.add(
                COLLECTION, point, {"chunk_text": "x", "quality_score": score, "pending_score": False}
            )
        vector_store.add(COLLECTION, 4, {"chunk_text": "y", "pending_score": True})

        stats = _scorer(vector_store, llm, config).score_stats()

        assert stats.total == 4
        assert stats.scored == 3
        assert stats.pending == 1
        assert stats.distribution == {3: 1, 9: 2}
        assert stats.average == pytest.approx(7.0)
