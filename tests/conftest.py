"""Shared fakes for the distill tests.

FakeVectorStore evaluates the same filter JSON the Qdrant adapter sends, so
conditional patches behave like the real store. FakeLLM plays both the
generation and the embedding service.
"""

from __future__ import annotations

import hashlib
import math
import re
from typing import Any

import pytest

from distill.clients import Filter, Record, ScoredRecord
from distill.config import DistillConfig
from distill.learn.rules import RuleManager
from distill.learn.store import RuleStore
from distill.storage import FileSystemDocumentBackend


def _matches(condition: dict[str, Any], point_id: Any, payload: dict[str, Any]) -> bool:
    if "has_id" in condition:
        return point_id in condition["has_id"]
    if "is_empty" in condition:
        value = payload.get(condition["is_empty"]["key"])
        return value is None or value == []
    value = payload.get(condition["key"])
    if "match" in condition:
        match = condition["match"]
        if value is None:
            return False
        if "value" in match:
            return type(value) is type(match["value"]) and value == match["value"]
        return value in match["any"]
    if "range" in condition:
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            return False
        bounds = condition["range"]
        return (
            ("gte" not in bounds or value >= bounds["gte"])
            and ("lte" not in bounds or value <= bounds["lte"])
            and ("gt" not in bounds or value > bounds["gt"])
            and ("lt" not in bounds or value < bounds["lt"])
        )
    raise AssertionError(f"unsupported condition {condition}")


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class FakeVectorStore:
    """In-memory VectorStore with Qdrant filter semantics."""

    def __init__(self) -> None:
        self.collections: dict[str, dict[Any, Record]] = {}
        self.patches: list[tuple[str, list[Any], dict[str, Any]]] = []
        self.healthy = True
        self.fail_patch_ids: set[Any] = set()
        self.ensure_errors: list[Exception] = []

    def add(self, collection: str, point_id: Any, payload: dict[str, Any], vector=None) -> None:
        self.collections.setdefault(collection, {})[point_id] = Record(
            point_id, dict(payload), vector
        )

    def payload(self, collection: str, point_id: Any) -> dict[str, Any]:
        return self.collections[collection][point_id].payload

    def _select(self, collection: str, filter: Filter | None) -> list[Record]:
        body = filter.to_dict() if filter else {}
        selected = []
        for record in self.collections.get(collection, {}).values():
            if not all(_matches(c, record.id, record.payload) for c in body.get("must", [])):
                continue
            if any(_matches(c, record.id, record.payload) for c in body.get("must_not", [])):
                continue
            selected.append(record)
        return selected

    def health(self) -> bool:
        return self.healthy

    def ensure_collection(self, collection: str, vector_size: int) -> None:
        if self.ensure_errors:
            raise self.ensure_errors.pop(0)
        self.collections.setdefault(collection, {})

    def count(self, collection: str, filter: Filter | None = None) -> int:
        return len(self._select(collection, filter))

    def scroll(self, collection: str, filter: Filter | None = None, limit: int = 100):
        return [
            Record(r.id, dict(r.payload), r.vector) for r in self._select(collection, filter)
        ][:limit]

    def patch_payload(self, collection, ids, payload, filter=None) -> None:
        from distill.errors import ServiceError

        if set(ids) & self.fail_patch_ids:
            raise ServiceError("qdrant", 500, "injected")
        condition = filter.copy() if filter else Filter()
        condition.has_id(ids)
        for record in self._select(collection, condition):
            record.payload.update(payload)
            self.patches.append((collection, [record.id], dict(payload)))

    def search(self, collection, vector, filter=None, score_threshold=None, limit=10):
        hits = []
        for record in self._select(collection, filter):
            if record.vector is None:
                continue
            score = _cosine(vector, record.vector)
            if score_threshold is not None and score < score_threshold:
                continue
            hits.append(ScoredRecord(record.id, dict(record.payload), record.vector, score))
        hits.sort(key=lambda h: -h.score)
        return hits[:limit]

    def upsert(self, collection, id, vector, payload) -> None:
        self.add(collection, id, payload, vector)


def embed_words(text: str, dims: int = 64) -> list[float]:
    """Bag-of-words hashing embedding: shared words mean similar vectors."""
    vector = [0.0] * dims
    for word in re.findall(r"[a-z0-9]+", text.lower()):
        vector[int(hashlib.md5(word.encode()).hexdigest(), 16) % dims] += 1.0
    return vector


class FakeLLM:
    """Generation + embedding fake.

    ``replies`` are returned in order (an Exception instance is raised instead);
    once exhausted, ``default_reply`` is used.
    """

    def __init__(self, replies=None, default_reply: str = "5") -> None:
        self.replies: list[Any] = list(replies or [])
        self.default_reply = default_reply
        self.prompts: list[str] = []
        self.embedded: list[str] = []
        self.healthy = True
        self.embed_error: Exception | None = None

    def health(self) -> bool:
        return self.healthy

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if self.replies else self.default_reply
        if isinstance(reply, Exception):
            raise reply
        return reply

    def embed(self, text: str) -> list[float]:
        self.embedded.append(text)
        if self.embed_error is not None:
            raise self.embed_error
        return embed_words(text)


@pytest.fixture
def vector_store() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def config(tmp_path) -> DistillConfig:
    return DistillConfig(
        rules_path=tmp_path / "rules.json",
        jobs_path=tmp_path / "jobs.json",
        sessions_dir=tmp_path / "sessions",
        approval_mode="supervised",
        max_active_rules=30,
    )


@pytest.fixture
def rule_store(config) -> RuleStore:
    return RuleStore(FileSystemDocumentBackend(config.rules_path), config.max_active_rules)


@pytest.fixture
def manager(rule_store, config) -> RuleManager:
    return RuleManager(rule_store, config)


@pytest.fixture
def autonomous(rule_store, config) -> RuleManager:
    return RuleManager(rule_store, config, mode="autonomous")
