"""Adapters for the external services distill depends on.

Usage:
    from distill.clients import Filter, OllamaClient, QdrantVectorStore
"""

from .generation import EmbeddingService, GenerationService, OllamaClient
from .vector_store import (
    Filter,
    QdrantVectorStore,
    Record,
    ScoredRecord,
    VectorStore,
    point_id,
)

__all__ = [
    "EmbeddingService",
    "Filter",
    "GenerationService",
    "OllamaClient",
    "QdrantVectorStore",
    "Record",
    "ScoredRecord",
    "VectorStore",
    "point_id",
]
