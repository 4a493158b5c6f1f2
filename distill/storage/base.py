"""Base protocol for durable document backends.

The rule store and the job queue each keep their whole state in one JSON
document. A backend only loads and saves that document and provides an
exclusive section for read-modify-write cycles. All lifecycle logic
(commits, invariants, job transitions) stays in the caller.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class DocumentBackend(Protocol):
    """Protocol for document storage backends.

    Design Principles:
    - Three operations only: load, save and exclusive
    - Data is a plain JSON-serializable dict
    - Backend owns atomicity and durability
    - ``exclusive()`` must serialize writers across processes

    Example implementation:
        class MyBackend:
            def load(self) -> dict[str, Any]:
                return json.loads(self._redis.get("rules") or "{}")

            def save(self, data: dict[str, Any]) -> None:
                self._redis.set("rules", json.dumps(data))

            def exclusive(self):
                return self._redis.lock("rules-lock")
    """

    def load(self) -> dict[str, Any]:
        """Load the document.

        Returns:
            The stored document, or an empty dict if nothing is stored yet.

        Raises:
            StoreError: If stored data exists but cannot be decoded.
        """
        ...

    def save(self, data: dict[str, Any]) -> None:
        """Replace the document atomically.

        A failed save must leave the previous document intact.

        Raises:
            StoreError: If the document could not be written.
        """
        ...

    def exclusive(self) -> AbstractContextManager[None]:
        """Context manager holding a cross-process exclusive lock."""
        ...
