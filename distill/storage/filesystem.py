"""Filesystem document backend.

Stores a document as a JSON file with atomic writes and serializes writers
with an advisory ``fcntl`` lock on a sidecar ``.lock`` file.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import StoreError

logger = logging.getLogger(__name__)


class FileSystemDocumentBackend:
    """Filesystem-backed document storage using atomic JSON writes.

    Characteristics:
    - Persists to a single JSON file
    - Atomic writes via temp file + rename (POSIX)
    - Creates parent directories on first save
    - Returns empty dict if the file doesn't exist
    - Raises StoreError on a corrupt file instead of silently starting over

    Args:
        path: Path to the JSON document.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock_path = self._path.with_name(self._path.name + ".lock")

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}

        try:
            with open(self._path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise StoreError(f"Cannot read {self._path}: {e}") from e

        if not isinstance(data, dict):
            raise StoreError(f"{self._path} does not hold a JSON object")
        return data

    def save(self, data: dict[str, Any]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)

            json_data = json.dumps(data, indent=2) + "\n"

            fd, tmp_path = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.stem}_", suffix=".tmp"
            )
            try:
                with open(fd, "w") as f:
                    f.write(json_data)
                    f.flush()
                    os.fsync(f.fileno())
                Path(tmp_path).replace(self._path)
            except Exception:
                try:
                    Path(tmp_path).unlink()
                except OSError:
                    pass
                raise

        except OSError as e:
            raise StoreError(f"Cannot write {self._path}: {e}") from e

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self._lock_path), os.O_CREAT | os.O_RDWR)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            logger.debug("Acquired lock %s", self._lock_path)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
