"""Failure detection in session transcripts.

The default classifier recognizes three signals:

- retry-loop: three consecutive assistant messages mentioning errors
- backtracking: the same file edited three or more times in the last six edits
- git-revert: ``git reset``, ``git revert`` or ``git checkout --``

Transcripts are JSON session exports: ``{"messages": [...]}`` where each
message is ``{"role", "content"}`` or wraps one under ``"message"``.
"""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from ..errors import StoreError
from .models import FailureSignal, FailureType

logger = logging.getLogger(__name__)

FailureDetector = Callable[[Mapping[str, Any]], list[FailureSignal]]

RETRY_LOOP_THRESHOLD = 3
BACKTRACK_WINDOW = 6
BACKTRACK_THRESHOLD = 3
_CONTEXT_CHARS = 500

_ERROR_MENTION = re.compile(r"error|failed|exception", re.IGNORECASE)
_FILE_EDIT = re.compile(r"(?:Edit|Write)\s+(?:file\s+)?['\"]?([^\s'\"]+)", re.IGNORECASE)
_GIT_REVERT = re.compile(r"git\s+(?:reset|revert|checkout\s+--)", re.IGNORECASE)


def _message_parts(message: Mapping[str, Any]) -> tuple[str, str]:
    inner = message.get("message") if isinstance(message.get("message"), Mapping) else message
    content = inner.get("content")
    if not isinstance(content, str):
        content = json.dumps(content) if content else ""
    return str(inner.get("role") or ""), content


def detect_failures(transcript: Mapping[str, Any]) -> list[FailureSignal]:
    """Classify failure signals in one session transcript."""
    failures: list[FailureSignal] = []
    edits: list[str] = []
    consecutive_errors = 0

    for message in transcript.get("messages") or []:
        if not isinstance(message, Mapping):
            continue
        role, content = _message_parts(message)
        if not content:
            continue
        context = content[:_CONTEXT_CHARS]

        if role == "assistant":
            if _ERROR_MENTION.search(content):
                consecutive_errors += 1
                if consecutive_errors >= RETRY_LOOP_THRESHOLD:
                    failures.append(
                        FailureSignal(
                            FailureType.RETRY_LOOP,
                            f"{consecutive_errors} consecutive errors detected",
                            context,
                        )
                    )
                    consecutive_errors = 0
            else:
                consecutive_errors = 0

        edit = _FILE_EDIT.search(content)
        if edit:
            edits.append(edit.group(1))
            for path, count in Counter(edits[-BACKTRACK_WINDOW:]).items():
                if count >= BACKTRACK_THRESHOLD and path == edit.group(1):
                    failures.append(
                        FailureSignal(
                            FailureType.BACKTRACKING,
                            f'File "{path}" edited {count} times in recent sequence',
                            context,
                        )
                    )

        if _GIT_REVERT.search(content):
            failures.append(
                FailureSignal(FailureType.GIT_REVERT, "Git reset/revert operation detected", context)
            )

    return failures


def load_transcript(path: Path) -> dict[str, Any]:
    """Read one JSON session export.

    Raises:
        StoreError: The file is unreadable or not a JSON object.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise StoreError(f"Cannot read session {path}: {e}") from e
    if not isinstance(data, dict):
        raise StoreError(f"Session {path} is not a JSON object")
    return data
