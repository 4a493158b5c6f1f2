"""Exception hierarchy for distill.

Item-local problems (one unparsable model reply, one timed-out call) derive
from SoftFailure and never abort a batch. ServiceUnavailable means a required
dependency could not be reached and callers should stop before mutating
anything.
"""

from __future__ import annotations


class DistillError(Exception):
    """Base class for all distill errors."""


class ServiceUnavailable(DistillError):
    """A required external service could not be reached."""

    def __init__(self, service: str, detail: str = "") -> None:
        self.service = service
        self.detail = detail
        message = f"{service} is unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class SoftFailure(DistillError):
    """An item-local failure. The item keeps its current state."""


class SoftParseFailure(SoftFailure):
    """A model response could not be parsed into the expected shape."""


class ServiceTimeout(SoftFailure):
    """A call to an external service exceeded its timeout."""

    def __init__(self, service: str, detail: str = "") -> None:
        self.service = service
        super().__init__(f"{service} timed out" + (f": {detail}" if detail else ""))


class ServiceError(SoftFailure):
    """An external service answered with an error status."""

    def __init__(self, service: str, status_code: int, detail: str = "") -> None:
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service} returned {status_code}" + (f": {detail}" if detail else ""))


class InvariantViolation(DistillError):
    """A rule store mutation would break a store invariant. Nothing was written."""


class StoreError(DistillError):
    """A durable document could not be read or written."""
