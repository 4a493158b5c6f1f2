"""distill: distill session logs into durable, reusable rules."""

from .config import DistillConfig, load_config
from .errors import (
    DistillError,
    InvariantViolation,
    ServiceUnavailable,
    SoftFailure,
    SoftParseFailure,
)

__version__ = "0.1.0"

__all__ = [
    "DistillConfig",
    "DistillError",
    "InvariantViolation",
    "ServiceUnavailable",
    "SoftFailure",
    "SoftParseFailure",
    "__version__",
    "load_config",
]
