"""Command-line interface for distill."""

from . import jobs, learn, rules  # noqa: F401  (register commands)
from .main import main

__all__ = ["main"]
