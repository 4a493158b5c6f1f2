"""Durable document storage for rules and jobs.

Usage:
    from distill.storage import FileSystemDocumentBackend

    backend = FileSystemDocumentBackend(".distill/rules.json")
    with backend.exclusive():
        doc = backend.load()
        ...
        backend.save(doc)
"""

from .base import DocumentBackend
from .filesystem import FileSystemDocumentBackend

__all__ = [
    "DocumentBackend",
    "FileSystemDocumentBackend",
]
