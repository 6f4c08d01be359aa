"""Exception hierarchy shared by the ingestion and ordering services.

Hard failures (validation, security, storage, order conflicts) propagate to the
HTTP layer unchanged. Compression problems are soft: the ingestion pipeline
absorbs them and keeps the uncompressed upload.
"""

from __future__ import annotations

__all__ = [
    "ShalaError",
    "ValidationError",
    "SecurityError",
    "NotFoundError",
    "StorageError",
    "CompressionError",
    "OrderConflictError",
]


class ShalaError(RuntimeError):
    """Base exception for the Shala Shikshak services."""


class ValidationError(ShalaError):
    """Raised when caller input is rejected before any I/O happens."""


class SecurityError(ShalaError):
    """Raised when a path argument is relative, escapes its root, or is otherwise untrusted."""


class NotFoundError(ShalaError):
    """Raised when a required file does not exist."""


class StorageError(ShalaError):
    """Raised when the filesystem cannot persist or read an artifact."""


class CompressionError(ShalaError):
    """Raised for compression problems the ingestion pipeline recovers from."""


class OrderConflictError(ShalaError):
    """Raised when a reorder request would give two siblings the same position."""
