"""Web interface for the Shala Shikshak services."""

from .server import create_app

__all__ = ["create_app"]
