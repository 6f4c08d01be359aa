"""Shala Shikshak resource ingestion and curriculum ordering services."""
