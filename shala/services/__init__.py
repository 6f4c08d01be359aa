"""Service layer: storage, compression, ingestion and ordering."""
