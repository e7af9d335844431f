"""Event feed ingestion and the indexing pipeline."""
