"""Chat message ingestion and delivery pipeline."""
