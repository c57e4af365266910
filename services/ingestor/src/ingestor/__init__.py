"""External job ingestion service."""
