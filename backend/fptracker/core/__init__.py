"""Core ingestion, recovery and aggregation services."""
