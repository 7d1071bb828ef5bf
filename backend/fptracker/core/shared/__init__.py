"""Shared infrastructure services (database, cache)."""
