# backend/fptracker/__init__.py
"""Fire-proofing tracker - spreadsheet ingestion and recovery core."""

__version__ = "1.0.0"
__title__ = "Fire-Proofing Tracker"
__description__ = "Batch ingestion of structural elements and their fire-proofing jobs"
