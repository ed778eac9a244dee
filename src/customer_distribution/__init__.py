"""
Customer distribution toolkit.

Extracts customer lists from photos and CSV files with a hosted LLM, keeps a
deduplicated snapshot locally (optionally mirrored to Firestore) and serves it
to the map/table/chart dashboard.
"""

__all__ = [
    "config",
    "logging",
    "paths",
]
