"""HTTP API consumed by the dashboard."""

from .app import create_app

__all__ = ["create_app"]
