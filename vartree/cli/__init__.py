"""Command-line interface for vartree."""

from .app import app

__all__ = ["app"]
