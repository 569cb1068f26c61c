"""Command-line interface for WizDoc."""

from .commands import app

__all__ = ["app"]
