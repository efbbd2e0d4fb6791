"""CLI module - Command-line interface for taskdag."""

from taskdag.cli.main import app

__all__ = ["app"]
