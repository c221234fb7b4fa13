"""Command line interface."""

from migration_engine.cli.main import main

__all__ = ["main"]
