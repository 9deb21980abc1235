"""Command-line interface."""

from labkeeper.cli.main import cli

__all__ = ['cli']
