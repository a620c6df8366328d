"""virtualsa CLI.

Usage:
    uv run virtualsa --help
"""

from virtualsa.cli.app import app

__all__ = ["app"]
