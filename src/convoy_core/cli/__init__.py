"""Command-line interface for convoy.

Example:
    $ convoy --help
"""

from __future__ import annotations

from convoy_core.cli.main import cli, main

__all__: list[str] = ["cli", "main"]
