"""Utility helper package for shared script helpers.

Submodules
----------
cli
    Shared argparse configuration helpers for the ``triage`` commands.
"""

from __future__ import annotations

__all__ = [
    "cli",
]
