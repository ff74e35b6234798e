"""
Operational tools for the zip archiver.
"""

from .cli import build_parser, main, run_command

__all__ = ["build_parser", "main", "run_command"]
