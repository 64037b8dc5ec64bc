"""
query-spine command line interface (``query-spine``).
"""

from queryspine.cli.app import app

__all__ = ["app"]
