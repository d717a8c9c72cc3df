"""Circulation MCP Resources Package

Resources are the read-only side of the server: scan lookups, renewal
eligibility, queue positions, overdue lists, fines and statistics. Anything
that changes circulation state is a tool.
"""

from .circulation import circulation_resources

all_resources = circulation_resources

__all__ = [
    "all_resources",
    "circulation_resources",
]
