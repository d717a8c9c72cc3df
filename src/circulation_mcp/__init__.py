"""
Library Circulation MCP Server Package.

Barcode-driven lending, FIFO reservation queues with timed pickup holds and
overdue fines for a library's physical copies, exposed over MCP.

Key Components:
- models: Pydantic models returned by every operation
- database: SQLAlchemy schema, session scope and the circulation repositories
- coordinator: the single entry point that locks, authorizes and commits
- config: Configuration management with Pydantic v2
- resources: MCP resources (read-only endpoints)
- tools: MCP tools (operations with side effects)
"""

__version__ = "0.1.0"

from . import database

__all__ = [
    "__version__",
    "database",
]
