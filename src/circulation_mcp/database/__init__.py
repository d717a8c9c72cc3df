"""
Database package for the Circulation MCP Server.

This package provides:
- SQLAlchemy schema definitions (schema.py)
- Session management and the unit-of-work scope (session.py)
- The error taxonomy and repository base (repository.py)
- One repository per circulation component: copy registry, transaction
  ledger, reservation queue, fine settlement and the student directory
"""

from .copy_registry import CopyRegistry, CopySequence
from .fine_repository import FineRepository
from .repository import (
    AuthorizationError,
    BaseRepository,
    ConflictError,
    DuplicateError,
    InvalidStateError,
    NotFoundError,
    PaginatedResponse,
    PaginationParams,
    PolicyViolationError,
    RepositoryException,
    StateCode,
    ViolationCode,
)
from .reservation_queue import ReservationQueue
from .schema import Base, Book, BookCopy, Reservation, Student, Transaction
from .session import (
    DatabaseManager,
    get_db_manager,
    mcp_safe_query,
    set_db_manager,
)
from .student_repository import StudentRepository
from .transaction_ledger import TransactionLedger

__all__ = [
    "AuthorizationError",
    "Base",
    "BaseRepository",
    "Book",
    "BookCopy",
    "ConflictError",
    "CopyRegistry",
    "CopySequence",
    "DatabaseManager",
    "DuplicateError",
    "FineRepository",
    "InvalidStateError",
    "NotFoundError",
    "PaginatedResponse",
    "PaginationParams",
    "PolicyViolationError",
    "RepositoryException",
    "Reservation",
    "ReservationQueue",
    "StateCode",
    "Student",
    "StudentRepository",
    "Transaction",
    "TransactionLedger",
    "ViolationCode",
    "get_db_manager",
    "mcp_safe_query",
    "set_db_manager",
]
