"""
Circulation MCP Server Models.

Pydantic v2 models for everything the engine hands back to callers. They are
plain values: repositories build them from rows inside the unit of work, so
callers never hold live ORM objects.
"""

from .catalog import Book, BookCopy, BorrowerSummary, CopyInventory, ScanResult
from .circulation import (
    BulkFineResult,
    CirculationStats,
    Fine,
    FineStatistics,
    OverdueTransaction,
    QueuePosition,
    RenewalEligibility,
    Reservation,
    Transaction,
)
from .enums import (
    CopyConditionEnum,
    CopyStatusEnum,
    ReservationStatusEnum,
    StudentStatusEnum,
    TransactionStatusEnum,
    TransactionTypeEnum,
)
from .student import Student

__all__ = [
    "Book",
    "BookCopy",
    "BorrowerSummary",
    "BulkFineResult",
    "CirculationStats",
    "CopyConditionEnum",
    "CopyInventory",
    "CopyStatusEnum",
    "Fine",
    "FineStatistics",
    "OverdueTransaction",
    "QueuePosition",
    "RenewalEligibility",
    "Reservation",
    "ReservationStatusEnum",
    "ScanResult",
    "Student",
    "StudentStatusEnum",
    "Transaction",
    "TransactionStatusEnum",
    "TransactionTypeEnum",
]
