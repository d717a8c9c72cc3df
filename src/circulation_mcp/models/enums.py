"""
Status and condition enums shared by the database schema and the models.

Stored statuses only: "overdue" is derived from an active transaction's due
date and never persisted.
"""

import enum


class CopyStatusEnum(str, enum.Enum):
    """Physical copy status."""

    AVAILABLE = "available"
    BORROWED = "borrowed"
    RESERVED = "reserved"
    MAINTENANCE = "maintenance"
    LOST = "lost"
    DAMAGED = "damaged"


class CopyConditionEnum(str, enum.Enum):
    """Physical copy condition."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    DAMAGED = "damaged"


class StudentStatusEnum(str, enum.Enum):
    """Student account status."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    GRADUATED = "graduated"
    INACTIVE = "inactive"


class TransactionTypeEnum(str, enum.Enum):
    """Last event applied to a transaction."""

    BORROW = "borrow"
    RENEW = "renew"
    RETURN = "return"


class TransactionStatusEnum(str, enum.Enum):
    """Stored transaction status. Overdue is derived, never stored."""

    ACTIVE = "active"
    RETURNED = "returned"
    LOST = "lost"


class ReservationStatusEnum(str, enum.Enum):
    """Reservation status."""

    PENDING = "pending"
    READY = "ready"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


OPEN_RESERVATION_STATUSES = (ReservationStatusEnum.PENDING, ReservationStatusEnum.READY)

