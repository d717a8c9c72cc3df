"""
SQLAlchemy database schema for the Circulation MCP Server.

Tables:
- books: titles (the unit reservations queue against)
- book_copies: physical copies, the only rows whose status is contended
- students: local backing for the student directory
- transactions: the borrow/renew/return ledger, with the fine embedded
- reservations: per-title hold queue

Rows in transactions and reservations are never deleted; they form the audit
trail. Queue positions are not stored: they are derived from
(reserved_at, id) among a title's pending and ready reservations.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship, validates
from sqlalchemy.sql import func

from ..models.enums import (
    OPEN_RESERVATION_STATUSES,
    CopyConditionEnum,
    CopyStatusEnum,
    ReservationStatusEnum,
    StudentStatusEnum,
    TransactionStatusEnum,
    TransactionTypeEnum,
)

Base = declarative_base()


class Book(Base):
    """
    Titles table.

    A title owns its copies and its reservation queue. ``fine_per_day``
    overrides the global daily fine for this title when set.
    """

    __tablename__ = "books"

    id = Column(String(50), primary_key=True)
    title = Column(String(500), nullable=False, index=True)
    author = Column(String(200), nullable=False)
    isbn = Column(String(13), nullable=True, unique=True)
    book_code = Column(String(50), nullable=True)
    fine_per_day = Column(Float, nullable=True)
    replacement_cost = Column(Float, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    copies = relationship("BookCopy", back_populates="book")

    __table_args__ = (
        CheckConstraint("fine_per_day IS NULL OR fine_per_day >= 0", name="check_book_fine_rate"),
        CheckConstraint(
            "replacement_cost IS NULL OR replacement_cost >= 0", name="check_replacement_cost"
        ),
    )


class BookCopy(Base):
    """
    Physical copies table.

    ``status`` is only ever changed through the copy registry's guarded
    compare-and-swap, which also bumps ``version``.
    """

    __tablename__ = "book_copies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(String(50), ForeignKey("books.id"), nullable=False)
    copy_number = Column(String(20), nullable=False)
    barcode = Column(String(64), nullable=False, unique=True)
    condition = Column(
        Enum(CopyConditionEnum), nullable=False, default=CopyConditionEnum.GOOD
    )
    status = Column(Enum(CopyStatusEnum), nullable=False, default=CopyStatusEnum.AVAILABLE)
    acquisition_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    book = relationship("Book", back_populates="copies")

    __table_args__ = (
        Index("idx_copy_book_status", "book_id", "status"),
        CheckConstraint("version >= 1", name="check_copy_version_positive"),
    )

    @validates("barcode")
    def validate_barcode(self, key, value):  # noqa: ARG002
        """Barcodes are immutable once assigned."""
        if self.barcode is not None and value != self.barcode:
            raise ValueError("Barcode cannot be changed once assigned")
        if not value or not value.strip():
            raise ValueError("Barcode cannot be empty")
        return value.strip()


class Student(Base):
    """Students table - borrowing limits and standing."""

    __tablename__ = "students"

    id = Column(String(50), primary_key=True)
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    status = Column(Enum(StudentStatusEnum), nullable=False, default=StudentStatusEnum.ACTIVE)
    suspension_reason = Column(Text, nullable=True)
    max_books = Column(Integer, nullable=False, default=5)
    current_books = Column(Integer, nullable=False, default=0)
    total_borrowed = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_student_status", "status"),
        CheckConstraint("max_books >= 0", name="check_max_books_non_negative"),
        CheckConstraint("current_books >= 0", name="check_current_books_non_negative"),
    )


class Transaction(Base):
    """
    Transactions table - one row per borrow, carried through renewals and
    closed by a return or a lost report. The row owns its fine.
    """

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    copy_id = Column(Integer, ForeignKey("book_copies.id"), nullable=False)
    book_id = Column(String(50), ForeignKey("books.id"), nullable=False)
    student_id = Column(String(50), ForeignKey("students.id"), nullable=False)
    type = Column(Enum(TransactionTypeEnum), nullable=False, default=TransactionTypeEnum.BORROW)
    status = Column(
        Enum(TransactionStatusEnum), nullable=False, default=TransactionStatusEnum.ACTIVE
    )
    borrowed_at = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False)
    returned_at = Column(DateTime, nullable=True)
    renewal_count = Column(Integer, nullable=False, default=0)
    last_renewed_at = Column(DateTime, nullable=True)

    fine_amount = Column(Float, nullable=False, default=0.0)
    fine_reason = Column(String(100), nullable=True)
    fine_paid = Column(Boolean, nullable=False, default=False)
    fine_paid_at = Column(DateTime, nullable=True)
    fine_waived = Column(Boolean, nullable=False, default=False)
    fine_waived_at = Column(DateTime, nullable=True)
    waive_reason = Column(Text, nullable=True)

    return_condition = Column(Enum(CopyConditionEnum), nullable=True)
    condition_notes = Column(Text, nullable=True)
    overdue_notified_at = Column(DateTime, nullable=True)
    processed_by = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    copy = relationship("BookCopy")
    book = relationship("Book")
    student = relationship("Student")

    __table_args__ = (
        Index("idx_transaction_copy_status", "copy_id", "status"),
        Index("idx_transaction_student", "student_id"),
        Index("idx_transaction_due_date", "due_date"),
        CheckConstraint("renewal_count >= 0", name="check_renewal_count_non_negative"),
        CheckConstraint("fine_amount >= 0", name="check_fine_non_negative"),
        CheckConstraint("NOT (fine_paid AND fine_waived)", name="check_fine_single_settlement"),
    )


class Reservation(Base):
    """
    Reservations table - the per-title hold queue.

    A ready reservation earmarks ``copy_id`` (the copy sits in status
    ``reserved``) until it is fulfilled, cancelled or expires.
    """

    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(String(50), ForeignKey("books.id"), nullable=False)
    student_id = Column(String(50), ForeignKey("students.id"), nullable=False)
    status = Column(
        Enum(ReservationStatusEnum), nullable=False, default=ReservationStatusEnum.PENDING
    )
    reserved_at = Column(DateTime, nullable=False)
    notified_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    fulfilled_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    copy_id = Column(Integer, ForeignKey("book_copies.id"), nullable=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    book = relationship("Book")
    student = relationship("Student")

    __table_args__ = (
        Index("idx_reservation_queue", "book_id", "status", "reserved_at", "id"),
        Index("idx_reservation_student", "student_id"),
    )


__all__ = [
    "OPEN_RESERVATION_STATUSES",
    "Base",
    "Book",
    "BookCopy",
    "CopyConditionEnum",
    "CopyStatusEnum",
    "Reservation",
    "ReservationStatusEnum",
    "Student",
    "StudentStatusEnum",
    "Transaction",
    "TransactionStatusEnum",
    "TransactionTypeEnum",
]
