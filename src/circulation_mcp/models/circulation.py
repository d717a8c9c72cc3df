"""
Circulation models for the Circulation MCP Server.

These are the read-side shapes returned by the ledger, the reservation queue
and the fine repository:
- Transaction: one borrow carried through renewals to a return or loss
- Reservation: a place in a title's hold queue
- Fine: the monetary obligation embedded in a transaction

Derived values (``is_overdue``, ``days_overdue``, ``current_fine``,
``queue_position``) are filled in by the repository at read time against its
clock; none of them are stored.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .enums import (
    CopyConditionEnum,
    ReservationStatusEnum,
    TransactionStatusEnum,
    TransactionTypeEnum,
)


class Transaction(BaseModel):
    """A loan of one copy to one student."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    copy_id: int
    book_id: str
    student_id: str
    type: TransactionTypeEnum = TransactionTypeEnum.BORROW
    status: TransactionStatusEnum = TransactionStatusEnum.ACTIVE
    borrowed_at: datetime
    due_date: datetime
    returned_at: datetime | None = None
    renewal_count: int = Field(default=0, ge=0)
    last_renewed_at: datetime | None = None

    fine_amount: float = Field(default=0.0, ge=0.0, description="Frozen fine; 0 while active")
    fine_reason: str | None = None
    fine_paid: bool = False
    fine_waived: bool = False

    return_condition: CopyConditionEnum | None = None
    condition_notes: str | None = None
    processed_by: str | None = None
    notes: str | None = None

    # Derived at read time
    is_overdue: bool = False
    days_overdue: int = Field(default=0, ge=0)
    current_fine: float = Field(
        default=0.0,
        ge=0.0,
        description="Live estimate while active, the frozen amount once closed",
    )

    @model_validator(mode="after")
    def validate_dates(self) -> "Transaction":
        if self.due_date < self.borrowed_at:
            raise ValueError("Due date cannot be before the borrow date")
        if self.returned_at and self.returned_at < self.borrowed_at:
            raise ValueError("Return date cannot be before the borrow date")
        return self

    @property
    def is_active(self) -> bool:
        return self.status == TransactionStatusEnum.ACTIVE


class OverdueTransaction(Transaction):
    """An active, past-due loan with the details a reminder needs."""

    calculated_fine: float = Field(..., ge=0.0)
    barcode: str
    book_title: str
    student_name: str


class RenewalEligibility(BaseModel):
    """Answer to "can this loan be renewed right now?"."""

    transaction_id: int
    can_renew: bool
    reason: str = Field(..., description="Why the renewal is refused, or 'ok'")
    renewal_count: int = 0
    max_renewals: int = 0


class Reservation(BaseModel):
    """A student's claim on a title."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    book_id: str
    student_id: str
    status: ReservationStatusEnum = ReservationStatusEnum.PENDING
    reserved_at: datetime
    notified_at: datetime | None = None
    expires_at: datetime | None = None
    fulfilled_at: datetime | None = None
    cancelled_at: datetime | None = None
    copy_id: int | None = Field(default=None, description="Earmarked copy while ready")
    transaction_id: int | None = Field(default=None, description="Loan created on fulfilment")

    queue_position: int | None = Field(
        default=None,
        ge=1,
        description="1-based rank among the title's pending and ready reservations",
    )

    @property
    def is_open(self) -> bool:
        return self.status in (ReservationStatusEnum.PENDING, ReservationStatusEnum.READY)


class QueuePosition(BaseModel):
    """A student's standing in a title's queue."""

    book_id: str
    student_id: str
    position: int | None = Field(default=None, ge=1)
    total_in_queue: int = Field(..., ge=0)
    has_reserved: bool
    status: ReservationStatusEnum | None = None
    reservation_id: int | None = None


class Fine(BaseModel):
    """
    The fine owned by a transaction.

    A fine shares its transaction's id. ``is_final`` is false while the loan
    is still active and the amount is only an estimate.
    """

    id: int = Field(..., description="Same as the owning transaction id")
    transaction_id: int
    student_id: str
    book_id: str
    amount: float = Field(..., ge=0.0)
    reason: str | None = None
    is_final: bool
    paid: bool = False
    paid_at: datetime | None = None
    waived: bool = False
    waived_at: datetime | None = None
    waive_reason: str | None = None

    @model_validator(mode="after")
    def validate_single_settlement(self) -> "Fine":
        if self.paid and self.waived:
            raise ValueError("A fine cannot be both paid and waived")
        return self

    @property
    def status(self) -> str:
        if self.paid:
            return "paid"
        if self.waived:
            return "waived"
        return "unpaid" if self.is_final else "accruing"


class BulkFineResult(BaseModel):
    """Outcome of settling several fines in one call."""

    settled: list[Fine] = Field(default_factory=list)
    failed: dict[int, str] = Field(default_factory=dict)
    total_amount: float = 0.0


class FineStatistics(BaseModel):
    """Totals across all finalized fines."""

    total_assessed: float = 0.0
    total_paid: float = 0.0
    total_waived: float = 0.0
    total_outstanding: float = 0.0
    count_outstanding: int = 0
    count_paid: int = 0
    count_waived: int = 0
    students_with_outstanding: int = 0


class CirculationStats(BaseModel):
    """Snapshot counts of the ledger and the queues."""

    active_loans: int = 0
    overdue_loans: int = 0
    returned_loans: int = 0
    lost_loans: int = 0
    pending_reservations: int = 0
    ready_reservations: int = 0
    copies_by_status: dict[str, int] = Field(default_factory=dict)
