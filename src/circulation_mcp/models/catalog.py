"""
Catalog models for the Circulation MCP Server.

- Book: a title, the unit a reservation queue is kept for
- BookCopy: one physical, barcoded instance of a title
- CopyInventory: per-status copy counts for a title
- ScanResult: what a staff terminal sees after scanning a barcode
"""

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from .enums import CopyConditionEnum, CopyStatusEnum


class Book(BaseModel):
    """A title in the catalog."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Title identifier", examples=["BK001"])
    title: str = Field(..., min_length=1, max_length=500)
    author: str = Field(..., min_length=1, max_length=200)
    isbn: str | None = Field(default=None, examples=["9780134685479"])
    book_code: str | None = Field(default=None, description="Shelf or course code")
    fine_per_day: float | None = Field(
        default=None,
        ge=0.0,
        description="Daily overdue fine for this title; the global rate applies when unset",
    )
    replacement_cost: float | None = Field(
        default=None,
        ge=0.0,
        description="Charged when a copy of this title is reported lost",
    )


class BookCopy(BaseModel):
    """One physical copy of a title."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    book_id: str
    copy_number: str
    barcode: str = Field(..., min_length=1, max_length=64, examples=["BC001"])
    condition: CopyConditionEnum = CopyConditionEnum.GOOD
    status: CopyStatusEnum = CopyStatusEnum.AVAILABLE
    acquisition_date: date | None = None
    notes: str | None = None
    version: int = Field(default=1, ge=1, description="Bumped on every status change")

    @property
    def is_available(self) -> bool:
        return self.status == CopyStatusEnum.AVAILABLE


class CopyInventory(BaseModel):
    """Copy counts for one title, keyed by status value."""

    book_id: str
    total: int = Field(..., ge=0)
    counts: dict[str, int]

    @property
    def available(self) -> int:
        return self.counts.get(CopyStatusEnum.AVAILABLE.value, 0)


class BorrowerSummary(BaseModel):
    """Who currently holds a borrowed copy."""

    student_id: str
    name: str
    transaction_id: int
    due_date: datetime
    is_overdue: bool
    days_overdue: int
    current_fine: float


class ScanResult(BaseModel):
    """
    Read-only view returned by a barcode scan.

    ``can_borrow`` is true only when the copy is on the shelf and not held for
    a reservation; staff use it to decide between a borrow and a return.
    Serialized with the scanned copy under ``copy``.
    """

    model_config = ConfigDict(populate_by_name=True)

    book_copy: BookCopy = Field(alias="copy", description="The scanned copy")
    book: Book
    borrower: BorrowerSummary | None = None
    can_borrow: bool
    held_for_student_id: str | None = Field(
        default=None, description="Student whose ready reservation earmarks this copy"
    )
