"""
Student directory backed by the local students table.

The ledger reads borrowing limits and standing from here; loan counters are
updated in the same unit of work as the loan itself, always as guarded SQL
expressions so concurrent loans never overwrite each other's counts.
"""

from sqlalchemy import func, select, update

from ..models.enums import TransactionStatusEnum
from ..models.student import Student as StudentModel
from .repository import BaseRepository, NotFoundError
from .schema import Student, Transaction
from .session import mcp_safe_query


def unpaid_fine_total(session, student_id: str) -> float:
    """Sum of a student's finalized fines that are neither paid nor waived."""
    query = select(func.coalesce(func.sum(Transaction.fine_amount), 0.0)).where(
        Transaction.student_id == student_id,
        Transaction.status != TransactionStatusEnum.ACTIVE,
        Transaction.fine_paid.is_(False),
        Transaction.fine_waived.is_(False),
    )
    total = mcp_safe_query(
        session, lambda s: s.execute(query).scalar(), "Failed to total unpaid fines"
    )
    return round(float(total or 0.0), 2)


class StudentRepository(BaseRepository[Student, StudentModel]):
    """Read access to students plus the live row for counter updates."""

    @property
    def model_class(self) -> type[Student]:
        return Student

    @property
    def response_schema(self) -> type[StudentModel]:
        return StudentModel

    def get_student(self, student_id: str) -> StudentModel:
        """Raises NotFoundError for unknown students."""
        return self._to_response_model(self.require(student_id))

    def require(self, student_id: str) -> Student:
        """The live ORM row, for updates inside the current unit of work."""
        row = self._get_row(student_id)
        if row is None:
            raise NotFoundError(f"Student {student_id} not found")
        return row

    def unpaid_fines(self, student_id: str) -> float:
        return unpaid_fine_total(self.session, student_id)

    def claim_loan_slot(self, student_id: str) -> Student | None:
        """
        Take one borrowing slot with a single guarded update.

        The limit is re-checked by the database, so two terminals lending
        different titles to the same student cannot both take the last slot.

        Returns:
            The refreshed row, or None when the student is already at the limit
        """
        stmt = (
            update(Student)
            .where(Student.id == student_id, Student.current_books < Student.max_books)
            .values(
                current_books=Student.current_books + 1,
                total_borrowed=Student.total_borrowed + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = mcp_safe_query(
            self.session, lambda s: s.execute(stmt), "Failed to claim borrowing slot"
        )
        if result.rowcount != 1:
            return None
        return self.session.get(Student, student_id, populate_existing=True)

    def release_loan_slot(self, student_id: str) -> None:
        """Give back a borrowing slot when a loan closes. Never goes below zero."""
        stmt = (
            update(Student)
            .where(Student.id == student_id, Student.current_books > 0)
            .values(current_books=Student.current_books - 1)
            .execution_options(synchronize_session=False)
        )
        mcp_safe_query(self.session, lambda s: s.execute(stmt), "Failed to release borrowing slot")
        self.session.get(Student, student_id, populate_existing=True)
