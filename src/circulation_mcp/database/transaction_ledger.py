"""
Transaction ledger for the Circulation MCP Server.

Records borrows, renewals, returns and loss reports. One row per loan: a
renewal moves the due date of the open row instead of adding a new one, and
the fine lives on the row it belongs to.

Borrow preconditions are checked in a fixed order so the caller always gets
the same error for the same situation:

1. the copy is in the expected status (normally ``available``)
2. the student exists and has a free borrowing slot
3. the student is in good standing
4. the student's unpaid fines are below the blocking threshold

Only then is the copy claimed with the registry's compare-and-swap. Nothing
is written before that CAS, so a lost race leaves the session clean. The
student's slot is claimed right after it with a guarded update that re-checks
the limit in the database; a student who hit the limit through a loan on
another title in the meantime still gets STUDENT_OVER_LIMIT.

"Overdue" is never stored. A transaction is overdue when it is active and at
least one calendar day has passed since its due date, the same day count the
fines use, so an overdue loan always has ``days_overdue >= 1``. The fine shown
for it is a live estimate until the return freezes it.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import func, select

from ..config import CirculationPolicy, get_config
from ..fines import FinePolicy, days_overdue, start_of_day
from ..models.circulation import CirculationStats, OverdueTransaction, RenewalEligibility
from ..models.circulation import Transaction as TransactionModel
from .copy_registry import CopyRegistry
from .repository import (
    BaseRepository,
    InvalidStateError,
    PaginatedResponse,
    PaginationParams,
    PolicyViolationError,
    RepositoryException,
    StateCode,
    ViolationCode,
)
from .schema import (
    OPEN_RESERVATION_STATUSES,
    Book,
    BookCopy,
    CopyConditionEnum,
    CopyStatusEnum,
    Reservation,
    ReservationStatusEnum,
    StudentStatusEnum,
    Transaction,
    TransactionStatusEnum,
    TransactionTypeEnum,
)
from .session import mcp_safe_query
from .student_repository import StudentRepository

logger = logging.getLogger(__name__)


class TransactionLedger(BaseRepository[Transaction, TransactionModel]):
    """Borrow, renew, return and loss handling over the transactions table."""

    def __init__(
        self,
        session,
        policy: CirculationPolicy | None = None,
        now_fn: Callable[[], datetime] = datetime.now,
    ):
        super().__init__(session)
        self.policy = policy or get_config().policy
        self.now = now_fn
        self.copies = CopyRegistry(session)
        self.students = StudentRepository(session)

    @property
    def model_class(self) -> type[Transaction]:
        return Transaction

    @property
    def response_schema(self) -> type[TransactionModel]:
        return TransactionModel

    # -- conversion -------------------------------------------------------

    def fine_policy_for(self, book_id: str) -> FinePolicy:
        """Fine parameters for a title, with its own daily rate if it has one."""
        book = self.session.get(Book, book_id)
        return FinePolicy.for_title(self.policy, book.fine_per_day if book else None)

    def _derived(self, row: Transaction, now: datetime) -> dict:
        if row.status != TransactionStatusEnum.ACTIVE:
            return {"current_fine": row.fine_amount}
        fine_policy = self.fine_policy_for(row.book_id)
        late = days_overdue(row.due_date, now)
        return {
            "is_overdue": late > 0,
            "days_overdue": late,
            "current_fine": fine_policy.compute(row.due_date, now),
        }

    def _to_response_model(self, db_obj: Transaction) -> TransactionModel:
        model = TransactionModel.model_validate(db_obj, from_attributes=True)
        return model.model_copy(update=self._derived(db_obj, self.now()))

    def _to_overdue_model(self, db_obj: Transaction) -> OverdueTransaction:
        now = self.now()
        base = TransactionModel.model_validate(db_obj, from_attributes=True).model_dump()
        base.update(self._derived(db_obj, now))
        return OverdueTransaction(
            **base,
            calculated_fine=base["current_fine"],
            barcode=db_obj.copy.barcode,
            book_title=db_obj.book.title,
            student_name=db_obj.student.name,
        )

    # -- lookups ----------------------------------------------------------

    def get_transaction(self, transaction_id: int) -> TransactionModel:
        return self._to_response_model(self._require_row(transaction_id))

    def _active_row_for_copy(self, copy_id: int) -> Transaction | None:
        query = select(Transaction).where(
            Transaction.copy_id == copy_id,
            Transaction.status == TransactionStatusEnum.ACTIVE,
        )
        return mcp_safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to find active transaction for copy",
        )

    def get_active_for_copy(self, copy_id: int) -> TransactionModel | None:
        row = self._active_row_for_copy(copy_id)
        return self._to_response_model(row) if row else None

    def _title_has_queue(self, book_id: str) -> bool:
        query = select(func.count(Reservation.id)).where(
            Reservation.book_id == book_id,
            Reservation.status.in_(OPEN_RESERVATION_STATUSES),
        )
        count = mcp_safe_query(
            self.session, lambda s: s.execute(query).scalar(), "Failed to check reservation queue"
        )
        return bool(count)

    # -- borrow -----------------------------------------------------------

    def borrow(
        self,
        copy_id: int,
        student_id: str,
        expected_status: CopyStatusEnum = CopyStatusEnum.AVAILABLE,
        processed_by: str | None = None,
        notes: str | None = None,
    ) -> TransactionModel:
        """
        Lend a copy to a student.

        Args:
            copy_id: Copy being lent
            student_id: Borrowing student
            expected_status: Status the copy must be in; ``reserved`` when a
                ready reservation is being fulfilled with its earmarked copy
            processed_by: Actor recorded on the transaction
            notes: Free-form notes

        Raises:
            NotFoundError: Unknown copy or student
            PolicyViolationError: COPY_NOT_AVAILABLE, STUDENT_OVER_LIMIT,
                STUDENT_SUSPENDED or OUTSTANDING_FINES, checked in that order
            ConflictError: The copy was claimed between the check and the CAS
        """
        copy = self.copies.get_copy(copy_id)
        if copy.status != expected_status:
            raise PolicyViolationError(
                ViolationCode.COPY_NOT_AVAILABLE,
                f"Copy {copy.barcode} is not available (status: {copy.status.value})",
            )

        student = self.students.require(student_id)
        if student.current_books >= student.max_books:
            raise PolicyViolationError(
                ViolationCode.STUDENT_OVER_LIMIT,
                f"Student {student_id} has reached the borrowing limit "
                f"({student.current_books}/{student.max_books})",
            )
        if student.status != StudentStatusEnum.ACTIVE:
            raise PolicyViolationError(
                ViolationCode.STUDENT_SUSPENDED,
                f"Student {student_id} cannot borrow (status: {student.status.value})",
            )

        unpaid = self.students.unpaid_fines(student_id)
        if unpaid > 0 and unpaid >= self.policy.fine_block_threshold:
            raise PolicyViolationError(
                ViolationCode.OUTSTANDING_FINES,
                f"Student {student_id} has unpaid fines of {unpaid:.2f} "
                f"(limit {self.policy.fine_block_threshold:.2f})",
            )

        self.copies.transition_status(copy_id, expected_status, CopyStatusEnum.BORROWED)
        if self.students.claim_loan_slot(student_id) is None:
            self.session.refresh(student)
            raise PolicyViolationError(
                ViolationCode.STUDENT_OVER_LIMIT,
                f"Student {student_id} has reached the borrowing limit "
                f"({student.current_books}/{student.max_books})",
            )

        now = self.now()
        row = Transaction(
            copy_id=copy_id,
            book_id=copy.book_id,
            student_id=student_id,
            type=TransactionTypeEnum.BORROW,
            status=TransactionStatusEnum.ACTIVE,
            borrowed_at=now,
            due_date=now + timedelta(days=self.policy.loan_period_days),
            renewal_count=0,
            fine_amount=0.0,
            processed_by=processed_by,
            notes=notes,
        )
        self.session.add(row)
        self.session.flush()

        logger.info(
            "Transaction %s: copy %s lent to %s, due %s",
            row.id,
            copy.barcode,
            student_id,
            row.due_date.date().isoformat(),
        )
        return self._to_response_model(row)

    # -- renew ------------------------------------------------------------

    def _renewal_block(self, row: Transaction) -> RepositoryException | None:
        if row.status != TransactionStatusEnum.ACTIVE:
            return InvalidStateError(
                StateCode.NOT_ACTIVE,
                f"Transaction {row.id} is {row.status.value} and cannot be renewed",
            )
        if row.renewal_count >= self.policy.max_renewals:
            return PolicyViolationError(
                ViolationCode.MAX_RENEWALS_REACHED,
                f"Transaction {row.id} has reached the maximum of "
                f"{self.policy.max_renewals} renewals",
            )
        if self._title_has_queue(row.book_id):
            return PolicyViolationError(
                ViolationCode.COPY_RESERVED,
                f"Another student is waiting for book {row.book_id}",
            )
        return None

    def check_renewal(self, transaction_id: int) -> RenewalEligibility:
        row = self._require_row(transaction_id)
        block = self._renewal_block(row)
        return RenewalEligibility(
            transaction_id=row.id,
            can_renew=block is None,
            reason="ok" if block is None else block.code,
            renewal_count=row.renewal_count,
            max_renewals=self.policy.max_renewals,
        )

    def renew(self, transaction_id: int, processed_by: str | None = None) -> TransactionModel:
        """
        Extend an active loan by one loan period.

        Raises:
            NotFoundError: Unknown transaction
            InvalidStateError: NOT_ACTIVE
            PolicyViolationError: MAX_RENEWALS_REACHED or COPY_RESERVED
        """
        row = self._require_row(transaction_id)
        block = self._renewal_block(row)
        if block is not None:
            raise block

        row.due_date = row.due_date + timedelta(days=self.policy.loan_period_days)
        row.renewal_count += 1
        row.type = TransactionTypeEnum.RENEW
        row.last_renewed_at = self.now()
        if processed_by:
            row.processed_by = processed_by
        self.session.flush()

        logger.info(
            "Transaction %s renewed (%d/%d), now due %s",
            row.id,
            row.renewal_count,
            self.policy.max_renewals,
            row.due_date.date().isoformat(),
        )
        return self._to_response_model(row)

    # -- return and loss --------------------------------------------------

    def return_copy(
        self,
        copy_id: int,
        condition: CopyConditionEnum | None = None,
        condition_notes: str | None = None,
        processed_by: str | None = None,
    ) -> TransactionModel:
        """
        Close the open loan on a copy and put the copy back in circulation.

        The fine is computed once, here, and frozen on the row. A copy
        returned damaged goes to ``damaged`` instead of ``available``.

        Raises:
            NotFoundError: Unknown copy
            InvalidStateError: NO_ACTIVE_TRANSACTION
            ConflictError: The copy's status changed underneath the return
        """
        copy = self.copies.get_copy(copy_id)
        row = self._active_row_for_copy(copy_id)
        if row is None:
            raise InvalidStateError(
                StateCode.NO_ACTIVE_TRANSACTION,
                f"Copy {copy.barcode} has no active transaction",
            )

        now = self.now()
        fine = self.fine_policy_for(row.book_id).compute(row.due_date, now)

        target = CopyStatusEnum.AVAILABLE
        if condition == CopyConditionEnum.DAMAGED:
            target = CopyStatusEnum.DAMAGED
        self.copies.transition_status(copy_id, CopyStatusEnum.BORROWED, target, condition=condition)

        row.status = TransactionStatusEnum.RETURNED
        row.type = TransactionTypeEnum.RETURN
        row.returned_at = now
        row.fine_amount = fine
        row.fine_reason = "overdue" if fine > 0 else None
        row.return_condition = condition
        row.condition_notes = condition_notes
        if processed_by:
            row.processed_by = processed_by

        self.students.release_loan_slot(row.student_id)
        self.session.flush()

        logger.info(
            "Transaction %s returned (copy %s -> %s), fine %.2f",
            row.id,
            copy.barcode,
            target.value,
            fine,
        )
        return self._to_response_model(row)

    def report_lost(self, transaction_id: int, processed_by: str | None = None) -> TransactionModel:
        """
        Force-close an active loan whose copy is lost.

        The fine is the title's replacement cost, or the configured lost-book
        fine when the title has none.

        Raises:
            NotFoundError: Unknown transaction
            InvalidStateError: NOT_ACTIVE
        """
        row = self._require_row(transaction_id)
        if row.status != TransactionStatusEnum.ACTIVE:
            raise InvalidStateError(
                StateCode.NOT_ACTIVE,
                f"Transaction {row.id} is {row.status.value} and cannot be reported lost",
            )

        self.copies.transition_status(row.copy_id, CopyStatusEnum.BORROWED, CopyStatusEnum.LOST)

        book = self.session.get(Book, row.book_id)
        replacement = book.replacement_cost if book and book.replacement_cost is not None else None
        row.status = TransactionStatusEnum.LOST
        row.fine_amount = round(
            replacement if replacement is not None else self.policy.lost_book_fine, 2
        )
        row.fine_reason = "lost"
        if processed_by:
            row.processed_by = processed_by

        self.students.release_loan_slot(row.student_id)
        self.session.flush()

        logger.warning(
            "Transaction %s: copy %s reported lost, fine %.2f", row.id, row.copy_id, row.fine_amount
        )
        return self._to_response_model(row)

    # -- fines and reporting ----------------------------------------------

    def compute_current_fine(self, transaction_id: int) -> float:
        """Live estimate for an active loan, the frozen fine for a closed one. Never writes."""
        row = self._require_row(transaction_id)
        if row.status != TransactionStatusEnum.ACTIVE:
            return row.fine_amount
        return self.fine_policy_for(row.book_id).compute(row.due_date, self.now())

    def _overdue_query(self):
        return (
            select(Transaction)
            .where(
                Transaction.status == TransactionStatusEnum.ACTIVE,
                Transaction.due_date < start_of_day(self.now()),
            )
            .order_by(Transaction.due_date, Transaction.id)
        )

    def list_overdue(self, pagination: PaginationParams | None = None) -> PaginatedResponse:
        """Active loans past due, oldest first, with ``days_overdue`` and ``calculated_fine``."""
        return self._paginate(
            self._overdue_query(), pagination, self._to_overdue_model, OverdueTransaction
        )

    def collect_overdue_notices(self) -> list[OverdueTransaction]:
        """Overdue loans not yet reported; stamps them so each is reported once."""
        query = self._overdue_query().where(Transaction.overdue_notified_at.is_(None))
        rows = mcp_safe_query(
            self.session, lambda s: s.execute(query).scalars().all(), "Failed to list overdue loans"
        )
        now = self.now()
        notices = []
        for row in rows:
            row.overdue_notified_at = now
            notices.append(self._to_overdue_model(row))
        self.session.flush()
        return notices

    def list_for_student(
        self,
        student_id: str,
        status: TransactionStatusEnum | None = None,
        pagination: PaginationParams | None = None,
    ) -> PaginatedResponse:
        query = select(Transaction).where(Transaction.student_id == student_id)
        if status is not None:
            query = query.where(Transaction.status == status)
        query = query.order_by(Transaction.borrowed_at.desc(), Transaction.id.desc())
        return self._paginate(query, pagination, self._to_response_model, TransactionModel)

    def circulation_stats(self) -> CirculationStats:
        by_status = dict(
            self.session.execute(
                select(Transaction.status, func.count(Transaction.id)).group_by(Transaction.status)
            ).all()
        )
        overdue = self.session.execute(
            select(func.count()).select_from(self._overdue_query().subquery())
        ).scalar()
        reservations = dict(
            self.session.execute(
                select(Reservation.status, func.count(Reservation.id))
                .where(Reservation.status.in_(OPEN_RESERVATION_STATUSES))
                .group_by(Reservation.status)
            ).all()
        )
        copies = {status.value: 0 for status in CopyStatusEnum}
        for status, count in self.session.execute(
            select(BookCopy.status, func.count(BookCopy.id)).group_by(BookCopy.status)
        ).all():
            copies[status.value] = count

        return CirculationStats(
            active_loans=by_status.get(TransactionStatusEnum.ACTIVE, 0),
            overdue_loans=overdue or 0,
            returned_loans=by_status.get(TransactionStatusEnum.RETURNED, 0),
            lost_loans=by_status.get(TransactionStatusEnum.LOST, 0),
            pending_reservations=reservations.get(ReservationStatusEnum.PENDING, 0),
            ready_reservations=reservations.get(ReservationStatusEnum.READY, 0),
            copies_by_status=copies,
        )
