"""
Circulation coordinator - the single entry point for circulation operations.

Every mutating operation follows the same shape:

1. check the caller's permission code on its ``ActorContext``
2. resolve the title the operation touches (short read-only session)
3. take that title's lock
4. run the whole operation in one database transaction: ledger, copy
   registry and queue writes commit together or not at all
5. after commit, hand queue promotions and overdue notices to the notifier

A ``ConflictError`` from the copy compare-and-swap means another terminal
won a race for the same copy. The operation is retried once; the retry reads
the new state and reports the business outcome (usually "copy not
available"). Policy violations are never retried.
"""

import logging
from collections.abc import Callable
from datetime import date, datetime
from typing import TypeVar

from .auth import (
    BORROW,
    MANAGE_FINES,
    MANAGE_RESERVATIONS,
    RETURN,
    UPDATE_BOOKS,
    VIEW_FINES,
    VIEW_RESERVATIONS,
    VIEW_TRANSACTIONS,
    ActorContext,
)
from .config import CirculationPolicy, get_config
from .database.fine_repository import FineRepository
from .database.repository import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PaginatedResponse,
    PaginationParams,
    PolicyViolationError,
    StateCode,
    ViolationCode,
)
from .database.reservation_queue import ReservationQueue
from .database.schema import Book, Reservation, Student, Transaction
from .database.session import DatabaseManager, get_db_manager
from .locks import TitleLockRegistry
from .models.catalog import Book as BookModel
from .models.catalog import BookCopy, BorrowerSummary, CopyInventory, ScanResult
from .models.circulation import (
    BulkFineResult,
    CirculationStats,
    Fine,
    FineStatistics,
    OverdueTransaction,
    QueuePosition,
    RenewalEligibility,
)
from .models.circulation import Reservation as ReservationModel
from .models.circulation import Transaction as TransactionModel
from .models.enums import CopyConditionEnum, CopyStatusEnum
from .notifications import LoggingNotifier, Notifier, dispatch
from .observability.context import trace_repository_operation
from .observability.metrics import (
    record_circulation_event,
    record_conflict,
    record_fine_settlement,
    record_reservation_event,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETIRED_STATUSES = (CopyStatusEnum.MAINTENANCE, CopyStatusEnum.DAMAGED, CopyStatusEnum.LOST)


class CirculationCoordinator:
    """Orchestrates the copy registry, ledger, reservation queue and fines."""

    def __init__(
        self,
        db_manager: DatabaseManager | None = None,
        policy: CirculationPolicy | None = None,
        notifier: Notifier | None = None,
        locks: TitleLockRegistry | None = None,
        now_fn: Callable[[], datetime] = datetime.now,
    ):
        self.db = db_manager or get_db_manager()
        self.policy = policy or get_config().policy
        self.notifier = notifier or LoggingNotifier()
        self.locks = locks or TitleLockRegistry()
        self.now = now_fn

    # -- plumbing ---------------------------------------------------------

    def _queue(self, session) -> ReservationQueue:
        return ReservationQueue(session, self.policy, self.now)

    def _read(self, work: Callable[[ReservationQueue], T]) -> T:
        with self.db.session_scope() as session:
            return work(self._queue(session))

    def _mutate(self, book_id: str, operation: str, work: Callable[[ReservationQueue], T]) -> T:
        """Run ``work`` for one title under its lock in a single transaction."""
        attempt = 1
        while True:
            try:
                with (
                    self.locks.hold(book_id),
                    trace_repository_operation("coordinator", operation, "circulation", book_id=book_id),
                    self.db.session_scope() as session,
                ):
                    queue = self._queue(session)
                    result = work(queue)
                    promoted = list(queue.promoted)
            except ConflictError:
                record_conflict(operation)
                if attempt >= 2:
                    raise
                attempt += 1
                logger.info("%s on book %s lost a copy race; retrying once", operation, book_id)
                continue

            self._notify_ready(book_id, promoted)
            return result

    def _notify_ready(self, book_id: str, promoted: list[ReservationModel]) -> None:
        if promoted:
            record_reservation_event("ready", book_id, len(promoted))
            dispatch(self.notifier, "reservation_ready", promoted)

    def _title_for_barcode(self, barcode: str) -> str:
        return self._read(lambda q: q.copies.get_by_barcode(barcode).book_id)

    def _title_for_transaction(self, transaction_id: int) -> str:
        def work(q: ReservationQueue) -> str:
            row = q.session.get(Transaction, transaction_id)
            if row is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            return row.book_id

        return self._read(work)

    def _title_for_reservation(self, reservation_id: int) -> str:
        def work(q: ReservationQueue) -> str:
            row = q.session.get(Reservation, reservation_id)
            if row is None:
                raise NotFoundError(f"Reservation {reservation_id} not found")
            return row.book_id

        return self._read(work)

    # -- loans ------------------------------------------------------------

    def borrow_by_barcode(
        self, ctx: ActorContext, barcode: str, student_id: str, notes: str | None = None
    ) -> TransactionModel:
        """
        Lend the scanned copy. A student with an open reservation for the title
        has it settled by this loan, and a hold they no longer need is passed on.
        """
        ctx.require(BORROW)
        book_id = self._title_for_barcode(barcode)

        def work(q: ReservationQueue) -> TransactionModel:
            q.expire_ready_holds(book_id)
            copy = q.copies.get_by_barcode(barcode)
            return q.borrow_for_student(copy.id, student_id, processed_by=ctx.actor_id, notes=notes)

        transaction = self._mutate(book_id, "borrow", work)
        record_circulation_event("borrow", book_id)
        return transaction

    def return_by_barcode(
        self,
        ctx: ActorContext,
        barcode: str,
        condition: CopyConditionEnum | None = None,
        condition_notes: str | None = None,
    ) -> TransactionModel:
        """Close the loan on the scanned copy and offer the copy to the queue."""
        ctx.require(RETURN)
        book_id = self._title_for_barcode(barcode)

        def work(q: ReservationQueue) -> TransactionModel:
            q.expire_ready_holds(book_id)
            copy = q.copies.get_by_barcode(barcode)
            transaction = q.ledger.return_copy(
                copy.id, condition=condition, condition_notes=condition_notes, processed_by=ctx.actor_id
            )
            q.promote_next(book_id)
            return transaction

        transaction = self._mutate(book_id, "return", work)
        record_circulation_event("return", book_id)
        return transaction

    def renew(self, ctx: ActorContext, transaction_id: int) -> TransactionModel:
        ctx.require(BORROW)
        book_id = self._title_for_transaction(transaction_id)

        def work(q: ReservationQueue) -> TransactionModel:
            q.expire_ready_holds(book_id)
            return q.ledger.renew(transaction_id, processed_by=ctx.actor_id)

        transaction = self._mutate(book_id, "renew", work)
        record_circulation_event("renew", book_id)
        return transaction

    def can_renew(self, ctx: ActorContext, transaction_id: int) -> RenewalEligibility:
        ctx.require(VIEW_TRANSACTIONS)
        book_id = self._title_for_transaction(transaction_id)

        def work(q: ReservationQueue) -> RenewalEligibility:
            q.expire_ready_holds(book_id)
            return q.ledger.check_renewal(transaction_id)

        return self._mutate(book_id, "can_renew", work)

    def report_lost(self, ctx: ActorContext, transaction_id: int) -> TransactionModel:
        ctx.require(RETURN)
        book_id = self._title_for_transaction(transaction_id)
        transaction = self._mutate(
            book_id, "report_lost", lambda q: q.ledger.report_lost(transaction_id, ctx.actor_id)
        )
        record_circulation_event("lost", book_id)
        return transaction

    def get_transaction(self, ctx: ActorContext, transaction_id: int) -> TransactionModel:
        ctx.require(VIEW_TRANSACTIONS)
        return self._read(lambda q: q.ledger.get_transaction(transaction_id))

    def list_overdue(
        self, ctx: ActorContext, pagination: PaginationParams | None = None
    ) -> PaginatedResponse:
        ctx.require(VIEW_TRANSACTIONS)
        return self._read(lambda q: q.ledger.list_overdue(pagination))

    def list_student_loans(
        self, ctx: ActorContext, student_id: str, pagination: PaginationParams | None = None
    ) -> PaginatedResponse:
        ctx.require(VIEW_TRANSACTIONS)

        def work(q: ReservationQueue) -> PaginatedResponse:
            q.students.get_student(student_id)
            return q.ledger.list_for_student(student_id, pagination=pagination)

        return self._read(work)

    def circulation_stats(self, ctx: ActorContext) -> CirculationStats:
        ctx.require(VIEW_TRANSACTIONS)
        return self._read(lambda q: q.ledger.circulation_stats())

    def notify_overdue(self, ctx: ActorContext) -> list[OverdueTransaction]:
        """Report every overdue loan not reported before, once."""
        ctx.require(VIEW_TRANSACTIONS)
        with (
            trace_repository_operation("coordinator", "notify_overdue", "transactions"),
            self.db.session_scope() as session,
        ):
            notices = self._queue(session).ledger.collect_overdue_notices()
        dispatch(self.notifier, "overdue_detected", notices)
        return notices

    # -- scanning ---------------------------------------------------------

    def scan_lookup(self, ctx: ActorContext, barcode: str) -> ScanResult:
        """Everything a terminal needs after a scan. Never writes."""
        ctx.require(VIEW_TRANSACTIONS)

        def work(q: ReservationQueue) -> ScanResult:
            copy = q.copies.get_by_barcode(barcode)
            book = BookModel.model_validate(q.session.get(Book, copy.book_id), from_attributes=True)

            borrower = None
            active = q.ledger.get_active_for_copy(copy.id)
            if active is not None:
                student = q.students.get_student(active.student_id)
                borrower = BorrowerSummary(
                    student_id=student.id,
                    name=student.name,
                    transaction_id=active.id,
                    due_date=active.due_date,
                    is_overdue=active.is_overdue,
                    days_overdue=active.days_overdue,
                    current_fine=active.current_fine,
                )

            hold = q.held_for_copy(copy.id) if copy.status == CopyStatusEnum.RESERVED else None
            return ScanResult(
                book_copy=copy,
                book=book,
                borrower=borrower,
                can_borrow=copy.status == CopyStatusEnum.AVAILABLE,
                held_for_student_id=hold.student_id if hold else None,
            )

        return self._read(work)

    # -- reservations -----------------------------------------------------

    def reserve(self, ctx: ActorContext, book_id: str, student_id: str) -> ReservationModel:
        ctx.require(MANAGE_RESERVATIONS)
        reservation = self._mutate(book_id, "reserve", lambda q: q.reserve(book_id, student_id))
        record_reservation_event("reserved", book_id)
        return reservation

    def cancel_reservation(self, ctx: ActorContext, reservation_id: int) -> ReservationModel:
        ctx.require(MANAGE_RESERVATIONS)
        book_id = self._title_for_reservation(reservation_id)
        reservation = self._mutate(book_id, "cancel_reservation", lambda q: q.cancel(reservation_id))
        record_reservation_event("cancelled", book_id)
        return reservation

    def mark_ready(
        self, ctx: ActorContext, reservation_id: int, copy_id: int | None = None
    ) -> ReservationModel:
        ctx.require(MANAGE_RESERVATIONS)
        book_id = self._title_for_reservation(reservation_id)
        return self._mutate(book_id, "mark_ready", lambda q: q.mark_ready(reservation_id, copy_id))

    def fulfill_reservation(
        self, ctx: ActorContext, reservation_id: int, copy_id: int | None = None
    ) -> TransactionModel:
        """
        Lend the held copy to the reservation's student.

        When no copy can be lent any more, the reservation goes back to the
        front of the pending queue before ``COPY_NOT_AVAILABLE`` is raised.
        """
        ctx.require(BORROW)
        book_id = self._title_for_reservation(reservation_id)
        try:
            transaction = self._mutate(
                book_id,
                "fulfill_reservation",
                lambda q: q.fulfill(reservation_id, copy_id, processed_by=ctx.actor_id),
            )
        except PolicyViolationError as e:
            if e.violation == ViolationCode.COPY_NOT_AVAILABLE:
                requeued = self._mutate(
                    book_id, "requeue_reservation", lambda q: q.requeue_if_hold_lost(reservation_id)
                )
                if requeued is not None:
                    record_reservation_event("requeued", book_id)
            raise

        record_reservation_event("fulfilled", book_id)
        record_circulation_event("borrow", book_id)
        return transaction

    def queue_position(self, ctx: ActorContext, book_id: str, student_id: str) -> QueuePosition:
        ctx.require(VIEW_RESERVATIONS)
        return self._mutate(book_id, "queue_position", lambda q: q.queue_position(book_id, student_id))

    def list_queue(self, ctx: ActorContext, book_id: str) -> list[ReservationModel]:
        ctx.require(VIEW_RESERVATIONS)

        def work(q: ReservationQueue) -> list[ReservationModel]:
            q.expire_ready_holds(book_id)
            return q.list_for_title(book_id)

        return self._mutate(book_id, "list_queue", work)

    def list_student_reservations(self, ctx: ActorContext, student_id: str) -> list[ReservationModel]:
        """A student's open reservations across titles, after sweeping stale holds."""
        ctx.require(VIEW_RESERVATIONS)
        self._sweep_expired()
        return self._read(lambda q: q.list_for_student(student_id))

    def expire_ready_holds(
        self, ctx: ActorContext, book_id: str | None = None
    ) -> list[ReservationModel]:
        """Sweep expired reservations for one title, or for every title that has any."""
        ctx.require(MANAGE_RESERVATIONS)
        return self._sweep_expired([book_id] if book_id is not None else None)

    def _sweep_expired(self, titles: list[str] | None = None) -> list[ReservationModel]:
        if titles is None:
            titles = self._read(lambda q: q.titles_with_expired_holds())

        expired: list[ReservationModel] = []
        for title in titles:
            swept = self._mutate(title, "expire_ready_holds", lambda q, t=title: q.expire_ready_holds(t))
            record_reservation_event("expired", title, len(swept))
            expired.extend(swept)
        return expired

    # -- fines ------------------------------------------------------------

    def _fines(self, operation: str, work: Callable[[FineRepository], T]) -> T:
        with (
            trace_repository_operation("fines", operation, "transactions"),
            self.db.session_scope() as session,
        ):
            return work(FineRepository(session, self.policy, self.now))

    def get_fine(self, ctx: ActorContext, transaction_id: int) -> Fine:
        ctx.require(VIEW_FINES)
        return self._fines("get", lambda f: f.get_fine(transaction_id))

    def compute_current_fine(self, ctx: ActorContext, transaction_id: int) -> float:
        ctx.require(VIEW_FINES)
        return self._read(lambda q: q.ledger.compute_current_fine(transaction_id))

    def pay_fine(self, ctx: ActorContext, transaction_id: int) -> Fine:
        ctx.require(MANAGE_FINES)
        fine = self._fines("pay", lambda f: f.pay(transaction_id))
        record_fine_settlement("paid", fine.amount)
        return fine

    def waive_fine(self, ctx: ActorContext, transaction_id: int, reason: str) -> Fine:
        ctx.require(MANAGE_FINES)
        fine = self._fines("waive", lambda f: f.waive(transaction_id, reason))
        record_fine_settlement("waived", fine.amount)
        return fine

    def pay_fines(self, ctx: ActorContext, transaction_ids: list[int]) -> BulkFineResult:
        ctx.require(MANAGE_FINES)
        result = self._fines("bulk_pay", lambda f: f.bulk_pay(transaction_ids))
        record_fine_settlement("paid", result.total_amount)
        return result

    def waive_fines(self, ctx: ActorContext, transaction_ids: list[int], reason: str) -> BulkFineResult:
        ctx.require(MANAGE_FINES)
        result = self._fines("bulk_waive", lambda f: f.bulk_waive(transaction_ids, reason))
        record_fine_settlement("waived", result.total_amount)
        return result

    def unpaid_fines(self, ctx: ActorContext, student_id: str) -> float:
        ctx.require(VIEW_FINES)

        def work(f: FineRepository) -> float:
            if f.session.get(Student, student_id) is None:
                raise NotFoundError(f"Student {student_id} not found")
            return f.unpaid_total(student_id)

        return self._fines("unpaid_total", work)

    def list_unpaid_fines(
        self, ctx: ActorContext, student_id: str, pagination: PaginationParams | None = None
    ) -> PaginatedResponse:
        """Finalized fines a student still owes, oldest first."""
        ctx.require(VIEW_FINES)
        return self._fines("list_unpaid", lambda f: f.list_unpaid(student_id, pagination))

    def fine_statistics(self, ctx: ActorContext) -> FineStatistics:
        ctx.require(VIEW_FINES)
        return self._fines("statistics", lambda f: f.statistics())

    # -- copies -----------------------------------------------------------

    def add_copy(
        self,
        ctx: ActorContext,
        book_id: str,
        barcode: str,
        copy_number: str | None = None,
        condition: CopyConditionEnum = CopyConditionEnum.GOOD,
        acquisition_date: date | None = None,
    ) -> BookCopy:
        """Register a new copy; if students are waiting it is held for the first of them."""
        ctx.require(UPDATE_BOOKS)

        def work(q: ReservationQueue) -> BookCopy:
            copy = q.copies.register_copy(
                book_id, barcode, copy_number, condition=condition, acquisition_date=acquisition_date
            )
            q.promote_next(book_id)
            return q.copies.get_copy(copy.id)

        return self._mutate(book_id, "add_copy", work)

    def retire_copy(
        self, ctx: ActorContext, barcode: str, to_status: CopyStatusEnum = CopyStatusEnum.MAINTENANCE
    ) -> BookCopy:
        """Take a shelf copy out of circulation (maintenance, damaged or lost)."""
        ctx.require(UPDATE_BOOKS)
        if to_status not in RETIRED_STATUSES:
            raise InvalidStateError(
                StateCode.COPY_NOT_RETIRABLE,
                f"Copies can only be retired to {', '.join(s.value for s in RETIRED_STATUSES)}",
            )
        book_id = self._title_for_barcode(barcode)

        def work(q: ReservationQueue) -> BookCopy:
            copy = q.copies.get_by_barcode(barcode)
            if copy.status != CopyStatusEnum.AVAILABLE:
                raise InvalidStateError(
                    StateCode.COPY_NOT_RETIRABLE,
                    f"Copy {barcode} is {copy.status.value}; only shelf copies can be retired",
                )
            return q.copies.transition_status(copy.id, CopyStatusEnum.AVAILABLE, to_status)

        return self._mutate(book_id, "retire_copy", work)

    def restore_copy(self, ctx: ActorContext, barcode: str) -> BookCopy:
        """Return a retired copy to the shelf, or to the first waiting student."""
        ctx.require(UPDATE_BOOKS)
        book_id = self._title_for_barcode(barcode)

        def work(q: ReservationQueue) -> BookCopy:
            copy = q.copies.get_by_barcode(barcode)
            if copy.status not in RETIRED_STATUSES:
                raise InvalidStateError(
                    StateCode.COPY_NOT_RETIRABLE,
                    f"Copy {barcode} is {copy.status.value}, not out of circulation",
                )
            q.copies.transition_status(copy.id, copy.status, CopyStatusEnum.AVAILABLE)
            q.promote_next(book_id)
            return q.copies.get_copy(copy.id)

        return self._mutate(book_id, "restore_copy", work)

    def inventory(self, ctx: ActorContext, book_id: str) -> CopyInventory:
        ctx.require(VIEW_TRANSACTIONS)

        def work(q: ReservationQueue) -> CopyInventory:
            if q.session.get(Book, book_id) is None:
                raise NotFoundError(f"Book {book_id} not found")
            return q.copies.count_by_status(book_id)

        return self._read(work)


_coordinator: CirculationCoordinator | None = None


def get_coordinator() -> CirculationCoordinator:
    """The coordinator shared by the MCP tools and resources."""
    global _coordinator  # noqa: PLW0603
    if _coordinator is None:
        _coordinator = CirculationCoordinator()
    return _coordinator


def set_coordinator(coordinator: CirculationCoordinator | None) -> None:
    """Replace the shared coordinator (tests and embedding applications)."""
    global _coordinator  # noqa: PLW0603
    _coordinator = coordinator
