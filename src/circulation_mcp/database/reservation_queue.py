"""
Reservation queue manager for the Circulation MCP Server.

Each title has a FIFO queue made of its ``pending`` and ``ready``
reservations. Canonical order is ``(reserved_at, id)``: the timestamp first,
insertion order to break ties. Queue positions are never stored. A
reservation's position is its rank in that order, computed when it is read,
so cancelling, expiring or fulfilling an entry closes the gap by itself and
positions stay 1..N without renumbering anything.

Lifecycle::

    pending --promote--> ready --fulfil--> fulfilled
       |--student borrows a shelf copy--> fulfilled
       |                   |--cancel--> cancelled
       |                   `--hold window passes--> expired
       |--cancel--> cancelled
       `--request window passes--> expired

A ready reservation earmarks one copy by moving it ``available -> reserved``
through the copy registry's CAS, so a walk-in borrow cannot take it. Expired
holds are swept lazily before any queue operation on a title, and the sweep
is idempotent.

Promotions are collected in ``promoted`` so the coordinator can notify
students after the unit of work commits.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select

from ..config import CirculationPolicy
from ..models.circulation import QueuePosition
from ..models.circulation import Reservation as ReservationModel
from ..models.circulation import Transaction as TransactionModel
from .repository import (
    BaseRepository,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PolicyViolationError,
    StateCode,
    ViolationCode,
)
from .schema import (
    OPEN_RESERVATION_STATUSES,
    Book,
    CopyStatusEnum,
    Reservation,
    ReservationStatusEnum,
    StudentStatusEnum,
)
from .session import mcp_safe_query
from .transaction_ledger import TransactionLedger

logger = logging.getLogger(__name__)


class ReservationQueue(BaseRepository[Reservation, ReservationModel]):
    """Per-title hold queues over the reservations table."""

    def __init__(
        self,
        session,
        policy: CirculationPolicy | None = None,
        now_fn: Callable[[], datetime] = datetime.now,
        ledger: TransactionLedger | None = None,
    ):
        super().__init__(session)
        self.ledger = ledger or TransactionLedger(session, policy, now_fn)
        self.policy = self.ledger.policy
        self.now = self.ledger.now
        self.copies = self.ledger.copies
        self.students = self.ledger.students
        self.promoted: list[ReservationModel] = []

    @property
    def model_class(self) -> type[Reservation]:
        return Reservation

    @property
    def response_schema(self) -> type[ReservationModel]:
        return ReservationModel

    # -- ordering ---------------------------------------------------------

    def _open_query(self, book_id: str, status: ReservationStatusEnum | None = None):
        query = select(Reservation).where(Reservation.book_id == book_id)
        if status is None:
            query = query.where(Reservation.status.in_(OPEN_RESERVATION_STATUSES))
        else:
            query = query.where(Reservation.status == status)
        return query.order_by(Reservation.reserved_at, Reservation.id)

    def _rank(self, row: Reservation) -> int:
        ahead = select(func.count(Reservation.id)).where(
            Reservation.book_id == row.book_id,
            Reservation.status.in_(OPEN_RESERVATION_STATUSES),
            or_(
                Reservation.reserved_at < row.reserved_at,
                and_(Reservation.reserved_at == row.reserved_at, Reservation.id < row.id),
            ),
        )
        count = mcp_safe_query(
            self.session, lambda s: s.execute(ahead).scalar(), "Failed to rank reservation"
        )
        return (count or 0) + 1

    def _to_response_model(self, db_obj: Reservation) -> ReservationModel:
        model = ReservationModel.model_validate(db_obj, from_attributes=True)
        if db_obj.status in OPEN_RESERVATION_STATUSES:
            model = model.model_copy(update={"queue_position": self._rank(db_obj)})
        return model

    def _head(self, book_id: str) -> Reservation | None:
        query = self._open_query(book_id, ReservationStatusEnum.PENDING).limit(1)
        return mcp_safe_query(
            self.session, lambda s: s.execute(query).scalar_one_or_none(), "Failed to read queue head"
        )

    def _open_for_student(self, book_id: str, student_id: str) -> Reservation | None:
        query = self._open_query(book_id).where(Reservation.student_id == student_id).limit(1)
        return mcp_safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to look up reservation",
        )

    # -- reads ------------------------------------------------------------

    def get_reservation(self, reservation_id: int) -> ReservationModel:
        return self._to_response_model(self._require_row(reservation_id))

    def list_for_title(self, book_id: str) -> list[ReservationModel]:
        """The title's open queue in canonical order."""
        rows = mcp_safe_query(
            self.session,
            lambda s: s.execute(self._open_query(book_id)).scalars().all(),
            "Failed to list reservation queue",
        )
        return [
            ReservationModel.model_validate(row, from_attributes=True).model_copy(
                update={"queue_position": index}
            )
            for index, row in enumerate(rows, start=1)
        ]

    def list_for_student(self, student_id: str, open_only: bool = True) -> list[ReservationModel]:
        """A student's reservations across titles, oldest first, with their queue positions."""
        self.students.require(student_id)
        query = select(Reservation).where(Reservation.student_id == student_id)
        if open_only:
            query = query.where(Reservation.status.in_(OPEN_RESERVATION_STATUSES))
        query = query.order_by(Reservation.reserved_at, Reservation.id)
        rows = mcp_safe_query(
            self.session,
            lambda s: s.execute(query).scalars().all(),
            "Failed to list student reservations",
        )
        return [self._to_response_model(row) for row in rows]

    def queue_position(self, book_id: str, student_id: str) -> QueuePosition:
        """Where a student stands in a title's queue, after sweeping expired holds."""
        self.expire_ready_holds(book_id)
        total = self.session.execute(
            select(func.count()).select_from(self._open_query(book_id).subquery())
        ).scalar()
        row = self._open_for_student(book_id, student_id)
        if row is None:
            return QueuePosition(
                book_id=book_id, student_id=student_id, total_in_queue=total or 0, has_reserved=False
            )
        return QueuePosition(
            book_id=book_id,
            student_id=student_id,
            position=self._rank(row),
            total_in_queue=total or 0,
            has_reserved=True,
            status=row.status,
            reservation_id=row.id,
        )

    # -- queue mutations --------------------------------------------------

    def reserve(self, book_id: str, student_id: str) -> ReservationModel:
        """
        Join a title's queue.

        Raises:
            NotFoundError: Unknown title or student
            PolicyViolationError: STUDENT_SUSPENDED, ALREADY_RESERVED, or
                COPY_IMMEDIATELY_AVAILABLE when a copy is on the shelf and
                nobody is waiting
        """
        if self.session.get(Book, book_id) is None:
            raise NotFoundError(f"Book {book_id} not found")
        student = self.students.require(student_id)
        if student.status != StudentStatusEnum.ACTIVE:
            raise PolicyViolationError(
                ViolationCode.STUDENT_SUSPENDED,
                f"Student {student_id} cannot reserve (status: {student.status.value})",
            )

        self.expire_ready_holds(book_id)

        existing = self._open_for_student(book_id, student_id)
        if existing is not None:
            raise PolicyViolationError(
                ViolationCode.ALREADY_RESERVED,
                f"Student {student_id} already holds reservation {existing.id} for book {book_id}",
            )

        if self._head(book_id) is None and self.copies.first_available(book_id) is not None:
            raise PolicyViolationError(
                ViolationCode.COPY_IMMEDIATELY_AVAILABLE,
                f"A copy of book {book_id} is available; borrow it directly",
            )

        now = self.now()
        row = Reservation(
            book_id=book_id,
            student_id=student_id,
            status=ReservationStatusEnum.PENDING,
            reserved_at=now,
            expires_at=now + timedelta(days=self.policy.reservation_request_days),
        )
        self.session.add(row)
        self.session.flush()

        model = self._to_response_model(row)
        logger.info(
            "Reservation %s: %s queued for book %s at position %s",
            row.id,
            student_id,
            book_id,
            model.queue_position,
        )
        return model

    def cancel(self, reservation_id: int) -> ReservationModel:
        """
        Cancel a pending or ready reservation.

        Cancelling a ready hold hands its earmarked copy to the next student
        in line, or back to the shelf when nobody is waiting.

        Raises:
            NotFoundError: Unknown reservation
            InvalidStateError: NOT_CANCELLABLE for terminal reservations
        """
        row = self._require_row(reservation_id)
        self.expire_ready_holds(row.book_id)
        if row.status not in OPEN_RESERVATION_STATUSES:
            raise InvalidStateError(
                StateCode.NOT_CANCELLABLE,
                f"Reservation {row.id} is {row.status.value} and cannot be cancelled",
            )

        was_ready = row.status == ReservationStatusEnum.READY
        earmarked = row.copy_id
        row.status = ReservationStatusEnum.CANCELLED
        row.cancelled_at = self.now()
        self.session.flush()
        logger.info("Reservation %s cancelled", row.id)

        if was_ready and earmarked is not None:
            self._release_copy(earmarked)
            self.promote_next(row.book_id)

        return self._to_response_model(row)

    def _release_copy(self, copy_id: int) -> None:
        try:
            self.copies.transition_status(copy_id, CopyStatusEnum.RESERVED, CopyStatusEnum.AVAILABLE)
        except ConflictError:
            # Staff moved the copy (maintenance, lost) while it was held.
            logger.warning("Earmarked copy %s was no longer reserved; left as is", copy_id)

    def _promote(self, row: Reservation, copy_id: int) -> ReservationModel:
        self.copies.transition_status(copy_id, CopyStatusEnum.AVAILABLE, CopyStatusEnum.RESERVED)
        now = self.now()
        row.status = ReservationStatusEnum.READY
        row.notified_at = now
        row.expires_at = now + timedelta(hours=self.policy.hold_window_hours)
        row.copy_id = copy_id
        self.session.flush()

        model = self._to_response_model(row)
        self.promoted.append(model)
        logger.info(
            "Reservation %s ready: copy %s held for %s until %s",
            row.id,
            copy_id,
            row.student_id,
            row.expires_at.isoformat(),
        )
        return model

    def promote_next(self, book_id: str) -> ReservationModel | None:
        """
        Promote the first pending reservation of a title onto an available copy.

        Returns None when nobody is waiting or no copy is on the shelf.
        """
        head = self._head(book_id)
        if head is None:
            return None
        copy = self.copies.first_available(book_id)
        if copy is None:
            return None
        return self._promote(head, copy.id)

    def mark_ready(self, reservation_id: int, copy_id: int | None = None) -> ReservationModel:
        """
        Staff-driven promotion of the queue head, optionally onto a chosen copy.

        Raises:
            NotFoundError: Unknown reservation or copy
            InvalidStateError: NOT_PENDING
            PolicyViolationError: NOT_QUEUE_HEAD, or COPY_NOT_AVAILABLE when
                no suitable copy is on the shelf
        """
        row = self._require_row(reservation_id)
        self.expire_ready_holds(row.book_id)
        if row.status != ReservationStatusEnum.PENDING:
            raise InvalidStateError(
                StateCode.NOT_PENDING,
                f"Reservation {row.id} is {row.status.value}, not pending",
            )

        head = self._head(row.book_id)
        if head is None or head.id != row.id:
            raise PolicyViolationError(
                ViolationCode.NOT_QUEUE_HEAD,
                f"Reservation {row.id} is at position {self._rank(row)}; "
                "only the first pending reservation can be made ready",
            )

        if copy_id is None:
            copy = self.copies.first_available(row.book_id)
            if copy is None:
                raise PolicyViolationError(
                    ViolationCode.COPY_NOT_AVAILABLE,
                    f"No copy of book {row.book_id} is available to hold",
                )
        else:
            copy = self.copies.get_copy(copy_id)
            if copy.book_id != row.book_id or copy.status != CopyStatusEnum.AVAILABLE:
                raise PolicyViolationError(
                    ViolationCode.COPY_NOT_AVAILABLE,
                    f"Copy {copy.barcode} cannot be held for book {row.book_id} "
                    f"(status: {copy.status.value})",
                )

        return self._promote(row, copy.id)

    def expire_ready_holds(self, book_id: str | None = None) -> list[ReservationModel]:
        """
        Expire reservations whose deadline has passed.

        Pending reservations past their request window expire first, then
        ready holds past their hold window; each expired hold releases its
        copy and promotes the next pending reservation of that title.
        Running it again finds nothing to do.
        """
        now = self.now()
        expired: list[ReservationModel] = []

        for status in (ReservationStatusEnum.PENDING, ReservationStatusEnum.READY):
            query = select(Reservation).where(
                Reservation.status == status,
                Reservation.expires_at.is_not(None),
                Reservation.expires_at < now,
            )
            if book_id is not None:
                query = query.where(Reservation.book_id == book_id)
            query = query.order_by(Reservation.reserved_at, Reservation.id)
            rows = mcp_safe_query(
                self.session,
                lambda s, q=query: s.execute(q).scalars().all(),
                "Failed to find expired reservations",
            )

            for row in rows:
                earmarked = row.copy_id if status == ReservationStatusEnum.READY else None
                row.status = ReservationStatusEnum.EXPIRED
                self.session.flush()
                logger.info("Reservation %s expired (%s)", row.id, status.value)
                expired.append(ReservationModel.model_validate(row, from_attributes=True))
                if earmarked is not None:
                    self._release_copy(earmarked)
                    self.promote_next(row.book_id)

        return expired

    def fulfill(
        self, reservation_id: int, copy_id: int | None = None, processed_by: str | None = None
    ) -> TransactionModel:
        """
        Lend the held copy to the reservation's student.

        Borrows the earmarked copy (or ``copy_id`` when staff hand over a
        different one). If that copy was lost to a race, one other copy is
        tried: the earmark if it is still held, otherwise the first copy on
        the shelf.

        Raises:
            NotFoundError: Unknown reservation
            InvalidStateError: NOT_READY
            PolicyViolationError: COPY_NOT_AVAILABLE when no copy can be
                lent, or any borrow policy violation for the student
        """
        row = self._require_row(reservation_id)
        self.expire_ready_holds(row.book_id)
        if row.status != ReservationStatusEnum.READY:
            raise InvalidStateError(
                StateCode.NOT_READY,
                f"Reservation {row.id} is {row.status.value}, not ready",
            )

        earmarked = row.copy_id
        target = copy_id if copy_id is not None else earmarked
        expected = (
            CopyStatusEnum.RESERVED if target == earmarked else CopyStatusEnum.AVAILABLE
        )
        if target is None:
            raise PolicyViolationError(
                ViolationCode.COPY_NOT_AVAILABLE, f"Reservation {row.id} has no held copy"
            )
        self._check_title(target, row.book_id)

        try:
            transaction = self.ledger.borrow(
                target, row.student_id, expected_status=expected, processed_by=processed_by
            )
        except (PolicyViolationError, ConflictError) as exc:
            if (
                isinstance(exc, PolicyViolationError)
                and exc.violation != ViolationCode.COPY_NOT_AVAILABLE
            ):
                raise
            fallback = self._fallback_copy(row, tried=target)
            if fallback is None:
                raise PolicyViolationError(
                    ViolationCode.COPY_NOT_AVAILABLE,
                    f"No copy of book {row.book_id} is available for reservation {row.id}",
                ) from exc
            target, expected = fallback
            logger.info("Reservation %s: retrying fulfilment with copy %s", row.id, target)
            transaction = self.ledger.borrow(
                target, row.student_id, expected_status=expected, processed_by=processed_by
            )

        if earmarked is not None and target != earmarked:
            self._release_copy(earmarked)

        row.status = ReservationStatusEnum.FULFILLED
        row.fulfilled_at = self.now()
        row.transaction_id = transaction.id
        row.copy_id = target
        self.session.flush()
        logger.info("Reservation %s fulfilled by transaction %s", row.id, transaction.id)

        if earmarked is not None and target != earmarked:
            self.promote_next(row.book_id)
        return transaction

    def borrow_for_student(
        self,
        copy_id: int,
        student_id: str,
        processed_by: str | None = None,
        notes: str | None = None,
    ) -> TransactionModel:
        """
        Lend a scanned copy, settling the student's own open reservation for its title.

        A ready hold is fulfilled with the scanned copy when that copy is its
        earmark or is on the shelf; the earmark is then released to the next
        student in line. A pending reservation is closed as fulfilled by the
        loan. Anyone else's held copy stays refused as COPY_NOT_AVAILABLE.
        """
        copy = self.copies.get_copy(copy_id)
        hold = self._open_for_student(copy.book_id, student_id)

        if hold is not None and hold.status == ReservationStatusEnum.READY:
            if copy.id == hold.copy_id or copy.status == CopyStatusEnum.AVAILABLE:
                return self.fulfill(hold.id, copy_id=copy.id, processed_by=processed_by)

        transaction = self.ledger.borrow(
            copy.id, student_id, processed_by=processed_by, notes=notes
        )

        if hold is not None and hold.status == ReservationStatusEnum.PENDING:
            hold.status = ReservationStatusEnum.FULFILLED
            hold.fulfilled_at = self.now()
            hold.transaction_id = transaction.id
            hold.copy_id = copy.id
            self.session.flush()
            logger.info(
                "Reservation %s fulfilled by walk-in loan %s", hold.id, transaction.id
            )
        return transaction

    def _check_title(self, copy_id: int, book_id: str) -> None:
        copy = self.copies.get_copy(copy_id)
        if copy.book_id != book_id:
            raise PolicyViolationError(
                ViolationCode.COPY_NOT_AVAILABLE,
                f"Copy {copy.barcode} belongs to book {copy.book_id}, not {book_id}",
            )

    def _fallback_copy(
        self, row: Reservation, tried: int
    ) -> tuple[int, CopyStatusEnum] | None:
        if row.copy_id is not None and row.copy_id != tried:
            earmark = self.copies.get_copy(row.copy_id)
            if earmark.status == CopyStatusEnum.RESERVED:
                return earmark.id, CopyStatusEnum.RESERVED
        available = self.copies.first_available(row.book_id)
        if available is not None and available.id != tried:
            return available.id, CopyStatusEnum.AVAILABLE
        return None

    def requeue_if_hold_lost(self, reservation_id: int) -> ReservationModel | None:
        """
        Put a ready reservation whose held copy is gone back among the pending.

        Its ``reserved_at`` is untouched, so it keeps its place at the front.
        Returns None, changing nothing, when the reservation is not ready or
        its copy is still held.
        """
        row = self._require_row(reservation_id)
        if row.status != ReservationStatusEnum.READY:
            return None
        if row.copy_id is not None:
            if self.copies.get_copy(row.copy_id).status == CopyStatusEnum.RESERVED:
                return None

        row.status = ReservationStatusEnum.PENDING
        row.copy_id = None
        row.notified_at = None
        row.expires_at = self.now() + timedelta(days=self.policy.reservation_request_days)
        self.session.flush()
        logger.info("Reservation %s returned to the pending queue", row.id)
        return self._to_response_model(row)

    def held_for_copy(self, copy_id: int) -> ReservationModel | None:
        """The ready reservation earmarking a copy, if any."""
        query = select(Reservation).where(
            Reservation.copy_id == copy_id,
            Reservation.status == ReservationStatusEnum.READY,
        )
        row = mcp_safe_query(
            self.session,
            lambda s: s.execute(query).scalars().first(),
            "Failed to look up hold for copy",
        )
        return self._to_response_model(row) if row else None

    def titles_with_expired_holds(self) -> list[str]:
        """Titles that have a pending or ready reservation past its deadline."""
        query = (
            select(Reservation.book_id)
            .where(
                Reservation.status.in_(OPEN_RESERVATION_STATUSES),
                Reservation.expires_at.is_not(None),
                Reservation.expires_at < self.now(),
            )
            .distinct()
            .order_by(Reservation.book_id)
        )
        return list(self.session.execute(query).scalars().all())
