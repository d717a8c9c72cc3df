"""
Copy registry for the Circulation MCP Server.

Owns physical copy identity and status. Every status change, whether a borrow,
a return, a hold earmark or a retirement, goes through ``transition_status``:
a guarded compare-and-swap executed as one UPDATE statement

    UPDATE book_copies SET status = :to, version = version + 1
    WHERE id = :id AND status = :expected

so two terminals racing for the same copy cannot both win. The loser sees a
row count of zero and gets a ``ConflictError``.
"""

import logging
from collections.abc import Iterator
from datetime import date

from sqlalchemy import func, select, update

from ..models.catalog import BookCopy as BookCopyModel
from ..models.catalog import CopyInventory
from .repository import BaseRepository, ConflictError, DuplicateError, NotFoundError
from .schema import Book, BookCopy, CopyConditionEnum, CopyStatusEnum
from .session import mcp_safe_query

logger = logging.getLogger(__name__)


class CopySequence:
    """
    Lazy, restartable sequence of a title's copies.

    Nothing is fetched until iteration starts, and every new iteration
    re-issues the query, so a caller looping twice sees current statuses both
    times rather than a stale snapshot.
    """

    def __init__(self, registry: "CopyRegistry", book_id: str, status: CopyStatusEnum | None = None):
        self._registry = registry
        self.book_id = book_id
        self.status = status

    def _query(self):
        query = select(BookCopy).where(BookCopy.book_id == self.book_id)
        if self.status is not None:
            query = query.where(BookCopy.status == self.status)
        return query.order_by(BookCopy.id)

    def __iter__(self) -> Iterator[BookCopyModel]:
        rows = self._registry.session.scalars(self._query().execution_options(yield_per=50))
        for row in rows:
            yield self._registry._to_response_model(row)

    def first(self) -> BookCopyModel | None:
        row = self._registry.session.scalars(self._query().limit(1)).first()
        return self._registry._to_response_model(row) if row else None

    def count(self) -> int:
        query = select(func.count()).select_from(self._query().subquery())
        return self._registry.session.execute(query).scalar() or 0


class CopyRegistry(BaseRepository[BookCopy, BookCopyModel]):
    """Repository for physical copies and their guarded status."""

    @property
    def model_class(self) -> type[BookCopy]:
        return BookCopy

    @property
    def response_schema(self) -> type[BookCopyModel]:
        return BookCopyModel

    def get_copy(self, copy_id: int) -> BookCopyModel:
        """
        Get a copy by id.

        Raises:
            NotFoundError: If no copy has this id
        """
        row = self._require_row(copy_id)
        return self._to_response_model(row)

    def get_by_barcode(self, barcode: str) -> BookCopyModel:
        """
        Get a copy by its barcode.

        Raises:
            NotFoundError: If no copy carries this barcode
        """
        barcode = barcode.strip()
        query = select(BookCopy).where(BookCopy.barcode == barcode)
        row = mcp_safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to look up copy by barcode",
        )
        if row is None:
            raise NotFoundError(f"No copy with barcode {barcode}")
        return self._to_response_model(row)

    def transition_status(
        self,
        copy_id: int,
        from_expected: CopyStatusEnum,
        to: CopyStatusEnum,
        condition: CopyConditionEnum | None = None,
    ) -> BookCopyModel:
        """
        Move a copy from ``from_expected`` to ``to`` if, and only if, it is
        still in ``from_expected``.

        Args:
            copy_id: Copy to transition
            from_expected: Status the caller observed
            to: Status to set
            condition: Optional new physical condition, applied in the same statement

        Returns:
            The copy as it is after the change

        Raises:
            NotFoundError: If the copy does not exist
            ConflictError: If the copy's status is no longer ``from_expected``
        """
        values = {"status": to, "version": BookCopy.version + 1}
        if condition is not None:
            values["condition"] = condition

        stmt = (
            update(BookCopy)
            .where(BookCopy.id == copy_id, BookCopy.status == from_expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = mcp_safe_query(
            self.session, lambda s: s.execute(stmt), "Failed to update copy status"
        )

        if result.rowcount != 1:
            if not self.exists(copy_id):
                raise NotFoundError(f"BookCopy {copy_id} not found")
            logger.info(
                "Copy %s status change %s -> %s lost to a concurrent update",
                copy_id,
                from_expected.value,
                to.value,
            )
            raise ConflictError(
                f"Copy {copy_id} is no longer {from_expected.value}; it was changed concurrently"
            )

        row = self.session.get(BookCopy, copy_id, populate_existing=True)
        logger.debug("Copy %s: %s -> %s (version %s)", copy_id, from_expected.value, to.value, row.version)
        return self._to_response_model(row)

    def list_by_title(self, book_id: str, status: CopyStatusEnum | None = None) -> CopySequence:
        """Copies of a title, optionally filtered by status, as a lazy sequence."""
        return CopySequence(self, book_id, status)

    def first_available(self, book_id: str) -> BookCopyModel | None:
        """Lowest-numbered copy of the title currently on the shelf."""
        return self.list_by_title(book_id, CopyStatusEnum.AVAILABLE).first()

    def count_by_status(self, book_id: str) -> CopyInventory:
        """Per-status copy counts for a title; every status is present, zero-filled."""
        query = (
            select(BookCopy.status, func.count(BookCopy.id))
            .where(BookCopy.book_id == book_id)
            .group_by(BookCopy.status)
        )
        rows = mcp_safe_query(
            self.session, lambda s: s.execute(query).all(), "Failed to count copies"
        )
        counts = {status.value: 0 for status in CopyStatusEnum}
        for status, count in rows:
            counts[status.value] = count
        return CopyInventory(book_id=book_id, total=sum(counts.values()), counts=counts)

    def register_copy(
        self,
        book_id: str,
        barcode: str,
        copy_number: str | None = None,
        condition: CopyConditionEnum = CopyConditionEnum.GOOD,
        acquisition_date: date | None = None,
        notes: str | None = None,
    ) -> BookCopyModel:
        """
        Register a newly acquired copy as available.

        Raises:
            NotFoundError: If the title does not exist
            DuplicateError: If the barcode is already assigned
        """
        if self.session.get(Book, book_id) is None:
            raise NotFoundError(f"Book {book_id} not found")

        barcode = barcode.strip()
        existing = self.session.execute(
            select(BookCopy.id).where(BookCopy.barcode == barcode)
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateError(f"Barcode {barcode} is already assigned to copy {existing}")

        if copy_number is None:
            copy_number = str(self.list_by_title(book_id).count() + 1)

        row = BookCopy(
            book_id=book_id,
            copy_number=copy_number,
            barcode=barcode,
            condition=condition,
            status=CopyStatusEnum.AVAILABLE,
            acquisition_date=acquisition_date or date.today(),
            notes=notes,
            version=1,
        )
        self.session.add(row)
        self.session.flush()
        logger.info("Registered copy %s (%s) for book %s", row.id, barcode, book_id)
        return self._to_response_model(row)
