"""
Fine settlement for the Circulation MCP Server.

A fine is not a separate table: it is the fine columns of its transaction and
shares the transaction's id. It can be settled once, by payment or by a
waiver with a reason, and only after the loan has closed and frozen it.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import case, func, select

from ..config import CirculationPolicy, get_config
from ..fines import FinePolicy
from ..models.circulation import BulkFineResult, FineStatistics
from ..models.circulation import Fine as FineModel
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
from .schema import Book, Transaction, TransactionStatusEnum
from .session import mcp_safe_query
from .student_repository import unpaid_fine_total

logger = logging.getLogger(__name__)


class FineRepository(BaseRepository[Transaction, FineModel]):
    """Reads and settles the fines embedded in transactions."""

    def __init__(
        self,
        session,
        policy: CirculationPolicy | None = None,
        now_fn: Callable[[], datetime] = datetime.now,
    ):
        super().__init__(session)
        self.policy = policy or get_config().policy
        self.now = now_fn

    @property
    def model_class(self) -> type[Transaction]:
        return Transaction

    @property
    def response_schema(self) -> type[FineModel]:
        return FineModel

    def _to_response_model(self, db_obj: Transaction) -> FineModel:
        is_final = db_obj.status != TransactionStatusEnum.ACTIVE
        amount = db_obj.fine_amount
        if not is_final:
            book = self.session.get(Book, db_obj.book_id)
            fine_policy = FinePolicy.for_title(self.policy, book.fine_per_day if book else None)
            amount = fine_policy.compute(db_obj.due_date, self.now())
        return FineModel(
            id=db_obj.id,
            transaction_id=db_obj.id,
            student_id=db_obj.student_id,
            book_id=db_obj.book_id,
            amount=amount,
            reason=db_obj.fine_reason,
            is_final=is_final,
            paid=db_obj.fine_paid,
            paid_at=db_obj.fine_paid_at,
            waived=db_obj.fine_waived,
            waived_at=db_obj.fine_waived_at,
            waive_reason=db_obj.waive_reason,
        )

    def get_fine(self, transaction_id: int) -> FineModel:
        return self._to_response_model(self._require_row(transaction_id))

    def _settleable_row(self, transaction_id: int) -> Transaction:
        row = self._require_row(transaction_id)
        if row.status == TransactionStatusEnum.ACTIVE:
            raise InvalidStateError(
                StateCode.FINE_NOT_FINAL,
                f"Transaction {row.id} is still active; its fine is not final",
            )
        if row.fine_paid or row.fine_waived:
            raise InvalidStateError(
                StateCode.FINE_SETTLED,
                f"Fine {row.id} is already {'paid' if row.fine_paid else 'waived'}",
            )
        if row.fine_amount <= 0:
            raise InvalidStateError(StateCode.NO_FINE, f"Transaction {row.id} has no fine")
        return row

    def pay(self, transaction_id: int) -> FineModel:
        """
        Record payment of a finalized fine.

        Raises:
            NotFoundError: Unknown transaction
            InvalidStateError: FINE_NOT_FINAL, FINE_SETTLED or NO_FINE
        """
        row = self._settleable_row(transaction_id)
        row.fine_paid = True
        row.fine_paid_at = self.now()
        self.session.flush()
        logger.info("Fine %s paid (%.2f)", row.id, row.fine_amount)
        return self._to_response_model(row)

    def waive(self, transaction_id: int, reason: str) -> FineModel:
        """
        Waive a finalized fine. A reason is mandatory.

        Raises:
            PolicyViolationError: WAIVE_REASON_REQUIRED
            NotFoundError: Unknown transaction
            InvalidStateError: FINE_NOT_FINAL, FINE_SETTLED or NO_FINE
        """
        if not reason or not reason.strip():
            raise PolicyViolationError(
                ViolationCode.WAIVE_REASON_REQUIRED, "A reason is required to waive a fine"
            )
        row = self._settleable_row(transaction_id)
        row.fine_waived = True
        row.fine_waived_at = self.now()
        row.waive_reason = reason.strip()
        self.session.flush()
        logger.info("Fine %s waived (%.2f): %s", row.id, row.fine_amount, row.waive_reason)
        return self._to_response_model(row)

    def _bulk(self, transaction_ids: list[int], settle: Callable[[int], FineModel]) -> BulkFineResult:
        result = BulkFineResult()
        for transaction_id in dict.fromkeys(transaction_ids):
            try:
                fine = settle(transaction_id)
            except RepositoryException as e:
                result.failed[transaction_id] = e.message
                continue
            result.settled.append(fine)
            result.total_amount = round(result.total_amount + fine.amount, 2)
        return result

    def bulk_pay(self, transaction_ids: list[int]) -> BulkFineResult:
        """Pay several fines; ones that cannot be paid are reported, not raised."""
        return self._bulk(transaction_ids, self.pay)

    def bulk_waive(self, transaction_ids: list[int], reason: str) -> BulkFineResult:
        if not reason or not reason.strip():
            raise PolicyViolationError(
                ViolationCode.WAIVE_REASON_REQUIRED, "A reason is required to waive fines"
            )
        return self._bulk(transaction_ids, lambda transaction_id: self.waive(transaction_id, reason))

    def unpaid_total(self, student_id: str) -> float:
        return unpaid_fine_total(self.session, student_id)

    def list_unpaid(
        self, student_id: str | None = None, pagination: PaginationParams | None = None
    ) -> PaginatedResponse:
        query = select(Transaction).where(
            Transaction.status != TransactionStatusEnum.ACTIVE,
            Transaction.fine_amount > 0,
            Transaction.fine_paid.is_(False),
            Transaction.fine_waived.is_(False),
        )
        if student_id is not None:
            query = query.where(Transaction.student_id == student_id)
        query = query.order_by(Transaction.returned_at, Transaction.id)
        return self._paginate(query, pagination, self._to_response_model, FineModel)

    def statistics(self) -> FineStatistics:
        """Totals over finalized fines."""
        outstanding = (Transaction.fine_paid.is_(False)) & (Transaction.fine_waived.is_(False))
        query = select(
            func.coalesce(func.sum(Transaction.fine_amount), 0.0),
            func.coalesce(
                func.sum(case((Transaction.fine_paid.is_(True), Transaction.fine_amount), else_=0.0)),
                0.0,
            ),
            func.coalesce(
                func.sum(
                    case((Transaction.fine_waived.is_(True), Transaction.fine_amount), else_=0.0)
                ),
                0.0,
            ),
            func.coalesce(func.sum(case((outstanding, Transaction.fine_amount), else_=0.0)), 0.0),
            func.count(case((outstanding, Transaction.id))),
            func.count(case((Transaction.fine_paid.is_(True), Transaction.id))),
            func.count(case((Transaction.fine_waived.is_(True), Transaction.id))),
            func.count(func.distinct(case((outstanding, Transaction.student_id)))),
        ).where(
            Transaction.status != TransactionStatusEnum.ACTIVE,
            Transaction.fine_amount > 0,
        )
        row = mcp_safe_query(
            self.session, lambda s: s.execute(query).one(), "Failed to compute fine statistics"
        )
        return FineStatistics(
            total_assessed=round(float(row[0]), 2),
            total_paid=round(float(row[1]), 2),
            total_waived=round(float(row[2]), 2),
            total_outstanding=round(float(row[3]), 2),
            count_outstanding=row[4],
            count_paid=row[5],
            count_waived=row[6],
            students_with_outstanding=row[7],
        )
