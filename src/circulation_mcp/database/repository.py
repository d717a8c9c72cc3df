"""
Repository pattern implementation for the Circulation MCP Server.

This module holds the pieces every repository shares:

1. **Error taxonomy**: NotFound, Conflict, PolicyViolation and InvalidState,
   each carrying a machine-readable ``kind`` (and ``code`` where the caller
   needs to tell violations apart) next to the human message
2. **Pagination**: request parameters and the paginated response envelope
3. **BaseRepository**: lookups shared by the simple entity repositories

Repositories flush but never commit; the coordinator's session scope owns the
transaction boundary.
"""

import enum
from abc import ABC, abstractmethod
from typing import Generic, TypeVar

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..database.schema import Base
from ..database.session import mcp_safe_query

ModelType = TypeVar("ModelType", bound=Base)
ResponseSchemaType = TypeVar("ResponseSchemaType", bound=BaseModel)


class ViolationCode(str, enum.Enum):
    """Business rules a caller can break."""

    COPY_NOT_AVAILABLE = "copy_not_available"
    STUDENT_OVER_LIMIT = "student_over_limit"
    STUDENT_SUSPENDED = "student_suspended"
    OUTSTANDING_FINES = "outstanding_fines_exceed_threshold"
    MAX_RENEWALS_REACHED = "max_renewals_reached"
    COPY_RESERVED = "copy_reserved"
    ALREADY_RESERVED = "already_reserved"
    COPY_IMMEDIATELY_AVAILABLE = "copy_immediately_available"
    NOT_QUEUE_HEAD = "not_queue_head"
    WAIVE_REASON_REQUIRED = "waive_reason_required"


class StateCode(str, enum.Enum):
    """Operations attempted against a record in an incompatible state."""

    NOT_ACTIVE = "not_active"
    NO_ACTIVE_TRANSACTION = "no_active_transaction"
    NOT_CANCELLABLE = "not_cancellable"
    NOT_PENDING = "not_pending"
    NOT_READY = "not_ready"
    FINE_NOT_FINAL = "fine_not_final"
    FINE_SETTLED = "fine_settled"
    NO_FINE = "no_fine"
    COPY_NOT_RETIRABLE = "copy_not_retirable"


class RepositoryException(Exception):
    """Base exception for repository operations."""

    kind = "error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code

    def to_dict(self) -> dict[str, str | None]:
        """Machine-readable form used in tool error payloads."""
        return {"kind": self.kind, "code": self.code, "message": self.message}


class NotFoundError(RepositoryException):
    """Raised when an entity is not found."""

    kind = "not_found"


class DuplicateError(RepositoryException):
    """Raised when attempting to create a duplicate entity."""

    kind = "duplicate"


class ConflictError(RepositoryException):
    """Raised when a guarded status change lost a race to a concurrent writer."""

    kind = "conflict"


class PolicyViolationError(RepositoryException):
    """Raised when an operation is refused by circulation policy."""

    kind = "policy_violation"

    def __init__(self, code: ViolationCode, message: str):
        super().__init__(message, code.value)
        self.violation = code


class InvalidStateError(RepositoryException):
    """Raised when a transaction or reservation is in the wrong state for an operation."""

    kind = "invalid_state"

    def __init__(self, code: StateCode, message: str):
        super().__init__(message, code.value)
        self.state = code


class AuthorizationError(RepositoryException):
    """Raised when the caller's capability set lacks the required permission."""

    kind = "forbidden"


class PaginationParams(BaseModel):
    """Standard pagination parameters for MCP list operations."""

    page: int = 1
    page_size: int = 20

    @property
    def offset(self) -> int:
        """Calculate offset for SQL queries."""
        return (self.page - 1) * self.page_size

    def validate_params(self) -> None:
        """Validate pagination parameters."""
        if self.page < 1:
            raise ValueError("Page must be >= 1")
        if self.page_size < 1 or self.page_size > 100:
            raise ValueError("Page size must be between 1 and 100")


class PaginatedResponse(BaseModel, Generic[ResponseSchemaType]):
    """Standard paginated response for MCP list operations."""

    items: list[ResponseSchemaType]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_previous: bool

    @classmethod
    def build(
        cls, items: list, total: int, pagination: PaginationParams
    ) -> "PaginatedResponse":
        return cls(
            items=items,
            total=total,
            page=pagination.page,
            page_size=pagination.page_size,
            total_pages=(total + pagination.page_size - 1) // pagination.page_size,
            has_next=pagination.page * pagination.page_size < total,
            has_previous=pagination.page > 1,
        )


class BaseRepository(ABC, Generic[ModelType, ResponseSchemaType]):
    """
    Abstract base repository providing shared lookups.

    Subclasses name their SQLAlchemy model and Pydantic response schema;
    lookups return response models so callers never hold live ORM rows
    outside the unit of work.
    """

    def __init__(self, session: Session):
        """Initialize repository with database session."""
        self.session = session

    @property
    @abstractmethod
    def model_class(self) -> type[ModelType]:
        """Return the SQLAlchemy model class."""

    @property
    @abstractmethod
    def response_schema(self) -> type[ResponseSchemaType]:
        """Return the Pydantic response schema."""

    def _to_response_model(self, db_obj: ModelType) -> ResponseSchemaType:
        """Convert database model to Pydantic response model."""
        return self.response_schema.model_validate(db_obj, from_attributes=True)

    def _get_row(self, id: int | str) -> ModelType | None:
        query = select(self.model_class).where(self.model_class.id == id)
        return mcp_safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            f"Failed to get {self.model_class.__name__} by ID",
        )

    def _require_row(self, id: int | str) -> ModelType:
        db_obj = self._get_row(id)
        if db_obj is None:
            raise NotFoundError(f"{self.model_class.__name__} {id} not found")
        return db_obj

    def exists(self, id: int | str) -> bool:
        """Check if entity exists by ID."""
        query = select(func.count()).select_from(self.model_class).where(self.model_class.id == id)
        count = mcp_safe_query(
            self.session, lambda s: s.execute(query).scalar(), "Failed to check existence"
        )
        return count > 0

    def _paginate(
        self, query, pagination: PaginationParams | None, convert, item_type: type[BaseModel]
    ) -> PaginatedResponse:
        """Run ``query`` with a count and a page window, converting each row to ``item_type``."""
        if not pagination:
            pagination = PaginationParams()

        pagination.validate_params()

        count_query = select(func.count()).select_from(query.subquery())
        total = (
            mcp_safe_query(
                self.session,
                lambda s: s.execute(count_query).scalar(),
                "Failed to count total for pagination",
            )
            or 0
        )

        page_query = query.offset(pagination.offset).limit(pagination.page_size)
        results = mcp_safe_query(
            self.session,
            lambda s: s.execute(page_query).unique().scalars().all(),
            "Failed to get paginated results",
        )

        items = [convert(item) for item in results]
        return PaginatedResponse[item_type].build(items, total, pagination)
