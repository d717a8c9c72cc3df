"""Student models - the borrowing standing the ledger checks before every loan."""

from pydantic import BaseModel, ConfigDict, Field

from .enums import StudentStatusEnum


class Student(BaseModel):
    """A library member who can borrow and reserve."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Student code", examples=["STU001"])
    name: str
    email: str | None = None
    status: StudentStatusEnum = StudentStatusEnum.ACTIVE
    suspension_reason: str | None = None
    max_books: int = Field(default=5, ge=0)
    current_books: int = Field(default=0, ge=0)
    total_borrowed: int = Field(default=0, ge=0)

    @property
    def is_active(self) -> bool:
        return self.status == StudentStatusEnum.ACTIVE

    @property
    def remaining_slots(self) -> int:
        return max(0, self.max_books - self.current_books)
