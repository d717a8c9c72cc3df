"""
Copy registry tools.

Copies enter circulation through add_copy and leave it through retire_copy
(maintenance, damaged or lost). A restored or newly added copy goes straight
to the first waiting student when the title has a queue.
"""

import logging
from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from ..auth import terminal_actor
from ..coordinator import get_coordinator
from ..database.repository import RepositoryException
from ..models.enums import CopyConditionEnum, CopyStatusEnum
from ..observability.decorators import trace_tool
from .responses import (
    error_response,
    invalid_params_response,
    success_response,
    unexpected_error_response,
)

logger = logging.getLogger(__name__)


class AddCopyInput(BaseModel):
    """Input schema for the add_copy tool."""

    book_id: str = Field(..., min_length=1, max_length=50, examples=["BK001"])
    barcode: str = Field(..., min_length=1, max_length=64, examples=["BC101"])
    copy_number: str | None = Field(
        default=None,
        max_length=20,
        description="Copy label on the title; the next free number when omitted",
    )
    condition: CopyConditionEnum = CopyConditionEnum.GOOD
    acquisition_date: date | None = None


class RetireCopyInput(BaseModel):
    barcode: str = Field(..., min_length=1, max_length=64)
    status: Literal["maintenance", "damaged", "lost"] = "maintenance"


class RestoreCopyInput(BaseModel):
    barcode: str = Field(..., min_length=1, max_length=64)


@trace_tool("add_copy")
async def add_copy_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = AddCopyInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_params_response("add_copy", e)

    try:
        copy = get_coordinator().add_copy(
            terminal_actor(),
            params.book_id,
            params.barcode,
            copy_number=params.copy_number,
            condition=params.condition,
            acquisition_date=params.acquisition_date,
        )
    except RepositoryException as e:
        logger.info("Copy %s not added: %s", params.barcode, e.message)
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in add_copy tool")
        return unexpected_error_response(e)

    message = f"Copy {copy.barcode} added to {copy.book_id} as copy {copy.copy_number}."
    if copy.status == CopyStatusEnum.RESERVED:
        message += " It is being held for the first waiting student."
    return success_response(message, copy=copy.model_dump(mode="json"))


@trace_tool("retire_copy")
async def retire_copy_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = RetireCopyInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_params_response("retire_copy", e)

    try:
        copy = get_coordinator().retire_copy(
            terminal_actor(), params.barcode, CopyStatusEnum(params.status)
        )
    except RepositoryException as e:
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in retire_copy tool")
        return unexpected_error_response(e)

    return success_response(
        f"Copy {copy.barcode} taken out of circulation ({copy.status.value}).",
        copy=copy.model_dump(mode="json"),
    )


@trace_tool("restore_copy")
async def restore_copy_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = RestoreCopyInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_params_response("restore_copy", e)

    try:
        copy = get_coordinator().restore_copy(terminal_actor(), params.barcode)
    except RepositoryException as e:
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in restore_copy tool")
        return unexpected_error_response(e)

    return success_response(
        f"Copy {copy.barcode} is back in circulation ({copy.status.value}).",
        copy=copy.model_dump(mode="json"),
    )


add_copy = {
    "name": "add_copy",
    "description": "Register a new barcoded copy of a title.",
    "inputSchema": AddCopyInput.model_json_schema(),
    "handler": add_copy_handler,
}

retire_copy = {
    "name": "retire_copy",
    "description": (
        "Take a copy that is on the shelf out of circulation for maintenance, or "
        "record it as damaged or lost."
    ),
    "inputSchema": RetireCopyInput.model_json_schema(),
    "handler": retire_copy_handler,
}

restore_copy = {
    "name": "restore_copy",
    "description": "Put a retired copy back into circulation.",
    "inputSchema": RestoreCopyInput.model_json_schema(),
    "handler": restore_copy_handler,
}

copy_tools = [add_copy, retire_copy, restore_copy]
