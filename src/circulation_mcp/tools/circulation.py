"""
Circulation tools - the staff terminal's scan-driven actions.

1. borrow_by_barcode: lend the scanned copy to a student
2. return_by_barcode: close the loan on the scanned copy, freezing its fine
3. renew_transaction: extend an active loan by one loan period
4. report_lost: force-close a loan whose copy is lost
5. notify_overdue: report overdue loans that have not been reported yet

Tools change circulation state; reads (scan lookup, renewal eligibility,
overdue list) are resources. Every call runs as the terminal's configured
actor and goes through the coordinator, which enforces the permission codes.
"""

import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from ..auth import terminal_actor
from ..coordinator import get_coordinator
from ..database.repository import RepositoryException
from ..models.enums import CopyConditionEnum
from ..observability.decorators import trace_tool
from .responses import (
    error_response,
    invalid_params_response,
    success_response,
    unexpected_error_response,
)

logger = logging.getLogger(__name__)


# =============================================================================
# BORROW
# =============================================================================


class BorrowByBarcodeInput(BaseModel):
    """Input schema for the borrow_by_barcode tool."""

    barcode: str = Field(
        ...,
        description="Barcode scanned from the physical copy",
        min_length=1,
        max_length=64,
        examples=["BC001"],
    )
    student_id: str = Field(
        ...,
        description="Student code of the borrower",
        min_length=1,
        max_length=50,
        examples=["STU001"],
    )
    notes: str | None = Field(default=None, max_length=500)


@trace_tool("borrow_by_barcode")
async def borrow_by_barcode_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Handler for the borrow_by_barcode tool.

    The copy must be on the shelf, or held for this same student (which
    fulfils the student's ready reservation). Refusals come back in a fixed
    order: copy not available, over limit, suspended, outstanding fines.
    """
    try:
        params = BorrowByBarcodeInput.model_validate(arguments)
    except ValidationError as e:
        logger.warning("Invalid borrow parameters: %s", e)
        return invalid_params_response("borrow", e)

    try:
        transaction = get_coordinator().borrow_by_barcode(
            terminal_actor(), params.barcode, params.student_id, notes=params.notes
        )
    except RepositoryException as e:
        logger.info("Borrow of %s refused: %s", params.barcode, e.message)
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in borrow_by_barcode tool")
        return unexpected_error_response(e)

    message = (
        f"Copy {params.barcode} lent to {transaction.student_id}. "
        f"Due {transaction.due_date.strftime('%B %d, %Y')}."
    )
    return success_response(message, transaction=transaction.model_dump(mode="json"))


# =============================================================================
# RETURN
# =============================================================================


class ReturnByBarcodeInput(BaseModel):
    """Input schema for the return_by_barcode tool."""

    barcode: str = Field(..., min_length=1, max_length=64, examples=["BC001"])
    condition: CopyConditionEnum | None = Field(
        default=None,
        description="Condition of the copy as returned; 'damaged' takes it out of circulation",
    )
    condition_notes: str | None = Field(
        default=None,
        max_length=500,
        examples=["Water damage on cover"],
    )


@trace_tool("return_by_barcode")
async def return_by_barcode_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Handler for the return_by_barcode tool.

    Returning freezes the fine and, when students are waiting, holds the copy
    for the first of them in the same transaction.
    """
    try:
        params = ReturnByBarcodeInput.model_validate(arguments)
    except ValidationError as e:
        logger.warning("Invalid return parameters: %s", e)
        return invalid_params_response("return", e)

    try:
        transaction = get_coordinator().return_by_barcode(
            terminal_actor(),
            params.barcode,
            condition=params.condition,
            condition_notes=params.condition_notes,
        )
    except RepositoryException as e:
        logger.info("Return of %s refused: %s", params.barcode, e.message)
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in return_by_barcode tool")
        return unexpected_error_response(e)

    message = f"Copy {params.barcode} returned by {transaction.student_id}."
    if transaction.fine_amount > 0:
        message += f" Fine assessed: {transaction.fine_amount:.2f}."
    else:
        message += " Returned on time - no fine."
    return success_response(message, transaction=transaction.model_dump(mode="json"))


# =============================================================================
# RENEW / LOST
# =============================================================================


class TransactionInput(BaseModel):
    transaction_id: int = Field(..., ge=1, description="Transaction to act on")


@trace_tool("renew_transaction")
async def renew_transaction_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Handler for the renew_transaction tool."""
    try:
        params = TransactionInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_params_response("renew", e)

    try:
        transaction = get_coordinator().renew(terminal_actor(), params.transaction_id)
    except RepositoryException as e:
        logger.info("Renewal of transaction %s refused: %s", params.transaction_id, e.message)
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in renew_transaction tool")
        return unexpected_error_response(e)

    message = (
        f"Transaction {transaction.id} renewed ({transaction.renewal_count} renewal(s)). "
        f"Now due {transaction.due_date.strftime('%B %d, %Y')}."
    )
    return success_response(message, transaction=transaction.model_dump(mode="json"))


@trace_tool("report_lost")
async def report_lost_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Handler for the report_lost tool."""
    try:
        params = TransactionInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_params_response("report_lost", e)

    try:
        transaction = get_coordinator().report_lost(terminal_actor(), params.transaction_id)
    except RepositoryException as e:
        logger.info("Lost report for transaction %s refused: %s", params.transaction_id, e.message)
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in report_lost tool")
        return unexpected_error_response(e)

    message = (
        f"Transaction {transaction.id} closed as lost. "
        f"Replacement fine: {transaction.fine_amount:.2f}."
    )
    return success_response(message, transaction=transaction.model_dump(mode="json"))


@trace_tool("notify_overdue")
async def notify_overdue_handler(arguments: dict[str, Any]) -> dict[str, Any]:  # noqa: ARG001
    """Handler for the notify_overdue tool."""
    try:
        notices = get_coordinator().notify_overdue(terminal_actor())
    except RepositoryException as e:
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in notify_overdue tool")
        return unexpected_error_response(e)

    return success_response(
        f"Sent {len(notices)} overdue notice(s).",
        notices=[notice.model_dump(mode="json") for notice in notices],
    )


borrow_by_barcode = {
    "name": "borrow_by_barcode",
    "description": (
        "Lend a scanned copy to a student. Checks that the copy is available, the "
        "student is under the borrowing limit, not suspended and below the unpaid "
        "fine threshold. The loan is due after the standard loan period."
    ),
    "inputSchema": BorrowByBarcodeInput.model_json_schema(),
    "handler": borrow_by_barcode_handler,
}

return_by_barcode = {
    "name": "return_by_barcode",
    "description": (
        "Return a scanned copy. Closes the active loan, freezes any overdue fine, "
        "records the copy's condition and holds the copy for the next student in "
        "the title's reservation queue."
    ),
    "inputSchema": ReturnByBarcodeInput.model_json_schema(),
    "handler": return_by_barcode_handler,
}

renew_transaction = {
    "name": "renew_transaction",
    "description": (
        "Extend an active loan by one loan period. Refused once the renewal limit is "
        "reached or while another student is waiting for the title."
    ),
    "inputSchema": TransactionInput.model_json_schema(),
    "handler": renew_transaction_handler,
}

report_lost = {
    "name": "report_lost",
    "description": (
        "Close an active loan whose copy has been lost. The copy is marked lost and "
        "the student is charged the title's replacement cost."
    ),
    "inputSchema": TransactionInput.model_json_schema(),
    "handler": report_lost_handler,
}

notify_overdue = {
    "name": "notify_overdue",
    "description": "Send a reminder for every overdue loan that has not been reminded yet.",
    "inputSchema": {"type": "object", "properties": {}},
    "handler": notify_overdue_handler,
}

circulation_tools = [
    borrow_by_barcode,
    return_by_barcode,
    renew_transaction,
    report_lost,
    notify_overdue,
]
