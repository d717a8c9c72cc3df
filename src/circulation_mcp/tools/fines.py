"""
Fine settlement tools.

A fine is settled at most once: paid or waived, never both. Fines on loans
that are still open keep accruing and cannot be settled until the copy is
returned or reported lost.
"""

import logging
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator

from ..auth import terminal_actor
from ..coordinator import get_coordinator
from ..database.repository import RepositoryException
from ..observability.decorators import trace_tool
from .responses import (
    error_response,
    invalid_params_response,
    success_response,
    unexpected_error_response,
)

logger = logging.getLogger(__name__)


class PayFineInput(BaseModel):
    transaction_id: int = Field(..., ge=1, description="Transaction the fine belongs to")


class WaiveFineInput(BaseModel):
    transaction_id: int = Field(..., ge=1)
    reason: str = Field(
        ...,
        description="Why the fine is forgiven; required for the audit trail",
        max_length=500,
        examples=["First-time offender"],
    )


class SettleFinesInput(BaseModel):
    """Input schema for the settle_fines tool."""

    transaction_ids: list[int] = Field(..., min_length=1, max_length=100)
    action: Literal["pay", "waive"] = "pay"
    reason: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def validate_reason(self):
        if self.action == "waive" and not (self.reason and self.reason.strip()):
            raise ValueError("reason is required when waiving fines")
        return self


@trace_tool("pay_fine")
async def pay_fine_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = PayFineInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_params_response("pay_fine", e)

    try:
        fine = get_coordinator().pay_fine(terminal_actor(), params.transaction_id)
    except RepositoryException as e:
        logger.info("Payment of fine %s refused: %s", params.transaction_id, e.message)
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in pay_fine tool")
        return unexpected_error_response(e)

    return success_response(
        f"Fine {fine.id} of {fine.amount:.2f} paid by {fine.student_id}.",
        fine=fine.model_dump(mode="json"),
    )


@trace_tool("waive_fine")
async def waive_fine_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Handler for the waive_fine tool.

    A blank reason is refused by the fine repository with WAIVE_REASON_REQUIRED
    rather than by schema validation, so the terminal sees the business code.
    """
    try:
        params = WaiveFineInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_params_response("waive_fine", e)

    try:
        fine = get_coordinator().waive_fine(terminal_actor(), params.transaction_id, params.reason)
    except RepositoryException as e:
        logger.info("Waiver of fine %s refused: %s", params.transaction_id, e.message)
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in waive_fine tool")
        return unexpected_error_response(e)

    return success_response(
        f"Fine {fine.id} of {fine.amount:.2f} waived: {fine.waive_reason}.",
        fine=fine.model_dump(mode="json"),
    )


@trace_tool("settle_fines")
async def settle_fines_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Handler for the settle_fines tool.

    Settles each fine on its own; fines that cannot be settled are reported
    per transaction id and do not stop the others.
    """
    try:
        params = SettleFinesInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_params_response("settle_fines", e)

    coordinator = get_coordinator()
    try:
        if params.action == "pay":
            result = coordinator.pay_fines(terminal_actor(), params.transaction_ids)
        else:
            result = coordinator.waive_fines(terminal_actor(), params.transaction_ids, params.reason)
    except RepositoryException as e:
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in settle_fines tool")
        return unexpected_error_response(e)

    verb = "paid" if params.action == "pay" else "waived"
    message = f"{len(result.settled)} fine(s) {verb}, total {result.total_amount:.2f}."
    if result.failed:
        message += f" {len(result.failed)} could not be settled."
    return success_response(message, result=result.model_dump(mode="json"))


pay_fine = {
    "name": "pay_fine",
    "description": "Record payment of the final fine on a closed transaction.",
    "inputSchema": PayFineInput.model_json_schema(),
    "handler": pay_fine_handler,
}

waive_fine = {
    "name": "waive_fine",
    "description": "Forgive the final fine on a closed transaction. A reason is required.",
    "inputSchema": WaiveFineInput.model_json_schema(),
    "handler": waive_fine_handler,
}

settle_fines = {
    "name": "settle_fines",
    "description": (
        "Pay or waive several fines at once. Each fine is settled independently and "
        "failures are reported per transaction."
    ),
    "inputSchema": SettleFinesInput.model_json_schema(),
    "handler": settle_fines_handler,
}

fine_tools = [pay_fine, waive_fine, settle_fines]
