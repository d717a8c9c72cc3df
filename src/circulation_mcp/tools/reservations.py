"""
Reservation tools - a title's hold queue.

1. reserve_book: join the queue for a title with no copy on the shelf
2. cancel_reservation: leave the queue, releasing a held copy to the next student
3. mark_reservation_ready: staff promotion of the queue head onto a copy
4. fulfill_reservation: lend the held copy to the reservation's student
5. expire_ready_holds: sweep holds whose pickup window has passed
"""

import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError

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


class ReserveBookInput(BaseModel):
    """Input schema for the reserve_book tool."""

    book_id: str = Field(..., min_length=1, max_length=50, examples=["BK001"])
    student_id: str = Field(..., min_length=1, max_length=50, examples=["STU001"])


class ReservationInput(BaseModel):
    reservation_id: int = Field(..., ge=1)


class ReservationCopyInput(BaseModel):
    reservation_id: int = Field(..., ge=1)
    copy_id: int | None = Field(
        default=None,
        ge=1,
        description="Specific copy to use; defaults to the held or first available copy",
    )


class ExpireHoldsInput(BaseModel):
    book_id: str | None = Field(
        default=None, description="Limit the sweep to one title; all titles when omitted"
    )


@trace_tool("reserve_book")
async def reserve_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Handler for the reserve_book tool.

    Reservations are only taken when no copy can be borrowed right away, or
    when other students are already waiting.
    """
    try:
        params = ReserveBookInput.model_validate(arguments)
    except ValidationError as e:
        logger.warning("Invalid reservation parameters: %s", e)
        return invalid_params_response("reservation", e)

    try:
        reservation = get_coordinator().reserve(terminal_actor(), params.book_id, params.student_id)
    except RepositoryException as e:
        logger.info("Reservation of %s refused: %s", params.book_id, e.message)
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in reserve_book tool")
        return unexpected_error_response(e)

    message = (
        f"Reservation {reservation.id} created for {params.student_id}. "
        f"Queue position: {reservation.queue_position}."
    )
    return success_response(message, reservation=reservation.model_dump(mode="json"))


@trace_tool("cancel_reservation")
async def cancel_reservation_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = ReservationInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_params_response("cancel", e)

    try:
        reservation = get_coordinator().cancel_reservation(terminal_actor(), params.reservation_id)
    except RepositoryException as e:
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in cancel_reservation tool")
        return unexpected_error_response(e)

    return success_response(
        f"Reservation {reservation.id} cancelled.",
        reservation=reservation.model_dump(mode="json"),
    )


@trace_tool("mark_reservation_ready")
async def mark_reservation_ready_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = ReservationCopyInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_params_response("mark_ready", e)

    try:
        reservation = get_coordinator().mark_ready(
            terminal_actor(), params.reservation_id, params.copy_id
        )
    except RepositoryException as e:
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in mark_reservation_ready tool")
        return unexpected_error_response(e)

    message = (
        f"Reservation {reservation.id} is ready: copy {reservation.copy_id} held until "
        f"{reservation.expires_at.strftime('%B %d, %Y %H:%M')}."
    )
    return success_response(message, reservation=reservation.model_dump(mode="json"))


@trace_tool("fulfill_reservation")
async def fulfill_reservation_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Handler for the fulfill_reservation tool.

    If the held copy is gone and no other copy is on the shelf, the
    reservation goes back to the front of the queue and the error says so.
    """
    try:
        params = ReservationCopyInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_params_response("fulfill", e)

    try:
        transaction = get_coordinator().fulfill_reservation(
            terminal_actor(), params.reservation_id, params.copy_id
        )
    except RepositoryException as e:
        logger.info("Fulfilment of reservation %s refused: %s", params.reservation_id, e.message)
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in fulfill_reservation tool")
        return unexpected_error_response(e)

    message = (
        f"Reservation {params.reservation_id} fulfilled: transaction {transaction.id}, "
        f"due {transaction.due_date.strftime('%B %d, %Y')}."
    )
    return success_response(message, transaction=transaction.model_dump(mode="json"))


@trace_tool("expire_ready_holds")
async def expire_ready_holds_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = ExpireHoldsInput.model_validate(arguments or {})
    except ValidationError as e:
        return invalid_params_response("expire", e)

    try:
        expired = get_coordinator().expire_ready_holds(terminal_actor(), params.book_id)
    except RepositoryException as e:
        return error_response(e)
    except Exception as e:
        logger.exception("Unexpected error in expire_ready_holds tool")
        return unexpected_error_response(e)

    return success_response(
        f"Expired {len(expired)} reservation(s).",
        expired=[reservation.model_dump(mode="json") for reservation in expired],
    )


reserve_book = {
    "name": "reserve_book",
    "description": (
        "Place a student in the FIFO reservation queue of a title that has no copy on "
        "the shelf. Returns the reservation and its queue position."
    ),
    "inputSchema": ReserveBookInput.model_json_schema(),
    "handler": reserve_book_handler,
}

cancel_reservation = {
    "name": "cancel_reservation",
    "description": (
        "Cancel a pending or ready reservation. A held copy passes to the next "
        "student in the queue."
    ),
    "inputSchema": ReservationInput.model_json_schema(),
    "handler": cancel_reservation_handler,
}

mark_reservation_ready = {
    "name": "mark_reservation_ready",
    "description": (
        "Hold an available copy for the first pending reservation of a title and "
        "start its pickup window."
    ),
    "inputSchema": ReservationCopyInput.model_json_schema(),
    "handler": mark_reservation_ready_handler,
}

fulfill_reservation = {
    "name": "fulfill_reservation",
    "description": "Lend the held copy to the student of a ready reservation.",
    "inputSchema": ReservationCopyInput.model_json_schema(),
    "handler": fulfill_reservation_handler,
}

expire_ready_holds = {
    "name": "expire_ready_holds",
    "description": (
        "Expire reservations whose pickup or request window has passed and pass "
        "their copies to the next students in line."
    ),
    "inputSchema": ExpireHoldsInput.model_json_schema(),
    "handler": expire_ready_holds_handler,
}

reservation_tools = [
    reserve_book,
    cancel_reservation,
    mark_reservation_ready,
    fulfill_reservation,
    expire_ready_holds,
]
