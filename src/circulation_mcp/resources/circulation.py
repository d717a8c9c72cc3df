"""Circulation Resources - what a staff terminal reads

Resources are the read side of the circulation desk. Each one calls the
coordinator as the terminal's actor, so permission checks and the lazy
expiry of stale holds happen exactly as they do for tools.

Resources:
- library://copies/scan/{barcode} - Copy, title and current borrower after a scan
- library://books/{book_id}/inventory - Copy counts per status for a title
- library://transactions/overdue - Overdue loans with their current fines
- library://transactions/{transaction_id} - One loan
- library://transactions/{transaction_id}/can-renew - Renewal eligibility
- library://students/{student_id}/loans - A student's loans
- library://reservations/queue/{book_id} - A title's open queue in FIFO order
- library://reservations/queue-position/{book_id}/{student_id} - A student's place in line
- library://students/{student_id}/reservations - A student's open reservations
- library://fines/statistics - Outstanding, paid and waived fine totals
- library://fines/{transaction_id} - Fine of one transaction
- library://students/{student_id}/fines - A student's unpaid fines and their total
- library://stats/circulation - Current circulation snapshot
"""

import logging
from typing import Any

from fastmcp.exceptions import ResourceError

from ..auth import terminal_actor
from ..coordinator import get_coordinator
from ..database.repository import PaginationParams, RepositoryException
from ..observability.decorators import trace_resource

logger = logging.getLogger(__name__)

MAX_OVERDUE_PAGE_SIZE = 100


def _parse_id(value: str, name: str) -> int:
    """Template parameters arrive as strings."""
    try:
        parsed = int(value)
    except ValueError as e:
        raise ResourceError(f"{name} must be an integer, got '{value}'") from e
    if parsed < 1:
        raise ResourceError(f"{name} must be positive")
    return parsed


# =============================================================================
# COPIES
# =============================================================================


@trace_resource("scan")
async def scan_copy_handler(barcode: str) -> dict[str, Any]:
    """Returns everything a terminal needs after scanning a barcode.

    Client requests library://copies/scan/{barcode} before choosing between
    borrow and return: the copy's status, its title, who holds it and what
    they owe, and whether it can be lent right now.
    """
    try:
        logger.debug("MCP Resource Request - copies/scan/%s", barcode)
        result = get_coordinator().scan_lookup(terminal_actor(), barcode)
        return result.model_dump(mode="json", by_alias=True)
    except RepositoryException as e:
        raise ResourceError(e.message) from e
    except Exception as e:
        logger.exception("Error in copies/scan resource")
        raise ResourceError(f"Failed to look up barcode: {e!s}") from e


@trace_resource("inventory")
async def book_inventory_handler(book_id: str) -> dict[str, Any]:
    try:
        inventory = get_coordinator().inventory(terminal_actor(), book_id)
        return {**inventory.model_dump(mode="json"), "available": inventory.available}
    except RepositoryException as e:
        raise ResourceError(e.message) from e
    except Exception as e:
        logger.exception("Error in books/{book_id}/inventory resource")
        raise ResourceError(f"Failed to count copies: {e!s}") from e


# =============================================================================
# TRANSACTIONS
# =============================================================================


@trace_resource("overdue")
async def list_overdue_handler() -> dict[str, Any]:
    """Returns every overdue loan, most overdue first.

    Fines shown here are computed live and change day by day until the copy
    comes back.
    """
    try:
        page = get_coordinator().list_overdue(
            terminal_actor(), PaginationParams(page=1, page_size=MAX_OVERDUE_PAGE_SIZE)
        )
        return page.model_dump(mode="json")
    except RepositoryException as e:
        raise ResourceError(e.message) from e
    except Exception as e:
        logger.exception("Error in transactions/overdue resource")
        raise ResourceError(f"Failed to list overdue loans: {e!s}") from e


@trace_resource("transaction")
async def get_transaction_handler(transaction_id: str) -> dict[str, Any]:
    try:
        transaction = get_coordinator().get_transaction(
            terminal_actor(), _parse_id(transaction_id, "transaction_id")
        )
        return transaction.model_dump(mode="json")
    except ResourceError:
        raise
    except RepositoryException as e:
        raise ResourceError(e.message) from e
    except Exception as e:
        logger.exception("Error in transactions/{transaction_id} resource")
        raise ResourceError(f"Failed to retrieve transaction: {e!s}") from e


@trace_resource("can_renew")
async def can_renew_handler(transaction_id: str) -> dict[str, Any]:
    """Returns whether a loan can be renewed, and the code that blocks it if not."""
    try:
        eligibility = get_coordinator().can_renew(
            terminal_actor(), _parse_id(transaction_id, "transaction_id")
        )
        return eligibility.model_dump(mode="json")
    except ResourceError:
        raise
    except RepositoryException as e:
        raise ResourceError(e.message) from e
    except Exception as e:
        logger.exception("Error in transactions/{transaction_id}/can-renew resource")
        raise ResourceError(f"Failed to check renewal: {e!s}") from e


@trace_resource("student_loans")
async def student_loans_handler(student_id: str) -> dict[str, Any]:
    try:
        page = get_coordinator().list_student_loans(
            terminal_actor(), student_id, PaginationParams(page=1, page_size=100)
        )
        return page.model_dump(mode="json")
    except RepositoryException as e:
        raise ResourceError(e.message) from e
    except Exception as e:
        logger.exception("Error in students/{student_id}/loans resource")
        raise ResourceError(f"Failed to list loans: {e!s}") from e


@trace_resource("circulation_stats")
async def circulation_stats_handler() -> dict[str, Any]:
    try:
        return get_coordinator().circulation_stats(terminal_actor()).model_dump(mode="json")
    except RepositoryException as e:
        raise ResourceError(e.message) from e
    except Exception as e:
        logger.exception("Error in stats/circulation resource")
        raise ResourceError(f"Failed to calculate circulation stats: {e!s}") from e


# =============================================================================
# RESERVATIONS
# =============================================================================


@trace_resource("queue")
async def reservation_queue_handler(book_id: str) -> dict[str, Any]:
    """Returns a title's open reservations in FIFO order.

    Positions are always 1..N without gaps; a ready hold keeps its place at
    the front until it is fulfilled, cancelled or expires.
    """
    try:
        reservations = get_coordinator().list_queue(terminal_actor(), book_id)
        return {
            "book_id": book_id,
            "total_in_queue": len(reservations),
            "items": [reservation.model_dump(mode="json") for reservation in reservations],
        }
    except RepositoryException as e:
        raise ResourceError(e.message) from e
    except Exception as e:
        logger.exception("Error in reservations/queue resource")
        raise ResourceError(f"Failed to list queue: {e!s}") from e


@trace_resource("queue_position")
async def queue_position_handler(book_id: str, student_id: str) -> dict[str, Any]:
    try:
        position = get_coordinator().queue_position(terminal_actor(), book_id, student_id)
        return position.model_dump(mode="json")
    except RepositoryException as e:
        raise ResourceError(e.message) from e
    except Exception as e:
        logger.exception("Error in reservations/queue-position resource")
        raise ResourceError(f"Failed to find queue position: {e!s}") from e


@trace_resource("student_reservations")
async def student_reservations_handler(student_id: str) -> dict[str, Any]:
    """Returns a student's open reservations with their place in each queue."""
    try:
        reservations = get_coordinator().list_student_reservations(terminal_actor(), student_id)
        return {
            "student_id": student_id,
            "total": len(reservations),
            "items": [reservation.model_dump(mode="json") for reservation in reservations],
        }
    except RepositoryException as e:
        raise ResourceError(e.message) from e
    except Exception as e:
        logger.exception("Error in students/reservations resource")
        raise ResourceError(f"Failed to list reservations: {e!s}") from e


# =============================================================================
# FINES
# =============================================================================


@trace_resource("fine_statistics")
async def fine_statistics_handler() -> dict[str, Any]:
    try:
        return get_coordinator().fine_statistics(terminal_actor()).model_dump(mode="json")
    except RepositoryException as e:
        raise ResourceError(e.message) from e
    except Exception as e:
        logger.exception("Error in fines/statistics resource")
        raise ResourceError(f"Failed to calculate fine statistics: {e!s}") from e


@trace_resource("fine")
async def get_fine_handler(transaction_id: str) -> dict[str, Any]:
    """Returns the fine of one transaction; accruing while the loan is open."""
    try:
        fine = get_coordinator().get_fine(terminal_actor(), _parse_id(transaction_id, "transaction_id"))
        return {**fine.model_dump(mode="json"), "status": fine.status}
    except ResourceError:
        raise
    except RepositoryException as e:
        raise ResourceError(e.message) from e
    except Exception as e:
        logger.exception("Error in fines/{transaction_id} resource")
        raise ResourceError(f"Failed to retrieve fine: {e!s}") from e


@trace_resource("student_fines")
async def student_fines_handler(student_id: str) -> dict[str, Any]:
    try:
        coordinator = get_coordinator()
        actor = terminal_actor()
        total = coordinator.unpaid_fines(actor, student_id)
        fines = coordinator.list_unpaid_fines(actor, student_id, PaginationParams(page=1, page_size=100))
        return {
            "student_id": student_id,
            "unpaid_total": total,
            "items": [fine.model_dump(mode="json") for fine in fines.items],
        }
    except RepositoryException as e:
        raise ResourceError(e.message) from e
    except Exception as e:
        logger.exception("Error in students/{student_id}/fines resource")
        raise ResourceError(f"Failed to total fines: {e!s}") from e


circulation_resources: list[dict[str, Any]] = [
    {
        "uri_template": "library://copies/scan/{barcode}",
        "name": "Scan Lookup",
        "description": (
            "Look up a scanned barcode: copy status, title, current borrower with due "
            "date and fine, and whether the copy can be lent now"
        ),
        "mime_type": "application/json",
        "handler": scan_copy_handler,
    },
    {
        "uri_template": "library://books/{book_id}/inventory",
        "name": "Copy Inventory",
        "description": "Copy counts per status for a title",
        "mime_type": "application/json",
        "handler": book_inventory_handler,
    },
    {
        "uri": "library://transactions/overdue",
        "name": "Overdue Loans",
        "description": "Active loans past their due date, most overdue first, with current fines",
        "mime_type": "application/json",
        "handler": list_overdue_handler,
    },
    {
        "uri_template": "library://transactions/{transaction_id}",
        "name": "Transaction Details",
        "description": "One loan with its due date, renewals and fine",
        "mime_type": "application/json",
        "handler": get_transaction_handler,
    },
    {
        "uri_template": "library://transactions/{transaction_id}/can-renew",
        "name": "Renewal Eligibility",
        "description": "Whether a loan can be renewed, with the blocking code when it cannot",
        "mime_type": "application/json",
        "handler": can_renew_handler,
    },
    {
        "uri_template": "library://students/{student_id}/loans",
        "name": "Student Loans",
        "description": "A student's loans, newest first",
        "mime_type": "application/json",
        "handler": student_loans_handler,
    },
    {
        "uri_template": "library://reservations/queue/{book_id}",
        "name": "Reservation Queue",
        "description": "Open reservations for a title in FIFO order with positions 1..N",
        "mime_type": "application/json",
        "handler": reservation_queue_handler,
    },
    {
        "uri_template": "library://reservations/queue-position/{book_id}/{student_id}",
        "name": "Queue Position",
        "description": "A student's place in a title's reservation queue",
        "mime_type": "application/json",
        "handler": queue_position_handler,
    },
    {
        "uri_template": "library://students/{student_id}/reservations",
        "name": "Student Reservations",
        "description": "A student's open reservations across titles with their queue positions",
        "mime_type": "application/json",
        "handler": student_reservations_handler,
    },
    {
        "uri": "library://fines/statistics",
        "name": "Fine Statistics",
        "description": "Outstanding, paid and waived fine totals",
        "mime_type": "application/json",
        "handler": fine_statistics_handler,
    },
    {
        "uri_template": "library://fines/{transaction_id}",
        "name": "Fine Details",
        "description": "The fine of one transaction and whether it is accruing, unpaid, paid or waived",
        "mime_type": "application/json",
        "handler": get_fine_handler,
    },
    {
        "uri_template": "library://students/{student_id}/fines",
        "name": "Student Fines",
        "description": "A student's unpaid, unwaived fines and their total",
        "mime_type": "application/json",
        "handler": student_fines_handler,
    },
    {
        "uri": "library://stats/circulation",
        "name": "Circulation Statistics",
        "description": "Current counts of active and overdue loans, open reservations and copies",
        "mime_type": "application/json",
        "handler": circulation_stats_handler,
    },
]
