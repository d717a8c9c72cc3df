"""
MCP tools for the Circulation Server.

Tools are the operations with side effects: lending, returning, renewing,
queueing and settling. Each is a dictionary holding its name, description,
JSON input schema and async handler, registered by the server at start-up.
Reads live in the resources package.
"""

from .circulation import (
    borrow_by_barcode,
    circulation_tools,
    notify_overdue,
    renew_transaction,
    report_lost,
    return_by_barcode,
)
from .copies import add_copy, copy_tools, restore_copy, retire_copy
from .fines import fine_tools, pay_fine, settle_fines, waive_fine
from .reservations import (
    cancel_reservation,
    expire_ready_holds,
    fulfill_reservation,
    mark_reservation_ready,
    reservation_tools,
    reserve_book,
)

all_tools = circulation_tools + reservation_tools + fine_tools + copy_tools

__all__ = [
    "add_copy",
    "all_tools",
    "borrow_by_barcode",
    "cancel_reservation",
    "expire_ready_holds",
    "fulfill_reservation",
    "mark_reservation_ready",
    "notify_overdue",
    "pay_fine",
    "renew_transaction",
    "report_lost",
    "reserve_book",
    "restore_copy",
    "retire_copy",
    "return_by_barcode",
    "settle_fines",
    "waive_fine",
]
