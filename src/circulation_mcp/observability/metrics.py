"""Custom metrics for the Circulation MCP Server."""

import logfire

circulation_events = logfire.metric_counter(
    "library.circulation.events", description="Borrow, renew, return and loss events"
)

reservation_events = logfire.metric_counter(
    "library.reservations.events", description="Reservation queue transitions"
)

fine_settlements = logfire.metric_counter(
    "library.fines.settled", unit="currency", description="Amount of fines paid or waived"
)

cas_conflicts = logfire.metric_counter(
    "library.copies.cas_conflicts", description="Copy status changes that lost a race"
)


def record_circulation_event(event_type: str, book_id: str) -> None:
    circulation_events.add(1, {"event_type": event_type, "book_id": book_id})


def record_reservation_event(event_type: str, book_id: str, count: int = 1) -> None:
    if count:
        reservation_events.add(count, {"event_type": event_type, "book_id": book_id})


def record_fine_settlement(kind: str, amount: float) -> None:
    fine_settlements.add(amount, {"kind": kind})


def record_conflict(operation: str) -> None:
    cas_conflicts.add(1, {"operation": operation})
