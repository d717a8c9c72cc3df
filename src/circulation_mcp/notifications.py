"""
Outbound notifications.

Delivery (email, push) belongs to an external service. The engine only calls
a ``Notifier`` after the unit of work that produced the event has committed,
and a failing notifier never undoes or fails the circulation operation.
"""

import logging
from typing import Protocol

from .models.circulation import OverdueTransaction, Reservation

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def reservation_ready(self, reservation: Reservation) -> None: ...

    def overdue_detected(self, transaction: OverdueTransaction) -> None: ...


class LoggingNotifier:
    """Default notifier: records what would have been sent."""

    def reservation_ready(self, reservation: Reservation) -> None:
        logger.info(
            "NOTIFY %s: reservation %s for book %s is ready until %s",
            reservation.student_id,
            reservation.id,
            reservation.book_id,
            reservation.expires_at.isoformat() if reservation.expires_at else "-",
        )

    def overdue_detected(self, transaction: OverdueTransaction) -> None:
        logger.info(
            "NOTIFY %s: '%s' (%s) is %d day(s) overdue, fine so far %.2f",
            transaction.student_id,
            transaction.book_title,
            transaction.barcode,
            transaction.days_overdue,
            transaction.calculated_fine,
        )


def dispatch(notifier: Notifier, method: str, payloads: list) -> int:
    """Deliver each payload, logging failures. Returns how many were delivered."""
    delivered = 0
    for payload in payloads:
        try:
            getattr(notifier, method)(payload)
        except Exception:
            logger.exception("Notifier %s failed for %s", method, getattr(payload, "id", payload))
            continue
        delivered += 1
    return delivered
