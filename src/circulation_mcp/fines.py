"""
Fine calculation for overdue loans.

The functions here are pure: the same inputs always give the same amount, so
the ledger can call them for a live "current estimated fine" and again for the
final settlement at return without the two ever disagreeing.

Days are counted by calendar date. A loan due on the 1st and returned at any
time on the 1st is on time; returned on the 6th it is five days late.
"""

from datetime import date, datetime, time

from pydantic import BaseModel, Field

from .config import CirculationPolicy


class FinePolicy(BaseModel):
    """Fine parameters for one title."""

    daily_rate: float = Field(..., ge=0.0)
    grace_period_days: int = Field(default=0, ge=0)
    cap: float | None = Field(default=None, ge=0.0)

    @classmethod
    def for_title(
        cls, policy: CirculationPolicy, title_daily_rate: float | None = None
    ) -> "FinePolicy":
        """Build the policy for a title, honouring a per-title daily rate override."""
        return cls(
            daily_rate=policy.fine_per_day if title_daily_rate is None else title_daily_rate,
            grace_period_days=policy.fine_grace_period_days,
            cap=policy.max_fine_amount,
        )

    def compute(self, due_date: date | datetime, as_of: date | datetime) -> float:
        return compute_fine(
            due_date,
            as_of,
            self.daily_rate,
            grace_period_days=self.grace_period_days,
            cap=self.cap,
        )


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def start_of_day(moment: datetime) -> datetime:
    """Midnight of the calendar day ``moment`` falls on; loans due before it are overdue."""
    return datetime.combine(moment.date(), time.min)


def days_overdue(
    due_date: date | datetime, as_of: date | datetime, grace_period_days: int = 0
) -> int:
    """Whole calendar days past the due date, less the grace period, never negative."""
    late = (_as_date(as_of) - _as_date(due_date)).days
    return max(0, late - grace_period_days)


def compute_fine(
    due_date: date | datetime,
    as_of: date | datetime,
    daily_rate: float,
    grace_period_days: int = 0,
    cap: float | None = None,
) -> float:
    """
    Compute the fine owed for a loan.

    Args:
        due_date: When the copy was due back
        as_of: Return time for closed loans, or "now" for a live estimate
        daily_rate: Amount charged per overdue day
        grace_period_days: Days past due that are not charged
        cap: Maximum fine; None means uncapped

    Returns:
        The fine amount rounded to cents

    Raises:
        ValueError: If the rate, grace period or cap is negative
    """
    if daily_rate < 0:
        raise ValueError("Daily rate cannot be negative")
    if grace_period_days < 0:
        raise ValueError("Grace period cannot be negative")
    if cap is not None and cap < 0:
        raise ValueError("Fine cap cannot be negative")

    amount = days_overdue(due_date, as_of, grace_period_days) * daily_rate
    if cap is not None:
        amount = min(amount, cap)
    return round(amount, 2)
