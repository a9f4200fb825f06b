import math
from dataclasses import dataclass
from datetime import date
from typing import Optional, Sequence, Union

from aggregation import MonthlyContribution
from periods import add_months, local_today


@dataclass(frozen=True)
class Achieved:
    status: str = "achieved"

    def as_dict(self) -> dict[str, object]:
        return {"status": self.status}


@dataclass(frozen=True)
class InsufficientData:
    remaining: float
    status: str = "insufficient_data"

    def as_dict(self) -> dict[str, object]:
        return {"status": self.status, "remaining": self.remaining}


@dataclass(frozen=True)
class Projected:
    date: date
    months_remaining: int
    avg_monthly: float
    remaining: float
    status: str = "projected"

    def as_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "date": self.date.isoformat(),
            "months_remaining": self.months_remaining,
            "avg_monthly": self.avg_monthly,
            "remaining": self.remaining,
        }


Projection = Union[Achieved, InsufficientData, Projected]


def average_monthly(contributions: Sequence[MonthlyContribution]) -> float:
    if not contributions:
        return 0.0
    return sum((c.amount for c in contributions), 0.0) / len(contributions)


def project_goal(
    target_amount: float,
    current_amount: float,
    contributions: Sequence[MonthlyContribution],
    *,
    today: Optional[date] = None,
) -> Projection:
    """Forecast when a goal will be reached at its historical monthly pace.

    The pace is the mean over months that saw at least one contribution, so
    idle months do not drag it down. A non-positive pace yields
    ``InsufficientData`` rather than an unbounded date.
    """
    remaining = target_amount - current_amount
    if remaining <= 0:
        return Achieved()
    if not contributions:
        return InsufficientData(remaining=remaining)

    avg_monthly = average_monthly(contributions)
    if avg_monthly <= 0:
        return InsufficientData(remaining=remaining)

    months_remaining = math.ceil(remaining / avg_monthly)
    start = today or local_today()
    return Projected(
        date=add_months(start, months_remaining),
        months_remaining=months_remaining,
        avg_monthly=avg_monthly,
        remaining=remaining,
    )
