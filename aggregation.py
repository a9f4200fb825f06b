"""Pure aggregations over transaction rows.

Every function accepts any sequence of objects exposing the transaction
attributes (``type``, ``amount``, ``category``, ``person``, ``date``,
``goal_id``), so ORM rows and plain test doubles work alike. Nothing here is
cached or stored; callers recompute on every read.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional, Sequence

from models import (
    CATEGORY_LABELS,
    FIXED_EXPENSE_CATEGORIES,
    ExpenseCategory,
    Person,
    TransactionType,
)
from periods import month_key


@dataclass
class MonthRollup:
    year: int
    month: int
    income: float = 0.0
    expenses: float = 0.0
    savings: float = 0.0

    @property
    def balance(self) -> float:
        return self.income - self.expenses - self.savings

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def as_dict(self) -> dict[str, object]:
        return {
            "year": self.year,
            "month": self.month,
            "label": self.label,
            "income": self.income,
            "expenses": self.expenses,
            "savings": self.savings,
            "balance": self.balance,
        }


@dataclass(frozen=True)
class CategoryTotal:
    category: ExpenseCategory
    total: float

    @property
    def label(self) -> str:
        return CATEGORY_LABELS[self.category]


@dataclass(frozen=True)
class MonthlyContribution:
    year: int
    month: int
    amount: float

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    person: Optional[Person] = None
    category: Optional[ExpenseCategory] = None
    start: Optional[date] = None
    end: Optional[date] = None

    def matches(self, txn) -> bool:
        if self.type is not None and txn.type != self.type:
            return False
        if self.person is not None and txn.person != self.person:
            return False
        if self.category is not None and txn.category != self.category:
            return False
        if self.start is not None and txn.date < self.start:
            return False
        if self.end is not None and txn.date > self.end:
            return False
        return True


def filter_transactions(transactions: Iterable, filters: TransactionFilters) -> list:
    return [txn for txn in transactions if filters.matches(txn)]


def sum_amounts(transactions: Iterable) -> float:
    return sum((float(txn.amount) for txn in transactions), 0.0)


def sum_by_type(transactions: Iterable, txn_type: TransactionType) -> float:
    return sum_amounts(txn for txn in transactions if txn.type == txn_type)


def _expense_category(txn) -> ExpenseCategory:
    return txn.category or ExpenseCategory.other


def category_totals(transactions: Iterable) -> list[CategoryTotal]:
    """Expense totals per category in enumeration order; empty categories are left out."""
    totals: dict[ExpenseCategory, float] = {}
    for txn in transactions:
        if txn.type != TransactionType.expense:
            continue
        key = _expense_category(txn)
        totals[key] = totals.get(key, 0.0) + float(txn.amount)
    return [
        CategoryTotal(category, totals[category])
        for category in ExpenseCategory
        if totals.get(category, 0.0) > 0
    ]


def monthly_rollup(transactions: Iterable, year: int) -> list[MonthRollup]:
    months = [MonthRollup(year=year, month=m) for m in range(1, 13)]
    for txn in transactions:
        if txn.date.year != year:
            continue
        bucket = months[txn.date.month - 1]
        amount = float(txn.amount)
        if txn.type == TransactionType.income:
            bucket.income += amount
        elif txn.type == TransactionType.expense:
            bucket.expenses += amount
        elif txn.type == TransactionType.savings:
            bucket.savings += amount
    return months


def select_months(rollups: Sequence[MonthRollup], months: Iterable[int]) -> list[MonthRollup]:
    wanted = set(months)
    return [rollup for rollup in rollups if rollup.month in wanted]


def summarize_months(rollups: Sequence[MonthRollup]) -> dict[str, float]:
    total_income = sum((r.income for r in rollups), 0.0)
    total_expenses = sum((r.expenses for r in rollups), 0.0)
    total_savings = sum((r.savings for r in rollups), 0.0)
    count = len(rollups) or 1
    return {
        "total_income": total_income,
        "total_expenses": total_expenses,
        "total_savings": total_savings,
        "total_balance": total_income - total_expenses - total_savings,
        "avg_monthly_income": total_income / count,
        "avg_monthly_expense": total_expenses / count,
    }


def _linked_to(txn, goal_id: str) -> bool:
    return (
        txn.type == TransactionType.savings
        and txn.goal_id is not None
        and txn.goal_id == goal_id
    )


def goal_progress(savings_transactions: Iterable, goal_id: str) -> float:
    return sum_amounts(txn for txn in savings_transactions if _linked_to(txn, goal_id))


def goal_monthly_contributions(
    savings_transactions: Iterable, goal_id: str
) -> list[MonthlyContribution]:
    """Chronological per-month sums for one goal; months without contributions are absent."""
    totals: dict[tuple[int, int], float] = {}
    for txn in savings_transactions:
        if not _linked_to(txn, goal_id):
            continue
        key = month_key(txn.date)
        totals[key] = totals.get(key, 0.0) + float(txn.amount)
    return [
        MonthlyContribution(year=year, month=month, amount=totals[(year, month)])
        for year, month in sorted(totals)
    ]


def goal_percentage(current_amount: float, target_amount: float) -> float:
    if target_amount <= 0:
        return 100.0
    return min(current_amount / target_amount * 100, 100.0)


def total_saved(savings_transactions: Iterable) -> float:
    return sum_by_type(savings_transactions, TransactionType.savings)


def fixed_expenses(transactions: Iterable) -> float:
    return sum_amounts(
        txn
        for txn in transactions
        if txn.type == TransactionType.expense
        and txn.category in FIXED_EXPENSE_CATEGORIES
    )


def after_fixed(transactions: Sequence) -> float:
    """Income left once fixed obligations and savings are taken out."""
    return (
        sum_by_type(transactions, TransactionType.income)
        - fixed_expenses(transactions)
        - sum_by_type(transactions, TransactionType.savings)
    )


def dashboard_summary(transactions: Sequence) -> dict[str, float]:
    income = sum_by_type(transactions, TransactionType.income)
    expenses = sum_by_type(transactions, TransactionType.expense)
    savings = sum_by_type(transactions, TransactionType.savings)
    fixed = fixed_expenses(transactions)
    return {
        "income": income,
        "expenses": expenses,
        "savings": savings,
        "fixed_expenses": fixed,
        "after_fixed": after_fixed(transactions),
        "balance": income - expenses - savings,
    }
