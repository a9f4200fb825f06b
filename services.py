from __future__ import annotations

import logging
import threading
from datetime import date
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from aggregation import (
    category_totals,
    dashboard_summary,
    goal_monthly_contributions,
    goal_percentage,
    goal_progress,
    monthly_rollup,
    select_months,
    summarize_months,
    total_saved,
)
from models import (
    CATEGORY_LABELS,
    ExpenseCategory,
    Goal,
    Transaction,
    TransactionType,
)
from periods import month_end, month_start
from projection import project_goal
from schemas import (
    AnalysisRequest,
    CategoryData,
    GoalIn,
    MonthData,
    SavingsIn,
    TransactionIn,
    TransactionUpdate,
)


logger = logging.getLogger(__name__)

TRANSACTIONS_KEY = "transactions"
GOALS_KEY = "goals"
GOAL_SAVINGS_KEY = "goal-savings"


class QueryCache:
    """Read-through cache keyed by tuples whose first element names the query family.

    Each family carries a version bumped by `invalidate`. A load that started
    before an invalidation is returned to its caller but never stored.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple, object] = {}
        self._versions: dict[str, int] = {}
        self._lock = threading.Lock()

    def get_or_load(self, key: tuple, loader: Callable[[], object]):
        family = key[0]
        with self._lock:
            if key in self._entries:
                return self._entries[key]
            version = self._versions.get(family, 0)
        value = loader()
        with self._lock:
            if self._versions.get(family, 0) == version:
                self._entries[key] = value
        return value

    def invalidate(self, *families: str) -> None:
        with self._lock:
            for family in families:
                self._versions[family] = self._versions.get(family, 0) + 1
            for key in [k for k in self._entries if k[0] in families]:
                del self._entries[key]

    def keys(self) -> list[tuple]:
        with self._lock:
            return list(self._entries)


def _cached(cache: Optional[QueryCache], key: tuple, loader: Callable[[], list]):
    if cache is None:
        return loader()
    return cache.get_or_load(key, loader)


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class TransactionService:
    def __init__(self, session: Session, cache: Optional[QueryCache] = None) -> None:
        self.session = session
        self.cache = cache

    def _invalidate(self) -> None:
        if self.cache is not None:
            self.cache.invalidate(TRANSACTIONS_KEY, GOAL_SAVINGS_KEY)

    def list(
        self, month: Optional[int] = None, year: Optional[int] = None
    ) -> list[Transaction]:
        def load() -> list[Transaction]:
            stmt = select(Transaction).order_by(
                Transaction.date.desc(), Transaction.created_at.desc()
            )
            if month is not None and year is not None:
                stmt = stmt.where(
                    Transaction.date.between(
                        month_start(year, month), month_end(year, month)
                    )
                )
            return list(self.session.scalars(stmt).all())

        return _cached(self.cache, (TRANSACTIONS_KEY, month, year), load)

    def list_savings_linked(self) -> list[Transaction]:
        def load() -> list[Transaction]:
            stmt = (
                select(Transaction)
                .where(
                    Transaction.type == TransactionType.savings,
                    Transaction.goal_id.isnot(None),
                )
                .order_by(Transaction.date.desc(), Transaction.created_at.desc())
            )
            return list(self.session.scalars(stmt).all())

        return _cached(self.cache, (GOAL_SAVINGS_KEY,), load)

    def get(self, transaction_id: str) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        is_expense = data.type == TransactionType.expense
        goal_id = data.goal_id if data.type == TransactionType.savings else None
        if goal_id is not None and not self.session.get(Goal, goal_id):
            raise ValueError("Goal not found")
        txn = Transaction(
            type=data.type,
            amount=data.amount,
            category=(data.category or ExpenseCategory.other) if is_expense else None,
            sub_category=_clean_text(data.sub_category) if is_expense else None,
            person=data.person,
            date=data.date,
            note=_clean_text(data.note),
            goal_id=goal_id,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        self._invalidate()
        logger.info(f"transaction_created: id={txn.id} type={txn.type.value}")
        return txn

    def update(self, transaction_id: str, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)
        is_expense = txn.type == TransactionType.expense

        if "amount" in changes and changes["amount"] is not None:
            txn.amount = changes["amount"]
        if "date" in changes and changes["date"] is not None:
            txn.date = changes["date"]
        if "person" in changes and changes["person"] is not None:
            txn.person = changes["person"]
        if "note" in changes:
            txn.note = _clean_text(changes["note"])
        if is_expense:
            if "category" in changes:
                txn.category = changes["category"] or ExpenseCategory.other
            if "sub_category" in changes:
                txn.sub_category = _clean_text(changes["sub_category"])
        else:
            txn.category = None
            txn.sub_category = None

        self.session.commit()
        self.session.refresh(txn)
        self._invalidate()
        return txn

    def delete(self, transaction_id: str) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()
        self._invalidate()
        logger.info(f"transaction_deleted: id={transaction_id}")


class GoalService:
    def __init__(self, session: Session, cache: Optional[QueryCache] = None) -> None:
        self.session = session
        self.cache = cache
        self.transactions = TransactionService(session, cache)

    def list_all(self) -> list[Goal]:
        def load() -> list[Goal]:
            stmt = select(Goal).order_by(Goal.created_at.asc(), Goal.id.asc())
            return list(self.session.scalars(stmt).all())

        return _cached(self.cache, (GOALS_KEY,), load)

    def get(self, goal_id: str) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal:
            raise ValueError("Goal not found")
        return goal

    def create(self, data: GoalIn) -> Goal:
        goal = Goal(
            name=data.name.strip(),
            target_amount=data.target_amount,
            currency=data.currency,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        if self.cache is not None:
            self.cache.invalidate(GOALS_KEY)
        logger.info(f"goal_created: id={goal.id}")
        return goal

    def delete(self, goal_id: str) -> None:
        """Unlink the goal's contributions, then drop the goal.

        The two steps commit separately: if the second fails the savings stay
        unlinked and the goal remains, so callers should re-read afterwards.
        """
        goal = self.get(goal_id)
        result = self.session.execute(
            update(Transaction)
            .where(Transaction.goal_id == goal.id)
            .values(goal_id=None)
            .execution_options(synchronize_session="fetch")
        )
        self.session.commit()
        if self.cache is not None:
            self.cache.invalidate(TRANSACTIONS_KEY, GOAL_SAVINGS_KEY)
        logger.info(f"goal_unlinked: id={goal_id} transactions={result.rowcount}")

        self.session.delete(goal)
        self.session.commit()
        if self.cache is not None:
            self.cache.invalidate(GOALS_KEY)
        logger.info(f"goal_deleted: id={goal_id}")

    def progress(self, goal_id: str) -> float:
        return goal_progress(self.transactions.list_savings_linked(), goal_id)

    def overview(self) -> list[dict[str, object]]:
        savings = self.transactions.list_savings_linked()
        out: list[dict[str, object]] = []
        for goal in self.list_all():
            current = goal_progress(savings, goal.id)
            out.append(
                {
                    "goal": goal,
                    "current_amount": current,
                    "percentage": goal_percentage(current, goal.target_amount),
                }
            )
        return out

    def total_saved(self) -> float:
        return total_saved(self.transactions.list_savings_linked())

    def details(self, goal_id: str, *, today: Optional[date] = None) -> dict[str, object]:
        goal = self.get(goal_id)
        savings = self.transactions.list_savings_linked()
        current = goal_progress(savings, goal.id)
        monthly = goal_monthly_contributions(savings, goal.id)
        history = sorted(
            (s for s in savings if s.goal_id == goal.id),
            key=lambda s: s.date,
            reverse=True,
        )
        return {
            "goal": goal,
            "current_amount": current,
            "percentage": goal_percentage(current, goal.target_amount),
            "monthly": monthly,
            "projection": project_goal(
                goal.target_amount, current, monthly, today=today
            ),
            "history": history,
        }


class SavingsService:
    """Records one entered savings amount as evenly split per-goal contributions."""

    def __init__(self, session: Session, cache: Optional[QueryCache] = None) -> None:
        self.session = session
        self.cache = cache
        self.goals = GoalService(session, cache)
        self.transactions = TransactionService(session, cache)

    def split_across_goals(self, data: SavingsIn) -> list[Transaction]:
        goals = self.goals.list_all()
        note = _clean_text(data.note)
        if not goals:
            return [
                self.transactions.create(
                    TransactionIn(
                        type=TransactionType.savings,
                        amount=data.amount,
                        person=data.person,
                        date=data.date,
                        note=note,
                    )
                )
            ]

        share = data.amount / len(goals)
        created: list[Transaction] = []
        for goal in goals:
            created.append(
                self.transactions.create(
                    TransactionIn(
                        type=TransactionType.savings,
                        amount=share,
                        person=data.person,
                        date=data.date,
                        note=f"{note} ({goal.name})" if note else goal.name,
                        goal_id=goal.id,
                    )
                )
            )
        return created


class AnalyticsService:
    def __init__(self, session: Session, cache: Optional[QueryCache] = None) -> None:
        self.session = session
        self.cache = cache
        self.transactions = TransactionService(session, cache)

    def dashboard(self, month: int, year: int) -> dict[str, object]:
        txns = self.transactions.list(month, year)
        goals = GoalService(self.session, self.cache).overview()
        return {
            "month": month,
            "year": year,
            "summary": dashboard_summary(txns),
            "categories": category_totals(txns),
            "goals": goals,
            "recent": txns[:10],
        }

    def year_overview(self, year: int, months: list[int]) -> dict[str, object]:
        txns = [t for t in self.transactions.list() if t.date.year == year]
        rollups = monthly_rollup(txns, year)
        selected = select_months(rollups, months)
        wanted = set(months)
        selected_txns = [t for t in txns if t.date.month in wanted]
        return {
            "year": year,
            "months": sorted(wanted),
            "rollups": rollups,
            "selected": selected,
            "categories": category_totals(selected_txns),
            "summary": summarize_months(selected),
        }

    def analysis_request(self, year: int, months: list[int]) -> AnalysisRequest:
        overview = self.year_overview(year, months)
        selected = overview["selected"]
        summary = overview["summary"]
        if not selected:
            raise ValueError("Select at least one month")
        return AnalysisRequest(
            monthly_data=[
                MonthData(
                    name=r.label,
                    income=r.income,
                    expenses=r.expenses,
                    savings=r.savings,
                    balance=r.balance,
                )
                for r in selected
            ],
            category_data=[
                CategoryData(name=CATEGORY_LABELS[c.category], value=c.total)
                for c in overview["categories"]
            ],
            selected_months=[r.label for r in selected],
            total_income=summary["total_income"],
            total_expenses=summary["total_expenses"],
            total_savings=summary["total_savings"],
        )
