import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    savings = "savings"


class ExpenseCategory(str, Enum):
    bills = "bills"
    loans = "loans"
    installments = "installments"
    food = "food"
    other = "other"


FIXED_EXPENSE_CATEGORIES = (
    ExpenseCategory.bills,
    ExpenseCategory.loans,
    ExpenseCategory.installments,
)

CATEGORY_LABELS = {
    ExpenseCategory.bills: "Bills",
    ExpenseCategory.loans: "Loans",
    ExpenseCategory.installments: "Installments",
    ExpenseCategory.food: "Food",
    ExpenseCategory.other: "Other",
}


class Person(str, Enum):
    konki = "Konki"
    ania = "Ania"


DEFAULT_PERSON = Person.konki


class CurrencyCode(str, Enum):
    pln = "PLN"


CURRENCY_CODE_ENUM = SAEnum(
    CurrencyCode,
    name="currencycode",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)

PERSON_ENUM = SAEnum(
    Person,
    name="person",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class Role(str, Enum):
    owner = "owner"
    member = "member"


class AuthSessionKind(str, Enum):
    password = "password"
    recovery = "recovery"


class Goal(Base):
    __tablename__ = "goals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    target_amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.pln
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    contributions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="goal", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint("target_amount > 0", name="ck_goals_target_positive"),
        Index("ix_goals_created_at", "created_at"),
    )


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.pln
    )
    category: Mapped[Optional[ExpenseCategory]] = mapped_column(
        SAEnum(ExpenseCategory)
    )
    sub_category: Mapped[Optional[str]] = mapped_column(String(100))
    person: Mapped[Person] = mapped_column(
        PERSON_ENUM, nullable=False, default=DEFAULT_PERSON
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)
    goal_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("goals.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    goal: Mapped[Optional["Goal"]] = relationship(
        "Goal", back_populates="contributions"
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_type_date", "type", "date"),
        Index("ix_transactions_goal", "goal_id"),
    )


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    email_confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )


class UserRole(Base):
    __tablename__ = "user_roles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    role: Mapped[Role] = mapped_column(SAEnum(Role), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )


class AuthSession(Base):
    __tablename__ = "auth_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[AuthSessionKind] = mapped_column(
        SAEnum(AuthSessionKind), nullable=False, default=AuthSessionKind.password
    )
    refresh_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    user: Mapped["User"] = relationship("User")

    __table_args__ = (Index("ix_auth_sessions_user", "user_id"),)
