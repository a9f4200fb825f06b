import datetime as dt
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import CurrencyCode, ExpenseCategory, Person, TransactionType, DEFAULT_PERSON


class TransactionIn(BaseModel):
    type: TransactionType
    amount: float = Field(..., gt=0)
    category: Optional[ExpenseCategory] = None
    sub_category: Optional[str] = Field(default=None, max_length=100)
    person: Person = DEFAULT_PERSON
    date: dt.date
    note: Optional[str] = Field(default=None, max_length=500)
    goal_id: Optional[str] = None


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Optional[float] = Field(default=None, gt=0)
    category: Optional[ExpenseCategory] = None
    sub_category: Optional[str] = Field(default=None, max_length=100)
    person: Optional[Person] = None
    date: Optional[dt.date] = None
    note: Optional[str] = Field(default=None, max_length=500)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: TransactionType
    amount: float
    currency: CurrencyCode
    category: Optional[ExpenseCategory]
    sub_category: Optional[str]
    person: Person
    date: dt.date
    note: Optional[str]
    goal_id: Optional[str]
    created_at: datetime


class SavingsIn(BaseModel):
    amount: float = Field(..., gt=0)
    date: dt.date
    note: Optional[str] = Field(default=None, max_length=500)
    person: Person = DEFAULT_PERSON


class GoalIn(BaseModel):
    name: str = Field(..., max_length=120)
    target_amount: float = Field(..., gt=0)
    currency: CurrencyCode = CurrencyCode.pln

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        clean = value.strip()
        if not clean:
            raise ValueError("Goal name cannot be empty")
        return clean


class GoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    target_amount: float
    currency: CurrencyCode
    created_at: datetime


class CredentialsIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=200)


class PasswordResetIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)


class PasswordUpdateIn(BaseModel):
    password: str = Field(..., max_length=200)
    confirmation: Optional[str] = Field(default=None, max_length=200)


def validate_new_password(
    password: str, confirmation: Optional[str], *, min_length: int
) -> Optional[str]:
    """Return a human-readable problem with a new password, or None when it is acceptable."""
    if len(password) < min_length:
        return f"Password must be at least {min_length} characters long"
    if confirmation is not None and password != confirmation:
        return "Passwords do not match"
    return None


class RiskLevel(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class MonthlyTrend(str, Enum):
    rising = "rising"
    falling = "falling"
    stable = "stable"


class MonthData(BaseModel):
    name: str
    income: float
    expenses: float
    savings: float
    balance: float


class CategoryData(BaseModel):
    name: str
    value: float


class AnalysisRequest(BaseModel):
    monthly_data: list[MonthData]
    category_data: list[CategoryData]
    selected_months: list[str] = Field(..., min_length=1)
    total_income: float
    total_expenses: float
    total_savings: float


class AnalysisResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    trend_analysis: str = Field(..., alias="trendAnalysis")
    top_insights: list[str] = Field(..., alias="topInsights", min_length=3, max_length=3)
    suggestions: list[str] = Field(..., min_length=3, max_length=3)
    risk_level: RiskLevel = Field(..., alias="riskLevel")
    savings_rate: str = Field(..., alias="savingsRate")
    biggest_expense_category: str = Field(..., alias="biggestExpenseCategory")
    monthly_trend: MonthlyTrend = Field(..., alias="monthlyTrend")


class AnalysisOptions(BaseModel):
    year: int = Field(..., ge=1970, le=3000)
    months: list[int] = Field(..., min_length=1)

    @field_validator("months")
    @classmethod
    def _valid_months(cls, value: list[int]) -> list[int]:
        for month in value:
            if month < 1 or month > 12:
                raise ValueError("Months must be between 1 and 12")
        return sorted(set(value))
