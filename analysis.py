from __future__ import annotations

import json
import logging
import re
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from pydantic import ValidationError

from config import Settings, get_settings
from schemas import AnalysisRequest, AnalysisResult


logger = logging.getLogger(__name__)

JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class AnalysisError(RuntimeError):
    pass


def build_prompt(request: AnalysisRequest, currency: str = "PLN") -> str:
    monthly = "\n".join(
        f"{m.name}: income {m.income:.2f} {currency}, expenses {m.expenses:.2f} {currency}, "
        f"savings {m.savings:.2f} {currency}, balance {m.balance:.2f} {currency}"
        for m in request.monthly_data
    )
    categories = "\n".join(
        f"{c.name}: {c.value:.2f} {currency}" for c in request.category_data
    )
    balance = request.total_income - request.total_expenses - request.total_savings
    return f"""You are a personal finance expert. Analyse the household data below and write a concise analysis.

SELECTED MONTHS: {", ".join(request.selected_months)}

MONTHLY DATA:
{monthly}

EXPENSES BY CATEGORY:
{categories or "none"}

SUMMARY:
- Total income: {request.total_income:.2f} {currency}
- Total expenses: {request.total_expenses:.2f} {currency}
- Total savings: {request.total_savings:.2f} {currency}
- Balance: {balance:.2f} {currency}

Reply with JSON only:
{{
  "trendAnalysis": "2-3 sentences on whether finances are improving, worsening or stable",
  "topInsights": ["insight 1", "insight 2", "insight 3"],
  "suggestions": ["suggestion 1", "suggestion 2", "suggestion 3"],
  "riskLevel": "low" | "medium" | "high",
  "savingsRate": "X%" (savings as a share of income),
  "biggestExpenseCategory": "category name",
  "monthlyTrend": "rising" | "falling" | "stable"
}}

Be specific and quote numbers from the data."""


def parse_analysis(content: str) -> AnalysisResult:
    match = JSON_OBJECT_RE.search(content or "")
    if not match:
        raise AnalysisError("Could not parse AI response")
    try:
        payload = json.loads(match.group(0))
        return AnalysisResult.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise AnalysisError("AI response did not match the expected format") from exc


class AnalysisClient:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def _post(self, body: dict[str, object]) -> dict[str, object]:
        req = Request(
            self.settings.ai_endpoint,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.settings.ai_api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.settings.ai_timeout_secs) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            logger.error(f"ai_gateway_error: status={exc.code}")
            raise AnalysisError(f"AI gateway error: {exc.code}") from exc
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise AnalysisError("Failed to reach the AI service") from exc

    def generate(self, request: AnalysisRequest) -> AnalysisResult:
        if not self.settings.ai_api_key:
            raise AnalysisError("AI analysis is not configured")
        payload = self._post(
            {
                "model": self.settings.ai_model,
                "messages": [
                    {
                        "role": "user",
                        "content": build_prompt(request, self.settings.currency),
                    }
                ],
                "temperature": 0.3,
            }
        )
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AnalysisError("Unexpected AI service response") from exc
        return parse_analysis(content)
