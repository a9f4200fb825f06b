import asyncio
from types import SimpleNamespace
from urllib.parse import urlsplit

import pytest
from fastapi.testclient import TestClient

from analysis import AnalysisError
from auth import LocalAuthClient
from config import Settings, get_settings
from database import Base, build_engine, make_session_factory
from main import (
    app,
    auth_clients,
    get_analysis_client,
    get_app_settings,
    get_cache,
    get_session_factory,
)
from models import Goal
from schemas import AnalysisResult
from services import QueryCache

OWNER = "konki@example.com"


@pytest.fixture()
def api():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    factory = make_session_factory(engine)
    values = dict(vars(get_settings()))
    values.update(
        site_url="http://testserver",
        require_email_confirmation=False,
        whitelist_roles={OWNER: "owner"},
    )
    settings = Settings(**values)
    cache = QueryCache()
    app.dependency_overrides[get_session_factory] = lambda: factory
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_cache] = lambda: cache
    yield SimpleNamespace(factory=factory, settings=settings)
    app.dependency_overrides.clear()


def connect() -> TestClient:
    client = TestClient(app)
    state = client.get("/auth/state").json()
    client.headers["X-CSRF-Token"] = state["csrf_token"]
    return client


def signed_up(email: str = OWNER) -> TestClient:
    client = connect()
    resp = client.post("/auth/sign-up", json={"email": email, "password": "secret1"})
    assert resp.status_code == 200, resp.text
    return client


def test_data_routes_require_sign_in(api) -> None:
    client = connect()
    assert client.get("/auth/state").json()["state"] == "unauthenticated"
    assert client.get("/api/dashboard").status_code == 401


def test_mutations_require_csrf_token(api) -> None:
    client = signed_up()
    del client.headers["X-CSRF-Token"]

    resp = client.post("/api/goals", json={"name": "Car", "target_amount": 1000})

    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid CSRF token"


def test_accounts_outside_the_whitelist_are_forbidden(api) -> None:
    client = signed_up("guest@example.com")

    assert client.get("/auth/state").json()["state"] == "not_whitelisted"
    assert client.get("/api/goals").status_code == 403


def test_household_flow(api) -> None:
    client = signed_up()
    assert client.get("/auth/state").json()["state"] == "whitelisted"

    car = client.post("/api/goals", json={"name": "Car", "target_amount": 1000}).json()
    trip = client.post("/api/goals", json={"name": "Trip", "target_amount": 300}).json()
    saved = client.post(
        "/api/savings", json={"amount": 400, "date": "2025-01-15", "note": "Bonus"}
    )
    assert saved.status_code == 201
    assert len(saved.json()["transactions"]) == 2

    client.post(
        "/api/transactions",
        json={"type": "income", "amount": 5000, "date": "2025-01-01", "person": "Ania"},
    )
    expense = client.post(
        "/api/transactions",
        json={"type": "expense", "amount": 1200, "date": "2025-01-03", "category": "bills"},
    ).json()

    dashboard = client.get("/api/dashboard", params={"month": 1, "year": 2025}).json()
    assert dashboard["summary"]["income"] == 5000
    assert dashboard["summary"]["balance"] == 3400
    assert dashboard["summary"]["after_fixed"] == 3400
    assert dashboard["categories"] == [{"category": "bills", "label": "Bills", "total": 1200}]

    goals = client.get("/api/goals").json()
    assert goals["total_saved"] == 400
    by_name = {g["name"]: g for g in goals["goals"]}
    assert by_name["Car"]["current_amount"] == 200
    assert by_name["Trip"]["percentage"] == pytest.approx(66.666, rel=1e-3)

    details = client.get(f"/api/goals/{car['id']}").json()
    assert details["monthly"] == [{"label": "2025-01", "amount": 200}]
    assert details["projection"]["status"] == "projected"

    patched = client.patch(f"/api/transactions/{expense['id']}", json={"amount": 1300})
    assert patched.json()["amount"] == 1300

    expenses = client.get("/api/transactions", params={"type": "expense"}).json()
    assert expenses["total"] == 1300

    export = client.get("/api/transactions/export.csv")
    assert export.headers["content-type"].startswith("text/csv")
    assert "attachment" in export.headers["content-disposition"]
    assert '"Expense";"1300.00";"bills"' in export.text

    assert client.delete(f"/api/goals/{trip['id']}").status_code == 204
    assert client.get(f"/api/goals/{trip['id']}").status_code == 404
    unlinked = client.get("/api/transactions", params={"type": "savings"}).json()
    assert sum(1 for t in unlinked["transactions"] if t["goal_id"] is None) == 1

    assert client.delete(f"/api/transactions/{expense['id']}").status_code == 204
    assert client.delete(f"/api/transactions/{expense['id']}").status_code == 404


def test_invalid_transaction_payload_is_rejected(api) -> None:
    client = signed_up()

    resp = client.post(
        "/api/transactions",
        json={"type": "expense", "amount": 0, "date": "2025-01-03"},
    )

    assert resp.status_code == 422


def test_recovery_link_blocks_data_until_password_is_changed(api) -> None:
    signed_up().post("/auth/sign-out")
    links = []
    mailer = LocalAuthClient(
        api.factory,
        api.settings,
        send_link=lambda kind, email, link: links.append(link),
    )
    asyncio.run(mailer.reset_password_for_email(OWNER, "http://testserver/reset-password"))

    client = TestClient(app)
    resp = client.get(
        f"/reset-password?{urlsplit(links[0]).query}", follow_redirects=False
    )
    assert resp.status_code == 303
    assert resp.headers["location"] == "http://testserver/reset-password"

    state = client.get("/auth/state").json()
    assert state["state"] == "password_recovery"
    client.headers["X-CSRF-Token"] = state["csrf_token"]
    assert client.get("/api/dashboard").status_code == 409

    mismatch = client.post(
        "/auth/update-password", json={"password": "newpass1", "confirmation": "nope"}
    )
    assert mismatch.status_code == 400
    assert client.get("/auth/state").json()["state"] == "password_recovery"

    ok = client.post(
        "/auth/update-password", json={"password": "newpass1", "confirmation": "newpass1"}
    )
    assert ok.status_code == 200
    assert ok.json()["state"] == "whitelisted"
    assert client.get("/api/dashboard").status_code == 200


def test_ai_analysis_uses_configured_client(api) -> None:
    class FakeClient:
        def generate(self, request):
            assert request.selected_months == ["2025-01"]
            return AnalysisResult(
                trend_analysis="Stable.",
                top_insights=["a", "b", "c"],
                suggestions=["x", "y", "z"],
                risk_level="low",
                savings_rate="8%",
                biggest_expense_category="Bills",
                monthly_trend="stable",
            )

    class FailingClient:
        def generate(self, request):
            raise AnalysisError("AI gateway error: 500")

    client = signed_up()
    app.dependency_overrides[get_analysis_client] = FakeClient
    resp = client.post("/api/analytics/ai", json={"year": 2025, "months": [1]})
    assert resp.status_code == 200
    assert resp.json()["riskLevel"] == "low"

    app.dependency_overrides[get_analysis_client] = FailingClient
    resp = client.post("/api/analytics/ai", json={"year": 2025, "months": [1]})
    assert resp.status_code == 502
    assert resp.json()["detail"] == "AI gateway error: 500"


def test_analytics_overview_for_selected_months(api) -> None:
    client = signed_up()
    client.post(
        "/api/transactions",
        json={"type": "income", "amount": 1000, "date": "2025-02-01"},
    )

    data = client.get("/api/analytics", params={"year": 2025, "months": "2,1"}).json()

    assert data["months"] == [1, 2]
    assert len(data["rollups"]) == 12
    assert data["summary"]["avg_monthly_income"] == 500


def test_savings_for_a_vanished_goal_is_a_client_error(api) -> None:
    client = signed_up()
    goal = client.post("/api/goals", json={"name": "Car", "target_amount": 1000}).json()
    assert len(client.get("/api/goals").json()["goals"]) == 1
    with api.factory() as db:
        db.delete(db.get(Goal, goal["id"]))
        db.commit()

    resp = client.post("/api/savings", json={"amount": 100, "date": "2025-01-15"})

    assert resp.status_code == 400
    assert resp.json()["detail"] == "Goal not found"


def test_anonymous_clients_are_not_kept_between_requests(api) -> None:
    before = len(auth_clients)
    for _ in range(20):
        assert TestClient(app).get("/auth/state").status_code == 200
    assert len(auth_clients) == before

    client = signed_up()
    assert len(auth_clients) == before + 1

    client.post("/auth/sign-out")
    assert len(auth_clients) == before
    assert client.get("/auth/state").json()["state"] == "unauthenticated"


def test_open_date_ranges_keep_far_future_rows(api) -> None:
    client = signed_up()
    for day in ("2025-01-10", "2099-06-01"):
        client.post(
            "/api/transactions",
            json={"type": "expense", "amount": 10, "date": day, "category": "food"},
        )

    def dates(**params) -> list[str]:
        data = client.get("/api/transactions", params=params).json()
        return sorted(t["date"] for t in data["transactions"])

    assert dates(period="all") == ["2025-01-10", "2099-06-01"]
    assert dates(period="custom", start="2025-01-01") == ["2025-01-10", "2099-06-01"]
    assert dates(period="custom", end="2025-12-31") == ["2025-01-10"]


def test_out_of_range_month_or_year_is_rejected(api) -> None:
    client = signed_up()

    assert client.get("/api/dashboard", params={"month": 0, "year": 2025}).status_code == 400
    assert client.get("/api/dashboard", params={"month": 13, "year": 2025}).status_code == 400
    assert client.get("/api/dashboard", params={"month": 1, "year": 0}).status_code == 400
    assert client.get("/api/dashboard", params={"month": 1, "year": 2025}).status_code == 200
