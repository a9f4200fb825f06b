import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session, sessionmaker

from aggregation import TransactionFilters, filter_transactions
from analysis import AnalysisClient, AnalysisError
from auth import LocalAuthClient
from auth_state import AuthState, AuthStateMachine, Location
from config import Settings, get_settings
from csv_utils import export_filename, export_transactions
from database import SessionLocal
from models import CATEGORY_LABELS, ExpenseCategory, Person, TransactionType
from periods import default_selected_months, local_today, resolve_period
from scheduler import SchedulerManager
from schemas import (
    AnalysisOptions,
    CredentialsIn,
    GoalIn,
    GoalOut,
    PasswordResetIn,
    PasswordUpdateIn,
    SavingsIn,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
)
from security import (
    COOKIE_NAME,
    dump_client_cookie,
    generate_csrf_token,
    load_client_cookie,
    new_client_id,
    validate_csrf_token,
)
from services import (
    AnalyticsService,
    GoalService,
    QueryCache,
    SavingsService,
    TransactionService,
)
from whitelist import WhitelistService

logger = logging.getLogger(__name__)

app = FastAPI(title="Household Finance")

query_cache = QueryCache()
scheduler_manager = SchedulerManager()


class AuthClients:
    """Auth state machines of signed-in clients, keyed by client cookie.

    Anonymous clients get a fresh machine per request; only machines holding a
    session are kept between requests, and signing out drops them.
    """

    def __init__(self) -> None:
        self._machines: dict[str, AuthStateMachine] = {}

    async def resolve(
        self, request: Request, factory: sessionmaker, settings: Settings
    ) -> tuple[str, AuthStateMachine, Location]:
        client_id, storage = load_client_cookie(request.cookies.get(COOKIE_NAME))
        location = Location(str(request.url))
        if client_id and client_id in self._machines:
            return client_id, self._machines[client_id], location

        client_id = client_id or new_client_id()
        machine = AuthStateMachine(
            LocalAuthClient(factory, settings, storage=storage),
            WhitelistService(factory, settings),
        )
        await machine.start(location)
        return client_id, machine, location

    def retain(self, client_id: str, machine: AuthStateMachine) -> None:
        if machine.session is not None:
            self._machines[client_id] = machine
            return
        self._machines.pop(client_id, None)
        machine.close()

    def __len__(self) -> int:
        return len(self._machines)

    def clear(self) -> None:
        for machine in self._machines.values():
            machine.close()
        self._machines.clear()


auth_clients = AuthClients()


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_app_settings() -> Settings:
    return get_settings()


def get_cache() -> QueryCache:
    return query_cache


def get_analysis_client(
    settings: Settings = Depends(get_app_settings),
) -> AnalysisClient:
    return AnalysisClient(settings)


def get_db(factory: sessionmaker = Depends(get_session_factory)):
    db = factory()
    try:
        yield db
    finally:
        db.close()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()
    auth_clients.clear()


@app.middleware("http")
async def persist_client_cookie(request: Request, call_next):
    response = await call_next(request)
    machine = getattr(request.state, "auth", None)
    if machine is not None:
        auth_clients.retain(request.state.client_id, machine)
        response.set_cookie(
            COOKIE_NAME,
            dump_client_cookie(request.state.client_id, dict(machine.auth.storage)),
            httponly=True,
            samesite="lax",
        )
    return response


async def get_auth(
    request: Request,
    factory: sessionmaker = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
) -> AuthStateMachine:
    client_id, machine, location = await auth_clients.resolve(
        request, factory, settings
    )
    request.state.client_id = client_id
    request.state.auth = machine
    request.state.location = location
    return machine


def csrf_protect(request: Request, auth: AuthStateMachine = Depends(get_auth)) -> None:
    token = request.headers.get("X-CSRF-Token", "")
    if not validate_csrf_token(token, request.state.client_id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


def require_member(auth: AuthStateMachine = Depends(get_auth)) -> AuthStateMachine:
    if auth.user is None:
        raise HTTPException(status_code=401, detail="Not signed in")
    if auth.state == AuthState.password_recovery:
        raise HTTPException(status_code=409, detail="Password recovery in progress")
    if not auth.is_whitelisted:
        raise HTTPException(status_code=403, detail="Account is not whitelisted")
    return auth


def txn_json(txn) -> dict[str, object]:
    return TransactionOut.model_validate(txn).model_dump(mode="json")


def goal_json(goal) -> dict[str, object]:
    return GoalOut.model_validate(goal).model_dump(mode="json")


def category_json(totals) -> list[dict[str, object]]:
    return [
        {"category": t.category.value, "label": t.label, "total": t.total}
        for t in totals
    ]


def month_from_request(
    month: Optional[int], year: Optional[int]
) -> tuple[int, int]:
    today = local_today()
    month = today.month if month is None else month
    year = today.year if year is None else year
    if month < 1 or month > 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12")
    if year < 1 or year > 9999:
        raise HTTPException(status_code=400, detail="Year is out of range")
    return month, year


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    try:
        filters = TransactionFilters(
            type=TransactionType(params["type"]) if params.get("type") else None,
            person=Person(params["person"]) if params.get("person") else None,
            category=(
                ExpenseCategory(params["category"]) if params.get("category") else None
            ),
        )
        if params.get("period"):
            period = resolve_period(params["period"], params.get("start"), params.get("end"))
            filters.start, filters.end = period.start, period.end
        else:
            if params.get("start"):
                filters.start = date.fromisoformat(params["start"])
            if params.get("end"):
                filters.end = date.fromisoformat(params["end"])
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return filters


# auth


@app.get("/auth/state")
async def auth_state(request: Request, auth: AuthStateMachine = Depends(get_auth)):
    return {
        **auth.snapshot(),
        "csrf_token": generate_csrf_token(request.state.client_id),
    }


@app.post("/auth/sign-in", dependencies=[Depends(csrf_protect)])
async def sign_in(data: CredentialsIn, auth: AuthStateMachine = Depends(get_auth)):
    result = await auth.sign_in(data.email, data.password)
    if not result.ok:
        raise HTTPException(status_code=400, detail=result.error)
    return auth.snapshot()


@app.post("/auth/sign-up", dependencies=[Depends(csrf_protect)])
async def sign_up(data: CredentialsIn, auth: AuthStateMachine = Depends(get_auth)):
    result = await auth.sign_up(data.email, data.password)
    if not result.ok:
        raise HTTPException(status_code=400, detail=result.error)
    return {**auth.snapshot(), "confirmation_required": auth.session is None}


@app.get("/auth/confirm")
async def confirm_email(
    confirmation_token: str, auth: AuthStateMachine = Depends(get_auth)
):
    result = await auth.confirm_email(confirmation_token)
    if not result.ok:
        raise HTTPException(status_code=400, detail=result.error)
    return {"confirmed": True}


@app.post("/auth/password-reset", dependencies=[Depends(csrf_protect)])
async def request_password_reset(
    data: PasswordResetIn, auth: AuthStateMachine = Depends(get_auth)
):
    result = await auth.reset_password(data.email)
    if not result.ok:
        raise HTTPException(status_code=400, detail=result.error)
    return {"sent": True}


@app.get("/reset-password")
async def reset_password_page(
    request: Request, auth: AuthStateMachine = Depends(get_auth)
):
    location: Location = request.state.location
    await auth.consume_recovery_tokens(location)
    if location.href != str(request.url):
        return RedirectResponse(url=location.href, status_code=303)
    return {
        **auth.snapshot(),
        "csrf_token": generate_csrf_token(request.state.client_id),
    }


@app.post("/auth/update-password", dependencies=[Depends(csrf_protect)])
async def update_password(
    data: PasswordUpdateIn, auth: AuthStateMachine = Depends(get_auth)
):
    result = await auth.update_password(data.password, data.confirmation)
    if not result.ok:
        raise HTTPException(status_code=400, detail=result.error)
    return auth.snapshot()


@app.post("/auth/sign-out", dependencies=[Depends(csrf_protect)])
async def sign_out(auth: AuthStateMachine = Depends(get_auth)):
    await auth.sign_out()
    return auth.snapshot()


# data


@app.get("/api/dashboard")
def dashboard(
    month: Optional[int] = None,
    year: Optional[int] = None,
    auth: AuthStateMachine = Depends(require_member),
    db: Session = Depends(get_db),
    cache: QueryCache = Depends(get_cache),
):
    month, year = month_from_request(month, year)
    data = AnalyticsService(db, cache).dashboard(month, year)
    return {
        "month": month,
        "year": year,
        "summary": data["summary"],
        "categories": category_json(data["categories"]),
        "goals": [
            {
                **goal_json(item["goal"]),
                "current_amount": item["current_amount"],
                "percentage": item["percentage"],
            }
            for item in data["goals"]
        ],
        "recent": [txn_json(t) for t in data["recent"]],
    }


@app.get("/api/transactions")
def list_transactions(
    request: Request,
    month: Optional[int] = None,
    year: Optional[int] = None,
    auth: AuthStateMachine = Depends(require_member),
    db: Session = Depends(get_db),
    cache: QueryCache = Depends(get_cache),
):
    filters = filters_from_request(request)
    if month is not None or year is not None:
        month, year = month_from_request(month, year)
    items = filter_transactions(TransactionService(db, cache).list(month, year), filters)
    total = sum((float(t.amount) for t in items), 0.0)
    return {"total": total, "transactions": [txn_json(t) for t in items]}


@app.post("/api/transactions", status_code=201, dependencies=[Depends(csrf_protect)])
def create_transaction(
    data: TransactionIn,
    auth: AuthStateMachine = Depends(require_member),
    db: Session = Depends(get_db),
    cache: QueryCache = Depends(get_cache),
):
    try:
        txn = TransactionService(db, cache).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return txn_json(txn)


@app.patch("/api/transactions/{transaction_id}", dependencies=[Depends(csrf_protect)])
def update_transaction(
    transaction_id: str,
    data: TransactionUpdate,
    auth: AuthStateMachine = Depends(require_member),
    db: Session = Depends(get_db),
    cache: QueryCache = Depends(get_cache),
):
    try:
        txn = TransactionService(db, cache).update(transaction_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return txn_json(txn)


@app.delete(
    "/api/transactions/{transaction_id}",
    status_code=204,
    dependencies=[Depends(csrf_protect)],
)
def delete_transaction(
    transaction_id: str,
    auth: AuthStateMachine = Depends(require_member),
    db: Session = Depends(get_db),
    cache: QueryCache = Depends(get_cache),
):
    try:
        TransactionService(db, cache).delete(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post("/api/savings", status_code=201, dependencies=[Depends(csrf_protect)])
def record_savings(
    data: SavingsIn,
    auth: AuthStateMachine = Depends(require_member),
    db: Session = Depends(get_db),
    cache: QueryCache = Depends(get_cache),
):
    try:
        created = SavingsService(db, cache).split_across_goals(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"transactions": [txn_json(t) for t in created]}


@app.get("/api/transactions/export.csv")
def export_csv(
    auth: AuthStateMachine = Depends(require_member),
    db: Session = Depends(get_db),
    cache: QueryCache = Depends(get_cache),
):
    transactions = TransactionService(db, cache).list()
    filename = export_filename("transactions", local_today())
    return Response(
        content=export_transactions(transactions),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/goals")
def list_goals(
    auth: AuthStateMachine = Depends(require_member),
    db: Session = Depends(get_db),
    cache: QueryCache = Depends(get_cache),
):
    service = GoalService(db, cache)
    return {
        "total_saved": service.total_saved(),
        "goals": [
            {
                **goal_json(item["goal"]),
                "current_amount": item["current_amount"],
                "percentage": item["percentage"],
            }
            for item in service.overview()
        ],
    }


@app.post("/api/goals", status_code=201, dependencies=[Depends(csrf_protect)])
def create_goal(
    data: GoalIn,
    auth: AuthStateMachine = Depends(require_member),
    db: Session = Depends(get_db),
    cache: QueryCache = Depends(get_cache),
):
    return goal_json(GoalService(db, cache).create(data))


@app.get("/api/goals/{goal_id}")
def goal_details(
    goal_id: str,
    auth: AuthStateMachine = Depends(require_member),
    db: Session = Depends(get_db),
    cache: QueryCache = Depends(get_cache),
):
    try:
        details = GoalService(db, cache).details(goal_id, today=local_today())
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {
        **goal_json(details["goal"]),
        "current_amount": details["current_amount"],
        "percentage": details["percentage"],
        "monthly": [
            {"label": m.label, "amount": m.amount} for m in details["monthly"]
        ],
        "projection": details["projection"].as_dict(),
        "history": [txn_json(t) for t in details["history"]],
    }


@app.delete("/api/goals/{goal_id}", status_code=204, dependencies=[Depends(csrf_protect)])
def delete_goal(
    goal_id: str,
    auth: AuthStateMachine = Depends(require_member),
    db: Session = Depends(get_db),
    cache: QueryCache = Depends(get_cache),
):
    try:
        GoalService(db, cache).delete(goal_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/analytics")
def analytics(
    request: Request,
    year: Optional[int] = None,
    auth: AuthStateMachine = Depends(require_member),
    db: Session = Depends(get_db),
    cache: QueryCache = Depends(get_cache),
):
    today = local_today()
    raw_months = request.query_params.get("months")
    try:
        options = AnalysisOptions(
            year=year or today.year,
            months=(
                [int(m) for m in raw_months.split(",") if m.strip()]
                if raw_months
                else default_selected_months(today)
            ),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    overview = AnalyticsService(db, cache).year_overview(options.year, options.months)
    return {
        "year": overview["year"],
        "months": overview["months"],
        "rollups": [r.as_dict() for r in overview["rollups"]],
        "selected": [r.as_dict() for r in overview["selected"]],
        "categories": category_json(overview["categories"]),
        "summary": overview["summary"],
    }


@app.post("/api/analytics/ai", dependencies=[Depends(csrf_protect)])
def analytics_ai(
    options: AnalysisOptions,
    auth: AuthStateMachine = Depends(require_member),
    db: Session = Depends(get_db),
    cache: QueryCache = Depends(get_cache),
    client: AnalysisClient = Depends(get_analysis_client),
):
    try:
        request_data = AnalyticsService(db, cache).analysis_request(
            options.year, options.months
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        result = client.generate(request_data)
    except AnalysisError as exc:
        logger.exception("AI analysis failed")
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return result.model_dump(by_alias=True, mode="json")


@app.get("/api/meta")
def meta(
    auth: AuthStateMachine = Depends(require_member),
    settings: Settings = Depends(get_app_settings),
):
    return {
        "currency": settings.currency,
        "persons": [p.value for p in Person],
        "categories": [
            {"value": c.value, "label": CATEGORY_LABELS[c]} for c in ExpenseCategory
        ],
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
