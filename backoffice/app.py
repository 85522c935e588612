from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.middleware.sessions import SessionMiddleware

from backoffice.auth import get_user_id, login_session, logout_session
from backoffice.config import Settings, load_settings
from backoffice.errors import (
    AdminProtected,
    BackofficeError,
    Forbidden,
    MigrationFailed,
    NotFound,
    PendingApproval,
    StorageError,
    StorageUnavailable,
    UniqueConstraintViolation,
    ValidationError,
    WriteFailed,
)
from backoffice.estimates import EstimateRepository, normalize_fields
from backoffice.quotes import QuoteRepository
from backoffice.storage import StorageEngine
from backoffice.timesheets import TimesheetRepository
from backoffice.users import ROLE_ADMIN, ROLE_USER, UserRepository, UserRow, can_access

log = logging.getLogger("backoffice")

ERROR_STATUS: tuple[tuple[type[BackofficeError], int], ...] = (
    (ValidationError, 400),
    (NotFound, 404),
    (UniqueConstraintViolation, 409),
    (AdminProtected, 409),
    (Forbidden, 403),
    (PendingApproval, 403),
    (MigrationFailed, 503),
    (StorageUnavailable, 503),
    (WriteFailed, 500),
)


@dataclass(frozen=True)
class Repositories:
    engine: StorageEngine
    users: UserRepository
    estimates: EstimateRepository
    timesheets: TimesheetRepository
    quotes: QuoteRepository


def build_repositories(engine: StorageEngine) -> Repositories:
    return Repositories(
        engine=engine,
        users=UserRepository(engine),
        estimates=EstimateRepository(engine),
        timesheets=TimesheetRepository(engine),
        quotes=QuoteRepository(engine),
    )


def _api_error(message: str, code: int = 400) -> JSONResponse:
    return JSONResponse(status_code=code, content={"ok": False, "error": message})


def _repos(request: Request) -> Repositories:
    return request.app.state.repos


def _settings(request: Request) -> Settings:
    return request.app.state.settings


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("body", "request body must be JSON") from None
    if not isinstance(payload, dict):
        raise ValidationError("body", "request body must be a JSON object")
    return payload


def _items_from(payload: dict[str, Any]) -> list[Any]:
    items = payload.get("items")
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationError("items", "items must be a list")
    return items


def _require_user(request: Request) -> UserRow:
    uid = get_user_id(request.session)
    if uid is None:
        raise HTTPException(status_code=401, detail="authentication required")
    user = _repos(request).users.get_user(uid)
    if user is None:
        logout_session(request.session)
        raise HTTPException(status_code=401, detail="invalid session")
    return user


def _require_approved(request: Request) -> UserRow:
    user = _require_user(request)
    if not can_access(user):
        raise HTTPException(status_code=403, detail="Account not approved")
    return user


def _require_admin(request: Request) -> UserRow:
    user = _require_user(request)
    if user.role != ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="Not authorized")
    return user


router = APIRouter()


@router.get("/health", response_class=PlainTextResponse)
def health() -> str:
    return "ok"


@router.post("/api/auth/register")
async def register(request: Request):
    if not _settings(request).allow_registration:
        return _api_error("registration is disabled", 403)
    payload = await _json_body(request)
    users = _repos(request).users
    user_id = users.register(
        email=str(payload.get("email", "")),
        password=str(payload.get("password", "")),
        name=str(payload.get("name", "") or ""),
    )
    user = users.get_user(user_id)
    return JSONResponse(
        status_code=201,
        content={
            "ok": True,
            "message": "Registration successful. Please wait for admin approval.",
            "user": user.__dict__ if user else None,
        },
    )


@router.post("/api/auth/login")
async def login(request: Request):
    payload = await _json_body(request)
    user = _repos(request).users.authenticate(str(payload.get("email", "")), str(payload.get("password", "")))
    if user is None:
        return _api_error("Invalid email or password", 401)
    login_session(request.session, user_id=user.id, email=user.email)
    return {"ok": True, "user": user.__dict__}


@router.post("/api/auth/logout")
def logout(request: Request):
    logout_session(request.session)
    return {"ok": True}


@router.get("/api/auth/user")
def current_user(request: Request):
    user = _require_user(request)
    return {"ok": True, "user": user.__dict__}


@router.get("/api/estimates")
def list_estimates(request: Request, limit: int | None = None, offset: int = 0):
    _require_approved(request)
    rows = _repos(request).estimates.get_all_estimates(limit=limit, offset=offset)
    return {"ok": True, "estimates": [r.to_dict() for r in rows]}


@router.post("/api/estimates")
async def create_estimate(request: Request):
    _require_approved(request)
    payload = normalize_fields(await _json_body(request))
    estimates = _repos(request).estimates
    estimate_id = estimates.save_estimate(payload, _items_from(payload))
    estimate = estimates.get_estimate(estimate_id)
    return JSONResponse(status_code=201, content={"ok": True, "estimate": estimate.to_dict() if estimate else None})


@router.get("/api/estimates/next-number")
def next_estimate_number(request: Request, year: int | None = None):
    _require_approved(request)
    return {"ok": True, "number": _repos(request).estimates.get_next_estimate_number(year)}


@router.get("/api/estimates/{estimate_id}")
def get_estimate(request: Request, estimate_id: int):
    _require_approved(request)
    estimate = _repos(request).estimates.get_estimate(estimate_id)
    if estimate is None:
        raise NotFound("estimate", estimate_id)
    return {"ok": True, "estimate": estimate.to_dict()}


@router.put("/api/estimates/{estimate_id}")
async def update_estimate(request: Request, estimate_id: int):
    _require_approved(request)
    payload = normalize_fields(await _json_body(request))
    estimates = _repos(request).estimates
    estimates.update_estimate(estimate_id, payload, _items_from(payload))
    estimate = estimates.get_estimate(estimate_id)
    return {"ok": True, "estimate": estimate.to_dict() if estimate else None}


@router.delete("/api/estimates/{estimate_id}")
def delete_estimate(request: Request, estimate_id: int):
    _require_approved(request)
    _repos(request).estimates.delete_estimate(estimate_id)
    return {"ok": True}


@router.get("/api/timesheet")
def list_timesheet(
    request: Request,
    start_date: str | None = Query(default=None, alias="startDate"),
    end_date: str | None = Query(default=None, alias="endDate"),
):
    user = _require_approved(request)
    if not start_date or not end_date:
        return _api_error("Missing required query parameters: startDate, endDate")
    timesheets = _repos(request).timesheets
    rows = timesheets.list_entries(user.id, start_date, end_date)
    return {
        "ok": True,
        "entries": [r.__dict__ for r in rows],
        "daily_totals": timesheets.daily_totals(user.id, start_date, end_date),
    }


@router.post("/api/timesheet")
async def create_timesheet_entry(request: Request):
    user = _require_approved(request)
    payload = await _json_body(request)
    entry_id = _repos(request).timesheets.save_entry(user.id, payload)
    return JSONResponse(status_code=201, content={"ok": True, "id": entry_id})


@router.get("/api/timesheet/{entry_id}")
def get_timesheet_entry(request: Request, entry_id: int):
    user = _require_approved(request)
    entry = _repos(request).timesheets.get_entry(entry_id, user_id=user.id)
    if entry is None:
        raise NotFound("timesheet entry", entry_id)
    return {"ok": True, "entry": entry.__dict__}


@router.put("/api/timesheet/{entry_id}")
async def update_timesheet_entry(request: Request, entry_id: int):
    user = _require_approved(request)
    payload = await _json_body(request)
    timesheets = _repos(request).timesheets
    timesheets.update_entry(entry_id, user.id, payload)
    entry = timesheets.get_entry(entry_id, user_id=user.id)
    return {"ok": True, "entry": entry.__dict__ if entry else None}


@router.delete("/api/timesheet/{entry_id}")
def delete_timesheet_entry(request: Request, entry_id: int):
    user = _require_approved(request)
    _repos(request).timesheets.delete_entry(entry_id, user.id)
    return {"ok": True}


@router.get("/api/quotes")
def list_quotes(request: Request):
    _require_approved(request)
    return {"ok": True, "quotes": [q.__dict__ for q in _repos(request).quotes.list_quotes()]}


@router.post("/api/quotes")
async def create_quote(request: Request):
    user = _require_approved(request)
    payload = await _json_body(request)
    quotes = _repos(request).quotes
    quote_id = quotes.create_quote(payload, user_id=user.id)
    quote = quotes.get_quote(quote_id)
    return JSONResponse(status_code=201, content={"ok": True, "quote": quote.__dict__ if quote else None})


@router.get("/api/quotes/{quote_id}")
def get_quote(request: Request, quote_id: int):
    _require_approved(request)
    quote = _repos(request).quotes.get_quote(quote_id)
    if quote is None:
        raise NotFound("quote", quote_id)
    return {"ok": True, "quote": quote.__dict__}


@router.put("/api/quotes/{quote_id}")
async def update_quote(request: Request, quote_id: int):
    _require_approved(request)
    payload = await _json_body(request)
    quotes = _repos(request).quotes
    quotes.update_quote(quote_id, payload)
    quote = quotes.get_quote(quote_id)
    return {"ok": True, "quote": quote.__dict__ if quote else None}


@router.delete("/api/quotes/{quote_id}")
def delete_quote(request: Request, quote_id: int):
    _require_approved(request)
    _repos(request).quotes.delete_quote(quote_id)
    return {"ok": True}


@router.get("/api/admin/users")
def admin_list_users(request: Request):
    _require_admin(request)
    return {"ok": True, "users": [u.__dict__ for u in _repos(request).users.list_users()]}


@router.post("/api/admin/users")
async def admin_create_user(request: Request):
    _require_admin(request)
    payload = await _json_body(request)
    users = _repos(request).users
    user_id = users.create_user(
        email=str(payload.get("email", "")),
        password=str(payload.get("password", "")),
        name=str(payload.get("name", "") or ""),
        role=str(payload.get("role") or ROLE_USER),
        is_approved=bool(payload.get("is_approved", False)),
    )
    user = users.get_user(user_id)
    return JSONResponse(status_code=201, content={"ok": True, "user": user.__dict__ if user else None})


@router.get("/api/admin/pending-users")
def admin_pending_users(request: Request):
    _require_admin(request)
    return {"ok": True, "users": [u.__dict__ for u in _repos(request).users.list_pending_users()]}


@router.put("/api/admin/users/{user_id}")
async def admin_update_user(request: Request, user_id: int):
    _require_admin(request)
    payload = await _json_body(request)
    users = _repos(request).users
    users.update_user(
        user_id,
        name=payload.get("name"),
        email=payload.get("email"),
        role=payload.get("role"),
        is_approved=None if payload.get("is_approved") is None else bool(payload["is_approved"]),
    )
    user = users.get_user(user_id)
    return {"ok": True, "user": user.__dict__ if user else None}


@router.delete("/api/admin/users/{user_id}")
def admin_delete_user(request: Request, user_id: int):
    _require_admin(request)
    _repos(request).users.delete_user(user_id)
    return {"ok": True}


@router.put("/api/admin/users/{user_id}/role")
async def admin_set_role(request: Request, user_id: int):
    _require_admin(request)
    payload = await _json_body(request)
    users = _repos(request).users
    users.set_role(user_id, str(payload.get("role", "")))
    user = users.get_user(user_id)
    return {"ok": True, "user": user.__dict__ if user else None}


@router.post("/api/admin/approve-user/{user_id}")
def admin_approve_user(request: Request, user_id: int):
    _require_admin(request)
    _repos(request).users.approve_user(user_id)
    return {"ok": True, "message": "User approved successfully"}


@router.post("/api/admin/deny-user/{user_id}")
def admin_deny_user(request: Request, user_id: int):
    _require_admin(request)
    _repos(request).users.deny_user(user_id)
    return {"ok": True, "message": "User denied successfully"}


async def _backoffice_error_handler(request: Request, exc: Exception) -> JSONResponse:
    code = 500
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            code = status
            break
    if isinstance(exc, StorageError):
        log.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
    return _api_error(str(exc), code)


async def _http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _api_error(str(exc.detail), exc.status_code)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(message)s")

    engine = StorageEngine(settings.db_path)
    repos = build_repositories(engine)
    repos.users.initialize(
        admin_email=settings.admin_email,
        admin_password=settings.admin_password,
        admin_name=settings.admin_name,
    )
    engine.close_on_exit()

    app = FastAPI(title="Back Office")
    app.state.settings = settings
    app.state.repos = repos

    session_secret = settings.secret_key or secrets.token_urlsafe(48)
    app.add_middleware(
        SessionMiddleware,
        secret_key=session_secret,
        session_cookie="backoffice_session",
        https_only=settings.https_only,
        same_site="lax",
    )
    app.add_exception_handler(BackofficeError, _backoffice_error_handler)
    app.add_exception_handler(HTTPException, _http_error_handler)
    app.include_router(router)

    @app.on_event("startup")
    def _startup() -> None:
        if not settings.secret_key:
            log.warning("BACKOFFICE_SECRET_KEY is not set. Session secret will rotate on restart.")
        if not settings.https_only:
            log.warning("BACKOFFICE_HTTPS_ONLY is off. Enable it in production.")
        log.info("Database %s at schema_version=%s", engine.db_path, engine.schema_version())

    @app.on_event("shutdown")
    def _shutdown() -> None:
        engine.close()

    return app
