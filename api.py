import logging
import sqlite3
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from circulation import database
from circulation.config import settings
from circulation.errors import (
    CirculationError,
    ContentionError,
    GatewayError,
    InvalidSignature,
    ValidationError,
)
from circulation.library import Library
from circulation.models import RequestType, Role

logger = logging.getLogger(__name__)

_library: Optional[Library] = None
_library_lock = threading.Lock()


def get_library() -> Library:
    """Process-wide ``Library`` built from settings on first use."""
    global _library
    if _library is None:
        with _library_lock:
            if _library is None:
                _library = Library()
    return _library


def get_clock() -> Callable[[], datetime]:
    return datetime.now


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if settings.enable_sweep_scheduler:
        lib = app.dependency_overrides.get(get_library, get_library)()
        scheduler = lib.scheduler()
        scheduler.start()
    app.state.scheduler = scheduler
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Errors ---
def _status_for(exc: CirculationError) -> int:
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, InvalidSignature):
        return 400
    if isinstance(exc, LookupError):
        return 404
    if isinstance(exc, ContentionError):
        return 503
    if isinstance(exc, GatewayError):
        return 502
    return 409


@app.exception_handler(CirculationError)
async def circulation_error_handler(request: Request, exc: CirculationError):
    status_code = _status_for(exc)
    headers = {"Retry-After": "1"} if exc.retryable else None
    if status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__, "retryable": exc.retryable},
        headers=headers,
    )


@app.exception_handler(sqlite3.IntegrityError)
async def integrity_error_handler(request: Request, exc: sqlite3.IntegrityError):
    logger.warning(f"{request.method} {request.url.path} violated a constraint: {exc}")
    return JSONResponse(status_code=409, content={"detail": f"Constraint violated: {exc}"})


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that checks the API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


@dataclass
class Identity:
    member_id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


def current_identity(
    x_member_id: int = Header(..., alias="X-Member-Id"),
    x_role: str = Header("MEMBER", alias="X-Role"),
    _: str = Depends(get_api_key),
) -> Identity:
    try:
        role = Role(x_role.upper())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown role {x_role!r}")
    return Identity(member_id=x_member_id, role=role)


def require_admin(identity: Identity = Depends(current_identity)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return identity


# --- Models ---
class TitleModel(BaseModel):
    id: int
    title: str
    author: str
    total_copies: int
    available_copies: int
    isbn: Optional[str] = None
    genre: Optional[str] = None
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    description: Optional[str] = None
    status: str


class TitleCreateModel(BaseModel):
    title: str
    author: str
    total_copies: int = Field(1, ge=0)
    isbn: Optional[str] = None
    genre: Optional[str] = None
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    description: Optional[str] = None


class CopiesUpdateModel(BaseModel):
    total_copies: int = Field(..., ge=0)


class IssueModel(BaseModel):
    title_id: int


class ReturnModel(BaseModel):
    loan_id: int


class OrderModel(BaseModel):
    amount: float = Field(..., gt=0)
    type: str = "SUBSCRIPTION"
    loan_id: Optional[int] = None


class VerifyModel(BaseModel):
    order_id: str
    payment_id: str
    signature: str


class CashPaymentModel(BaseModel):
    member_id: int
    amount: float = Field(..., gt=0)
    type: str = "SUBSCRIPTION"
    loan_id: Optional[int] = None
    notes: Optional[str] = None


class RequestCreateModel(BaseModel):
    type: str
    subject: str
    description: str
    details: Optional[Dict[str, Any]] = None


class MembershipApplicationModel(BaseModel):
    full_name: str
    email: str
    phone: Optional[str] = None
    batch: Optional[str] = None
    message: Optional[str] = None


class DecisionModel(BaseModel):
    response: Optional[str] = None


class MemberCreateModel(BaseModel):
    full_name: str
    email: str
    phone: Optional[str] = None
    role: str = "MEMBER"
    batch: Optional[str] = None
    time_slot: Optional[str] = None


class StatusUpdateModel(BaseModel):
    status: str


class BatchChangeModel(BaseModel):
    batch: str
    time_slot: Optional[str] = None


# --- Health ---
@app.get("/health")
def health(lib: Library = Depends(get_library)):
    """Lightweight health check with a quick database ping."""
    db_ok = True
    try:
        conn = database.get_db_connection(lib.db_file)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception as e:
        logger.error(f"Health check database ping failed: {e}")
        db_ok = False
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "healthy" if db_ok else "degraded",
        "database": db_ok,
        "sweep_scheduler": bool(scheduler and scheduler.running),
        "timestamp": datetime.now().isoformat(),
    }


# --- Titles ---
@app.get("/titles", response_model=List[TitleModel])
def list_titles(q: Optional[str] = Query(None, description="Search by title, author or ISBN"),
                include_archived: bool = False, lib: Library = Depends(get_library)):
    titles = lib.catalog.search_titles(q) if q else lib.catalog.list_titles(include_archived)
    return [t.to_dict() for t in titles]


@app.get("/titles/{title_id}", response_model=TitleModel)
def get_title(title_id: int, lib: Library = Depends(get_library)):
    return lib.catalog.get_title(title_id).to_dict()


@app.post("/titles", response_model=TitleModel, status_code=201)
def add_title(payload: TitleCreateModel, admin: Identity = Depends(require_admin),
              lib: Library = Depends(get_library)):
    title = lib.catalog.add_title(
        payload.title, payload.author, payload.total_copies,
        isbn=payload.isbn, genre=payload.genre, publisher=payload.publisher,
        publication_year=payload.publication_year, description=payload.description,
        performed_by=admin.member_id,
    )
    return title.to_dict()


@app.patch("/titles/{title_id}/copies", response_model=TitleModel)
def update_copies(title_id: int, payload: CopiesUpdateModel, admin: Identity = Depends(require_admin),
                  lib: Library = Depends(get_library)):
    return lib.catalog.update_copies(title_id, payload.total_copies, performed_by=admin.member_id).to_dict()


@app.delete("/titles/{title_id}", response_model=TitleModel)
def archive_title(title_id: int, admin: Identity = Depends(require_admin),
                  lib: Library = Depends(get_library)):
    return lib.catalog.archive_title(title_id, performed_by=admin.member_id).to_dict()


# --- Loans ---
@app.post("/loans/issue", status_code=201)
def issue_loan(payload: IssueModel, identity: Identity = Depends(current_identity),
               lib: Library = Depends(get_library), clock=Depends(get_clock)):
    return lib.loans.issue_loan(identity.member_id, payload.title_id, clock()).to_dict()


@app.post("/loans/return")
def return_loan(payload: ReturnModel, identity: Identity = Depends(current_identity),
                lib: Library = Depends(get_library), clock=Depends(get_clock)):
    return lib.loans.return_loan(payload.loan_id, identity.member_id, clock()).to_dict()


@app.get("/loans/me")
def my_loans(identity: Identity = Depends(current_identity), lib: Library = Depends(get_library)):
    return [loan.to_dict() for loan in lib.loans.open_loans(identity.member_id)]


@app.get("/loans/history")
def loan_history(limit: int = Query(50, ge=1, le=500), identity: Identity = Depends(current_identity),
                 lib: Library = Depends(get_library)):
    return [loan.to_dict() for loan in lib.loans.loan_history(identity.member_id, limit)]


# --- Subscriptions ---
@app.get("/subscriptions/me")
def my_subscriptions(identity: Identity = Depends(current_identity), lib: Library = Depends(get_library),
                     clock=Depends(get_clock)):
    active = lib.ledger.active_subscription(identity.member_id, clock().date())
    return {
        "active": active.to_dict() if active else None,
        "history": [s.to_dict() for s in lib.ledger.subscriptions_for(identity.member_id)],
    }


@app.get("/subscriptions")
def all_subscriptions(status: Optional[str] = None, limit: int = Query(200, ge=1, le=1000),
                      _: Identity = Depends(require_admin), lib: Library = Depends(get_library)):
    return [s.to_dict() for s in lib.ledger.all_subscriptions(status, limit)]


# --- Payments ---
@app.post("/payments/orders", status_code=201)
def create_order(payload: OrderModel, identity: Identity = Depends(current_identity),
                 lib: Library = Depends(get_library), clock=Depends(get_clock)):
    payment = lib.payments.create_gateway_order(
        identity.member_id, payload.amount, payload.type, clock(), loan_id=payload.loan_id,
    )
    return {
        "order_id": payment.order_id,
        "amount": payment.amount,
        "currency": settings.currency,
        "key_id": settings.razorpay_key_id,
        "payment": payment.to_dict(),
    }


@app.post("/payments/verify", dependencies=[Depends(get_api_key)])
def verify_payment(payload: VerifyModel, lib: Library = Depends(get_library), clock=Depends(get_clock)):
    """Gateway confirmation; safe to deliver more than once."""
    outcome = lib.payments.confirm_gateway_payment(
        payload.order_id, payload.payment_id, payload.signature, clock(),
    )
    return outcome.to_dict()


@app.post("/payments/cash", status_code=201)
def cash_payment(payload: CashPaymentModel, admin: Identity = Depends(require_admin),
                 lib: Library = Depends(get_library), clock=Depends(get_clock)):
    outcome = lib.payments.confirm_cash_payment(
        payload.member_id, payload.amount, payload.type, admin.member_id, clock(),
        notes=payload.notes, loan_id=payload.loan_id,
    )
    return outcome.to_dict()


@app.get("/payments/me")
def my_payments(identity: Identity = Depends(current_identity), lib: Library = Depends(get_library)):
    return [p.to_dict() for p in lib.payments.payments_for(identity.member_id)]


@app.get("/payments")
def all_payments(limit: int = Query(200, ge=1, le=1000), _: Identity = Depends(require_admin),
                 lib: Library = Depends(get_library)):
    return [p.to_dict() for p in lib.payments.all_payments(limit)]


@app.post("/payments/{order_id}/fail", dependencies=[Depends(get_api_key)])
def fail_payment(order_id: str, lib: Library = Depends(get_library)):
    """Gateway callback for an abandoned or declined checkout."""
    return lib.payments.mark_payment_failed(order_id).to_dict()


# --- Requests ---
@app.post("/requests", status_code=201)
def create_request(payload: RequestCreateModel, identity: Identity = Depends(current_identity),
                   lib: Library = Depends(get_library)):
    request = lib.requests.create_request(
        identity.member_id, payload.type, payload.subject, payload.description, payload.details,
    )
    return request.to_dict()


@app.post("/requests/membership", status_code=201, dependencies=[Depends(get_api_key)])
def apply_for_membership(payload: MembershipApplicationModel, lib: Library = Depends(get_library)):
    """Public membership application; an admin approves it into a member."""
    request = lib.requests.create_request(
        None,
        RequestType.MEMBERSHIP_REGISTRATION,
        f"Membership application: {payload.full_name}",
        payload.message or "New membership application",
        {"full_name": payload.full_name, "email": payload.email,
         "phone": payload.phone, "batch": payload.batch},
    )
    return request.to_dict()


@app.get("/requests/me")
def my_requests(identity: Identity = Depends(current_identity), lib: Library = Depends(get_library)):
    return [r.to_dict() for r in lib.requests.list_requests(member_id=identity.member_id)]


@app.get("/requests")
def all_requests(status: Optional[str] = None, _: Identity = Depends(require_admin),
                 lib: Library = Depends(get_library)):
    return [r.to_dict() for r in lib.requests.list_requests(status=status)]


@app.post("/requests/{request_id}/approve")
def approve_request(request_id: int, payload: Optional[DecisionModel] = None,
                    admin: Identity = Depends(require_admin), lib: Library = Depends(get_library)):
    response = payload.response if payload else None
    return lib.requests.approve_request(request_id, admin.member_id, response).to_dict()


@app.post("/requests/{request_id}/reject")
def reject_request(request_id: int, payload: Optional[DecisionModel] = None,
                   admin: Identity = Depends(require_admin), lib: Library = Depends(get_library)):
    reason = payload.response if payload else None
    return lib.requests.reject_request(request_id, admin.member_id, reason).to_dict()


# --- Members ---
@app.post("/members/me/batch")
def change_my_batch(payload: BatchChangeModel, identity: Identity = Depends(current_identity),
                    lib: Library = Depends(get_library)):
    return lib.members.change_batch(identity.member_id, payload.batch, payload.time_slot).to_dict()


@app.post("/members", status_code=201)
def register_member(payload: MemberCreateModel, admin: Identity = Depends(require_admin),
                    lib: Library = Depends(get_library)):
    member = lib.members.register_member(
        payload.full_name, payload.email, phone=payload.phone, role=payload.role,
        batch=payload.batch, time_slot=payload.time_slot, performed_by=admin.member_id,
    )
    return member.to_dict()


@app.get("/members")
def list_members(status: Optional[str] = None, _: Identity = Depends(require_admin),
                 lib: Library = Depends(get_library)):
    return [m.to_dict() for m in lib.members.list_members(status)]


@app.patch("/members/{member_id}/status")
def set_member_status(member_id: int, payload: StatusUpdateModel, admin: Identity = Depends(require_admin),
                      lib: Library = Depends(get_library)):
    return lib.members.set_status(member_id, payload.status, performed_by=admin.member_id).to_dict()


# --- Admin ---
@app.post("/admin/sweep")
def run_sweep(_: Identity = Depends(require_admin), lib: Library = Depends(get_library),
              clock=Depends(get_clock)):
    return lib.sweep.run_sweep_once(clock()).to_dict()


@app.get("/admin/loans")
def open_loans_overview(overdue: bool = False, _: Identity = Depends(require_admin),
                        lib: Library = Depends(get_library)):
    loans = lib.loans.overdue_loans() if overdue else lib.loans.all_open_loans()
    return [loan.to_dict() for loan in loans]


@app.get("/admin/stats")
def dashboard_stats(_: Identity = Depends(require_admin), lib: Library = Depends(get_library)):
    return lib.dashboard_stats()


@app.get("/admin/audit")
def audit_trail(limit: int = Query(100, ge=1, le=1000), action: Optional[str] = None,
                performed_by: Optional[int] = None, _: Identity = Depends(require_admin),
                lib: Library = Depends(get_library)):
    return lib.audit_log.recent(limit, action=action, performed_by=performed_by)
