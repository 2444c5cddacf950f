from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import OperationalError

from auth import AuthError, AuthIdentity, decode_access_token, extract_bearer_token
from config import (
    APP_VERSION,
    AUTH_ENABLED,
    AUTH_TOKEN_SECRET,
    CHECKOUT_CANCEL_URL,
    CHECKOUT_SUCCESS_URL,
    CORS_ORIGINS,
    PAYMENT_PROVIDER,
    ROOT_PATH,
    STARTUP_BOOTSTRAP_ENABLED,
)
from errors import ERROR_CODE_MAP, ExternalDependencyError, LedgerError, explain_error
from ledger import (
    AdminCharge,
    Invoice,
    LedgerRepository,
    PromoCode,
    SessionLocal,
    UserPromoUsage,
    create_charge,
    default_notifier,
    get_payment_provider,
    handle_event,
    http_status_for,
    init_ledger_db,
    initiate_charge_payment,
    list_charges_for_user,
    partition_charges,
    ping_database,
    preview_deferred_billing,
    resolve_billing_settings,
    run_deferred_invoicing,
    session_scope,
)
from ledger import promo as promo_engine
from observability import configure_json_logging, get_logger, log_event

SECURITY_HEADERS: Dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}
CONTENT_SECURITY_POLICY = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"

configure_json_logging(level=logging.INFO)
APP_LOGGER = get_logger("retouch.api")

SESSION_FACTORY = SessionLocal
NOTIFIER = default_notifier()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if AUTH_ENABLED:
        if not AUTH_TOKEN_SECRET:
            raise RuntimeError("AUTH_TOKEN_SECRET is required when AUTH_ENABLED=true")
    if STARTUP_BOOTSTRAP_ENABLED:
        init_ledger_db()
    yield


app = FastAPI(title="Retouch Billing", version=APP_VERSION, root_path=ROOT_PATH, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Signature", "Stripe-Signature"],
    expose_headers=["X-Trace-Id"],
)


PUBLIC_AUTH_PATHS = {
    "/health",
    "/payments/webhook",
    "/docs",
    "/redoc",
    "/openapi.json",
}


def _scope():
    return session_scope(SESSION_FACTORY)


def _normalize_request_path(path: str) -> str:
    normalized = path or "/"
    if ROOT_PATH and normalized.startswith(ROOT_PATH):
        stripped = normalized[len(ROOT_PATH):]
        normalized = stripped if stripped.startswith("/") else f"/{stripped}"
    return normalized or "/"


def _is_public_path(path: str) -> bool:
    normalized = _normalize_request_path(path)
    if normalized in PUBLIC_AUTH_PATHS:
        return True
    return normalized.startswith("/docs/") or normalized.startswith("/redoc/")


def _request_user_id(request: Request) -> str:
    identity = getattr(request.state, "auth_identity", None)
    if isinstance(identity, AuthIdentity):
        return identity.user_id
    return "anonymous"


def _request_trace_id(request: Request) -> str:
    raw = str(getattr(request.state, "trace_id", "") or "").strip()
    if raw:
        return raw
    return uuid.uuid4().hex


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    trace_id = str(request.headers.get("X-Trace-Id") or uuid.uuid4().hex).strip()[:64]
    request.state.trace_id = trace_id
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = int((time.perf_counter() - started) * 1000)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "request.completed",
        trace_id=trace_id,
        method=request.method,
        path=_normalize_request_path(request.url.path),
        status_code=response.status_code,
        duration_ms=duration_ms,
        user_id=_request_user_id(request),
    )
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    for key, value in SECURITY_HEADERS.items():
        if key not in response.headers:
            response.headers[key] = value
    path = _normalize_request_path(request.url.path)
    if path.startswith("/docs") or path.startswith("/redoc"):
        return response
    if "Content-Security-Policy" not in response.headers:
        response.headers["Content-Security-Policy"] = CONTENT_SECURITY_POLICY
    return response


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    if not AUTH_ENABLED or request.method.upper() == "OPTIONS" or _is_public_path(request.url.path):
        return await call_next(request)
    try:
        token = extract_bearer_token(request.headers.get("Authorization"))
        identity = decode_access_token(token, AUTH_TOKEN_SECRET)
    except AuthError as exc:
        return JSONResponse(status_code=401, content={"detail": str(exc)})
    request.state.auth_identity = identity
    return await call_next(request)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.WARNING if exc.http_status < 500 else logging.ERROR,
        "request.ledger_error",
        trace_id=trace_id,
        user_id=_request_user_id(request),
        path=_normalize_request_path(request.url.path),
        error_code=exc.code,
        detail=exc.detail,
    )
    explained = explain_error(exc.code) or ERROR_CODE_MAP["UNEXPECTED_ERROR"]
    return JSONResponse(
        status_code=exc.http_status,
        content={
            "error_code": exc.code,
            "message": explained["message"],
            "hint": explained["hint"],
            "detail": exc.detail,
            "trace_id": trace_id,
        },
        headers={"X-Trace-Id": trace_id},
    )


@app.exception_handler(OperationalError)
async def store_unavailable_handler(request: Request, exc: OperationalError) -> JSONResponse:
    return await ledger_error_handler(request, ExternalDependencyError("ledger store unavailable"))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.ERROR,
        "request.unhandled_exception",
        trace_id=trace_id,
        user_id=_request_user_id(request),
        method=request.method,
        path=_normalize_request_path(request.url.path),
        exception_type=type(exc).__name__,
        exception_message=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_SERVER_ERROR",
            "message": "internal server error",
            "trace_id": trace_id,
        },
        headers={"X-Trace-Id": trace_id},
    )


def get_current_identity(request: Request) -> AuthIdentity:
    if not AUTH_ENABLED:
        return AuthIdentity(user_id="anonymous", role="admin")
    identity = getattr(request.state, "auth_identity", None)
    if isinstance(identity, AuthIdentity):
        return identity
    raise HTTPException(status_code=401, detail="unauthorized")


def require_admin(identity: AuthIdentity = Depends(get_current_identity)) -> AuthIdentity:
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="admin role required")
    return identity


class HealthResponse(BaseModel):
    status: str
    version: str
    db: str


class ChargeCreateRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: int
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("user_id", mode="before")
    @classmethod
    def _strip_user_id(cls, value: Any) -> str:
        return str(value or "").strip()


class ChargeResponse(BaseModel):
    id: str
    user_id: str
    amount: int
    description: str
    status: str
    paid_at: Optional[datetime] = None
    invoice_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime


class MyChargesResponse(BaseModel):
    pending: List[ChargeResponse] = Field(default_factory=list)
    paid: List[ChargeResponse] = Field(default_factory=list)


class CheckoutRequest(BaseModel):
    success_url: str = ""
    cancel_url: str = ""


class CheckoutResponse(BaseModel):
    charge_id: str
    provider: str
    checkout_url: str


class PromoRedeemRequest(BaseModel):
    code: str = Field(..., max_length=64)


class PromoRedeemResponse(BaseModel):
    success: bool
    message: str
    free_photos: Optional[int] = None


class PromoBalanceResponse(BaseModel):
    user_id: str
    free_photos: int


class PromoUsageResponse(BaseModel):
    id: str
    code: Optional[str] = None
    photos_used: int
    photos_remaining: int
    used_at: datetime


class PromoSpendRequest(BaseModel):
    count: int


class PromoSpendResponse(BaseModel):
    success: bool
    message: str
    remaining: int


class PromoCodeCreateRequest(BaseModel):
    code: Optional[str] = Field(default=None, max_length=64)
    free_photos: int
    max_uses: Optional[int] = None
    expires_at: Optional[datetime] = None
    active: bool = True


class PromoCodeUpdateRequest(BaseModel):
    active: bool


class PromoCodeResponse(BaseModel):
    id: str
    code: str
    free_photos: int
    max_uses: Optional[int] = None
    current_uses: int
    active: bool
    expires_at: Optional[datetime] = None
    created_at: datetime


class DeferredRunResponse(BaseModel):
    success: bool
    message: str
    processed_users: int = Field(serialization_alias="processedUsers")
    invoices_created: int = Field(serialization_alias="invoicesCreated")
    failed_users: List[str] = Field(default_factory=list, serialization_alias="failedUsers")
    invoice_ids: List[str] = Field(default_factory=list, serialization_alias="invoiceIds")


class InvoiceItemResponse(BaseModel):
    id: str
    order_id: Optional[str] = None
    description: str
    quantity: int
    unit_price: int
    total_price: int


class InvoiceResponse(BaseModel):
    id: str
    invoice_number: str
    user_id: str
    total_amount: int
    currency: str
    status: str
    source: str
    issued_date: datetime
    due_date: datetime
    archived_at: Optional[datetime] = None
    items: List[InvoiceItemResponse] = Field(default_factory=list)


class WebhookAuditLogResponse(BaseModel):
    id: str
    occurred_at: datetime
    provider: str
    event_type: str
    external_event_id: Optional[str] = None
    charge_id: Optional[str] = None
    signature_valid: bool
    outcome: str
    detail: Optional[str] = None


def _charge_response(charge: AdminCharge) -> ChargeResponse:
    return ChargeResponse(
        id=charge.id,
        user_id=charge.user_id,
        amount=int(charge.amount),
        description=charge.description,
        status=str(charge.status.value),
        paid_at=charge.paid_at,
        invoice_id=charge.invoice_id,
        created_by=charge.created_by,
        created_at=charge.created_at,
    )


def _promo_code_response(promo: PromoCode) -> PromoCodeResponse:
    return PromoCodeResponse(
        id=promo.id,
        code=promo.code,
        free_photos=int(promo.free_photos),
        max_uses=promo.max_uses,
        current_uses=int(promo.current_uses or 0),
        active=bool(promo.active),
        expires_at=promo.expires_at,
        created_at=promo.created_at,
    )


def _usage_response(usage: UserPromoUsage) -> PromoUsageResponse:
    return PromoUsageResponse(
        id=usage.id,
        code=usage.promo_code.code if usage.promo_code else None,
        photos_used=int(usage.photos_used),
        photos_remaining=int(usage.photos_remaining),
        used_at=usage.used_at,
    )


def _invoice_response(invoice: Invoice) -> InvoiceResponse:
    return InvoiceResponse(
        id=invoice.id,
        invoice_number=invoice.invoice_number,
        user_id=invoice.user_id,
        total_amount=int(invoice.total_amount),
        currency=invoice.currency,
        status=str(invoice.status.value),
        source=str(invoice.source.value),
        issued_date=invoice.issued_date,
        due_date=invoice.due_date,
        archived_at=invoice.archived_at,
        items=[
            InvoiceItemResponse(
                id=item.id,
                order_id=item.order_id,
                description=item.description,
                quantity=int(item.quantity),
                unit_price=int(item.unit_price),
                total_price=int(item.total_price),
            )
            for item in invoice.items
        ],
    )


@app.get("/health")
async def health() -> HealthResponse:
    try:
        ping_database(SESSION_FACTORY)
        db_status = "ok"
    except ExternalDependencyError:
        db_status = "unavailable"
    return HealthResponse(status="ok" if db_status == "ok" else "degraded", version=APP_VERSION, db=db_status)


@app.post("/payments/webhook")
async def payment_webhook(request: Request) -> JSONResponse:
    raw = await request.body()
    signature = request.headers.get("Stripe-Signature") or request.headers.get("X-Signature") or ""
    provider = get_payment_provider(PAYMENT_PROVIDER)
    try:
        result = handle_event(
            raw,
            signature,
            provider=provider,
            session_factory=SESSION_FACTORY,
            notifier=NOTIFIER,
        )
    except LedgerError as exc:
        return JSONResponse(status_code=http_status_for(exc), content={"error": exc.detail, "error_code": exc.code})
    return JSONResponse(status_code=200, content={"received": True, **result})


@app.post("/admin/charges")
async def admin_create_charge(
    payload: ChargeCreateRequest,
    identity: AuthIdentity = Depends(require_admin),
) -> ChargeResponse:
    with _scope() as session:
        repo = LedgerRepository(session)
        charge = create_charge(
            repo,
            user_id=payload.user_id,
            amount=payload.amount,
            description=payload.description,
            created_by=identity.user_id,
            settings=resolve_billing_settings(repo),
        )
        return _charge_response(charge)


@app.get("/admin/charges")
async def admin_list_charges(
    user_id: str = Query(..., min_length=1, max_length=64),
    _: AuthIdentity = Depends(require_admin),
) -> List[ChargeResponse]:
    with _scope() as session:
        charges = list_charges_for_user(LedgerRepository(session), user_id)
        return [_charge_response(item) for item in charges]


@app.get("/charges/me")
async def my_charges(identity: AuthIdentity = Depends(get_current_identity)) -> MyChargesResponse:
    with _scope() as session:
        pending, paid = partition_charges(list_charges_for_user(LedgerRepository(session), identity.user_id))
        return MyChargesResponse(
            pending=[_charge_response(item) for item in pending],
            paid=[_charge_response(item) for item in paid],
        )


@app.post("/charges/{charge_id}/checkout")
async def checkout_charge(
    charge_id: str,
    payload: Optional[CheckoutRequest] = None,
    identity: AuthIdentity = Depends(get_current_identity),
) -> CheckoutResponse:
    body = payload or CheckoutRequest()
    with _scope() as session:
        settings = resolve_billing_settings(LedgerRepository(session))
    checkout = initiate_charge_payment(
        charge_id,
        identity.user_id,
        provider=get_payment_provider(PAYMENT_PROVIDER),
        success_url=body.success_url.strip() or CHECKOUT_SUCCESS_URL,
        cancel_url=body.cancel_url.strip() or CHECKOUT_CANCEL_URL,
        currency=settings.currency,
        session_factory=SESSION_FACTORY,
    )
    return CheckoutResponse(charge_id=charge_id, provider=checkout.provider, checkout_url=checkout.checkout_url)


@app.post("/promo/redeem")
async def redeem_promo_code(
    payload: PromoRedeemRequest,
    identity: AuthIdentity = Depends(get_current_identity),
) -> JSONResponse:
    try:
        with _scope() as session:
            result = promo_engine.redeem(LedgerRepository(session), identity.user_id, payload.code)
    except LedgerError as exc:
        body = PromoRedeemResponse(success=False, message=exc.public_message)
        return JSONResponse(status_code=exc.http_status, content=body.model_dump(exclude_none=True))
    body = PromoRedeemResponse(
        success=True,
        message=f"Code applied: {result.granted} free photo(s) added",
        free_photos=result.granted,
    )
    return JSONResponse(status_code=200, content=body.model_dump())


@app.get("/promo/balance")
async def promo_balance(identity: AuthIdentity = Depends(get_current_identity)) -> PromoBalanceResponse:
    with _scope() as session:
        free_photos = promo_engine.balance(LedgerRepository(session), identity.user_id)
    return PromoBalanceResponse(user_id=identity.user_id, free_photos=free_photos)


@app.get("/promo/usage")
async def promo_usage(identity: AuthIdentity = Depends(get_current_identity)) -> List[PromoUsageResponse]:
    with _scope() as session:
        rows = promo_engine.list_usage(LedgerRepository(session), identity.user_id)
        return [_usage_response(item) for item in rows]


@app.post("/promo/spend")
async def spend_free_photos(
    payload: PromoSpendRequest,
    identity: AuthIdentity = Depends(get_current_identity),
) -> JSONResponse:
    try:
        with _scope() as session:
            result = promo_engine.spend(LedgerRepository(session), identity.user_id, payload.count)
    except LedgerError as exc:
        with _scope() as session:
            remaining = promo_engine.balance(LedgerRepository(session), identity.user_id)
        body = PromoSpendResponse(success=False, message=exc.public_message, remaining=remaining)
        return JSONResponse(status_code=exc.http_status, content=body.model_dump())
    body = PromoSpendResponse(
        success=True,
        message=f"{result.spent} free photo(s) used",
        remaining=result.remaining,
    )
    return JSONResponse(status_code=200, content=body.model_dump())


@app.get("/admin/promo-codes")
async def admin_list_promo_codes(_: AuthIdentity = Depends(require_admin)) -> List[PromoCodeResponse]:
    with _scope() as session:
        return [_promo_code_response(item) for item in promo_engine.list_promo_codes(LedgerRepository(session))]


@app.post("/admin/promo-codes")
async def admin_create_promo_code(
    payload: PromoCodeCreateRequest,
    identity: AuthIdentity = Depends(require_admin),
) -> PromoCodeResponse:
    with _scope() as session:
        promo = promo_engine.create_promo_code(
            LedgerRepository(session),
            code=payload.code,
            free_photos=payload.free_photos,
            max_uses=payload.max_uses,
            expires_at=payload.expires_at,
            active=payload.active,
            created_by=identity.user_id,
        )
        return _promo_code_response(promo)


@app.patch("/admin/promo-codes/{promo_code_id}")
async def admin_update_promo_code(
    promo_code_id: str,
    payload: PromoCodeUpdateRequest,
    _: AuthIdentity = Depends(require_admin),
) -> PromoCodeResponse:
    with _scope() as session:
        promo = promo_engine.set_promo_code_active(LedgerRepository(session), promo_code_id, payload.active)
        return _promo_code_response(promo)


@app.post("/admin/billing/deferred/run")
async def admin_run_deferred_invoicing(identity: AuthIdentity = Depends(require_admin)) -> DeferredRunResponse:
    log_event(APP_LOGGER, logging.INFO, "billing.deferred.manual_run", user_id=identity.user_id)
    summary = run_deferred_invoicing(session_factory=SESSION_FACTORY, notifier=NOTIFIER)
    return DeferredRunResponse(
        success=summary.success,
        message=summary.message,
        processed_users=summary.processed_users,
        invoices_created=summary.invoices_created,
        failed_users=summary.failed_users,
        invoice_ids=summary.invoice_ids,
    )


@app.get("/admin/billing/deferred/preview")
async def admin_preview_deferred_invoicing(_: AuthIdentity = Depends(require_admin)) -> Dict[str, Any]:
    with _scope() as session:
        return preview_deferred_billing(LedgerRepository(session))


@app.get("/invoices/me")
async def my_invoices(
    include_archived: bool = Query(default=False),
    identity: AuthIdentity = Depends(get_current_identity),
) -> List[InvoiceResponse]:
    with _scope() as session:
        invoices = LedgerRepository(session).list_invoices(
            user_id=identity.user_id,
            include_archived=include_archived,
        )
        return [_invoice_response(item) for item in invoices]


@app.get("/admin/invoices")
async def admin_list_invoices(
    user_id: Optional[str] = Query(default=None, max_length=64),
    include_archived: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _: AuthIdentity = Depends(require_admin),
) -> List[InvoiceResponse]:
    with _scope() as session:
        invoices = LedgerRepository(session).list_invoices(
            user_id=user_id,
            include_archived=include_archived,
            limit=limit,
            offset=offset,
        )
        return [_invoice_response(item) for item in invoices]


@app.post("/admin/invoices/{invoice_id}/archive")
async def admin_archive_invoice(invoice_id: str, _: AuthIdentity = Depends(require_admin)) -> InvoiceResponse:
    with _scope() as session:
        return _invoice_response(LedgerRepository(session).set_invoice_archived(invoice_id, True))


@app.post("/admin/invoices/{invoice_id}/unarchive")
async def admin_unarchive_invoice(invoice_id: str, _: AuthIdentity = Depends(require_admin)) -> InvoiceResponse:
    with _scope() as session:
        return _invoice_response(LedgerRepository(session).set_invoice_archived(invoice_id, False))


@app.get("/admin/payments/audit-logs")
async def admin_webhook_audit_logs(
    charge_id: Optional[str] = Query(default=None, max_length=64),
    outcome: Optional[str] = Query(default=None, max_length=32),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _: AuthIdentity = Depends(require_admin),
) -> List[WebhookAuditLogResponse]:
    with _scope() as session:
        logs = LedgerRepository(session).list_webhook_audit_logs(
            limit=limit,
            offset=offset,
            charge_id=charge_id,
            outcome=outcome,
        )
        return [
            WebhookAuditLogResponse(
                id=item.id,
                occurred_at=item.occurred_at,
                provider=item.provider,
                event_type=item.event_type,
                external_event_id=item.external_event_id,
                charge_id=item.charge_id,
                signature_valid=bool(item.signature_valid),
                outcome=item.outcome,
                detail=item.detail,
            )
            for item in logs
        ]


@app.get("/error-codes")
async def error_codes() -> Dict[str, Dict[str, str]]:
    return ERROR_CODE_MAP
