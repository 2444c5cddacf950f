from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from errors import (
    ExternalDependencyError,
    IntegrityViolation,
    InvalidSignature,
    LedgerError,
    MalformedEvent,
    MissingMetadata,
    NotFoundError,
)
from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .models import ChargeStatus, InvoiceSource, InvoiceStatus
from .notify import EVENT_CHARGE_PAID, Notifier, send_notification
from .provider import BasePaymentProvider, PaymentEvent
from .repository import InvoiceLine, LedgerRepository, _as_utc_aware
from .settings import BillingSettings, resolve_billing_settings

logger = get_logger("ledger.webhook")

OUTCOME_PROCESSED = "processed"
OUTCOME_IGNORED = "ignored"
OUTCOME_ALREADY_PAID = "already_paid"
OUTCOME_REJECTED_SIGNATURE = "rejected_signature"
OUTCOME_REJECTED_PAYLOAD = "rejected_payload"
OUTCOME_REJECTED_VALIDATION = "rejected_validation"
OUTCOME_ERROR = "error"


class _ChargeSettledConcurrently(RuntimeError):
    pass


def http_status_for(exc: LedgerError) -> int:
    """Status answered to the provider; only 401 and 503 differ from a plain 400."""
    if isinstance(exc, InvalidSignature):
        return 401
    if isinstance(exc, ExternalDependencyError):
        return 503
    return 400


def _outcome_for(exc: Exception) -> str:
    if isinstance(exc, InvalidSignature):
        return OUTCOME_REJECTED_SIGNATURE
    if isinstance(exc, MalformedEvent):
        return OUTCOME_REJECTED_PAYLOAD
    if isinstance(exc, ExternalDependencyError) or not isinstance(exc, LedgerError):
        return OUTCOME_ERROR
    return OUTCOME_REJECTED_VALIDATION


def process_payment_event(
    repo: LedgerRepository,
    event: PaymentEvent,
    *,
    settings: BillingSettings,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """
    Turn a verified "payment completed" event into a paid invoice.

    Integrity properties:
    - A charge becomes paid at most once; replays answer "already_paid".
    - The charge owner in the database must match the metadata user.
    - Invoice, item and charge transition commit together or not at all.
    """

    if not event.is_payment_completed:
        log_event(logger, logging.INFO, "webhook.ignored", event_type=event.event_type, event_id=event.event_id)
        return {"status": OUTCOME_IGNORED, "event_type": event.event_type}

    charge_id = event.charge_id
    metadata_user_id = event.user_id
    if not charge_id or not metadata_user_id:
        raise MissingMetadata("charge_id and user_id are required in event metadata")

    charge = repo.get_charge(charge_id, for_update=True)
    if charge is None:
        raise NotFoundError(f"charge not found: {charge_id}")
    if charge.status == ChargeStatus.PAID:
        log_event(logger, logging.INFO, "webhook.already_paid", charge_id=charge_id, event_id=event.event_id)
        return {"status": OUTCOME_ALREADY_PAID, "charge_id": charge_id, "invoice_id": charge.invoice_id}
    if charge.user_id != metadata_user_id:
        raise IntegrityViolation(f"metadata user_id does not own charge {charge_id}")

    current = _as_utc_aware(now) if now else datetime.now(timezone.utc)
    try:
        with repo.session.begin_nested():
            invoice = repo.create_invoice(
                user_id=charge.user_id,
                lines=[InvoiceLine(description=charge.description, quantity=1, unit_price=int(charge.amount))],
                source=InvoiceSource.CHARGE,
                status=InvoiceStatus.PAID,
                currency=settings.currency,
                due_days=settings.due_days,
                now=current,
            )
            if not repo.mark_charge_paid_if_pending(charge_id, invoice_id=invoice.id, paid_at=current):
                raise _ChargeSettledConcurrently(charge_id)
    except _ChargeSettledConcurrently:
        repo.session.refresh(charge)
        log_event(logger, logging.INFO, "webhook.already_paid", charge_id=charge_id, event_id=event.event_id, race=True)
        return {"status": OUTCOME_ALREADY_PAID, "charge_id": charge_id, "invoice_id": charge.invoice_id}

    log_event(
        logger,
        logging.INFO,
        "webhook.processed",
        charge_id=charge_id,
        invoice_id=invoice.id,
        amount=int(charge.amount),
        event_id=event.event_id,
    )
    return {
        "status": OUTCOME_PROCESSED,
        "charge_id": charge_id,
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "amount": int(charge.amount),
        "user_id": charge.user_id,
    }


def _record_audit(
    session_factory: SessionFactory | None,
    *,
    provider: str,
    raw_text: str,
    signature: Optional[str],
    signature_valid: bool,
    outcome: str,
    event: Optional[PaymentEvent] = None,
    detail: Optional[str] = None,
) -> None:
    try:
        with session_scope(session_factory) as session:
            LedgerRepository(session).record_webhook_audit(
                provider=provider,
                event_type=event.event_type if event else "payment.webhook",
                external_event_id=event.event_id if event else None,
                charge_id=(event.charge_id or None) if event else None,
                raw_payload=raw_text,
                signature=signature,
                signature_valid=signature_valid,
                outcome=outcome,
                detail=detail,
            )
    except SQLAlchemyError as exc:
        log_event(logger, logging.ERROR, "webhook.audit_failed", outcome=outcome, error=str(exc))


def handle_event(
    raw_body: bytes,
    signature: Optional[str],
    *,
    provider: BasePaymentProvider,
    session_factory: SessionFactory | None = None,
    settings: Optional[BillingSettings] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    raw_text = raw_body.decode("utf-8", errors="replace")
    try:
        event = provider.verify_and_parse(raw_body, signature)
    except (InvalidSignature, MalformedEvent) as exc:
        log_event(logger, logging.WARNING, "webhook.rejected", provider=provider.name, code=exc.code, detail=exc.detail)
        _record_audit(
            session_factory,
            provider=provider.name,
            raw_text=raw_text,
            signature=signature,
            signature_valid=not isinstance(exc, InvalidSignature),
            outcome=_outcome_for(exc),
            detail=exc.detail,
        )
        raise

    log_event(
        logger,
        logging.INFO,
        "webhook.received",
        provider=provider.name,
        event_type=event.event_type,
        event_id=event.event_id,
        charge_id=event.charge_id or None,
    )
    try:
        with session_scope(session_factory) as session:
            repo = LedgerRepository(session)
            resolved = resolve_billing_settings(repo, settings)
            result = process_payment_event(repo, event, settings=resolved, now=now)
            notify_email = None
            if result["status"] == OUTCOME_PROCESSED:
                profile = repo.get_profile(result["user_id"])
                notify_email = profile.email if profile else None
            repo.record_webhook_audit(
                provider=provider.name,
                event_type=event.event_type,
                external_event_id=event.event_id,
                charge_id=event.charge_id or None,
                raw_payload=raw_text,
                signature=signature,
                signature_valid=True,
                outcome=str(result["status"]),
            )
    except LedgerError as exc:
        log_event(
            logger,
            logging.WARNING,
            "webhook.rejected",
            provider=provider.name,
            code=exc.code,
            detail=exc.detail,
            charge_id=event.charge_id or None,
        )
        _record_audit(
            session_factory,
            provider=provider.name,
            raw_text=raw_text,
            signature=signature,
            signature_valid=True,
            outcome=_outcome_for(exc),
            event=event,
            detail=exc.detail,
        )
        raise
    except SQLAlchemyError as exc:
        log_event(logger, logging.ERROR, "webhook.store_error", charge_id=event.charge_id or None, error=str(exc))
        _record_audit(
            session_factory,
            provider=provider.name,
            raw_text=raw_text,
            signature=signature,
            signature_valid=True,
            outcome=OUTCOME_ERROR,
            event=event,
            detail=str(exc),
        )
        raise ExternalDependencyError("ledger store unavailable") from exc

    if result["status"] == OUTCOME_PROCESSED:
        send_notification(
            notifier,
            EVENT_CHARGE_PAID,
            {
                "user_id": result["user_id"],
                "email": notify_email,
                "charge_id": result["charge_id"],
                "invoice_id": result["invoice_id"],
                "invoice_number": result["invoice_number"],
                "amount": result["amount"],
            },
        )
    return result
