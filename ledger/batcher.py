from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from errors import IntegrityViolation, LedgerError
from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .models import InvoiceSource, InvoiceStatus, Order
from .notify import EVENT_INVOICE_ISSUED, Notifier, send_notification
from .repository import InvoiceLine, LedgerRepository, _as_utc_aware
from .settings import BillingSettings, resolve_billing_settings

logger = get_logger("ledger.batcher")

LINE_DESCRIPTION = "Order {order_number} - photo retouching"


@dataclass
class BatchSummary:
    success: bool
    processed_users: int = 0
    invoices_created: int = 0
    failed_users: list[str] = field(default_factory=list)
    invoice_ids: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        text = f"{self.invoices_created} invoice(s) created for {self.processed_users} user(s)"
        if self.failed_users:
            text += f", {len(self.failed_users)} user(s) failed"
        return text


def build_invoice_line(order: Order, settings: BillingSettings) -> InvoiceLine:
    """
    One invoice line per order.

    Orders booked at zero (VIP accounts billed later) are priced per photo at
    the current rate; every other order is billed at its own total.
    """
    description = LINE_DESCRIPTION.format(order_number=order.order_number)
    if int(order.total_amount or 0) == 0 and int(order.photo_count or 0) > 0:
        return InvoiceLine(
            description=description,
            quantity=int(order.photo_count),
            unit_price=int(settings.price_per_photo_cents),
            order_id=order.id,
        )
    return InvoiceLine(description=description, quantity=1, unit_price=int(order.total_amount or 0), order_id=order.id)


def invoice_user_orders(
    repo: LedgerRepository,
    user_id: str,
    *,
    settings: BillingSettings,
    now: datetime,
) -> Optional[dict[str, Any]]:
    orders = repo.list_uninvoiced_delivered_orders(user_id)
    if not orders:
        return None
    lines = [build_invoice_line(order, settings) for order in orders]
    with repo.session.begin_nested():
        invoice = repo.create_invoice(
            user_id=user_id,
            lines=lines,
            source=InvoiceSource.ORDERS,
            status=InvoiceStatus.PENDING,
            currency=settings.currency,
            due_days=settings.due_days,
            now=now,
        )
        marked = repo.mark_orders_invoiced([order.id for order in orders], now=now)
        if marked != len(orders):
            raise IntegrityViolation(
                f"expected to mark {len(orders)} order(s) invoiced for user={user_id}, matched {marked}"
            )
    return {
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "total_amount": int(invoice.total_amount),
        "order_count": len(orders),
        "due_date": invoice.due_date,
    }


def _record_user_failure(summary: BatchSummary, user_id: str, exc: Exception, *, exc_info: bool = False) -> None:
    summary.failed_users.append(user_id)
    log_event(
        logger,
        logging.ERROR,
        "batcher.user.failed",
        user_id=user_id,
        error_type=type(exc).__name__,
        error=str(exc),
        exc_info=exc_info,
    )


def run_deferred_invoicing(
    *,
    session_factory: SessionFactory | None = None,
    settings: Optional[BillingSettings] = None,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
) -> BatchSummary:
    """
    Invoice every delivered, not yet invoiced order of each deferred-billing user.

    Each user is handled in its own transaction: a failure is logged, counted
    and the run moves on. Re-running after a partial failure only picks up the
    users whose orders are still uninvoiced.
    """
    current = _as_utc_aware(now) if now else datetime.now(timezone.utc)
    with session_scope(session_factory) as session:
        repo = LedgerRepository(session)
        resolved = resolve_billing_settings(repo, settings)
        user_ids = repo.list_deferred_billing_user_ids()

    summary = BatchSummary(success=True)
    log_event(logger, logging.INFO, "batcher.run.started", users=len(user_ids))
    for user_id in user_ids:
        try:
            with session_scope(session_factory) as session:
                repo = LedgerRepository(session)
                created = invoice_user_orders(repo, user_id, settings=resolved, now=current)
                profile = repo.get_profile(user_id) if created else None
                email = profile.email if profile else None
        except (LedgerError, SQLAlchemyError) as exc:
            _record_user_failure(summary, user_id, exc)
            continue
        except Exception as exc:
            # Anything else is still one user's problem; the run moves on.
            _record_user_failure(summary, user_id, exc, exc_info=True)
            continue
        if created is None:
            continue
        summary.processed_users += 1
        summary.invoices_created += 1
        summary.invoice_ids.append(created["invoice_id"])
        log_event(
            logger,
            logging.INFO,
            "batcher.user.invoiced",
            user_id=user_id,
            invoice_id=created["invoice_id"],
            total_amount=created["total_amount"],
            order_count=created["order_count"],
        )
        send_notification(notifier, EVENT_INVOICE_ISSUED, {"user_id": user_id, "email": email, **created})

    log_event(
        logger,
        logging.INFO,
        "batcher.run.finished",
        processed_users=summary.processed_users,
        invoices_created=summary.invoices_created,
        failed_users=len(summary.failed_users),
    )
    return summary


def preview_deferred_billing(repo: LedgerRepository, settings: Optional[BillingSettings] = None) -> dict[str, Any]:
    """Read-only view of what the next run would bill."""
    resolved = resolve_billing_settings(repo, settings)
    users: list[dict[str, Any]] = []
    for user_id in repo.list_deferred_billing_user_ids():
        orders = repo.list_uninvoiced_delivered_orders(user_id)
        if not orders:
            continue
        lines = [build_invoice_line(order, resolved) for order in orders]
        profile = repo.get_profile(user_id)
        users.append(
            {
                "user_id": user_id,
                "email": profile.email if profile else None,
                "contact_name": profile.contact_name if profile else None,
                "order_count": len(orders),
                "photo_count": sum(int(order.photo_count or 0) for order in orders),
                "amount": sum(line.total_price for line in lines),
            }
        )
    return {
        "currency": resolved.currency,
        "price_per_photo_cents": resolved.price_per_photo_cents,
        "users": users,
        "total_orders": sum(item["order_count"] for item in users),
        "total_photos": sum(item["photo_count"] for item in users),
        "total_amount": sum(item["amount"] for item in users),
    }
