from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from errors import NotFoundError

from .models import (
    AdminCharge,
    AppSetting,
    ChargeStatus,
    Invoice,
    InvoiceItem,
    InvoiceSource,
    InvoiceStatus,
    Order,
    OrderStatus,
    Profile,
    PromoCode,
    UserPromoUsage,
    WebhookAuditLog,
    generate_invoice_number,
    generate_order_number,
)


def _as_utc_aware(dt: datetime) -> datetime:
    """
    Normalize datetimes to UTC aware.

    SQLite often returns offset-naive datetimes even when SQLAlchemy models use
    DateTime(timezone=True). Treat naive values as UTC to avoid TypeError when
    comparing with timezone-aware "now".
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _now_or(now: Optional[datetime]) -> datetime:
    return _as_utc_aware(now) if now else datetime.now(timezone.utc)


def _clamp_limit(limit: int) -> int:
    return max(1, min(int(limit), 200))


@dataclass(frozen=True)
class InvoiceLine:
    description: str
    quantity: int
    unit_price: int
    order_id: Optional[str] = None

    @property
    def total_price(self) -> int:
        return int(self.quantity) * int(self.unit_price)


class LedgerRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _supports_select_for_update(self) -> bool:
        bind = self.session.get_bind()
        dialect_name = str(getattr(getattr(bind, "dialect", None), "name", "")).lower()
        return dialect_name not in {"sqlite"}

    # Profiles

    def get_profile(self, user_id: str) -> Optional[Profile]:
        key = str(user_id or "").strip()
        if not key:
            return None
        return self.session.get(Profile, key)

    def upsert_profile(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        contact_name: Optional[str] = None,
        is_vip: Optional[bool] = None,
        deferred_billing_enabled: Optional[bool] = None,
    ) -> Profile:
        key = str(user_id or "").strip()
        if not key:
            raise ValueError("user_id is required")
        profile = self.session.get(Profile, key)
        if profile is None:
            profile = Profile(user_id=key, is_vip=False, deferred_billing_enabled=False)
            self.session.add(profile)
        if email is not None:
            profile.email = str(email).strip() or None
        if contact_name is not None:
            profile.contact_name = str(contact_name).strip() or None
        if is_vip is not None:
            profile.is_vip = bool(is_vip)
        if deferred_billing_enabled is not None:
            profile.deferred_billing_enabled = bool(deferred_billing_enabled)
        self.session.flush()
        return profile

    def list_deferred_billing_user_ids(self) -> list[str]:
        query = (
            select(Profile.user_id)
            .where(Profile.deferred_billing_enabled.is_(True))
            .order_by(Profile.user_id.asc())
        )
        return [str(item) for item in self.session.scalars(query).all()]

    # Orders

    def create_order(
        self,
        *,
        user_id: str,
        total_amount: int,
        photo_count: int = 0,
        currency: str = "EUR",
        status: OrderStatus = OrderStatus.PENDING,
        order_number: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Order:
        if int(total_amount) < 0:
            raise ValueError("total_amount must be >= 0")
        current = _now_or(created_at)
        order = Order(
            order_number=str(order_number) if order_number else generate_order_number(current),
            user_id=str(user_id),
            total_amount=int(total_amount),
            photo_count=max(0, int(photo_count)),
            currency=str(currency or "EUR").upper(),
            status=status,
            created_at=current,
            updated_at=current,
        )
        self.session.add(order)
        self.session.flush()
        return order

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.session.get(Order, order_id)

    def set_order_status(self, order_id: str, status: OrderStatus, *, now: Optional[datetime] = None) -> Order:
        order = self.session.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"order not found: {order_id}")
        order.status = status
        order.updated_at = _now_or(now)
        self.session.flush()
        return order

    def list_uninvoiced_delivered_orders(self, user_id: str) -> list[Order]:
        query = (
            select(Order)
            .where(
                Order.user_id == str(user_id),
                Order.status == OrderStatus.DELIVERED,
                Order.invoiced_at.is_(None),
            )
            .order_by(Order.created_at.asc(), Order.id.asc())
        )
        if self._supports_select_for_update():
            query = query.with_for_update()
        return list(self.session.scalars(query).all())

    def mark_orders_invoiced(self, order_ids: Iterable[str], *, now: Optional[datetime] = None) -> int:
        ids = [str(item) for item in order_ids]
        if not ids:
            return 0
        current = _now_or(now)
        result = self.session.execute(
            update(Order)
            .where(
                Order.id.in_(ids),
                Order.invoiced_at.is_(None),
                Order.status == OrderStatus.DELIVERED,
            )
            .values(invoiced_at=current, updated_at=current)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    # Admin charges

    def create_charge(
        self,
        *,
        user_id: str,
        amount: int,
        description: str,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AdminCharge:
        current = _now_or(now)
        charge = AdminCharge(
            user_id=str(user_id),
            amount=int(amount),
            description=str(description),
            status=ChargeStatus.PENDING,
            created_by=str(created_by) if created_by else None,
            created_at=current,
            updated_at=current,
        )
        self.session.add(charge)
        self.session.flush()
        return charge

    def get_charge(self, charge_id: str, *, for_update: bool = False) -> Optional[AdminCharge]:
        key = str(charge_id or "").strip()
        if not key:
            return None
        query = select(AdminCharge).where(AdminCharge.id == key)
        if for_update and self._supports_select_for_update():
            query = query.with_for_update()
        return self.session.scalar(query)

    def list_charges(self, user_id: str, *, limit: int = 200) -> list[AdminCharge]:
        query = (
            select(AdminCharge)
            .where(AdminCharge.user_id == str(user_id))
            .order_by(AdminCharge.created_at.desc(), AdminCharge.id.desc())
            .limit(_clamp_limit(limit))
        )
        return list(self.session.scalars(query).all())

    def mark_charge_paid_if_pending(
        self,
        charge_id: str,
        *,
        invoice_id: str,
        paid_at: Optional[datetime] = None,
    ) -> bool:
        current = _now_or(paid_at)
        result = self.session.execute(
            update(AdminCharge)
            .where(AdminCharge.id == str(charge_id), AdminCharge.status == ChargeStatus.PENDING)
            .values(status=ChargeStatus.PAID, paid_at=current, invoice_id=str(invoice_id), updated_at=current)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    # Invoices

    def create_invoice(
        self,
        *,
        user_id: str,
        lines: list[InvoiceLine],
        source: InvoiceSource,
        status: InvoiceStatus,
        currency: str,
        due_days: int,
        now: Optional[datetime] = None,
    ) -> Invoice:
        if not lines:
            raise ValueError("an invoice needs at least one line")
        current = _now_or(now)
        invoice = Invoice(
            invoice_number=generate_invoice_number(current),
            user_id=str(user_id),
            total_amount=sum(line.total_price for line in lines),
            currency=str(currency or "EUR").upper(),
            status=status,
            source=source,
            issued_date=current,
            due_date=current + timedelta(days=max(0, int(due_days))),
            created_at=current,
            updated_at=current,
        )
        self.session.add(invoice)
        self.session.flush()
        for line in lines:
            self.session.add(
                InvoiceItem(
                    invoice_id=invoice.id,
                    order_id=line.order_id,
                    description=line.description,
                    quantity=int(line.quantity),
                    unit_price=int(line.unit_price),
                    total_price=line.total_price,
                    created_at=current,
                )
            )
        self.session.flush()
        return invoice

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        query = select(Invoice).options(selectinload(Invoice.items)).where(Invoice.id == str(invoice_id))
        return self.session.scalar(query)

    def list_invoices(
        self,
        *,
        user_id: Optional[str] = None,
        include_archived: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Invoice]:
        query: Select[Any] = (
            select(Invoice)
            .options(selectinload(Invoice.items))
            .order_by(Invoice.created_at.desc(), Invoice.id.desc())
        )
        if user_id:
            query = query.where(Invoice.user_id == str(user_id))
        if not include_archived:
            query = query.where(Invoice.archived_at.is_(None))
        query = query.limit(_clamp_limit(limit)).offset(max(0, int(offset)))
        return list(self.session.scalars(query).all())

    def set_invoice_archived(self, invoice_id: str, archived: bool, *, now: Optional[datetime] = None) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError(f"invoice not found: {invoice_id}")
        current = _now_or(now)
        if archived and invoice.archived_at is None:
            invoice.archived_at = current
            invoice.updated_at = current
        elif not archived and invoice.archived_at is not None:
            invoice.archived_at = None
            invoice.updated_at = current
        self.session.flush()
        return invoice

    # Promo codes

    def get_promo_code(self, promo_code_id: str) -> Optional[PromoCode]:
        return self.session.get(PromoCode, str(promo_code_id))

    def get_promo_code_by_code(self, code: str) -> Optional[PromoCode]:
        return self.session.scalar(select(PromoCode).where(PromoCode.code == str(code)))

    def create_promo_code(
        self,
        *,
        code: str,
        free_photos: int,
        max_uses: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        active: bool = True,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PromoCode:
        current = _now_or(now)
        promo = PromoCode(
            code=str(code),
            free_photos=int(free_photos),
            max_uses=int(max_uses) if max_uses is not None else None,
            current_uses=0,
            active=bool(active),
            expires_at=_as_utc_aware(expires_at) if expires_at else None,
            created_by=str(created_by) if created_by else None,
            created_at=current,
            updated_at=current,
        )
        self.session.add(promo)
        self.session.flush()
        return promo

    def list_promo_codes(self, *, include_inactive: bool = True) -> list[PromoCode]:
        query = select(PromoCode).order_by(PromoCode.created_at.desc(), PromoCode.code.asc())
        if not include_inactive:
            query = query.where(PromoCode.active.is_(True))
        return list(self.session.scalars(query).all())

    def set_promo_code_active(self, promo_code_id: str, active: bool, *, now: Optional[datetime] = None) -> PromoCode:
        promo = self.get_promo_code(promo_code_id)
        if promo is None:
            raise NotFoundError(f"promo code not found: {promo_code_id}")
        promo.active = bool(active)
        promo.updated_at = _now_or(now)
        self.session.flush()
        return promo

    def claim_promo_code_use(self, promo_code_id: str, *, now: Optional[datetime] = None) -> bool:
        """
        Increment current_uses only while the code is still redeemable.

        The availability checks live in the WHERE clause so two concurrent
        redemptions cannot both take the last remaining use.
        """
        current = _now_or(now)
        result = self.session.execute(
            update(PromoCode)
            .where(
                PromoCode.id == str(promo_code_id),
                PromoCode.active.is_(True),
                or_(PromoCode.expires_at.is_(None), PromoCode.expires_at > current),
                or_(PromoCode.max_uses.is_(None), PromoCode.current_uses < PromoCode.max_uses),
            )
            .values(current_uses=PromoCode.current_uses + 1, updated_at=current)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    def add_promo_usage(
        self,
        *,
        user_id: str,
        promo_code_id: str,
        granted: int,
        now: Optional[datetime] = None,
    ) -> UserPromoUsage:
        usage = UserPromoUsage(
            user_id=str(user_id),
            promo_code_id=str(promo_code_id),
            photos_used=int(granted),
            photos_remaining=int(granted),
            used_at=_now_or(now),
        )
        self.session.add(usage)
        self.session.flush()
        return usage

    def get_promo_usage(self, user_id: str, promo_code_id: str) -> Optional[UserPromoUsage]:
        return self.session.scalar(
            select(UserPromoUsage).where(
                UserPromoUsage.user_id == str(user_id),
                UserPromoUsage.promo_code_id == str(promo_code_id),
            )
        )

    def list_promo_usage(self, user_id: str, *, newest_first: bool = True, for_update: bool = False) -> list[UserPromoUsage]:
        query = select(UserPromoUsage).options(selectinload(UserPromoUsage.promo_code))
        query = query.where(UserPromoUsage.user_id == str(user_id))
        if newest_first:
            query = query.order_by(UserPromoUsage.used_at.desc(), UserPromoUsage.id.desc())
        else:
            query = query.order_by(UserPromoUsage.used_at.asc(), UserPromoUsage.id.asc())
        if for_update and self._supports_select_for_update():
            query = query.with_for_update(of=UserPromoUsage)
        # Compare-and-set updates bypass the identity map; always read current values.
        query = query.execution_options(populate_existing=True)
        return list(self.session.scalars(query).all())

    def sum_photos_remaining(self, user_id: str) -> int:
        total = self.session.scalar(
            select(func.coalesce(func.sum(UserPromoUsage.photos_remaining), 0)).where(
                UserPromoUsage.user_id == str(user_id)
            )
        )
        return max(0, int(total or 0))

    def set_photos_remaining_if_unchanged(self, usage_id: str, *, expected: int, remaining: int) -> bool:
        result = self.session.execute(
            update(UserPromoUsage)
            .where(UserPromoUsage.id == str(usage_id), UserPromoUsage.photos_remaining == int(expected))
            .values(photos_remaining=int(remaining))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    # Settings

    def get_setting(self, key: str) -> Optional[str]:
        row = self.session.get(AppSetting, str(key))
        if row is None:
            return None
        return row.value

    def set_setting(self, key: str, value: Any, *, now: Optional[datetime] = None) -> AppSetting:
        current = _now_or(now)
        row = self.session.get(AppSetting, str(key))
        if row is None:
            row = AppSetting(key=str(key), value=str(value), updated_at=current)
            self.session.add(row)
        else:
            row.value = str(value)
            row.updated_at = current
        self.session.flush()
        return row

    # Webhook audit log

    def record_webhook_audit(
        self,
        *,
        provider: str,
        event_type: str,
        raw_payload: str,
        outcome: str,
        signature: Optional[str] = None,
        signature_valid: bool = False,
        external_event_id: Optional[str] = None,
        charge_id: Optional[str] = None,
        detail: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> WebhookAuditLog:
        log = WebhookAuditLog(
            provider=str(provider or "internal")[:32],
            event_type=str(event_type or "")[:64] or "unknown",
            external_event_id=str(external_event_id)[:128] if external_event_id else None,
            charge_id=str(charge_id)[:64] if charge_id else None,
            signature=str(signature)[:512] if signature else None,
            signature_valid=bool(signature_valid),
            raw_payload=str(raw_payload or ""),
            outcome=str(outcome or "")[:32] or "unknown",
            detail=str(detail) if detail else None,
            occurred_at=_now_or(occurred_at),
        )
        self.session.add(log)
        self.session.flush()
        return log

    def list_webhook_audit_logs(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        charge_id: Optional[str] = None,
        outcome: Optional[str] = None,
    ) -> list[WebhookAuditLog]:
        query = select(WebhookAuditLog).order_by(WebhookAuditLog.occurred_at.desc(), WebhookAuditLog.id.desc())
        if charge_id:
            query = query.where(WebhookAuditLog.charge_id == str(charge_id))
        if outcome:
            query = query.where(WebhookAuditLog.outcome == outcome)
        query = query.limit(_clamp_limit(limit)).offset(max(0, int(offset)))
        return list(self.session.scalars(query).all())
