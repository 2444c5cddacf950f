from __future__ import annotations

import enum
import secrets
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def generate_order_number(now: Optional[datetime] = None) -> str:
    current = now or utc_now()
    return f"ORD-{current:%Y%m%d}-{secrets.token_hex(3).upper()}"


def generate_invoice_number(now: Optional[datetime] = None) -> str:
    current = now or utc_now()
    return f"INV-{current:%Y%m}-{secrets.token_hex(4).upper()}"


class Base(DeclarativeBase):
    pass


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    CANCELED = "canceled"


class ChargeStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


class InvoiceStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


class InvoiceSource(str, enum.Enum):
    ORDERS = "orders"
    CHARGE = "charge"


class Profile(Base):
    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    contact_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_vip: Mapped[bool] = mapped_column(Boolean, default=False)
    deferred_billing_enabled: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, index=True, default=generate_order_number)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    total_amount: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(8), default="EUR")
    photo_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[OrderStatus] = mapped_column(Enum(OrderStatus, native_enum=False), default=OrderStatus.PENDING)
    invoiced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (CheckConstraint("total_amount >= 0", name="ck_orders_total_amount_non_negative"),)


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    invoice_number: Mapped[str] = mapped_column(String(32), unique=True, index=True, default=generate_invoice_number)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    total_amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(8), default="EUR")
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus, native_enum=False), default=InvoiceStatus.PENDING
    )
    source: Mapped[InvoiceSource] = mapped_column(Enum(InvoiceSource, native_enum=False))
    issued_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    items: Mapped[list["InvoiceItem"]] = relationship(
        back_populates="invoice", order_by="InvoiceItem.created_at", cascade="all, delete-orphan"
    )


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    invoice_id: Mapped[str] = mapped_column(ForeignKey("invoices.id"), index=True)
    # An order can appear on at most one invoice line, ever.
    order_id: Mapped[Optional[str]] = mapped_column(ForeignKey("orders.id"), nullable=True, unique=True)
    description: Mapped[str] = mapped_column(Text)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    unit_price: Mapped[int] = mapped_column(Integer)
    total_price: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    invoice: Mapped[Invoice] = relationship(back_populates="items")


class AdminCharge(Base):
    __tablename__ = "admin_charges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    description: Mapped[str] = mapped_column(Text)
    status: Mapped[ChargeStatus] = mapped_column(Enum(ChargeStatus, native_enum=False), default=ChargeStatus.PENDING)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    invoice_id: Mapped[Optional[str]] = mapped_column(ForeignKey("invoices.id"), nullable=True, unique=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    invoice: Mapped[Optional[Invoice]] = relationship()

    __table_args__ = (CheckConstraint("amount > 0", name="ck_admin_charges_amount_positive"),)


class PromoCode(Base):
    __tablename__ = "promo_codes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    code: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    free_photos: Mapped[int] = mapped_column(Integer)
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_uses: Mapped[int] = mapped_column(Integer, default=0)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    usages: Mapped[list["UserPromoUsage"]] = relationship(back_populates="promo_code")

    __table_args__ = (CheckConstraint("free_photos > 0", name="ck_promo_codes_free_photos_positive"),)


class UserPromoUsage(Base):
    __tablename__ = "user_promo_usage"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    promo_code_id: Mapped[str] = mapped_column(ForeignKey("promo_codes.id"), index=True)
    photos_used: Mapped[int] = mapped_column(Integer)
    photos_remaining: Mapped[int] = mapped_column(Integer)
    used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)

    promo_code: Mapped[PromoCode] = relationship(back_populates="usages")

    __table_args__ = (
        UniqueConstraint("user_id", "promo_code_id", name="uq_user_promo_usage_user_code"),
        CheckConstraint(
            "photos_remaining >= 0 AND photos_remaining <= photos_used",
            name="ck_user_promo_usage_remaining_bounds",
        ),
    )


class AppSetting(Base):
    __tablename__ = "app_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class WebhookAuditLog(Base):
    """
    Append-only record of every payment webhook attempt.

    Rejected deliveries are kept too, with the raw payload, for dispute resolution.
    """

    __tablename__ = "webhook_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    provider: Mapped[str] = mapped_column(String(32), default="internal", index=True)
    event_type: Mapped[str] = mapped_column(String(64), index=True)
    external_event_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    charge_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    signature: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    signature_valid: Mapped[bool] = mapped_column(Boolean, default=False)
    raw_payload: Mapped[str] = mapped_column(Text)
    outcome: Mapped[str] = mapped_column(String(32), index=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


Index("ix_orders_user_status_invoiced", Order.user_id, Order.status, Order.invoiced_at)
Index("ix_admin_charges_user_status", AdminCharge.user_id, AdminCharge.status)
Index("ix_invoices_user_archived", Invoice.user_id, Invoice.archived_at)
Index("ix_user_promo_usage_user_used_at", UserPromoUsage.user_id, UserPromoUsage.used_at)
