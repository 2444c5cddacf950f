"""Initialize the billing ledger schema.

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind: sa.engine.Connection, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return table_name in set(inspector.get_table_names())


def _has_index(bind: sa.engine.Connection, table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(bind)
    if table_name not in set(inspector.get_table_names()):
        return False
    return any(item.get("name") == index_name for item in inspector.get_indexes(table_name))


def _create_index(bind: sa.engine.Connection, table_name: str, columns: list[str], *, unique: bool = False, name: str | None = None) -> None:
    index_name = name or op.f(f"ix_{table_name}_{columns[0]}")
    if not _has_index(bind, table_name, index_name):
        op.create_index(index_name, table_name, columns, unique=unique)


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "profiles"):
        op.create_table(
            "profiles",
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("contact_name", sa.String(length=255), nullable=True),
            sa.Column("is_vip", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("deferred_billing_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("user_id"),
        )
    _create_index(bind, "profiles", ["deferred_billing_enabled"])

    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("order_number", sa.String(length=32), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("total_amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default=sa.text("'EUR'")),
            sa.Column("photo_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("status", sa.String(length=16), nullable=False),
            sa.Column("invoiced_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("total_amount >= 0", name="ck_orders_total_amount_non_negative"),
        )
    _create_index(bind, "orders", ["order_number"], unique=True)
    _create_index(bind, "orders", ["user_id"])
    _create_index(
        bind,
        "orders",
        ["user_id", "status", "invoiced_at"],
        name="ix_orders_user_status_invoiced",
    )

    if not _table_exists(bind, "invoices"):
        op.create_table(
            "invoices",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("invoice_number", sa.String(length=32), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("total_amount", sa.Integer(), nullable=False),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default=sa.text("'EUR'")),
            sa.Column("status", sa.String(length=16), nullable=False),
            sa.Column("source", sa.String(length=16), nullable=False),
            sa.Column("issued_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "invoices", ["invoice_number"], unique=True)
    _create_index(bind, "invoices", ["user_id"])
    _create_index(bind, "invoices", ["archived_at"])
    _create_index(bind, "invoices", ["created_at"])
    _create_index(bind, "invoices", ["user_id", "archived_at"], name="ix_invoices_user_archived")

    if not _table_exists(bind, "invoice_items"):
        op.create_table(
            "invoice_items",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("invoice_id", sa.String(length=36), nullable=False),
            sa.Column("order_id", sa.String(length=36), nullable=True),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("unit_price", sa.Integer(), nullable=False),
            sa.Column("total_price", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("order_id"),
        )
    _create_index(bind, "invoice_items", ["invoice_id"])

    if not _table_exists(bind, "admin_charges"):
        op.create_table(
            "admin_charges",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False),
            sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("invoice_id", sa.String(length=36), nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("invoice_id"),
            sa.CheckConstraint("amount > 0", name="ck_admin_charges_amount_positive"),
        )
    _create_index(bind, "admin_charges", ["user_id"])
    _create_index(bind, "admin_charges", ["created_at"])
    _create_index(bind, "admin_charges", ["user_id", "status"], name="ix_admin_charges_user_status")

    if not _table_exists(bind, "promo_codes"):
        op.create_table(
            "promo_codes",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("code", sa.String(length=64), nullable=False),
            sa.Column("free_photos", sa.Integer(), nullable=False),
            sa.Column("max_uses", sa.Integer(), nullable=True),
            sa.Column("current_uses", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("free_photos > 0", name="ck_promo_codes_free_photos_positive"),
        )
    _create_index(bind, "promo_codes", ["code"], unique=True)
    _create_index(bind, "promo_codes", ["created_at"])

    if not _table_exists(bind, "user_promo_usage"):
        op.create_table(
            "user_promo_usage",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("promo_code_id", sa.String(length=36), nullable=False),
            sa.Column("photos_used", sa.Integer(), nullable=False),
            sa.Column("photos_remaining", sa.Integer(), nullable=False),
            sa.Column("used_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["promo_code_id"], ["promo_codes.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "promo_code_id", name="uq_user_promo_usage_user_code"),
            sa.CheckConstraint(
                "photos_remaining >= 0 AND photos_remaining <= photos_used",
                name="ck_user_promo_usage_remaining_bounds",
            ),
        )
    _create_index(bind, "user_promo_usage", ["user_id"])
    _create_index(bind, "user_promo_usage", ["promo_code_id"])
    _create_index(bind, "user_promo_usage", ["used_at"])
    _create_index(bind, "user_promo_usage", ["user_id", "used_at"], name="ix_user_promo_usage_user_used_at")

    if not _table_exists(bind, "app_settings"):
        op.create_table(
            "app_settings",
            sa.Column("key", sa.String(length=64), nullable=False),
            sa.Column("value", sa.Text(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("key"),
        )

    if not _table_exists(bind, "webhook_audit_logs"):
        op.create_table(
            "webhook_audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default=sa.text("'internal'")),
            sa.Column("event_type", sa.String(length=64), nullable=False),
            sa.Column("external_event_id", sa.String(length=128), nullable=True),
            sa.Column("charge_id", sa.String(length=64), nullable=True),
            sa.Column("signature", sa.String(length=512), nullable=True),
            sa.Column("signature_valid", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("raw_payload", sa.Text(), nullable=False),
            sa.Column("outcome", sa.String(length=32), nullable=False),
            sa.Column("detail", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    for column in ("occurred_at", "provider", "event_type", "external_event_id", "charge_id", "outcome"):
        _create_index(bind, "webhook_audit_logs", [column])


def downgrade() -> None:
    for table_name in (
        "webhook_audit_logs",
        "app_settings",
        "user_promo_usage",
        "promo_codes",
        "admin_charges",
        "invoice_items",
        "invoices",
        "orders",
        "profiles",
    ):
        op.drop_table(table_name)
