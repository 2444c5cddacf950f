from .batcher import (
    BatchSummary,
    build_invoice_line,
    preview_deferred_billing,
    run_deferred_invoicing,
)
from .charges import (
    create_charge,
    initiate_charge_payment,
    list_charges_for_user,
    partition_charges,
)
from .db import (
    ENGINE,
    SessionLocal,
    build_session_factory,
    init_ledger_db,
    ping_database,
    session_scope,
)
from .models import (
    AdminCharge,
    AppSetting,
    Base,
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
)
from .notify import HttpNotifier, default_notifier
from .provider import (
    EVENT_PAYMENT_COMPLETED,
    BasePaymentProvider,
    CheckoutSession,
    InternalProvider,
    PaymentEvent,
    StripeProvider,
    get_payment_provider,
    sign_webhook_payload,
    verify_webhook_signature,
)
from .repository import InvoiceLine, LedgerRepository
from .settings import BillingSettings, resolve_billing_settings
from .webhook import handle_event, http_status_for, process_payment_event

__all__ = [
    "Base",
    "ENGINE",
    "SessionLocal",
    "Profile",
    "Order",
    "AdminCharge",
    "Invoice",
    "InvoiceItem",
    "PromoCode",
    "UserPromoUsage",
    "AppSetting",
    "WebhookAuditLog",
    "OrderStatus",
    "ChargeStatus",
    "InvoiceStatus",
    "InvoiceSource",
    "InvoiceLine",
    "LedgerRepository",
    "BillingSettings",
    "resolve_billing_settings",
    "BasePaymentProvider",
    "CheckoutSession",
    "PaymentEvent",
    "InternalProvider",
    "StripeProvider",
    "EVENT_PAYMENT_COMPLETED",
    "get_payment_provider",
    "sign_webhook_payload",
    "verify_webhook_signature",
    "create_charge",
    "list_charges_for_user",
    "partition_charges",
    "initiate_charge_payment",
    "handle_event",
    "http_status_for",
    "process_payment_event",
    "BatchSummary",
    "build_invoice_line",
    "run_deferred_invoicing",
    "preview_deferred_billing",
    "HttpNotifier",
    "default_notifier",
    "build_session_factory",
    "init_ledger_db",
    "ping_database",
    "session_scope",
]
