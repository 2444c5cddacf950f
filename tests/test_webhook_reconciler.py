"""Payment webhook reconciliation.

Duplicate and replayed deliveries must leave the ledger exactly as a single
delivery would: one paid charge, one paid invoice.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import func, select

from errors import (
    ExternalDependencyError,
    IntegrityViolation,
    InvalidSignature,
    MalformedEvent,
    MissingMetadata,
    NotFoundError,
)
from ledger import (
    InternalProvider,
    LedgerRepository,
    build_session_factory,
    create_charge,
    handle_event,
    http_status_for,
    init_ledger_db,
    session_scope,
    sign_webhook_payload,
)
from ledger.models import AdminCharge, ChargeStatus, Invoice, InvoiceItem, InvoiceSource, InvoiceStatus, WebhookAuditLog
from ledger.repository import _as_utc_aware

SECRET = "whsec_test"
PAID_AT = datetime(2026, 4, 10, 12, 0, tzinfo=timezone.utc)


def _make_db():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_ledger_db(engine)
    return engine, session_factory


def _event_body(
    charge_id: str | None,
    user_id: str | None,
    *,
    event_type: str = "payment.completed",
    event_id: str = "evt_001",
) -> bytes:
    metadata: dict[str, Any] = {}
    if charge_id is not None:
        metadata["charge_id"] = charge_id
    if user_id is not None:
        metadata["user_id"] = user_id
    payload = {"event_id": event_id, "event_type": event_type, "data": {"metadata": metadata}}
    return json.dumps(payload).encode("utf-8")


def _deliver(sf, body: bytes, *, signature: str | None = None, notifier=None) -> dict[str, Any]:
    return handle_event(
        body,
        sign_webhook_payload(body, SECRET) if signature is None else signature,
        provider=InternalProvider(webhook_secret=SECRET),
        session_factory=sf,
        notifier=notifier,
        now=PAID_AT,
    )


def _seed_charge(sf, *, user_id: str = "alice", amount: int = 2500) -> str:
    with session_scope(sf) as session:
        repo = LedgerRepository(session)
        repo.upsert_profile(user_id, email=f"{user_id}@example.test")
        return create_charge(repo, user_id=user_id, amount=amount, description="Extra retouch").id


def _count(session, model) -> int:
    return int(session.scalar(select(func.count()).select_from(model)) or 0)


def _outcomes(session) -> list[str]:
    return [row.outcome for row in LedgerRepository(session).list_webhook_audit_logs()]


def test_payment_completed_creates_paid_invoice() -> None:
    engine, sf = _make_db()
    charge_id = _seed_charge(sf)

    result = _deliver(sf, _event_body(charge_id, "alice"))
    assert result["status"] == "processed"
    assert result["amount"] == 2500

    with session_scope(sf) as session:
        charge = session.get(AdminCharge, charge_id)
        assert charge.status == ChargeStatus.PAID
        assert charge.invoice_id == result["invoice_id"]
        assert _as_utc_aware(charge.paid_at) == PAID_AT

        invoice = LedgerRepository(session).get_invoice(charge.invoice_id)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.source == InvoiceSource.CHARGE
        assert invoice.total_amount == 2500
        assert invoice.invoice_number.startswith("INV-202604-")
        assert _as_utc_aware(invoice.due_date) - _as_utc_aware(invoice.issued_date) == timedelta(days=30)
        assert [(item.description, item.quantity, item.unit_price, item.total_price) for item in invoice.items] == [
            ("Extra retouch", 1, 2500, 2500)
        ]
        assert _outcomes(session) == ["processed"]

    engine.dispose()


def test_duplicate_delivery_is_idempotent() -> None:
    engine, sf = _make_db()
    charge_id = _seed_charge(sf)
    notifications: list[tuple[str, dict[str, Any]]] = []

    def _notifier(event: str, payload: dict[str, Any]) -> None:
        notifications.append((event, payload))

    first = _deliver(sf, _event_body(charge_id, "alice", event_id="evt_a"), notifier=_notifier)
    second = _deliver(sf, _event_body(charge_id, "alice", event_id="evt_b"), notifier=_notifier)

    assert first["status"] == "processed"
    assert second == {"status": "already_paid", "charge_id": charge_id, "invoice_id": first["invoice_id"]}
    assert [event for event, _payload in notifications] == ["charge_paid"]
    assert notifications[0][1]["email"] == "alice@example.test"

    with session_scope(sf) as session:
        assert _count(session, Invoice) == 1
        assert _count(session, InvoiceItem) == 1
        assert sorted(_outcomes(session)) == ["already_paid", "processed"]

    engine.dispose()


def test_failing_notifier_does_not_undo_a_committed_payment() -> None:
    engine, sf = _make_db()
    charge_id = _seed_charge(sf)

    def _notifier(_event: str, _payload: dict[str, Any]) -> None:
        raise TypeError("Object of type datetime is not JSON serializable")

    result = _deliver(sf, _event_body(charge_id, "alice"), notifier=_notifier)
    assert result["status"] == "processed"

    with session_scope(sf) as session:
        assert session.get(AdminCharge, charge_id).status == ChargeStatus.PAID
        assert _count(session, Invoice) == 1
        assert _outcomes(session) == ["processed"]

    engine.dispose()


def test_invalid_signature_is_rejected_and_audited() -> None:
    engine, sf = _make_db()
    charge_id = _seed_charge(sf)

    with pytest.raises(InvalidSignature) as excinfo:
        _deliver(sf, _event_body(charge_id, "alice"), signature="sha256=deadbeef")
    assert http_status_for(excinfo.value) == 401

    with session_scope(sf) as session:
        assert session.get(AdminCharge, charge_id).status == ChargeStatus.PENDING
        assert _count(session, Invoice) == 0
        logs = LedgerRepository(session).list_webhook_audit_logs()
        assert [(row.outcome, row.signature_valid) for row in logs] == [("rejected_signature", False)]

    engine.dispose()


def test_non_ascii_signature_header_is_rejected_and_audited() -> None:
    engine, sf = _make_db()
    charge_id = _seed_charge(sf)

    with pytest.raises(InvalidSignature) as excinfo:
        _deliver(sf, _event_body(charge_id, "alice"), signature="sha256=éé")
    assert http_status_for(excinfo.value) == 401

    with session_scope(sf) as session:
        assert session.get(AdminCharge, charge_id).status == ChargeStatus.PENDING
        assert _outcomes(session) == ["rejected_signature"]

    engine.dispose()


def test_signed_but_unparseable_body_is_malformed() -> None:
    engine, sf = _make_db()
    with pytest.raises(MalformedEvent) as excinfo:
        _deliver(sf, b"not-json")
    assert http_status_for(excinfo.value) == 400
    with session_scope(sf) as session:
        assert _outcomes(session) == ["rejected_payload"]
    engine.dispose()


def test_other_event_types_are_ignored() -> None:
    engine, sf = _make_db()
    charge_id = _seed_charge(sf)

    result = _deliver(sf, _event_body(charge_id, "alice", event_type="payment.pending"))
    assert result["status"] == "ignored"

    with session_scope(sf) as session:
        assert session.get(AdminCharge, charge_id).status == ChargeStatus.PENDING
        assert _count(session, Invoice) == 0
        assert _outcomes(session) == ["ignored"]

    engine.dispose()


@pytest.mark.parametrize(
    "charge_id, user_id, expected",
    [
        (None, "alice", MissingMetadata),
        ("seeded", None, MissingMetadata),
        ("no-such-charge", "alice", NotFoundError),
        ("seeded", "mallory", IntegrityViolation),
    ],
)
def test_rejected_events_leave_charge_pending(charge_id, user_id, expected) -> None:
    engine, sf = _make_db()
    seeded = _seed_charge(sf)
    target = seeded if charge_id == "seeded" else charge_id

    with pytest.raises(expected) as excinfo:
        _deliver(sf, _event_body(target, user_id))
    assert http_status_for(excinfo.value) == 400

    with session_scope(sf) as session:
        charge = session.get(AdminCharge, seeded)
        assert charge.status == ChargeStatus.PENDING
        assert charge.invoice_id is None
        assert _count(session, Invoice) == 0
        assert _outcomes(session) == ["rejected_validation"]

    engine.dispose()


def test_store_failure_maps_to_dependency_error(monkeypatch) -> None:
    from sqlalchemy.exc import OperationalError

    engine, sf = _make_db()
    charge_id = _seed_charge(sf)

    def _boom(self, *_args, **_kwargs):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(LedgerRepository, "get_charge", _boom)
    with pytest.raises(ExternalDependencyError) as excinfo:
        _deliver(sf, _event_body(charge_id, "alice"))
    assert http_status_for(excinfo.value) == 503

    with session_scope(sf) as session:
        assert _outcomes(session) == ["error"]

    engine.dispose()
