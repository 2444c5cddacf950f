from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

import main
from auth import AuthIdentity, issue_access_token
from ledger import (
    InternalProvider,
    LedgerRepository,
    OrderStatus,
    build_session_factory,
    init_ledger_db,
    session_scope,
    sign_webhook_payload,
)

TOKEN_SECRET = "test-secret"
WEBHOOK_SECRET = "whsec_api"


def _auth_header(user_id: str, role: str = "user") -> dict[str, str]:
    token = issue_access_token(AuthIdentity(user_id=user_id, role=role), TOKEN_SECRET, ttl_seconds=3600)
    return {"Authorization": f"Bearer {token}"}


ADMIN = _auth_header("ops-admin", "admin")
ALICE = _auth_header("alice")
BOB = _auth_header("bob")


@pytest.fixture()
def api(monkeypatch, tmp_path: Path):
    db_path = tmp_path / "ledger_api.db"
    engine, session_factory = build_session_factory(f"sqlite+pysqlite:///{db_path}")
    notifications: list[tuple[str, dict[str, Any]]] = []

    monkeypatch.setattr(main, "AUTH_ENABLED", True)
    monkeypatch.setattr(main, "AUTH_TOKEN_SECRET", TOKEN_SECRET)
    monkeypatch.setattr(main, "STARTUP_BOOTSTRAP_ENABLED", True)
    monkeypatch.setattr(main, "SESSION_FACTORY", session_factory)
    monkeypatch.setattr(main, "init_ledger_db", lambda: init_ledger_db(engine))
    monkeypatch.setattr(main, "get_payment_provider", lambda _name=None: InternalProvider(webhook_secret=WEBHOOK_SECRET))
    monkeypatch.setattr(main, "NOTIFIER", lambda event, payload: notifications.append((event, payload)))

    with TestClient(main.app) as client:
        client.session_factory = session_factory  # type: ignore[attr-defined]
        client.notifications = notifications  # type: ignore[attr-defined]
        yield client
    engine.dispose()


def _post_event(client: TestClient, charge_id: str, user_id: str, *, signature: str | None = None):
    body = json.dumps(
        {
            "event_id": f"evt_{charge_id[:8]}",
            "event_type": "payment.completed",
            "data": {"metadata": {"charge_id": charge_id, "user_id": user_id}},
        }
    ).encode("utf-8")
    return client.post(
        "/payments/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Signature": signature or sign_webhook_payload(body, WEBHOOK_SECRET),
        },
    )


def test_charge_lifecycle_end_to_end(api: TestClient) -> None:
    assert api.get("/charges/me").status_code == 401

    forbidden = api.post("/admin/charges", headers=ALICE, json={"user_id": "alice", "amount": 1500})
    assert forbidden.status_code == 403

    invalid = api.post("/admin/charges", headers=ADMIN, json={"user_id": "alice", "amount": 0})
    assert invalid.status_code == 400
    assert invalid.json()["error_code"] == "INVALID_AMOUNT"
    assert invalid.json()["trace_id"]

    created = api.post(
        "/admin/charges",
        headers=ADMIN,
        json={"user_id": "alice", "amount": 1500, "description": "Background removal"},
    )
    assert created.status_code == 200, created.text
    charge = created.json()
    assert charge["status"] == "pending"
    assert charge["created_by"] == "ops-admin"
    charge_id = charge["id"]

    listed = api.get("/admin/charges", headers=ADMIN, params={"user_id": "alice"})
    assert [item["id"] for item in listed.json()] == [charge_id]

    mine = api.get("/charges/me", headers=ALICE).json()
    assert [item["id"] for item in mine["pending"]] == [charge_id]
    assert mine["paid"] == []

    assert api.post(f"/charges/{charge_id}/checkout", headers=BOB).status_code == 404
    checkout = api.post(
        f"/charges/{charge_id}/checkout",
        headers=ALICE,
        json={"success_url": "https://shop.example.test/done"},
    )
    assert checkout.status_code == 200, checkout.text
    assert checkout.json()["provider"] == "internal"
    assert checkout.json()["checkout_url"] == f"https://shop.example.test/done?mock_charge_id={charge_id}"

    rejected = _post_event(api, charge_id, "alice", signature="sha256=00")
    assert rejected.status_code == 401
    assert rejected.json()["error_code"] == "INVALID_SIGNATURE"

    paid = _post_event(api, charge_id, "alice")
    assert paid.status_code == 200, paid.text
    assert paid.json()["received"] is True
    assert paid.json()["status"] == "processed"
    invoice_id = paid.json()["invoice_id"]

    replay = _post_event(api, charge_id, "alice")
    assert replay.status_code == 200
    assert replay.json()["status"] == "already_paid"
    assert replay.json()["invoice_id"] == invoice_id
    assert [event for event, _payload in api.notifications] == ["charge_paid"]  # type: ignore[attr-defined]

    again = api.post(f"/charges/{charge_id}/checkout", headers=ALICE)
    assert again.status_code == 409
    assert again.json()["error_code"] == "CHARGE_ALREADY_PAID"

    mine = api.get("/charges/me", headers=ALICE).json()
    assert mine["pending"] == []
    assert mine["paid"][0]["invoice_id"] == invoice_id

    invoices = api.get("/invoices/me", headers=ALICE).json()
    assert len(invoices) == 1
    assert invoices[0]["status"] == "paid"
    assert invoices[0]["source"] == "charge"
    assert invoices[0]["items"][0]["description"] == "Background removal"
    assert api.get("/invoices/me", headers=BOB).json() == []

    audit = api.get("/admin/payments/audit-logs", headers=ADMIN).json()
    assert sorted(item["outcome"] for item in audit) == ["already_paid", "processed", "rejected_signature"]
    by_charge = api.get("/admin/payments/audit-logs", headers=ADMIN, params={"charge_id": charge_id}).json()
    assert sorted(item["outcome"] for item in by_charge) == ["already_paid", "processed"]


def test_invoice_archive_toggle(api: TestClient) -> None:
    charge_id = api.post("/admin/charges", headers=ADMIN, json={"user_id": "alice", "amount": 800}).json()["id"]
    invoice_id = _post_event(api, charge_id, "alice").json()["invoice_id"]

    assert api.post(f"/admin/invoices/{invoice_id}/archive", headers=ALICE).status_code == 403
    archived = api.post(f"/admin/invoices/{invoice_id}/archive", headers=ADMIN)
    assert archived.status_code == 200
    assert archived.json()["archived_at"] is not None

    assert api.get("/invoices/me", headers=ALICE).json() == []
    assert len(api.get("/invoices/me", headers=ALICE, params={"include_archived": "true"}).json()) == 1
    assert api.get("/admin/invoices", headers=ADMIN).json() == []

    restored = api.post(f"/admin/invoices/{invoice_id}/unarchive", headers=ADMIN)
    assert restored.json()["archived_at"] is None
    assert [item["id"] for item in api.get("/admin/invoices", headers=ADMIN).json()] == [invoice_id]

    missing = api.post("/admin/invoices/no-such-invoice/archive", headers=ADMIN)
    assert missing.status_code == 404
    assert missing.json()["error_code"] == "NOT_FOUND"


def test_promo_redeem_and_spend(api: TestClient) -> None:
    created = api.post("/admin/promo-codes", headers=ADMIN, json={"code": "welcome", "free_photos": 5})
    assert created.status_code == 200, created.text
    assert created.json()["code"] == "WELCOME"
    code_id = created.json()["id"]

    redeemed = api.post("/promo/redeem", headers=ALICE, json={"code": " Welcome "})
    assert redeemed.status_code == 200
    assert redeemed.json()["success"] is True
    assert redeemed.json()["free_photos"] == 5

    duplicate = api.post("/promo/redeem", headers=ALICE, json={"code": "WELCOME"})
    assert duplicate.status_code == 409
    assert duplicate.json() == {"success": False, "message": "You have already used this promo code"}

    unknown = api.post("/promo/redeem", headers=ALICE, json={"code": "NOPE"})
    assert unknown.status_code == 400
    assert unknown.json()["success"] is False

    assert api.get("/promo/balance", headers=ALICE).json() == {"user_id": "alice", "free_photos": 5}
    usage = api.get("/promo/usage", headers=ALICE).json()
    assert [(item["code"], item["photos_remaining"]) for item in usage] == [("WELCOME", 5)]

    spent = api.post("/promo/spend", headers=ALICE, json={"count": 3})
    assert spent.status_code == 200
    assert spent.json()["remaining"] == 2

    too_many = api.post("/promo/spend", headers=ALICE, json={"count": 5})
    assert too_many.status_code == 409
    assert too_many.json() == {"success": False, "message": "Not enough free photos left", "remaining": 2}

    disabled = api.patch(f"/admin/promo-codes/{code_id}", headers=ADMIN, json={"active": False})
    assert disabled.json()["active"] is False
    assert api.post("/promo/redeem", headers=BOB, json={"code": "WELCOME"}).status_code == 400
    assert [item["current_uses"] for item in api.get("/admin/promo-codes", headers=ADMIN).json()] == [1]


def test_deferred_run_and_preview(api: TestClient) -> None:
    delivered_at = datetime.now(timezone.utc) - timedelta(days=3)
    with session_scope(api.session_factory) as session:  # type: ignore[attr-defined]
        repo = LedgerRepository(session)
        repo.upsert_profile("studio", email="studio@example.test", deferred_billing_enabled=True)
        repo.create_order(user_id="studio", total_amount=2000, photo_count=2, status=OrderStatus.DELIVERED, created_at=delivered_at)
        repo.create_order(user_id="studio", total_amount=0, photo_count=4, status=OrderStatus.DELIVERED, created_at=delivered_at)

    assert api.get("/admin/billing/deferred/preview", headers=ALICE).status_code == 403
    preview = api.get("/admin/billing/deferred/preview", headers=ADMIN).json()
    assert preview["total_amount"] == 2000 + 4 * 1300
    assert [item["user_id"] for item in preview["users"]] == ["studio"]

    run = api.post("/admin/billing/deferred/run", headers=ADMIN)
    assert run.status_code == 200, run.text
    payload = run.json()
    assert payload["success"] is True
    assert payload["processedUsers"] == 1
    assert payload["invoicesCreated"] == 1
    assert payload["failedUsers"] == []
    assert [event for event, _payload in api.notifications] == ["invoice_issued"]  # type: ignore[attr-defined]

    assert api.post("/admin/billing/deferred/run", headers=ADMIN).json()["invoicesCreated"] == 0
    assert api.get("/admin/billing/deferred/preview", headers=ADMIN).json()["users"] == []

    invoices = api.get("/admin/invoices", headers=ADMIN, params={"user_id": "studio"}).json()
    assert invoices[0]["total_amount"] == 7200
    assert invoices[0]["status"] == "pending"


def test_health_is_public_and_carries_security_headers(api: TestClient) -> None:
    response = api.get("/health")
    assert response.status_code == 200
    assert response.json()["db"] == "ok"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Content-Security-Policy"]
    assert response.headers["X-Trace-Id"]

    codes = api.get("/error-codes", headers=ALICE).json()
    assert "INVALID_SIGNATURE" in codes


def test_unhandled_exceptions_are_normalized(monkeypatch, tmp_path: Path) -> None:
    engine, session_factory = build_session_factory(f"sqlite+pysqlite:///{tmp_path / 'boom.db'}")
    monkeypatch.setattr(main, "AUTH_ENABLED", True)
    monkeypatch.setattr(main, "AUTH_TOKEN_SECRET", TOKEN_SECRET)
    monkeypatch.setattr(main, "SESSION_FACTORY", session_factory)
    monkeypatch.setattr(main, "init_ledger_db", lambda: init_ledger_db(engine))

    def _boom(*_args, **_kwargs):
        raise RuntimeError("boom: should not leak")

    monkeypatch.setattr(main, "preview_deferred_billing", _boom)

    with TestClient(main.app, raise_server_exceptions=False) as client:
        response = client.get("/admin/billing/deferred/preview", headers=ADMIN)
    assert response.status_code == 500
    payload = response.json()
    assert payload["error_code"] == "INTERNAL_SERVER_ERROR"
    assert payload["trace_id"]
    assert "boom" not in response.text.lower()
    engine.dispose()
