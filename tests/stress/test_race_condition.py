from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from errors import AlreadyRedeemed, LedgerError
from ledger import (
    InternalProvider,
    LedgerRepository,
    UserPromoUsage,
    build_session_factory,
    create_charge,
    handle_event,
    init_ledger_db,
    session_scope,
    sign_webhook_payload,
)
from ledger import promo
from ledger.models import AdminCharge, ChargeStatus, Invoice, PromoCode

SECRET = "whsec_stress"
PAID_AT = datetime(2026, 4, 10, 12, 0, tzinfo=timezone.utc)


def _file_db(tmp_path: Path, name: str):
    engine, session_factory = build_session_factory(f"sqlite+pysqlite:///{tmp_path / name}")
    init_ledger_db(engine)
    return engine, session_factory


def _lockstep(monkeypatch, method_name: str) -> Callable[[Callable[[], Any]], Any]:
    """
    Hold two workers after their first `method_name` read until both have done it,
    then let them write one at a time so the second writer sees stale state.
    """
    barrier = threading.Barrier(2)
    gate = threading.Lock()
    local = threading.local()
    original = getattr(LedgerRepository, method_name)

    def _wrapped(self, *args, **kwargs):
        result = original(self, *args, **kwargs)
        if not getattr(local, "paused", False):
            local.paused = True
            barrier.wait(timeout=5)
            assert gate.acquire(timeout=10)
            local.holds_gate = True
        return result

    monkeypatch.setattr(LedgerRepository, method_name, _wrapped)

    def _run(work: Callable[[], Any]) -> Any:
        local.paused = False
        local.holds_gate = False
        try:
            return work()
        finally:
            if local.holds_gate:
                gate.release()

    return _run


def test_simultaneous_free_photo_spend_never_goes_negative(tmp_path: Path) -> None:
    engine, session_factory = _file_db(tmp_path, "race_condition.db")

    with session_scope(session_factory) as session:
        promo.create_promo_code(LedgerRepository(session), code="STRESS", free_photos=100)
    with session_scope(session_factory) as session:
        promo.redeem(LedgerRepository(session), "race-user", "STRESS")

    def _spend_once(_index: int) -> bool:
        try:
            with session_scope(session_factory) as session:
                promo.spend(LedgerRepository(session), "race-user", 10)
            return True
        except (LedgerError, OperationalError):
            return False

    with ThreadPoolExecutor(max_workers=20) as pool:
        results = list(pool.map(_spend_once, range(20)))

    success_count = sum(1 for item in results if item)
    with session_scope(session_factory) as session:
        final_balance = promo.balance(LedgerRepository(session), "race-user")
        rows = list(session.scalars(select(UserPromoUsage)).all())

    assert success_count <= 10
    assert final_balance >= 0
    assert final_balance == 100 - (success_count * 10)
    assert all(row.photos_remaining >= 0 for row in rows)

    engine.dispose()


def test_concurrent_duplicate_webhooks_settle_the_charge_once(tmp_path: Path, monkeypatch) -> None:
    engine, session_factory = _file_db(tmp_path, "webhook_race.db")
    with session_scope(session_factory) as session:
        repo = LedgerRepository(session)
        repo.upsert_profile("alice", email="alice@example.test")
        charge_id = create_charge(repo, user_id="alice", amount=2500, description="Extra retouch").id

    settled: list[bool] = []
    original_mark = LedgerRepository.mark_charge_paid_if_pending

    def _mark(self, *args, **kwargs):
        matched = original_mark(self, *args, **kwargs)
        settled.append(matched)
        return matched

    monkeypatch.setattr(LedgerRepository, "mark_charge_paid_if_pending", _mark)
    run = _lockstep(monkeypatch, "get_charge")

    def _deliver(event_id: str) -> dict[str, Any]:
        body = json.dumps(
            {
                "event_id": event_id,
                "event_type": "payment.completed",
                "data": {"metadata": {"charge_id": charge_id, "user_id": "alice"}},
            }
        ).encode("utf-8")
        return run(
            lambda: handle_event(
                body,
                sign_webhook_payload(body, SECRET),
                provider=InternalProvider(webhook_secret=SECRET),
                session_factory=session_factory,
                now=PAID_AT,
            )
        )

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(_deliver, ["evt_first", "evt_retry"]))

    assert sorted(result["status"] for result in results) == ["already_paid", "processed"]
    assert sorted(settled) == [False, True]
    processed = next(result for result in results if result["status"] == "processed")
    duplicate = next(result for result in results if result["status"] == "already_paid")
    assert duplicate["invoice_id"] == processed["invoice_id"]

    with session_scope(session_factory) as session:
        assert int(session.scalar(select(func.count()).select_from(Invoice))) == 1
        charge = session.get(AdminCharge, charge_id)
        assert charge.status == ChargeStatus.PAID
        assert charge.invoice_id == processed["invoice_id"]

    engine.dispose()


def test_concurrent_redemptions_of_one_code_by_one_user_grant_once(tmp_path: Path, monkeypatch) -> None:
    engine, session_factory = _file_db(tmp_path, "redeem_race.db")
    with session_scope(session_factory) as session:
        promo.create_promo_code(LedgerRepository(session), code="TWICE", free_photos=4)

    run = _lockstep(monkeypatch, "get_promo_usage")

    def _redeem(_index: int) -> str:
        def _work() -> str:
            with session_scope(session_factory) as session:
                promo.redeem(LedgerRepository(session), "alice", "twice")
            return "granted"

        try:
            return run(_work)
        except AlreadyRedeemed:
            return "already_redeemed"

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = sorted(pool.map(_redeem, range(2)))

    assert outcomes == ["already_redeemed", "granted"]
    with session_scope(session_factory) as session:
        assert int(session.scalar(select(func.count()).select_from(UserPromoUsage))) == 1
        code = session.scalar(select(PromoCode).where(PromoCode.code == "TWICE"))
        assert code.current_uses == 1
        assert promo.balance(LedgerRepository(session), "alice") == 4

    engine.dispose()
