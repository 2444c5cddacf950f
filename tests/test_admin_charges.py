from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy import func, select

from errors import AlreadyPaid, InvalidAmount, NotFoundError
from ledger import (
    BasePaymentProvider,
    CheckoutSession,
    InvoiceLine,
    LedgerRepository,
    build_session_factory,
    create_charge,
    init_ledger_db,
    initiate_charge_payment,
    list_charges_for_user,
    partition_charges,
    session_scope,
)
from ledger.models import AdminCharge, ChargeStatus, InvoiceSource, InvoiceStatus


def _make_db():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_ledger_db(engine)
    return engine, session_factory


class RecordingProvider(BasePaymentProvider):
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    @property
    def name(self):
        return "internal"

    def create_checkout_session(self, **kwargs: Any) -> CheckoutSession:
        self.calls.append(dict(kwargs))
        return CheckoutSession(
            provider="internal",
            checkout_url=f"https://pay.example.test/{kwargs['charge_id']}",
            external_reference=kwargs["charge_id"],
        )

    def verify_and_parse(self, raw_body, signature):  # pragma: no cover - not exercised here
        raise NotImplementedError


@pytest.mark.parametrize("amount", [0, -500, 12.5, "1250", True])
def test_create_charge_rejects_invalid_amounts(amount) -> None:
    engine, sf = _make_db()
    with pytest.raises(InvalidAmount):
        with session_scope(sf) as session:
            create_charge(LedgerRepository(session), user_id="alice", amount=amount)

    with session_scope(sf) as session:
        assert session.scalar(select(func.count()).select_from(AdminCharge)) == 0
    engine.dispose()


def test_create_charge_defaults_description_and_lists_newest_first() -> None:
    engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = LedgerRepository(session)
        first = create_charge(repo, user_id="alice", amount=1250, created_by="admin")
        second = create_charge(repo, user_id="alice", amount=900, description="Rush delivery")
        create_charge(repo, user_id="bob", amount=100)
        assert first.description == "Digital document"
        assert first.status == ChargeStatus.PENDING
        assert first.invoice_id is None
        first_id, second_id = first.id, second.id

    with session_scope(sf) as session:
        charges = list_charges_for_user(LedgerRepository(session), "alice")
        assert {item.id for item in charges} == {first_id, second_id}
        pending, paid = partition_charges(charges)
        assert len(pending) == 2
        assert paid == []

    engine.dispose()


def test_initiate_payment_passes_charge_metadata_to_provider() -> None:
    engine, sf = _make_db()
    with session_scope(sf) as session:
        charge_id = create_charge(LedgerRepository(session), user_id="alice", amount=4200).id

    provider = RecordingProvider()
    checkout = initiate_charge_payment(
        charge_id,
        "alice",
        provider=provider,
        success_url="https://shop.example.test/ok",
        cancel_url="https://shop.example.test/cancel",
        currency="EUR",
        session_factory=sf,
    )

    assert checkout.checkout_url.endswith(charge_id)
    assert len(provider.calls) == 1
    call = provider.calls[0]
    assert call["charge_id"] == charge_id
    assert call["user_id"] == "alice"
    assert call["amount"] == 4200
    assert call["description"] == "Digital document"
    engine.dispose()


def test_initiate_payment_hides_other_users_charges() -> None:
    engine, sf = _make_db()
    with session_scope(sf) as session:
        charge_id = create_charge(LedgerRepository(session), user_id="alice", amount=4200).id

    provider = RecordingProvider()
    for caller, target in (("bob", charge_id), ("alice", "missing-charge")):
        with pytest.raises(NotFoundError):
            initiate_charge_payment(
                target,
                caller,
                provider=provider,
                success_url="https://shop.example.test/ok",
                cancel_url="https://shop.example.test/cancel",
                currency="EUR",
                session_factory=sf,
            )
    assert provider.calls == []
    engine.dispose()


def test_initiate_payment_refuses_paid_charge() -> None:
    engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = LedgerRepository(session)
        charge = create_charge(repo, user_id="alice", amount=700)
        invoice = repo.create_invoice(
            user_id="alice",
            lines=[InvoiceLine(description=charge.description, quantity=1, unit_price=700)],
            source=InvoiceSource.CHARGE,
            status=InvoiceStatus.PAID,
            currency="EUR",
            due_days=30,
        )
        assert repo.mark_charge_paid_if_pending(charge.id, invoice_id=invoice.id) is True
        assert repo.mark_charge_paid_if_pending(charge.id, invoice_id=invoice.id) is False
        charge_id = charge.id

    provider = RecordingProvider()
    with pytest.raises(AlreadyPaid):
        initiate_charge_payment(
            charge_id,
            "alice",
            provider=provider,
            success_url="https://shop.example.test/ok",
            cancel_url="https://shop.example.test/cancel",
            currency="EUR",
            session_factory=sf,
        )
    assert provider.calls == []
    engine.dispose()
