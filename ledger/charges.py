from __future__ import annotations

import logging
from typing import Optional

from errors import AlreadyPaid, InvalidAmount, NotFoundError, ValidationError
from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .models import AdminCharge, ChargeStatus
from .provider import BasePaymentProvider, CheckoutSession
from .repository import LedgerRepository
from .settings import BillingSettings

logger = get_logger("ledger.charges")


def _validate_amount(amount: object) -> int:
    # bool is an int subclass; True must not become a 1-cent charge.
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"amount must be an integer number of cents, got {amount!r}")
    if amount <= 0:
        raise InvalidAmount(f"amount must be positive, got {amount}")
    return amount


def create_charge(
    repo: LedgerRepository,
    *,
    user_id: str,
    amount: int,
    description: Optional[str] = None,
    created_by: Optional[str] = None,
    settings: Optional[BillingSettings] = None,
) -> AdminCharge:
    cents = _validate_amount(amount)
    owner = str(user_id or "").strip()
    if not owner:
        raise ValidationError("user_id is required")
    resolved = settings or BillingSettings()
    text = str(description or "").strip() or resolved.default_charge_description
    charge = repo.create_charge(user_id=owner, amount=cents, description=text, created_by=created_by)
    log_event(
        logger,
        logging.INFO,
        "charges.created",
        charge_id=charge.id,
        user_id=owner,
        amount=cents,
        created_by=created_by,
    )
    return charge


def list_charges_for_user(repo: LedgerRepository, user_id: str) -> list[AdminCharge]:
    return repo.list_charges(user_id)


def partition_charges(charges: list[AdminCharge]) -> tuple[list[AdminCharge], list[AdminCharge]]:
    pending = [item for item in charges if item.status == ChargeStatus.PENDING]
    paid = [item for item in charges if item.status == ChargeStatus.PAID]
    return pending, paid


def initiate_charge_payment(
    charge_id: str,
    user_id: str,
    *,
    provider: BasePaymentProvider,
    success_url: str,
    cancel_url: str,
    currency: str,
    session_factory: SessionFactory | None = None,
) -> CheckoutSession:
    """
    Open a provider checkout for a pending charge owned by `user_id`.

    The charge is read in its own short transaction and the provider is called
    after it closes, so no database connection is held across the network call.
    """
    with session_scope(session_factory) as session:
        repo = LedgerRepository(session)
        charge = repo.get_charge(charge_id)
        if charge is None or charge.user_id != str(user_id):
            raise NotFoundError(f"charge not found: {charge_id}")
        if charge.status != ChargeStatus.PENDING:
            raise AlreadyPaid(f"charge {charge_id} is already paid")
        amount = int(charge.amount)
        description = str(charge.description)

    checkout = provider.create_checkout_session(
        charge_id=str(charge_id),
        user_id=str(user_id),
        amount=amount,
        currency=currency,
        description=description,
        success_url=success_url,
        cancel_url=cancel_url,
    )
    log_event(
        logger,
        logging.INFO,
        "charges.checkout.created",
        charge_id=charge_id,
        user_id=user_id,
        provider=checkout.provider,
        external_reference=checkout.external_reference,
    )
    return checkout
