"""Promotional free-photo credit.

A redemption grants a fixed number of free photos recorded on a
UserPromoUsage row; the spendable balance is the sum of `photos_remaining`
over a user's rows. Spending walks the rows oldest-first so credit from the
earliest redemption is used up before later grants are touched.
"""

from __future__ import annotations

import logging
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError, OperationalError

from errors import (
    AlreadyRedeemed,
    ConcurrencyConflict,
    ConflictError,
    InsufficientCredit,
    InvalidCode,
    ValidationError,
)
from observability import get_logger, log_event

from .models import PromoCode, UserPromoUsage
from .repository import LedgerRepository, _as_utc_aware

logger = get_logger("ledger.promo")

PROMO_CODE_ALPHABET = string.ascii_uppercase + string.digits
PROMO_CODE_LENGTH = 8
_MAX_ATTEMPTS = 5


class _SpendRaceLost(RuntimeError):
    pass


@dataclass(frozen=True)
class RedeemResult:
    code: str
    promo_code_id: str
    usage_id: str
    granted: int


@dataclass(frozen=True)
class SpendResult:
    spent: int
    remaining: int
    allocations: tuple[tuple[str, int], ...] = ()


def normalize_code(code: Optional[str]) -> str:
    return str(code or "").strip().upper()


def _is_lock_error(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return "database is locked" in message or "deadlock" in message


def _ensure_redeemable(promo: Optional[PromoCode], current: datetime) -> PromoCode:
    if promo is None:
        raise InvalidCode("unknown promo code")
    if not promo.active:
        raise InvalidCode("promo code is inactive")
    if promo.expires_at is not None and _as_utc_aware(promo.expires_at) <= current:
        raise InvalidCode("promo code has expired")
    if promo.max_uses is not None and int(promo.current_uses or 0) >= int(promo.max_uses):
        raise InvalidCode("promo code has reached its usage limit")
    return promo


def redeem(repo: LedgerRepository, user_id: str, code: str, *, now: Optional[datetime] = None) -> RedeemResult:
    normalized = normalize_code(code)
    if not normalized:
        raise InvalidCode("promo code is required")
    current = _as_utc_aware(now) if now else datetime.now(timezone.utc)

    for _attempt in range(_MAX_ATTEMPTS):
        promo = repo.get_promo_code_by_code(normalized)
        if promo is not None and repo.get_promo_usage(user_id, promo.id) is not None:
            log_event(logger, logging.INFO, "promo.redeem.duplicate", user_id=user_id, code=normalized)
            raise AlreadyRedeemed(f"promo code {normalized} already redeemed by user")
        promo = _ensure_redeemable(promo, current)
        try:
            with repo.session.begin_nested():
                usage = repo.add_promo_usage(
                    user_id=user_id,
                    promo_code_id=promo.id,
                    granted=int(promo.free_photos),
                    now=current,
                )
                # Availability is re-checked in the UPDATE itself; losing the last use rolls the usage row back.
                if not repo.claim_promo_code_use(promo.id, now=current):
                    raise InvalidCode("promo code is no longer available")
        except IntegrityError as exc:
            log_event(logger, logging.INFO, "promo.redeem.duplicate", user_id=user_id, code=normalized)
            raise AlreadyRedeemed(f"promo code {normalized} already redeemed by user") from exc
        except OperationalError as exc:
            if _is_lock_error(exc):
                time.sleep(0.02)
                continue
            raise
        log_event(
            logger,
            logging.INFO,
            "promo.redeem.granted",
            user_id=user_id,
            code=normalized,
            granted=int(promo.free_photos),
        )
        return RedeemResult(
            code=normalized,
            promo_code_id=promo.id,
            usage_id=usage.id,
            granted=int(promo.free_photos),
        )
    raise ConcurrencyConflict(f"promo redemption conflict for user={user_id}")


def balance(repo: LedgerRepository, user_id: str) -> int:
    return repo.sum_photos_remaining(user_id)


def list_usage(repo: LedgerRepository, user_id: str) -> list[UserPromoUsage]:
    return repo.list_promo_usage(user_id, newest_first=True)


def _spend_once(repo: LedgerRepository, user_id: str, requested: int) -> SpendResult:
    rows = repo.list_promo_usage(user_id, newest_first=False, for_update=True)
    available = sum(max(0, int(row.photos_remaining or 0)) for row in rows)
    if available < requested:
        raise InsufficientCredit(f"requested {requested} free photos, {available} available")

    outstanding = requested
    allocations: list[tuple[str, int]] = []
    for row in rows:
        if outstanding <= 0:
            break
        observed = int(row.photos_remaining or 0)
        if observed <= 0:
            continue
        take = min(observed, outstanding)
        if not repo.set_photos_remaining_if_unchanged(row.id, expected=observed, remaining=observed - take):
            raise _SpendRaceLost(f"usage row {row.id} changed concurrently")
        allocations.append((row.id, take))
        outstanding -= take
    return SpendResult(spent=requested, remaining=available - requested, allocations=tuple(allocations))


def spend(repo: LedgerRepository, user_id: str, count: int) -> SpendResult:
    """
    Consume `count` free photos, oldest redemption first.

    Either the whole amount is taken or no row changes. Each row is decremented
    with a compare-and-set on the value read; a lost race rolls the savepoint
    back and the check is repeated against fresh rows.
    """
    try:
        requested = int(count)
    except (TypeError, ValueError) as exc:
        raise ValidationError("count must be an integer") from exc
    if requested <= 0:
        raise ValidationError("count must be positive")

    for _attempt in range(_MAX_ATTEMPTS):
        try:
            with repo.session.begin_nested():
                result = _spend_once(repo, user_id, requested)
        except _SpendRaceLost:
            time.sleep(0.01)
            continue
        except OperationalError as exc:
            if _is_lock_error(exc):
                time.sleep(0.02)
                continue
            raise
        log_event(
            logger,
            logging.INFO,
            "promo.spend.applied",
            user_id=user_id,
            spent=result.spent,
            remaining=result.remaining,
            rows=len(result.allocations),
        )
        return result
    log_event(logger, logging.WARNING, "promo.spend.conflict", user_id=user_id, requested=requested)
    raise ConcurrencyConflict(f"free photo balance update conflict for user={user_id}")


def generate_promo_code(length: int = PROMO_CODE_LENGTH) -> str:
    return "".join(secrets.choice(PROMO_CODE_ALPHABET) for _ in range(max(4, int(length))))


def create_promo_code(
    repo: LedgerRepository,
    *,
    free_photos: int,
    code: Optional[str] = None,
    max_uses: Optional[int] = None,
    expires_at: Optional[datetime] = None,
    active: bool = True,
    created_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PromoCode:
    normalized = normalize_code(code) or generate_promo_code()
    if int(free_photos) <= 0:
        raise ValidationError("free_photos must be positive")
    if max_uses is not None and int(max_uses) <= 0:
        raise ValidationError("max_uses must be positive when set")
    if repo.get_promo_code_by_code(normalized) is not None:
        raise ConflictError(f"promo code already exists: {normalized}")
    try:
        with repo.session.begin_nested():
            promo = repo.create_promo_code(
                code=normalized,
                free_photos=int(free_photos),
                max_uses=max_uses,
                expires_at=expires_at,
                active=active,
                created_by=created_by,
                now=now,
            )
    except IntegrityError as exc:
        raise ConflictError(f"promo code already exists: {normalized}") from exc
    log_event(logger, logging.INFO, "promo.code.created", code=normalized, free_photos=int(free_photos))
    return promo


def set_promo_code_active(repo: LedgerRepository, promo_code_id: str, active: bool) -> PromoCode:
    promo = repo.set_promo_code_active(promo_code_id, active)
    log_event(logger, logging.INFO, "promo.code.toggled", code=promo.code, active=bool(active))
    return promo


def list_promo_codes(repo: LedgerRepository) -> list[PromoCode]:
    return repo.list_promo_codes()
