from __future__ import annotations

import abc
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional

import stripe

from config import (
    PAYMENT_PROVIDER,
    PAYMENT_WEBHOOK_SECRET,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    STRIPE_WEBHOOK_TOLERANCE_SECONDS,
)
from errors import ExternalDependencyError, InvalidSignature, MalformedEvent

ProviderName = Literal["internal", "stripe"]

EVENT_PAYMENT_COMPLETED = "payment.completed"

_STRIPE_EVENT_TYPES = {
    "checkout.session.completed": EVENT_PAYMENT_COMPLETED,
}


@dataclass(frozen=True)
class CheckoutSession:
    """
    Normalized provider checkout session payload.

    The caller only needs somewhere to redirect the customer; anything
    provider-specific stays in `raw`.
    """

    provider: ProviderName
    checkout_url: str
    external_reference: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentEvent:
    """A verified provider notification, reduced to what reconciliation reads."""

    provider: ProviderName
    event_type: str
    event_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_payment_completed(self) -> bool:
        return self.event_type == EVENT_PAYMENT_COMPLETED

    @property
    def charge_id(self) -> str:
        return str(self.metadata.get("charge_id") or "").strip()

    @property
    def user_id(self) -> str:
        return str(self.metadata.get("user_id") or "").strip()


def _string_metadata(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items() if v is not None}


def _load_json_object(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedEvent("webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedEvent("webhook body must be a JSON object")
    return payload


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Verify the internal webhook signature.

    - Algorithm: HMAC-SHA256(payload), returned as hex string.
    - Header format: accepts either a raw hex digest or "sha256=<hex>".
    - Constant-time compare: uses `hmac.compare_digest`.
    """

    secret_key = str(secret or "").encode("utf-8")
    if not secret_key:
        return False
    provided = str(signature or "").strip()
    if provided.lower().startswith("sha256="):
        provided = provided.split("=", 1)[1].strip()
    if not provided:
        return False
    expected = hmac.new(secret_key, payload, hashlib.sha256).hexdigest()
    # Headers arrive latin-1 decoded; non-ASCII input must compare as a plain mismatch.
    return hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8", "replace"))


def sign_webhook_payload(payload: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(str(secret).encode("utf-8"), payload, hashlib.sha256).hexdigest()


class BasePaymentProvider(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> ProviderName:
        raise NotImplementedError

    @abc.abstractmethod
    def create_checkout_session(
        self,
        *,
        charge_id: str,
        user_id: str,
        amount: int,
        currency: str,
        description: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """
        Create a provider-side checkout session for one admin charge.

        `charge_id` and `user_id` must come back untouched in the completion
        event's metadata; reconciliation keys on them.
        """

    @abc.abstractmethod
    def verify_and_parse(self, raw_body: bytes, signature: Optional[str]) -> PaymentEvent:
        """
        Authenticate a webhook delivery and decode it.

        Raises InvalidSignature when the signature does not match the raw bytes,
        MalformedEvent when an authentic body cannot be decoded.
        """


class InternalProvider(BasePaymentProvider):
    """HMAC-signed JSON events; used in development and by the test-suite."""

    def __init__(self, webhook_secret: Optional[str] = None) -> None:
        self.webhook_secret = PAYMENT_WEBHOOK_SECRET if webhook_secret is None else webhook_secret

    @property
    def name(self) -> ProviderName:
        return "internal"

    def create_checkout_session(
        self,
        *,
        charge_id: str,
        user_id: str,
        amount: int,
        currency: str,
        description: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        _ = (amount, currency, description, cancel_url)
        # Development-only URL; the payment itself is simulated by posting a signed event.
        separator = "&" if "?" in success_url else "?"
        url = f"{success_url}{separator}mock_charge_id={charge_id}"
        return CheckoutSession(
            provider="internal",
            checkout_url=url,
            external_reference=charge_id,
            raw={"metadata": {"charge_id": charge_id, "user_id": user_id}},
        )

    def verify_and_parse(self, raw_body: bytes, signature: Optional[str]) -> PaymentEvent:
        if not self.webhook_secret:
            raise InvalidSignature("PAYMENT_WEBHOOK_SECRET is not configured")
        if not verify_webhook_signature(raw_body, signature or "", self.webhook_secret):
            raise InvalidSignature("invalid signature")
        payload = _load_json_object(raw_body)
        event_type = str(payload.get("event_type") or payload.get("type") or "").strip()
        if not event_type:
            raise MalformedEvent("event_type is required")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        metadata = data.get("metadata", payload.get("metadata"))
        event_id = payload.get("event_id") or payload.get("id")
        return PaymentEvent(
            provider="internal",
            event_type=event_type,
            event_id=str(event_id) if event_id else None,
            metadata=_string_metadata(metadata),
            raw=payload,
        )


class StripeProvider(BasePaymentProvider):
    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
    ) -> None:
        self.api_key = STRIPE_SECRET_KEY if api_key is None else api_key
        self.webhook_secret = STRIPE_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
        self.tolerance_seconds = STRIPE_WEBHOOK_TOLERANCE_SECONDS if tolerance_seconds is None else tolerance_seconds

    @property
    def name(self) -> ProviderName:
        return "stripe"

    def create_checkout_session(
        self,
        *,
        charge_id: str,
        user_id: str,
        amount: int,
        currency: str,
        description: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        if not self.api_key:
            raise ExternalDependencyError("STRIPE_SECRET_KEY is missing")
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": str(currency or "EUR").lower(),
                            "product_data": {"name": description},
                            "unit_amount": int(amount),
                        },
                        "quantity": 1,
                    }
                ],
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=charge_id,
                metadata={"charge_id": charge_id, "user_id": user_id},
            )
        except stripe.StripeError as exc:
            raise ExternalDependencyError(f"stripe checkout failed: {exc}") from exc
        checkout_url = str(getattr(session, "url", "") or "").strip()
        if not checkout_url:
            raise ExternalDependencyError("stripe checkout session has no url")
        return CheckoutSession(
            provider="stripe",
            checkout_url=checkout_url,
            external_reference=str(getattr(session, "id", "") or "") or None,
            raw={"id": getattr(session, "id", None)},
        )

    def verify_and_parse(self, raw_body: bytes, signature: Optional[str]) -> PaymentEvent:
        if not self.webhook_secret:
            raise InvalidSignature("STRIPE_WEBHOOK_SECRET is not configured")
        try:
            body_text = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedEvent("webhook body is not UTF-8") from exc
        try:
            stripe.WebhookSignature.verify_header(
                body_text,
                signature or "",
                self.webhook_secret,
                tolerance=self.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature(str(exc) or "invalid signature") from exc

        payload = _load_json_object(raw_body)
        stripe_type = str(payload.get("type") or "").strip()
        if not stripe_type:
            raise MalformedEvent("event type is required")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        obj = data.get("object") if isinstance(data.get("object"), dict) else {}
        return PaymentEvent(
            provider="stripe",
            event_type=_STRIPE_EVENT_TYPES.get(stripe_type, stripe_type),
            event_id=str(payload.get("id")) if payload.get("id") else None,
            metadata=_string_metadata(obj.get("metadata")),
            raw=payload,
        )


def get_payment_provider(name: Optional[str] = None) -> BasePaymentProvider:
    """
    Provider factory.

    If `name` is not provided, reads from config.PAYMENT_PROVIDER.
    """

    selected = (name or PAYMENT_PROVIDER or "internal").strip().lower()
    if selected == "stripe":
        return StripeProvider()
    return InternalProvider()
