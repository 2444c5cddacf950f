from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import httpx

from config import NOTIFY_TIMEOUT_SECONDS, NOTIFY_WEBHOOK_TOKEN, NOTIFY_WEBHOOK_URL
from observability import get_logger, log_event, to_json_safe

logger = get_logger("ledger.notify")

EVENT_CHARGE_PAID = "charge_paid"
EVENT_INVOICE_ISSUED = "invoice_issued"

Notifier = Callable[[str, Dict[str, Any]], None]


class HttpNotifier:
    """
    Fire-and-forget relay to the email sender.

    Delivery failures are logged and dropped: a missing email never undoes a
    committed billing change.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.url = NOTIFY_WEBHOOK_URL if url is None else url
        self.token = NOTIFY_WEBHOOK_TOKEN if token is None else token
        self.timeout = NOTIFY_TIMEOUT_SECONDS if timeout is None else timeout

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def __call__(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        body = to_json_safe({"event": event, **payload})
        try:
            response = httpx.post(
                self.url,
                json=body,
                headers=headers,
                timeout=self.timeout,
                trust_env=False,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            log_event(
                logger,
                logging.WARNING,
                "notify.delivery_failed",
                notify_event=event,
                error=str(exc),
            )
            return
        except Exception as exc:
            log_event(
                logger,
                logging.ERROR,
                "notify.delivery_failed",
                notify_event=event,
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=True,
            )
            return
        log_event(logger, logging.INFO, "notify.delivered", notify_event=event)


def send_notification(notifier: Optional[Notifier], event: str, payload: Dict[str, Any]) -> None:
    """Invoke any notifier after a commit; its failures are logged, never raised."""
    if notifier is None:
        return
    try:
        notifier(event, payload)
    except Exception as exc:
        log_event(
            logger,
            logging.ERROR,
            "notify.notifier_failed",
            notify_event=event,
            error_type=type(exc).__name__,
            error=str(exc),
            exc_info=True,
        )


def default_notifier() -> Notifier:
    return HttpNotifier()
