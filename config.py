import os
from typing import Any, Dict

import yaml

ROOT_DIR = os.path.dirname(__file__)


def _load_dotenv(path: str, existing_env: set[str], allow_override: bool = False) -> None:
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[7:].strip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                if not key:
                    continue
                current_value = str(os.environ.get(key, "") or "").strip()
                # Do not treat empty pre-existing env vars as authoritative.
                if key in existing_env and current_value:
                    continue
                if key in os.environ and (not allow_override) and current_value:
                    continue
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                    value = value[1:-1]
                os.environ[key] = value
    except OSError:
        return


_EXISTING_ENV = set(os.environ.keys())
_load_dotenv(os.path.join(ROOT_DIR, ".env"), _EXISTING_ENV, allow_override=False)
_load_dotenv(os.path.join(ROOT_DIR, ".env.local"), _EXISTING_ENV, allow_override=True)

APP_ENV = os.getenv("APP_ENV", "dev")
CONFIG_PATH = os.getenv("CONFIG_PATH", os.path.join(ROOT_DIR, "config.yaml"))

_ENV_ONLY_KEYS = {
    "AUTH_TOKEN_SECRET",
    "PAYMENT_WEBHOOK_SECRET",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "NOTIFY_WEBHOOK_TOKEN",
}


def _load_config(path: str, env: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw_data: Any = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError):
        return {}
    data = raw_data or {}
    if isinstance(data, dict) and env in data and isinstance(data[env], dict):
        return dict(data[env])
    if isinstance(data, dict):
        return dict(data)
    return {}


_CONFIG = _load_config(CONFIG_PATH, APP_ENV)


def _get(name: str, default: Any) -> Any:
    if name in os.environ:
        return os.environ[name]
    if name in _ENV_ONLY_KEYS:
        return default
    if isinstance(_CONFIG, dict):
        if name in _CONFIG:
            return _CONFIG[name]
        lower = name.lower()
        if lower in _CONFIG:
            return _CONFIG[lower]
    return default


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes"}


def _parse_int(value: Any, default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


APP_VERSION = str(_get("APP_VERSION", "0.3.0"))
ROOT_PATH = str(_get("ROOT_PATH", "")).strip().rstrip("/")
if ROOT_PATH and not ROOT_PATH.startswith("/"):
    ROOT_PATH = f"/{ROOT_PATH}"
CORS_ORIGINS = [
    item.strip()
    for item in str(_get("CORS_ORIGINS", "http://localhost:5173")).split(",")
    if item.strip()
]

DATABASE_URL = str(
    _get(
        "DATABASE_URL",
        f"sqlite:///{os.path.join(ROOT_DIR, '.retouch', 'billing.db')}",
    )
).strip()
DATABASE_ECHO = _parse_bool(_get("DATABASE_ECHO", "false"), False)
STARTUP_BOOTSTRAP_ENABLED = _parse_bool(_get("STARTUP_BOOTSTRAP_ENABLED", "true"), True)

AUTH_ENABLED = _parse_bool(_get("AUTH_ENABLED", "true"), True)
AUTH_TOKEN_SECRET = str(_get("AUTH_TOKEN_SECRET", "")).strip()

# Payment provider: "internal" (HMAC-signed JSON, dev/tests) or "stripe".
PAYMENT_PROVIDER = str(_get("PAYMENT_PROVIDER", "internal")).strip().lower() or "internal"
PAYMENT_WEBHOOK_SECRET = str(_get("PAYMENT_WEBHOOK_SECRET", "")).strip()
STRIPE_SECRET_KEY = str(_get("STRIPE_SECRET_KEY", "")).strip()
STRIPE_WEBHOOK_SECRET = str(_get("STRIPE_WEBHOOK_SECRET", "")).strip()
STRIPE_WEBHOOK_TOLERANCE_SECONDS = _parse_int(_get("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"), 300)
CHECKOUT_SUCCESS_URL = str(_get("CHECKOUT_SUCCESS_URL", "http://localhost:5173/success")).strip()
CHECKOUT_CANCEL_URL = str(_get("CHECKOUT_CANCEL_URL", "http://localhost:5173/account")).strip()

INVOICE_CURRENCY = str(_get("INVOICE_CURRENCY", "EUR")).strip().upper() or "EUR"
INVOICE_DUE_DAYS = max(0, _parse_int(_get("INVOICE_DUE_DAYS", "30"), 30))
PRICE_PER_PHOTO_CENTS = max(0, _parse_int(_get("PRICE_PER_PHOTO_CENTS", "1300"), 1300))
DEFAULT_CHARGE_DESCRIPTION = str(_get("DEFAULT_CHARGE_DESCRIPTION", "Digital document")).strip() or "Digital document"

DEFERRED_INVOICE_CRON_HOUR = min(23, max(0, _parse_int(_get("DEFERRED_INVOICE_CRON_HOUR", "3"), 3)))
DEFERRED_INVOICE_CRON_MINUTE = min(59, max(0, _parse_int(_get("DEFERRED_INVOICE_CRON_MINUTE", "0"), 0)))

# Outbound email goes through an HTTP relay; empty URL disables notifications.
NOTIFY_WEBHOOK_URL = str(_get("NOTIFY_WEBHOOK_URL", "")).strip()
NOTIFY_WEBHOOK_TOKEN = str(_get("NOTIFY_WEBHOOK_TOKEN", "")).strip()
NOTIFY_TIMEOUT_SECONDS = float(_get("NOTIFY_TIMEOUT_SECONDS", "5") or 5)

REDIS_URL = _get("REDIS_URL", "redis://localhost:6379/0")
REDIS_DISABLED = _parse_bool(_get("REDIS_DISABLED", "false"), False)
CELERY_ALWAYS_EAGER = _parse_bool(_get("CELERY_ALWAYS_EAGER", "false"), False)
