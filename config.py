import os
from typing import Any, Dict, List

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
    "MERCADOPAGO_ACCESS_TOKEN",
    "MERCADOPAGO_WEBHOOK_SECRET",
    "DISCORD_BOT_TOKEN",
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


def _get_plan_seeds() -> List[Dict[str, Any]]:
    raw = _get("PLANS", [])
    if not isinstance(raw, list):
        return []
    return [dict(item) for item in raw if isinstance(item, dict)]


API_HOST = _get("API_HOST", "127.0.0.1")
API_PORT = int(_get("API_PORT", "8010"))
_root_path = str(_get("ROOT_PATH", "")).strip()
if _root_path and not _root_path.startswith("/"):
    _root_path = f"/{_root_path}"
ROOT_PATH = _root_path.rstrip("/") if _root_path else ""
APP_VERSION = str(_get("APP_VERSION", "0.1.0"))

DATABASE_URL = str(
    _get(
        "DATABASE_URL",
        f"sqlite:///{os.path.join(ROOT_DIR, '.storefront', 'storefront.db')}",
    )
).strip()
DATABASE_ECHO = _parse_bool(_get("DATABASE_ECHO", "false"), False)
STARTUP_BOOTSTRAP_ENABLED = _parse_bool(_get("STARTUP_BOOTSTRAP_ENABLED", "true"), True)

REDIS_URL = _get("REDIS_URL", "redis://localhost:6379/0")
REDIS_DISABLED = _parse_bool(_get("REDIS_DISABLED", "false"), False)
CELERY_ALWAYS_EAGER = _parse_bool(_get("CELERY_ALWAYS_EAGER", "false"), False)

AUTH_TOKEN_SECRET = str(_get("AUTH_TOKEN_SECRET", "")).strip()

DEFAULT_CURRENCY = str(_get("DEFAULT_CURRENCY", "BRL")).strip().upper() or "BRL"
PUBLIC_BASE_URL = str(_get("PUBLIC_BASE_URL", "http://localhost:8010")).strip().rstrip("/")

PAYMENT_PROVIDER = str(_get("PAYMENT_PROVIDER", "mock")).strip().lower() or "mock"
MERCADOPAGO_API_BASE_URL = str(_get("MERCADOPAGO_API_BASE_URL", "https://api.mercadopago.com")).strip().rstrip("/")
MERCADOPAGO_ACCESS_TOKEN = str(_get("MERCADOPAGO_ACCESS_TOKEN", "")).strip()
MERCADOPAGO_WEBHOOK_SECRET = str(_get("MERCADOPAGO_WEBHOOK_SECRET", "")).strip()
MERCADOPAGO_TIMEOUT_SECONDS = float(_get("MERCADOPAGO_TIMEOUT_SECONDS", "20"))
MERCADOPAGO_NOTIFY_URL = str(_get("MERCADOPAGO_NOTIFY_URL", f"{PUBLIC_BASE_URL}/webhooks/mercadopago")).strip()

DISCORD_API_BASE_URL = str(_get("DISCORD_API_BASE_URL", "https://discord.com/api/v10")).strip().rstrip("/")
DISCORD_BOT_TOKEN = str(_get("DISCORD_BOT_TOKEN", "")).strip()
DISCORD_GUILD_ID = str(_get("DISCORD_GUILD_ID", "")).strip()
DISCORD_TIMEOUT_SECONDS = float(_get("DISCORD_TIMEOUT_SECONDS", "10"))

FULFILLMENT_MAX_ATTEMPTS = max(1, int(_get("FULFILLMENT_MAX_ATTEMPTS", "3")))
FULFILLMENT_RETRY_DELAY_SECONDS = max(0.0, float(_get("FULFILLMENT_RETRY_DELAY_SECONDS", "1.5")))
WORKER_TASK_MAX_RETRIES = max(0, int(_get("WORKER_TASK_MAX_RETRIES", "2")))
WORKER_TASK_RETRY_DELAY_SECONDS = max(1, int(_get("WORKER_TASK_RETRY_DELAY_SECONDS", "20")))
WORKER_DEAD_LETTER_KEY = str(_get("WORKER_DEAD_LETTER_KEY", "storefront:dead_letter")).strip()

CORS_ORIGINS = [
    origin.strip()
    for origin in str(
        _get(
            "CORS_ORIGINS",
            "http://127.0.0.1:3000,http://localhost:3000",
        )
    ).split(",")
    if origin.strip()
]

PLANS = _get_plan_seeds()
