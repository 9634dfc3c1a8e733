# app/core/config.py
import json
import logging
import os

logger = logging.getLogger("portal.config")
logger.setLevel(logging.INFO)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    return default


def _json_env(name: str) -> dict:
    raw = os.getenv(name)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        logger.warning(f"Invalid JSON in {name}, ignoring")
        return {}
    return value if isinstance(value, dict) else {}


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./portal.db")

JWT_SECRET = os.getenv("JWT_SECRET", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = _int_env("JWT_EXPIRES_MINUTES", 60 * 24)

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    if o.strip()
]

# External plugin databases (read-only)
AUTHME_DATABASE_URL = os.getenv("AUTHME_DATABASE_URL", "")
AUTHME_ENABLED = _bool_env("AUTHME_ENABLED", bool(AUTHME_DATABASE_URL))
AUTHME_BINDING_ENABLED = _bool_env("AUTHME_BINDING_ENABLED", True)

LUCKPERMS_DATABASE_URL = os.getenv("LUCKPERMS_DATABASE_URL", "")
LUCKPERMS_ENABLED = _bool_env("LUCKPERMS_ENABLED", bool(LUCKPERMS_DATABASE_URL))
LUCKPERMS_GROUP_DISPLAY_NAMES = _json_env("LUCKPERMS_GROUP_DISPLAY_NAMES")

EXTERNAL_CONNECT_TIMEOUT_SECONDS = _float_env("EXTERNAL_CONNECT_TIMEOUT_SECONDS", 5.0)
SNAPSHOT_MAX_WORKERS = _int_env("SNAPSHOT_MAX_WORKERS", 8)

INITIAL_ADMIN_EMAIL = os.getenv("INITIAL_ADMIN_EMAIL", "")
INITIAL_ADMIN_PASSWORD = os.getenv("INITIAL_ADMIN_PASSWORD", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
