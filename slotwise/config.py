import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./slotwise.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", True)

    CACHE_BACKEND = os.getenv("CACHE_BACKEND", "redis").strip().lower()
    REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0").strip()
    CACHE_DIR = os.getenv("CACHE_DIR", "./.cache").strip()
    CACHE_TTL_AVAILABILITY = _get_int("CACHE_TTL_AVAILABILITY", 60)

    RBAC_ENABLE_CACHING = _get_bool("RBAC_ENABLE_CACHING", True)
    RBAC_CACHE_TTL = _get_int("RBAC_CACHE_TTL", 3600)
    RBAC_DEFAULT_ROLE = os.getenv("RBAC_DEFAULT_ROLE", "client").strip()
    LEGACY_ROLE_OVERRIDE_ENABLED = _get_bool("LEGACY_ROLE_OVERRIDE_ENABLED", True)

    AUTH_SECRET_KEY = os.getenv("AUTH_SECRET_KEY", "change-this-in-prod").strip()
    AUTH_ALGORITHM = os.getenv("AUTH_ALGORITHM", "HS256").strip()
    AUTH_ACCESS_TOKEN_MINUTES = _get_int("AUTH_ACCESS_TOKEN_MINUTES", 60)
    AUTH_ISSUER = os.getenv("AUTH_ISSUER", "slotwise").strip()
    AUTH_AUDIENCE = os.getenv("AUTH_AUDIENCE", "slotwise-api").strip()
    AUTH_PASSWORD_MIN_LENGTH = _get_int("AUTH_PASSWORD_MIN_LENGTH", 8)
    AUTH_REFRESH_TOKEN_DAYS = _get_int("AUTH_REFRESH_TOKEN_DAYS", 7)

    AUTH_LOGIN_RL_MAX = _get_int("AUTH_LOGIN_RL_MAX", 5)
    AUTH_LOGIN_RL_WINDOW_SECONDS = _get_int("AUTH_LOGIN_RL_WINDOW_SECONDS", 900)
    AUTH_REGISTER_RL_MAX = _get_int("AUTH_REGISTER_RL_MAX", 3)
    AUTH_REGISTER_RL_WINDOW_SECONDS = _get_int("AUTH_REGISTER_RL_WINDOW_SECONDS", 3600)
    AUTH_REFRESH_RL_MAX = _get_int("AUTH_REFRESH_RL_MAX", 10)
    AUTH_REFRESH_RL_WINDOW_SECONDS = _get_int("AUTH_REFRESH_RL_WINDOW_SECONDS", 900)

    MIN_BOOKING_MINUTES = _get_int("MIN_BOOKING_MINUTES", 15)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)


settings = Settings()
