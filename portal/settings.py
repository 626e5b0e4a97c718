import os
from dataclasses import dataclass
from pathlib import Path

_TRUTHY = {"1", "true", "yes", "on"}
_WEAK_SECRET_MARKERS = {
    "change-me",
    "change-this-secret",
    "default-secret",
    "doowon-portal-dev-secret",
}

BASE_DIR = Path(__file__).resolve().parents[1]
DEFAULT_FIELD_CONFIG_PATH = BASE_DIR / "data" / "field-configs.json"


def _env_enabled(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return bool(default)
    return raw.lower() in _TRUTHY


def _allow_insecure_defaults() -> bool:
    return _env_enabled("ALLOW_INSECURE_DEFAULTS", False)


def _safe_int_env(name: str, default: int, minimum: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        value = int(default)
    return max(minimum, value)


def _safe_float_env(name: str, default: float, minimum: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        value = float(raw) if raw else float(default)
    except ValueError:
        value = float(default)
    return max(minimum, value)


def _require_secret(name: str, *, min_len: int = 16) -> str:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        generated = os.urandom(max(32, min_len)).hex()
        os.environ[name] = generated
        return generated
    lowered = raw.lower()
    if _allow_insecure_defaults():
        return raw
    if lowered in _WEAK_SECRET_MARKERS:
        raise RuntimeError(f"{name} uses an insecure default-like value")
    if len(raw) < min_len:
        raise RuntimeError(f"{name} must be at least {min_len} characters")
    return raw


@dataclass(frozen=True)
class Settings:
    cb_base_url: str
    session_secret: str
    field_config_path: Path
    cb_timeout_seconds: float = 10.0
    session_max_age: int = 24 * 60 * 60
    cookie_secure: bool = False
    status_ttl_seconds: float = 5.0


def load_settings() -> Settings:
    # CB_BASE_URL 예: https://codebeamer.example.com/cb
    base_url = (os.getenv("CB_BASE_URL") or "").strip().rstrip("/")
    config_path = (os.getenv("PORTAL_FIELD_CONFIG_PATH") or "").strip()
    return Settings(
        cb_base_url=base_url,
        session_secret=_require_secret("SESSION_SECRET"),
        field_config_path=Path(config_path) if config_path else DEFAULT_FIELD_CONFIG_PATH,
        cb_timeout_seconds=_safe_float_env("CB_TIMEOUT_SECONDS", 10.0, 1.0),
        session_max_age=_safe_int_env("PORTAL_SESSION_MAX_AGE", 24 * 60 * 60, 60),
        cookie_secure=_env_enabled("PORTAL_COOKIE_SECURE", False),
        status_ttl_seconds=_safe_float_env("PORTAL_STATUS_TTL_SECONDS", 5.0, 0.0),
    )
