from __future__ import annotations

import logging
import os
from dataclasses import dataclass

try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass


STORE_BACKENDS = {"sql", "firestore"}
AUTH_BACKENDS = {"firebase", "static"}
LIFECYCLES = {"staged", "instant"}
TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    store_backend: str = "sql"
    db_url: str = "sqlite+aiosqlite:///./rental_hub.db"
    create_tables: bool = True
    auth_backend: str = "firebase"
    static_tokens: dict[str, str] | None = None
    lifecycle: str = "staged"
    sweep_enabled: bool = True
    sweep_initial_delay: float = 5.0
    sweep_interval: float = 24 * 60 * 60
    cors_allow_origins: tuple[str, ...] = ("http://localhost:3000", "http://127.0.0.1:3000")
    cors_allow_credentials: bool = True
    firebase_project_id: str | None = None
    firebase_private_key: str | None = None
    firebase_client_email: str | None = None
    firebase_credentials_file: str = "serviceAccountKey.json"
    log_level: str = "INFO"


def _env(name: str, default: str) -> str:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _parse_bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in TRUTHY


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_seconds_env(name: str, default: float) -> float:
    raw = _env(name, str(default))
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number of seconds, got {raw!r}") from exc
    if value < 0:
        raise RuntimeError(f"{name} must not be negative.")
    return value


def _parse_choice_env(name: str, default: str, choices: set[str]) -> str:
    value = _env(name, default).lower()
    if value not in choices:
        raise RuntimeError(f"{name} must be one of {sorted(choices)}, got {value!r}")
    return value


def parse_static_tokens(raw: str) -> dict[str, str]:
    """Parse ``token:uid`` pairs separated by commas."""
    tokens: dict[str, str] = {}
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        token, sep, uid = pair.partition(":")
        if not sep or not token.strip() or not uid.strip():
            raise RuntimeError(f"RENTAL_HUB_STATIC_TOKENS entry must look like token:uid, got {pair!r}")
        tokens[token.strip()] = uid.strip()
    return tokens


def load_cors_settings() -> tuple[tuple[str, ...], bool]:
    """Return the allowed origins and whether credentials are allowed.

    The middleware is installed when the app module is imported, before the
    lifespan reads the rest of the settings, so this never raises.
    """
    origins = tuple(_parse_csv_env("CORS_ALLOW_ORIGINS", ",".join(Settings.cors_allow_origins)))
    allow_credentials = _parse_bool_env("CORS_ALLOW_CREDENTIALS", True)
    if "*" in origins:
        # Browsers reject wildcard origins with credentials.
        allow_credentials = False
    return origins, allow_credentials


def load_settings() -> Settings:
    origins, allow_credentials = load_cors_settings()
    private_key = os.environ.get("FIREBASE_PRIVATE_KEY")
    if private_key:
        private_key = private_key.replace("\\n", "\n")

    return Settings(
        store_backend=_parse_choice_env("RENTAL_HUB_STORE", "sql", STORE_BACKENDS),
        db_url=_env("RENTAL_HUB_DB_URL", Settings.db_url),
        create_tables=_parse_bool_env("RENTAL_HUB_CREATE_TABLES", True),
        auth_backend=_parse_choice_env("RENTAL_HUB_AUTH", "firebase", AUTH_BACKENDS),
        static_tokens=parse_static_tokens(os.environ.get("RENTAL_HUB_STATIC_TOKENS", "")),
        lifecycle=_parse_choice_env("RENTAL_HUB_LIFECYCLE", "staged", LIFECYCLES),
        sweep_enabled=_parse_bool_env("SWEEP_ENABLED", True),
        sweep_initial_delay=_parse_seconds_env("SWEEP_INITIAL_DELAY_SECONDS", Settings.sweep_initial_delay),
        sweep_interval=_parse_seconds_env("SWEEP_INTERVAL_SECONDS", Settings.sweep_interval),
        cors_allow_origins=origins,
        cors_allow_credentials=allow_credentials,
        firebase_project_id=os.environ.get("FIREBASE_PROJECT_ID") or None,
        firebase_private_key=private_key or None,
        firebase_client_email=os.environ.get("FIREBASE_CLIENT_EMAIL") or None,
        firebase_credentials_file=_env("GOOGLE_APPLICATION_CREDENTIALS", Settings.firebase_credentials_file),
        log_level=_env("LOG_LEVEL", Settings.log_level).upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
