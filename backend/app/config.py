"""
Runtime settings for the clinical tracker backend.

Everything is read from environment variables; a local ``.env`` file is
loaded first if present. ``get_settings()`` builds a fresh object on every
call so tests can tweak ``os.environ`` before the app module is imported.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv(override=False)

DEFAULT_DATABASE_URL = "sqlite:///./clinical_tracker.db"
DEFAULT_SESSION_SECRET = "change-me"


def _is_placeholder(value: str) -> bool:
    return not value or value == DEFAULT_SESSION_SECRET or "<" in value or value.startswith("your-")


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def normalize_database_url(url: str) -> str:
    # Hosted Postgres providers still hand out the legacy scheme.
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


@dataclass(frozen=True)
class Settings:
    database_url: str
    session_secret: str
    session_max_age_seconds: int
    log_level: str
    cors_origins: tuple[str, ...]
    bootstrap_admin_email: str
    bootstrap_admin_password: str
    protected_superadmins: tuple[str, ...]
    seed_reference_data: bool

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def session_secret_is_placeholder(self) -> bool:
        return _is_placeholder(self.session_secret)


def get_settings() -> Settings:
    _str = lambda k, d="": os.getenv(k, d).strip()
    _int = lambda k, d=0: int(os.getenv(k, str(d)) or d)
    _bool = lambda k, d=False: os.getenv(k, str(d)).lower() in ("1", "true", "yes")

    return Settings(
        database_url=normalize_database_url(_str("DATABASE_URL", DEFAULT_DATABASE_URL)),
        session_secret=_str("SESSION_SECRET", DEFAULT_SESSION_SECRET),
        session_max_age_seconds=_int("SESSION_MAX_AGE_SECONDS", 12 * 60 * 60),
        log_level=_str("LOG_LEVEL", "INFO").upper(),
        cors_origins=_split_csv(_str("CORS_ORIGINS", "*")) or ("*",),
        bootstrap_admin_email=_str("BOOTSTRAP_ADMIN_EMAIL", "admin@example.edu").lower(),
        bootstrap_admin_password=_str("BOOTSTRAP_ADMIN_PASSWORD", "admin"),
        protected_superadmins=tuple(e.lower() for e in _split_csv(_str("PROTECTED_SUPERADMINS"))),
        seed_reference_data=_bool("SEED_REFERENCE_DATA", True),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
