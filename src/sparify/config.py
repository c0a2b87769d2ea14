"""Configuration for Sparify, read from the environment (and a ``.env`` file)."""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

from dotenv import load_dotenv

from .exceptions import KeyMaterialError

load_dotenv()

DEFAULT_DATABASE_URL = "sqlite:///sparify.db"
DEFAULT_KDF_ITERATIONS = 200_000
DEFAULT_LOAD_TIMEOUT_SECONDS = 15.0
DEFAULT_DEBOUNCE_MS = 500
DEFAULT_MAX_SYNC_ATTEMPTS = 3
CONCURRENCY_LAST_WRITE_WINS = "last_write_wins"
CONCURRENCY_OPTIMISTIC = "optimistic"
CONCURRENCY_MODES = (CONCURRENCY_LAST_WRITE_WINS, CONCURRENCY_OPTIMISTIC)


@dataclass(slots=True, frozen=True)
class Settings:
    cipher_secret: str
    cipher_salt: str
    kdf_iterations: int = DEFAULT_KDF_ITERATIONS
    database_url: str = DEFAULT_DATABASE_URL
    concurrency: str = CONCURRENCY_LAST_WRITE_WINS
    max_sync_attempts: int = DEFAULT_MAX_SYNC_ATTEMPTS
    load_timeout: float = DEFAULT_LOAD_TIMEOUT_SECONDS
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    log_path: Optional[str] = None

    @property
    def debounce(self) -> timedelta:
        return timedelta(milliseconds=self.debounce_ms)


def _int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}.") from exc


def _float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be a number, got {raw!r}.") from exc


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from ``environ`` (``os.environ`` by default).

    Missing key material is fatal: it raises :class:`KeyMaterialError` here so
    the process fails at startup instead of on the first decrypt.
    """

    env = os.environ if environ is None else environ
    secret = env.get("SPARIFY_SECRET", "")
    salt = env.get("SPARIFY_SALT", "")
    if not secret or not salt:
        raise KeyMaterialError("SPARIFY_SECRET and SPARIFY_SALT must both be set.")
    concurrency = env.get("SPARIFY_CONCURRENCY", CONCURRENCY_LAST_WRITE_WINS).strip().lower()
    if concurrency not in CONCURRENCY_MODES:
        raise ValueError(f"SPARIFY_CONCURRENCY must be one of {CONCURRENCY_MODES}, got {concurrency!r}.")
    return Settings(
        cipher_secret=secret,
        cipher_salt=salt,
        kdf_iterations=_int(env, "SPARIFY_KDF_ITERATIONS", DEFAULT_KDF_ITERATIONS),
        database_url=env.get("SPARIFY_DATABASE_URL", DEFAULT_DATABASE_URL),
        concurrency=concurrency,
        max_sync_attempts=max(1, _int(env, "SPARIFY_MAX_SYNC_ATTEMPTS", DEFAULT_MAX_SYNC_ATTEMPTS)),
        load_timeout=_float(env, "SPARIFY_LOAD_TIMEOUT", DEFAULT_LOAD_TIMEOUT_SECONDS),
        debounce_ms=max(0, _int(env, "SPARIFY_REALTIME_DEBOUNCE_MS", DEFAULT_DEBOUNCE_MS)),
        log_path=env.get("SPARIFY_LOG_PATH") or None,
    )


__all__ = [
    "CONCURRENCY_LAST_WRITE_WINS",
    "CONCURRENCY_MODES",
    "CONCURRENCY_OPTIMISTIC",
    "DEFAULT_DATABASE_URL",
    "Settings",
    "load_settings",
]
