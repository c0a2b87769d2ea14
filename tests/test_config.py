from datetime import timedelta

import pytest

from sparify.config import CONCURRENCY_OPTIMISTIC, DEFAULT_DATABASE_URL, load_settings
from sparify.crypto import AmountCipher
from sparify.exceptions import KeyMaterialError


def test_defaults_apply_when_only_key_material_is_set() -> None:
    settings = load_settings({"SPARIFY_SECRET": "s3cret", "SPARIFY_SALT": "pepper"})

    assert settings.database_url == DEFAULT_DATABASE_URL
    assert settings.concurrency == "last_write_wins"
    assert settings.max_sync_attempts == 3
    assert settings.load_timeout == 15.0
    assert settings.debounce == timedelta(milliseconds=500)
    assert settings.log_path is None


def test_environment_overrides() -> None:
    settings = load_settings(
        {
            "SPARIFY_SECRET": "s3cret",
            "SPARIFY_SALT": "pepper",
            "SPARIFY_KDF_ITERATIONS": "1000",
            "SPARIFY_DATABASE_URL": "sqlite:///other.db",
            "SPARIFY_CONCURRENCY": "Optimistic",
            "SPARIFY_MAX_SYNC_ATTEMPTS": "5",
            "SPARIFY_LOAD_TIMEOUT": "2.5",
            "SPARIFY_REALTIME_DEBOUNCE_MS": "0",
            "SPARIFY_LOG_PATH": "/tmp/sparify.log",
        }
    )

    assert settings.kdf_iterations == 1000
    assert settings.database_url == "sqlite:///other.db"
    assert settings.concurrency == CONCURRENCY_OPTIMISTIC
    assert settings.max_sync_attempts == 5
    assert settings.load_timeout == 2.5
    assert settings.debounce == timedelta(0)
    assert settings.log_path == "/tmp/sparify.log"
    assert AmountCipher.from_settings(settings).decrypt(AmountCipher("s3cret", "pepper", iterations=1000).zero()) == 0


def test_missing_key_material_fails_at_startup() -> None:
    with pytest.raises(KeyMaterialError):
        load_settings({"SPARIFY_SECRET": "s3cret"})
    with pytest.raises(KeyMaterialError):
        load_settings({})


def test_invalid_values_are_reported() -> None:
    base = {"SPARIFY_SECRET": "s3cret", "SPARIFY_SALT": "pepper"}
    with pytest.raises(ValueError):
        load_settings({**base, "SPARIFY_CONCURRENCY": "pessimistic"})
    with pytest.raises(ValueError):
        load_settings({**base, "SPARIFY_MAX_SYNC_ATTEMPTS": "many"})
