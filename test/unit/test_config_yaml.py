"""Unit tests for YAML configuration loading."""

import pytest
from pydantic import ValidationError

import hashsync.config as config_module

_ENV_KEYS = [
    "HASHSYNC_DATABASE_URL",
    "DATABASE_URL",
    "HASHSYNC_HASH_ALGORITHM",
    "HASHSYNC_MAX_DEPTH",
    "HASHSYNC_RETRY_INTERVALS",
    "HASHSYNC_DELIVERY_TIMEOUT",
    "HASHSYNC_DRIFT_CHUNK_SIZE",
    "HASHSYNC_LOG_LEVEL",
    "HASHSYNC_LOG_JSON",
]


def _clear_env(monkeypatch, keys):
    """Clear environment variables for config tests."""
    for key in keys:
        monkeypatch.delenv(key, raising=False)


def _use_config_files(monkeypatch, defaults, user_paths):
    monkeypatch.setattr(config_module, "_DEFAULT_CONFIG_PATH", defaults)
    monkeypatch.setattr(config_module, "_USER_CONFIG_PATHS", user_paths)


def test_yaml_precedence(monkeypatch, tmp_path):
    """Environment variables override user YAML, which overrides defaults."""
    defaults = tmp_path / "defaults.yml"
    user_cfg = tmp_path / "user.yml"
    defaults.write_text(
        "\n".join(
            [
                "database:",
                "  url: sqlite:///default.db",
                "hashing:",
                "  algorithm: md5",
                "propagation:",
                "  max_depth: 5",
                "drift:",
                "  chunk_size: 50",
            ]
        ),
        encoding="utf-8",
    )
    user_cfg.write_text(
        "\n".join(
            [
                "propagation:",
                "  max_depth: 7",
                "drift:",
                "  chunk_size: 75",
            ]
        ),
        encoding="utf-8",
    )
    _clear_env(monkeypatch, _ENV_KEYS)
    monkeypatch.setenv("HASHSYNC_HASH_ALGORITHM", "SHA256")
    monkeypatch.setenv("HASHSYNC_DRIFT_CHUNK_SIZE", "99")
    _use_config_files(monkeypatch, defaults, [user_cfg])

    settings = config_module.Settings()

    assert settings.database.url == "sqlite:///default.db"
    assert settings.hashing.algorithm == "sha256"
    assert settings.propagation.max_depth == 7
    assert settings.drift.chunk_size == 99


def test_defaults_without_files(monkeypatch, tmp_path):
    """Missing config files fall back to built-in defaults."""
    _clear_env(monkeypatch, _ENV_KEYS)
    _use_config_files(monkeypatch, tmp_path / "missing.yml", [])

    settings = config_module.Settings()

    assert settings.hashing.algorithm == "md5"
    assert settings.delivery.retry_intervals == {1: 30, 2: 300, 3: 21600}
    assert settings.propagation.max_depth == 10


def test_retry_intervals_from_env_json(monkeypatch, tmp_path):
    """JSON retry tables from the environment are coerced to integer keys."""
    _clear_env(monkeypatch, _ENV_KEYS)
    monkeypatch.setenv("HASHSYNC_RETRY_INTERVALS", '{"2": 60, "1": 5}')
    _use_config_files(monkeypatch, tmp_path / "missing.yml", [])

    settings = config_module.Settings()

    assert settings.delivery.retry_intervals == {1: 5, 2: 60}


@pytest.mark.parametrize(
    "yaml_text",
    [
        "hashing:\n  algorithm: sha1\n",
        "delivery:\n  retry_intervals: {}\n",
        "delivery:\n  retry_intervals:\n    1: 30\n    3: 60\n",
        "propagation:\n  max_depth: 0\n",
        "delivery:\n  timeout_seconds: 0\n",
    ],
)
def test_invalid_values_fail_fast(monkeypatch, tmp_path, yaml_text):
    """Unsupported algorithms and malformed tables are rejected at load time."""
    defaults = tmp_path / "defaults.yml"
    defaults.write_text(yaml_text, encoding="utf-8")
    _clear_env(monkeypatch, _ENV_KEYS)
    _use_config_files(monkeypatch, defaults, [])

    with pytest.raises(ValidationError):
        config_module.Settings()


def test_non_mapping_yaml_rejected(monkeypatch, tmp_path):
    defaults = tmp_path / "defaults.yml"
    defaults.write_text("- just\n- a list\n", encoding="utf-8")
    _clear_env(monkeypatch, _ENV_KEYS)
    _use_config_files(monkeypatch, defaults, [])

    with pytest.raises(ValueError):
        config_module.Settings()
