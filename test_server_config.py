"""
Configuration loading tests
"""

from pathlib import Path

import pytest

from context_auth.core.config import load_settings


def write_config(tmp_path, text):
    cfg = tmp_path / "context-auth.yaml"
    cfg.write_text(text)
    return str(cfg)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("CONTEXT_AUTH_CONFIG", "CONTEXT_AUTH_ENCRYPTION_KEY", "CONTEXT_AUTH_INDEX_KEY"):
        monkeypatch.delenv(var, raising=False)


class TestLoadSettings:

    def test_defaults_fill_gaps(self, tmp_path):
        settings = load_settings(write_config(tmp_path, "policy:\n  max_unverified_attempts: 5\n"))
        assert settings.max_unverified_attempts == 5
        assert settings.audit_retention_seconds == 604800
        assert settings.active_key_version == "v1"
        assert settings.session_samesite == "lax"
        assert settings.cfg_file_used.endswith("context-auth.yaml")
        assert Path(settings.db_path).is_absolute()

    def test_env_placeholders(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_SESSION_SECRET", "s3cret")
        settings = load_settings(write_config(
            tmp_path,
            "session:\n  secret_key: ${TEST_SESSION_SECRET}\n"
            "crypto:\n  index_key: ${TEST_UNSET_INDEX_KEY}\n",
        ))
        assert settings.session_secret_key == "s3cret"
        assert settings.index_key is None

    def test_encryption_key_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONTEXT_AUTH_ENCRYPTION_KEY", "env-key")
        monkeypatch.setenv("CONTEXT_AUTH_INDEX_KEY", "env-index")
        settings = load_settings(write_config(
            tmp_path,
            "crypto:\n  active_key_version: v2\n  keys:\n    v1: old-key\n    v2: file-key\n",
        ))
        assert settings.encryption_keys == {"v1": "old-key", "v2": "env-key"}
        assert settings.index_key == "env-index"

    def test_config_from_environment_variable(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONTEXT_AUTH_CONFIG", write_config(tmp_path, "logging:\n  level: debug\n"))
        assert load_settings().log_level == "DEBUG"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(str(tmp_path / "nope.yaml"))

    def test_threshold_must_be_positive(self, tmp_path):
        with pytest.raises(ValueError):
            load_settings(write_config(tmp_path, "policy:\n  max_unverified_attempts: 0\n"))

    def test_https_only_follows_dev_flag(self, tmp_path):
        settings = load_settings(write_config(tmp_path, "session:\n  dev_allow_insecure_cookie: false\n"))
        assert settings.https_only is True
