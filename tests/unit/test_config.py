"""Tests for LockwardSettings — env-driven configuration."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from lockward.config import LockwardSettings


class TestLockwardSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("LOCKWARD_CONCURRENCY", raising=False)
        settings = LockwardSettings(_env_file=None)
        assert settings.environment == "development"
        assert settings.log_level == "INFO"
        assert settings.concurrency == 8
        assert settings.fail_closed is True
        assert settings.sandbox_backend == "auto"

    def test_default_paths(self):
        settings = LockwardSettings(_env_file=None)
        assert settings.store_path == Path(".lockward/store")
        assert settings.ledger_path == Path(".lockward/ledger.db")

    def test_is_production(self):
        assert LockwardSettings(_env_file=None).is_production is False
        assert LockwardSettings(_env_file=None, environment="production").is_production is True

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("LOCKWARD_CONCURRENCY", "3")
        monkeypatch.setenv("LOCKWARD_FAIL_CLOSED", "false")
        monkeypatch.setenv("LOCKWARD_SANDBOX_BACKEND", "unshare")
        settings = LockwardSettings(_env_file=None)
        assert settings.concurrency == 3
        assert settings.fail_closed is False
        assert settings.sandbox_backend == "unshare"

    def test_env_file(self, tmp_dir: Path):
        env_file = tmp_dir / ".env"
        env_file.write_text("LOCKWARD_STORE_PATH=/srv/lockward/store\n")
        settings = LockwardSettings(_env_file=env_file)
        assert settings.store_path == Path("/srv/lockward/store")

    @pytest.mark.parametrize(
        "overrides",
        [{"concurrency": 0}, {"sandbox_backend": "docker"}, {"sandbox_timeout_s": 0}],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ValidationError):
            LockwardSettings(_env_file=None, **overrides)
