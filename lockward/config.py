"""Runtime configuration — env-driven.

Centralized settings using pydantic-settings. Reads from a .env file and
LOCKWARD_* environment variables.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LockwardSettings(BaseSettings):
    """Lockward configuration with environment variable overrides.

    All settings can be overridden via LOCKWARD_* environment variables
    or a .env file in the working directory.

    Examples
    --------
    Override via environment::

        export LOCKWARD_ENVIRONMENT=production
        export LOCKWARD_CONCURRENCY=4
        export LOCKWARD_STORE_PATH=/var/cache/lockward/store

    Or via .env file::

        LOCKWARD_SANDBOX_BACKEND=bwrap
        LOCKWARD_ATTESTATION_SIGNING_KEY=<hex seed>
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LOCKWARD_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Storage paths
    store_path: Path = Path(".lockward/store")
    ledger_path: Path = Path(".lockward/ledger.db")

    # Orchestration
    concurrency: int = Field(default=8, ge=1)
    fail_closed: bool = True

    # Sandbox
    sandbox_timeout_s: float = Field(default=300.0, gt=0)
    sandbox_backend: Literal["auto", "process", "unshare", "bwrap"] = "auto"

    # Fetching
    fetch_timeout_s: float = Field(default=30.0, gt=0)

    # Attestation keys (hex). The signing key is an Ed25519 seed.
    attestation_signing_key: str = ""
    attestation_verify_key: str = ""

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"


# Module-level singleton: import as `from lockward.config import settings`
settings = LockwardSettings()
