"""Sandbox execution records — immutable audit of each lifecycle script run."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class SandboxStatus(str, Enum):
    """How a sandboxed script ended."""

    COMPLETED = "completed"
    NON_ZERO_EXIT = "non_zero_exit"
    TIMED_OUT = "timed_out"
    WRITE_VIOLATION = "write_violation"
    CANCELLED = "cancelled"
    LAUNCH_FAILED = "launch_failed"

    @property
    def ok(self) -> bool:
        return self is SandboxStatus.COMPLETED


class SandboxExecutionRecord(BaseModel):
    """Created per lifecycle-script invocation; used only for audit and reporting.

    ``declared_writes`` maps each committed output path to the store address
    of its bytes. It is empty unless the run completed cleanly: commits are
    all-or-nothing.
    """

    model_config = ConfigDict(frozen=True)

    artifact_digest: str  # prefixed-hex address of the artifact under test
    phase: str
    command: str
    status: SandboxStatus
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    declared_writes: dict[str, str] = Field(default_factory=dict)
    denied_writes: list[str] = Field(default_factory=list)
    duration_s: float = 0.0
    controls: list[str] = Field(default_factory=list)  # isolation controls applied
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
