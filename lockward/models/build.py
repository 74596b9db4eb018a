"""Build orchestration models — per-node state machine and the build result."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from lockward.models.artifacts import Artifact
from lockward.models.sandbox import SandboxExecutionRecord


class NodeState(str, Enum):
    """Lifecycle of one dependency node during a build."""

    PENDING = "pending"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    SANDBOXED = "sandboxed"
    COMPLETE = "complete"
    FAILED = "failed"
    BLOCKED = "blocked"  # a dependency failed
    CANCELLED = "cancelled"  # fail-closed cancellation reached this node


# Enforced by NodeStateMachine. Terminal states have no outgoing transitions.
VALID_TRANSITIONS: dict[NodeState, set[NodeState]] = {
    NodeState.PENDING: {NodeState.FETCHING, NodeState.BLOCKED, NodeState.CANCELLED},
    NodeState.FETCHING: {NodeState.VERIFYING, NodeState.FAILED, NodeState.CANCELLED},
    NodeState.VERIFYING: {NodeState.VERIFIED, NodeState.FAILED, NodeState.CANCELLED},
    NodeState.VERIFIED: {NodeState.SANDBOXED, NodeState.COMPLETE, NodeState.CANCELLED},
    NodeState.SANDBOXED: {NodeState.COMPLETE, NodeState.FAILED, NodeState.CANCELLED},
    NodeState.COMPLETE: set(),
    NodeState.FAILED: set(),
    NodeState.BLOCKED: set(),
    # A cancelled node may be picked up again by the sequential attribution pass.
    NodeState.CANCELLED: {NodeState.FETCHING, NodeState.BLOCKED},
}

TERMINAL_STATES: frozenset[NodeState] = frozenset(
    {NodeState.COMPLETE, NodeState.FAILED, NodeState.BLOCKED}
)


class ErrorKind(str, Enum):
    """Attribution for a failed node."""

    DIGEST_MISMATCH = "digest_mismatch"
    NOT_FOUND = "not_found"
    FETCH_FAILED = "fetch_failed"
    SANDBOX_TIMED_OUT = "sandbox_timed_out"
    SANDBOX_NON_ZERO_EXIT = "sandbox_non_zero_exit"
    SANDBOX_WRITE_VIOLATION = "sandbox_write_violation"
    SANDBOX_LAUNCH_FAILED = "sandbox_launch_failed"
    STORE_INTEGRITY = "store_integrity"


class NodeFailure(BaseModel):
    """Why a node failed."""

    model_config = ConfigDict(frozen=True)

    node: str
    kind: ErrorKind
    message: str


class BuildResult(BaseModel):
    """The externally observable outcome of one orchestration run.

    The failing node is the first failure in topological order, so the
    result does not depend on worker interleaving.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    success: bool
    root_digest: str | None = None  # prefixed-hex address of the build manifest
    verified_digests: list[str] = Field(default_factory=list)
    artifacts: list[Artifact] = Field(default_factory=list)  # verified nodes, topological order
    failing_node: str | None = None
    error_kind: ErrorKind | None = None
    error_message: str = ""
    warnings: list[str] = Field(default_factory=list)
    sandbox_records: list[SandboxExecutionRecord] = Field(default_factory=list)
