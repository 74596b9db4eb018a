"""Lockward data models — all Pydantic v2, all frozen (immutable)."""

from lockward.models.artifacts import Artifact, StoreRef, StoreRoot
from lockward.models.attestation import BuildAttestation
from lockward.models.build import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    BuildResult,
    ErrorKind,
    NodeFailure,
    NodeState,
)
from lockward.models.digest import Digest, HashAlgorithm, InvalidDigestError
from lockward.models.ledger import LedgerEntry
from lockward.models.manifest import (
    ExecutionPolicy,
    IntegrityCoverage,
    LifecycleScript,
    ManifestEntry,
    node_key,
)
from lockward.models.sandbox import SandboxExecutionRecord, SandboxStatus

__all__ = [
    # digest
    "Digest",
    "HashAlgorithm",
    "InvalidDigestError",
    # artifacts
    "Artifact",
    "StoreRef",
    "StoreRoot",
    # manifest
    "ExecutionPolicy",
    "LifecycleScript",
    "ManifestEntry",
    "IntegrityCoverage",
    "node_key",
    # sandbox
    "SandboxStatus",
    "SandboxExecutionRecord",
    # build
    "NodeState",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "ErrorKind",
    "NodeFailure",
    "BuildResult",
    # attestation
    "BuildAttestation",
    # ledger
    "LedgerEntry",
]
