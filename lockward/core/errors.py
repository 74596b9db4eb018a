"""Error taxonomy for resolution, per-node and per-script failures.

Resolution errors abort before any I/O. Node errors fail one node (and,
fail-closed, the build). Sandbox errors are fatal only for mandatory phases.
"""

from __future__ import annotations

from typing import ClassVar

from lockward.models.build import ErrorKind
from lockward.models.digest import Digest


class LockwardError(Exception):
    """Base class for every error raised by lockward."""


# ---------------------------------------------------------------------------
# Resolution-time
# ---------------------------------------------------------------------------


class ResolutionError(LockwardError):
    """Raised when a lock manifest cannot become a dependency graph."""


class MalformedManifest(ResolutionError):
    """Raised when the manifest cannot be parsed or has an invalid shape."""


class CyclicDependency(ResolutionError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, message: str, nodes: list[str] | None = None) -> None:
        super().__init__(message)
        self.nodes = nodes or []


class MissingIntegrityField(ResolutionError):
    """Raised when an entry has no usable expected digest."""

    def __init__(self, message: str, node: str = "") -> None:
        super().__init__(message)
        self.node = node


# ---------------------------------------------------------------------------
# Per-node
# ---------------------------------------------------------------------------


class NodeError(LockwardError):
    """A failure attributable to one dependency node."""

    kind: ClassVar[ErrorKind]


class DigestMismatch(NodeError):
    """Raised when bytes do not hash to the expected digest."""

    kind = ErrorKind.DIGEST_MISMATCH

    def __init__(self, expected: Digest, actual: Digest) -> None:
        super().__init__(
            f"digest mismatch: expected {expected.address}, got {actual.address}"
        )
        self.expected = expected
        self.actual = actual


class NotFound(NodeError):
    """Raised when an artifact is absent from the store or the source."""

    kind = ErrorKind.NOT_FOUND


class FetchFailed(NodeError):
    """Raised when the fetch collaborator could not deliver bytes."""

    kind = ErrorKind.FETCH_FAILED


class ArtifactIntegrityError(NodeError):
    """Raised when stored bytes no longer hash to their own address."""

    kind = ErrorKind.STORE_INTEGRITY


# ---------------------------------------------------------------------------
# Per-script
# ---------------------------------------------------------------------------


class SandboxError(NodeError):
    """A lifecycle script ended badly; fatal only under a mandatory policy."""


class SandboxTimedOut(SandboxError):
    kind = ErrorKind.SANDBOX_TIMED_OUT


class SandboxNonZeroExit(SandboxError):
    kind = ErrorKind.SANDBOX_NON_ZERO_EXIT


class SandboxWriteViolation(SandboxError):
    kind = ErrorKind.SANDBOX_WRITE_VIOLATION


class SandboxLaunchFailed(SandboxError):
    """The script never started, including a refusal to run it unconfined."""

    kind = ErrorKind.SANDBOX_LAUNCH_FAILED


class BuildCancelled(LockwardError):
    """Raised inside a worker when fail-closed cancellation has been signalled."""
