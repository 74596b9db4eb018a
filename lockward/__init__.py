"""Lockward: dependency integrity verification and hermetic build gate.

Turns a lock manifest into a verified, ordered build:
  - Every dependency is pinned by a content digest (sha256/384/512)
  - Fetched bytes are untrusted until they hash to the pinned digest
  - Verified artifacts live in a content-addressed, tamper-evident store
  - Lifecycle scripts run only under an explicit policy, inside a sandbox
  - The build fails closed, attributing the first failure in topological order
"""

__version__ = "0.1.0"
__description__ = "Dependency integrity verification and hermetic build gate"

from lockward.core.artifact_store import ContentAddressedStore
from lockward.core.integrity import IntegrityVerifier
from lockward.core.manifest_resolver import ManifestResolver
from lockward.core.orchestrator import BuildOrchestrator
from lockward.core.sandbox import Sandbox

__all__ = [
    "BuildOrchestrator",
    "ContentAddressedStore",
    "IntegrityVerifier",
    "ManifestResolver",
    "Sandbox",
    "__version__",
]
