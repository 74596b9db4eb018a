"""Integrity verification — the trust boundary.

Nothing fetched is trusted until ``IntegrityVerifier.verify`` says so. The
verifier is pure: it hashes the candidate bytes with the expected digest's
algorithm and compares the encoded hash exactly. There is no partial or
fuzzy matching.
"""

from __future__ import annotations

import hmac

from pydantic import BaseModel, ConfigDict

from lockward.core.errors import DigestMismatch
from lockward.core.hasher import compute_digest
from lockward.models.digest import Digest


class VerificationResult(BaseModel):
    """``ok`` or ``mismatch(expected, actual)``."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    expected: Digest
    actual: Digest

    @property
    def is_mismatch(self) -> bool:
        return not self.ok


def digests_equal(a: Digest, b: Digest) -> bool:
    """Exact equality: same algorithm and byte-identical hash."""
    return a.algorithm == b.algorithm and hmac.compare_digest(a.raw, b.raw)


class IntegrityVerifier:
    """Computes and compares digests of candidate bytes."""

    def verify(self, expected: Digest, candidate: bytes) -> VerificationResult:
        actual = compute_digest(candidate, expected.algorithm)
        return VerificationResult(
            ok=digests_equal(expected, actual),
            expected=expected,
            actual=actual,
        )

    def require(self, expected: Digest, candidate: bytes) -> Digest:
        """Like ``verify`` but raises ``DigestMismatch`` instead of returning it."""
        result = self.verify(expected, candidate)
        if not result.ok:
            raise DigestMismatch(result.expected, result.actual)
        return result.actual
