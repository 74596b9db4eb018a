"""Signed statement of a successful build."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class BuildAttestation(BaseModel):
    """Ed25519 signature over a build's root digest and verified digests."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    root_digest: str
    verified_digests: list[str] = Field(default_factory=list)
    signed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    verify_key: str  # hex public key of the signer
    signature: str  # hex Ed25519 signature over ``signed_payload``
