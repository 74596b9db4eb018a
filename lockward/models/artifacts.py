"""Content-addressed artifact models (immutable once stored)."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from lockward.models.digest import Digest


class StoreRef(BaseModel):
    """A reference to bytes held by the artifact store.

    The digest is both the identity and the integrity check.
    """

    model_config = ConfigDict(frozen=True)

    digest: Digest
    size_bytes: int
    path: str  # location inside the store, informational only


class Artifact(BaseModel):
    """A verified package artifact — metadata plus the ref to its bytes.

    Created on the first successful verified fetch and never mutated.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    digest: Digest
    source_url: str
    ref: StoreRef
    stored_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class StoreRoot(BaseModel):
    """A live manifest registered with the store for garbage collection."""

    model_config = ConfigDict(frozen=True)

    name: str
    digests: list[str] = Field(default_factory=list)  # prefixed-hex addresses
    registered_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
