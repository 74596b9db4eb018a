"""Build ledger entry model (append-only, hash-chained audit log)."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntry(BaseModel):
    """A single entry in the append-only build ledger.

    One entry per node state transition, plus one per sandbox record.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    node: str
    state_transition: str  # "from_state->to_state", or "sandbox:<phase>"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    digest: str = ""  # address of the artifact the entry concerns
    detail: dict[str, Any] = Field(default_factory=dict)
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry
