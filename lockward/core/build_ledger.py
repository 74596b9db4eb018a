"""Append-only, hash-chained build ledger backed by SQLite.

Every node state transition and every sandbox record of a build run is
appended here. The ledger is the audit trail behind a ``BuildResult``.

Design:
- Append-only: only ``append()`` writes; no update, no delete.
- Hash-chained: each entry includes SHA-256 of the previous entry of its run.
- WAL journal mode for concurrent readers.
- Appends are serialized by a lock so concurrent workers cannot fork the chain.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from lockward.core.hasher import canonical_json_bytes, compute_entry_hash, sha256_hex
from lockward.models.ledger import LedgerEntry

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS build_ledger (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id            TEXT NOT NULL UNIQUE,
    run_id              TEXT NOT NULL,
    node                TEXT NOT NULL,
    state_transition    TEXT NOT NULL,
    timestamp_utc       TEXT NOT NULL,
    digest              TEXT NOT NULL DEFAULT '',
    detail_json         TEXT NOT NULL DEFAULT '{}',
    previous_entry_hash TEXT NOT NULL DEFAULT '',
    entry_hash          TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_RUN = """
CREATE INDEX IF NOT EXISTS idx_build_run ON build_ledger(run_id, id);
"""


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class BuildLedger:
    """Append-only, hash-chained build ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_RUN)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry, computing its hash-chain link.

        Returns the entry with ``previous_entry_hash`` and ``entry_hash`` set.
        """
        with self._lock:
            previous_hash = self._get_latest_hash(entry.run_id)

            entry_dict = entry.model_dump(mode="json")
            entry_dict["previous_entry_hash"] = previous_hash
            entry_dict["entry_hash"] = ""
            entry_hash = compute_entry_hash(entry_dict)

            sealed = entry.model_copy(
                update={
                    "previous_entry_hash": previous_hash,
                    "entry_hash": entry_hash,
                }
            )
            self._insert(sealed)
        return sealed

    def _insert(self, entry: LedgerEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO build_ledger
                    (entry_id, run_id, node, state_transition, timestamp_utc,
                     digest, detail_json, previous_entry_hash, entry_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.run_id,
                    entry.node,
                    entry.state_transition,
                    entry.timestamp_utc.isoformat(),
                    entry.digest,
                    json.dumps(entry.detail, sort_keys=True),
                    entry.previous_entry_hash,
                    entry.entry_hash,
                ),
            )
            conn.commit()

    def _get_latest_hash(self, run_id: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM build_ledger WHERE run_id = ? ORDER BY id DESC LIMIT 1",
                (run_id,),
            ).fetchone()
        return row[0] if row else ""

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_run_entries(self, run_id: str) -> list[LedgerEntry]:
        """Return all ledger entries for a run, ordered chronologically."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM build_ledger WHERE run_id = ? ORDER BY id ASC",
                (run_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_node_history(self, run_id: str, node: str) -> list[LedgerEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM build_ledger WHERE run_id = ? AND node = ? ORDER BY id ASC",
                (run_id, node),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_all_run_ids(self) -> list[str]:
        """Return all distinct run_ids, most recent first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT run_id, MAX(id) AS last FROM build_ledger "
                "GROUP BY run_id ORDER BY last DESC"
            ).fetchall()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, run_id: str) -> bool:
        """Walk a run's entries, recomputing each hash and checking each link.

        Returns True if the chain is valid, raises LedgerIntegrityError otherwise.
        """
        prev_hash = ""
        for entry in self.get_run_entries(run_id):
            if entry.previous_entry_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )
            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, got {entry.entry_hash!r}"
                )
            prev_hash = entry.entry_hash
        return True

    def export_anchor(self, run_id: str) -> dict[str, Any]:
        """Export a tamper-evident anchor for external witnessing.

        Comparing a previously exported anchor against the current chain
        detects retroactive rewrites.
        """
        entries = self.get_run_entries(run_id)
        anchor: dict[str, Any] = {
            "run_id": run_id,
            "entry_count": len(entries),
            "root_hash": entries[-1].entry_hash if entries else "",
            "first_entry_hash": entries[0].entry_hash if entries else "",
            "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        }
        anchor["anchor_hash"] = sha256_hex(canonical_json_bytes(anchor)) if entries else ""
        return anchor

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        (
            _id,
            entry_id,
            run_id,
            node,
            state_transition,
            timestamp_utc,
            digest,
            detail_json,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            run_id=run_id,
            node=node,
            state_transition=state_transition,
            timestamp_utc=timestamp_utc,
            digest=digest,
            detail=json.loads(detail_json),
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
