"""Adversarial tests — build ledger tampering and chain integrity.

An attacker with write access to the SQLite file tries to rewrite history:
1. Corrupted entry hashes
2. Edited payloads (turning a failure into a success)
3. Deleted entries
4. Divergence from a previously exported anchor
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from lockward.core.build_ledger import BuildLedger, LedgerIntegrityError
from lockward.models.ledger import LedgerEntry


def tamper(ledger: BuildLedger, sql: str, *params) -> None:
    conn = sqlite3.connect(str(ledger.db_path))
    conn.execute(sql, params)
    conn.commit()
    conn.close()


class TestLedgerTamperDetection:
    @pytest.fixture
    def seeded(self, tmp_path: Path) -> tuple[BuildLedger, str]:
        ledger = BuildLedger(tmp_path / "ledger.db")
        run_id = "lw-adversarial-001"
        for transition in (
            "pending->fetching",
            "fetching->verifying",
            "verifying->failed",
            "pending->blocked",
            "pending->cancelled",
        ):
            ledger.append(LedgerEntry(
                run_id=run_id, node="left-pad@1.3.0", state_transition=transition,
            ))
        return ledger, run_id

    def test_corrupted_entry_hash_detected(self, seeded):
        ledger, run_id = seeded
        tamper(
            ledger,
            "UPDATE build_ledger SET entry_hash = 'TAMPERED' "
            "WHERE id = (SELECT id FROM build_ledger WHERE run_id = ? ORDER BY id LIMIT 1 OFFSET 2)",
            run_id,
        )
        with pytest.raises(LedgerIntegrityError, match="(Chain broken|Tampered)"):
            ledger.verify_chain(run_id)

    def test_failure_rewritten_as_success_detected(self, seeded):
        ledger, run_id = seeded
        tamper(
            ledger,
            "UPDATE build_ledger SET state_transition = 'verifying->verified' "
            "WHERE state_transition = 'verifying->failed'",
        )
        with pytest.raises(LedgerIntegrityError, match="Tampered"):
            ledger.verify_chain(run_id)

    def test_deleted_entry_detected(self, seeded):
        ledger, run_id = seeded
        tamper(
            ledger,
            "DELETE FROM build_ledger WHERE state_transition = 'fetching->verifying'",
        )
        with pytest.raises(LedgerIntegrityError, match="Chain broken"):
            ledger.verify_chain(run_id)

    def test_detail_edit_detected(self, seeded):
        ledger, run_id = seeded
        tamper(
            ledger,
            "UPDATE build_ledger SET detail_json = '{\"status\": \"completed\"}' "
            "WHERE state_transition = 'pending->blocked'",
        )
        with pytest.raises(LedgerIntegrityError):
            ledger.verify_chain(run_id)

    def test_anchor_diverges_after_rewrite(self, seeded):
        ledger, run_id = seeded
        before = ledger.export_anchor(run_id)
        tamper(
            ledger,
            "DELETE FROM build_ledger WHERE id = (SELECT MAX(id) FROM build_ledger)",
        )
        after = ledger.export_anchor(run_id)
        assert after["root_hash"] != before["root_hash"]
        assert after["entry_count"] == before["entry_count"] - 1
