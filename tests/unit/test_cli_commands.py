"""Unit tests for the CLI — command registration and behavior via CliRunner."""

from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from lockward.cli.app import app
from lockward.core.artifact_store import ContentAddressedStore
from lockward.core.build_ledger import BuildLedger
from lockward.core.hasher import compute_digest
from lockward.models.ledger import LedgerEntry

runner = CliRunner()


def write_manifest(registry, path: Path) -> Path:
    path.write_text(json.dumps(registry.manifest()))
    return path


def serve_from_disk(registry, root: Path) -> None:
    """Point every entry at a file:// URL holding its served bytes."""
    for entry in registry.entries:
        data = registry.content[entry["resolved"]]
        target = root / f"{entry['name']}-{entry['version']}.tgz"
        target.write_bytes(data)
        entry["resolved"] = target.as_uri()


class TestCliApp:
    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert result.exit_code in (0, 2)
        assert "usage" in result.output.lower()

    def test_help_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("build", "coverage", "verify", "store", "audit", "demo", "check-attestation"):
            assert command in result.output


class TestVerifyCommand:
    def test_match(self, tmp_dir: Path):
        path = tmp_dir / "a.tgz"
        path.write_bytes(b"bytes")
        result = runner.invoke(app, ["verify", str(path), compute_digest(b"bytes").address])
        assert result.exit_code == 0
        assert "OK" in result.output

    def test_mismatch(self, tmp_dir: Path):
        path = tmp_dir / "a.tgz"
        path.write_bytes(b"bytes")
        result = runner.invoke(app, ["verify", str(path), compute_digest(b"other").sri])
        assert result.exit_code == 1
        assert "MISMATCH" in result.output

    def test_weak_integrity(self, tmp_dir: Path):
        path = tmp_dir / "a.tgz"
        path.write_bytes(b"bytes")
        result = runner.invoke(app, ["verify", str(path), "sha1-2jmj7l5rSw0yVb/vlWAYkK/YBwk="])
        assert result.exit_code == 2


class TestCoverageCommand:
    def test_fully_covered(self, registry, tmp_dir: Path):
        registry.add("a")
        result = runner.invoke(app, ["coverage", str(write_manifest(registry, tmp_dir / "m.json"))])
        assert result.exit_code == 0
        assert "All entries are pinned" in result.output

    def test_strict_fails_on_missing(self, registry, tmp_dir: Path):
        registry.add("a")
        del registry.entries[0]["integrity"]
        path = write_manifest(registry, tmp_dir / "m.json")
        assert runner.invoke(app, ["coverage", str(path)]).exit_code == 0
        result = runner.invoke(app, ["coverage", "--strict", str(path)])
        assert result.exit_code == 1
        assert "a@1.0.0" in result.output


class TestBuildCommand:
    def _args(self, tmp_dir: Path, manifest: Path) -> list[str]:
        return [
            "build", str(manifest),
            "--store", str(tmp_dir / "store"),
            "--ledger", str(tmp_dir / "ledger.db"),
        ]

    def test_successful_build(self, registry, tmp_dir: Path):
        registry.add("util")
        registry.add("app", deps=["util@1.0.0"])
        serve_from_disk(registry, tmp_dir)
        manifest = write_manifest(registry, tmp_dir / "m.json")
        result = runner.invoke(app, [*self._args(tmp_dir, manifest), "--json"])
        assert result.exit_code == 0, result.output
        assert '"success": true' in result.output
        assert '"root_digest": "sha256:' in result.output
        assert ContentAddressedStore(tmp_dir / "store").roots()

    def test_failed_build_exits_1(self, registry, tmp_dir: Path):
        registry.add("util")
        registry.serve("util", "1.0.0", b"tampered")
        serve_from_disk(registry, tmp_dir)
        manifest = write_manifest(registry, tmp_dir / "m.json")
        result = runner.invoke(app, self._args(tmp_dir, manifest))
        assert result.exit_code == 1
        assert "util@1.0.0" in result.output
        assert "digest_mismatch" in result.output

    def test_resolution_error_exits_2(self, registry, tmp_dir: Path):
        registry.add("a", deps=["b@1.0.0"])
        registry.add("b", deps=["a@1.0.0"])
        manifest = write_manifest(registry, tmp_dir / "m.json")
        result = runner.invoke(app, self._args(tmp_dir, manifest))
        assert result.exit_code == 2
        assert "CyclicDependency" in result.output

    def test_sign_without_key_exits_2(self, registry, tmp_dir: Path, monkeypatch):
        from lockward.cli.commands import build as build_module

        monkeypatch.setattr(
            build_module, "settings",
            build_module.settings.model_copy(update={"attestation_signing_key": ""}),
        )
        registry.add("util")
        manifest = write_manifest(registry, tmp_dir / "m.json")
        result = runner.invoke(app, [*self._args(tmp_dir, manifest), "--sign"])
        assert result.exit_code == 2

    def test_sign_writes_attestation(self, registry, tmp_dir: Path, monkeypatch):
        from lockward.cli.commands import build as build_module
        from lockward.core.attestation import generate_keypair, verify_attestation
        from lockward.models.attestation import BuildAttestation

        signing, verify = generate_keypair()
        monkeypatch.setattr(
            build_module, "settings",
            build_module.settings.model_copy(update={"attestation_signing_key": signing}),
        )
        registry.add("util")
        serve_from_disk(registry, tmp_dir)
        manifest = write_manifest(registry, tmp_dir / "m.json")
        out = tmp_dir / "att.json"
        result = runner.invoke(
            app, [*self._args(tmp_dir, manifest), "--sign", "--attestation-out", str(out)]
        )
        assert result.exit_code == 0, result.output
        attestation = BuildAttestation.model_validate_json(out.read_text())
        assert verify_attestation(attestation, verify) is True


class TestStoreCommands:
    def test_ls_verify_gc(self, tmp_dir: Path):
        store = ContentAddressedStore(tmp_dir / "store")
        kept = compute_digest(b"kept")
        store.put(kept, b"kept")
        store.put(compute_digest(b"loose"), b"loose")
        store.register_root("r1", [kept])
        args = ["--store", str(tmp_dir / "store")]

        ls = runner.invoke(app, ["store", "ls", *args])
        assert ls.exit_code == 0
        assert "2" in ls.output

        assert runner.invoke(app, ["store", "verify", *args]).exit_code == 0

        gc = runner.invoke(app, ["store", "gc", *args])
        assert gc.exit_code == 0
        assert list(store.digests()) == [kept]

    def test_verify_reports_corruption(self, tmp_dir: Path):
        store = ContentAddressedStore(tmp_dir / "store")
        digest = compute_digest(b"data")
        ref = store.put(digest, b"data")
        (store.base_path / ref.path).write_bytes(b"corrupt")
        result = runner.invoke(app, ["store", "verify", "--store", str(tmp_dir / "store")])
        assert result.exit_code == 1
        assert "CORRUPTED" in result.output


class TestAuditCommand:
    def test_intact_chain(self, tmp_dir: Path):
        ledger = BuildLedger(tmp_dir / "ledger.db")
        ledger.append(LedgerEntry(run_id="lw-1", node="a@1.0.0", state_transition="pending->fetching"))
        result = runner.invoke(app, ["audit", "lw-1", "--ledger", str(tmp_dir / "ledger.db")])
        assert result.exit_code == 0
        assert "intact" in result.output

    def test_lists_runs(self, tmp_dir: Path):
        ledger = BuildLedger(tmp_dir / "ledger.db")
        ledger.append(LedgerEntry(run_id="lw-1", node="a@1.0.0", state_transition="x"))
        result = runner.invoke(app, ["audit", "--ledger", str(tmp_dir / "ledger.db")])
        assert "lw-1" in result.output

    def test_unknown_run(self, tmp_dir: Path):
        BuildLedger(tmp_dir / "ledger.db")
        result = runner.invoke(app, ["audit", "nope", "--ledger", str(tmp_dir / "ledger.db")])
        assert result.exit_code == 1

    def test_missing_ledger(self, tmp_dir: Path):
        result = runner.invoke(app, ["audit", "x", "--ledger", str(tmp_dir / "absent.db")])
        assert result.exit_code == 1


class TestCheckAttestationCommand:
    def _write(self, tmp_dir: Path, signing: str) -> Path:
        from lockward.core.attestation import attest
        from lockward.models.build import BuildResult

        result = BuildResult(
            run_id="lw-cli-att",
            success=True,
            root_digest=compute_digest(b"root").address,
            verified_digests=[compute_digest(b"dep").address],
        )
        path = tmp_dir / "att.json"
        path.write_text(attest(result, signing).model_dump_json())
        return path

    def test_valid_with_explicit_key(self, tmp_dir: Path):
        from lockward.core.attestation import generate_keypair

        signing, verify = generate_keypair()
        path = self._write(tmp_dir, signing)
        result = runner.invoke(app, ["check-attestation", str(path), "--verify-key", verify])
        assert result.exit_code == 0, result.output
        assert "VALID" in result.output

    def test_configured_key_is_used(self, tmp_dir: Path, monkeypatch):
        from lockward.cli.commands import attest_cmd as attest_module
        from lockward.core.attestation import generate_keypair

        signing, verify = generate_keypair()
        monkeypatch.setattr(
            attest_module, "settings",
            attest_module.settings.model_copy(update={"attestation_verify_key": verify}),
        )
        path = self._write(tmp_dir, signing)
        assert runner.invoke(app, ["check-attestation", str(path)]).exit_code == 0

    def test_other_signer_is_invalid(self, tmp_dir: Path):
        from lockward.core.attestation import generate_keypair

        signing, _ = generate_keypair()
        _, trusted = generate_keypair()
        path = self._write(tmp_dir, signing)
        result = runner.invoke(app, ["check-attestation", str(path), "-k", trusted])
        assert result.exit_code == 1
        assert "INVALID" in result.output

    def test_missing_key_exits_2(self, tmp_dir: Path, monkeypatch):
        from lockward.cli.commands import attest_cmd as attest_module
        from lockward.core.attestation import generate_keypair

        monkeypatch.setattr(
            attest_module, "settings",
            attest_module.settings.model_copy(update={"attestation_verify_key": ""}),
        )
        path = self._write(tmp_dir, generate_keypair()[0])
        assert runner.invoke(app, ["check-attestation", str(path)]).exit_code == 2

    def test_garbage_file_exits_2(self, tmp_dir: Path):
        path = tmp_dir / "junk.json"
        path.write_text('{"run_id": 1}')
        result = runner.invoke(app, ["check-attestation", str(path), "-k", "00" * 32])
        assert result.exit_code == 2
