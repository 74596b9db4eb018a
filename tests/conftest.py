"""Shared test fixtures for Lockward."""

from __future__ import annotations

import io
import tarfile
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from lockward.core.artifact_store import ContentAddressedStore
from lockward.core.build_ledger import BuildLedger
from lockward.core.fetcher import StaticFetcher
from lockward.core.hasher import compute_digest
from lockward.core.manifest_resolver import ManifestResolver
from lockward.core.orchestrator import BuildOrchestrator
from lockward.core.sandbox import ProcessIsolation, Sandbox
from lockward.models.digest import HashAlgorithm

REGISTRY = "https://registry.test"


def make_tarball(files: Mapping[str, bytes]) -> bytes:
    """Reproducible gzip tarball with every file under ``package/``."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz", format=tarfile.PAX_FORMAT) as tar:
        for name, data in sorted(files.items()):
            info = tarfile.TarInfo(f"package/{name}")
            info.size = len(data)
            info.mode = 0o644
            info.mtime = 0
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def sri(data: bytes) -> str:
    return compute_digest(data, HashAlgorithm.SHA512).sri


class VouchedProcessIsolation(ProcessIsolation):
    """Process isolation accepted as confining.

    Every script these tests run stays inside its sandbox tree, so mandatory
    policies can be exercised on hosts without bubblewrap.
    """

    name = "process-vouched"
    confines_filesystem = True


class FakeRegistry:
    """Builds a native manifest and the matching URL -> bytes mapping."""

    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []
        self.content: dict[str, Any] = {}

    @staticmethod
    def url(name: str, version: str) -> str:
        return f"{REGISTRY}/{name}/-/{name}-{version}.tgz"

    def add(
        self,
        name: str,
        version: str = "1.0.0",
        deps: Sequence[str] = (),
        *,
        data: bytes | None = None,
        policy: str = "disabled",
        scripts: Sequence[dict[str, Any]] = (),
        integrity: str | None = None,
    ) -> bytes:
        """Publish a package; returns its genuine tarball bytes."""
        if data is None:
            data = make_tarball({
                "package.json": f'{{"name": "{name}", "version": "{version}"}}'.encode(),
            })
        entry: dict[str, Any] = {
            "name": name,
            "version": version,
            "integrity": integrity if integrity is not None else sri(data),
            "resolved": self.url(name, version),
            "dependencies": list(deps),
            "executionPolicy": policy,
        }
        if scripts:
            entry["lifecycleScripts"] = list(scripts)
        self.entries.append(entry)
        self.content[self.url(name, version)] = data
        return data

    def serve(self, name: str, version: str, data: Any) -> None:
        """Make the registry answer a URL with something else."""
        self.content[self.url(name, version)] = data

    def manifest(self) -> dict[str, Any]:
        return {"manifestVersion": 1, "entries": list(self.entries)}

    def fetcher(self) -> StaticFetcher:
        return StaticFetcher(self.content)


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def store(tmp_dir: Path) -> ContentAddressedStore:
    """Provide a fresh ContentAddressedStore in a temp directory."""
    return ContentAddressedStore(tmp_dir / "store")


@pytest.fixture
def ledger(tmp_dir: Path) -> BuildLedger:
    """Provide a fresh BuildLedger backed by a temp SQLite database."""
    return BuildLedger(tmp_dir / "ledger.db")


@pytest.fixture
def resolver() -> ManifestResolver:
    return ManifestResolver()


@pytest.fixture
def isolation() -> VouchedProcessIsolation:
    return VouchedProcessIsolation()


@pytest.fixture
def sandbox(store: ContentAddressedStore, isolation: VouchedProcessIsolation) -> Sandbox:
    """A process sandbox committing outputs to the test store."""
    return Sandbox(store, backend=isolation, default_timeout_s=20)


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def run_id() -> str:
    """Provide a deterministic test run ID."""
    return "lw-test-run-001"


@pytest.fixture
def make_orchestrator(
    store: ContentAddressedStore, sandbox: Sandbox
) -> Callable[..., BuildOrchestrator]:
    """Factory fixture: an orchestrator on the test store and sandbox."""

    def _factory(fetcher: Any, **overrides: Any) -> BuildOrchestrator:
        overrides.setdefault("concurrency", 4)
        return BuildOrchestrator(store, fetcher, sandbox, **overrides)

    return _factory


@pytest.fixture
def tarball() -> Callable[[Mapping[str, bytes]], bytes]:
    """Factory fixture: build a package tarball from a file mapping."""
    return make_tarball
