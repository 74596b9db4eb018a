"""Manifest resolution — lock manifest in, ordered dependency graph out.

Resolution is fatal on the first problem and happens before any fetch:
unparseable input raises ``MalformedManifest``, an entry without a usable
digest raises ``MissingIntegrityField`` and a cycle raises
``CyclicDependency``. Nothing downstream ever sees an unverifiable entry.
"""

from __future__ import annotations

import logging
from collections import Counter

from pydantic import ValidationError

from lockward.core.dependency_graph import DependencyGraph
from lockward.core.errors import MalformedManifest, MissingIntegrityField
from lockward.core.lockfile import (
    ManifestSource,
    RawEntry,
    iter_raw_entries,
    load_document,
)
from lockward.models.digest import Digest, InvalidDigestError
from lockward.models.manifest import (
    ExecutionPolicy,
    IntegrityCoverage,
    LifecycleScript,
    ManifestEntry,
    node_key,
)

logger = logging.getLogger(__name__)


class ManifestResolver:
    """Parses a lock manifest into a ``DependencyGraph``."""

    def resolve(self, manifest_source: ManifestSource) -> DependencyGraph:
        doc = load_document(manifest_source)
        raw_entries = list(iter_raw_entries(doc))
        merged = self._merge_duplicates(raw_entries)

        by_name: dict[str, list[str]] = {}
        for key, raw in merged.items():
            by_name.setdefault(raw.name, []).append(key)

        entries = [
            self._build_entry(key, raw, merged, by_name)
            for key, raw in merged.items()
        ]
        graph = DependencyGraph(entries)
        logger.info(
            "Resolved manifest: %d node(s), %d root(s)", len(graph), len(graph.roots)
        )
        return graph

    def coverage(self, manifest_source: ManifestSource) -> IntegrityCoverage:
        """Report integrity coverage without failing on unprotected entries."""
        doc = load_document(manifest_source)
        merged = self._merge_duplicates(list(iter_raw_entries(doc)))

        algorithms: Counter[str] = Counter()
        missing: list[str] = []
        weak: list[str] = []
        scripts: list[str] = []
        for key, raw in merged.items():
            if raw.declares_install_script:
                scripts.append(key)
            if not raw.integrity:
                missing.append(key)
                continue
            try:
                algorithms[Digest.parse(raw.integrity).algorithm.value] += 1
            except InvalidDigestError:
                weak.append(key)

        return IntegrityCoverage(
            total_entries=len(merged),
            with_integrity=sum(algorithms.values()),
            missing_integrity=sorted(missing),
            weak_or_invalid=sorted(weak),
            algorithms=dict(sorted(algorithms.items())),
            install_scripts=sorted(scripts),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _merge_duplicates(raw_entries: list[RawEntry]) -> dict[str, RawEntry]:
        """Fold repeated installs of one ``name@version`` into a single node.

        npm may install the same package at several paths; they must agree on
        integrity and source, and their dependency edges are unioned.
        """
        merged: dict[str, RawEntry] = {}
        for raw in raw_entries:
            key = node_key(raw.name, raw.version)
            existing = merged.get(key)
            if existing is None:
                merged[key] = raw
                continue
            if existing.integrity != raw.integrity or existing.resolved != raw.resolved:
                raise MalformedManifest(
                    f"{key} appears at {existing.location} and {raw.location} "
                    f"with different integrity or source"
                )
            if (
                existing.execution_policy != raw.execution_policy
                or existing.lifecycle_scripts != raw.lifecycle_scripts
            ):
                raise MalformedManifest(
                    f"{key} appears twice with different lifecycle declarations"
                )
            merged[key] = existing.model_copy(
                update={
                    "dependencies": sorted(set(existing.dependencies) | set(raw.dependencies)),
                    "optional_dependencies": sorted(
                        set(existing.optional_dependencies) | set(raw.optional_dependencies)
                    ),
                    "declares_install_script": existing.declares_install_script
                    or raw.declares_install_script,
                }
            )
        return merged

    @staticmethod
    def _link(
        key: str,
        ref: str,
        merged: dict[str, RawEntry],
        by_name: dict[str, list[str]],
    ) -> str | None:
        """Resolve a dependency reference (``name@version`` or bare name)."""
        if ref in merged:
            return ref
        candidates = by_name.get(ref, [])
        if len(candidates) == 1:
            return candidates[0]
        if len(candidates) > 1:
            raise MalformedManifest(
                f"{key}: dependency {ref!r} is ambiguous between "
                f"{', '.join(sorted(candidates))}; pin it as name@version"
            )
        return None

    def _build_entry(
        self,
        key: str,
        raw: RawEntry,
        merged: dict[str, RawEntry],
        by_name: dict[str, list[str]],
    ) -> ManifestEntry:
        if not raw.integrity:
            raise MissingIntegrityField(
                f"{key} ({raw.location}) has no integrity digest; "
                f"refusing to build against an unverifiable entry",
                node=key,
            )
        try:
            digest = Digest.parse(raw.integrity)
        except InvalidDigestError as exc:
            raise MissingIntegrityField(
                f"{key} ({raw.location}) has no usable integrity digest: {exc}",
                node=key,
            ) from exc

        if not raw.resolved:
            raise MalformedManifest(f"{key} ({raw.location}) has no source URL")

        try:
            policy = ExecutionPolicy(raw.execution_policy)
        except ValueError:
            raise MalformedManifest(
                f"{key}: unknown executionPolicy {raw.execution_policy!r}"
            ) from None

        dependencies: list[str] = []
        for ref in raw.dependencies:
            target = self._link(key, ref, merged, by_name)
            if target is None:
                raise MalformedManifest(f"{key} depends on {ref}, which is not in the manifest")
            dependencies.append(target)
        for ref in raw.optional_dependencies:
            target = self._link(key, ref, merged, by_name)
            if target is not None:
                dependencies.append(target)

        try:
            scripts = tuple(LifecycleScript(**s) for s in raw.lifecycle_scripts)
            return ManifestEntry(
                name=raw.name,
                version=raw.version,
                expected_digest=digest,
                source_url=raw.resolved,
                lifecycle_scripts=scripts,
                execution_policy=policy,
                dependencies=tuple(sorted(set(dependencies))),
                declares_install_script=raw.declares_install_script,
            )
        except ValidationError as exc:
            raise MalformedManifest(f"{key}: {exc}") from exc
