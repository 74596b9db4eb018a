"""Lock-file readers — turn a manifest document into normalized raw records.

Two shapes are understood:

- the native lockward manifest::

      {"manifestVersion": 1,
       "entries": [{"name": ..., "version": ..., "integrity": ...,
                    "resolved": ..., "dependencies": [...],
                    "executionPolicy": ..., "lifecycleScripts": [...]}]}

- npm ``package-lock.json`` v2/v3 (the ``packages`` map keyed by
  ``node_modules/...`` install paths).

Readers only reshape data. Integrity parsing, policy checks and graph
construction happen in the resolver.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from lockward.core.errors import MalformedManifest

logger = logging.getLogger(__name__)

NATIVE_FORMAT = "lockward"
PACKAGE_LOCK_FORMAT = "package-lock"

SUPPORTED_NATIVE_VERSIONS = {1}
SUPPORTED_PACKAGE_LOCK_VERSIONS = {2, 3}


class RawEntry(BaseModel):
    """One manifest entry before integrity parsing and dependency linking."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    integrity: str | None = None
    resolved: str = ""
    dependencies: list[str] = Field(default_factory=list)  # keys or bare names
    optional_dependencies: list[str] = Field(default_factory=list)
    execution_policy: str = "disabled"
    lifecycle_scripts: list[dict[str, Any]] = Field(default_factory=list)
    declares_install_script: bool = False
    location: str = ""  # where in the document it came from, for messages


ManifestSource = str | bytes | Path | Mapping[str, Any]


def load_document(source: ManifestSource) -> Mapping[str, Any]:
    """Load a manifest document from a path, JSON text/bytes or a mapping."""
    if isinstance(source, Mapping):
        return source
    if isinstance(source, Path):
        try:
            text = source.read_text(encoding="utf-8")
        except OSError as exc:
            raise MalformedManifest(f"Cannot read manifest {source}: {exc}") from exc
    elif isinstance(source, bytes):
        try:
            text = source.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedManifest(f"Manifest is not UTF-8: {exc}") from exc
    elif isinstance(source, str):
        text = source
    else:
        raise MalformedManifest(f"Unsupported manifest source type {type(source).__name__}")

    try:
        doc = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedManifest(f"Manifest is not valid JSON: {exc}") from exc
    if not isinstance(doc, dict):
        raise MalformedManifest("Manifest root must be a JSON object")
    return doc


def detect_format(doc: Mapping[str, Any]) -> str:
    if "manifestVersion" in doc:
        return NATIVE_FORMAT
    if "lockfileVersion" in doc:
        return PACKAGE_LOCK_FORMAT
    raise MalformedManifest(
        "Unrecognised manifest: expected 'manifestVersion' (lockward) "
        "or 'lockfileVersion' (package-lock.json)"
    )


def iter_raw_entries(doc: Mapping[str, Any]) -> Iterator[RawEntry]:
    fmt = detect_format(doc)
    if fmt == NATIVE_FORMAT:
        return iter_native_entries(doc)
    return iter_package_lock_entries(doc)


# ---------------------------------------------------------------------------
# Native manifest
# ---------------------------------------------------------------------------


def _require_str(obj: Mapping[str, Any], field: str, where: str) -> str:
    value = obj.get(field)
    if not isinstance(value, str) or not value:
        raise MalformedManifest(f"{where}: '{field}' must be a non-empty string")
    return value


def _str_list(value: Any, field: str, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise MalformedManifest(f"{where}: '{field}' must be a list of strings")
    return list(value)


def _native_script(raw: Any, where: str) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise MalformedManifest(f"{where}: lifecycle script must be an object")
    timeout = raw.get("timeoutSeconds")
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
    ):
        raise MalformedManifest(f"{where}: 'timeoutSeconds' must be a positive number")
    allow_network = raw.get("allowNetwork", False)
    if not isinstance(allow_network, bool):
        raise MalformedManifest(f"{where}: 'allowNetwork' must be a boolean")
    return {
        "phase": _require_str(raw, "phase", where),
        "command": _require_str(raw, "command", where),
        "outputs": tuple(_str_list(raw.get("outputs"), "outputs", where)),
        "env_allowlist": tuple(_str_list(raw.get("envAllowlist"), "envAllowlist", where)),
        "allow_network": allow_network,
        "timeout_s": float(timeout) if timeout is not None else None,
    }


def iter_native_entries(doc: Mapping[str, Any]) -> Iterator[RawEntry]:
    version = doc.get("manifestVersion")
    if version not in SUPPORTED_NATIVE_VERSIONS:
        raise MalformedManifest(f"Unsupported manifestVersion {version!r}")
    entries = doc.get("entries")
    if not isinstance(entries, list):
        raise MalformedManifest("'entries' must be a list")

    for i, raw in enumerate(entries):
        where = f"entries[{i}]"
        if not isinstance(raw, dict):
            raise MalformedManifest(f"{where}: entry must be an object")
        integrity = raw.get("integrity")
        if integrity is not None and not isinstance(integrity, str):
            raise MalformedManifest(f"{where}: 'integrity' must be a string")
        scripts_raw = raw.get("lifecycleScripts") or []
        if not isinstance(scripts_raw, list):
            raise MalformedManifest(f"{where}: 'lifecycleScripts' must be a list")
        policy = raw.get("executionPolicy", "disabled")
        if not isinstance(policy, str):
            raise MalformedManifest(f"{where}: 'executionPolicy' must be a string")

        yield RawEntry(
            name=_require_str(raw, "name", where),
            version=_require_str(raw, "version", where),
            integrity=integrity,
            resolved=_require_str(raw, "resolved", where),
            dependencies=_str_list(raw.get("dependencies"), "dependencies", where),
            execution_policy=policy,
            lifecycle_scripts=[
                _native_script(s, f"{where}.lifecycleScripts[{j}]")
                for j, s in enumerate(scripts_raw)
            ],
            declares_install_script=bool(scripts_raw),
            location=where,
        )


# ---------------------------------------------------------------------------
# npm package-lock.json (v2 / v3)
# ---------------------------------------------------------------------------


def _package_name(path: str, meta: Mapping[str, Any]) -> str:
    name = meta.get("name")
    if isinstance(name, str) and name:
        return name
    marker = "node_modules/"
    idx = path.rfind(marker)
    return path[idx + len(marker):] if idx != -1 else path


def resolve_install_path(
    packages: Mapping[str, Any], from_path: str, dependency: str
) -> str | None:
    """Find the install path node would load ``dependency`` from.

    Walks up the nested ``node_modules`` directories from ``from_path``.
    """
    base = from_path
    while True:
        candidate = f"{base}/node_modules/{dependency}" if base else f"node_modules/{dependency}"
        if candidate in packages:
            return candidate
        if not base:
            return None
        idx = base.rfind("/node_modules/")
        base = base[:idx] if idx != -1 else ""


def iter_package_lock_entries(doc: Mapping[str, Any]) -> Iterator[RawEntry]:
    version = doc.get("lockfileVersion")
    if version not in SUPPORTED_PACKAGE_LOCK_VERSIONS:
        raise MalformedManifest(
            f"Unsupported lockfileVersion {version!r}; regenerate with npm >= 7"
        )
    packages = doc.get("packages")
    if not isinstance(packages, dict):
        raise MalformedManifest("package-lock: 'packages' must be an object")

    for path in sorted(packages):
        meta = packages[path]
        where = f"packages[{path!r}]"
        if not isinstance(meta, dict):
            raise MalformedManifest(f"{where}: must be an object")
        if path == "":
            continue  # the project itself
        if meta.get("inBundle"):
            # Shipped inside the parent tarball, covered by the parent's digest
            continue
        if meta.get("link"):
            target = meta.get("resolved")
            if isinstance(target, str) and target in packages:
                # The link target is listed separately and judged on its own
                continue
            raise MalformedManifest(f"{where}: link target {target!r} is not in the lock file")
        if not path.startswith("node_modules/") and "/node_modules/" not in path:
            # Workspace folder (link target); local sources carry no integrity
            yield RawEntry(
                name=_package_name(path, meta),
                version=str(meta.get("version", "0.0.0")),
                integrity=None,
                resolved=path,
                location=where,
            )
            continue

        version_str = meta.get("version")
        if not isinstance(version_str, str) or not version_str:
            raise MalformedManifest(f"{where}: 'version' must be a non-empty string")

        required: list[str] = []
        optional: list[str] = []
        for field, bucket in (
            ("dependencies", required),
            ("optionalDependencies", optional),
            ("peerDependencies", optional),
        ):
            deps = meta.get(field) or {}
            if not isinstance(deps, dict):
                raise MalformedManifest(f"{where}: '{field}' must be an object")
            for dep_name in sorted(deps):
                dep_path = resolve_install_path(packages, path, dep_name)
                if dep_path is None:
                    if bucket is required:
                        raise MalformedManifest(
                            f"{where}: dependency {dep_name!r} is not installed "
                            f"anywhere reachable from {path}"
                        )
                    continue
                dep_meta = packages[dep_path]
                if not isinstance(dep_meta, dict) or dep_meta.get("inBundle"):
                    continue
                if dep_meta.get("link"):
                    dep_path = dep_meta.get("resolved", dep_path)
                    dep_meta = packages.get(dep_path, dep_meta)
                dep_key = f"{_package_name(dep_path, dep_meta)}@{dep_meta.get('version', '0.0.0')}"
                bucket.append(dep_key)

        has_script = bool(meta.get("hasInstallScript"))
        if has_script:
            logger.warning(
                "%s@%s declares install scripts; they will not run "
                "(package-lock carries no script policy)",
                _package_name(path, meta),
                version_str,
            )

        integrity = meta.get("integrity")
        yield RawEntry(
            name=_package_name(path, meta),
            version=version_str,
            integrity=integrity if isinstance(integrity, str) else None,
            resolved=str(meta.get("resolved") or ""),
            dependencies=required,
            optional_dependencies=optional,
            declares_install_script=has_script,
            location=where,
        )
