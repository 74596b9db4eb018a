"""Content-addressed, immutable artifact store.

Storage layout: {base_path}/{algorithm}/{hex[0:2]}/{hex[2:4]}/{hex}.dat
Live manifests:  {base_path}/roots/{name}.json

Bytes are written to a temporary file beside the target and renamed into
place, so concurrent ``put`` calls for the same digest race safely: every
writer carries identical content. Artifacts are removed only by
``collect_garbage``, and only when no registered root references them.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from collections.abc import Iterable, Iterator
from pathlib import Path

from lockward.core.errors import ArtifactIntegrityError, NotFound
from lockward.core.integrity import IntegrityVerifier
from lockward.models.artifacts import StoreRef, StoreRoot
from lockward.models.digest import Digest, HashAlgorithm

logger = logging.getLogger(__name__)

_ROOT_NAME_RE = re.compile(r"^[A-Za-z0-9._:@+-]+$")


class ContentAddressedStore:
    """Digest-keyed, immutable artifact store.

    Parameters
    ----------
    base_path:
        Root directory for artifact storage.
    verifier:
        Verifier used to check bytes before they are accepted.
    """

    def __init__(
        self, base_path: Path, verifier: IntegrityVerifier | None = None
    ) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)
        self._roots_dir = self._base / "roots"
        self._verifier = verifier or IntegrityVerifier()

    @property
    def base_path(self) -> Path:
        return self._base

    def _artifact_path(self, digest: Digest) -> Path:
        """Layout: {base}/{algorithm}/{hex[0:2]}/{hex[2:4]}/{hex}.dat"""
        h = digest.hex
        return self._base / digest.algorithm.value / h[:2] / h[2:4] / f"{h}.dat"

    # ------------------------------------------------------------------
    # put / get / has
    # ------------------------------------------------------------------

    def put(self, digest: Digest, data: bytes) -> StoreRef:
        """Store ``data`` under ``digest``.

        Raises ``DigestMismatch`` if the bytes do not hash to ``digest``.
        Storing content that is already present is a no-op returning the
        existing ref.
        """
        self._verifier.require(digest, data)
        path = self._artifact_path(digest)

        if path.exists():
            existing = path.read_bytes()
            if existing != data:
                # Verified bytes cannot differ from a healthy entry, so the
                # stored copy has been tampered with.
                raise ArtifactIntegrityError(
                    f"Stored artifact {digest.address} differs from verified "
                    f"content; refusing to overwrite"
                )
            return self._ref(digest, path)

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".put-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug("Stored %s (%d bytes)", digest.short(), len(data))
        return self._ref(digest, path)

    def get(self, digest: Digest) -> bytes:
        """Return the bytes stored under ``digest``.

        Raises ``NotFound`` if absent and ``ArtifactIntegrityError`` if the
        stored bytes no longer match their address.
        """
        path = self._artifact_path(digest)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise NotFound(f"Artifact not found: {digest.address}") from None
        if not self._verifier.verify(digest, data).ok:
            raise ArtifactIntegrityError(
                f"Stored artifact {digest.address} failed integrity check"
            )
        return data

    def has(self, digest: Digest) -> bool:
        """Check if an artifact exists in the store."""
        return self._artifact_path(digest).exists()

    def ref(self, digest: Digest) -> StoreRef:
        path = self._artifact_path(digest)
        if not path.exists():
            raise NotFound(f"Artifact not found: {digest.address}")
        return self._ref(digest, path)

    def _ref(self, digest: Digest, path: Path) -> StoreRef:
        return StoreRef(
            digest=digest,
            size_bytes=path.stat().st_size,
            path=str(path.relative_to(self._base)),
        )

    # ------------------------------------------------------------------
    # Check and enumerate
    # ------------------------------------------------------------------

    def verify(self, digest: Digest) -> bool:
        """Re-hash stored data and compare against the address."""
        path = self._artifact_path(digest)
        if not path.exists():
            return False
        return self._verifier.verify(digest, path.read_bytes()).ok

    def digests(self) -> Iterator[Digest]:
        """Yield the digest of every stored artifact, sorted per algorithm."""
        for algorithm in HashAlgorithm:
            algo_dir = self._base / algorithm.value
            if not algo_dir.is_dir():
                continue
            for path in sorted(algo_dir.glob("*/*/*.dat")):
                yield Digest(algorithm=algorithm, hex=path.stem)

    # ------------------------------------------------------------------
    # Roots and garbage collection
    # ------------------------------------------------------------------

    def register_root(self, name: str, digests: Iterable[Digest]) -> StoreRoot:
        """Record a live manifest; its digests survive garbage collection."""
        if not _ROOT_NAME_RE.match(name):
            raise ValueError(f"Invalid root name: {name!r}")
        root = StoreRoot(
            name=name,
            digests=sorted({d.address for d in digests}),
        )
        self._roots_dir.mkdir(parents=True, exist_ok=True)
        target = self._roots_dir / f"{name}.json"
        fd, tmp_name = tempfile.mkstemp(dir=self._roots_dir, prefix=".root-")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(root.model_dump_json(indent=2))
        os.replace(tmp_name, target)
        logger.info("Registered store root %s (%d artifacts)", name, len(root.digests))
        return root

    def roots(self) -> list[StoreRoot]:
        if not self._roots_dir.is_dir():
            return []
        return [
            StoreRoot.model_validate(json.loads(p.read_text(encoding="utf-8")))
            for p in sorted(self._roots_dir.glob("*.json"))
        ]

    def drop_root(self, name: str) -> bool:
        """Forget a live manifest. Returns False if it was not registered."""
        target = self._roots_dir / f"{name}.json"
        if not target.exists():
            return False
        target.unlink()
        return True

    def collect_garbage(self) -> list[Digest]:
        """Mark from all roots, sweep everything unreachable.

        Returns the digests that were removed.
        """
        live: set[str] = set()
        for root in self.roots():
            live.update(root.digests)

        removed: list[Digest] = []
        for digest in list(self.digests()):
            if digest.address in live:
                continue
            self._artifact_path(digest).unlink(missing_ok=True)
            removed.append(digest)

        if removed:
            logger.info("Garbage collection removed %d artifact(s)", len(removed))
        return removed
