"""Adversarial: bytes that change under the build must never be accepted."""

from __future__ import annotations

import pytest

from lockward.core.errors import ArtifactIntegrityError, DigestMismatch, MissingIntegrityField
from lockward.core.hasher import compute_digest
from lockward.core.manifest_resolver import ManifestResolver
from lockward.models.build import ErrorKind
from lockward.models.digest import HashAlgorithm


class TestRegistryAttacks:
    def test_silent_replacement(self, registry, make_orchestrator, store):
        genuine = registry.add("left-pad", "1.3.0")
        registry.serve("left-pad", "1.3.0", genuine + b"\x00")
        result = make_orchestrator(registry.fetcher()).build(
            ManifestResolver().resolve(registry.manifest())
        )
        assert result.error_kind is ErrorKind.DIGEST_MISMATCH
        assert result.failing_node == "left-pad@1.3.0"
        assert list(store.digests()) == []

    def test_truncated_download(self, registry, make_orchestrator):
        genuine = registry.add("big")
        registry.serve("big", "1.0.0", genuine[: len(genuine) // 2])
        result = make_orchestrator(registry.fetcher()).build(
            ManifestResolver().resolve(registry.manifest())
        )
        assert result.error_kind is ErrorKind.DIGEST_MISMATCH

    def test_answer_changes_between_fetches(self, registry, make_orchestrator, store):
        """A registry that serves good bytes once, then evil ones."""
        genuine = registry.add("flip")
        answers = iter([genuine, b"evil"])
        registry.serve("flip", "1.0.0", lambda: next(answers))
        graph = ManifestResolver().resolve(registry.manifest())

        assert make_orchestrator(registry.fetcher()).build(graph).success is True
        # The second build is served from the verified store, not the registry
        second = make_orchestrator(registry.fetcher()).build(graph)
        assert second.success is True
        assert store.get(graph.entry("flip@1.0.0").expected_digest) == genuine

    def test_integrity_downgrade_to_sha1_rejected(self, registry):
        registry.add("legacy", integrity="sha1-2jmj7l5rSw0yVb/vlWAYkK/YBwk=")
        with pytest.raises(MissingIntegrityField):
            ManifestResolver().resolve(registry.manifest())

    def test_algorithm_confusion(self, registry, make_orchestrator, tarball):
        """A sha256 value presented as sha512 never matches."""
        data = tarball({"index.js": b"x"})
        sha256 = compute_digest(data, HashAlgorithm.SHA256)
        registry.add("confused", data=data, integrity=f"sha512:{sha256.hex * 2}")
        result = make_orchestrator(registry.fetcher()).build(
            ManifestResolver().resolve(registry.manifest())
        )
        assert result.error_kind is ErrorKind.DIGEST_MISMATCH


class TestStoreAttacks:
    def test_tampered_cache_entry_fails_build(self, registry, make_orchestrator, store):
        registry.add("lodash", "4.17.21")
        graph = ManifestResolver().resolve(registry.manifest())
        assert make_orchestrator(registry.fetcher()).build(graph).success is True

        digest = graph.entry("lodash@4.17.21").expected_digest
        (store.base_path / store.ref(digest).path).write_bytes(b"backdoored")

        result = make_orchestrator(registry.fetcher()).build(graph)
        assert result.success is False
        assert result.error_kind is ErrorKind.STORE_INTEGRITY

    def test_put_of_forged_content_rejected(self, store):
        digest = compute_digest(b"genuine")
        with pytest.raises(DigestMismatch):
            store.put(digest, b"forged")

    def test_tampered_entry_cannot_be_silently_repaired(self, store):
        digest = compute_digest(b"genuine")
        ref = store.put(digest, b"genuine")
        (store.base_path / ref.path).write_bytes(b"forged")
        with pytest.raises(ArtifactIntegrityError):
            store.put(digest, b"genuine")
        assert store.verify(digest) is False
