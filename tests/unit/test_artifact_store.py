"""Tests for ContentAddressedStore — verified puts, tamper evidence, GC."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from lockward.core.artifact_store import ContentAddressedStore
from lockward.core.errors import ArtifactIntegrityError, DigestMismatch, NotFound
from lockward.core.hasher import compute_digest
from lockward.models.digest import HashAlgorithm


class TestPutGet:
    def test_round_trip(self, store: ContentAddressedStore):
        digest = compute_digest(b"hello lockward", HashAlgorithm.SHA512)
        ref = store.put(digest, b"hello lockward")
        assert ref.size_bytes == len(b"hello lockward")
        assert store.get(digest) == b"hello lockward"

    def test_layout(self, store: ContentAddressedStore):
        digest = compute_digest(b"layout")
        ref = store.put(digest, b"layout")
        h = digest.hex
        assert ref.path == f"sha256/{h[:2]}/{h[2:4]}/{h}.dat"
        assert (store.base_path / ref.path).read_bytes() == b"layout"

    def test_put_rejects_wrong_bytes(self, store: ContentAddressedStore):
        digest = compute_digest(b"expected")
        with pytest.raises(DigestMismatch):
            store.put(digest, b"something else")
        assert store.has(digest) is False

    def test_idempotent_put(self, store: ContentAddressedStore):
        digest = compute_digest(b"twice")
        first = store.put(digest, b"twice")
        second = store.put(digest, b"twice")
        assert first == second
        assert list(store.digests()) == [digest]

    def test_get_missing(self, store: ContentAddressedStore):
        with pytest.raises(NotFound):
            store.get(compute_digest(b"never stored"))

    def test_has(self, store: ContentAddressedStore):
        digest = compute_digest(b"present")
        assert store.has(digest) is False
        store.put(digest, b"present")
        assert store.has(digest) is True

    def test_same_bytes_different_algorithms_are_distinct(self, store: ContentAddressedStore):
        d256 = compute_digest(b"same", HashAlgorithm.SHA256)
        d512 = compute_digest(b"same", HashAlgorithm.SHA512)
        store.put(d256, b"same")
        store.put(d512, b"same")
        assert set(store.digests()) == {d256, d512}

    def test_no_temp_files_left_behind(self, store: ContentAddressedStore):
        digest = compute_digest(b"atomic")
        store.put(digest, b"atomic")
        leftovers = [p for p in store.base_path.rglob("*") if p.name.startswith(".put-")]
        assert leftovers == []

    def test_concurrent_puts_of_one_digest(self, store: ContentAddressedStore):
        data = b"raced" * 50_000
        digest = compute_digest(data, HashAlgorithm.SHA512)
        barrier = threading.Barrier(16)

        def racer():
            barrier.wait()
            return store.put(digest, data)

        with ThreadPoolExecutor(max_workers=16) as pool:
            refs = [f.result() for f in [pool.submit(racer) for _ in range(16)]]

        assert all(ref == refs[0] for ref in refs)
        assert store.get(digest) == data
        assert list(store.digests()) == [digest]
        assert list(store.base_path.rglob(".put-*.tmp")) == []

    def test_reopen_sees_existing_content(self, tmp_dir: Path):
        digest = compute_digest(b"persisted")
        ContentAddressedStore(tmp_dir / "s").put(digest, b"persisted")
        assert ContentAddressedStore(tmp_dir / "s").get(digest) == b"persisted"


class TestTamperEvidence:
    def _tamper(self, store: ContentAddressedStore, data: bytes) -> None:
        digest = compute_digest(data)
        ref = store.put(digest, data)
        (store.base_path / ref.path).write_bytes(b"tampered")

    def test_get_detects_tampering(self, store: ContentAddressedStore):
        self._tamper(store, b"original")
        with pytest.raises(ArtifactIntegrityError):
            store.get(compute_digest(b"original"))

    def test_verify_detects_tampering(self, store: ContentAddressedStore):
        self._tamper(store, b"original")
        assert store.verify(compute_digest(b"original")) is False

    def test_put_refuses_to_overwrite_tampered_entry(self, store: ContentAddressedStore):
        self._tamper(store, b"original")
        with pytest.raises(ArtifactIntegrityError):
            store.put(compute_digest(b"original"), b"original")

    def test_verify_missing_is_false(self, store: ContentAddressedStore):
        assert store.verify(compute_digest(b"absent")) is False


class TestRootsAndGarbageCollection:
    def test_unrooted_artifacts_are_collected(self, store: ContentAddressedStore):
        keep = compute_digest(b"keep")
        drop = compute_digest(b"drop")
        store.put(keep, b"keep")
        store.put(drop, b"drop")
        store.register_root("build-1", [keep])

        removed = store.collect_garbage()
        assert removed == [drop]
        assert store.has(keep) and not store.has(drop)

    def test_union_of_roots_survives(self, store: ContentAddressedStore):
        a, b = compute_digest(b"a"), compute_digest(b"b")
        store.put(a, b"a")
        store.put(b, b"b")
        store.register_root("one", [a])
        store.register_root("two", [b])
        assert store.collect_garbage() == []

    def test_drop_root_releases_artifacts(self, store: ContentAddressedStore):
        a = compute_digest(b"a")
        store.put(a, b"a")
        store.register_root("one", [a])
        assert store.drop_root("one") is True
        assert store.drop_root("one") is False
        assert store.collect_garbage() == [a]

    def test_roots_listing(self, store: ContentAddressedStore):
        a = compute_digest(b"a")
        store.register_root("r", [a, a])
        [root] = store.roots()
        assert root.name == "r"
        assert root.digests == [a.address]

    @pytest.mark.parametrize("name", ["", "../escape", "a/b", "with space"])
    def test_invalid_root_names(self, store: ContentAddressedStore, name: str):
        with pytest.raises(ValueError):
            store.register_root(name, [])

    def test_empty_store_gc(self, store: ContentAddressedStore):
        assert store.collect_garbage() == []
