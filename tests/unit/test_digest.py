"""Tests for Digest — parsing, encodings, weak-algorithm rejection."""

from __future__ import annotations

import base64
import hashlib

import pytest

from lockward.core.hasher import compute_digest
from lockward.models.digest import Digest, HashAlgorithm, InvalidDigestError


class TestDigestParsing:
    def test_parse_prefixed_hex(self):
        hex_value = hashlib.sha256(b"abc").hexdigest()
        digest = Digest.parse(f"sha256:{hex_value}")
        assert digest.algorithm is HashAlgorithm.SHA256
        assert digest.hex == hex_value

    def test_parse_sri(self):
        raw = hashlib.sha512(b"abc").digest()
        digest = Digest.parse("sha512-" + base64.b64encode(raw).decode())
        assert digest.algorithm is HashAlgorithm.SHA512
        assert digest.raw == raw

    def test_uppercase_hex_is_normalized(self):
        hex_value = hashlib.sha256(b"abc").hexdigest()
        assert Digest.parse(f"sha256:{hex_value.upper()}").hex == hex_value

    def test_strongest_algorithm_wins(self):
        sha1 = base64.b64encode(hashlib.sha1(b"x").digest()).decode()
        sha256 = base64.b64encode(hashlib.sha256(b"x").digest()).decode()
        sha512 = base64.b64encode(hashlib.sha512(b"x").digest()).decode()
        digest = Digest.parse(f"sha1-{sha1} sha256-{sha256} sha512-{sha512}")
        assert digest.algorithm is HashAlgorithm.SHA512

    def test_sri_options_are_ignored(self):
        sha256 = base64.b64encode(hashlib.sha256(b"x").digest()).decode()
        assert Digest.parse(f"sha256-{sha256}?foo").algorithm is HashAlgorithm.SHA256

    @pytest.mark.parametrize("algo", ["sha1", "md5"])
    def test_weak_algorithms_rejected(self, algo: str):
        raw = hashlib.new(algo, b"x").digest()
        with pytest.raises(InvalidDigestError, match="unsupported"):
            Digest.parse(f"{algo}-" + base64.b64encode(raw).decode())

    @pytest.mark.parametrize(
        "text",
        ["", "   ", "sha256", "sha256:zzzz", "sha256:abcd", "sha512-not*base64", "garbage"],
    )
    def test_malformed_rejected(self, text: str):
        with pytest.raises(InvalidDigestError):
            Digest.parse(text)

    def test_wrong_length_rejected(self):
        short = base64.b64encode(hashlib.sha256(b"x").digest()).decode()
        with pytest.raises(InvalidDigestError):
            Digest.parse(f"sha512-{short}")


class TestDigestEncodings:
    def test_address_and_sri_describe_same_hash(self):
        digest = compute_digest(b"payload", HashAlgorithm.SHA384)
        assert Digest.parse(digest.address) == digest
        assert Digest.parse(digest.sri) == digest

    def test_str_is_address(self):
        digest = compute_digest(b"payload")
        assert str(digest) == digest.address
        assert digest.address.startswith("sha256:")

    def test_short(self):
        digest = compute_digest(b"payload")
        assert digest.short(8) == f"sha256:{digest.hex[:8]}"

    def test_frozen_and_hashable(self):
        digest = compute_digest(b"payload")
        assert len({digest, compute_digest(b"payload")}) == 1
        with pytest.raises(Exception):
            digest.hex = "00"  # type: ignore[misc]
