"""Digest model — the identity of every artifact.

A digest is an algorithm name plus the hash bytes (held as lowercase hex).
Two textual encodings are accepted:

- Subresource Integrity, as written by npm: ``sha512-<base64>``
  (several space-separated hashes may appear; the strongest supported one wins)
- Prefixed hex, as used for store keys: ``sha256:<hex>``

Weak algorithms (``sha1``, ``md5``) are never accepted.
"""

from __future__ import annotations

import base64
import binascii
import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class HashAlgorithm(str, Enum):
    """Supported hash algorithms, weakest first."""

    SHA256 = "sha256"
    SHA384 = "sha384"
    SHA512 = "sha512"

    @property
    def digest_size(self) -> int:
        return _DIGEST_SIZES[self]

    @property
    def strength(self) -> int:
        return list(HashAlgorithm).index(self)


_DIGEST_SIZES: dict[HashAlgorithm, int] = {
    HashAlgorithm.SHA256: 32,
    HashAlgorithm.SHA384: 48,
    HashAlgorithm.SHA512: 64,
}

_HEX_RE = re.compile(r"^[0-9a-f]+$")


class InvalidDigestError(ValueError):
    """Raised when a digest string cannot be parsed or uses a weak algorithm."""


class Digest(BaseModel):
    """A fixed-length cryptographic hash over exact byte content."""

    model_config = ConfigDict(frozen=True)

    algorithm: HashAlgorithm
    hex: str

    @field_validator("hex")
    @classmethod
    def _lowercase_hex(cls, value: str) -> str:
        value = value.lower()
        if not _HEX_RE.match(value):
            raise ValueError("digest value must be hexadecimal")
        return value

    @model_validator(mode="after")
    def _check_length(self) -> "Digest":
        if len(self.hex) != self.algorithm.digest_size * 2:
            raise ValueError(
                f"{self.algorithm.value} digest must be "
                f"{self.algorithm.digest_size} bytes, got {len(self.hex) // 2}"
            )
        return self

    # ------------------------------------------------------------------
    # Encodings
    # ------------------------------------------------------------------

    @property
    def raw(self) -> bytes:
        return bytes.fromhex(self.hex)

    @property
    def address(self) -> str:
        """Prefixed hex form, e.g. ``sha256:ab12...``."""
        return f"{self.algorithm.value}:{self.hex}"

    @property
    def sri(self) -> str:
        """Subresource Integrity form, e.g. ``sha512-q83v...==``."""
        return f"{self.algorithm.value}-{base64.b64encode(self.raw).decode('ascii')}"

    def short(self, length: int = 12) -> str:
        return f"{self.algorithm.value}:{self.hex[:length]}"

    def __str__(self) -> str:
        return self.address

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @classmethod
    def parse(cls, text: str) -> "Digest":
        """Parse an SRI or prefixed-hex string.

        Multi-hash SRI strings (``"sha512-... sha1-..."``) yield the strongest
        supported algorithm. Raises ``InvalidDigestError`` if nothing usable
        is present.
        """
        if not isinstance(text, str) or not text.strip():
            raise InvalidDigestError("empty integrity value")

        candidates: list[Digest] = []
        rejected: list[str] = []
        for token in text.split():
            # SRI options ("sha512-abc?opt") are ignored per the W3C grammar
            token = token.split("?", 1)[0]
            try:
                candidates.append(cls._parse_token(token))
            except InvalidDigestError as exc:
                rejected.append(str(exc))

        if not candidates:
            raise InvalidDigestError("; ".join(rejected) or "no usable digest")
        return max(candidates, key=lambda d: d.algorithm.strength)

    @classmethod
    def _parse_token(cls, token: str) -> "Digest":
        if ":" in token:
            algo_name, _, encoded = token.partition(":")
            algorithm = cls._algorithm(algo_name)
            try:
                return cls(algorithm=algorithm, hex=encoded)
            except ValueError as exc:
                raise InvalidDigestError(f"bad {algo_name} hex digest: {exc}") from exc

        algo_name, sep, encoded = token.partition("-")
        if not sep:
            raise InvalidDigestError(f"unrecognised integrity token {token!r}")
        algorithm = cls._algorithm(algo_name)
        try:
            raw = base64.b64decode(encoded, validate=True)
        except binascii.Error as exc:
            raise InvalidDigestError(f"bad base64 in {algo_name} integrity") from exc
        try:
            return cls(algorithm=algorithm, hex=raw.hex())
        except ValueError as exc:
            raise InvalidDigestError(f"bad {algo_name} integrity: {exc}") from exc

    @staticmethod
    def _algorithm(name: str) -> HashAlgorithm:
        try:
            return HashAlgorithm(name.lower())
        except ValueError:
            raise InvalidDigestError(
                f"unsupported hash algorithm {name!r} "
                f"(accepted: {', '.join(a.value for a in HashAlgorithm)})"
            ) from None
