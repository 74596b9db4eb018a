"""Build attestation — Ed25519 signatures over successful build results.

Signing uses PyNaCl (libsodium). Verification fails closed: a malformed key,
a malformed signature or a payload that does not match all return False.
"""

from __future__ import annotations

import logging
from typing import Any

import nacl.signing
from nacl.exceptions import BadSignatureError, CryptoError

from lockward.core.hasher import canonical_json_bytes
from lockward.models.attestation import BuildAttestation
from lockward.models.build import BuildResult

logger = logging.getLogger(__name__)


def generate_keypair() -> tuple[str, str]:
    """Generate an Ed25519 key-pair.

    Returns
    -------
    tuple[str, str]
        ``(signing_key_hex, verify_key_hex)``
    """
    sk = nacl.signing.SigningKey.generate()
    return sk.encode().hex(), sk.verify_key.encode().hex()


def signed_payload(run_id: str, root_digest: str, verified_digests: list[str]) -> bytes:
    """The exact bytes an attestation signs."""
    body: dict[str, Any] = {
        "run_id": run_id,
        "root_digest": root_digest,
        "verified_digests": sorted(verified_digests),
    }
    return canonical_json_bytes(body)


def attest(result: BuildResult, signing_key_hex: str) -> BuildAttestation:
    """Sign a successful build result.

    Raises
    ------
    ValueError
        If the build failed (there is nothing to attest) or the key is not
        a valid hex Ed25519 seed.
    """
    if not result.success or result.root_digest is None:
        raise ValueError(f"Cannot attest failed build {result.run_id}")
    try:
        sk = nacl.signing.SigningKey(bytes.fromhex(signing_key_hex))
    except (ValueError, TypeError, CryptoError) as exc:
        raise ValueError(f"Invalid signing key: {exc}") from exc

    payload = signed_payload(result.run_id, result.root_digest, result.verified_digests)
    signature = sk.sign(payload).signature.hex()
    logger.info("Attested build %s (root %s)", result.run_id, result.root_digest)
    return BuildAttestation(
        run_id=result.run_id,
        root_digest=result.root_digest,
        verified_digests=sorted(result.verified_digests),
        verify_key=sk.verify_key.encode().hex(),
        signature=signature,
    )


def verify_attestation(attestation: BuildAttestation, verify_key_hex: str) -> bool:
    """Return True only if *attestation* was signed by *verify_key_hex*."""
    if not attestation.signature:
        return False
    payload = signed_payload(
        attestation.run_id, attestation.root_digest, attestation.verified_digests
    )
    try:
        vk = nacl.signing.VerifyKey(bytes.fromhex(verify_key_hex))
        vk.verify(payload, bytes.fromhex(attestation.signature))
    except BadSignatureError:
        logger.warning("Attestation for %s has a bad signature", attestation.run_id)
        return False
    except (ValueError, TypeError, CryptoError):
        return False
    return True
