"""
Wasmgate Artifact Verifier

Validates downloaded bytes against declared digests and detached
signatures before anything is extracted.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

import structlog

from wasmgate.errors import (
    ChecksumMismatchError,
    SignatureInvalidError,
    SignatureMissingError,
    UntrustedKeyError,
    VerificationError,
)
from wasmgate.security.signing import TrustStore
from wasmgate.types import Checksum, ResolvedArtifact, SignatureDescriptor

logger = structlog.get_logger(__name__)


def compute_digest(data: bytes, algorithm: str = "sha256") -> str:
    """Hex digest over the full byte stream."""
    return hashlib.new(algorithm, data).hexdigest()


def parse_checksum_file(content: str, filename: Optional[str] = None) -> Checksum:
    """
    Parse a checksum file: "<hex>", "<hex>  <filename>", or
    "<algorithm>:<hex>". With several lines, the one naming `filename` wins.

    Raises:
        VerificationError: If no digest can be found
    """
    fallback = None
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        digest = parts[0]
        named = parts[1].lstrip("*") if len(parts) > 1 else None
        try:
            checksum = Checksum.parse(digest)
        except ValueError:
            continue
        if filename is not None and named == filename:
            return checksum
        if fallback is None:
            fallback = checksum
    if fallback is None:
        raise VerificationError("Checksum file contains no digest")
    return fallback


@dataclass
class VerificationReport:
    """Outcome of a successful verification."""

    digest: str  # "<algorithm>:<hex>" of the artifact bytes
    checksum_verified: bool
    signature_key_id: Optional[str] = None
    unverified: bool = False


class ArtifactVerifier:
    """
    Checks artifact bytes against an expected checksum and signature.

    Policy:
    - Digest mismatch is always fatal.
    - A declared signature must be present, by a trusted key, and valid.
    - Skipping verification requires the artifact to be marked unverified.
    """

    def __init__(self, trust_store: Optional[TrustStore] = None):
        self.trust_store = trust_store or TrustStore()

    def verify(
        self,
        data: bytes,
        artifact: ResolvedArtifact,
        checksum: Optional[Checksum] = None,
        signature: Optional[bytes] = None,
    ) -> VerificationReport:
        """
        Verify bytes for an artifact.

        Args:
            data: The full downloaded artifact
            artifact: The resolved artifact with its declared expectations
            checksum: Expected checksum when fetched from a checksum file
            signature: Detached signature bytes when fetched separately

        Raises:
            ChecksumMismatchError, SignatureMissingError, UntrustedKeyError,
            SignatureInvalidError
        """
        context = {
            "plugin_id": artifact.plugin_id,
            "version": str(artifact.version),
            "locator": str(artifact.locator),
        }
        expected = checksum or artifact.checksum
        descriptor = artifact.signature

        if artifact.unverified and expected is None and descriptor is None:
            logger.warning("Using unverified artifact", source=artifact.source, **context)
            return VerificationReport(
                digest=f"sha256:{compute_digest(data)}",
                checksum_verified=False,
                unverified=True,
            )

        if expected is None and descriptor is None:
            # ResolvedArtifact forbids this, unless a checksum URL could not be used.
            raise VerificationError("No checksum or signature available", **context)

        checksum_verified = False
        if expected is not None:
            self.verify_checksum(data, expected, **context)
            checksum_verified = True
            digest = str(expected)
        else:
            digest = f"sha256:{compute_digest(data)}"

        key_id = None
        if descriptor is not None:
            sig = signature if signature is not None else descriptor.signature
            self.verify_signature(data, descriptor, sig, **context)
            key_id = descriptor.key_id

        logger.debug("Artifact verified", digest=digest, key_id=key_id, **context)
        return VerificationReport(
            digest=digest,
            checksum_verified=checksum_verified,
            signature_key_id=key_id,
        )

    def verify_checksum(self, data: bytes, expected: Checksum, **context: str) -> None:
        actual = compute_digest(data, expected.algorithm)
        if not hmac.compare_digest(actual, expected.digest):
            raise ChecksumMismatchError(expected.algorithm, expected.digest, actual, **context)

    def verify_signature(
        self,
        data: bytes,
        descriptor: SignatureDescriptor,
        signature: Optional[bytes],
        **context: str,
    ) -> None:
        if not signature:
            raise SignatureMissingError(
                f"Signature by '{descriptor.key_id}' was declared but none was found",
                **context,
            )

        key = self.trust_store.get(descriptor.key_id)
        if key is None:
            raise UntrustedKeyError(f"Signing key '{descriptor.key_id}' is not trusted", **context)

        if not key.verify(data, signature):
            raise SignatureInvalidError(
                f"Signature does not match artifact for key '{descriptor.key_id}'",
                **context,
            )
