"""
Wasmgate Security

Checksum and signature verification of downloaded plugin artifacts.
"""

from wasmgate.security.signing import SigningKey, TrustStore, VerifyingKey, decode_signature
from wasmgate.security.verifier import (
    ArtifactVerifier,
    VerificationReport,
    compute_digest,
    parse_checksum_file,
)

__all__ = [
    "ArtifactVerifier",
    "SigningKey",
    "TrustStore",
    "VerificationReport",
    "VerifyingKey",
    "compute_digest",
    "decode_signature",
    "parse_checksum_file",
]
