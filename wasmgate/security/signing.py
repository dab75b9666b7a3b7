"""
Cryptographic Signing for Plugin Artifacts

ED25519 detached signatures over raw artifact bytes, and the trust store
of publisher keys used to check them.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

logger = structlog.get_logger(__name__)


def decode_signature(raw: Union[bytes, str]) -> bytes:
    """
    Accept a raw 64-byte signature or its base64/hex text encoding.

    Raises:
        ValueError: If the value is not a recognizable signature
    """
    if isinstance(raw, bytes) and len(raw) == 64:
        return raw

    text = raw.decode("ascii", errors="strict") if isinstance(raw, bytes) else raw
    text = text.strip()

    if len(text) == 128:
        try:
            return bytes.fromhex(text)
        except ValueError:
            pass

    try:
        decoded = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Signature is neither raw, hex nor base64: {e}")
    if len(decoded) != 64:
        raise ValueError(f"ED25519 signature must be 64 bytes, got {len(decoded)}")
    return decoded


def _key_id(public_bytes: bytes) -> str:
    return hashlib.sha256(public_bytes).hexdigest()[:16]


@dataclass
class SigningKey:
    """ED25519 signing key (private key), used by publishers and tests."""

    key_bytes: bytes
    key_id: str = ""

    def __post_init__(self) -> None:
        if not self.key_id:
            self.key_id = self.get_verifying_key().key_id

    @classmethod
    def generate(cls, key_id: Optional[str] = None) -> "SigningKey":
        """Generate a new signing key."""
        private_key = Ed25519PrivateKey.generate()
        return cls(key_bytes=private_key.private_bytes_raw(), key_id=key_id or "")

    def _private_key(self) -> Ed25519PrivateKey:
        return Ed25519PrivateKey.from_private_bytes(self.key_bytes)

    def get_verifying_key(self) -> "VerifyingKey":
        """Get the corresponding verifying (public) key."""
        public_bytes = self._private_key().public_key().public_bytes_raw()
        return VerifyingKey(key_bytes=public_bytes, key_id=self.key_id or _key_id(public_bytes))

    def sign(self, data: bytes) -> bytes:
        """Sign data and return the 64-byte detached signature."""
        return self._private_key().sign(data)

    def sign_b64(self, data: bytes) -> str:
        """Sign data and return the signature as base64 text (".sig" file contents)."""
        return base64.b64encode(self.sign(data)).decode("ascii")

    def to_pem(self) -> str:
        """Export key to PEM format."""
        return self._private_key().private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()

    @classmethod
    def from_pem(cls, pem: str, key_id: Optional[str] = None) -> "SigningKey":
        """Load key from PEM format."""
        private_key = serialization.load_pem_private_key(pem.encode(), password=None)
        if not isinstance(private_key, Ed25519PrivateKey):
            raise ValueError("PEM does not contain an ED25519 private key")
        return cls(key_bytes=private_key.private_bytes_raw(), key_id=key_id or "")


@dataclass
class VerifyingKey:
    """ED25519 verifying key (public key)."""

    key_bytes: bytes
    key_id: str = ""
    trust_level: str = "unknown"  # unknown, community, official

    def __post_init__(self) -> None:
        if len(self.key_bytes) != 32:
            raise ValueError(f"ED25519 public key must be 32 bytes, got {len(self.key_bytes)}")
        if not self.key_id:
            self.key_id = _key_id(self.key_bytes)

    def verify(self, data: bytes, signature: bytes) -> bool:
        """Verify a detached signature on data."""
        public_key = Ed25519PublicKey.from_public_bytes(self.key_bytes)
        try:
            public_key.verify(signature, data)
            return True
        except InvalidSignature:
            return False

    def to_pem(self) -> str:
        """Export key to PEM format."""
        public_key = Ed25519PublicKey.from_public_bytes(self.key_bytes)
        return public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()

    @classmethod
    def from_pem(
        cls,
        pem: str,
        key_id: Optional[str] = None,
        trust_level: str = "unknown",
    ) -> "VerifyingKey":
        """Load key from PEM format."""
        public_key = serialization.load_pem_public_key(pem.encode())
        if not isinstance(public_key, Ed25519PublicKey):
            raise ValueError("PEM does not contain an ED25519 public key")
        return cls(
            key_bytes=public_key.public_bytes_raw(),
            key_id=key_id or "",
            trust_level=trust_level,
        )

    @classmethod
    def from_b64(cls, text: str, key_id: Optional[str] = None) -> "VerifyingKey":
        """Load a raw public key encoded as base64."""
        return cls(key_bytes=base64.b64decode(text.strip()), key_id=key_id or "")


@dataclass
class TrustStore:
    """
    Publisher keys trusted to sign plugin artifacts, indexed by key id.

    Keys are added programmatically or loaded from a directory of
    "<key-id>.pem" / "<key-id>.pub" files.
    """

    _keys: Dict[str, VerifyingKey] = field(default_factory=dict)

    def add_trusted_key(self, key: VerifyingKey, trust_level: str = "community") -> None:
        """Add a trusted public key."""
        key.trust_level = trust_level
        self._keys[key.key_id] = key
        logger.debug("Trusted key added", key_id=key.key_id, trust_level=trust_level)

    def remove_trusted_key(self, key_id: str) -> None:
        """Remove a trusted key."""
        self._keys.pop(key_id, None)

    def get(self, key_id: str) -> Optional[VerifyingKey]:
        return self._keys.get(key_id)

    def __contains__(self, key_id: object) -> bool:
        return key_id in self._keys

    def __iter__(self) -> Iterator[VerifyingKey]:
        return iter(self._keys.values())

    def __len__(self) -> int:
        return len(self._keys)

    @classmethod
    def from_directory(cls, directory: Union[str, Path]) -> "TrustStore":
        """Load every "<key-id>.pem" (PEM) and "<key-id>.pub" (base64) file."""
        store = cls()
        directory = Path(directory)
        if not directory.is_dir():
            logger.warning("Trusted keys directory missing", path=str(directory))
            return store

        for path in sorted(directory.iterdir()):
            if path.suffix == ".pem":
                key = VerifyingKey.from_pem(path.read_text(), key_id=path.stem)
            elif path.suffix == ".pub":
                key = VerifyingKey.from_b64(path.read_text(), key_id=path.stem)
            else:
                continue
            store.add_trusted_key(key, trust_level="official")

        logger.info("Loaded trusted keys", count=len(store), path=str(directory))
        return store
