"""
Long-term identity keys.

A user owns one X25519 key pair. The Ed25519 signing key is derived from
the same private seed, so its public half is published as a second key.
"""

from typing import Dict, Optional
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from .primitives import (
    generate_keypair,
    signing_public_key,
    serialize_public_key,
    serialize_private_key,
    deserialize_private_key,
    serialize_signing_public_key,
    b64encode,
    b64decode,
)


class IdentityKeyPair:
    """
    A user's X25519 key pair plus the derived Ed25519 verification key.
    """

    def __init__(self, private_key: Optional[X25519PrivateKey] = None):
        if private_key is None:
            private_key, _ = generate_keypair()
        self.private_key = private_key
        self.public_key: X25519PublicKey = private_key.public_key()
        self.signing_public_key: Ed25519PublicKey = signing_public_key(private_key)

    @property
    def public_b64(self) -> str:
        """X25519 public key as sent to the server"""
        return b64encode(serialize_public_key(self.public_key))

    @property
    def signing_b64(self) -> str:
        """Ed25519 public key as sent to the server"""
        return b64encode(serialize_signing_public_key(self.signing_public_key))

    def to_dict(self) -> Dict[str, str]:
        """Export key pair to dictionary for storage."""
        return {
            'private': b64encode(serialize_private_key(self.private_key)),
            'public': self.public_b64,
            'signing': self.signing_b64
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'IdentityKeyPair':
        """Import key pair from dictionary."""
        return cls(deserialize_private_key(b64decode(data['private'])))
