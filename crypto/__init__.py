"""
Cryptographic module for end-to-end encrypted messaging.

Implements the QuickPic hybrid envelope:
- X25519 key agreement with an HKDF-SHA256 key-encryption-key
- ChaCha20-Poly1305 for both the wrapped content key and the content
- Ed25519 signature over the whole envelope
"""

from .primitives import (
    generate_keypair,
    dh_exchange,
    derive_kek,
    compress,
    decompress,
    CryptoError,
    FormatError,
    AuthenticationError,
    SignatureError
)
from .envelope import SealedEnvelope, encrypt, decrypt
from .identity import IdentityKeyPair

__all__ = [
    'generate_keypair',
    'dh_exchange',
    'derive_kek',
    'compress',
    'decompress',
    'encrypt',
    'decrypt',
    'SealedEnvelope',
    'IdentityKeyPair',
    'CryptoError',
    'FormatError',
    'AuthenticationError',
    'SignatureError'
]
