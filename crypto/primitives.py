"""
Cryptographic Primitives for End-to-End Encryption

This module provides the building blocks of the message envelope:
raw DEFLATE compression, X25519 key agreement, HKDF key derivation,
ChaCha20-Poly1305 sealing and Ed25519 signatures.
"""

import os
import hmac
import base64
import zlib
from typing import Tuple
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305


KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
SIGNATURE_SIZE = 64
KEY_ENCRYPTION_INFO = b"QuickPic-Key-Encryption"

# Negative window bits select raw DEFLATE (no zlib or gzip framing)
_RAW_DEFLATE_WBITS = -15


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class FormatError(CryptoError):
    """Envelope or key bytes are structurally invalid"""
    pass


class AuthenticationError(CryptoError):
    """AEAD tag verification failed"""
    pass


class SignatureError(CryptoError):
    """Envelope signature does not match the sender's signing key"""
    pass


def compress(data: bytes) -> bytes:
    """
    Compress data with raw DEFLATE at the default level.

    Args:
        data: Bytes to compress

    Returns:
        Raw DEFLATE stream
    """
    compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, _RAW_DEFLATE_WBITS)
    return compressor.compress(data) + compressor.flush()


def decompress(data: bytes) -> bytes:
    """
    Inflate a raw DEFLATE stream.

    Raises:
        FormatError: If the stream is corrupt or truncated
    """
    decompressor = zlib.decompressobj(_RAW_DEFLATE_WBITS)
    try:
        output = decompressor.decompress(data) + decompressor.flush()
    except zlib.error as e:
        raise FormatError(f"Decompression failed: {e}") from e
    if not decompressor.eof:
        raise FormatError("Decompression failed: truncated stream")
    return output


def generate_keypair() -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Generate a Curve25519 Diffie-Hellman keypair.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = X25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def dh_exchange(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
    """
    Perform Diffie-Hellman key exchange.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret

    Raises:
        FormatError: If their key is a low-order point (all-zero secret)
    """
    try:
        return private_key.exchange(public_key)
    except ValueError:
        raise FormatError("Public key does not yield a usable shared secret") from None


def derive_kek(shared_secret: bytes) -> bytes:
    """
    Derive the key-encryption-key from an X25519 shared secret.

    HKDF-SHA256 with an empty salt and the fixed QuickPic context label.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=KEY_ENCRYPTION_INFO
    )
    return hkdf.derive(shared_secret)


def generate_content_key() -> bytes:
    """Fresh random 256-bit symmetric key"""
    return ChaCha20Poly1305.generate_key()


def seal(key: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt with ChaCha20-Poly1305 under a fresh random nonce.

    Args:
        key: 32-byte encryption key
        plaintext: Data to encrypt

    Returns:
        nonce (12 bytes) + ciphertext + tag (16 bytes)
    """
    nonce = os.urandom(NONCE_SIZE)
    return nonce + ChaCha20Poly1305(key).encrypt(nonce, plaintext, None)


def open_sealed(key: bytes, sealed: bytes) -> bytes:
    """
    Decrypt a nonce-prefixed ChaCha20-Poly1305 blob.

    Args:
        key: 32-byte encryption key
        sealed: nonce + ciphertext + tag

    Returns:
        Decrypted plaintext

    Raises:
        AuthenticationError: If the blob is too short or the tag does not verify
    """
    if len(sealed) < NONCE_SIZE + TAG_SIZE:
        raise AuthenticationError("Ciphertext too short")

    nonce = sealed[:NONCE_SIZE]
    try:
        return ChaCha20Poly1305(key).decrypt(nonce, sealed[NONCE_SIZE:], None)
    except InvalidTag:
        raise AuthenticationError("Decryption failed") from None


def signing_key_from_seed(private_key: X25519PrivateKey) -> Ed25519PrivateKey:
    """Use the X25519 private seed bytes directly as an Ed25519 seed"""
    return Ed25519PrivateKey.from_private_bytes(serialize_private_key(private_key))


def signing_public_key(private_key: X25519PrivateKey) -> Ed25519PublicKey:
    """
    Ed25519 public key matching signing_key_from_seed().

    It is unrelated to the X25519 public key and has to be published
    alongside it for peers to verify envelope signatures.
    """
    return signing_key_from_seed(private_key).public_key()


def sign(private_key: X25519PrivateKey, data: bytes) -> bytes:
    """Ed25519 signature (64 bytes) over data"""
    return signing_key_from_seed(private_key).sign(data)


def verify(public_key: Ed25519PublicKey, signature: bytes, data: bytes) -> None:
    """
    Verify an Ed25519 signature.

    Raises:
        SignatureError: If the signature is invalid
    """
    try:
        public_key.verify(signature, data)
    except InvalidSignature:
        raise SignatureError("Signature verification failed") from None


def serialize_public_key(public_key: X25519PublicKey) -> bytes:
    """Serialize X25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_public_key(key_bytes: bytes) -> X25519PublicKey:
    """Deserialize bytes to X25519 public key"""
    if len(key_bytes) != KEY_SIZE:
        raise FormatError("Public key must be 32 bytes")
    return X25519PublicKey.from_public_bytes(key_bytes)


def serialize_private_key(private_key: X25519PrivateKey) -> bytes:
    """Serialize X25519 private key to its raw 32-byte seed"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )


def deserialize_private_key(key_bytes: bytes) -> X25519PrivateKey:
    """Deserialize a raw 32-byte seed to an X25519 private key"""
    if len(key_bytes) != KEY_SIZE:
        raise FormatError("Private key must be 32 bytes")
    return X25519PrivateKey.from_private_bytes(key_bytes)


def serialize_signing_public_key(public_key: Ed25519PublicKey) -> bytes:
    """Serialize Ed25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_signing_public_key(key_bytes: bytes) -> Ed25519PublicKey:
    """Deserialize bytes to Ed25519 public key"""
    if len(key_bytes) != KEY_SIZE:
        raise FormatError("Signing key must be 32 bytes")
    return Ed25519PublicKey.from_public_bytes(key_bytes)


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """
    Strict standard base64 decoding.

    Raises:
        FormatError: If the text is not valid base64
    """
    try:
        return base64.b64decode(text, validate=True)
    except (ValueError, TypeError) as e:
        raise FormatError("Invalid base64 encoding") from e


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)
