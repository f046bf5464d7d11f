"""
Hybrid Encryption Envelope

Every message gets its own random content key. The content is compressed,
sealed under that key, and the key itself is sealed under a
key-encryption-key derived from the X25519 shared secret of sender and
recipient.

Wire format:
    [4 bytes big-endian: length of wrapped key]
    [wrapped key     = nonce (12) + ciphertext + tag (16)]
    [wrapped content = nonce (12) + ciphertext + tag (16)]

The signature is an Ed25519 signature over the complete envelope bytes.
"""

import struct
from typing import Dict, Optional, Tuple
from dataclasses import dataclass
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from .primitives import (
    FormatError,
    compress,
    decompress,
    generate_content_key,
    dh_exchange,
    derive_kek,
    seal,
    open_sealed,
    sign,
    verify,
    b64encode,
    b64decode,
)


_LENGTH_PREFIX = struct.Struct(">I")


@dataclass
class SealedEnvelope:
    """
    Output of encrypt().

    Attributes:
        data: Raw envelope bytes
        signature: 64-byte Ed25519 signature over data
    """
    data: bytes
    signature: bytes

    def to_dict(self) -> Dict[str, str]:
        """Base64 transport form used in the encrypted_content/signature fields"""
        return {
            'encrypted_content': b64encode(self.data),
            'signature': b64encode(self.signature)
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'SealedEnvelope':
        """Create from the base64 transport form"""
        return cls(
            data=b64decode(data['encrypted_content']),
            signature=b64decode(data['signature'])
        )


def pack(wrapped_key: bytes, wrapped_content: bytes) -> bytes:
    """Frame the two sealed layers behind a big-endian length prefix"""
    return _LENGTH_PREFIX.pack(len(wrapped_key)) + wrapped_key + wrapped_content


def unpack(data: bytes) -> Tuple[bytes, bytes]:
    """
    Split envelope bytes into (wrapped_key, wrapped_content).

    Raises:
        FormatError: If the length prefix is missing or overruns the buffer
    """
    if len(data) < _LENGTH_PREFIX.size:
        raise FormatError("Envelope too short for length prefix")

    (key_length,) = _LENGTH_PREFIX.unpack_from(data)
    body = data[_LENGTH_PREFIX.size:]
    if key_length > len(body):
        raise FormatError("Declared wrapped key length exceeds envelope size")

    return body[:key_length], body[key_length:]


def encrypt(
    plaintext: bytes,
    recipient_public: X25519PublicKey,
    sender_private: X25519PrivateKey
) -> SealedEnvelope:
    """
    Encrypt plaintext for a recipient.

    Args:
        plaintext: Message content
        recipient_public: Recipient's X25519 public key
        sender_private: Sender's X25519 private key (also the signing seed)

    Returns:
        SealedEnvelope with envelope bytes and signature
    """
    content_key = generate_content_key()
    wrapped_content = seal(content_key, compress(plaintext))

    kek = derive_kek(dh_exchange(sender_private, recipient_public))
    wrapped_key = seal(kek, content_key)

    data = pack(wrapped_key, wrapped_content)
    return SealedEnvelope(data=data, signature=sign(sender_private, data))


def decrypt(
    data: bytes,
    sender_public: X25519PublicKey,
    recipient_private: X25519PrivateKey,
    signature: Optional[bytes] = None,
    signing_public: Optional[Ed25519PublicKey] = None
) -> bytes:
    """
    Recover plaintext from envelope bytes.

    The signature is checked first when both signature and signing_public
    are given. Nothing is returned unless every layer authenticates.

    Args:
        data: Raw envelope bytes
        sender_public: Sender's X25519 public key
        recipient_private: Our X25519 private key
        signature: Optional Ed25519 signature over data
        signing_public: Sender's Ed25519 signing public key

    Returns:
        Decrypted plaintext

    Raises:
        SignatureError: Signature does not verify
        FormatError: Bad framing or corrupt compressed stream
        AuthenticationError: Either sealed layer fails authentication
    """
    if signature is not None and signing_public is not None:
        verify(signing_public, signature, data)

    wrapped_key, wrapped_content = unpack(data)

    kek = derive_kek(dh_exchange(recipient_private, sender_public))
    content_key = open_sealed(kek, wrapped_key)
    return decompress(open_sealed(content_key, wrapped_content))
