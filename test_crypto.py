"""
Tests for the envelope primitives and the hybrid envelope itself.
"""

import struct
import zlib

import pytest

from crypto.primitives import (
    generate_keypair,
    dh_exchange,
    derive_kek,
    compress,
    decompress,
    seal,
    open_sealed,
    sign,
    verify,
    signing_public_key,
    serialize_public_key,
    serialize_signing_public_key,
    deserialize_public_key,
    NONCE_SIZE,
    TAG_SIZE,
    KEY_SIZE,
    SIGNATURE_SIZE,
    CryptoError,
    AuthenticationError,
    FormatError,
    SignatureError,
)
from crypto.envelope import SealedEnvelope, encrypt, decrypt, pack, unpack
from crypto.identity import IdentityKeyPair


def test_dh_exchange():
    """Both sides of X25519 derive the same secret"""
    alice_private, alice_public = generate_keypair()
    bob_private, bob_public = generate_keypair()

    alice_shared = dh_exchange(alice_private, bob_public)
    bob_shared = dh_exchange(bob_private, alice_public)

    assert alice_shared == bob_shared, "DH exchange failed"
    assert len(alice_shared) == 32, "Wrong shared secret length"


def test_dh_exchange_rejects_low_order_point():
    """An all-zero peer key is reported as a format problem, not a bare ValueError"""
    private_key, _ = generate_keypair()
    with pytest.raises(FormatError):
        dh_exchange(private_key, deserialize_public_key(b"\x00" * KEY_SIZE))


def test_decrypt_from_low_order_sender(alice_keys, bob_keys):
    sealed = encrypt(b"for bob", bob_keys.public_key, alice_keys.private_key)
    with pytest.raises(CryptoError):
        decrypt(sealed.data, deserialize_public_key(b"\x00" * KEY_SIZE), bob_keys.private_key)


def test_kdf():
    key = derive_kek(b"\x01" * 32)
    assert len(key) == KEY_SIZE
    assert derive_kek(b"\x01" * 32) == key
    assert derive_kek(b"\x02" * 32) != key


def test_compression_is_raw_deflate():
    data = b"hello hello hello hello"
    compressed = compress(data)

    # No zlib header: a zlib-framed reader must reject it, a raw reader must not
    with pytest.raises(zlib.error):
        zlib.decompress(compressed)
    assert zlib.decompress(compressed, -15) == data
    assert decompress(compressed) == data


def test_decompress_rejects_garbage():
    with pytest.raises(FormatError):
        decompress(b"\xff\xff\xff\xff")


def test_encryption():
    """Test symmetric sealing"""
    key = b"0" * 32
    plaintext = b"Hello, World!"

    sealed = seal(key, plaintext)
    assert len(sealed) == NONCE_SIZE + len(plaintext) + TAG_SIZE
    assert open_sealed(key, sealed) == plaintext
    assert seal(key, plaintext) != sealed, "Nonce must be fresh per call"

    with pytest.raises(AuthenticationError):
        open_sealed(b"1" * 32, sealed)
    with pytest.raises(AuthenticationError):
        open_sealed(key, sealed[:NONCE_SIZE + TAG_SIZE - 1])


def test_signature_uses_x25519_seed():
    private, _ = generate_keypair()
    signature = sign(private, b"payload")

    assert len(signature) == SIGNATURE_SIZE
    verify(signing_public_key(private), signature, b"payload")
    with pytest.raises(SignatureError):
        verify(signing_public_key(private), signature, b"other payload")


def test_signing_key_differs_from_agreement_key():
    identity = IdentityKeyPair()
    assert serialize_signing_public_key(identity.signing_public_key) != serialize_public_key(identity.public_key)


def test_envelope_round_trip(alice_keys, bob_keys):
    sealed = encrypt(b"Hello Bob!", bob_keys.public_key, alice_keys.private_key)
    plaintext = decrypt(
        sealed.data,
        alice_keys.public_key,
        bob_keys.private_key,
        signature=sealed.signature,
        signing_public=alice_keys.signing_public_key
    )
    assert plaintext == b"Hello Bob!"


@pytest.mark.parametrize("plaintext", [b"", b"x", bytes(range(256)) * 40])
def test_envelope_round_trip_sizes(alice_keys, bob_keys, plaintext):
    sealed = encrypt(plaintext, bob_keys.public_key, alice_keys.private_key)
    assert decrypt(sealed.data, alice_keys.public_key, bob_keys.private_key) == plaintext


def test_envelope_layout(alice_keys, bob_keys):
    sealed = encrypt(b"layout", bob_keys.public_key, alice_keys.private_key)
    (key_length,) = struct.unpack(">I", sealed.data[:4])

    # Wrapped key is nonce + 32-byte content key + tag
    assert key_length == NONCE_SIZE + KEY_SIZE + TAG_SIZE
    wrapped_key, wrapped_content = unpack(sealed.data)
    assert wrapped_key == sealed.data[4:4 + key_length]
    assert pack(wrapped_key, wrapped_content) == sealed.data
    assert len(sealed.signature) == SIGNATURE_SIZE


def test_envelope_is_fresh_per_message(alice_keys, bob_keys):
    first = encrypt(b"same", bob_keys.public_key, alice_keys.private_key)
    second = encrypt(b"same", bob_keys.public_key, alice_keys.private_key)
    assert first.data != second.data


def test_tampering_never_yields_plaintext(alice_keys, bob_keys):
    sealed = encrypt(b"do not touch", bob_keys.public_key, alice_keys.private_key)

    for index in range(len(sealed.data)):
        tampered = bytearray(sealed.data)
        tampered[index] ^= 0x01
        with pytest.raises((AuthenticationError, FormatError)):
            decrypt(bytes(tampered), alice_keys.public_key, bob_keys.private_key)


def test_oversized_length_prefix(alice_keys, bob_keys):
    sealed = encrypt(b"payload", bob_keys.public_key, alice_keys.private_key)
    bad = struct.pack(">I", len(sealed.data)) + sealed.data[4:]
    with pytest.raises(FormatError):
        decrypt(bad, alice_keys.public_key, bob_keys.private_key)


def test_short_envelope():
    with pytest.raises(FormatError):
        unpack(b"\x00\x00\x01")


def test_wrong_recipient(alice_keys, bob_keys):
    eve = IdentityKeyPair()
    sealed = encrypt(b"for bob", bob_keys.public_key, alice_keys.private_key)
    with pytest.raises(AuthenticationError):
        decrypt(sealed.data, alice_keys.public_key, eve.private_key)


def test_bad_signature_is_rejected_before_decryption(alice_keys, bob_keys):
    sealed = encrypt(b"signed", bob_keys.public_key, alice_keys.private_key)
    with pytest.raises(SignatureError):
        decrypt(
            sealed.data,
            alice_keys.public_key,
            bob_keys.private_key,
            signature=sealed.signature,
            signing_public=bob_keys.signing_public_key
        )


def test_sealed_envelope_transport_form(alice_keys, bob_keys):
    sealed = encrypt(b"transport", bob_keys.public_key, alice_keys.private_key)
    restored = SealedEnvelope.from_dict(sealed.to_dict())
    assert restored == sealed


def test_identity_export_import():
    identity = IdentityKeyPair()
    restored = IdentityKeyPair.from_dict(identity.to_dict())
    assert restored.public_b64 == identity.public_b64
    assert restored.signing_b64 == identity.signing_b64
