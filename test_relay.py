import uuid
from datetime import timedelta

import pytest

from crypto.envelope import encrypt, decrypt
from crypto.primitives import deserialize_public_key, b64decode
from server.errors import RelayError
from server.models import ContentType


@pytest.fixture
async def befriended(friends, alice, bob):
    request = await friends.create_request(alice.id, bob.id)
    await friends.accept(request.id, bob.id)


async def test_send_requires_friendship(relay, alice, bob):
    with pytest.raises(RelayError) as exc:
        await relay.send(alice.id, bob.id, b"envelope", ContentType.TEXT, b"sig")
    assert exc.value.kind == RelayError.NOT_FRIENDS
    assert await relay.fetch(bob.id) == []


async def test_send_after_rejection_still_fails(relay, friends, alice, bob):
    request = await friends.create_request(alice.id, bob.id)
    await friends.reject(request.id, bob.id)

    with pytest.raises(RelayError):
        await relay.send(alice.id, bob.id, b"envelope", ContentType.TEXT, b"sig")


async def test_fetch_orders_and_joins_sender(relay, alice, bob, befriended):
    first = await relay.send(alice.id, bob.id, b"one", ContentType.TEXT, b"s1")
    second = await relay.send(bob.id, alice.id, b"reply", ContentType.TEXT, b"s2")
    third = await relay.send(alice.id, bob.id, b"two", ContentType.IMAGE, b"s3")

    pending = await relay.fetch(bob.id)
    assert [m.id for m in pending] == [first.id, third.id]
    assert pending[0].from_username == "alice"
    assert pending[0].from_public_key == alice.public_key
    assert pending[0].from_signing_key == alice.signing_key
    assert pending[1].content_type == ContentType.IMAGE
    assert [m.id for m in await relay.fetch(alice.id)] == [second.id]


async def test_acknowledge_deletes(relay, alice, bob, befriended):
    message = await relay.send(alice.id, bob.id, b"once", ContentType.TEXT, b"sig")
    await relay.acknowledge(message.id, bob.id)

    assert await relay.fetch(bob.id) == []
    with pytest.raises(RelayError) as exc:
        await relay.acknowledge(message.id, bob.id)
    assert exc.value.kind == RelayError.MESSAGE_NOT_FOUND


async def test_only_recipient_can_acknowledge(relay, alice, bob, befriended):
    message = await relay.send(alice.id, bob.id, b"mine", ContentType.TEXT, b"sig")

    with pytest.raises(RelayError) as exc:
        await relay.acknowledge(message.id, alice.id)
    assert exc.value.kind == RelayError.UNAUTHORIZED
    assert len(await relay.fetch(bob.id)) == 1


async def test_acknowledge_unknown(relay, bob):
    with pytest.raises(RelayError) as exc:
        await relay.acknowledge(uuid.uuid4(), bob.id)
    assert exc.value.kind == RelayError.MESSAGE_NOT_FOUND


async def test_purge_expired(relay, alice, bob, befriended):
    await relay.send(alice.id, bob.id, b"old", ContentType.TEXT, b"sig")

    assert await relay.purge_expired(timedelta(hours=1)) == 0
    assert await relay.purge_expired(timedelta(seconds=-1)) == 1
    assert await relay.fetch(bob.id) == []


async def test_hello_bob(relay, alice, bob, alice_keys, bob_keys, befriended):
    sealed = encrypt(b"Hello Bob!", deserialize_public_key(b64decode(bob.public_key)), alice_keys.private_key)
    await relay.send(alice.id, bob.id, sealed.data, ContentType.TEXT, sealed.signature)

    (message,) = await relay.fetch(bob.id)
    plaintext = decrypt(
        message.encrypted_content,
        deserialize_public_key(b64decode(message.from_public_key)),
        bob_keys.private_key,
        signature=message.signature,
        signing_public=alice_keys.signing_public_key
    )
    assert plaintext == b"Hello Bob!"

    await relay.acknowledge(message.id, bob.id)
    assert await relay.fetch(bob.id) == []
