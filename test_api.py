"""
HTTP surface tests, run against the in-memory backend.
"""

import uuid

import pytest

from crypto.envelope import SealedEnvelope, encrypt, decrypt
from crypto.identity import IdentityKeyPair
from crypto.primitives import deserialize_public_key, deserialize_signing_public_key, b64decode


def register(api, username: str, keys: IdentityKeyPair) -> dict:
    response = api.post("/auth/register", json={
        "username": username,
        "password": f"{username}-password",
        "public_key": keys.public_b64,
        "signing_key": keys.signing_b64
    })
    assert response.status_code == 201, response.text
    return response.json()


def bearer(session: dict) -> dict:
    return {"Authorization": f"Bearer {session['access_token']}"}


@pytest.fixture
def alice_session(api, alice_keys):
    return register(api, "alice", alice_keys)


@pytest.fixture
def bob_session(api, bob_keys):
    return register(api, "bob", bob_keys)


def befriend(api, sender: dict, receiver: dict):
    response = api.post("/friends/request", json={"username": receiver["user"]["username"]}, headers=bearer(sender))
    assert response.status_code == 201, response.text
    response = api.post("/friends/accept", json={"request_id": response.json()["id"]}, headers=bearer(receiver))
    assert response.status_code == 200, response.text


def test_health(api):
    assert api.get("/health").json() == {"status": "ok"}


def test_register_response_shape(alice_session, alice_keys):
    assert alice_session["expires_in"] == 900
    assert alice_session["token_type"] == "bearer"
    assert alice_session["user"]["username"] == "alice"
    assert alice_session["user"]["public_key"] == alice_keys.public_b64


def test_register_duplicate(api, alice_session, bob_keys):
    response = api.post("/auth/register", json={
        "username": "ALICE",
        "password": "whatever-password",
        "public_key": bob_keys.public_b64
    })
    assert response.status_code == 409
    assert response.json()["code"] == "username_exists"


def test_register_validation(api):
    response = api.post("/auth/register", json={
        "username": "carol",
        "password": "short",
        "public_key": "not-a-key"
    })
    assert response.status_code == 422


def test_login_and_generic_failure(api, alice_session):
    assert api.post("/auth/login", json={"username": "alice", "password": "alice-password"}).status_code == 200

    wrong = api.post("/auth/login", json={"username": "alice", "password": "nope-nope"})
    missing = api.post("/auth/login", json={"username": "nobody", "password": "nope-nope"})
    assert wrong.status_code == missing.status_code == 401
    assert wrong.json() == missing.json()


def test_refresh_and_logout(api, alice_session):
    rotated = api.post("/auth/refresh", json={"refresh_token": alice_session["refresh_token"]})
    assert rotated.status_code == 200

    reused = api.post("/auth/refresh", json={"refresh_token": alice_session["refresh_token"]})
    assert reused.status_code == 401
    assert reused.json()["code"] == "invalid_token"

    new_token = rotated.json()["refresh_token"]
    assert api.post("/auth/logout", json={"refresh_token": new_token}).status_code == 200
    assert api.post("/auth/logout", json={"refresh_token": new_token}).status_code == 200
    assert api.post("/auth/refresh", json={"refresh_token": new_token}).status_code == 401


def test_protected_routes_require_token(api):
    assert api.get("/friends").status_code == 401
    response = api.get("/messages", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401
    assert response.json()["code"] == "invalid_token"


def test_user_lookup(api, alice_session, bob_session, bob_keys):
    response = api.get("/users/BOB", headers=bearer(alice_session))
    assert response.status_code == 200
    assert response.json()["signing_key"] == bob_keys.signing_b64
    assert api.get("/users/nobody", headers=bearer(alice_session)).status_code == 404


def test_friend_request_flow(api, alice_session, bob_session):
    response = api.post("/friends/request", json={"username": "bob"}, headers=bearer(alice_session))
    request_id = response.json()["id"]
    assert response.json()["status"] == "pending"

    duplicate = api.post("/friends/request", json={"username": "alice"}, headers=bearer(bob_session))
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "friend_request_exists"

    pending = api.get("/friends/requests", headers=bearer(bob_session)).json()
    assert [(p["id"], p["from_user"]["username"]) for p in pending] == [(request_id, "alice")]

    forbidden = api.post("/friends/accept", json={"request_id": request_id}, headers=bearer(alice_session))
    assert forbidden.status_code == 403

    assert api.post("/friends/accept", json={"request_id": request_id}, headers=bearer(bob_session)).status_code == 200
    friends = api.get("/friends", headers=bearer(alice_session)).json()
    assert [f["username"] for f in friends] == ["bob"]


def test_self_request_and_unknown_user(api, alice_session):
    response = api.post("/friends/request", json={"username": "alice"}, headers=bearer(alice_session))
    assert response.status_code == 400
    assert response.json()["code"] == "cannot_add_self"

    response = api.post("/friends/request", json={"username": "ghost"}, headers=bearer(alice_session))
    assert response.status_code == 404


def test_reject_request(api, alice_session, bob_session):
    request_id = api.post("/friends/request", json={"username": "bob"}, headers=bearer(alice_session)).json()["id"]
    assert api.post("/friends/reject", json={"request_id": request_id}, headers=bearer(bob_session)).status_code == 200
    assert api.get("/friends", headers=bearer(bob_session)).json() == []

    again = api.post("/friends/accept", json={"request_id": request_id}, headers=bearer(bob_session))
    assert again.status_code == 404


def test_messages_require_friendship(api, alice_session, bob_session, alice_keys, bob_keys):
    sealed = encrypt(b"hi", bob_keys.public_key, alice_keys.private_key)
    response = api.post("/messages", json={
        "to_username": "bob", "content_type": "text", **sealed.to_dict()
    }, headers=bearer(alice_session))
    assert response.status_code == 403
    assert response.json()["code"] == "not_friends"


def test_message_rejects_bad_base64(api, alice_session, bob_session):
    befriend(api, alice_session, bob_session)
    response = api.post("/messages", json={
        "to_username": "bob", "content_type": "text",
        "encrypted_content": "%%%", "signature": "AAAA"
    }, headers=bearer(alice_session))
    assert response.status_code == 422


def test_acknowledge_permissions(api, alice_session, bob_session, alice_keys, bob_keys):
    befriend(api, alice_session, bob_session)
    sealed = encrypt(b"hi", bob_keys.public_key, alice_keys.private_key)
    message_id = api.post("/messages", json={
        "to_username": "bob", "content_type": "text", **sealed.to_dict()
    }, headers=bearer(alice_session)).json()["id"]

    assert api.delete(f"/messages/{message_id}", headers=bearer(alice_session)).status_code == 403
    assert api.delete(f"/messages/{uuid.uuid4()}", headers=bearer(bob_session)).status_code == 404
    assert api.delete(f"/messages/{message_id}", headers=bearer(bob_session)).status_code == 200
    assert api.delete(f"/messages/{message_id}", headers=bearer(bob_session)).status_code == 404


def test_hello_bob_end_to_end(api, alice_session, bob_session, alice_keys, bob_keys):
    befriend(api, alice_session, bob_session)

    # Alice encrypts for the key Bob published
    bob_profile = api.get("/users/bob", headers=bearer(alice_session)).json()
    sealed = encrypt(b"Hello Bob!", deserialize_public_key(b64decode(bob_profile["public_key"])), alice_keys.private_key)
    response = api.post("/messages", json={
        "to_username": "bob", "content_type": "text", **sealed.to_dict()
    }, headers=bearer(alice_session))
    assert response.status_code == 201
    message_id = response.json()["id"]

    (message,) = api.get("/messages", headers=bearer(bob_session)).json()
    assert message["id"] == message_id
    assert message["from_username"] == "alice"

    received = SealedEnvelope.from_dict(message)
    plaintext = decrypt(
        received.data,
        deserialize_public_key(b64decode(message["from_public_key"])),
        bob_keys.private_key,
        signature=received.signature,
        signing_public=deserialize_signing_public_key(b64decode(message["from_signing_key"]))
    )
    assert plaintext == b"Hello Bob!"

    assert api.delete(f"/messages/{message_id}", headers=bearer(bob_session)).status_code == 200
    assert api.get("/messages", headers=bearer(bob_session)).json() == []


def test_register_rejects_unusable_public_key(api):
    response = api.post("/auth/register", json={
        "username": "carol",
        "password": "carol-password",
        "public_key": "A" * 43 + "="
    })
    assert response.status_code == 422


def test_logout_everywhere(api, alice_session):
    second = api.post("/auth/login", json={"username": "alice", "password": "alice-password"}).json()

    response = api.post("/auth/logout-all", headers=bearer(second))
    assert response.status_code == 200
    assert response.json()["revoked"] == 2

    for session in (alice_session, second):
        assert api.post("/auth/refresh", json={"refresh_token": session["refresh_token"]}).status_code == 401
    assert api.post("/auth/logout-all").status_code == 401
