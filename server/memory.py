"""
In-process storage backend.

Keeps every entity in dicts keyed by id, guarded by one asyncio.Lock.
Suitable for tests and single-process development servers; nothing
survives a restart.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Dict, Tuple

from .errors import FriendStateError, UsernameExistsError
from .models import (
    User,
    RefreshToken,
    FriendRequest,
    FriendRequestWithUser,
    FriendRequestStatus,
    Friendship,
    Friend,
    Message,
    MessageWithSender,
    canonical_pair,
)
from .storage import Backend, UserStore, FriendStore, MessageStore


class _MemoryState:
    def __init__(self):
        self.lock = asyncio.Lock()
        self.users: Dict[uuid.UUID, User] = {}
        self.usernames: Dict[str, uuid.UUID] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.requests: Dict[uuid.UUID, FriendRequest] = {}
        self.friendships: Dict[Tuple[uuid.UUID, uuid.UUID], Friendship] = {}
        # Insertion order doubles as creation order
        self.messages: Dict[uuid.UUID, Message] = {}


class MemoryUserStore(UserStore):
    def __init__(self, state: _MemoryState):
        self._state = state

    async def create_user(self, user: User) -> User:
        async with self._state.lock:
            key = user.username.lower()
            if key in self._state.usernames:
                raise UsernameExistsError()
            user = user.model_copy(update={"username": key})
            self._state.users[user.id] = user
            self._state.usernames[key] = user.id
            return user

    async def get_user_by_id(self, user_id: uuid.UUID) -> User | None:
        return self._state.users.get(user_id)

    async def get_user_by_username(self, username: str) -> User | None:
        user_id = self._state.usernames.get(username.lower())
        return self._state.users.get(user_id) if user_id else None

    async def store_refresh_token(self, token: RefreshToken) -> None:
        async with self._state.lock:
            self._state.refresh_tokens[token.token_hash] = token

    async def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        return self._state.refresh_tokens.get(token_hash)

    async def delete_refresh_token(self, token_hash: str) -> bool:
        async with self._state.lock:
            return self._state.refresh_tokens.pop(token_hash, None) is not None

    async def rotate_refresh_token(self, old_hash: str, new_token: RefreshToken) -> bool:
        async with self._state.lock:
            if self._state.refresh_tokens.pop(old_hash, None) is None:
                return False
            self._state.refresh_tokens[new_token.token_hash] = new_token
            return True

    async def delete_all_refresh_tokens(self, user_id: uuid.UUID) -> int:
        async with self._state.lock:
            doomed = [h for h, t in self._state.refresh_tokens.items() if t.user_id == user_id]
            for token_hash in doomed:
                del self._state.refresh_tokens[token_hash]
            return len(doomed)


class MemoryFriendStore(FriendStore):
    def __init__(self, state: _MemoryState):
        self._state = state

    async def create_request(self, request: FriendRequest) -> FriendRequest:
        async with self._state.lock:
            if self._pending_between(request.from_user_id, request.to_user_id) is not None:
                raise FriendStateError(FriendStateError.REQUEST_EXISTS)
            self._state.requests[request.id] = request
            return request

    async def get_request(self, request_id: uuid.UUID) -> FriendRequest | None:
        return self._state.requests.get(request_id)

    async def get_pending_between(self, user_a: uuid.UUID, user_b: uuid.UUID) -> FriendRequest | None:
        return self._pending_between(user_a, user_b)

    def _pending_between(self, user_a: uuid.UUID, user_b: uuid.UUID) -> FriendRequest | None:
        pair = {user_a, user_b}
        for request in self._state.requests.values():
            if request.status == FriendRequestStatus.PENDING and {request.from_user_id, request.to_user_id} == pair:
                return request
        return None

    async def get_pending_requests(self, user_id: uuid.UUID) -> list[FriendRequestWithUser]:
        pending = [
            r for r in self._state.requests.values()
            if r.to_user_id == user_id and r.status == FriendRequestStatus.PENDING
        ]
        pending.sort(key=lambda r: r.created_at, reverse=True)
        return [
            FriendRequestWithUser(
                **r.model_dump(),
                from_user=self._state.users[r.from_user_id].to_public()
            )
            for r in pending
        ]

    async def reject_request(self, request_id: uuid.UUID) -> bool:
        async with self._state.lock:
            request = self._state.requests.get(request_id)
            if request is None or request.status != FriendRequestStatus.PENDING:
                return False
            self._state.requests[request_id] = request.model_copy(
                update={"status": FriendRequestStatus.REJECTED}
            )
            return True

    async def accept_request(self, request_id: uuid.UUID) -> bool:
        async with self._state.lock:
            request = self._state.requests.get(request_id)
            if request is None or request.status != FriendRequestStatus.PENDING:
                return False
            self._state.requests[request_id] = request.model_copy(
                update={"status": FriendRequestStatus.ACCEPTED}
            )
            self._add_friendship(request.from_user_id, request.to_user_id)
            return True

    async def create_friendship(self, user_a: uuid.UUID, user_b: uuid.UUID) -> None:
        async with self._state.lock:
            self._add_friendship(user_a, user_b)

    def _add_friendship(self, user_a: uuid.UUID, user_b: uuid.UUID) -> None:
        pair = canonical_pair(user_a, user_b)
        if pair not in self._state.friendships:
            self._state.friendships[pair] = Friendship(user_a_id=pair[0], user_b_id=pair[1])

    async def are_friends(self, user_a: uuid.UUID, user_b: uuid.UUID) -> bool:
        return canonical_pair(user_a, user_b) in self._state.friendships

    async def list_friends(self, user_id: uuid.UUID) -> list[Friend]:
        friends = []
        for (user_a, user_b), friendship in self._state.friendships.items():
            if user_id not in (user_a, user_b):
                continue
            other = self._state.users[user_b if user_a == user_id else user_a]
            friends.append(Friend(
                user_id=other.id,
                username=other.username,
                public_key=other.public_key,
                signing_key=other.signing_key,
                since=friendship.created_at
            ))
        friends.sort(key=lambda f: f.username)
        return friends


class MemoryMessageStore(MessageStore):
    def __init__(self, state: _MemoryState):
        self._state = state

    async def create_message(self, message: Message) -> Message:
        async with self._state.lock:
            self._state.messages[message.id] = message
            return message

    async def get_message(self, message_id: uuid.UUID) -> Message | None:
        return self._state.messages.get(message_id)

    async def list_pending(self, recipient_id: uuid.UUID) -> list[MessageWithSender]:
        # sorted() is stable, so equal timestamps keep insertion order
        pending = sorted(
            (m for m in self._state.messages.values() if m.to_user_id == recipient_id),
            key=lambda m: m.created_at
        )
        result = []
        for message in pending:
            sender = self._state.users[message.from_user_id]
            result.append(MessageWithSender(
                **message.model_dump(),
                from_username=sender.username,
                from_public_key=sender.public_key,
                from_signing_key=sender.signing_key
            ))
        return result

    async def delete_message(self, message_id: uuid.UUID) -> bool:
        async with self._state.lock:
            return self._state.messages.pop(message_id, None) is not None

    async def delete_older_than(self, cutoff: datetime) -> int:
        async with self._state.lock:
            doomed = [i for i, m in self._state.messages.items() if m.created_at < cutoff]
            for message_id in doomed:
                del self._state.messages[message_id]
            return len(doomed)


class MemoryBackend(Backend):
    name = "memory"

    def __init__(self):
        state = _MemoryState()
        self._users = MemoryUserStore(state)
        self._friends = MemoryFriendStore(state)
        self._messages = MemoryMessageStore(state)

    @property
    def users(self) -> MemoryUserStore:
        return self._users

    @property
    def friends(self) -> MemoryFriendStore:
        return self._friends

    @property
    def messages(self) -> MemoryMessageStore:
        return self._messages
