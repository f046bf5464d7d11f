"""
Storage interfaces the services depend on.

Backends (relational, in-memory, ...) implement these ABCs; services never
import a concrete backend. Driver failures propagate unchanged.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime

from .models import (
    User,
    RefreshToken,
    FriendRequest,
    FriendRequestWithUser,
    Friend,
    Message,
    MessageWithSender,
)


class UserStore(ABC):
    @abstractmethod
    async def create_user(self, user: User) -> User:
        """
        Persist a new user. Username uniqueness is case-insensitive.
        :raises UsernameExistsError:
        """
        raise NotImplementedError()

    @abstractmethod
    async def get_user_by_id(self, user_id: uuid.UUID) -> User | None:
        raise NotImplementedError()

    @abstractmethod
    async def get_user_by_username(self, username: str) -> User | None:
        """
        Case-insensitive lookup
        :param username:
        :return:
        """
        raise NotImplementedError()

    @abstractmethod
    async def store_refresh_token(self, token: RefreshToken) -> None:
        raise NotImplementedError()

    @abstractmethod
    async def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        raise NotImplementedError()

    @abstractmethod
    async def delete_refresh_token(self, token_hash: str) -> bool:
        """
        Delete a refresh token record.
        :param token_hash:
        :return: True if a record was deleted
        """
        raise NotImplementedError()

    @abstractmethod
    async def rotate_refresh_token(self, old_hash: str, new_token: RefreshToken) -> bool:
        """
        Atomically consume old_hash and store new_token.
        :return: False (and nothing stored) if old_hash was already gone
        """
        raise NotImplementedError()

    @abstractmethod
    async def delete_all_refresh_tokens(self, user_id: uuid.UUID) -> int:
        raise NotImplementedError()


class FriendStore(ABC):
    @abstractmethod
    async def create_request(self, request: FriendRequest) -> FriendRequest:
        """
        Persist a pending request. At most one pending request may exist per
        unordered pair; the check and the insert happen as one step.
        :raises FriendStateError: REQUEST_EXISTS
        """
        raise NotImplementedError()

    @abstractmethod
    async def get_request(self, request_id: uuid.UUID) -> FriendRequest | None:
        raise NotImplementedError()

    @abstractmethod
    async def get_pending_between(self, user_a: uuid.UUID, user_b: uuid.UUID) -> FriendRequest | None:
        """
        Pending request for the unordered pair, in either direction.
        """
        raise NotImplementedError()

    @abstractmethod
    async def get_pending_requests(self, user_id: uuid.UUID) -> list[FriendRequestWithUser]:
        """
        Pending requests addressed to user_id, newest first, joined with the sender.
        """
        raise NotImplementedError()

    @abstractmethod
    async def reject_request(self, request_id: uuid.UUID) -> bool:
        """
        Atomically mark a pending request rejected.
        :return: False if the request was no longer pending
        """
        raise NotImplementedError()

    @abstractmethod
    async def accept_request(self, request_id: uuid.UUID) -> bool:
        """
        Atomically mark a pending request accepted and create the friendship.
        :return: False if the request was no longer pending
        """
        raise NotImplementedError()

    @abstractmethod
    async def create_friendship(self, user_a: uuid.UUID, user_b: uuid.UUID) -> None:
        """
        Idempotent; the pair is stored in canonical order.
        """
        raise NotImplementedError()

    @abstractmethod
    async def are_friends(self, user_a: uuid.UUID, user_b: uuid.UUID) -> bool:
        raise NotImplementedError()

    @abstractmethod
    async def list_friends(self, user_id: uuid.UUID) -> list[Friend]:
        """
        Friends of user_id ordered by username.
        """
        raise NotImplementedError()


class MessageStore(ABC):
    @abstractmethod
    async def create_message(self, message: Message) -> Message:
        raise NotImplementedError()

    @abstractmethod
    async def get_message(self, message_id: uuid.UUID) -> Message | None:
        raise NotImplementedError()

    @abstractmethod
    async def list_pending(self, recipient_id: uuid.UUID) -> list[MessageWithSender]:
        """
        Messages for recipient_id in creation order, joined with sender identity.
        """
        raise NotImplementedError()

    @abstractmethod
    async def delete_message(self, message_id: uuid.UUID) -> bool:
        raise NotImplementedError()

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime) -> int:
        raise NotImplementedError()


class Backend(ABC):
    """A complete storage backend"""
    name: str = "backend"

    @property
    @abstractmethod
    def users(self) -> UserStore:
        raise NotImplementedError()

    @property
    @abstractmethod
    def friends(self) -> FriendStore:
        raise NotImplementedError()

    @property
    @abstractmethod
    def messages(self) -> MessageStore:
        raise NotImplementedError()

    async def initialize(self) -> None:
        """Create schema or connections; no-op by default"""

    async def close(self) -> None:
        """Release connections; no-op by default"""
