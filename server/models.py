"""
Domain records passed between the services and the storage backends.
"""

import uuid
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Tuple
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def canonical_pair(user_a: uuid.UUID, user_b: uuid.UUID) -> Tuple[uuid.UUID, uuid.UUID]:
    """Order a user pair lowest id first so lookups ignore direction"""
    if str(user_a) > str(user_b):
        return user_b, user_a
    return user_a, user_b


class FriendRequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ContentType(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class UserPublic(BaseModel):
    id: uuid.UUID
    username: str
    public_key: str
    signing_key: Optional[str] = None


class User(BaseModel):
    """Stored account. Username is kept case-folded."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    username: str
    password_hash: str
    public_key: str
    signing_key: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def to_public(self) -> UserPublic:
        return UserPublic(
            id=self.id,
            username=self.username,
            public_key=self.public_key,
            signing_key=self.signing_key
        )


class RefreshToken(BaseModel):
    token_hash: str
    user_id: uuid.UUID
    expires_at: datetime


class FriendRequest(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    from_user_id: uuid.UUID
    to_user_id: uuid.UUID
    status: FriendRequestStatus = FriendRequestStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)


class FriendRequestWithUser(FriendRequest):
    from_user: UserPublic


class Friendship(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_a_id: uuid.UUID
    user_b_id: uuid.UUID
    created_at: datetime = Field(default_factory=utcnow)


class Friend(BaseModel):
    user_id: uuid.UUID
    username: str
    public_key: str
    signing_key: Optional[str] = None
    since: datetime


class Message(BaseModel):
    """Relayed envelope. Content and signature are opaque to the server."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    from_user_id: uuid.UUID
    to_user_id: uuid.UUID
    encrypted_content: bytes
    content_type: ContentType
    signature: bytes
    created_at: datetime = Field(default_factory=utcnow)


class MessageWithSender(Message):
    from_username: str
    from_public_key: str
    from_signing_key: Optional[str] = None
