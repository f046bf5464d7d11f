"""
Relational storage backend.

Uses SQLAlchemy's async ORM (SQLite through aiosqlite by default) for users,
refresh tokens, friend requests, friendships and queued messages.
Message content is stored as opaque bytes; the server never decrypts it.
"""

import uuid
import logging
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    Column, Integer, String, DateTime, LargeBinary, ForeignKey, UniqueConstraint, Index, Uuid,
    select, delete, update, or_, and_, text,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base, aliased

from .errors import FriendStateError, UsernameExistsError
from .models import (
    User,
    RefreshToken,
    FriendRequest,
    FriendRequestWithUser,
    FriendRequestStatus,
    Friend,
    Message,
    MessageWithSender,
    ContentType,
    canonical_pair,
    utcnow,
)
from .storage import Backend, UserStore, FriendStore, MessageStore

Base = declarative_base()
logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we write is UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class UserRow(Base):
    """User account model"""
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True)
    username = Column(String(32), unique=True, index=True, nullable=False)
    password_hash = Column(String(128), nullable=False)
    public_key = Column(String(64), nullable=False)  # X25519 public key (base64)
    signing_key = Column(String(64), nullable=True)  # Ed25519 public key (base64)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def to_model(self) -> User:
        return User(
            id=self.id,
            username=self.username,
            password_hash=self.password_hash,
            public_key=self.public_key,
            signing_key=self.signing_key,
            created_at=_aware(self.created_at)
        )


class RefreshTokenRow(Base):
    __tablename__ = "refresh_tokens"

    token_hash = Column(String(64), primary_key=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)


class FriendRequestRow(Base):
    __tablename__ = "friend_requests"
    # One pending request per unordered pair
    __table_args__ = (
        Index(
            "uq_friend_requests_pending_pair", "pair_low_id", "pair_high_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'")
        ),
    )

    id = Column(Uuid, primary_key=True)
    from_user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    to_user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    # canonical_pair(from_user_id, to_user_id)
    pair_low_id = Column(Uuid, nullable=False)
    pair_high_id = Column(Uuid, nullable=False)
    status = Column(String(16), nullable=False, default=FriendRequestStatus.PENDING.value)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def to_model(self) -> FriendRequest:
        return FriendRequest(
            id=self.id,
            from_user_id=self.from_user_id,
            to_user_id=self.to_user_id,
            status=FriendRequestStatus(self.status),
            created_at=_aware(self.created_at)
        )


class FriendshipRow(Base):
    """Symmetric friendship, user_a_id < user_b_id"""
    __tablename__ = "friendships"
    __table_args__ = (UniqueConstraint("user_a_id", "user_b_id"),)

    id = Column(Uuid, primary_key=True)
    user_a_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    user_b_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class MessageRow(Base):
    """Queued envelope awaiting acknowledgment"""
    __tablename__ = "messages"

    # Integer key preserves insertion order when timestamps tie
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(Uuid, unique=True, index=True, nullable=False)
    from_user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    to_user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    encrypted_content = Column(LargeBinary, nullable=False)
    content_type = Column(String(16), nullable=False)
    signature = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime(timezone=True), index=True, default=utcnow)

    def to_model(self) -> Message:
        return Message(
            id=self.id,
            from_user_id=self.from_user_id,
            to_user_id=self.to_user_id,
            encrypted_content=self.encrypted_content,
            content_type=ContentType(self.content_type),
            signature=self.signature,
            created_at=_aware(self.created_at)
        )


class _SessionMixin:
    def __init__(self, async_session: async_sessionmaker):
        self.async_session = async_session


class SQLUserStore(_SessionMixin, UserStore):
    async def create_user(self, user: User) -> User:
        row = UserRow(
            id=user.id,
            username=user.username.lower(),
            password_hash=user.password_hash,
            public_key=user.public_key,
            signing_key=user.signing_key,
            created_at=user.created_at
        )
        async with self.async_session() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise UsernameExistsError() from None
            return row.to_model()

    async def get_user_by_id(self, user_id: uuid.UUID) -> User | None:
        async with self.async_session() as session:
            row = await session.get(UserRow, user_id)
            return row.to_model() if row else None

    async def get_user_by_username(self, username: str) -> User | None:
        async with self.async_session() as session:
            result = await session.execute(select(UserRow).where(UserRow.username == username.lower()))
            row = result.scalar_one_or_none()
            return row.to_model() if row else None

    async def store_refresh_token(self, token: RefreshToken) -> None:
        async with self.async_session() as session:
            session.add(RefreshTokenRow(
                token_hash=token.token_hash,
                user_id=token.user_id,
                expires_at=token.expires_at
            ))
            await session.commit()

    async def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        async with self.async_session() as session:
            row = await session.get(RefreshTokenRow, token_hash)
            if not row:
                return None
            return RefreshToken(token_hash=row.token_hash, user_id=row.user_id, expires_at=_aware(row.expires_at))

    async def delete_refresh_token(self, token_hash: str) -> bool:
        async with self.async_session() as session:
            result = await session.execute(delete(RefreshTokenRow).where(RefreshTokenRow.token_hash == token_hash))
            await session.commit()
            return result.rowcount > 0

    async def rotate_refresh_token(self, old_hash: str, new_token: RefreshToken) -> bool:
        async with self.async_session() as session:
            async with session.begin():
                result = await session.execute(delete(RefreshTokenRow).where(RefreshTokenRow.token_hash == old_hash))
                if result.rowcount == 0:
                    return False
                session.add(RefreshTokenRow(
                    token_hash=new_token.token_hash,
                    user_id=new_token.user_id,
                    expires_at=new_token.expires_at
                ))
            return True

    async def delete_all_refresh_tokens(self, user_id: uuid.UUID) -> int:
        async with self.async_session() as session:
            result = await session.execute(delete(RefreshTokenRow).where(RefreshTokenRow.user_id == user_id))
            await session.commit()
            return result.rowcount


def _resolve_pending(request_id: uuid.UUID, status: FriendRequestStatus):
    """UPDATE that only matches while the request is still pending"""
    return (
        update(FriendRequestRow)
        .where(FriendRequestRow.id == request_id, FriendRequestRow.status == FriendRequestStatus.PENDING.value)
        .values(status=status.value)
    )


class SQLFriendStore(_SessionMixin, FriendStore):
    async def create_request(self, request: FriendRequest) -> FriendRequest:
        pair_low, pair_high = canonical_pair(request.from_user_id, request.to_user_id)
        async with self.async_session() as session:
            session.add(FriendRequestRow(
                id=request.id,
                from_user_id=request.from_user_id,
                to_user_id=request.to_user_id,
                pair_low_id=pair_low,
                pair_high_id=pair_high,
                status=request.status.value,
                created_at=request.created_at
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise FriendStateError(FriendStateError.REQUEST_EXISTS) from None
            return request

    async def get_request(self, request_id: uuid.UUID) -> FriendRequest | None:
        async with self.async_session() as session:
            row = await session.get(FriendRequestRow, request_id)
            return row.to_model() if row else None

    async def get_pending_between(self, user_a: uuid.UUID, user_b: uuid.UUID) -> FriendRequest | None:
        stmt = select(FriendRequestRow).where(
            FriendRequestRow.status == FriendRequestStatus.PENDING.value,
            or_(
                and_(FriendRequestRow.from_user_id == user_a, FriendRequestRow.to_user_id == user_b),
                and_(FriendRequestRow.from_user_id == user_b, FriendRequestRow.to_user_id == user_a)
            )
        ).limit(1)
        async with self.async_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return row.to_model() if row else None

    async def get_pending_requests(self, user_id: uuid.UUID) -> list[FriendRequestWithUser]:
        stmt = (
            select(FriendRequestRow, UserRow)
            .join(UserRow, UserRow.id == FriendRequestRow.from_user_id)
            .where(
                FriendRequestRow.to_user_id == user_id,
                FriendRequestRow.status == FriendRequestStatus.PENDING.value
            )
            .order_by(FriendRequestRow.created_at.desc())
        )
        async with self.async_session() as session:
            result = await session.execute(stmt)
            return [
                FriendRequestWithUser(**request.to_model().model_dump(), from_user=sender.to_model().to_public())
                for request, sender in result.all()
            ]

    async def reject_request(self, request_id: uuid.UUID) -> bool:
        async with self.async_session() as session:
            async with session.begin():
                result = await session.execute(_resolve_pending(request_id, FriendRequestStatus.REJECTED))
            return result.rowcount == 1

    async def accept_request(self, request_id: uuid.UUID) -> bool:
        async with self.async_session() as session:
            async with session.begin():
                result = await session.execute(_resolve_pending(request_id, FriendRequestStatus.ACCEPTED))
                if result.rowcount != 1:
                    return False
                row = await session.get(FriendRequestRow, request_id)
                await self._add_friendship(session, row.from_user_id, row.to_user_id)
            return True

    async def create_friendship(self, user_a: uuid.UUID, user_b: uuid.UUID) -> None:
        async with self.async_session() as session:
            async with session.begin():
                await self._add_friendship(session, user_a, user_b)

    async def _add_friendship(self, session: AsyncSession, user_a: uuid.UUID, user_b: uuid.UUID) -> None:
        user_a, user_b = canonical_pair(user_a, user_b)
        existing = await session.execute(
            select(FriendshipRow.id).where(FriendshipRow.user_a_id == user_a, FriendshipRow.user_b_id == user_b)
        )
        if existing.first() is None:
            session.add(FriendshipRow(id=uuid.uuid4(), user_a_id=user_a, user_b_id=user_b, created_at=utcnow()))

    async def are_friends(self, user_a: uuid.UUID, user_b: uuid.UUID) -> bool:
        user_a, user_b = canonical_pair(user_a, user_b)
        async with self.async_session() as session:
            result = await session.execute(
                select(FriendshipRow.id).where(FriendshipRow.user_a_id == user_a, FriendshipRow.user_b_id == user_b)
            )
            return result.first() is not None

    async def list_friends(self, user_id: uuid.UUID) -> list[Friend]:
        stmt = (
            select(FriendshipRow, UserRow)
            .join(UserRow, or_(
                and_(FriendshipRow.user_a_id == user_id, UserRow.id == FriendshipRow.user_b_id),
                and_(FriendshipRow.user_b_id == user_id, UserRow.id == FriendshipRow.user_a_id)
            ))
            .order_by(UserRow.username)
        )
        async with self.async_session() as session:
            result = await session.execute(stmt)
            return [
                Friend(
                    user_id=user.id,
                    username=user.username,
                    public_key=user.public_key,
                    signing_key=user.signing_key,
                    since=_aware(friendship.created_at)
                )
                for friendship, user in result.all()
            ]


class SQLMessageStore(_SessionMixin, MessageStore):
    async def create_message(self, message: Message) -> Message:
        async with self.async_session() as session:
            session.add(MessageRow(
                id=message.id,
                from_user_id=message.from_user_id,
                to_user_id=message.to_user_id,
                encrypted_content=message.encrypted_content,
                content_type=message.content_type.value,
                signature=message.signature,
                created_at=message.created_at
            ))
            await session.commit()
            return message

    async def get_message(self, message_id: uuid.UUID) -> Message | None:
        async with self.async_session() as session:
            result = await session.execute(select(MessageRow).where(MessageRow.id == message_id))
            row = result.scalar_one_or_none()
            return row.to_model() if row else None

    async def list_pending(self, recipient_id: uuid.UUID) -> list[MessageWithSender]:
        sender = aliased(UserRow)
        stmt = (
            select(MessageRow, sender)
            .join(sender, sender.id == MessageRow.from_user_id)
            .where(MessageRow.to_user_id == recipient_id)
            .order_by(MessageRow.created_at.asc(), MessageRow.seq.asc())
        )
        async with self.async_session() as session:
            result = await session.execute(stmt)
            return [
                MessageWithSender(
                    **row.to_model().model_dump(),
                    from_username=user.username,
                    from_public_key=user.public_key,
                    from_signing_key=user.signing_key
                )
                for row, user in result.all()
            ]

    async def delete_message(self, message_id: uuid.UUID) -> bool:
        async with self.async_session() as session:
            result = await session.execute(delete(MessageRow).where(MessageRow.id == message_id))
            await session.commit()
            return result.rowcount > 0

    async def delete_older_than(self, cutoff: datetime) -> int:
        async with self.async_session() as session:
            result = await session.execute(delete(MessageRow).where(MessageRow.created_at < cutoff))
            await session.commit()
            return result.rowcount


class Database(Backend):
    """Database manager for async operations"""
    name = "sqlite"

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./quickpic.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self._users = SQLUserStore(self.async_session)
        self._friends = SQLFriendStore(self.async_session)
        self._messages = SQLMessageStore(self.async_session)

    @property
    def users(self) -> SQLUserStore:
        return self._users

    @property
    def friends(self) -> SQLFriendStore:
        return self._friends

    @property
    def messages(self) -> SQLMessageStore:
        return self._messages

    async def initialize(self) -> None:
        await self.create_tables()

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ready (%s)", self.engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        await self.engine.dispose()
