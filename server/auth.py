"""
Authentication module for password hashing and token management.

Provides user registration, login, refresh-token rotation, logout and
access-token verification.
"""

import uuid
import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from argon2.low_level import hash_secret_raw, Type
from jose import JWTError, jwt

from crypto.primitives import (
    FormatError,
    KEY_SIZE,
    b64decode,
    constant_time_compare,
    deserialize_public_key,
    dh_exchange,
    generate_keypair,
)
from .errors import CredentialsError, TokenError
from .models import User, UserPublic, RefreshToken, utcnow
from .storage import UserStore

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 15
REFRESH_TOKEN_EXPIRE_DAYS = 7

# Argon2id parameters
ARGON2_TIME_COST = 1
ARGON2_MEMORY_COST = 64 * 1024  # KiB
ARGON2_PARALLELISM = 4
ARGON2_HASH_LEN = 32
SALT_SIZE = 16

logger = logging.getLogger(__name__)


@dataclass
class AuthResult:
    """Token pair issued by register, login and refresh"""
    access_token: str
    refresh_token: str
    expires_in: int
    user: UserPublic


def _argon2(password: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=password.encode('utf-8'),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=ARGON2_HASH_LEN,
        type=Type.ID
    )


def hash_password(password: str) -> str:
    """
    Hash a password with Argon2id under a fresh salt.

    Returns:
        base64(salt + hash)
    """
    salt = secrets.token_bytes(SALT_SIZE)
    return base64.b64encode(salt + _argon2(password, salt)).decode('ascii')


def verify_password(password: str, encoded_hash: str) -> bool:
    """
    Verify a password against an encoded salt + hash.

    Args:
        password: Candidate password
        encoded_hash: Value produced by hash_password()

    Returns:
        True if the password matches
    """
    try:
        combined = base64.b64decode(encoded_hash, validate=True)
    except ValueError:
        return False
    if len(combined) < SALT_SIZE + ARGON2_HASH_LEN:
        return False

    salt, stored = combined[:SALT_SIZE], combined[SALT_SIZE:]
    return constant_time_compare(_argon2(password, salt), stored)


def hash_token(token: str) -> str:
    """SHA-256 of a refresh token, base64 encoded, as persisted server side"""
    return base64.b64encode(hashlib.sha256(token.encode('utf-8')).digest()).decode('ascii')


def validate_key(encoded: str, field: str) -> str:
    """
    Check that a base64 key decodes to exactly 32 bytes.

    Raises:
        ValueError: If it does not
    """
    try:
        raw = b64decode(encoded)
    except FormatError:
        raise ValueError(f"{field} must be base64") from None
    if len(raw) != KEY_SIZE:
        raise ValueError(f"{field} must be {KEY_SIZE} bytes")
    return encoded


def validate_public_key(encoded: str, field: str = "public_key") -> str:
    """
    validate_key() plus a trial X25519 exchange, so low-order points that
    would make every envelope for this user undecryptable are refused.

    Raises:
        ValueError: If the key is malformed or unusable for key agreement
    """
    validate_key(encoded, field)
    private_key, _ = generate_keypair()
    try:
        dh_exchange(private_key, deserialize_public_key(b64decode(encoded)))
    except FormatError:
        raise ValueError(f"{field} is not a usable X25519 key") from None
    return encoded


class AuthService:
    """
    Issues and validates the access/refresh token pair.
    """

    def __init__(
        self,
        users: UserStore,
        secret_key: str,
        access_token_ttl: timedelta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
        refresh_token_ttl: timedelta = timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS),
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            users: User and refresh-token store
            secret_key: HMAC key for access tokens
            access_token_ttl: Access token lifetime
            refresh_token_ttl: Refresh token lifetime
            clock: Returns the current aware UTC time
        """
        self.users = users
        self.secret_key = secret_key
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.clock = clock

    async def register(
        self,
        username: str,
        password: str,
        public_key: str,
        signing_key: Optional[str] = None
    ) -> AuthResult:
        """
        Create an account and issue its first token pair.

        Raises:
            UsernameExistsError: If the case-folded username is taken
        """
        validate_public_key(public_key)
        if signing_key is not None:
            validate_key(signing_key, "signing_key")

        user = await self.users.create_user(User(
            username=username.lower(),
            password_hash=hash_password(password),
            public_key=public_key,
            signing_key=signing_key,
            created_at=self.clock()
        ))
        logger.info("Registered user %s", user.id)
        return await self._issue_tokens(user)

    async def login(self, username: str, password: str) -> AuthResult:
        """
        Raises:
            CredentialsError: Unknown user or wrong password, indistinguishably
        """
        user = await self.users.get_user_by_username(username)
        if user is None or not verify_password(password, user.password_hash):
            logger.warning("Failed login attempt")
            raise CredentialsError()
        return await self._issue_tokens(user)

    async def refresh(self, refresh_token: str) -> AuthResult:
        """
        Consume a refresh token and issue a fresh pair for the same user.

        Raises:
            TokenError: INVALID for unknown, expired or already used tokens
        """
        old_hash = hash_token(refresh_token)
        record = await self.users.get_refresh_token(old_hash)
        if record is None:
            raise TokenError(TokenError.INVALID)
        if record.expires_at <= self.clock():
            await self.users.delete_refresh_token(old_hash)
            raise TokenError(TokenError.INVALID)

        user = await self.users.get_user_by_id(record.user_id)
        if user is None:
            raise TokenError(TokenError.INVALID)

        new_token, new_record = self._new_refresh_token(user.id)
        if not await self.users.rotate_refresh_token(old_hash, new_record):
            # Lost a race with another refresh of the same token
            raise TokenError(TokenError.INVALID)
        return self._result(user, new_token)

    async def logout(self, refresh_token: str) -> None:
        """Delete the refresh token; unknown tokens are silently ignored"""
        await self.users.delete_refresh_token(hash_token(refresh_token))

    async def revoke_all(self, user_id: uuid.UUID) -> int:
        """Delete every refresh token owned by user_id"""
        count = await self.users.delete_all_refresh_tokens(user_id)
        logger.info("Revoked %d refresh tokens for user %s", count, user_id)
        return count

    def create_access_token(self, user_id: uuid.UUID) -> str:
        """
        Create a signed access token.

        Args:
            user_id: Token subject

        Returns:
            Encoded JWT token
        """
        now = self.clock()
        claims = {
            "sub": str(user_id),
            "iat": int(now.timestamp()),
            "exp": int((now + self.access_token_ttl).timestamp())
        }
        return jwt.encode(claims, self.secret_key, algorithm=ALGORITHM)

    def validate_access_token(self, token: str) -> uuid.UUID:
        """
        Verify an access token and extract the user id.

        Raises:
            TokenError: EXPIRED past its exp claim, INVALID otherwise
        """
        try:
            # Expiry is checked against our clock below, not jose's
            payload = jwt.decode(token, self.secret_key, algorithms=[ALGORITHM], options={"verify_exp": False})
        except JWTError:
            raise TokenError(TokenError.INVALID) from None

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            raise TokenError(TokenError.INVALID)
        if exp <= self.clock().timestamp():
            raise TokenError(TokenError.EXPIRED)

        try:
            return uuid.UUID(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise TokenError(TokenError.INVALID) from None

    def _new_refresh_token(self, user_id: uuid.UUID) -> tuple[str, RefreshToken]:
        token = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode('ascii')
        record = RefreshToken(
            token_hash=hash_token(token),
            user_id=user_id,
            expires_at=self.clock() + self.refresh_token_ttl
        )
        return token, record

    async def _issue_tokens(self, user: User) -> AuthResult:
        token, record = self._new_refresh_token(user.id)
        await self.users.store_refresh_token(record)
        return self._result(user, token)

    def _result(self, user: User, refresh_token: str) -> AuthResult:
        return AuthResult(
            access_token=self.create_access_token(user.id),
            refresh_token=refresh_token,
            expires_in=int(self.access_token_ttl.total_seconds()),
            user=user.to_public()
        )
