"""
FastAPI server for the QuickPic end-to-end encrypted relay.

This server:
- Handles registration, login and access/refresh token rotation
- Manages friend requests and friendships
- Queues encrypted envelopes for friends until the recipient acknowledges them
- Never sees plaintext: message content and signatures are opaque bytes
"""

import uuid
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional
from contextlib import asynccontextmanager, suppress
from fastapi import FastAPI, HTTPException, Depends, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field, field_validator

from crypto.primitives import FormatError, b64encode, b64decode
from .auth import AuthService, AuthResult, validate_key, validate_public_key
from .backend import create_backend
from .config import Config, load_config
from .errors import (
    QuickPicError,
    CredentialsError,
    UsernameExistsError,
    UserNotFoundError,
    TokenError,
    FriendStateError,
    RelayError,
)
from .friends import FriendService
from .models import ContentType, FriendRequest, FriendRequestWithUser, Friend, MessageWithSender, UserPublic
from .relay import MessageRelay
from .storage import Backend

logger = logging.getLogger(__name__)


# Pydantic models for API
class UserRegister(BaseModel):
    username: str = Field(min_length=3, max_length=32)
    password: str = Field(min_length=8)
    public_key: str
    signing_key: Optional[str] = None

    @field_validator("public_key")
    @classmethod
    def check_public_key(cls, value: str):
        return validate_public_key(value)

    @field_validator("signing_key")
    @classmethod
    def check_signing_key(cls, value: Optional[str]):
        if value is None:
            return value
        return validate_key(value, "signing_key")


class UserLogin(BaseModel):
    username: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserPublic


class FriendRequestCreate(BaseModel):
    username: str


class FriendRequestAction(BaseModel):
    request_id: uuid.UUID


class MessageCreate(BaseModel):
    to_username: str
    encrypted_content: str
    content_type: ContentType
    signature: str

    @field_validator("encrypted_content", "signature")
    @classmethod
    def check_base64(cls, value: str, info):
        try:
            b64decode(value)
        except FormatError:
            raise ValueError(f"{info.field_name} must be base64") from None
        return value


class MessageCreated(BaseModel):
    id: uuid.UUID
    created_at: datetime


class PendingMessage(BaseModel):
    id: uuid.UUID
    from_user_id: uuid.UUID
    from_username: str
    from_public_key: str
    from_signing_key: Optional[str] = None
    encrypted_content: str
    content_type: ContentType
    signature: str
    created_at: datetime

    @classmethod
    def from_message(cls, message: MessageWithSender) -> "PendingMessage":
        return cls(
            id=message.id,
            from_user_id=message.from_user_id,
            from_username=message.from_username,
            from_public_key=message.from_public_key,
            from_signing_key=message.from_signing_key,
            encrypted_content=b64encode(message.encrypted_content),
            content_type=message.content_type,
            signature=b64encode(message.signature),
            created_at=message.created_at
        )


_STATUS_BY_CODE = {
    CredentialsError.code: status.HTTP_401_UNAUTHORIZED,
    UsernameExistsError.code: status.HTTP_409_CONFLICT,
    UserNotFoundError.code: status.HTTP_404_NOT_FOUND,
    TokenError.INVALID: status.HTTP_401_UNAUTHORIZED,
    TokenError.EXPIRED: status.HTTP_401_UNAUTHORIZED,
    FriendStateError.ALREADY_FRIENDS: status.HTTP_409_CONFLICT,
    FriendStateError.REQUEST_EXISTS: status.HTTP_409_CONFLICT,
    FriendStateError.CANNOT_ADD_SELF: status.HTTP_400_BAD_REQUEST,
    FriendStateError.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RelayError.NOT_FRIENDS: status.HTTP_403_FORBIDDEN,
    RelayError.MESSAGE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    # FriendStateError.UNAUTHORIZED and RelayError.UNAUTHORIZED share this code
    RelayError.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
}


async def quickpic_error_handler(request: Request, exc: QuickPicError) -> JSONResponse:
    status_code = _STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, TokenError) else None
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "code": exc.code},
        headers=headers
    )


bearer_scheme = HTTPBearer(auto_error=False)


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_friend_service(request: Request) -> FriendService:
    return request.app.state.friend_service


def get_relay(request: Request) -> MessageRelay:
    return request.app.state.relay


def get_backend(request: Request) -> Backend:
    return request.app.state.backend


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service)
) -> uuid.UUID:
    """Resolve the bearer access token to a user id"""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
            headers={"WWW-Authenticate": "Bearer"}
        )
    return auth_service.validate_access_token(credentials.credentials)


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=result.expires_in,
        user=result.user
    )


async def _purge_loop(relay: MessageRelay, retention: timedelta, interval: int):
    """Periodically drop messages nobody acknowledged within the retention window"""
    while True:
        try:
            await relay.purge_expired(retention)
        except Exception:
            logger.exception("Message purge failed")
        await asyncio.sleep(interval)


def create_app(config: Optional[Config] = None, backend: Optional[Backend] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Loaded configuration, read from the environment if omitted
        backend: Storage backend, built from config.storage if omitted
    """
    config = config or load_config()
    backend = backend or create_backend(config.storage)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await backend.initialize()
        purge_task = None
        if config.relay.message_retention_hours > 0:
            purge_task = asyncio.create_task(_purge_loop(
                app.state.relay,
                timedelta(hours=config.relay.message_retention_hours),
                config.relay.purge_interval_seconds
            ))
        logger.info("QuickPic server started (backend: %s)", backend.name)
        yield
        if purge_task is not None:
            purge_task.cancel()
            with suppress(asyncio.CancelledError):
                await purge_task
        await backend.close()
        logger.info("QuickPic server shut down")

    app = FastAPI(
        title="QuickPic Relay",
        description="Friend-gated store-and-forward relay for end-to-end encrypted messages",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.backend = backend
    app.state.auth_service = AuthService(
        backend.users,
        config.jwt.secret_key,
        access_token_ttl=timedelta(minutes=config.jwt.access_token_expire_minutes),
        refresh_token_ttl=timedelta(days=config.jwt.refresh_token_expire_days)
    )
    app.state.friend_service = FriendService(backend.friends, backend.users)
    app.state.relay = MessageRelay(backend.messages, backend.friends)
    app.add_exception_handler(QuickPicError, quickpic_error_handler)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/auth/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
    async def register(user_data: UserRegister, auth_service: AuthService = Depends(get_auth_service)):
        """
        Register a new user account.

        The client generates its key pair and sends only the public halves.
        """
        result = await auth_service.register(
            username=user_data.username,
            password=user_data.password,
            public_key=user_data.public_key,
            signing_key=user_data.signing_key
        )
        return _auth_response(result)

    @app.post("/auth/login", response_model=AuthResponse)
    async def login(user_data: UserLogin, auth_service: AuthService = Depends(get_auth_service)):
        """Authenticate a user and return a token pair"""
        return _auth_response(await auth_service.login(user_data.username, user_data.password))

    @app.post("/auth/refresh", response_model=AuthResponse)
    async def refresh(body: RefreshRequest, auth_service: AuthService = Depends(get_auth_service)):
        """Rotate a refresh token"""
        return _auth_response(await auth_service.refresh(body.refresh_token))

    @app.post("/auth/logout")
    async def logout(body: RefreshRequest, auth_service: AuthService = Depends(get_auth_service)):
        await auth_service.logout(body.refresh_token)
        return {"status": "success"}

    @app.post("/auth/logout-all")
    async def logout_all(
        user_id: uuid.UUID = Depends(get_current_user),
        auth_service: AuthService = Depends(get_auth_service)
    ):
        """Revoke every refresh token of the caller; access tokens run out on their own"""
        revoked = await auth_service.revoke_all(user_id)
        return {"status": "success", "revoked": revoked}

    @app.get("/users/{username}", response_model=UserPublic)
    async def get_user(
        username: str,
        user_id: uuid.UUID = Depends(get_current_user),
        backend: Backend = Depends(get_backend)
    ):
        """Public profile, including the keys needed to encrypt for this user"""
        user = await backend.users.get_user_by_username(username)
        if user is None:
            raise UserNotFoundError()
        return user.to_public()

    @app.post("/friends/request", response_model=FriendRequest, status_code=status.HTTP_201_CREATED)
    async def send_friend_request(
        body: FriendRequestCreate,
        user_id: uuid.UUID = Depends(get_current_user),
        friend_service: FriendService = Depends(get_friend_service)
    ):
        return await friend_service.send_request(user_id, body.username)

    @app.get("/friends/requests", response_model=list[FriendRequestWithUser])
    async def pending_friend_requests(
        user_id: uuid.UUID = Depends(get_current_user),
        friend_service: FriendService = Depends(get_friend_service)
    ):
        return await friend_service.pending_requests(user_id)

    @app.post("/friends/accept")
    async def accept_friend_request(
        body: FriendRequestAction,
        user_id: uuid.UUID = Depends(get_current_user),
        friend_service: FriendService = Depends(get_friend_service)
    ):
        await friend_service.accept(body.request_id, user_id)
        return {"status": "accepted"}

    @app.post("/friends/reject")
    async def reject_friend_request(
        body: FriendRequestAction,
        user_id: uuid.UUID = Depends(get_current_user),
        friend_service: FriendService = Depends(get_friend_service)
    ):
        await friend_service.reject(body.request_id, user_id)
        return {"status": "rejected"}

    @app.get("/friends", response_model=list[Friend])
    async def list_friends(
        user_id: uuid.UUID = Depends(get_current_user),
        friend_service: FriendService = Depends(get_friend_service)
    ):
        return await friend_service.list_friends(user_id)

    @app.post("/messages", response_model=MessageCreated, status_code=status.HTTP_201_CREATED)
    async def send_message(
        body: MessageCreate,
        user_id: uuid.UUID = Depends(get_current_user),
        backend: Backend = Depends(get_backend),
        relay: MessageRelay = Depends(get_relay)
    ):
        recipient = await backend.users.get_user_by_username(body.to_username)
        if recipient is None:
            raise UserNotFoundError("Recipient not found")

        message = await relay.send(
            from_user_id=user_id,
            to_user_id=recipient.id,
            encrypted_content=b64decode(body.encrypted_content),
            content_type=body.content_type,
            signature=b64decode(body.signature)
        )
        return MessageCreated(id=message.id, created_at=message.created_at)

    @app.get("/messages", response_model=list[PendingMessage])
    async def get_messages(
        user_id: uuid.UUID = Depends(get_current_user),
        relay: MessageRelay = Depends(get_relay)
    ):
        return [PendingMessage.from_message(m) for m in await relay.fetch(user_id)]

    @app.delete("/messages/{message_id}")
    async def acknowledge_message(
        message_id: uuid.UUID,
        user_id: uuid.UUID = Depends(get_current_user),
        relay: MessageRelay = Depends(get_relay)
    ):
        await relay.acknowledge(message_id, user_id)
        return {"status": "acknowledged"}

    return app


def main():
    import uvicorn

    config = load_config()
    logging.basicConfig(
        level=config.server.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    uvicorn.run(create_app(config), host=config.server.host, port=config.server.port)


if __name__ == "__main__":
    main()
