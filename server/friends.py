"""
Friend request state machine and friendship queries.

Per unordered pair of users: none -> pending -> accepted | rejected.
Accepted and rejected are terminal; a friendship only ever comes into
existence by accepting a pending request.
"""

import uuid
import logging

from .errors import FriendStateError, UserNotFoundError
from .models import FriendRequest, FriendRequestStatus, FriendRequestWithUser, Friend, utcnow
from .storage import FriendStore, UserStore

logger = logging.getLogger(__name__)


class FriendService:
    def __init__(self, friends: FriendStore, users: UserStore):
        self.friends = friends
        self.users = users

    async def send_request(self, from_user_id: uuid.UUID, to_username: str) -> FriendRequest:
        """
        Resolve a username and create a request to that user.

        Raises:
            UserNotFoundError: If no such username exists
        """
        to_user = await self.users.get_user_by_username(to_username)
        if to_user is None:
            raise UserNotFoundError()
        return await self.create_request(from_user_id, to_user.id)

    async def create_request(self, from_user_id: uuid.UUID, to_user_id: uuid.UUID) -> FriendRequest:
        """
        Raises:
            FriendStateError: CANNOT_ADD_SELF, REQUEST_EXISTS or ALREADY_FRIENDS
        """
        if from_user_id == to_user_id:
            raise FriendStateError(FriendStateError.CANNOT_ADD_SELF)
        # create_request re-checks this atomically in the store
        if await self.friends.get_pending_between(from_user_id, to_user_id) is not None:
            raise FriendStateError(FriendStateError.REQUEST_EXISTS)
        if await self.friends.are_friends(from_user_id, to_user_id):
            raise FriendStateError(FriendStateError.ALREADY_FRIENDS)

        request = await self.friends.create_request(FriendRequest(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            created_at=utcnow()
        ))
        logger.info("Friend request %s created", request.id)
        return request

    async def accept(self, request_id: uuid.UUID, acting_user_id: uuid.UUID) -> None:
        await self._get_actionable(request_id, acting_user_id)
        # False when a concurrent accept or reject got there first
        if not await self.friends.accept_request(request_id):
            raise FriendStateError(FriendStateError.NOT_FOUND)
        logger.info("Friend request %s accepted", request_id)

    async def reject(self, request_id: uuid.UUID, acting_user_id: uuid.UUID) -> None:
        await self._get_actionable(request_id, acting_user_id)
        if not await self.friends.reject_request(request_id):
            raise FriendStateError(FriendStateError.NOT_FOUND)
        logger.info("Friend request %s rejected", request_id)

    async def _get_actionable(self, request_id: uuid.UUID, acting_user_id: uuid.UUID) -> FriendRequest:
        """
        Only the addressee may resolve a request, and only while it is pending.
        """
        request = await self.friends.get_request(request_id)
        if request is None:
            raise FriendStateError(FriendStateError.NOT_FOUND)
        if request.to_user_id != acting_user_id:
            logger.warning("User %s tried to resolve friend request %s", acting_user_id, request_id)
            raise FriendStateError(FriendStateError.UNAUTHORIZED)
        if request.status != FriendRequestStatus.PENDING:
            raise FriendStateError(FriendStateError.NOT_FOUND)
        return request

    async def are_friends(self, user_a: uuid.UUID, user_b: uuid.UUID) -> bool:
        return await self.friends.are_friends(user_a, user_b)

    async def pending_requests(self, user_id: uuid.UUID) -> list[FriendRequestWithUser]:
        return await self.friends.get_pending_requests(user_id)

    async def list_friends(self, user_id: uuid.UUID) -> list[Friend]:
        return await self.friends.list_friends(user_id)
