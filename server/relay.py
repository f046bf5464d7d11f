"""
Friend-gated store-and-forward relay.

Envelopes are queued per recipient until acknowledged, then deleted.
The relay never looks inside encrypted_content or signature.
"""

import uuid
import logging
from datetime import timedelta

from .errors import RelayError
from .models import ContentType, Message, MessageWithSender, utcnow
from .storage import FriendStore, MessageStore

logger = logging.getLogger(__name__)


class MessageRelay:
    def __init__(self, messages: MessageStore, friends: FriendStore):
        self.messages = messages
        self.friends = friends

    async def send(
        self,
        from_user_id: uuid.UUID,
        to_user_id: uuid.UUID,
        encrypted_content: bytes,
        content_type: ContentType,
        signature: bytes
    ) -> Message:
        """
        Queue an envelope for a friend.

        Raises:
            RelayError: NOT_FRIENDS if the users are not friends
        """
        if not await self.friends.are_friends(from_user_id, to_user_id):
            raise RelayError(RelayError.NOT_FRIENDS)

        message = await self.messages.create_message(Message(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            encrypted_content=encrypted_content,
            content_type=ContentType(content_type),
            signature=signature,
            created_at=utcnow()
        ))
        logger.info("Queued message %s (%d bytes)", message.id, len(encrypted_content))
        return message

    async def fetch(self, user_id: uuid.UUID) -> list[MessageWithSender]:
        """Pending messages for user_id, oldest first"""
        return await self.messages.list_pending(user_id)

    async def acknowledge(self, message_id: uuid.UUID, acting_user_id: uuid.UUID) -> None:
        """
        Permanently delete a delivered message.

        Raises:
            RelayError: MESSAGE_NOT_FOUND or UNAUTHORIZED
        """
        message = await self.messages.get_message(message_id)
        if message is None:
            raise RelayError(RelayError.MESSAGE_NOT_FOUND)
        if message.to_user_id != acting_user_id:
            raise RelayError(RelayError.UNAUTHORIZED)
        if not await self.messages.delete_message(message_id):
            raise RelayError(RelayError.MESSAGE_NOT_FOUND)
        logger.info("Message %s acknowledged", message_id)

    async def purge_expired(self, older_than: timedelta) -> int:
        """Drop unacknowledged messages older than the retention window"""
        count = await self.messages.delete_older_than(utcnow() - older_than)
        if count:
            logger.info("Purged %d expired messages", count)
        return count
