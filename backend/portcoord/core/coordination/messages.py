"""
Direct Message Relay - Point-to-point messages between paired workers.

The feedback loop only needs ``send``; the read side is for the receiving
worker polling its inbox.
"""

from typing import Any, Optional, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portcoord.core.exceptions import NotFoundError, ValidationError
from portcoord.core.models import DirectMessage, MessageType, utcnow

logger = structlog.get_logger(__name__)


class MessageRelay(Protocol):
    """Delivers a payload from one worker to another on a channel."""

    async def send(
        self,
        channel_id: str,
        from_id: str,
        to_id: str,
        payload: dict[str, Any],
        type: MessageType = MessageType.FEEDBACK,
    ) -> Any:
        ...


class DirectMessageStore:
    """Relay backed by the ``direct_messages`` table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def send(
        self,
        channel_id: str,
        from_id: str,
        to_id: str,
        payload: dict[str, Any],
        type: MessageType = MessageType.FEEDBACK,
    ) -> DirectMessage:
        if not channel_id or not from_id or not to_id:
            raise ValidationError(
                "Channel, sender and recipient are required",
                channel_id=channel_id,
                from_id=from_id,
                to_id=to_id,
            )

        message = DirectMessage(
            channel_id=channel_id,
            from_session=from_id,
            to_session=to_id,
            type=type,
            payload=payload,
        )
        self.db.add(message)
        await self.db.commit()
        await self.db.refresh(message)

        logger.info(
            "Direct message sent",
            channel_id=channel_id,
            from_session=from_id,
            to_session=to_id,
            type=type.value,
        )
        return message

    async def get(self, message_id: str) -> DirectMessage:
        message = await self.db.get(DirectMessage, message_id)
        if message is None:
            raise NotFoundError("Message", message_id)
        return message

    async def pending_for(self, recipient: str, channel_id: Optional[str] = None) -> list[DirectMessage]:
        """Unprocessed messages for a recipient, oldest first."""
        query = (
            select(DirectMessage)
            .where(DirectMessage.to_session == recipient)
            .where(DirectMessage.processed_at.is_(None))
        )
        if channel_id:
            query = query.where(DirectMessage.channel_id == channel_id)

        result = await self.db.execute(query.order_by(DirectMessage.created_at, DirectMessage.id))
        return list(result.scalars().all())

    async def mark_delivered(self, message_id: str) -> DirectMessage:
        message = await self.get(message_id)
        if message.delivered_at is None:
            message.delivered_at = utcnow()
            await self.db.commit()
        return message

    async def mark_processed(self, message_id: str) -> DirectMessage:
        """Processing implies delivery."""
        message = await self.get(message_id)
        if message.processed_at is None:
            now = utcnow()
            message.delivered_at = message.delivered_at or now
            message.processed_at = now
            await self.db.commit()
        return message

    async def history(self, channel_id: str, limit: int = 100) -> list[DirectMessage]:
        result = await self.db.execute(
            select(DirectMessage)
            .where(DirectMessage.channel_id == channel_id)
            .order_by(DirectMessage.created_at, DirectMessage.id)
            .limit(limit)
        )
        return list(result.scalars().all())
