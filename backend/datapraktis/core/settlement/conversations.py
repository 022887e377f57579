"""
Conversation Service - project channel and system messages.

ensure_conversation() joins the caller's unit of work (it is part of
engagement formation). Message posting is fire-and-forget: it runs in
its own commit after the financial unit has committed, and a failure is
logged as an error without touching the financial transition.
"""

from typing import Iterable, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from datapraktis.core.models import Conversation, ConversationParticipant, Message

logger = structlog.get_logger()

SYSTEM_PREFIX = "[SYSTEM]"


class ConversationService:
    """Messaging collaborator used by the settlement engine."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_for_project(self, project_id: UUID) -> Optional[Conversation]:
        result = await self.db.execute(
            select(Conversation).where(Conversation.project_id == project_id)
        )
        return result.scalar_one_or_none()

    async def ensure_conversation(
        self,
        project_id: UUID,
        participant_ids: Iterable[UUID],
    ) -> Conversation:
        """
        Get or create the project conversation with the given participants.

        Does not commit; the caller's unit of work owns the write.
        """
        conversation = await self.find_for_project(project_id)
        if conversation is None:
            conversation = Conversation(project_id=project_id)
            self.db.add(conversation)
            await self.db.flush()
            existing: set[UUID] = set()
        else:
            result = await self.db.execute(
                select(ConversationParticipant.user_id).where(
                    ConversationParticipant.conversation_id == conversation.id
                )
            )
            existing = set(result.scalars().all())

        for user_id in participant_ids:
            if user_id not in existing:
                self.db.add(
                    ConversationParticipant(
                        conversation_id=conversation.id,
                        user_id=user_id,
                    )
                )
                existing.add(user_id)

        await self.db.flush()
        return conversation

    async def post_system_message(self, conversation_id: UUID, text: str) -> bool:
        """Post a system message. Call only after the financial commit."""
        return await self._post(
            Message(
                conversation_id=conversation_id,
                sender_id=None,
                is_system=True,
                content=f"{SYSTEM_PREFIX} {text}",
            )
        )

    async def post_message(self, conversation_id: UUID, sender_id: UUID, text: str) -> bool:
        """Post a message on behalf of a participant."""
        return await self._post(
            Message(
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=text,
            )
        )

    async def notify_project(
        self,
        project_id: UUID,
        text: str,
        sender_id: Optional[UUID] = None,
    ) -> bool:
        """Post to the project's conversation if one exists."""
        try:
            conversation = await self.find_for_project(project_id)
        except SQLAlchemyError as e:
            logger.error("conversation_lookup_failed", project_id=str(project_id), error=str(e))
            return False

        if conversation is None:
            logger.warning("conversation_missing", project_id=str(project_id))
            return False

        if sender_id is None:
            return await self.post_system_message(conversation.id, text)
        return await self.post_message(conversation.id, sender_id, text)

    async def _post(self, message: Message) -> bool:
        try:
            self.db.add(message)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "message_post_failed",
                conversation_id=str(message.conversation_id),
                error=str(e),
            )
            return False
        return True
