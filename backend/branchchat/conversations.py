"""
Conversation glue and access control.
"""
import logging
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .database import ConversationDB, UserDB, transaction
from .errors import AccessDeniedError, InvalidOperationError, NotFoundError, UnauthenticatedError
from .repository import ConversationRepository, UserRepository

logger = logging.getLogger(__name__)


def require_caller(caller_id: Optional[str]) -> str:
    """Fail fast, before any store access, when there is no caller identity."""
    if not caller_id:
        raise UnauthenticatedError()
    return caller_id


async def verify_conversation_access(
    conversations: ConversationRepository,
    conversation_id: str,
    user_id: str
) -> ConversationDB:
    """Return the conversation if the user owns it or is an active group-chat participant."""
    conversation = await conversations.get(conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")

    if conversation.user_id == user_id:
        return conversation

    if conversation.is_group_chat:
        participant = await conversations.get_participant(conversation_id, user_id)
        if participant is not None and participant.left_at is None:
            return conversation

    raise AccessDeniedError("Access denied")


class ConversationService:
    """Create users and conversations, and read them back with access checks."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.conversations = ConversationRepository(session)
        self.users = UserRepository(session)

    async def create_user(self, user_id: Optional[str] = None, name: Optional[str] = None, email: Optional[str] = None) -> UserDB:
        async with transaction(self.session):
            if user_id and await self.users.get(user_id) is not None:
                raise InvalidOperationError("User already exists")
            user = await self.users.create(user_id=user_id, name=name, email=email)
        logger.info("Created user %s", user.id)
        return user

    async def create_conversation(
        self,
        caller_id: Optional[str],
        title: Optional[str] = None,
        participant_ids: Iterable[str] = ()
    ) -> ConversationDB:
        caller_id = require_caller(caller_id)
        async with transaction(self.session):
            if await self.users.get(caller_id) is None:
                raise NotFoundError("User not found")
            participants = [p for p in participant_ids if p != caller_id]
            for participant_id in participants:
                if await self.users.get(participant_id) is None:
                    raise NotFoundError(f"User {participant_id} not found")
            conversation = await self.conversations.create(caller_id, title, participants)
        logger.info("Created conversation %s for %s", conversation.id, caller_id)
        return conversation

    async def get_conversation(self, caller_id: Optional[str], conversation_id: str) -> ConversationDB:
        caller_id = require_caller(caller_id)
        return await verify_conversation_access(self.conversations, conversation_id, caller_id)
