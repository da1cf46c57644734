"""
Message creation and lifecycle.

New user and assistant messages are wired into the tree here: parent link,
branch index and active flag are all decided inside one transaction together
with the conversation counters.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .branching import assign_branch_index, deactivate_active_siblings, is_active, is_live
from .config import get_settings
from .conversations import require_caller, verify_conversation_access
from .database import MessageDB, transaction, utcnow
from .errors import AccessDeniedError, InvalidOperationError, NotFoundError
from .repository import ConversationRepository, MessageRepository

logger = logging.getLogger(__name__)


class MessageService:
    """Send, create, list and maintain messages of a conversation."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.messages = MessageRepository(session)
        self.conversations = ConversationRepository(session)

    async def _get_parent(self, conversation_id: str, parent_id: str) -> MessageDB:
        parent = await self.messages.get_by_id(parent_id, for_update=True)
        if parent is None or parent.conversation_id != conversation_id:
            raise NotFoundError("Parent message not found")
        return parent

    async def send_user_message(
        self,
        caller_id: Optional[str],
        conversation_id: str,
        content: str,
        parent_id: Optional[str] = None,
        parts: Optional[List[Dict[str, Any]]] = None
    ) -> str:
        """Insert a user message; with a parent it becomes the active branch there."""
        caller_id = require_caller(caller_id)
        async with transaction(self.session):
            conversation = await verify_conversation_access(self.conversations, conversation_id, caller_id)

            if parent_id:
                await self._get_parent(conversation_id, parent_id)
                siblings = await self.messages.query_by_parent(parent_id)
                branch_index = assign_branch_index(siblings)
                await deactivate_active_siblings(self.messages, siblings)
            else:
                roots = await self.messages.query_roots_by_conversation_and_role(conversation_id, "user")
                branch_index = assign_branch_index(roots)

            message = await self.messages.insert(
                conversation_id=conversation_id,
                user_id=caller_id,
                role="user",
                parts=parts if parts is not None else [{"type": "text", "text": content}],
                content=content,
                status="completed",
                parent_id=parent_id,
                branch_index=branch_index,
                is_active_branch=True
            )
            await self.conversations.record_message(conversation, message.created_at)

        logger.info("User message %s in %s (parent=%s, index=%d)", message.id, conversation_id, parent_id, branch_index)
        return message.id

    async def create_assistant_message(
        self,
        caller_id: Optional[str],
        conversation_id: str,
        parent_id: str,
        model: str,
        model_provider: str
    ) -> str:
        """Insert a pending assistant placeholder under ``parent_id``.

        Only assistant siblings count for the branch index and only they are
        deactivated, so user and assistant children of one parent are numbered
        independently.
        """
        caller_id = require_caller(caller_id)
        async with transaction(self.session):
            await verify_conversation_access(self.conversations, conversation_id, caller_id)
            await self._get_parent(conversation_id, parent_id)

            siblings = [s for s in await self.messages.query_by_parent(parent_id) if s.role == "assistant"]
            branch_index = assign_branch_index(siblings)
            await deactivate_active_siblings(self.messages, siblings)

            message = await self.messages.insert(
                conversation_id=conversation_id,
                user_id=caller_id,
                role="assistant",
                parts=[],
                status="pending",
                model=model,
                model_provider=model_provider,
                parent_id=parent_id,
                branch_index=branch_index,
                is_active_branch=True
            )

        logger.info("Assistant placeholder %s under %s (model=%s, index=%d)", message.id, parent_id, model, branch_index)
        return message.id

    async def list_active(
        self, caller_id: Optional[str], conversation_id: str, limit: Optional[int] = None
    ) -> List[MessageDB]:
        """The displayed transcript: live messages on the active path, oldest first."""
        caller_id = require_caller(caller_id)
        if limit is None:
            limit = get_settings().transcript_limit
        await verify_conversation_access(self.conversations, conversation_id, caller_id)
        messages = await self.messages.query_by_conversation(conversation_id)
        return [m for m in messages if is_live(m) and is_active(m)][:limit]

    async def list_with_branches(self, caller_id: Optional[str], conversation_id: str) -> List[MessageDB]:
        """Every live message of the conversation, all branches, oldest first."""
        caller_id = require_caller(caller_id)
        await verify_conversation_access(self.conversations, conversation_id, caller_id)
        messages = await self.messages.query_by_conversation(conversation_id)
        return [m for m in messages if is_live(m)]

    async def _get_accessible(self, caller_id: str, message_id: str) -> MessageDB:
        message = await self.messages.get_by_id(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        await verify_conversation_access(self.conversations, message.conversation_id, caller_id)
        return message

    async def get_message(self, caller_id: Optional[str], message_id: str) -> MessageDB:
        caller_id = require_caller(caller_id)
        return await self._get_accessible(caller_id, message_id)

    async def update_assistant_message(self, caller_id: Optional[str], message_id: str, **changes: Any) -> MessageDB:
        """Write streamed output into an assistant placeholder.

        Completing with usage counts the message and its tokens on the
        conversation.
        """
        caller_id = require_caller(caller_id)
        changes = {k: v for k, v in changes.items() if v is not None}
        async with transaction(self.session):
            message = await self._get_accessible(caller_id, message_id)
            if message.role != "assistant":
                raise InvalidOperationError("Can only update assistant messages")

            now = utcnow()
            await self.messages.patch(message, updated_at=now, **changes)

            usage = changes.get("usage")
            if changes.get("status") == "completed" and usage:
                conversation = await self.conversations.get(message.conversation_id)
                if conversation is not None:
                    await self.conversations.record_message(conversation, now, tokens=usage.get("total_tokens", 0))

        logger.debug("Updated assistant message %s: %s", message_id, sorted(changes))
        return message

    async def edit_user_message(
        self,
        caller_id: Optional[str],
        message_id: str,
        content: str,
        parts: Optional[List[Dict[str, Any]]] = None
    ) -> MessageDB:
        """Edit a user message in place; the first edit keeps the original text."""
        caller_id = require_caller(caller_id)
        async with transaction(self.session):
            message = await self.messages.get_by_id(message_id)
            if message is None:
                raise NotFoundError("Message not found")
            if message.user_id != caller_id:
                raise AccessDeniedError("Access denied")
            if message.role != "user":
                raise InvalidOperationError("Can only edit user messages")

            now = utcnow()
            original_content = message.original_content if message.original_content is not None else message.content
            await self.messages.patch(
                message,
                content=content,
                parts=parts if parts is not None else [{"type": "text", "text": content}],
                original_content=original_content,
                is_edited=True,
                edited_at=now,
                updated_at=now
            )
        return message

    async def cancel_streaming(self, caller_id: Optional[str], message_id: str) -> MessageDB:
        """Cancel a pending or streaming reply; finished replies are left alone."""
        caller_id = require_caller(caller_id)
        async with transaction(self.session):
            message = await self._get_accessible(caller_id, message_id)
            if message.status in ("pending", "streaming"):
                await self.messages.patch(
                    message,
                    status="cancelled",
                    finish_reason="cancelled",
                    updated_at=utcnow()
                )
                logger.info("Cancelled message %s", message_id)
        return message

    async def add_feedback(
        self, caller_id: Optional[str], message_id: str, rating: str, comment: Optional[str] = None
    ) -> MessageDB:
        """Rate an assistant reply; a new rating replaces the previous one."""
        caller_id = require_caller(caller_id)
        async with transaction(self.session):
            message = await self._get_accessible(caller_id, message_id)
            if message.role != "assistant":
                raise InvalidOperationError("Can only add feedback to assistant messages")

            now = utcnow()
            await self.messages.patch(
                message,
                feedback={"rating": rating, "comment": comment, "feedback_at": now.isoformat()},
                updated_at=now
            )
        return message

    async def remove_message(self, caller_id: Optional[str], message_id: str) -> None:
        """Soft delete. Children keep their parent link."""
        caller_id = require_caller(caller_id)
        async with transaction(self.session):
            message = await self.messages.get_by_id(message_id)
            if message is None:
                raise NotFoundError("Message not found")
            if message.user_id != caller_id:
                raise AccessDeniedError("Access denied")

            now = utcnow()
            await self.messages.patch(message, deleted_at=now, updated_at=now)
        logger.info("Soft-deleted message %s", message_id)
