"""
Branching over the message forest.

A parent may have many children (alternative branches). The displayed path is
marked with ``is_active_branch``; among live siblings at most one is active, and
that holds at every depth. All walks go through the repository one level at a
time, there is no in-memory adjacency.
"""
import logging
from typing import Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .conversations import require_caller, verify_conversation_access
from .database import MessageDB, transaction
from .errors import NotFoundError
from .models import BranchInfo, SiblingSummary
from .repository import ConversationRepository, MessageRepository

logger = logging.getLogger(__name__)


def is_live(message: MessageDB) -> bool:
    return message.deleted_at is None


def is_active(message: MessageDB) -> bool:
    """Legacy rows written before branching existed (None) count as active."""
    return message.is_active_branch is not False


def assign_branch_index(siblings: Iterable[MessageDB]) -> int:
    """Ordinal for a new sibling: the number of live existing siblings."""
    return sum(1 for sibling in siblings if is_live(sibling))


async def sibling_set(messages: MessageRepository, message: MessageDB) -> List[MessageDB]:
    """Siblings of a message, itself and deleted ones included.

    Children of the same parent are siblings whatever their role; roots are
    only siblings of roots with the same role in the same conversation.
    """
    if message.parent_id:
        return await messages.query_by_parent(message.parent_id)
    return await messages.query_roots_by_conversation_and_role(message.conversation_id, message.role)


async def deactivate_subtree(messages: MessageRepository, message: MessageDB) -> None:
    """Clear the active flag on a message and every descendant."""
    await messages.patch(message, is_active_branch=False)
    for child in await messages.query_by_parent(message.id):
        await deactivate_subtree(messages, child)


async def activate_subtree(messages: MessageRepository, message: MessageDB) -> None:
    """Activate a message, then the most recently created live child, down to a leaf.

    Children that are not picked are left as they are; callers deactivate
    siblings themselves.
    """
    await messages.patch(message, is_active_branch=True)
    children = [c for c in await messages.query_by_parent(message.id) if is_live(c)]
    if children:
        newest = max(children, key=lambda c: (c.created_at, c.branch_index))
        await activate_subtree(messages, newest)


async def deactivate_active_siblings(messages: MessageRepository, siblings: Iterable[MessageDB]) -> int:
    """Deactivate every live sibling flagged active (there may be more than one)."""
    count = 0
    for sibling in siblings:
        if is_live(sibling) and is_active(sibling):
            await deactivate_subtree(messages, sibling)
            count += 1
    return count


class BranchingService:
    """Branch switching, branch creation and read-only branch navigation."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.messages = MessageRepository(session)
        self.conversations = ConversationRepository(session)

    async def switch_branch(self, caller_id: Optional[str], message_id: str) -> str:
        """Make a message part of the displayed path.

        Every other sibling subtree is deactivated, then the target and its
        newest descendants down to a leaf are activated. Runs as one transaction.
        """
        caller_id = require_caller(caller_id)
        async with transaction(self.session):
            target = await self.messages.get_by_id(message_id)
            if target is None or not is_live(target):
                raise NotFoundError("Message not found")
            await verify_conversation_access(self.conversations, target.conversation_id, caller_id)

            if target.parent_id:
                # Serialize with concurrent creations under the same parent
                await self.messages.get_by_id(target.parent_id, for_update=True)

            siblings = await sibling_set(self.messages, target)
            for sibling in siblings:
                if sibling.id != target.id:
                    await deactivate_subtree(self.messages, sibling)

            await activate_subtree(self.messages, target)

        logger.info("Switched conversation %s to branch %s", target.conversation_id, target.id)
        return target.id

    async def create_branch(self, caller_id: Optional[str], parent_id: str, content: Optional[str] = None) -> str:
        """Create a new user message under ``parent_id`` and make it active.

        Without content this is a regeneration signal: nothing is written and
        ``parent_id`` comes back so the caller can create the assistant reply.
        """
        caller_id = require_caller(caller_id)
        async with transaction(self.session):
            parent = await self.messages.get_by_id(parent_id, for_update=True)
            if parent is None:
                raise NotFoundError("Parent message not found")
            conversation = await verify_conversation_access(self.conversations, parent.conversation_id, caller_id)

            if not content:
                return parent_id

            siblings = await self.messages.query_by_parent(parent_id)
            branch_index = assign_branch_index(siblings)
            await deactivate_active_siblings(self.messages, siblings)

            message = await self.messages.insert(
                conversation_id=parent.conversation_id,
                user_id=caller_id,
                role="user",
                parts=[{"type": "text", "text": content}],
                content=content,
                status="completed",
                parent_id=parent_id,
                branch_index=branch_index,
                is_active_branch=True
            )
            await self.conversations.record_message(conversation, message.created_at)

        logger.info("Created branch %s (index %d) under %s", message.id, branch_index, parent_id)
        return message.id

    async def get_branch_info(self, caller_id: Optional[str], message_id: str) -> Optional[BranchInfo]:
        """Position of a message among its live siblings; None if absent or deleted."""
        caller_id = require_caller(caller_id)
        message = await self.messages.get_by_id(message_id)
        if message is None:
            return None
        await verify_conversation_access(self.conversations, message.conversation_id, caller_id)
        if not is_live(message):
            return None

        siblings = sorted(
            (s for s in await sibling_set(self.messages, message) if is_live(s)),
            key=lambda s: s.branch_index
        )
        index = next(i for i, s in enumerate(siblings) if s.id == message.id)
        has_previous = index > 0
        has_next = index < len(siblings) - 1

        return BranchInfo(
            total_branches=len(siblings),
            current_branch=index + 1,
            has_previous=has_previous,
            has_next=has_next,
            previous_id=siblings[index - 1].id if has_previous else None,
            next_id=siblings[index + 1].id if has_next else None,
            siblings=[SiblingSummary.model_validate(s) for s in siblings]
        )

    async def get_siblings(self, caller_id: Optional[str], message_id: str) -> List[MessageDB]:
        """Live siblings of a message, itself included; empty if it does not exist."""
        caller_id = require_caller(caller_id)
        message = await self.messages.get_by_id(message_id)
        if message is None:
            return []
        await verify_conversation_access(self.conversations, message.conversation_id, caller_id)
        return [s for s in await sibling_set(self.messages, message) if is_live(s)]
