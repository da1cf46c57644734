"""
Database repository layer for handling database operations.

Repositories never commit: the service that owns a top-level operation commits
once at the end, so a whole branch switch or creation is one transaction.
"""
from datetime import datetime
from typing import Any, Iterable, List, Optional
import uuid

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .database import ConversationDB, ConversationParticipantDB, MessageDB, UserDB, utcnow


class MessageRepository:
    """Indexed access to message rows (by id, by parent, by conversation)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, message_id: str, for_update: bool = False) -> Optional[MessageDB]:
        """Get a message by ID, optionally row-locking it for the transaction."""
        stmt = select(MessageDB).where(MessageDB.id == message_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def query_by_parent(self, parent_id: str) -> List[MessageDB]:
        """All children of a message, deleted ones included. No ordering."""
        result = await self.session.execute(
            select(MessageDB).where(MessageDB.parent_id == parent_id)
        )
        return list(result.scalars().all())

    async def query_roots_by_conversation_and_role(self, conversation_id: str, role: str) -> List[MessageDB]:
        """Root messages (no parent) of one role, deleted ones included."""
        result = await self.session.execute(
            select(MessageDB)
            .where(and_(
                MessageDB.conversation_id == conversation_id,
                MessageDB.parent_id.is_(None),
                MessageDB.role == role
            ))
        )
        return list(result.scalars().all())

    async def query_by_conversation(self, conversation_id: str, limit: Optional[int] = None) -> List[MessageDB]:
        """Messages of a conversation in creation order."""
        stmt = (
            select(MessageDB)
            .where(MessageDB.conversation_id == conversation_id)
            .order_by(MessageDB.created_at, MessageDB.branch_index)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def insert(self, **fields: Any) -> MessageDB:
        """Insert a message; the store assigns the id."""
        now = utcnow()
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)
        fields.setdefault("is_edited", False)
        db_message = MessageDB(id=str(uuid.uuid4()), **fields)
        self.session.add(db_message)
        await self.session.flush()
        return db_message

    async def patch(self, db_message: MessageDB, **fields: Any) -> MessageDB:
        """Update fields on a single message row."""
        for name, value in fields.items():
            setattr(db_message, name, value)
        await self.session.flush()
        return db_message


class ConversationRepository:
    """Repository for conversation operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, conversation_id: str) -> Optional[ConversationDB]:
        """Get a conversation by ID."""
        result = await self.session.execute(
            select(ConversationDB).where(ConversationDB.id == conversation_id)
        )
        return result.scalar_one_or_none()

    async def create(self, user_id: str, title: Optional[str] = None, participant_ids: Iterable[str] = ()) -> ConversationDB:
        """Create a conversation; any participants turn it into a group chat."""
        participant_ids = list(participant_ids)
        now = utcnow()
        db_conv = ConversationDB(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=title,
            is_group_chat=bool(participant_ids),
            message_count=0,
            total_tokens=0,
            created_at=now,
            updated_at=now
        )
        self.session.add(db_conv)

        for participant_id in participant_ids:
            self.session.add(ConversationParticipantDB(
                conversation_id=db_conv.id,
                user_id=participant_id,
                joined_at=now
            ))

        await self.session.flush()
        return db_conv

    async def get_participant(self, conversation_id: str, user_id: str) -> Optional[ConversationParticipantDB]:
        """Get a user's membership row for a group chat."""
        result = await self.session.execute(
            select(ConversationParticipantDB)
            .where(and_(
                ConversationParticipantDB.user_id == user_id,
                ConversationParticipantDB.conversation_id == conversation_id
            ))
        )
        return result.scalars().first()

    async def record_message(self, db_conv: ConversationDB, at: datetime, tokens: int = 0) -> None:
        """Bump the aggregate counters after a message lands."""
        db_conv.message_count = (db_conv.message_count or 0) + 1
        db_conv.total_tokens = (db_conv.total_tokens or 0) + tokens
        db_conv.last_message_at = at
        db_conv.updated_at = at
        await self.session.flush()


class UserRepository:
    """Repository for user operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: str) -> Optional[UserDB]:
        result = await self.session.execute(
            select(UserDB).where(UserDB.id == user_id)
        )
        return result.scalar_one_or_none()

    async def create(self, user_id: Optional[str] = None, name: Optional[str] = None, email: Optional[str] = None) -> UserDB:
        db_user = UserDB(
            id=user_id or str(uuid.uuid4()),
            name=name,
            email=email,
            created_at=utcnow()
        )
        self.session.add(db_user)
        await self.session.flush()
        return db_user
