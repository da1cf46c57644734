"""
Database models and connection setup.
"""
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.pool import StaticPool

# Base class for models
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; stored and compared without tzinfo on every backend."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserDB(Base):
    """Database model for users."""
    __tablename__ = "users"
    
    id = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ConversationDB(Base):
    """Database model for conversations."""
    __tablename__ = "conversations"
    
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    title = Column(String, nullable=True)
    is_group_chat = Column(Boolean, nullable=False, default=False)
    
    # Stats
    message_count = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime, nullable=True)
    
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    
    # Relationships
    messages = relationship("MessageDB", back_populates="conversation", cascade="all, delete-orphan")
    participants = relationship("ConversationParticipantDB", back_populates="conversation", cascade="all, delete-orphan")


class ConversationParticipantDB(Base):
    """Group chat membership; a participant with left_at set has no access."""
    __tablename__ = "conversation_participants"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    joined_at = Column(DateTime, default=utcnow)
    left_at = Column(DateTime, nullable=True)
    
    conversation = relationship("ConversationDB", back_populates="participants")
    
    __table_args__ = (
        Index("ix_participants_user_conversation", "user_id", "conversation_id"),
    )


class MessageDB(Base):
    """Database model for messages.
    
    Messages form a forest per conversation through ``parent_id``. ``parent_id``
    and ``branch_index`` are written once on insert; ``is_active_branch`` marks
    the displayed path (None is a legacy record and counts as active).
    """
    __tablename__ = "messages"
    
    id = Column(String, primary_key=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    
    # Branching support
    parent_id = Column(String, ForeignKey("messages.id"), nullable=True)
    branch_index = Column(Integer, nullable=False, default=0)
    is_active_branch = Column(Boolean, nullable=True)
    
    role = Column(String, nullable=False)
    parts = Column(JSON, nullable=False, default=list)
    content = Column(Text, nullable=True)  # Legacy text field
    status = Column(String, nullable=False, default="completed")
    
    # AI metadata
    model = Column(String, nullable=True)
    model_provider = Column(String, nullable=True)
    finish_reason = Column(String, nullable=True)
    usage = Column(JSON, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    
    feedback = Column(JSON, nullable=True)  # {"rating", "comment", "feedback_at"}
    
    # Edits
    original_content = Column(Text, nullable=True)
    is_edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(DateTime, nullable=True)
    
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    
    # Relationships
    conversation = relationship("ConversationDB", back_populates="messages")
    
    __table_args__ = (
        Index("ix_messages_parent", "parent_id"),
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )


def create_engine_for(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; in-memory SQLite shares one connection."""
    in_memory = database_url.startswith("sqlite") and (
        ":memory:" in database_url or database_url.endswith("://")
    )
    if in_memory:
        return create_async_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(database_url, echo=echo)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create the session factory used by request handlers."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency to get database session."""
    async with request.app.state.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(engine: AsyncEngine) -> None:
    """Initialize database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit once on success; roll back everything on any error."""
    try:
        yield session
    except BaseException:
        await session.rollback()
        raise
    await session.commit()
