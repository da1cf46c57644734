"""
Pydantic models for type safety and validation.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MessageRole = Literal["user", "assistant", "system", "tool"]
MessageStatus = Literal["pending", "streaming", "completed", "failed", "cancelled"]
FinishReason = Literal["stop", "length", "tool-calls", "content-filter", "error", "cancelled"]


class Message(BaseModel):
    """A message node in a conversation's message forest."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    user_id: str
    parent_id: Optional[str] = None
    branch_index: int = 0
    is_active_branch: Optional[bool] = None
    role: MessageRole
    parts: List[Dict[str, Any]] = Field(default_factory=list)
    content: Optional[str] = None
    status: MessageStatus
    model: Optional[str] = None
    model_provider: Optional[str] = None
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, int]] = None
    latency_ms: Optional[int] = None
    feedback: Optional[Dict[str, Any]] = None
    original_content: Optional[str] = None
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class Conversation(BaseModel):
    """Conversation with its aggregate counters."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: Optional[str] = None
    is_group_chat: bool = False
    message_count: int = 0
    total_tokens: int = 0
    last_message_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class User(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: Optional[str] = None
    email: Optional[str] = None


class SiblingSummary(BaseModel):
    """Lightweight projection of a sibling for a branch switcher."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    branch_index: int
    created_at: datetime
    model: Optional[str] = None


class BranchInfo(BaseModel):
    """Position of a message among its live siblings."""
    total_branches: int
    current_branch: int  # 1-based
    has_previous: bool
    has_next: bool
    previous_id: Optional[str] = None
    next_id: Optional[str] = None
    siblings: List[SiblingSummary]


class UserCreateRequest(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None


class ConversationCreateRequest(BaseModel):
    """Request to create a conversation; participants make it a group chat."""
    title: Optional[str] = None
    participant_ids: List[str] = Field(default_factory=list)


class SendUserMessageRequest(BaseModel):
    """Request to send a user message, optionally as a branch under parent_id."""
    content: str
    parent_id: Optional[str] = None
    parts: Optional[List[Dict[str, Any]]] = None

    @field_validator("content")
    @classmethod
    def content_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Content cannot be empty")
        return v


class CreateAssistantMessageRequest(BaseModel):
    """Request to create a pending assistant placeholder under parent_id."""
    parent_id: str
    model: str
    model_provider: str


class CreateBranchRequest(BaseModel):
    """Request to branch under a parent; no content means regenerate."""
    content: Optional[str] = None

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("Content cannot be empty")
        return v


class UpdateAssistantMessageRequest(BaseModel):
    """Fields written while or after an assistant reply streams."""
    parts: Optional[List[Dict[str, Any]]] = None
    content: Optional[str] = None
    status: Optional[Literal["streaming", "completed", "failed", "cancelled"]] = None
    finish_reason: Optional[FinishReason] = None
    usage: Optional[Dict[str, int]] = None
    latency_ms: Optional[int] = None

    @field_validator("usage")
    @classmethod
    def usage_has_total(cls, v: Optional[Dict[str, int]]) -> Optional[Dict[str, int]]:
        if v is not None and "total_tokens" not in v:
            raise ValueError("usage must include total_tokens")
        return v


class EditUserMessageRequest(BaseModel):
    content: str
    parts: Optional[List[Dict[str, Any]]] = None

    @field_validator("content")
    @classmethod
    def content_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Content cannot be empty")
        return v


class FeedbackRequest(BaseModel):
    """Thumbs up or down on an assistant reply."""
    rating: Literal["positive", "negative"]
    comment: Optional[str] = None
