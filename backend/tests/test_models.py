"""
Tests for request/response model validation.
"""
from datetime import datetime

import pytest
from pydantic import ValidationError

from branchchat.config import Settings
from branchchat.database import MessageDB
from branchchat.errors import NotFoundError, UnauthenticatedError
from branchchat.models import (
    CreateBranchRequest,
    Message,
    SendUserMessageRequest,
    SiblingSummary,
    UpdateAssistantMessageRequest,
)


class TestRequestModels:
    """Request bodies reject malformed input before any store access."""

    def test_send_rejects_blank_content(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            SendUserMessageRequest(content="  ")
        assert "Content cannot be empty" in str(exc_info.value)

    def test_send_parent_is_optional(self) -> None:
        request = SendUserMessageRequest(content="hi")
        assert request.parent_id is None
        assert request.parts is None

    def test_branch_content_is_optional(self) -> None:
        assert CreateBranchRequest().content is None

    def test_branch_rejects_blank_content(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            CreateBranchRequest(content="\t ")
        assert "Content cannot be empty" in str(exc_info.value)

    def test_update_usage_needs_total(self) -> None:
        with pytest.raises(ValidationError):
            UpdateAssistantMessageRequest(usage={"prompt_tokens": 1})

    def test_update_rejects_pending_status(self) -> None:
        """A reply cannot be moved back to pending."""
        with pytest.raises(ValidationError):
            UpdateAssistantMessageRequest(status="pending")


class TestProjections:
    """Response models read straight from ORM rows."""

    def test_message_from_row(self) -> None:
        now = datetime(2024, 1, 1, 12, 0, 0)
        row = MessageDB(
            id="m1",
            conversation_id="c1",
            user_id="u1",
            parent_id="p1",
            branch_index=2,
            is_active_branch=None,
            role="assistant",
            parts=[],
            status="pending",
            model="gpt-4o",
            is_edited=False,
            created_at=now,
            updated_at=now,
        )

        message = Message.model_validate(row)

        assert message.branch_index == 2
        assert message.is_active_branch is None
        assert message.deleted_at is None

        summary = SiblingSummary.model_validate(row)
        assert summary.model_dump() == {"id": "m1", "branch_index": 2, "created_at": now, "model": "gpt-4o"}

    def test_invalid_role_rejected(self) -> None:
        now = datetime(2024, 1, 1)
        with pytest.raises(ValidationError):
            Message(
                id="m1", conversation_id="c1", user_id="u1", role="robot",
                status="completed", created_at=now, updated_at=now
            )


class TestSettingsAndErrors:

    def test_settings_from_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("BRANCHCHAT_DATABASE_URL", "sqlite+aiosqlite:///./other.db")
        monkeypatch.setenv("BRANCHCHAT_TRANSCRIPT_LIMIT", "50")

        settings = Settings()

        assert settings.database_url == "sqlite+aiosqlite:///./other.db"
        assert settings.transcript_limit == 50

    def test_error_status_codes(self) -> None:
        assert NotFoundError("Message not found").status_code == 404
        assert UnauthenticatedError().detail == "Unauthenticated"
        assert UnauthenticatedError().status_code == 401
