"""
Main FastAPI application.

Caller identity arrives in the ``X-User-Id`` header; authenticating it is the
job of whatever sits in front of this service.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from .branching import BranchingService
from .config import Settings, configure_logging, get_settings
from .conversations import ConversationService
from .database import create_engine_for, create_session_factory, get_db, init_db
from .errors import BranchingError
from .messages import MessageService
from .models import (
    BranchInfo,
    Conversation,
    ConversationCreateRequest,
    CreateAssistantMessageRequest,
    CreateBranchRequest,
    EditUserMessageRequest,
    FeedbackRequest,
    Message,
    SendUserMessageRequest,
    UpdateAssistantMessageRequest,
    User,
    UserCreateRequest,
)

logger = logging.getLogger(__name__)


def caller_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> Optional[str]:
    """Caller identity; missing is rejected by the services as Unauthenticated."""
    return x_user_id


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    engine = create_engine_for(settings.database_url, echo=settings.sql_echo)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await init_db(engine)
        logger.info("Database ready at %s", engine.url.render_as_string(hide_password=True))
        yield
        await engine.dispose()

    app = FastAPI(
        title="Branchchat API",
        version="0.1.0",
        description="Multi-model chat backend with branching conversations",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)

    # Add CORS middleware for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BranchingError)
    async def branching_error_handler(request: Request, exc: BranchingError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    # Users and conversations
    @app.post("/v1/users", status_code=201)
    async def create_user(request: UserCreateRequest, db: AsyncSession = Depends(get_db)) -> User:
        """Register a user."""
        user = await ConversationService(db).create_user(request.id, request.name, request.email)
        return User.model_validate(user)

    @app.post("/v1/conversations", status_code=201)
    async def create_conversation(
        request: ConversationCreateRequest,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> Conversation:
        """Create a conversation owned by the caller."""
        conversation = await ConversationService(db).create_conversation(user_id, request.title, request.participant_ids)
        return Conversation.model_validate(conversation)

    @app.get("/v1/conversations/{conversation_id}")
    async def get_conversation(
        conversation_id: str,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> Conversation:
        """Get a conversation by ID."""
        conversation = await ConversationService(db).get_conversation(user_id, conversation_id)
        return Conversation.model_validate(conversation)

    # Messages
    @app.get("/v1/conversations/{conversation_id}/messages")
    async def list_messages(
        conversation_id: str,
        limit: Optional[int] = None,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> Dict[str, List[Message]]:
        """The displayed transcript (active path only)."""
        if limit is not None and limit < 1:
            raise HTTPException(status_code=400, detail="limit must be positive")
        messages = await MessageService(db).list_active(user_id, conversation_id, limit or settings.transcript_limit)
        return {"data": [Message.model_validate(m) for m in messages]}

    @app.get("/v1/conversations/{conversation_id}/messages/branches")
    async def list_messages_with_branches(
        conversation_id: str,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> Dict[str, List[Message]]:
        """Every live message including inactive branches."""
        messages = await MessageService(db).list_with_branches(user_id, conversation_id)
        return {"data": [Message.model_validate(m) for m in messages]}

    @app.post("/v1/conversations/{conversation_id}/messages", status_code=201)
    async def send_user_message(
        conversation_id: str,
        request: SendUserMessageRequest,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> Dict[str, str]:
        """Send a user message, optionally branching under parent_id."""
        message_id = await MessageService(db).send_user_message(
            user_id, conversation_id, request.content, request.parent_id, request.parts
        )
        return {"id": message_id}

    @app.post("/v1/conversations/{conversation_id}/messages/assistant", status_code=201)
    async def create_assistant_message(
        conversation_id: str,
        request: CreateAssistantMessageRequest,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> Dict[str, str]:
        """Create the pending placeholder an AI reply streams into."""
        message_id = await MessageService(db).create_assistant_message(
            user_id, conversation_id, request.parent_id, request.model, request.model_provider
        )
        return {"id": message_id}

    @app.get("/v1/messages/{message_id}")
    async def get_message(
        message_id: str,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> Message:
        message = await MessageService(db).get_message(user_id, message_id)
        return Message.model_validate(message)

    @app.patch("/v1/messages/{message_id}")
    async def update_assistant_message(
        message_id: str,
        request: UpdateAssistantMessageRequest,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> Message:
        """Write streamed output into an assistant message."""
        message = await MessageService(db).update_assistant_message(
            user_id, message_id, **request.model_dump(exclude_none=True)
        )
        return Message.model_validate(message)

    @app.put("/v1/messages/{message_id}")
    async def edit_user_message(
        message_id: str,
        request: EditUserMessageRequest,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> Message:
        """Edit a user message in place."""
        message = await MessageService(db).edit_user_message(user_id, message_id, request.content, request.parts)
        return Message.model_validate(message)

    @app.post("/v1/messages/{message_id}/cancel")
    async def cancel_streaming(
        message_id: str,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> Message:
        """Cancel a pending or streaming reply."""
        message = await MessageService(db).cancel_streaming(user_id, message_id)
        return Message.model_validate(message)

    @app.post("/v1/messages/{message_id}/feedback")
    async def add_feedback(
        message_id: str,
        request: FeedbackRequest,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> Message:
        """Rate an assistant reply."""
        message = await MessageService(db).add_feedback(user_id, message_id, request.rating, request.comment)
        return Message.model_validate(message)

    @app.delete("/v1/messages/{message_id}", status_code=204)
    async def remove_message(
        message_id: str,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> Response:
        """Soft delete a message."""
        await MessageService(db).remove_message(user_id, message_id)
        return Response(status_code=204)

    # Branching
    @app.post("/v1/messages/{message_id}/branches", status_code=201)
    async def create_branch(
        message_id: str,
        request: CreateBranchRequest,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> Dict[str, Any]:
        """Create a branch under this message; without content, signal a regeneration."""
        branch_id = await BranchingService(db).create_branch(user_id, message_id, request.content)
        return {"id": branch_id, "regenerate": branch_id == message_id}

    @app.put("/v1/messages/{message_id}/active")
    async def switch_branch(
        message_id: str,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> Dict[str, str]:
        """Make this message's branch the displayed one."""
        active_id = await BranchingService(db).switch_branch(user_id, message_id)
        return {"active_message_id": active_id}

    @app.get("/v1/messages/{message_id}/branch-info")
    async def get_branch_info(
        message_id: str,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> BranchInfo:
        """Branch position of a message for the branch switcher."""
        info = await BranchingService(db).get_branch_info(user_id, message_id)
        if info is None:
            raise HTTPException(status_code=404, detail="Message not found")
        return info

    @app.get("/v1/messages/{message_id}/siblings")
    async def get_siblings(
        message_id: str,
        user_id: Optional[str] = Depends(caller_id),
        db: AsyncSession = Depends(get_db)
    ) -> Dict[str, List[Message]]:
        """Live siblings of a message, itself included."""
        siblings = await BranchingService(db).get_siblings(user_id, message_id)
        return {"data": [Message.model_validate(s) for s in siblings]}

    return app


# For running directly with uvicorn
app = create_app()
