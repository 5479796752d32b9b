"""
FastAPI Application Module

HTTP and WebSocket surface over the chat synchronization core.

Key Features:
- REST routes for the directory, presence, conversations and messages
- WebSocket streams that push full snapshots on every change
- Structured logging and Prometheus metrics
- CORS and OpenTelemetry support

Each WebSocket owns exactly one store subscription, cancelled when the
socket closes.

The application is built by the ``create_app`` factory:

    uvicorn firechat_sync.api.app:create_app --factory
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Callable, List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest
from pydantic import BaseModel, Field
from structlog import get_logger

from ..config import configure_logging
from ..context import ChatContext
from ..domain.errors import (
    AlreadyExists,
    ChatSyncError,
    Conflict,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    RemoteFailure,
)
from ..domain.models import (
    Conversation,
    ConversationView,
    DocumentModel,
    MembershipUpdate,
    Message,
    PresenceStatus,
    ProfileUpdate,
    UserProfile,
)
from ..sync.live import Subscription

logger = get_logger()

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests by path", ["path"], registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total errors by kind", ["kind"], registry=CUSTOM_REGISTRY)
MESSAGES_SENT = Counter("messages_sent_total", "Messages appended", registry=CUSTOM_REGISTRY)
ACTIVE_STREAMS = Gauge("active_streams", "Open WebSocket snapshot streams", registry=CUSTOM_REGISTRY)

ERROR_STATUS = [
    (InvalidArgument, 400),
    (PermissionDenied, 403),
    (NotFound, 404),
    (AlreadyExists, 409),
    (Conflict, 409),
    (RemoteFailure, 503),
]


class DirectCreate(DocumentModel):
    user_a: str
    user_b: str


class GroupCreate(DocumentModel):
    creator_id: str
    member_ids: List[str] = Field(default_factory=list)
    name: str
    description: Optional[str] = None
    photo_url: Optional[str] = Field(default=None, alias="photoURL")


class ParticipantChange(DocumentModel):
    user_id: str
    actor_id: str


class StatusChange(DocumentModel):
    status: PresenceStatus


class MessageCreate(DocumentModel):
    text: str
    sender_id: str
    sender_name: str = ""
    sender_photo_url: Optional[str] = Field(default=None, alias="senderPhotoURL")


class ReaderAction(DocumentModel):
    user_id: str


class ConversationRef(DocumentModel):
    conversation_id: Optional[str] = None


class MessageRef(DocumentModel):
    message_id: str


class ChangeResult(DocumentModel):
    changed: bool


class CountResult(DocumentModel):
    count: int


def get_context(request: Request) -> ChatContext:
    """Returns the chat context bound to the application"""
    return request.app.state.context


def _encode(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list):
        return [_encode(item) for item in value]
    return value


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def _stream(
    websocket: WebSocket,
    name: str,
    open_subscription: Callable[[Callable[[Any], None], Callable[[Exception], None]], Subscription],
) -> None:
    """Forward every delivery of one subscription to the socket until it closes."""
    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue()
    subscription = open_subscription(
        queue.put_nowait,
        lambda error: queue.put_nowait({"error": str(error)}),
    )
    disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
    ACTIVE_STREAMS.inc()
    logger.info("stream_opened", stream=name)
    try:
        while True:
            next_item = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({next_item, disconnected}, return_when=asyncio.FIRST_COMPLETED)
            if disconnected in done:
                next_item.cancel()
                break
            await websocket.send_json(_encode(next_item.result()))
    finally:
        subscription.cancel()
        disconnected.cancel()
        ACTIVE_STREAMS.dec()
        logger.info("stream_closed", stream=name, delivered=subscription.delivered)


def create_app(context: Optional[ChatContext] = None) -> FastAPI:
    """Build the application around ``context`` (or one built from settings)."""
    context = context or ChatContext.from_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        configure_logging(context.settings)
        logger.info("application_startup_complete")

        yield

        await context.aclose()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="FireChat Sync API",
        description="Real-time conversation and message synchronization",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests"""
        REQUESTS.labels(path=request.url.path).inc()
        logger.info("request_started", path=request.url.path, method=request.method)
        return await call_next(request)

    @app.exception_handler(ChatSyncError)
    async def chat_error_handler(request: Request, exc: ChatSyncError) -> JSONResponse:
        status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 500)
        ERRORS.labels(kind=type(exc).__name__).inc()
        logger.warning(
            "request_failed",
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc),
            status_code=status_code,
        )
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    # Directory and presence

    @app.put("/users/{uid}", response_model=UserProfile)
    async def upsert_user(
        uid: str,
        profile: ProfileUpdate,
        touch_presence: bool = True,
        ctx: ChatContext = Depends(get_context),
    ) -> UserProfile:
        """Creates or updates a directory record"""
        return await ctx.directory.upsert(uid, profile, touch_presence=touch_presence)

    @app.get("/users/{uid}", response_model=UserProfile)
    async def get_user(uid: str, ctx: ChatContext = Depends(get_context)) -> UserProfile:
        """Retrieves a directory record"""
        profile = await ctx.directory.get_by_id(uid)
        if profile is None:
            raise NotFound(f"User {uid} not found")
        return profile

    @app.get("/users", response_model=List[UserProfile])
    async def list_users(
        exclude: str,
        q: Optional[str] = None,
        ctx: ChatContext = Depends(get_context),
    ) -> List[UserProfile]:
        """Lists or searches users other than the caller"""
        if q is None:
            return await ctx.directory.list_all_except(exclude)
        return await ctx.directory.search(q, exclude)

    @app.put("/users/{uid}/status", status_code=204)
    async def set_status(uid: str, change: StatusChange, ctx: ChatContext = Depends(get_context)) -> Response:
        """Sets a user's presence status"""
        await ctx.presence.set_status(uid, change.status)
        return Response(status_code=204)

    # Conversations

    @app.post("/conversations/direct", response_model=ConversationRef)
    async def open_direct(body: DirectCreate, ctx: ChatContext = Depends(get_context)) -> ConversationRef:
        """Opens the direct conversation between two users, creating it once"""
        conversation_id = await ctx.conversations.get_or_create_direct(body.user_a, body.user_b)
        return ConversationRef(conversation_id=conversation_id)

    @app.post("/conversations/group", response_model=ConversationRef)
    async def create_group(body: GroupCreate, ctx: ChatContext = Depends(get_context)) -> ConversationRef:
        """Creates a group conversation"""
        conversation_id = await ctx.conversations.create_group(
            body.creator_id, body.member_ids, body.name, body.description, body.photo_url
        )
        return ConversationRef(conversation_id=conversation_id)

    @app.get("/conversations/{conversation_id}", response_model=Conversation)
    async def get_conversation(conversation_id: str, ctx: ChatContext = Depends(get_context)) -> Conversation:
        """Retrieves conversation metadata"""
        conversation = await ctx.conversations.get(conversation_id)
        if conversation is None:
            raise NotFound(f"Conversation {conversation_id} not found")
        return conversation

    @app.post("/conversations/{conversation_id}/participants", response_model=ChangeResult)
    async def add_participant(
        conversation_id: str,
        body: ParticipantChange,
        ctx: ChatContext = Depends(get_context),
    ) -> ChangeResult:
        """Adds a member to a group conversation"""
        changed = await ctx.conversations.add_participant(conversation_id, body.user_id, body.actor_id)
        return ChangeResult(changed=changed)

    @app.delete("/conversations/{conversation_id}/participants/{user_id}", response_model=ChangeResult)
    async def remove_participant(
        conversation_id: str,
        user_id: str,
        actor_id: str,
        ctx: ChatContext = Depends(get_context),
    ) -> ChangeResult:
        """Removes a member from a group conversation"""
        changed = await ctx.conversations.remove_participant(conversation_id, user_id, actor_id)
        return ChangeResult(changed=changed)

    @app.get("/users/{uid}/conversations", response_model=List[ConversationView])
    async def list_conversations(uid: str, ctx: ChatContext = Depends(get_context)) -> List[ConversationView]:
        """Lists the user's conversations, most recently active first"""
        return await ctx.conversations.list_for_user(uid)

    @app.get("/users/{uid}/conversations/search", response_model=List[ConversationView])
    async def search_conversations(
        uid: str,
        q: str,
        limit: Optional[int] = Query(default=None, ge=1),
        ctx: ChatContext = Depends(get_context),
    ) -> List[ConversationView]:
        """Searches conversation names and descriptions"""
        return await ctx.conversations.search(uid, q, limit)

    @app.get("/users/{uid}/conversations/groups", response_model=List[Conversation])
    async def list_groups(uid: str, ctx: ChatContext = Depends(get_context)) -> List[Conversation]:
        """Lists the user's group conversations"""
        return await ctx.conversations.list_groups(uid)

    @app.get("/users/{uid}/conversations/recent", response_model=List[ConversationView])
    async def list_recent(
        uid: str,
        count: Optional[int] = Query(default=None, ge=1),
        ctx: ChatContext = Depends(get_context),
    ) -> List[ConversationView]:
        """Lists the user's most recently active conversations"""
        return await ctx.conversations.list_recent(uid, count)

    @app.get("/users/{uid}/direct/{other_uid}", response_model=ConversationRef)
    async def find_direct(uid: str, other_uid: str, ctx: ChatContext = Depends(get_context)) -> ConversationRef:
        """Finds an existing direct conversation between two users"""
        return ConversationRef(conversation_id=await ctx.conversations.find_direct_with(uid, other_uid))

    @app.patch("/users/{uid}/conversations/{conversation_id}", status_code=204)
    async def update_membership(
        uid: str,
        conversation_id: str,
        update: MembershipUpdate,
        ctx: ChatContext = Depends(get_context),
    ) -> Response:
        """Updates the user's private settings for a conversation"""
        await ctx.conversations.update_membership(uid, conversation_id, update)
        return Response(status_code=204)

    # Messages

    @app.get("/conversations/{conversation_id}/messages", response_model=List[Message])
    async def get_messages(
        conversation_id: str,
        limit: Optional[int] = Query(default=None, ge=1),
        ctx: ChatContext = Depends(get_context),
    ) -> List[Message]:
        """Gets the most recent messages, oldest first"""
        return await ctx.messages.recent(conversation_id, limit)

    @app.post("/conversations/{conversation_id}/messages", response_model=MessageRef)
    async def send_message(
        conversation_id: str,
        body: MessageCreate,
        ctx: ChatContext = Depends(get_context),
    ) -> MessageRef:
        """Appends a text message"""
        message_id = await ctx.messages.append(
            conversation_id, body.text, body.sender_id, body.sender_name, body.sender_photo_url
        )
        MESSAGES_SENT.inc()
        return MessageRef(message_id=message_id)

    @app.post("/conversations/{conversation_id}/read", response_model=CountResult)
    async def mark_read(
        conversation_id: str,
        body: ReaderAction,
        ctx: ChatContext = Depends(get_context),
    ) -> CountResult:
        """Marks recent messages read for a user and clears their unread count"""
        return CountResult(count=await ctx.messages.mark_read(conversation_id, body.user_id))

    @app.post("/conversations/{conversation_id}/delivered", response_model=CountResult)
    async def mark_delivered(
        conversation_id: str,
        body: ReaderAction,
        ctx: ChatContext = Depends(get_context),
    ) -> CountResult:
        """Marks recent messages delivered to a user"""
        return CountResult(count=await ctx.messages.mark_delivered(conversation_id, body.user_id))

    # Snapshot streams

    @app.websocket("/ws/conversations/{conversation_id}/messages")
    async def stream_messages(
        websocket: WebSocket,
        conversation_id: str,
        limit: Optional[int] = Query(default=None, ge=1),
    ) -> None:
        await _stream(
            websocket,
            f"messages:{conversation_id}",
            lambda on_next, on_error: context.messages.subscribe_recent(conversation_id, on_next, limit=limit),
        )

    @app.websocket("/ws/users/{uid}/conversations")
    async def stream_conversations(websocket: WebSocket, uid: str) -> None:
        await _stream(
            websocket,
            f"conversations:{uid}",
            lambda on_next, on_error: context.conversations.subscribe_for_user(uid, on_next, on_error),
        )

    @app.websocket("/ws/users/{uid}/presence")
    async def stream_presence(websocket: WebSocket, uid: str) -> None:
        await _stream(
            websocket,
            f"presence:{uid}",
            lambda on_next, on_error: context.presence.subscribe(uid, on_next, on_error),
        )

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    return app
