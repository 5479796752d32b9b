"""Message store: the ordered, append-only log of each conversation.

Timestamps come from the store's clock when a write is committed, never from
the client, so every subscriber sees the same order. Two appends racing on
the same conversation are ordered by their commit time, not by the order in
which the caller issued them.
"""

from typing import Any, Awaitable, Callable, List, Optional, Union

import structlog

from ..domain.errors import ChatSyncError, InvalidArgument
from ..domain.models import (
    STATUS_RANK,
    SYSTEM_SENDER_ID,
    Message,
    MessageFeed,
    MessageStatus,
    MessageType,
    SystemEvent,
)
from ..repositories import paths
from ..repositories.base import (
    SERVER_TIMESTAMP,
    ArrayUnion,
    DocumentSnapshot,
    DocumentStore,
    Increment,
    Query,
    WriteBatch,
)
from ..sync.live import Subscription, invoke

logger = structlog.get_logger()

FeedCallback = Callable[[MessageFeed], Union[None, Awaitable[None]]]

SYSTEM_TEXT = {
    SystemEvent.MEMBER_ADDED: "{actor} added {user} to the conversation",
    SystemEvent.MEMBER_REMOVED: "{actor} removed {user} from the conversation",
}


def _require_conversation(conversation_id: str) -> None:
    if not conversation_id:
        raise InvalidArgument("No conversation selected")


def _to_message(snapshot: DocumentSnapshot) -> Message:
    return Message.model_validate({**snapshot.data, "id": snapshot.id})


class MessageStore:
    """Appends to and reads from ``conversations/{id}/messages``."""

    def __init__(self, store: DocumentStore, default_limit: int = 50) -> None:
        self._store = store
        self.default_limit = default_limit

    async def append(
        self,
        conversation_id: str,
        text: str,
        sender_id: str,
        sender_name: str,
        sender_photo_url: Optional[str] = None,
    ) -> str:
        """Append a text message and return its id.

        The conversation preview and every member's unread counter are updated
        in the same batch as the message itself.
        """
        _require_conversation(conversation_id)
        if not sender_id:
            raise InvalidArgument("sender id is required")

        message_id = self._store.new_id()
        message = Message(
            text=text,
            sender_id=sender_id,
            sender_name=sender_name,
            sender_photo_url=sender_photo_url,
            type=MessageType.TEXT,
            read_by=[sender_id],
            status=MessageStatus.SENT,
        )
        document = message.to_document()
        document["timestamp"] = SERVER_TIMESTAMP

        batch = self._store.batch()
        batch.set(paths.message(conversation_id, message_id), document)

        conversation = await self._store.get(paths.conversation(conversation_id))
        if conversation.exists:
            self._touch_conversation(batch, conversation, text, sender_id)
        else:
            logger.warning("conversation_missing_for_message", conversation_id=conversation_id)

        try:
            await batch.commit()
        except ChatSyncError as e:
            logger.error(
                "message_append_failed",
                conversation_id=conversation_id,
                sender_id=sender_id,
                error=str(e),
            )
            raise

        logger.info(
            "message_appended",
            conversation_id=conversation_id,
            message_id=message_id,
            sender_id=sender_id,
            text_length=len(text),
        )
        return message_id

    def add_system_message(
        self,
        batch: WriteBatch,
        conversation_id: str,
        event: SystemEvent,
        actor_id: str,
        user_id: str,
    ) -> str:
        """Stage a membership event in ``batch`` and return the message id."""
        _require_conversation(conversation_id)
        message_id = self._store.new_id()
        message = Message(
            text=SYSTEM_TEXT[event].format(actor=actor_id, user=user_id),
            sender_id=SYSTEM_SENDER_ID,
            type=MessageType.SYSTEM,
            system_type=event,
        )
        document = message.to_document()
        document["timestamp"] = SERVER_TIMESTAMP
        batch.set(paths.message(conversation_id, message_id), document)
        return message_id

    async def recent(self, conversation_id: str, limit: Optional[int] = None) -> List[Message]:
        """The newest ``limit`` messages in ascending timestamp order."""
        _require_conversation(conversation_id)
        snapshots = await self._store.query(self._window(conversation_id, limit))
        return [_to_message(snapshot) for snapshot in reversed(snapshots)]

    def subscribe_recent(
        self,
        conversation_id: str,
        on_change: FeedCallback,
        limit: Optional[int] = None,
    ) -> Subscription:
        """Push the newest ``limit`` messages, oldest first, after every change.

        Each delivery is the complete window and replaces the previous one. With
        no conversation selected a single empty, non-loading feed is delivered.
        Store failures arrive as a feed carrying ``error`` and the last good
        window.
        """
        if not conversation_id:
            subscription = Subscription("messages:none", on_change)
            subscription.push(MessageFeed(conversation_id="", messages=[], loading=False))
            return subscription

        last_window: List[Message] = []

        def deliver(snapshots: List[DocumentSnapshot]) -> Any:
            nonlocal last_window
            last_window = [_to_message(snapshot) for snapshot in reversed(snapshots)]
            return on_change(MessageFeed(conversation_id=conversation_id, messages=last_window))

        async def fail(error: Exception) -> None:
            logger.warning("message_feed_error", conversation_id=conversation_id, error=str(error))
            await invoke(
                on_change,
                MessageFeed(conversation_id=conversation_id, messages=last_window, error=str(error)),
            )

        return self._store.subscribe_query(self._window(conversation_id, limit), deliver, fail)

    async def mark_read(self, conversation_id: str, user_id: str, limit: Optional[int] = None) -> int:
        """Clear the reader's unread count and mark the recent window read.

        Returns how many messages changed.
        """
        _require_conversation(conversation_id)
        batch = self._store.batch()
        batch.update(
            paths.membership(user_id, conversation_id),
            {"unreadCount": 0, "lastRead": SERVER_TIMESTAMP, "updatedAt": SERVER_TIMESTAMP},
        )

        changed = 0
        for snapshot in await self._store.query(self._window(conversation_id, limit)):
            message = _to_message(snapshot)
            if message.sender_id in (user_id, SYSTEM_SENDER_ID) or user_id in message.read_by:
                continue
            batch.update(
                snapshot.path,
                {"readBy": ArrayUnion(user_id), "status": MessageStatus.READ.value},
            )
            changed += 1

        await batch.commit()
        logger.info("messages_marked_read", conversation_id=conversation_id, user_id=user_id, count=changed)
        return changed

    async def mark_delivered(self, conversation_id: str, user_id: str, limit: Optional[int] = None) -> int:
        """Move messages from other senders out of ``sent``. Never downgrades."""
        _require_conversation(conversation_id)
        batch = self._store.batch()
        for snapshot in await self._store.query(self._window(conversation_id, limit)):
            message = _to_message(snapshot)
            if message.sender_id in (user_id, SYSTEM_SENDER_ID):
                continue
            if STATUS_RANK[message.status] >= STATUS_RANK[MessageStatus.DELIVERED.value]:
                continue
            batch.update(snapshot.path, {"status": MessageStatus.DELIVERED.value})

        changed = len(batch)
        await batch.commit()
        logger.info("messages_marked_delivered", conversation_id=conversation_id, user_id=user_id, count=changed)
        return changed

    def _window(self, conversation_id: str, limit: Optional[int]) -> Query:
        if limit is None:
            limit = self.default_limit
        if limit < 1:
            raise InvalidArgument(f"limit must be at least 1, got {limit}")
        return Query(
            paths.messages(conversation_id),
            order_by="timestamp",
            descending=True,
            limit=limit,
        )

    @staticmethod
    def _touch_conversation(
        batch: WriteBatch,
        conversation: DocumentSnapshot,
        text: str,
        sender_id: str,
    ) -> None:
        conversation_id = conversation.id
        batch.update(
            conversation.path,
            {
                "lastMessage": {"text": text, "senderId": sender_id, "timestamp": SERVER_TIMESTAMP},
                "updatedAt": SERVER_TIMESTAMP,
            },
        )
        for participant in conversation.data.get("participants", []):
            membership = {
                "conversationId": conversation_id,
                "userId": participant,
                "updatedAt": SERVER_TIMESTAMP,
            }
            if participant == sender_id:
                membership["lastRead"] = SERVER_TIMESTAMP
            else:
                membership["unreadCount"] = Increment(1)
            batch.set(paths.membership(participant, conversation_id), membership, merge=True)


class MessageThread:
    """Live view over one conversation, holding the latest feed."""

    def __init__(
        self,
        messages: MessageStore,
        conversation_id: str,
        limit: Optional[int] = None,
        on_change: Optional[FeedCallback] = None,
    ) -> None:
        self._messages = messages
        self.conversation_id = conversation_id
        self.limit = limit
        self.feed = MessageFeed(conversation_id=conversation_id, loading=bool(conversation_id))
        self._on_change = on_change
        self._subscription: Optional[Subscription] = None

    def open(self) -> Subscription:
        if self._subscription is None or not self._subscription.active:
            self._subscription = self._messages.subscribe_recent(
                self.conversation_id, self._receive, limit=self.limit
            )
        return self._subscription

    async def send(
        self,
        text: str,
        sender_id: str,
        sender_name: str,
        sender_photo_url: Optional[str] = None,
    ) -> str:
        return await self._messages.append(
            self.conversation_id, text, sender_id, sender_name, sender_photo_url
        )

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()

    async def _receive(self, feed: MessageFeed) -> None:
        self.feed = feed
        if self._on_change is not None:
            await invoke(self._on_change, feed)
