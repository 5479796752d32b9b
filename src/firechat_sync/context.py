"""Explicitly constructed service context.

One ``ChatContext`` per client process wires the store and every service
together; tests build their own around an in-memory store.
"""

from typing import Optional

import structlog

from .config import Settings, get_settings
from .repositories.base import DocumentStore
from .repositories.firestore import FirestoreDocumentStore
from .repositories.memory import InMemoryDocumentStore
from .repositories.resilient import ResilientStore
from .services.conversations import ConversationRegistry
from .services.directory import UserDirectory
from .services.messages import MessageStore
from .services.presence import PresenceTracker
from .services.session import SessionBridge

logger = structlog.get_logger()


def build_store(settings: Settings) -> DocumentStore:
    """Create the configured backend wrapped with timeouts and retries."""
    if settings.uses_firestore:
        backend: DocumentStore = FirestoreDocumentStore(
            project=settings.firestore_project,
            database=settings.firestore_database,
        )
    else:
        backend = InMemoryDocumentStore()
    return ResilientStore(
        backend,
        timeout=settings.remote_timeout_seconds,
        attempts=settings.write_retry_attempts,
        backoff_min=settings.retry_backoff_min,
        backoff_max=settings.retry_backoff_max,
    )


class ChatContext:
    """Holds the store and the services built on it."""

    def __init__(self, store: DocumentStore, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.presence = PresenceTracker(store)
        self.directory = UserDirectory(store)
        self.messages = MessageStore(store, default_limit=self.settings.default_message_limit)
        self.conversations = ConversationRegistry(
            store,
            self.messages,
            search_limit=self.settings.conversation_search_limit,
            recent_limit=self.settings.recent_conversation_limit,
        )
        self.session = SessionBridge(self.directory, self.presence)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ChatContext":
        settings = settings or get_settings()
        logger.info("chat_context_created", backend=settings.store_backend)
        return cls(build_store(settings), settings)

    async def aclose(self) -> None:
        await self.session.close()
        await self.store.close()
        logger.info("chat_context_closed")
