"""Domain models for the chat synchronization core.

Field names are snake_case in Python and camelCase in the persisted
documents, so every model can be read from and written to the store as-is.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SYSTEM_SENDER_ID = "system"


class PresenceStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    OFFLINE = "offline"


class ConversationType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    VOICE = "voice"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class SystemEvent(str, Enum):
    MEMBER_ADDED = "member_added"
    MEMBER_REMOVED = "member_removed"


# Messages only ever move forward through these states.
STATUS_RANK = {
    MessageStatus.SENT.value: 0,
    MessageStatus.DELIVERED.value: 1,
    MessageStatus.READ.value: 2,
}


class DocumentModel(BaseModel):
    """Base model mapping snake_case attributes onto camelCase document keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        validate_default=True,
    )

    def to_document(self) -> Dict[str, Any]:
        """Serialize to the persisted document shape."""
        return self.model_dump(by_alias=True, exclude_none=True)


class UserProfile(DocumentModel):
    """Directory record stored at ``users/{uid}``."""

    uid: str
    email: str = ""
    display_name: str = ""
    photo_url: Optional[str] = Field(default=None, alias="photoURL")
    bio: Optional[str] = None
    phone_number: Optional[str] = None
    status: PresenceStatus = PresenceStatus.OFFLINE
    last_seen: Optional[datetime] = None
    fcm_token: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProfileUpdate(DocumentModel):
    """Partial profile accepted by the directory upsert."""

    email: Optional[str] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = Field(default=None, alias="photoURL")
    bio: Optional[str] = None
    phone_number: Optional[str] = None
    fcm_token: Optional[str] = None


class LastMessage(DocumentModel):
    """Denormalized preview of the newest message in a conversation."""

    text: str
    sender_id: str
    timestamp: Optional[datetime] = None


class Conversation(DocumentModel):
    """Conversation metadata stored at ``conversations/{id}``."""

    id: str
    type: ConversationType
    name: Optional[str] = None
    description: Optional[str] = None
    photo_url: Optional[str] = Field(default=None, alias="photoURL")
    participants: List[str] = Field(default_factory=list)
    last_message: Optional[LastMessage] = None
    created_by: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserConversation(DocumentModel):
    """Per-user membership record stored at ``users/{uid}/conversations/{id}``."""

    conversation_id: str
    user_id: str
    unread_count: int = Field(default=0, ge=0)
    muted: bool = False
    archived: bool = False
    last_read: Optional[datetime] = None
    custom_name: Optional[str] = None
    updated_at: Optional[datetime] = None


class MembershipUpdate(DocumentModel):
    """Fields a member may change on their own membership record."""

    model_config = ConfigDict(extra="forbid")

    unread_count: Optional[int] = Field(default=None, ge=0)
    muted: Optional[bool] = None
    archived: Optional[bool] = None
    last_read: Optional[datetime] = None
    custom_name: Optional[str] = None


class ConversationView(DocumentModel):
    """A conversation joined with the viewing user's membership record."""

    conversation: Conversation
    membership: UserConversation

    @property
    def id(self) -> str:
        return self.conversation.id

    @property
    def title(self) -> Optional[str]:
        return self.membership.custom_name or self.conversation.name

    @property
    def updated_at(self) -> Optional[datetime]:
        return self.membership.updated_at


class Message(DocumentModel):
    """Entry in ``conversations/{id}/messages``; the id is the document id."""

    id: str = ""
    text: str
    sender_id: str
    sender_name: str = ""
    sender_photo_url: Optional[str] = Field(default=None, alias="senderPhotoURL")
    timestamp: Optional[datetime] = None
    type: MessageType = MessageType.TEXT
    read_by: List[str] = Field(default_factory=list)
    status: MessageStatus = MessageStatus.SENT
    system_type: Optional[SystemEvent] = None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"id"})


class MessageFeed(DocumentModel):
    """State pushed to message observers: always the whole window."""

    conversation_id: str = ""
    messages: List[Message] = Field(default_factory=list)
    loading: bool = False
    error: Optional[str] = None


class AuthIdentity(DocumentModel):
    """Identity handed over by the authentication provider on sign-in."""

    uid: str
    email: str = ""
    display_name: str = ""
    photo_url: Optional[str] = Field(default=None, alias="photoURL")
