"""Persisted collection layout.

    users/{uid}
    users/{uid}/conversations/{conversationId}
    conversations/{conversationId}
    conversations/{conversationId}/messages/{messageId}
"""

from typing import List

USERS = "users"
CONVERSATIONS = "conversations"
MEMBERSHIPS = "conversations"
MESSAGES = "messages"

DIRECT_PREFIX = "direct_"


def join(*segments: str) -> str:
    return "/".join(segments)


def split(path: str) -> List[str]:
    return [segment for segment in path.split("/") if segment]


def parent(path: str) -> str:
    """Return the collection path a document path belongs to."""
    return path.rsplit("/", 1)[0]


def leaf(path: str) -> str:
    return path.rsplit("/", 1)[-1]


def user(uid: str) -> str:
    return join(USERS, uid)


def memberships(uid: str) -> str:
    return join(USERS, uid, MEMBERSHIPS)


def membership(uid: str, conversation_id: str) -> str:
    return join(USERS, uid, MEMBERSHIPS, conversation_id)


def conversation(conversation_id: str) -> str:
    return join(CONVERSATIONS, conversation_id)


def messages(conversation_id: str) -> str:
    return join(CONVERSATIONS, conversation_id, MESSAGES)


def message(conversation_id: str, message_id: str) -> str:
    return join(CONVERSATIONS, conversation_id, MESSAGES, message_id)


def direct_conversation_id(user_a: str, user_b: str) -> str:
    """Deterministic id for the direct conversation between two users."""
    first, second = sorted([user_a, user_b])
    return f"{DIRECT_PREFIX}{first}_{second}"
