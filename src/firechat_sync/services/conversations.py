"""Conversation registry.

Membership is stored twice: in ``Conversation.participants`` and as one
``users/{uid}/conversations/{id}`` record per member. Every operation that
changes membership writes both sides in a single batch.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import structlog
from pydantic import ValidationError

from ..domain.errors import AlreadyExists, Conflict, InvalidArgument, NotFound
from ..domain.models import (
    Conversation,
    ConversationType,
    ConversationView,
    MembershipUpdate,
    SystemEvent,
    UserConversation,
)
from ..repositories import paths
from ..repositories.base import (
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    DocumentSnapshot,
    DocumentStore,
    Query,
)
from ..sync.live import ErrorCallback, Subscription, invoke
from .messages import MessageStore

logger = structlog.get_logger()

ViewsCallback = Callable[[List[ConversationView]], Union[None, Awaitable[None]]]


def _membership_document(user_id: str, conversation_id: str) -> Dict[str, Any]:
    document = UserConversation(conversation_id=conversation_id, user_id=user_id).to_document()
    document["lastRead"] = SERVER_TIMESTAMP
    document["updatedAt"] = SERVER_TIMESTAMP
    return document


def _conversation_document(conversation: Conversation) -> Dict[str, Any]:
    document = conversation.to_document()
    document["createdAt"] = SERVER_TIMESTAMP
    document["updatedAt"] = SERVER_TIMESTAMP
    return document


def _window(value: Optional[int], default: int) -> int:
    limit = default if value is None else value
    if limit < 1:
        raise InvalidArgument(f"limit must be at least 1, got {limit}")
    return limit


def _matches(conversation: Conversation, needle: str) -> bool:
    return any(
        field is not None and needle in field.lower()
        for field in (conversation.name, conversation.description)
    )


class ConversationRegistry:
    """Creates conversations and maintains membership on both sides."""

    def __init__(
        self,
        store: DocumentStore,
        messages: MessageStore,
        search_limit: int = 10,
        recent_limit: int = 5,
        conflict_attempts: int = 5,
    ) -> None:
        self._store = store
        self._messages = messages
        self.search_limit = search_limit
        self.recent_limit = recent_limit
        self.conflict_attempts = conflict_attempts

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        if not conversation_id:
            raise InvalidArgument("conversation id is required")
        snapshot = await self._store.get(paths.conversation(conversation_id))
        if not snapshot.exists:
            return None
        return Conversation.model_validate(snapshot.data)

    async def get_or_create_direct(self, user_a: str, user_b: str) -> str:
        """Return the id of the direct conversation between two users.

        The id depends only on the pair. Creation is a conditional write, so
        concurrent callers for the same pair end up with one conversation and
        one membership record per participant.
        """
        if not user_a or not user_b:
            raise InvalidArgument("both user ids are required")
        if user_a == user_b:
            raise InvalidArgument("a direct conversation needs two different users")

        conversation_id = paths.direct_conversation_id(user_a, user_b)
        existing = await self._store.get(paths.conversation(conversation_id))
        if existing.exists:
            return conversation_id

        participants = sorted([user_a, user_b])
        conversation = Conversation(
            id=conversation_id,
            type=ConversationType.DIRECT,
            participants=participants,
            created_by=user_a,
        )

        batch = self._store.batch()
        batch.create(paths.conversation(conversation_id), _conversation_document(conversation))
        for participant in participants:
            batch.set(paths.membership(participant, conversation_id), _membership_document(participant, conversation_id))

        try:
            await batch.commit()
        except AlreadyExists:
            logger.info("direct_conversation_created_concurrently", conversation_id=conversation_id)
            return conversation_id

        logger.info("conversation_created", conversation_id=conversation_id, type=ConversationType.DIRECT.value)
        return conversation_id

    async def create_group(
        self,
        creator_id: str,
        member_ids: Sequence[str],
        name: str,
        description: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> str:
        """Create a group conversation with a fresh id; the creator always joins.

        The id is allocated before writing and the conversation is written
        with ``set``, so a retried commit lands on the same document.
        """
        if not creator_id:
            raise InvalidArgument("creator id is required")

        participants = list(dict.fromkeys([*(m for m in member_ids if m), creator_id]))
        conversation_id = self._store.new_id()
        conversation = Conversation(
            id=conversation_id,
            type=ConversationType.GROUP,
            name=name,
            description=description,
            photo_url=photo_url,
            participants=participants,
            created_by=creator_id,
        )

        batch = self._store.batch()
        batch.set(paths.conversation(conversation_id), _conversation_document(conversation))
        for participant in participants:
            batch.set(paths.membership(participant, conversation_id), _membership_document(participant, conversation_id))
        await batch.commit()

        logger.info(
            "conversation_created",
            conversation_id=conversation_id,
            type=ConversationType.GROUP.value,
            participants=len(participants),
        )
        return conversation_id

    async def add_participant(self, conversation_id: str, user_id: str, actor_id: str) -> bool:
        """Add a member to a group and log a system message.

        Returns ``False`` when the user is already a participant.
        """
        if not user_id:
            raise InvalidArgument("user id is required")
        return await self._change_participants(conversation_id, user_id, actor_id, SystemEvent.MEMBER_ADDED)

    async def remove_participant(self, conversation_id: str, user_id: str, actor_id: str) -> bool:
        """Remove a member, log a system message and archive their membership.

        The membership record and message history are kept. Returns ``False``
        when the user was not a participant.
        """
        return await self._change_participants(conversation_id, user_id, actor_id, SystemEvent.MEMBER_REMOVED)

    async def _change_participants(
        self,
        conversation_id: str,
        user_id: str,
        actor_id: str,
        event: SystemEvent,
    ) -> bool:
        """Apply one membership change, conditional on the conversation read.

        The participants update only commits if the conversation is unchanged
        since it was read; on a conflict the change is re-evaluated against
        the fresh document, so racing callers log a single system message.
        """
        adding = event == SystemEvent.MEMBER_ADDED
        for attempt in range(1, self.conflict_attempts + 1):
            snapshot, conversation = await self._load_group(conversation_id)
            if (user_id in conversation.participants) == adding:
                return False

            batch = self._store.batch()
            batch.update(
                snapshot.path,
                {
                    "participants": ArrayUnion(user_id) if adding else ArrayRemove(user_id),
                    "updatedAt": SERVER_TIMESTAMP,
                },
                last_update=snapshot.update_time,
            )
            if adding:
                batch.set(paths.membership(user_id, conversation_id), _membership_document(user_id, conversation_id))
            else:
                batch.set(
                    paths.membership(user_id, conversation_id),
                    {
                        "conversationId": conversation_id,
                        "userId": user_id,
                        "archived": True,
                        "updatedAt": SERVER_TIMESTAMP,
                    },
                    merge=True,
                )
            self._messages.add_system_message(batch, conversation_id, event, actor_id, user_id)

            try:
                await batch.commit()
            except Conflict:
                logger.info(
                    "participant_change_conflict",
                    conversation_id=conversation_id,
                    user_id=user_id,
                    attempt=attempt,
                )
                continue

            logger.info(
                "participant_added" if adding else "participant_removed",
                conversation_id=conversation_id,
                user_id=user_id,
                actor_id=actor_id,
            )
            return True

        raise Conflict(f"Conversation {conversation_id} kept changing while updating {user_id}")

    async def update_membership(
        self,
        user_id: str,
        conversation_id: str,
        update: Union[MembershipUpdate, Dict[str, Any]],
    ) -> None:
        """Merge mute/archive/lastRead/customName/unreadCount changes."""
        if not user_id or not conversation_id:
            raise InvalidArgument("user id and conversation id are required")
        if not isinstance(update, MembershipUpdate):
            try:
                update = MembershipUpdate.model_validate(update)
            except ValidationError as e:
                raise InvalidArgument(str(e)) from e

        data = update.model_dump(by_alias=True, exclude_unset=True)
        data["updatedAt"] = SERVER_TIMESTAMP
        await self._store.update(paths.membership(user_id, conversation_id), data)
        logger.info("membership_updated", user_id=user_id, conversation_id=conversation_id, fields=sorted(data))

    async def list_for_user(self, user_id: str) -> List[ConversationView]:
        """The user's conversations, most recently updated membership first."""
        return await self._join(await self._store.query(self._memberships(user_id)))

    def subscribe_for_user(
        self,
        user_id: str,
        on_change: ViewsCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Live ``list_for_user``: the whole joined list after every change."""
        if not user_id:
            raise InvalidArgument("user id is required")

        async def deliver(snapshots: List[DocumentSnapshot]) -> None:
            await invoke(on_change, await self._join(snapshots))

        return self._store.subscribe_query(self._memberships(user_id), deliver, on_error)

    async def find_direct_with(self, current_user_id: str, other_user_id: str) -> Optional[str]:
        """Scan the current user's memberships for a direct chat with the other user."""
        for snapshot in await self._store.query(Query(paths.memberships(current_user_id))):
            conversation = await self.get(snapshot.data["conversationId"])
            if conversation is None:
                continue
            if conversation.type == ConversationType.DIRECT.value and other_user_id in conversation.participants:
                return conversation.id
        return None

    async def search(self, user_id: str, term: str, max_results: Optional[int] = None) -> List[ConversationView]:
        """Match name or description among the first ``max_results`` memberships.

        Memberships are truncated before filtering, so matches beyond the first
        ``max_results`` records are not found.
        """
        limit = _window(max_results, self.search_limit)
        snapshots = await self._store.query(Query(paths.memberships(user_id), limit=limit))
        needle = (term or "").lower()
        return [view for view in await self._join(snapshots) if _matches(view.conversation, needle)]

    async def list_groups(self, user_id: str) -> List[Conversation]:
        views = await self._join(await self._store.query(Query(paths.memberships(user_id))))
        return [view.conversation for view in views if view.conversation.type == ConversationType.GROUP.value]

    async def list_recent(self, user_id: str, count: Optional[int] = None) -> List[ConversationView]:
        query = self._memberships(user_id, limit=_window(count, self.recent_limit))
        return await self._join(await self._store.query(query))

    async def _load_group(self, conversation_id: str) -> Tuple[DocumentSnapshot, Conversation]:
        if not conversation_id:
            raise InvalidArgument("conversation id is required")
        snapshot = await self._store.get(paths.conversation(conversation_id))
        if not snapshot.exists:
            raise NotFound(f"Conversation {conversation_id} not found")
        conversation = Conversation.model_validate(snapshot.data)
        if conversation.type != ConversationType.GROUP.value:
            raise InvalidArgument("membership can only change on group conversations")
        return snapshot, conversation

    @staticmethod
    def _memberships(user_id: str, limit: Optional[int] = None) -> Query:
        return Query(paths.memberships(user_id), order_by="updatedAt", descending=True, limit=limit)

    async def _join(self, snapshots: List[DocumentSnapshot]) -> List[ConversationView]:
        memberships = [UserConversation.model_validate(snapshot.data) for snapshot in snapshots]
        resolved = await asyncio.gather(
            *(self._store.get(paths.conversation(m.conversation_id)) for m in memberships)
        )

        views = []
        for membership, snapshot in zip(memberships, resolved):
            if not snapshot.exists:
                logger.debug(
                    "conversation_missing_for_membership",
                    user_id=membership.user_id,
                    conversation_id=membership.conversation_id,
                )
                continue
            views.append(
                ConversationView(
                    conversation=Conversation.model_validate(snapshot.data),
                    membership=membership,
                )
            )
        return views
