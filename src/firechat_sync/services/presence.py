"""Presence tracking.

Status is a local-intent signal: a client marks itself online when a session
starts, away when it loses visibility and offline when the session ends.
Nothing on the server detects dead clients, so a client that exits without a
clean shutdown stays ``online`` until it signs in again.
"""

from functools import partial
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set, Union

import structlog

from ..domain.errors import InvalidArgument
from ..domain.models import PresenceStatus, UserProfile
from ..repositories import paths
from ..repositories.base import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore
from ..sync.live import ErrorCallback, Subscription, SubscriptionScope
from .directory import UserDirectory

logger = structlog.get_logger()

ProfileCallback = Callable[[Optional[UserProfile]], Union[None, Awaitable[None]]]


def _coerce_status(status: Union[str, PresenceStatus]) -> PresenceStatus:
    try:
        return PresenceStatus(status)
    except ValueError:
        raise InvalidArgument(f"Unknown presence status: {status!r}") from None


class PresenceTracker:
    """Reads and writes the presence fields of directory records."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def set_status(self, user_id: str, status: Union[str, PresenceStatus]) -> None:
        """Set a user's status and refresh ``lastSeen``."""
        if not user_id:
            raise InvalidArgument("user id is required")
        status = _coerce_status(status)
        await self._store.update(
            paths.user(user_id),
            {
                "status": status.value,
                "lastSeen": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            },
        )
        logger.info("presence_updated", user_id=user_id, status=status.value)

    def subscribe(
        self,
        user_id: str,
        on_change: ProfileCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Watch a user's record; ``on_change`` gets the current record first.

        A missing record is delivered as ``None``.
        """
        if not user_id:
            raise InvalidArgument("user id is required")

        def deliver(snapshot: DocumentSnapshot) -> Any:
            profile = UserProfile.model_validate(snapshot.data) if snapshot.exists else None
            return on_change(profile)

        return self._store.subscribe_document(paths.user(user_id), deliver, on_error)


class PresenceBoard:
    """Online/away/offline sets for a group of watched users."""

    def __init__(self, tracker: PresenceTracker, scope: Optional[SubscriptionScope] = None) -> None:
        self._tracker = tracker
        self._scope = scope or SubscriptionScope("presence-board")
        self._statuses: Dict[str, str] = {}
        self._watched: Dict[str, Subscription] = {}

    def watch(self, user_ids: Iterable[str]) -> None:
        for user_id in user_ids:
            if user_id in self._watched and self._watched[user_id].active:
                continue
            subscription = self._tracker.subscribe(user_id, partial(self._apply, user_id))
            self._watched[user_id] = self._scope.track(subscription)

    async def watch_directory(self, directory: UserDirectory, current_user_id: str) -> None:
        """Watch everyone in the directory except the current user."""
        profiles = await directory.list_all_except(current_user_id)
        for profile in profiles:
            self._statuses[profile.uid] = profile.status
        self.watch(profile.uid for profile in profiles)

    def unwatch(self, user_id: str) -> None:
        subscription = self._watched.pop(user_id, None)
        if subscription is not None:
            subscription.cancel()
        self._statuses.pop(user_id, None)

    def status_of(self, user_id: str) -> Optional[str]:
        return self._statuses.get(user_id)

    @property
    def online(self) -> Set[str]:
        return self._with_status(PresenceStatus.ONLINE)

    @property
    def away(self) -> Set[str]:
        return self._with_status(PresenceStatus.AWAY)

    @property
    def offline(self) -> Set[str]:
        return self._with_status(PresenceStatus.OFFLINE)

    def close(self) -> None:
        self._scope.cancel_all()
        self._watched.clear()

    def _with_status(self, status: PresenceStatus) -> Set[str]:
        return {user_id for user_id, value in self._statuses.items() if value == status.value}

    def _apply(self, user_id: str, profile: Optional[UserProfile]) -> None:
        if profile is None:
            self._statuses.pop(user_id, None)
            return
        self._statuses[user_id] = profile.status
