"""Bridge between the authentication provider and the chat services.

The provider reports every sign-in/sign-out transition through a single
callback. Signing in binds the directory record and presence for the new
identity; signing out marks the previous user offline and cancels every
subscription the session tracked.
"""

from typing import Any, Callable, Optional, Protocol

import structlog

from ..domain.errors import ChatSyncError
from ..domain.models import AuthIdentity, PresenceStatus, ProfileUpdate, UserProfile
from ..sync.live import Subscription, SubscriptionScope
from .directory import UserDirectory
from .presence import PresenceTracker

logger = structlog.get_logger()

AuthCallback = Callable[[Optional[AuthIdentity]], Any]


class AuthProvider(Protocol):
    def on_auth_state_changed(self, callback: AuthCallback) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it."""
        ...


class SessionBridge:
    """Tracks the signed-in identity and the subscriptions opened on its behalf."""

    def __init__(self, directory: UserDirectory, presence: PresenceTracker) -> None:
        self._directory = directory
        self._presence = presence
        self._unbind: Optional[Callable[[], None]] = None
        self.scope = SubscriptionScope("session")
        self.current: Optional[AuthIdentity] = None

    def bind(self, provider: AuthProvider) -> None:
        if self._unbind is not None:
            self._unbind()
        self._unbind = provider.on_auth_state_changed(self.handle_auth_state)

    async def handle_auth_state(self, identity: Optional[AuthIdentity]) -> None:
        if identity is None:
            await self.sign_out()
            return
        if self.current is not None and self.current.uid != identity.uid:
            await self.sign_out()
        await self.sign_in(identity)

    async def sign_in(self, identity: AuthIdentity) -> UserProfile:
        profile = await self._directory.upsert(
            identity.uid,
            ProfileUpdate(
                email=identity.email or None,
                display_name=identity.display_name or None,
                photo_url=identity.photo_url,
            ),
            touch_presence=True,
        )
        self.current = identity
        logger.info("session_started", uid=identity.uid)
        return profile

    async def sign_out(self) -> None:
        self.scope.cancel_all()
        if self.current is None:
            return
        uid = self.current.uid
        self.current = None
        try:
            await self._presence.set_status(uid, PresenceStatus.OFFLINE)
        except ChatSyncError as e:
            logger.warning("session_offline_failed", uid=uid, error=str(e))
        logger.info("session_ended", uid=uid)

    async def visibility_changed(self, hidden: bool) -> None:
        if self.current is None:
            return
        status = PresenceStatus.AWAY if hidden else PresenceStatus.ONLINE
        await self._presence.set_status(self.current.uid, status)

    def track(self, subscription: Subscription) -> Subscription:
        """Tie a subscription to the session so sign-out cancels it."""
        return self.scope.track(subscription)

    async def close(self) -> None:
        if self._unbind is not None:
            self._unbind()
            self._unbind = None
        await self.sign_out()
