"""User directory service."""

import re
from typing import Any, Dict, List, Optional, Union

import structlog
from pydantic import ValidationError

from ..domain.errors import AlreadyExists, InvalidArgument, NotFound
from ..domain.models import PresenceStatus, ProfileUpdate, UserProfile
from ..repositories import paths
from ..repositories.base import SERVER_TIMESTAMP, DocumentStore, Query

logger = structlog.get_logger()

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class UserDirectory:
    """Profile records under ``users/{uid}``."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def upsert(
        self,
        uid: str,
        profile: Union[ProfileUpdate, Dict[str, Any]],
        touch_presence: bool = True,
    ) -> UserProfile:
        """Create or merge a profile.

        ``updatedAt`` is always stamped. With ``touch_presence`` (the default)
        the edit also marks the user online and refreshes ``lastSeen``; pass
        ``False`` to edit a profile without touching presence.
        """
        if not uid:
            raise InvalidArgument("uid is required")
        update = self._validate(profile)

        data = update.model_dump(by_alias=True, exclude_none=True)
        data["updatedAt"] = SERVER_TIMESTAMP
        if touch_presence:
            data["status"] = PresenceStatus.ONLINE.value
            data["lastSeen"] = SERVER_TIMESTAMP

        path = paths.user(uid)
        existing = await self._store.get(path)
        if existing.exists:
            await self._store.update(path, data)
        else:
            created = {
                "uid": uid,
                "email": "",
                "displayName": "",
                "status": PresenceStatus.OFFLINE.value,
                **data,
                "createdAt": SERVER_TIMESTAMP,
            }
            try:
                await self._store.create(path, created)
            except AlreadyExists:
                # Another session created the record first.
                await self._store.update(path, data)
            else:
                logger.info("user_created", uid=uid)

        logger.info("user_upserted", uid=uid, touch_presence=touch_presence, fields=sorted(data))
        stored = await self.get_by_id(uid)
        if stored is None:
            raise NotFound(f"User {uid} could not be read back")
        return stored

    async def get_by_id(self, uid: str) -> Optional[UserProfile]:
        if not uid:
            return None
        snapshot = await self._store.get(paths.user(uid))
        if not snapshot.exists:
            return None
        return UserProfile.model_validate(snapshot.data)

    async def list_all_except(self, uid: str) -> List[UserProfile]:
        return [profile for profile in await self._all() if profile.uid != uid]

    async def search(self, term: str, exclude_uid: str) -> List[UserProfile]:
        """Case-insensitive substring match on display name and email.

        Scans the whole directory.
        """
        needle = (term or "").lower()
        return [
            profile
            for profile in await self.list_all_except(exclude_uid)
            if needle in profile.display_name.lower() or needle in profile.email.lower()
        ]

    async def _all(self) -> List[UserProfile]:
        snapshots = await self._store.query(Query(paths.USERS))
        return [UserProfile.model_validate(snapshot.data) for snapshot in snapshots]

    @staticmethod
    def _validate(profile: Union[ProfileUpdate, Dict[str, Any]]) -> ProfileUpdate:
        if isinstance(profile, ProfileUpdate):
            update = profile
        else:
            try:
                update = ProfileUpdate.model_validate(profile)
            except ValidationError as e:
                raise InvalidArgument(str(e)) from e
        if update.email and not EMAIL_PATTERN.match(update.email):
            raise InvalidArgument(f"Malformed email: {update.email!r}")
        return update
