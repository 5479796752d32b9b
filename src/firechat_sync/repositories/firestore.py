"""Google Cloud Firestore document store implementation.

Reads, queries and batched writes go through the asyncio client. Push
subscriptions use the synchronous client's watch streams, whose callbacks run
on a background thread and are handed to the event loop that created the
subscription.
"""

import asyncio
from functools import partial
from typing import Any, List, Optional, Sequence

import structlog
from google.api_core import exceptions
from google.cloud import firestore

from ..domain import errors
from ..sync.live import Callback, ErrorCallback, Subscription
from . import paths
from .base import (
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    DocumentSnapshot,
    DocumentStore,
    Increment,
    Query,
    Write,
    WriteKind,
)

logger = structlog.get_logger()

_TRANSIENT = (
    exceptions.ServiceUnavailable,
    exceptions.DeadlineExceeded,
    exceptions.InternalServerError,
    exceptions.Aborted,
    exceptions.ResourceExhausted,
)


def to_firestore_value(value: Any) -> Any:
    """Translate store-neutral write sentinels into Firestore transforms."""
    if value is SERVER_TIMESTAMP:
        return firestore.SERVER_TIMESTAMP
    if isinstance(value, ArrayUnion):
        return firestore.ArrayUnion(value.values)
    if isinstance(value, ArrayRemove):
        return firestore.ArrayRemove(value.values)
    if isinstance(value, Increment):
        return firestore.Increment(value.amount)
    if isinstance(value, dict):
        return {key: to_firestore_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [to_firestore_value(item) for item in value]
    return value


def translate_error(error: exceptions.GoogleAPICallError) -> errors.ChatSyncError:
    """Map a Google API error onto the error taxonomy."""
    if isinstance(error, exceptions.AlreadyExists):
        return errors.AlreadyExists(str(error))
    if isinstance(error, exceptions.NotFound):
        return errors.NotFound(str(error))
    if isinstance(error, exceptions.FailedPrecondition):
        return errors.Conflict(str(error))
    if isinstance(error, (exceptions.PermissionDenied, exceptions.Unauthenticated)):
        return errors.PermissionDenied(str(error))
    if isinstance(error, exceptions.InvalidArgument):
        return errors.InvalidArgument(str(error))
    return errors.RemoteFailure(str(error), transient=isinstance(error, _TRANSIENT))


def _to_snapshot(snapshot: Any) -> DocumentSnapshot:
    return DocumentSnapshot(
        path=snapshot.reference.path,
        data=snapshot.to_dict() if snapshot.exists else None,
        update_time=snapshot.update_time if snapshot.exists else None,
    )


def _apply_query(collection: Any, query: Query) -> Any:
    ref = collection
    if query.order_by is not None:
        direction = firestore.Query.DESCENDING if query.descending else firestore.Query.ASCENDING
        ref = ref.order_by(query.order_by, direction=direction)
    if query.limit is not None:
        ref = ref.limit(query.limit)
    return ref


class FirestoreDocumentStore(DocumentStore):
    """Document store backed by Cloud Firestore."""

    def __init__(
        self,
        project: Optional[str] = None,
        database: Optional[str] = None,
        client: Optional[firestore.AsyncClient] = None,
        watch_client: Optional[firestore.Client] = None,
    ) -> None:
        self._project = project
        self._database = database
        self._client = client or firestore.AsyncClient(project=project, database=database)
        self._watch_client = watch_client
        self._subscriptions: List[Subscription] = []
        logger.info("document_store_initialized", backend="firestore", project=project)

    def _watcher(self) -> firestore.Client:
        if self._watch_client is None:
            self._watch_client = firestore.Client(project=self._project, database=self._database)
        return self._watch_client

    async def get(self, path: str) -> DocumentSnapshot:
        try:
            snapshot = await self._client.document(*paths.split(path)).get()
        except exceptions.GoogleAPICallError as e:
            logger.error("firestore_get_failed", path=path, error=str(e))
            raise translate_error(e) from e
        return _to_snapshot(snapshot)

    async def query(self, query: Query) -> List[DocumentSnapshot]:
        ref = _apply_query(self._client.collection(*paths.split(query.collection)), query)
        try:
            return [_to_snapshot(snapshot) async for snapshot in ref.stream()]
        except exceptions.GoogleAPICallError as e:
            logger.error("firestore_query_failed", collection=query.collection, error=str(e))
            raise translate_error(e) from e

    async def commit(self, writes: Sequence[Write]) -> None:
        batch = self._client.batch()
        for write in writes:
            ref = self._client.document(*paths.split(write.path))
            data = to_firestore_value(write.data)
            if write.kind == WriteKind.CREATE:
                batch.create(ref, data)
            elif write.kind == WriteKind.UPDATE:
                option = None
                if write.last_update is not None:
                    option = self._client.write_option(last_update_time=write.last_update)
                batch.update(ref, data, option=option)
            else:
                batch.set(ref, data, merge=write.merge)
        try:
            await batch.commit()
        except exceptions.GoogleAPICallError as e:
            logger.error("firestore_commit_failed", count=len(writes), error=str(e))
            raise translate_error(e) from e

    def subscribe_document(
        self,
        path: str,
        on_next: Callback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        subscription = Subscription(f"document:{path}", on_next, on_error)
        loop = asyncio.get_running_loop()

        def on_snapshot(documents: List[Any], changes: Any, read_time: Any) -> None:
            snapshot = _to_snapshot(documents[0]) if documents else DocumentSnapshot(path=path)
            self._hand_over(loop, subscription, snapshot)

        ref = self._watcher().document(*paths.split(path))
        return self._watch(subscription, ref, on_snapshot)

    def subscribe_query(
        self,
        query: Query,
        on_next: Callback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        subscription = Subscription(f"query:{query.collection}", on_next, on_error)
        loop = asyncio.get_running_loop()

        def on_snapshot(documents: List[Any], changes: Any, read_time: Any) -> None:
            snapshots = [_to_snapshot(document) for document in documents]
            self._hand_over(loop, subscription, snapshots)

        ref = _apply_query(self._watcher().collection(*paths.split(query.collection)), query)
        return self._watch(subscription, ref, on_snapshot)

    def _watch(self, subscription: Subscription, ref: Any, on_snapshot: Any) -> Subscription:
        try:
            watch = ref.on_snapshot(on_snapshot)
        except exceptions.GoogleAPICallError as e:
            logger.error("firestore_watch_failed", subscription=subscription.name, error=str(e))
            subscription.fail(translate_error(e))
            return subscription
        self._subscriptions.append(subscription)
        subscription.bind_teardown(partial(self._release, subscription, watch))
        return subscription

    def _release(self, subscription: Subscription, watch: Any) -> None:
        watch.unsubscribe()
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def listener_count(self) -> int:
        return len(self._subscriptions)

    @staticmethod
    def _hand_over(loop: asyncio.AbstractEventLoop, subscription: Subscription, snapshot: Any) -> None:
        try:
            loop.call_soon_threadsafe(subscription.push, snapshot)
        except RuntimeError:
            logger.warning("firestore_snapshot_dropped", subscription=subscription.name, reason="loop_closed")

    async def close(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.cancel()
        logger.info("document_store_closed", backend="firestore", listeners=len(subscriptions))
