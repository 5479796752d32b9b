"""In-memory document store implementation."""

import asyncio
import copy
import itertools
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

import structlog

from ..domain.errors import AlreadyExists, Conflict, NotFound
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

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Listener:
    subscription: Subscription
    matches: Callable[[Set[str]], bool]
    snapshot: Callable[[], Any]


class InMemoryDocumentStore(DocumentStore):
    """Document store kept in process memory.

    Behaves like the hosted store for everything the services rely on:
    server-assigned timestamps, atomic batches, conditional creates and push
    subscriptions that receive the full result after every matching commit.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._sequence: Dict[str, int] = {}
        self._update_times: Dict[str, datetime] = {}
        self._counter = itertools.count()
        self._clock = clock or utc_now
        self._last_timestamp: Optional[datetime] = None
        self._lock = asyncio.Lock()
        self._listeners: List[_Listener] = []
        self.commit_count = 0
        logger.info("document_store_initialized", backend="memory")

    def server_now(self) -> datetime:
        """Next reading of the server clock, strictly after the previous one."""
        now = self._clock()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    async def get(self, path: str) -> DocumentSnapshot:
        async with self._lock:
            return self._read_document(path)

    async def query(self, query: Query) -> List[DocumentSnapshot]:
        async with self._lock:
            return self._run_query(query)

    async def commit(self, writes: Sequence[Write]) -> None:
        async with self._lock:
            now = self.server_now()
            staged: Dict[str, Dict[str, Any]] = {}

            for write in writes:
                current = staged.get(write.path, self._documents.get(write.path))

                if write.kind == WriteKind.CREATE:
                    if current is not None:
                        logger.info("document_already_exists", path=write.path)
                        raise AlreadyExists(f"Document {write.path} already exists")
                    document = self._resolve({}, write.data, now)
                elif write.kind == WriteKind.UPDATE:
                    if current is None:
                        logger.warning("document_not_found_for_update", path=write.path)
                        raise NotFound(f"Document {write.path} not found")
                    if write.last_update is not None and write.last_update != self._update_times.get(write.path):
                        logger.info("document_changed_since_read", path=write.path)
                        raise Conflict(f"Document {write.path} changed since it was read")
                    document = self._resolve(copy.deepcopy(current), write.data, now)
                else:
                    base = copy.deepcopy(current) if write.merge and current is not None else {}
                    document = self._resolve(base, write.data, now)

                staged[write.path] = document

            for path, document in staged.items():
                if path not in self._documents:
                    self._sequence[path] = next(self._counter)
                self._documents[path] = document
                self._update_times[path] = now

            self.commit_count += 1
            logger.debug("writes_committed", count=len(writes), paths=list(staged))
            self._notify(set(staged))

    def subscribe_document(
        self,
        path: str,
        on_next: Callback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        subscription = Subscription(f"document:{path}", on_next, on_error)
        listener = _Listener(
            subscription=subscription,
            matches=lambda changed: path in changed,
            snapshot=lambda: self._read_document(path),
        )
        return self._attach(listener)

    def subscribe_query(
        self,
        query: Query,
        on_next: Callback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        subscription = Subscription(f"query:{query.collection}", on_next, on_error)
        listener = _Listener(
            subscription=subscription,
            matches=lambda changed: any(paths.parent(p) == query.collection for p in changed),
            snapshot=lambda: self._run_query(query),
        )
        return self._attach(listener)

    async def close(self) -> None:
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener.subscription.cancel()
        logger.info("document_store_closed", backend="memory", listeners=len(listeners))

    @property
    def listener_count(self) -> int:
        return sum(1 for listener in self._listeners if listener.subscription.active)

    def _attach(self, listener: _Listener) -> Subscription:
        self._listeners.append(listener)
        listener.subscription.bind_teardown(lambda: self._detach(listener))
        listener.subscription.push(listener.snapshot())
        return listener.subscription

    def _detach(self, listener: _Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, changed: Set[str]) -> None:
        for listener in list(self._listeners):
            if not listener.subscription.active:
                self._detach(listener)
                continue
            if listener.matches(changed):
                listener.subscription.push(listener.snapshot())

    def _read_document(self, path: str) -> DocumentSnapshot:
        document = self._documents.get(path)
        if document is None:
            return DocumentSnapshot(path=path)
        return DocumentSnapshot(path=path, data=copy.deepcopy(document), update_time=self._update_times[path])

    def _run_query(self, query: Query) -> List[DocumentSnapshot]:
        candidates: Iterable[str] = (
            path for path in self._documents if paths.parent(path) == query.collection
        )
        if query.order_by is not None:
            field = query.order_by
            ordered = [path for path in candidates if self._documents[path].get(field) is not None]
            ordered.sort(
                key=lambda p: (self._documents[p][field], self._sequence[p]),
                reverse=query.descending,
            )
        else:
            ordered = sorted(candidates, key=lambda p: self._sequence[p])

        if query.limit is not None:
            ordered = ordered[: query.limit]
        return [self._read_document(path) for path in ordered]

    def _resolve(self, base: Dict[str, Any], data: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        for key, value in data.items():
            base[key] = self._resolve_value(base.get(key), value, now)
        return base

    def _resolve_value(self, current: Any, value: Any, now: datetime) -> Any:
        if value is SERVER_TIMESTAMP:
            return now
        if isinstance(value, ArrayUnion):
            merged = list(current) if isinstance(current, list) else []
            merged.extend(v for v in value.values if v not in merged)
            return merged
        if isinstance(value, ArrayRemove):
            existing = list(current) if isinstance(current, list) else []
            return [v for v in existing if v not in value.values]
        if isinstance(value, Increment):
            start = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
            return start + value.amount
        if isinstance(value, dict):
            return self._resolve({}, value, now)
        if isinstance(value, list):
            return copy.deepcopy(value)
        return value
