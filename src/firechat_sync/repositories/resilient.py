"""Timeouts and bounded retries at the boundary to the remote store."""

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..domain.errors import RemoteFailure
from ..sync.live import Callback, ErrorCallback, Subscription
from .base import DocumentSnapshot, DocumentStore, Query, Write

logger = structlog.get_logger()

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    return isinstance(error, RemoteFailure) and error.transient


def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "remote_call_retry",
            operation=operation,
            attempt=retry_state.attempt_number,
            error=str(error),
        )

    return log


class ResilientStore(DocumentStore):
    """Wraps another store with per-call timeouts and retry on transient failures.

    Writes are only retried when they fail with a transient ``RemoteFailure``;
    callers keep writes idempotent by allocating document ids before writing.
    """

    def __init__(
        self,
        inner: DocumentStore,
        timeout: float = 10.0,
        attempts: int = 3,
        backoff_min: float = 0.1,
        backoff_max: float = 2.0,
    ) -> None:
        self.inner = inner
        self.timeout = timeout
        self.attempts = attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max

    async def _call(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            retry=retry_if_exception(is_transient),
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.backoff_min, min=self.backoff_min, max=self.backoff_max),
            before_sleep=_log_retry(operation),
            reraise=True,
        )
        result: Optional[T] = None
        async for attempt in retrying:
            with attempt:
                result = await self._with_timeout(operation, factory)
        return result  # type: ignore[return-value]

    async def _with_timeout(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(factory(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("remote_call_timeout", operation=operation, timeout=self.timeout)
            raise RemoteFailure(f"{operation} timed out after {self.timeout}s", transient=True)

    async def get(self, path: str) -> DocumentSnapshot:
        return await self._call("get", lambda: self.inner.get(path))

    async def query(self, query: Query) -> List[DocumentSnapshot]:
        return await self._call("query", lambda: self.inner.query(query))

    async def commit(self, writes: Sequence[Write]) -> None:
        await self._call("commit", lambda: self.inner.commit(writes))

    def subscribe_document(
        self,
        path: str,
        on_next: Callback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        return self.inner.subscribe_document(path, on_next, on_error)

    def subscribe_query(
        self,
        query: Query,
        on_next: Callback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        return self.inner.subscribe_query(query, on_next, on_error)

    def new_id(self) -> str:
        return self.inner.new_id()

    async def close(self) -> None:
        await self.inner.close()
