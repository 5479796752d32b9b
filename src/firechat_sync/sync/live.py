"""Live subscriptions with ordered, cancelable snapshot delivery.

Every subscription owns a small delivery queue drained by a single task, so
deliveries reach the callback in the order the store produced them even when
the callback itself is a coroutine. Cancelling a subscription discards
anything still queued and detaches it from the backend.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

import structlog

logger = structlog.get_logger()

Callback = Callable[[Any], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[Exception], Union[None, Awaitable[None]]]
Teardown = Callable[[], None]


async def invoke(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class Subscription:
    """Handle for one live query or document listener."""

    def __init__(
        self,
        name: str,
        on_next: Callback,
        on_error: Optional[ErrorCallback] = None,
        teardown: Optional[Teardown] = None,
    ) -> None:
        self.name = name
        self.delivered = 0
        self._on_next = on_next
        self._on_error = on_error
        self._teardown = teardown
        self._queue: "asyncio.Queue[Tuple[bool, Any]]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def bind_teardown(self, teardown: Teardown) -> None:
        """Attach the backend detach hook once the listener is registered."""
        if not self._active:
            teardown()
            return
        self._teardown = teardown

    def push(self, snapshot: Any) -> None:
        """Queue a snapshot for delivery."""
        if not self._active:
            return
        self._queue.put_nowait((False, snapshot))
        self._ensure_pump()

    def fail(self, error: Exception) -> None:
        """Queue an error for delivery to the error callback."""
        if not self._active:
            return
        self._queue.put_nowait((True, error))
        self._ensure_pump()

    async def drained(self) -> None:
        """Wait until every queued delivery has been handled."""
        await self._queue.join()

    def cancel(self) -> None:
        """Stop delivery and detach from the backend. Safe to call twice."""
        if not self._active:
            return
        self._active = False

        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

        if self._task is not None and not self._task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if self._task is not current:
                self._task.cancel()

        if self._teardown is not None:
            try:
                self._teardown()
            except Exception as e:
                logger.error("subscription_teardown_error", subscription=self.name, error=str(e))
            self._teardown = None

        logger.debug("subscription_cancelled", subscription=self.name, delivered=self.delivered)

    def _ensure_pump(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._pump())

    async def _pump(self) -> None:
        while self._active and not self._queue.empty():
            is_error, value = self._queue.get_nowait()
            try:
                if is_error:
                    await self._dispatch_error(value)
                else:
                    await invoke(self._on_next, value)
                    self.delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("subscription_callback_error", subscription=self.name, error=str(e))
                await self._dispatch_error(e)
            finally:
                self._queue.task_done()

    async def _dispatch_error(self, error: Exception) -> None:
        if self._on_error is None:
            logger.warning("subscription_error", subscription=self.name, error=str(error))
            return
        try:
            await invoke(self._on_error, error)
        except Exception as e:
            logger.error("subscription_error_handler_failed", subscription=self.name, error=str(e))


class SubscriptionScope:
    """Owns the subscriptions of one view or session and cancels them together."""

    def __init__(self, name: str = "scope") -> None:
        self.name = name
        self._subscriptions: List[Subscription] = []
        self._closed = False

    def track(self, subscription: Subscription) -> Subscription:
        if self._closed:
            subscription.cancel()
            return subscription
        self._subscriptions = [s for s in self._subscriptions if s.active]
        self._subscriptions.append(subscription)
        return subscription

    @property
    def active_count(self) -> int:
        return sum(1 for s in self._subscriptions if s.active)

    def cancel_all(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.cancel()
        if subscriptions:
            logger.info("subscriptions_cancelled", scope=self.name, count=len(subscriptions))

    def close(self) -> None:
        self.cancel_all()
        self._closed = True

    async def __aenter__(self) -> "SubscriptionScope":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()
