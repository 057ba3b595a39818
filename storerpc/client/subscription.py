import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union
from storerpc.core.exceptions import RPCSystemError, RPCTimeoutError

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[Any, Awaitable[Any]]]


class Subscription:
    def __init__(
        self,
        registry: "SubscriptionRegistry",
        method: str,
        timeout: float,
        handler: Handler,
    ):
        self.method = method
        self.timeout = timeout
        self.handler = handler
        self._registry = registry

    @property
    def active(self) -> bool:
        return self._registry.get(self.method) is self

    async def _run(self, args: Any) -> Any:
        result = self.handler(args)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def invoke(self, args: Any) -> Any:
        """Runs the handler against its timeout; the first to settle wins.

        On timeout the handler is left running in the background and its
        outcome is discarded.
        """
        task = asyncio.ensure_future(self._run(args))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.timeout)
        except asyncio.CancelledError:
            self._registry._detach_late(task)
            raise
        if task in done:
            return task.result()

        logger.warning(
            f"Handler for {self.method!r} did not finish within {self.timeout}s"
        )
        self._registry._detach_late(task)
        raise RPCTimeoutError("Callee timeout.")

    def close(self):
        self._registry._discard(self)


class SubscriptionRegistry:
    """Method name -> Subscription, owned by one endpoint."""

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}
        # Handlers that outlived their timeout, kept referenced until done.
        self._late: Set["asyncio.Future[Any]"] = set()

    def add(self, method: str, timeout: float, handler: Handler) -> Subscription:
        if method in self._subscriptions:
            raise RPCSystemError(f"Already subscribed to {method!r}.")
        subscription = Subscription(self, method, timeout, handler)
        self._subscriptions[method] = subscription
        return subscription

    def get(self, method: str) -> Optional[Subscription]:
        return self._subscriptions.get(method)

    def _discard(self, subscription: Subscription):
        if self._subscriptions.get(subscription.method) is subscription:
            del self._subscriptions[subscription.method]

    def _detach_late(self, task: "asyncio.Future[Any]"):
        self._late.add(task)
        task.add_done_callback(self._late_done)

    def _late_done(self, task: "asyncio.Future[Any]"):
        self._late.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Timed out handler later failed: {task.exception()!r}")

    def clear(self):
        self._subscriptions.clear()

    def __contains__(self, method: str) -> bool:
        return method in self._subscriptions

    def __len__(self) -> int:
        return len(self._subscriptions)
