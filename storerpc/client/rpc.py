import logging
import uuid
from typing import Any, Optional
from storerpc.client.dispatcher import Dispatcher
from storerpc.client.request import CorrelationTable
from storerpc.client.subscription import Handler, Subscription, SubscriptionRegistry
from storerpc.client.transport import TcpMessageStore
from storerpc.core.config import RPCConfig, parse_store_url
from storerpc.core.exceptions import RPCConnectionError, RPCSystemError
from storerpc.core.interfaces import IMessageStore
from storerpc.core.models import Message
from storerpc.core.serialization import ISerializer, JsonSerializer

logger = logging.getLogger(__name__)


class RPCEndpoint:
    """Caller and callee on one channel of a shared message store.

    `call` writes a Requested message and waits for its terminal status;
    `subscribe` installs a handler that competes for matching requests.
    """

    def __init__(
        self,
        channel: Optional[str] = None,
        config: Optional[RPCConfig] = None,
        serializer: Optional[ISerializer] = None,
    ):
        self.config = (config or RPCConfig()).model_copy()
        if channel is not None:
            self.config.channel = channel
        self.serializer = serializer or JsonSerializer()
        self._calls = CorrelationTable()
        self._subscriptions = SubscriptionRegistry()
        self._store: Optional[IMessageStore] = None
        self._owns_store = False
        self._dispatcher: Optional[Dispatcher] = None
        self._feed_lost = False

    @property
    def channel(self) -> str:
        return self.config.channel

    @property
    def name(self) -> Optional[str]:
        return self.config.name

    @property
    def pending_calls(self) -> int:
        return len(self._calls)

    def set_name(self, name: str):
        self.config.name = name
        if self._dispatcher is not None:
            self._dispatcher.name = name

    def set_caller_timeout(self, timeout: float):
        self.config = self.config.model_validate(
            {**self.config.model_dump(), "caller_timeout": timeout}
        )

    def set_callee_timeout(self, timeout: float):
        self.config = self.config.model_validate(
            {**self.config.model_dump(), "callee_timeout": timeout}
        )

    async def connect(self, store_url: Optional[str] = None):
        """Connects to a store server at host:port and starts the feed."""
        host, port = parse_store_url(store_url or self.config.store_url)
        store = TcpMessageStore(host, port)
        try:
            await self.attach(store)
        except BaseException:
            await store.close()
            raise
        self._owns_store = True

    async def attach(self, store: IMessageStore):
        """Starts the feed on a store owned by someone else."""
        if self._store is not None:
            raise RPCSystemError("RPC endpoint already initialized.")
        dispatcher = Dispatcher(
            store,
            self.channel,
            self._calls,
            self._subscriptions,
            self.serializer,
            name=self.name,
            on_feed_lost=self._on_feed_lost,
        )
        await dispatcher.start()
        self._store = store
        self._dispatcher = dispatcher
        logger.debug(f"[{self.name}] attached to channel {self.channel!r}")

    def _get_store(self) -> IMessageStore:
        if self._store is None:
            raise RPCConnectionError("RPC endpoint not initialized.")
        if self._feed_lost:
            raise RPCConnectionError("Change feed closed.")
        return self._store

    def _on_feed_lost(self):
        # Nothing would report completions any more; close() resets this.
        self._feed_lost = True
        self._calls.reject_all(RPCConnectionError("Change feed closed."))

    async def call(self, method: str, args: Any = None) -> Any:
        store = self._get_store()
        message = Message(
            id=uuid.uuid4().hex,
            channel=self.channel,
            method=method,
            args=self.serializer.dumps(args),
        )

        # Registered before the insert; the completion may arrive first.
        call = self._calls.register(message.id, self.config.caller_timeout)

        logger.debug(f"[{self.name}] inserting {message.id} for {method!r}")
        try:
            result = await store.insert_one(message)
        except Exception as e:
            call.discard()
            raise RPCSystemError(f"Insert failed: {e}") from e
        if not result.acknowledged or result.inserted_id != message.id:
            call.discard()
            raise RPCSystemError("Insert failed.")
        logger.debug(f"[{self.name}] inserted {message.id}")

        return await call

    def subscribe(self, method: str, handler: Handler) -> Subscription:
        return self._subscriptions.add(method, self.config.callee_timeout, handler)

    async def close(self, grace: float = 0.0):
        """Tears down the feed and store, then rejects every pending call.

        Handlers still running get `grace` seconds to finish; the rest have
        their claimed requests completed with a "Connection closed." error.
        """
        dispatcher, self._dispatcher = self._dispatcher, None
        store, self._store = self._store, None
        if dispatcher is not None:
            await dispatcher.stop(grace)
        if store is not None and self._owns_store:
            await store.close()
        self._owns_store = False
        self._feed_lost = False
        self._subscriptions.clear()

        rejected = self._calls.reject_all(RPCConnectionError("Connection closed."))
        if rejected:
            logger.debug(f"[{self.name}] rejected {rejected} pending calls on close")

    async def __aenter__(self) -> "RPCEndpoint":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
