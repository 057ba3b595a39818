import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set
from storerpc.client.request import CorrelationTable
from storerpc.client.subscription import SubscriptionRegistry
from storerpc.core.exceptions import RemoteFunctionError, RPCSystemError
from storerpc.core.interfaces import IChangeStream, IMessageStore
from storerpc.core.models import (
    TERMINAL_STATUSES,
    ChangeEvent,
    Message,
    OperationType,
    Status,
    utc_now,
)
from storerpc.core.serialization import ISerializer

logger = logging.getLogger(__name__)

WITHDRAWN_ERROR = "Subscription withdrawn before the request could be executed."
SHUTDOWN_ERROR = "Connection closed."


class Dispatcher:
    """Drives the message lifecycle from one endpoint's change feed.

    Requested -> AcknowledgedAndLocked -> CompletedSuccess | CompletedError,
    after which the caller deletes the record. Claims on different records
    run as concurrent tasks; feed events are consumed in order.
    """

    def __init__(
        self,
        store: IMessageStore,
        channel: str,
        calls: CorrelationTable,
        subscriptions: SubscriptionRegistry,
        serializer: ISerializer,
        name: Optional[str] = None,
        on_feed_lost: Optional[Callable[[], None]] = None,
    ):
        self.store = store
        self.channel = channel
        self.calls = calls
        self.subscriptions = subscriptions
        self.serializer = serializer
        self.name = name
        self._on_feed_lost = on_feed_lost
        self._stream: Optional[IChangeStream] = None
        self._feed_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._feed_task is not None and not self._feed_task.done()

    async def start(self):
        if self._feed_task is not None:
            raise RPCSystemError("Dispatcher already started.")
        self._stream = await self.store.watch(self.channel)
        self._feed_task = asyncio.create_task(self._consume(self._stream))

    async def stop(self, grace: float = 0.0):
        """Stops the feed, then gives in-flight dispatches `grace` seconds.

        Executions still running after that are cancelled; each one writes
        its claimed record back as CompletedError before exiting.
        """
        self._stopping = True
        if self._stream is not None:
            await self._stream.close()
        if self._feed_task is not None:
            self._feed_task.cancel()
            await asyncio.gather(self._feed_task, return_exceptions=True)
        tasks = list(self._tasks)
        if tasks and grace > 0:
            _, pending = await asyncio.wait(tasks, timeout=grace)
            tasks = list(pending)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._stream = None
        self._feed_task = None

    async def _consume(self, stream: IChangeStream):
        try:
            async for event in stream:
                self.handle(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"[{self.name}] Change feed failed")
        if not self._stopping:
            logger.warning(f"[{self.name}] Change feed ended unexpectedly")
            if self._on_feed_lost is not None:
                self._on_feed_lost()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.name}] Dispatch task failed: {exc}", exc_info=exc)

    def handle(self, event: ChangeEvent):
        if event.operation_type == OperationType.INSERT:
            self._on_insert(event)
        elif event.operation_type == OperationType.UPDATE:
            self._on_update(event)
        elif event.operation_type == OperationType.DELETE:
            self._on_delete(event)

    def _on_insert(self, event: ChangeEvent):
        message = event.full_document
        if message is None:
            return
        if message.status != Status.REQUESTED:
            logger.warning(
                f"[{self.name}] Ignoring insert of {message.id} with status {message.status}"
            )
            return
        # Nobody here can serve it, so don't contend for the claim.
        if message.method not in self.subscriptions:
            return
        self._spawn(self.execute(message))

    async def claim(self, message_id: str) -> Optional[Message]:
        """Requested -> AcknowledgedAndLocked. Returns None if the claim was lost."""
        logger.debug(f"[{self.name}] acquiring lock on {message_id}")
        locked = await self.store.find_one_and_update(
            {"id": message_id, "status": Status.REQUESTED.value},
            {
                "status": Status.ACKNOWLEDGED_AND_LOCKED.value,
                "acknowledge_time": utc_now(),
                "acknowledged_by": self.name,
            },
        )
        if locked is None:
            logger.debug(f"[{self.name}] lost the claim on {message_id}")
            return None
        if locked.status != Status.ACKNOWLEDGED_AND_LOCKED:
            raise RPCSystemError(
                f"Claimed message {message_id} has invalid status {locked.status}"
            )
        logger.debug(f"[{self.name}] acquired lock on {message_id}")
        return locked

    async def execute(self, message: Message):
        locked = await self.claim(message.id)
        if locked is None:
            return

        subscription = self.subscriptions.get(locked.method)
        if subscription is None:
            logger.warning(
                f"[{self.name}] {locked.method!r} was unsubscribed after claiming {locked.id}"
            )
            await self._write_back(locked.id, self._error_fields(WITHDRAWN_ERROR))
            return

        try:
            args = self.serializer.loads(locked.args)
            result = await subscription.invoke(args)
            fields = {
                "result": self.serializer.dumps(result),
                "status": Status.COMPLETED_SUCCESS.value,
                "complete_time": utc_now(),
            }
        except asyncio.CancelledError:
            # Shutting down: complete the claim so the caller is released.
            logger.warning(
                f"[{self.name}] Abandoning {locked.id} for {locked.method!r} on shutdown"
            )
            await self._write_back(locked.id, self._error_fields(SHUTDOWN_ERROR))
            raise
        except Exception as e:
            logger.debug(f"[{self.name}] {locked.method!r} failed: {e!r}")
            fields = self._error_fields(str(e))

        await self._write_back(locked.id, fields)

    def _error_fields(self, error: str) -> Dict[str, Any]:
        return {
            "error": self.serializer.dumps(error),
            "status": Status.COMPLETED_ERROR.value,
            "complete_time": utc_now(),
        }

    async def _write_back(self, message_id: str, fields: Dict[str, Any]):
        logger.debug(f"[{self.name}] updating {message_id} to {fields['status']}")
        result = await self.store.update_one({"id": message_id}, fields)
        if not (
            result.acknowledged
            and result.matched_count == 1
            and result.modified_count == 1
        ):
            raise RPCSystemError(
                f"Update of message {message_id} failed: acknowledged={result.acknowledged} "
                f"matched={result.matched_count} modified={result.modified_count}"
            )
        logger.debug(f"[{self.name}] updated {message_id} to {fields['status']}")

    def _on_update(self, event: ChangeEvent):
        fields = event.updated_fields or {}
        status = fields.get("status")
        if status not in TERMINAL_STATUSES:
            return
        call = self.calls.get(event.document_id)
        if call is None:
            return

        logger.debug(f"[{self.name}] resolving call {event.document_id}")
        if status == Status.COMPLETED_SUCCESS:
            try:
                value = self.serializer.loads(fields.get("result"))
            except Exception as e:
                call.reject(RPCSystemError(f"Could not decode result: {e}"))
            else:
                call.resolve(value)
        else:
            try:
                error = self.serializer.loads(fields.get("error"))
            except Exception as e:
                error = f"Could not decode error: {e}"
            call.reject(RemoteFunctionError(error))

        self._spawn(self._delete(event.document_id))

    async def _delete(self, message_id: str):
        logger.debug(f"[{self.name}] deleting {message_id}")
        await self.store.delete_one({"id": message_id})
        logger.debug(f"[{self.name}] deleted {message_id}")

    def _on_delete(self, event: ChangeEvent):
        call = self.calls.get(event.document_id)
        if call is None:
            return
        logger.error(
            f"[{self.name}] Message {event.document_id} was deleted before completion"
        )
        call.reject(
            RPCSystemError(
                f"Request {event.document_id} deleted before completion."
            )
        )
