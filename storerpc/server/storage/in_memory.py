import asyncio
from typing import Any, Dict, List, Optional, Set
from storerpc.core.exceptions import StoreError
from storerpc.core.interfaces import IChangeStream, IMessageStore
from storerpc.core.models import (
    ChangeEvent,
    DeleteResult,
    InsertResult,
    Message,
    OperationType,
    UpdateResult,
)


def _matches(message: Message, filter: Dict[str, Any]) -> bool:
    return all(getattr(message, key, None) == value for key, value in filter.items())


class InMemoryChangeStream(IChangeStream):
    def __init__(self, store: "InMemoryMessageStore", channel: Optional[str]):
        self.channel = channel
        self._store = store
        self._queue: "asyncio.Queue[Optional[ChangeEvent]]" = asyncio.Queue()
        self._closed = False

    def publish(self, event: ChangeEvent):
        if self._closed:
            return
        if self.channel is not None and event.channel != self.channel:
            return
        self._queue.put_nowait(event)

    async def next(self) -> Optional[ChangeEvent]:
        if self._closed and self._queue.empty():
            return None
        event = await self._queue.get()
        if event is None:
            self._closed = True
        return event

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self._store._detach(self)
        self._queue.put_nowait(None)


class InMemoryMessageStore(IMessageStore):
    """Single-process store. One lock serializes every mutation and the
    publication of its change event, so all watchers see one global order."""

    def __init__(self):
        # message_id -> Message
        self._messages: Dict[str, Message] = {}
        self._streams: Set[InMemoryChangeStream] = set()
        self._lock = asyncio.Lock()

    def _publish(self, event: ChangeEvent):
        for stream in list(self._streams):
            stream.publish(event)

    def _detach(self, stream: InMemoryChangeStream):
        self._streams.discard(stream)

    def _first_match(self, filter: Dict[str, Any]) -> Optional[Message]:
        message_id = filter.get("id")
        if message_id is not None:
            message = self._messages.get(message_id)
            if message is not None and _matches(message, filter):
                return message
            return None
        for message in self._messages.values():
            if _matches(message, filter):
                return message
        return None

    def _apply(self, message: Message, update: Dict[str, Any]) -> Message:
        if "id" in update and update["id"] != message.id:
            raise StoreError("The id of a message cannot be updated")
        updated = Message.model_validate({**message.model_dump(), **update})
        self._messages[message.id] = updated
        return updated

    def _publish_update(self, updated: Message, update: Dict[str, Any]):
        self._publish(
            ChangeEvent(
                operation_type=OperationType.UPDATE,
                document_id=updated.id,
                channel=updated.channel,
                updated_fields={key: getattr(updated, key) for key in update},
            )
        )

    async def insert_one(self, message: Message) -> InsertResult:
        async with self._lock:
            if message.id in self._messages:
                raise StoreError(f"Duplicate message id {message.id}")
            stored = message.model_copy(deep=True)
            self._messages[stored.id] = stored
            self._publish(
                ChangeEvent(
                    operation_type=OperationType.INSERT,
                    document_id=stored.id,
                    channel=stored.channel,
                    full_document=stored.model_copy(deep=True),
                )
            )
            return InsertResult(acknowledged=True, inserted_id=stored.id)

    async def find_one_and_update(
        self, filter: Dict[str, Any], update: Dict[str, Any]
    ) -> Optional[Message]:
        async with self._lock:
            message = self._first_match(filter)
            if message is None:
                return None
            updated = self._apply(message, update)
            self._publish_update(updated, update)
            return updated.model_copy(deep=True)

    async def update_one(
        self, filter: Dict[str, Any], update: Dict[str, Any]
    ) -> UpdateResult:
        async with self._lock:
            message = self._first_match(filter)
            if message is None:
                return UpdateResult(acknowledged=True)
            updated = self._apply(message, update)
            modified = int(updated != message)
            if modified:
                self._publish_update(updated, update)
            return UpdateResult(
                acknowledged=True, matched_count=1, modified_count=modified
            )

    async def delete_one(self, filter: Dict[str, Any]) -> DeleteResult:
        async with self._lock:
            message = self._first_match(filter)
            if message is None:
                return DeleteResult(acknowledged=True)
            del self._messages[message.id]
            self._publish(
                ChangeEvent(
                    operation_type=OperationType.DELETE,
                    document_id=message.id,
                    channel=message.channel,
                )
            )
            return DeleteResult(acknowledged=True, deleted_count=1)

    async def find_one(self, filter: Dict[str, Any]) -> Optional[Message]:
        async with self._lock:
            message = self._first_match(filter)
            return message.model_copy(deep=True) if message else None

    async def find(self, filter: Dict[str, Any]) -> List[Message]:
        async with self._lock:
            return [
                message.model_copy(deep=True)
                for message in self._messages.values()
                if _matches(message, filter)
            ]

    async def watch(self, channel: Optional[str] = None) -> IChangeStream:
        async with self._lock:
            stream = InMemoryChangeStream(self, channel)
            self._streams.add(stream)
            return stream

    async def close(self):
        for stream in list(self._streams):
            await stream.close()
