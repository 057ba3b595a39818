from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from .models import ChangeEvent, DeleteResult, InsertResult, Message, UpdateResult


class IChangeStream(ABC):
    """Ordered feed of change events on the message collection."""

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.next()
        if event is None:
            raise StopAsyncIteration
        return event

    @abstractmethod
    async def next(self) -> Optional[ChangeEvent]:
        """Waits for the next event. Returns None once the stream is closed."""
        pass

    @abstractmethod
    async def close(self):
        pass


class IMessageStore(ABC):
    @abstractmethod
    async def insert_one(self, message: Message) -> InsertResult:
        """Durably creates a record with the caller-supplied id."""
        pass

    @abstractmethod
    async def find_one_and_update(
        self, filter: Dict[str, Any], update: Dict[str, Any]
    ) -> Optional[Message]:
        """Atomically applies `update` only if every field in `filter` matches.

        Returns the document after the update, or None if the predicate failed.
        """
        pass

    @abstractmethod
    async def update_one(
        self, filter: Dict[str, Any], update: Dict[str, Any]
    ) -> UpdateResult:
        pass

    @abstractmethod
    async def delete_one(self, filter: Dict[str, Any]) -> DeleteResult:
        pass

    @abstractmethod
    async def find_one(self, filter: Dict[str, Any]) -> Optional[Message]:
        pass

    @abstractmethod
    async def find(self, filter: Dict[str, Any]) -> List[Message]:
        pass

    @abstractmethod
    async def watch(self, channel: Optional[str] = None) -> IChangeStream:
        """Opens a change feed. Events published after this returns are delivered."""
        pass

    @abstractmethod
    async def close(self):
        pass
