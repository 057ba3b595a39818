import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel
from storerpc.core.exceptions import StoreError
from storerpc.core.interfaces import IChangeStream, IMessageStore
from storerpc.core.models import (
    ChangeEvent,
    DeleteResult,
    InsertResult,
    Message,
    UpdateResult,
)
from storerpc.core.protocol import Command, pack_message, read_message

logger = logging.getLogger(__name__)

# Safe to resend after a dropped connection.
IDEMPOTENT_COMMANDS = (Command.DELETE_ONE, Command.FIND_ONE, Command.FIND)

CONNECTION_ERRORS = (
    asyncio.IncompleteReadError,
    ConnectionResetError,
    BrokenPipeError,
    ConnectionError,
)


def encode(value: Any) -> Any:
    """Converts models, enums and datetimes into msgpack-friendly values."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: encode(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode(item) for item in value]
    return value


class TcpChangeStream(IChangeStream):
    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer
        self._closed = False

    async def next(self) -> Optional[ChangeEvent]:
        if self._closed:
            return None
        try:
            _, command, body = await read_message(self._reader)
        except CONNECTION_ERRORS:
            if not self._closed:
                logger.warning("Change stream connection lost")
            self._closed = True
            return None
        if command != Command.CHANGE:
            raise StoreError(f"Unexpected frame on change stream: {command}")
        return ChangeEvent.model_validate(body)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except CONNECTION_ERRORS:
            pass


class TcpMessageStore(IMessageStore):
    """Message store served by a remote TcpFrontend."""

    def __init__(self, host: str, port: int, timeout: float = 60.0):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._lock = asyncio.Lock()

    async def _open(self):
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), self.timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise StoreError(
                f"Failed to connect to store at {self.host}:{self.port}: {e}"
            ) from e

    async def _ensure_connected(self):
        if self._writer is None:
            self._reader, self._writer = await self._open()

    def _drop_connection(self):
        if self._writer is not None:
            self._writer.close()
        self._writer = None
        self._reader = None

    async def _roundtrip(self, command: Command, payload: Dict[str, Any]) -> Any:
        await self._ensure_connected()
        self._writer.write(pack_message(command, encode(payload)))
        await self._writer.drain()
        _, _, body = await asyncio.wait_for(read_message(self._reader), self.timeout)
        return body

    async def request(self, command: Command, payload: Dict[str, Any]) -> Any:
        async with self._lock:
            try:
                body = await self._roundtrip(command, payload)
            except CONNECTION_ERRORS as e:
                self._drop_connection()
                if command not in IDEMPOTENT_COMMANDS:
                    raise StoreError(f"Connection lost during {command.name}: {e}") from e
                # Try to reconnect once
                try:
                    body = await self._roundtrip(command, payload)
                except CONNECTION_ERRORS as retry_error:
                    self._drop_connection()
                    raise StoreError(
                        f"Failed to reconnect to store: {retry_error}"
                    ) from retry_error
            except asyncio.TimeoutError as e:
                self._drop_connection()
                raise StoreError(f"{command.name} timed out") from e

        if isinstance(body, dict) and "error" in body:
            raise StoreError(body["error"])
        return body

    async def insert_one(self, message: Message) -> InsertResult:
        body = await self.request(Command.INSERT_ONE, {"message": message})
        return InsertResult.model_validate(body)

    async def find_one_and_update(
        self, filter: Dict[str, Any], update: Dict[str, Any]
    ) -> Optional[Message]:
        body = await self.request(
            Command.FIND_ONE_AND_UPDATE, {"filter": filter, "update": update}
        )
        document = body.get("message")
        return Message.model_validate(document) if document else None

    async def update_one(
        self, filter: Dict[str, Any], update: Dict[str, Any]
    ) -> UpdateResult:
        body = await self.request(
            Command.UPDATE_ONE, {"filter": filter, "update": update}
        )
        return UpdateResult.model_validate(body)

    async def delete_one(self, filter: Dict[str, Any]) -> DeleteResult:
        body = await self.request(Command.DELETE_ONE, {"filter": filter})
        return DeleteResult.model_validate(body)

    async def find_one(self, filter: Dict[str, Any]) -> Optional[Message]:
        body = await self.request(Command.FIND_ONE, {"filter": filter})
        document = body.get("message")
        return Message.model_validate(document) if document else None

    async def find(self, filter: Dict[str, Any]) -> List[Message]:
        body = await self.request(Command.FIND, {"filter": filter})
        return [Message.model_validate(document) for document in body["messages"]]

    async def watch(self, channel: Optional[str] = None) -> IChangeStream:
        reader, writer = await self._open()
        try:
            writer.write(pack_message(Command.WATCH, {"channel": channel}))
            await writer.drain()
            _, command, body = await asyncio.wait_for(read_message(reader), self.timeout)
        except BaseException:
            writer.close()
            raise
        if command != Command.WATCH or body.get("status") != "watching":
            writer.close()
            raise StoreError(f"Watch rejected: {body}")
        return TcpChangeStream(reader, writer)

    async def close(self):
        async with self._lock:
            if self._writer is not None:
                self._writer.close()
                try:
                    await self._writer.wait_closed()
                except CONNECTION_ERRORS:
                    pass
            self._writer = None
            self._reader = None
