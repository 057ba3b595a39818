import asyncio
import logging
from typing import Any, Optional
from storerpc.core.interfaces import IMessageStore
from storerpc.core.models import Message
from storerpc.core.protocol import Command, read_message, pack_message

logger = logging.getLogger(__name__)


def _dump(message: Optional[Message]) -> Optional[dict]:
    return message.model_dump(mode="json") if message is not None else None


class TcpFrontend:
    def __init__(self, store: IMessageStore, host: str = "0.0.0.0", port: int = 9100):
        self.store = store
        self.host = host
        self.port = port
        self._server: Optional[asyncio.Server] = None

    async def handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ):
        addr = writer.get_extra_info("peername")
        logger.debug(f"New connection from {addr}")

        try:
            while True:
                try:
                    version, command, body = await read_message(reader)
                except asyncio.IncompleteReadError:
                    break

                if command == Command.WATCH:
                    # The connection is a change stream from here on.
                    await self.stream_changes(body, reader, writer)
                    break

                response_body = await self.process_command(command, body)
                writer.write(pack_message(command, response_body))
                await writer.drain()
        except (ConnectionResetError, BrokenPipeError):
            logger.debug(f"Connection from {addr} dropped")
        except Exception as e:
            logger.error(f"Error handling client {addr}: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass

    async def process_command(self, command: int, body: Any) -> dict:
        try:
            if command == Command.INSERT_ONE:
                message = Message.model_validate(body["message"])
                result = await self.store.insert_one(message)
                return result.model_dump(mode="json")

            elif command == Command.FIND_ONE_AND_UPDATE:
                message = await self.store.find_one_and_update(
                    body["filter"], body["update"]
                )
                return {"message": _dump(message)}

            elif command == Command.UPDATE_ONE:
                result = await self.store.update_one(body["filter"], body["update"])
                return result.model_dump(mode="json")

            elif command == Command.DELETE_ONE:
                result = await self.store.delete_one(body["filter"])
                return result.model_dump(mode="json")

            elif command == Command.FIND_ONE:
                message = await self.store.find_one(body["filter"])
                return {"message": _dump(message)}

            elif command == Command.FIND:
                messages = await self.store.find(body.get("filter") or {})
                return {"messages": [_dump(message) for message in messages]}

            return {"error": f"Unknown command: {command}"}
        except Exception as e:
            logger.exception("Error processing command")
            return {"error": str(e)}

    async def stream_changes(
        self, body: Any, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ):
        channel = body.get("channel") if isinstance(body, dict) else None
        stream = await self.store.watch(channel)
        # Registered before the ack, so the watcher misses nothing after it.
        writer.write(pack_message(Command.WATCH, {"status": "watching"}))
        await writer.drain()
        logger.debug(f"Streaming changes for channel {channel!r}")

        # Watchers never send after WATCH; EOF means they went away.
        eof = asyncio.ensure_future(reader.read())
        try:
            while True:
                next_event = asyncio.ensure_future(stream.next())
                done, _ = await asyncio.wait(
                    {next_event, eof}, return_when=asyncio.FIRST_COMPLETED
                )
                if next_event not in done:
                    next_event.cancel()
                    break
                event = next_event.result()
                if event is None:
                    break
                writer.write(pack_message(Command.CHANGE, event.model_dump(mode="json")))
                await writer.drain()
        finally:
            eof.cancel()
            await stream.close()

    async def listen(self) -> int:
        """Starts accepting connections and returns the bound port."""
        self._server = await asyncio.start_server(
            self.handle_client, self.host, self.port
        )
        addr = self._server.sockets[0].getsockname()
        self.port = addr[1]
        logger.info(f"TCP Frontend serving on {addr}")
        return self.port

    async def start(self):
        if self._server is None:
            await self.listen()
        async with self._server:
            await self._server.serve_forever()

    async def stop(self):
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
