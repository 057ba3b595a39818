import asyncio
import logging
from typing import Any, Dict, Iterator, Optional
from storerpc.core.exceptions import RPCTimeoutError

logger = logging.getLogger(__name__)


class PendingCall:
    """A call awaiting the terminal status of its message.

    Resolution, rejection and timeout may race; only the first one settles
    the future and every path removes the entry from its table.
    """

    def __init__(self, message_id: str, timeout: float, table: "CorrelationTable"):
        self.message_id = message_id
        self.timeout = timeout
        self._table = table
        loop = asyncio.get_running_loop()
        self.future: "asyncio.Future[Any]" = loop.create_future()
        self._timer: Optional[asyncio.TimerHandle] = loop.call_later(
            timeout, self._on_timeout
        )

    @property
    def done(self) -> bool:
        return self.future.done()

    def _on_timeout(self):
        self._timer = None
        logger.debug(f"Call {self.message_id} timed out after {self.timeout}s")
        self.reject(RPCTimeoutError("Request timeout."))

    def _clear(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._table._discard(self)

    def resolve(self, result: Any) -> bool:
        settled = not self.future.done()
        if settled:
            self.future.set_result(result)
        self._clear()
        return settled

    def reject(self, error: BaseException) -> bool:
        settled = not self.future.done()
        if settled:
            self.future.set_exception(error)
        self._clear()
        return settled

    def discard(self):
        """Drops the call without settling it, for a request never stored."""
        if not self.future.done():
            self.future.cancel()
        self._clear()

    def __await__(self):
        return self.future.__await__()


class CorrelationTable:
    """Message id -> PendingCall, owned by one endpoint."""

    def __init__(self):
        self._calls: Dict[str, PendingCall] = {}

    def register(self, message_id: str, timeout: float) -> PendingCall:
        if message_id in self._calls:
            raise KeyError(f"A call is already pending for message {message_id}")
        call = PendingCall(message_id, timeout, self)
        self._calls[message_id] = call
        return call

    def get(self, message_id: str) -> Optional[PendingCall]:
        return self._calls.get(message_id)

    def _discard(self, call: PendingCall):
        if self._calls.get(call.message_id) is call:
            del self._calls[call.message_id]

    def reject_all(self, error: BaseException) -> int:
        calls = list(self._calls.values())
        for call in calls:
            call.reject(error)
        return len(calls)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._calls

    def __len__(self) -> int:
        return len(self._calls)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._calls))
