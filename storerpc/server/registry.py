import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional
from storerpc.core.config import DEFAULT_CALLER_TIMEOUT
from storerpc.core.interfaces import IMessageStore
from storerpc.core.models import Message, utc_now
from .storage.in_memory import InMemoryMessageStore

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 3600.0


def last_activity(message: Message) -> datetime:
    stamps = [
        stamp
        for stamp in (
            message.request_time,
            message.acknowledge_time,
            message.complete_time,
        )
        if stamp is not None
    ]
    return max(stamps)


class StoreRegistry:
    """Owns the shared store and reaps messages nobody will delete.

    A completed message whose caller already timed out is never deleted by
    the protocol, so records idle for longer than `retention` are removed.
    `retention` must exceed the longest caller timeout in use, or live
    requests are reaped and their callers see a delete-while-pending fault.
    """

    def __init__(
        self,
        store: Optional[IMessageStore] = None,
        retention: float = DEFAULT_RETENTION,
        caller_timeout: float = DEFAULT_CALLER_TIMEOUT,
    ):
        self._store = store or InMemoryMessageStore()
        self.retention = retention
        if retention <= caller_timeout:
            logger.warning(
                f"Reaper retention ({retention}s) does not exceed the caller timeout "
                f"({caller_timeout}s); pending requests may be reaped"
            )
        self._reaper_task: Optional[asyncio.Task] = None

    def get_store(self) -> IMessageStore:
        return self._store

    def start_reaper(self, interval: float = 60.0):
        if self._reaper_task is None:
            self._reaper_task = asyncio.create_task(self._reap_loop(interval))

    async def stop_reaper(self):
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            await asyncio.gather(self._reaper_task, return_exceptions=True)
            self._reaper_task = None

    async def _reap_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reap_expired()
            except Exception:
                logger.exception("Reaper pass failed")

    async def reap_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utc_now()) - timedelta(seconds=self.retention)
        reaped = 0
        for message in await self._store.find({}):
            if last_activity(message) >= cutoff:
                continue
            # Only if nobody moved it on since we looked.
            result = await self._store.delete_one(
                {"id": message.id, "status": message.status.value}
            )
            if result.deleted_count:
                logger.info(
                    f"Reaped {message.status.value} message {message.id} "
                    f"({message.channel}/{message.method})"
                )
                reaped += result.deleted_count
        return reaped
