"""Single-consumer actor draining bus messages and deferred jobs in order."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ventsync.models.messages import BusMessage

_logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]


class MessagePump:
    """One queue, one consumer.

    Inbound :class:`BusMessage` objects and deferred jobs (timer flushes,
    connect/disconnect notifications) share a FIFO, so handlers never run
    concurrently with each other. A failing handler is logged and the pump
    keeps going.
    """

    def __init__(self, handler: Callable[[BusMessage], Awaitable[None]], *, name: str = "pump") -> None:
        self._handler = handler
        self.name = name
        self._queue: asyncio.Queue[BusMessage | Job | None] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def put_message(self, message: BusMessage) -> None:
        self._queue.put_nowait(message)

    def submit(self, job: Job) -> None:
        self._queue.put_nowait(job)

    def submit_call(self, func: Callable[[], None]) -> None:
        """Queue a plain callable so it runs in order with messages."""

        async def _job() -> None:
            func()

        self.submit(_job)

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=self.name)
        return self._task

    async def stop(self) -> None:
        """Let already queued items finish, then end the consumer."""
        task = self._task
        if task is None:
            return
        self._queue.put_nowait(None)
        await task
        self._task = None

    async def run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            await self._process(item)

    async def drain(self) -> None:
        """Process everything currently queued (used by tests and shutdown)."""
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is None:
                continue
            await self._process(item)

    async def _process(self, item: BusMessage | Job) -> None:
        try:
            if isinstance(item, BusMessage):
                await self._handler(item)
            else:
                await item()
        except Exception:
            _logger.exception("%s: handler failed", self.name)
