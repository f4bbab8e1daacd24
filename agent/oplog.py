from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from common.protocol import MsgType, build_message


class OpLogSink:
    """Bounded queue of panel-facing operation events.

    Producers never block; when the queue is full the event is dropped and
    only the local log keeps it.
    """

    def __init__(self, maxsize: int = 128):
        self.logger = logging.getLogger("agent.oplog")
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def emit(self, step: str, message: str = "", data: Any = None) -> None:
        entry = build_message(
            MsgType.OP_LOG,
            step=step,
            message=message,
            data=data,
            timeMs=int(time.time() * 1000),
        )
        self.logger.info("oplog step=%s message=%s", step, message)
        try:
            self.queue.put_nowait(entry)
        except asyncio.QueueFull:
            self.dropped += 1
            self.logger.debug("oplog queue full, dropped step=%s total_dropped=%s", step, self.dropped)

    async def forward(self, send: Callable[[dict[str, Any]], Awaitable[None]]) -> None:
        """Drain events into ``send`` until cancelled or a send fails.

        The entry being sent when ``send`` raises is put back so the next
        session can deliver it.
        """
        while True:
            entry = await self.queue.get()
            try:
                await send(entry)
            except Exception:
                try:
                    self.queue.put_nowait(entry)
                except asyncio.QueueFull:
                    self.dropped += 1
                raise
