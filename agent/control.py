from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import time
from typing import Any, Awaitable, Callable, Coroutine
from urllib.parse import urlencode

import aiohttp

from common.log import mask_url_secrets
from common.protocol import MAX_FRAME_SIZE, ProtocolError, decode_frame, encode_message


async def run_isolated(coro: Coroutine[Any, Any, Any], logger: logging.Logger, name: str) -> Any:
    """Await ``coro``; an unexpected exception is logged and ends only this task."""
    try:
        return await coro
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("task failed task=%s", name)
        return None


class ControlSession:
    """One live control connection: a single writer lock plus the tasks it owns."""

    def __init__(self, ws: aiohttp.ClientWebSocketResponse, role: str, deadline_sec: float = 45.0):
        self.logger = logging.getLogger("agent.control")
        self.ws = ws
        self.role = role
        self.deadline_sec = deadline_sec
        self.closed = False
        self._write_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._deadline = time.monotonic() + deadline_sec

    def refresh_deadline(self) -> None:
        self._deadline = time.monotonic() + self.deadline_sec

    def remaining(self) -> float:
        return self._deadline - time.monotonic()

    async def send_json(self, message: dict[str, Any]) -> None:
        async with self._write_lock:
            if self.closed or self.ws.closed:
                raise ConnectionError("control session closed")
            await self.ws.send_str(encode_message(message))

    async def ping(self) -> None:
        async with self._write_lock:
            if not self.ws.closed:
                await self.ws.ping(b"ping")

    async def pong(self, data: bytes = b"") -> None:
        async with self._write_lock:
            if not self.ws.closed:
                await self.ws.pong(data)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(run_isolated(coro, self.logger, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def task_count(self) -> int:
        return len(self._tasks)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        with contextlib.suppress(Exception):
            await self.ws.close()


class ControlSupervisor:
    def __init__(
        self,
        config: dict[str, Any],
        dispatch: Callable[[ControlSession, dict[str, Any]], Awaitable[None]],
        on_connected: Callable[[ControlSession], Awaitable[None]] | None = None,
    ):
        self.logger = logging.getLogger("agent.control")
        self.config = config
        self.dispatch = dispatch
        self.on_connected = on_connected
        self.role = str(config.get("role", "agent1"))
        self.family = str(config.get("ws_ip_family", "auto")).strip().lower()
        self.ping_sec = max(1.0, float(config.get("ws_ping_sec", 15)))
        self.deadline_sec = max(1.0, float(config.get("ws_deadline_sec", 45)))
        self.reconnect_delay = float(config.get("reconnect_delay", 3.0))
        self.dial_timeout = 10.0
        self.session: ControlSession | None = None
        self.running = True

    def build_url(self) -> str:
        query = urlencode(
            {
                "type": "1",
                "secret": self.config["secret"],
                "version": self.config.get("version", ""),
                "role": self.role,
            }
        )
        return f"{self.config.get('scheme', 'ws')}://{self.config['addr']}/system-info?{query}"

    def _families(self) -> list[socket.AddressFamily]:
        if self.family in {"4", "ipv4"}:
            return [socket.AF_INET]
        if self.family in {"6", "ipv6"}:
            return [socket.AF_INET6]
        return [socket.AF_INET, socket.AF_INET6]

    async def _dial(self, url: str) -> tuple[aiohttp.ClientSession, aiohttp.ClientWebSocketResponse]:
        last_exc: BaseException | None = None
        for family in self._families():
            http = aiohttp.ClientSession(connector=aiohttp.TCPConnector(family=family))
            try:
                ws = await asyncio.wait_for(
                    http.ws_connect(
                        url,
                        autoping=False,
                        max_msg_size=MAX_FRAME_SIZE,
                        ssl=False if url.startswith("wss://") else True,
                    ),
                    timeout=self.dial_timeout,
                )
                return http, ws
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                self.logger.debug("dial failed family=%s err=%s", family.name, exc)
                last_exc = exc
                await http.close()
        raise ConnectionError(f"control dial failed: {last_exc}") from last_exc

    async def send(self, message: dict[str, Any]) -> bool:
        """Send through the live session; returns False when there is none."""
        session = self.session
        if session is None or session.closed:
            self.logger.debug("no live control session, dropped type=%s", message.get("type"))
            return False
        await session.send_json(message)
        return True

    async def _ping_loop(self, session: ControlSession) -> None:
        while not session.closed:
            await asyncio.sleep(self.ping_sec)
            try:
                await session.ping()
            except (ConnectionError, RuntimeError) as exc:
                self.logger.debug("ping failed err=%s", exc)

    async def _read_loop(self, session: ControlSession) -> None:
        ws = session.ws
        while True:
            timeout = session.remaining()
            if timeout <= 0:
                raise ConnectionError("read deadline exceeded")
            try:
                msg = await ws.receive(timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise ConnectionError("read deadline exceeded") from exc
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                try:
                    command = decode_frame(msg.data)
                except ProtocolError as exc:
                    self.logger.warning("unknown_msg err=%s payload=%.256s", exc, msg.data)
                    continue
                self.logger.debug("message type=%s", command["type"])
                await self.dispatch(session, command)
            elif msg.type == aiohttp.WSMsgType.PING:
                session.refresh_deadline()
                await session.pong(msg.data)
            elif msg.type == aiohttp.WSMsgType.PONG:
                session.refresh_deadline()
            else:
                raise ConnectionError(f"control channel closed type={msg.type.name}")

    async def run_once(self) -> None:
        url = self.build_url()
        self.logger.info("connecting url=%s", mask_url_secrets(url))
        http, ws = await self._dial(url)
        session = ControlSession(ws, self.role, deadline_sec=self.deadline_sec)
        self.session = session
        self.logger.info("connected role=%s", self.role)
        try:
            session.spawn(self._ping_loop(session), "control-ping")
            if self.on_connected:
                await self.on_connected(session)
            await self._read_loop(session)
        finally:
            if self.session is session:
                self.session = None
            await session.close()
            await http.close()

    async def run(self) -> None:
        while self.running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.warning("control disconnected, reconnect in %ss err=%s", self.reconnect_delay, exc)
            if not self.running:
                break
            await asyncio.sleep(self.reconnect_delay)

    async def stop(self) -> None:
        self.running = False
        if self.session:
            await self.session.close()
