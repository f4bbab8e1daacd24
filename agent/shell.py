from __future__ import annotations

import asyncio
import codecs
import contextlib
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
import time
from typing import Any, Awaitable, Callable

from common.protocol import MsgType, build_message

DEFAULT_ROWS = 24
DEFAULT_COLS = 80
HISTORY_LIMIT = 256 * 1024


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the pty slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class ShellSession:
    def __init__(self, session_id: str, proc: asyncio.subprocess.Process, master_fd: int):
        self.id = session_id
        self.proc = proc
        self.master_fd = master_fd
        self.transport: asyncio.ReadTransport | None = None
        self.reader: asyncio.StreamReader | None = None
        self.history = bytearray()
        self.closed = False
        self.stopped = False

    def append(self, chunk: bytes, limit: int) -> None:
        self.history += chunk
        overflow = len(self.history) - limit
        if overflow > 0:
            del self.history[:overflow]


class ShellRegistry:
    """At most one interactive login shell per process.

    One lock covers the active-slot swap and the closed check so concurrent
    starts cannot create two live ptys.
    """

    def __init__(
        self,
        send: Callable[[dict[str, Any]], Awaitable[Any]],
        shell: tuple[str, ...] = ("/bin/bash", "--login"),
        history_limit: int = HISTORY_LIMIT,
        grace: float = 0.3,
    ):
        self.logger = logging.getLogger("agent.shell")
        self.send = send
        self.shell = shell
        self.history_limit = history_limit
        self.grace = grace
        self._lock = asyncio.Lock()
        self._active: ShellSession | None = None
        self._pumps: set[asyncio.Task[Any]] = set()

    @property
    def active_id(self) -> str | None:
        session = self._active
        if session is None or session.closed:
            return None
        return session.id

    def history(self) -> bytes:
        session = self._active
        return bytes(session.history) if session else b""

    async def _emit(self, msg_type: MsgType, session_id: str, **fields: Any) -> None:
        try:
            await self.send(build_message(msg_type, sessionId=session_id, **fields))
        except ConnectionError as exc:
            self.logger.debug("shell event not delivered type=%s err=%s", msg_type.value, exc)

    async def start(self, session_id: str = "", rows: int = 0, cols: int = 0) -> str:
        session_id = session_id or "default"
        rows = rows if rows > 0 else DEFAULT_ROWS
        cols = cols if cols > 0 else DEFAULT_COLS
        async with self._lock:
            active = self._active
            if active is not None and not active.closed:
                await self._emit(MsgType.SHELL_READY, active.id)
                return active.id
            try:
                session = await self._spawn(session_id, rows, cols)
            except OSError as exc:
                self.logger.warning("shell start failed session=%s err=%s", session_id, exc)
                await self._emit(MsgType.SHELL_EXIT, session_id, code=-1, message=str(exc))
                return session_id
            self._active = session
            pump = asyncio.create_task(self._pump(session), name=f"shell-pump-{session_id}")
            self._pumps.add(pump)
            pump.add_done_callback(self._pumps.discard)
        self.logger.info("shell started session=%s pid=%s rows=%s cols=%s", session_id, session.proc.pid, rows, cols)
        await self._emit(MsgType.SHELL_READY, session_id)
        return session_id

    async def _spawn(self, session_id: str, rows: int, cols: int) -> ShellSession:
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, rows, cols)
            env = dict(os.environ, TERM="xterm-256color", PS1="\\u@\\h:\\w$ ")
            proc = await asyncio.create_subprocess_exec(
                *self.shell,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except OSError:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)
        session = ShellSession(session_id, proc, master_fd)
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader),
            os.fdopen(master_fd, "rb", buffering=0),
        )
        session.transport = transport
        session.reader = reader
        return session

    async def _pump(self, session: ShellSession) -> None:
        reader = session.reader
        assert reader is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                chunk = await reader.read(2048)
            except OSError:
                # EIO once the child side of the pty is gone.
                break
            if not chunk:
                break
            if session.stopped:
                continue
            session.append(chunk, self.history_limit)
            text = decoder.decode(chunk)
            if text:
                await self._emit(MsgType.SHELL_DATA, session.id, data=text, timeMs=int(time.time() * 1000))
        returncode = await session.proc.wait()
        async with self._lock:
            session.closed = True
            if session.transport is not None:
                session.transport.close()
            if self._active is session:
                self._active = None
        if session.stopped:
            return
        code = returncode if returncode >= 0 else -1
        self.logger.info("shell exited session=%s code=%s", session.id, code)
        await self._emit(MsgType.SHELL_EXIT, session.id, code=code)

    def _matching(self, session_id: str) -> ShellSession | None:
        session = self._active
        if session is None or session.closed:
            return None
        if session_id and session.id != session_id:
            return None
        return session

    async def input(self, session_id: str, data: str) -> bool:
        async with self._lock:
            session = self._matching(session_id)
            if session is not None:
                try:
                    os.write(session.master_fd, data.encode("utf-8"))
                    return True
                except OSError as exc:
                    self.logger.debug("shell write failed session=%s err=%s", session.id, exc)
        await self._emit(MsgType.SHELL_EXIT, session_id, code=-1, message="session not running")
        return False

    async def resize(self, session_id: str, rows: int, cols: int) -> None:
        if rows <= 0 or cols <= 0:
            return
        async with self._lock:
            session = self._matching(session_id)
            if session is None:
                return
            with contextlib.suppress(OSError):
                _set_winsize(session.master_fd, rows, cols)
                os.killpg(session.proc.pid, signal.SIGWINCH)

    async def stop(self, session_id: str = "") -> bool:
        async with self._lock:
            session = self._matching(session_id)
            if session is None:
                return False
            session.closed = True
            session.stopped = True
            self._active = None
            if session.transport is not None:
                session.transport.close()
        await self._terminate(session.proc)
        self.logger.info("shell stopped session=%s", session.id)
        await self._emit(MsgType.SHELL_EXIT, session.id, code=0)
        return True

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(proc.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.grace)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(proc.pid, signal.SIGKILL)
            await proc.wait()

    async def close(self) -> None:
        await self.stop()
        for task in list(self._pumps):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
