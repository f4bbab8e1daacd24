from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any

import aiohttp

logger = logging.getLogger("agent.scripts")

DEFAULT_TIMEOUT_SEC = 300
STREAM_FLUSH_SEC = 3.0


class FetchError(RuntimeError):
    pass


async def fetch_url(url: str, timeout: float = 10.0) -> bytes:
    """GET ``url`` without certificate verification; non-200 raises FetchError."""
    async with aiohttp.ClientSession() as http:
        async with http.get(url, ssl=False, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            if resp.status != 200:
                snippet = (await resp.content.read(512)).decode("utf-8", errors="replace")
                raise FetchError(f"status {resp.status} body={snippet!r}")
            return await resp.read()


def _positive_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def write_temp_script(content: bytes, prefix: str) -> str:
    fd, path = tempfile.mkstemp(prefix=prefix, suffix=".sh")
    with os.fdopen(fd, "wb") as f:
        f.write(content)
    os.chmod(path, 0o755)
    return path


def has_shebang(path: str) -> bool:
    try:
        with open(path, "rb") as f:
            first = f.readline()
    except OSError:
        return False
    return first.strip().startswith(b"#!")


async def _script_bytes(content: str, url: str) -> bytes:
    if content:
        return content.encode("utf-8")
    if url:
        return await fetch_url(url)
    return b""


async def run_script(req: dict[str, Any]) -> dict[str, Any]:
    """Run a one-shot script and return its combined output."""
    content = str(req.get("content") or "")
    url = str(req.get("url") or "")
    timeout = _positive_int(req.get("timeoutSec"), DEFAULT_TIMEOUT_SEC)
    if not content and not url:
        return {"success": False, "message": "no script content or url"}
    try:
        script = await _script_bytes(content, url)
    except (aiohttp.ClientError, asyncio.TimeoutError, FetchError) as exc:
        return {"success": False, "message": str(exc) or type(exc).__name__}
    path = write_temp_script(script, "np_run_")
    argv = [path] if has_shebang(path) else ["/bin/sh", path]
    logger.info("run script argv=%s timeout=%s from_url=%s", argv, timeout, bool(url and not content))
    try:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            return {"success": False, "message": str(exc)}
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            return {"success": False, "message": "timeout"}
        text = out.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            return {"success": False, "message": f"exit status {proc.returncode}", "stderr": text}
        return {"success": True, "message": "ok", "stdout": text}
    finally:
        with contextlib.suppress(OSError):
            os.unlink(path)


def write_file(req: dict[str, Any]) -> dict[str, Any]:
    path = str(req.get("path") or "")
    content = str(req.get("content") or "")
    if not path:
        return {"success": False, "message": "empty path"}
    target = Path(path)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        os.chmod(target, 0o644)
    except OSError as exc:
        return {"success": False, "message": str(exc)}
    logger.info("write file path=%s bytes=%s", path, len(content))
    return {"success": True, "message": "ok"}


class StreamExecSession:
    """Runs a script and posts its merged output to an HTTP sink.

    Output is flushed every ``flush_interval`` seconds; the last post always
    carries ``done=True`` and the exit code, and is sent exactly once.
    """

    def __init__(
        self,
        request_id: str,
        endpoint: str,
        secret: str,
        kind: str = "",
        flush_interval: float = STREAM_FLUSH_SEC,
    ):
        self.logger = logging.getLogger("agent.stream")
        self.request_id = request_id
        self.endpoint = endpoint
        self.secret = secret
        self.kind = kind
        self.flush_interval = flush_interval
        self._http: aiohttp.ClientSession | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._finished = False

    async def post_chunk(self, chunk: str, done: bool = False, exit_code: int | None = None) -> None:
        body: dict[str, Any] = {
            "secret": self.secret,
            "requestId": self.request_id,
            "type": self.kind,
            "chunk": chunk,
            "done": done,
            "timeMs": int(time.time() * 1000),
        }
        if exit_code is not None:
            body["exitCode"] = exit_code
        assert self._http is not None
        try:
            async with self._http.post(
                self.endpoint, json=body, ssl=False, timeout=aiohttp.ClientTimeout(total=5)
            ) as resp:
                await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.logger.warning("stream chunk post failed request_id=%s done=%s err=%s", self.request_id, done, exc)

    async def run(self, content: str = "", url: str = "") -> int | None:
        if not self.endpoint or not self.secret:
            self.logger.warning("stream script missing endpoint/secret request_id=%s", self.request_id)
            return None
        async with aiohttp.ClientSession() as http:
            self._http = http
            try:
                return await self._run(content, url)
            finally:
                self._http = None

    async def _run(self, content: str, url: str) -> int:
        if not content and url:
            try:
                content = (await fetch_url(url)).decode("utf-8", errors="replace")
            except (aiohttp.ClientError, asyncio.TimeoutError, FetchError) as exc:
                self.logger.warning("stream script fetch failed url=%s err=%s", url, exc)
        if not content:
            await self.post_chunk("empty content", done=True, exit_code=-1)
            return -1
        path = write_temp_script(content.encode("utf-8"), "np_run_stream_")
        shell = "/bin/bash" if os.path.exists("/bin/bash") else "/bin/sh"
        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    shell,
                    path,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                )
            except OSError as exc:
                await self.post_chunk(f"start failed: {exc}", done=True, exit_code=-1)
                return -1
            return await self._pump(proc)
        finally:
            with contextlib.suppress(OSError):
                os.unlink(path)

    async def _finish(self, buf: bytearray, exit_code: int) -> None:
        if self._finished:
            return
        self._finished = True
        tail = self._decoder.decode(bytes(buf), final=True)
        buf.clear()
        await self.post_chunk(tail, done=True, exit_code=exit_code)

    async def _pump(self, proc: asyncio.subprocess.Process) -> int:
        assert proc.stdout is not None
        loop = asyncio.get_running_loop()
        buf = bytearray()
        next_flush = loop.time() + self.flush_interval
        read_task: asyncio.Future[bytes] | None = None
        try:
            while True:
                if read_task is None:
                    read_task = asyncio.ensure_future(proc.stdout.read(4096))
                done, _ = await asyncio.wait({read_task}, timeout=max(0.0, next_flush - loop.time()))
                if read_task in done:
                    data = read_task.result()
                    read_task = None
                    if not data:
                        break
                    buf += data
                if loop.time() >= next_flush:
                    if buf:
                        chunk = self._decoder.decode(bytes(buf))
                        buf.clear()
                        await self.post_chunk(chunk)
                    next_flush = loop.time() + self.flush_interval
            returncode = await proc.wait()
        except asyncio.CancelledError:
            if read_task is not None:
                read_task.cancel()
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            self.logger.info("stream script cancelled request_id=%s", self.request_id)
            # The sink still gets its done chunk when the owning session goes away.
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.shield(self._finish(buf, -1))
            raise
        exit_code = returncode if returncode >= 0 else -1
        await self._finish(buf, exit_code)
        self.logger.info("stream script done request_id=%s exit_code=%s", self.request_id, exit_code)
        return exit_code
