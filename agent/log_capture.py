from __future__ import annotations

import asyncio
import glob
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

TARGETS = ("gost", "agent")

LOG_CANDIDATES: dict[str, tuple[str, ...]] = {
    "gost": ("/var/log/gost.log", "/etc/gost/gost.log", "/var/log/gost/daemon.log", "/etc/gost/*.log"),
    "agent": (
        "/var/log/flux-agent.log",
        "/var/log/flux-agent.err",
        "/etc/gost/flux-agent.log",
        "/var/log/flux-agent/daemon.log",
    ),
}

JOURNAL_UNITS: dict[str, tuple[str, ...]] = {
    "gost": ("gost", "gost.service"),
    "agent": ("flux-agent", "flux-agent.service", "flux-agent2", "flux-agent2.service"),
}

JournalReader = Callable[[str, float], Awaitable[str]]


def journal_available() -> bool:
    return shutil.which("journalctl") is not None and os.path.isdir("/run/systemd/system")


async def read_journal_since(unit: str, since: float) -> str:
    proc = await asyncio.create_subprocess_exec(
        "journalctl",
        "-u",
        unit,
        "--since",
        f"@{int(since)}",
        "--no-pager",
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    out, _ = await asyncio.wait_for(proc.communicate(), timeout=15)
    if proc.returncode != 0:
        raise RuntimeError(f"journalctl error: exit status {proc.returncode}")
    return out.decode("utf-8", errors="replace")


def journal_empty(out: str) -> bool:
    trimmed = out.strip()
    return not trimmed or "-- No entries --" in trimmed


def find_log_file(patterns: tuple[str, ...]) -> str:
    for pattern in patterns:
        matches = sorted(glob.glob(pattern)) if any(ch in pattern for ch in "*?[") else [pattern]
        for path in matches:
            if os.path.isfile(path):
                return path
    return ""


def read_from_offset(path: str, offset: int) -> str:
    with open(path, "rb") as f:
        size = os.fstat(f.fileno()).st_size
        # Rotated or truncated since start: take the whole new file.
        if 0 < offset <= size:
            f.seek(offset)
        return f.read().decode("utf-8", errors="replace")


@dataclass(slots=True)
class LogCapture:
    target: str
    started_at: float
    mode: str
    file: str = ""
    offset: int = 0
    units: tuple[str, ...] = field(default_factory=tuple)


class LogCaptureRegistry:
    """Captures keyed by request id; each is consumed at most once by ``stop``."""

    def __init__(
        self,
        has_journal: Callable[[], bool] = journal_available,
        journal_reader: JournalReader = read_journal_since,
        candidates: dict[str, tuple[str, ...]] | None = None,
    ):
        self.logger = logging.getLogger("agent.logcapture")
        self.has_journal = has_journal
        self.journal_reader = journal_reader
        self.candidates = candidates or LOG_CANDIDATES
        self._lock = asyncio.Lock()
        self._captures: dict[str, LogCapture] = {}

    async def start(self, request_id: str, target: str = "") -> dict[str, Any]:
        if not request_id:
            return {"success": False, "message": "missing requestId"}
        target = target or "gost"
        if target not in TARGETS:
            return {"success": False, "message": "unsupported target"}
        file = find_log_file(self.candidates.get(target, ()))
        offset = 0
        if file:
            try:
                offset = os.path.getsize(file)
            except OSError:
                offset = 0
        if self.has_journal():
            mode = "journal"
        elif file:
            mode = "file"
        else:
            mode = "none"
        capture = LogCapture(target, time.time(), mode, file, offset, JOURNAL_UNITS[target])
        async with self._lock:
            self._captures[request_id] = capture
        self.logger.info("log capture started request_id=%s target=%s mode=%s file=%s", request_id, target, mode, file)
        return {"success": True, "source": mode}

    async def stop(self, request_id: str, target: str = "") -> dict[str, Any]:
        if not request_id:
            return {"success": False, "message": "missing requestId"}
        async with self._lock:
            capture = self._captures.pop(request_id, None)
        if capture is None:
            return {"success": False, "message": "capture not found"}
        if target and target not in TARGETS:
            return {"success": False, "message": "unsupported target"}
        if capture.mode == "journal":
            return await self._stop_journal(capture)
        if capture.mode == "file":
            try:
                out = read_from_offset(capture.file, capture.offset)
            except OSError as exc:
                return {"success": False, "message": str(exc)}
            return {"success": True, "source": capture.file, "log": out}
        return {"success": False, "message": "no log source"}

    async def _stop_journal(self, capture: LogCapture) -> dict[str, Any]:
        first_error: Exception | None = None
        # The first unit is the inferred one; the rest are plausible alternates.
        for unit in capture.units:
            try:
                out = await self.journal_reader(unit, capture.started_at)
            except (OSError, RuntimeError, asyncio.TimeoutError) as exc:
                first_error = first_error or exc
                continue
            if not journal_empty(out):
                return {"success": True, "source": "journal", "log": out}
        if capture.file:
            try:
                return {"success": True, "source": "file", "log": read_from_offset(capture.file, capture.offset)}
            except OSError as exc:
                self.logger.debug("log file fallback failed file=%s err=%s", capture.file, exc)
        if first_error is not None:
            return {"success": False, "message": str(first_error)}
        return {"success": False, "message": "no journal entries"}

    def pending(self) -> int:
        return len(self._captures)
