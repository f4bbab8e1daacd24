from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
from pathlib import Path

PROC = Path("/proc")
# /proc/net socket states: TCP LISTEN and bound UDP.
_LISTEN_STATES = {"0A", "07"}


class CpuSampler:
    """Turns cumulative /proc/stat counters into a usage percentage between calls."""

    def __init__(self, proc_root: Path = PROC):
        self.proc_root = proc_root
        self._last: tuple[int, int] | None = None

    def _read(self) -> tuple[int, int] | None:
        try:
            first = (self.proc_root / "stat").read_text().splitlines()[0]
        except (OSError, IndexError):
            return None
        fields = first.split()
        if len(fields) < 5:
            return None
        values = [int(v) for v in fields[1:] if v.isdigit()]
        return int(fields[4]), sum(values)

    def usage_percent(self) -> float:
        current = self._read()
        if current is None:
            return 0.0
        previous, self._last = self._last, current
        if previous is None:
            return 0.0
        idle = current[0] - previous[0]
        total = current[1] - previous[1]
        if total <= 0:
            return 0.0
        return min(100.0, max(0.0, (1.0 - idle / total) * 100.0))


def memory_usage_percent(proc_root: Path = PROC) -> float:
    total = avail = 0.0
    try:
        lines = (proc_root / "meminfo").read_text().splitlines()
    except OSError:
        return 0.0
    for line in lines:
        parts = line.split()
        if len(parts) < 2:
            continue
        if parts[0] == "MemTotal:":
            total = float(parts[1])
        elif parts[0] == "MemAvailable:":
            avail = float(parts[1])
    if total <= 0:
        return 0.0
    return min(100.0, max(0.0, (total - avail) / total * 100.0))


def net_bytes(proc_root: Path = PROC) -> tuple[int, int]:
    rx = tx = 0
    try:
        lines = (proc_root / "net" / "dev").read_text().splitlines()[2:]
    except OSError:
        return 0, 0
    for line in lines:
        if ":" not in line:
            continue
        parts = line.split(":", 1)[1].split()
        if len(parts) < 9:
            continue
        rx += int(parts[0])
        tx += int(parts[8])
    return rx, tx


def uptime_seconds(proc_root: Path = PROC) -> int:
    try:
        return int(float((proc_root / "uptime").read_text().split()[0]))
    except (OSError, IndexError, ValueError):
        return 0


def parse_port(addr: str) -> int:
    """Port of ``:8080``, ``0.0.0.0:8080`` or ``[::]:8080``; 0 when absent."""
    addr = (addr or "").strip()
    if addr.startswith("["):
        _, sep, port = addr.rpartition("]:")
    else:
        _, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        return 0
    return int(port)


def parse_proc_net_ports(path: Path) -> set[int]:
    ports: set[int] = set()
    try:
        lines = path.read_text().splitlines()[1:]
    except OSError:
        return ports
    for line in lines:
        fields = line.split()
        if len(fields) < 4 or fields[3] not in _LISTEN_STATES:
            continue
        _, _, port_hex = fields[1].rpartition(":")
        with contextlib.suppress(ValueError):
            port = int(port_hex, 16)
            if 0 < port <= 65535:
                ports.add(port)
    return ports


def parse_ss_ports(output: str) -> set[int]:
    ports: set[int] = set()
    for line in output.splitlines():
        for field in line.split():
            if field.endswith(":*"):
                continue
            _, sep, tail = field.rpartition(":")
            if sep and tail.isdigit():
                ports.add(int(tail))
    return ports


async def _run_capture(*argv: str, timeout: float = 5.0) -> tuple[int, str]:
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        return -1, ""
    return proc.returncode or 0, out.decode("utf-8", errors="replace")


async def port_listening(port: int, timeout: float = 0.2) -> bool:
    if port <= 0:
        return False
    for host in ("127.0.0.1", "::1"):
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        except (OSError, asyncio.TimeoutError):
            continue
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return True
    return False


async def used_listening_ports(proc_root: Path = PROC) -> set[int]:
    if shutil.which("ss"):
        code, out = await _run_capture("ss", "-lntuH")
        if code == 0:
            used = parse_ss_ports(out)
            if used:
                return used
    used = set()
    for name in ("tcp", "tcp6", "udp", "udp6"):
        used |= parse_proc_net_ports(proc_root / "net" / name)
    if used:
        return used
    for port in (22, 80, 443, 3306, 6379):
        if await port_listening(port):
            used.add(port)
    return used


async def interface_addresses() -> list[str]:
    """Global-scope addresses of interfaces that are up (IPv4 first)."""
    if not shutil.which("ip"):
        return []
    addrs: list[str] = []
    for family in ("-4", "-6"):
        code, out = await _run_capture("ip", "-o", family, "addr", "show", "up", "scope", "global")
        if code != 0:
            continue
        for line in out.splitlines():
            fields = line.split()
            if "inet" in fields or "inet6" in fields:
                idx = fields.index("inet") if "inet" in fields else fields.index("inet6")
                if idx + 1 < len(fields):
                    addrs.append(fields[idx + 1].split("/", 1)[0])
    return addrs


def process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def iperf3_status(pid_file: Path = Path("/tmp/np_iperf3.pid"), port_file: Path = Path("/tmp/np_iperf3.port")) -> tuple[str, int, int]:
    def _read_int(p: Path) -> int:
        try:
            return int(p.read_text().strip())
        except (OSError, ValueError):
            return 0

    pid = _read_int(pid_file)
    port = _read_int(port_file)
    if pid > 0 and process_alive(pid):
        return "running", port, pid
    return "stopped", port, pid
