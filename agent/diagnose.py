from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
import re
import socket
import time
from pathlib import Path
from typing import Any

from agent.panel import PanelClient
from common.sysinfo import port_listening, used_listening_ports

logger = logging.getLogger("agent.diagnose")

IPERF3_PID_FILE = Path("/tmp/np_iperf3.pid")
IPERF3_PORT_FILE = Path("/tmp/np_iperf3.port")

_LOSS_RE = re.compile(r"([0-9]+\.?[0-9]*)% packet loss")
_AVG_RE = re.compile(r"= [0-9.]+/([0-9.]+)/[0-9.]+/[0-9.]+ ms")


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


async def _run(*argv: str, timeout: float) -> tuple[int, str]:
    """Run a diagnostic binary; returns (exit code, combined output)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        return -1, str(exc)
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        return -1, "timeout"
    return proc.returncode or 0, out.decode("utf-8", errors="replace")


async def run_tcp(host: str, port: int, count: int, timeout_ms: int) -> tuple[int, int]:
    """Connect ``count`` times; returns (average ms, loss percent)."""
    if not host or port <= 0:
        return 0, 100
    successes = 0
    total_ms = 0
    for _ in range(count):
        start = time.monotonic()
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout_ms / 1000)
        except (OSError, asyncio.TimeoutError):
            continue
        total_ms += int((time.monotonic() - start) * 1000)
        successes += 1
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
    if successes == 0:
        return 0, 100
    return total_ms // successes, (count - successes) * 100 // count


def parse_ping_output(out: str) -> tuple[int, int]:
    loss = 100
    avg = 0
    m = _LOSS_RE.search(out)
    if m:
        loss = int(float(m.group(1)) + 0.5)
    m = _AVG_RE.search(out)
    if m:
        avg = int(float(m.group(1)) + 0.5)
    return avg, loss


async def run_icmp(host: str, count: int, timeout_ms: int) -> tuple[int, int]:
    if not host:
        return 0, 100
    wait_s = str((timeout_ms + 999) // 1000)
    argv = ["ping", "-c", str(count), "-W", wait_s, host]
    if ":" in host:
        argv.insert(1, "-6")
    code, out = await _run(*argv, timeout=count * (timeout_ms / 1000 + 1) + 5)
    if code != 0:
        return 0, 100
    return parse_ping_output(out)


def pick_port() -> int:
    for _ in range(100):
        port = 10000 + random.randrange(20000)
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind(("", port))
            except OSError:
                continue
        return port
    return 5201


async def start_iperf3_server(port: int) -> bool:
    code, out = await _run(
        "iperf3", "-s", "-D", "-p", str(port), "-I", str(IPERF3_PID_FILE), timeout=10
    )
    if code != 0:
        logger.warning("iperf3 server start failed port=%s out=%.240s", port, out)
        return False
    with contextlib.suppress(OSError):
        IPERF3_PORT_FILE.write_text(str(port), encoding="utf-8")
    return True


def parse_iperf3_json(out: str) -> tuple[float, str]:
    try:
        report = json.loads(out)
    except ValueError:
        return 0.0, out[:240]
    end = report.get("end") if isinstance(report, dict) else None
    if not isinstance(end, dict):
        return 0.0, "no sum section"
    summary = end.get("sum_received") or end.get("sum_sent")
    if not isinstance(summary, dict):
        return 0.0, "no sum section"
    bps = summary.get("bits_per_second")
    if not isinstance(bps, (int, float)) or bps <= 0:
        return 0.0, "zero bps"
    return bps / 1e6, "ok"


async def run_iperf3_client(host: str, port: int, duration: int, reverse: bool) -> tuple[float, str]:
    if not host or port <= 0:
        return 0.0, "invalid host/port"
    argv = ["iperf3", "-J", "-c", host, "-p", str(port), "-t", str(duration)]
    if reverse:
        argv.append("-R")
    code, out = await _run(*argv, timeout=duration + 30)
    if code != 0:
        return 0.0, out[:240] or f"exit status {code}"
    return parse_iperf3_json(out)


async def diagnose(req: dict[str, Any]) -> dict[str, Any]:
    count = _int(req.get("count"))
    count = count if count > 0 else 3
    timeout_ms = _int(req.get("timeoutMs"))
    timeout_ms = timeout_ms if timeout_ms > 0 else 1500
    host = str(req.get("host") or "")
    port = _int(req.get("port"))
    ctx = req.get("ctx")
    mode = str(req.get("mode") or "").lower()

    if mode == "icmp":
        avg, loss = await run_icmp(host, count, timeout_ms)
        ok = loss < 100
        return {"success": ok, "averageTime": avg, "packetLoss": loss, "message": "ok" if ok else "unreachable", "ctx": ctx}
    if mode == "iperf3":
        if req.get("server"):
            port = port or pick_port()
            ok = await start_iperf3_server(port)
            return {
                "success": ok,
                "port": port,
                "message": "server started" if ok else "failed to start server",
                "ctx": ctx,
            }
        if req.get("client"):
            duration = _int(req.get("duration"))
            duration = duration if duration > 0 else 5
            bandwidth, message = await run_iperf3_client(host, port, duration, bool(req.get("reverse")))
            result: dict[str, Any] = {"success": bandwidth > 0, "bandwidthMbps": bandwidth, "ctx": ctx}
            if message:
                result["message"] = message
            return result
        return {"success": False, "message": "unknown iperf3 mode", "ctx": ctx}
    avg, loss = await run_tcp(host, port, count, timeout_ms)
    ok = loss < 100
    return {"success": ok, "averageTime": avg, "packetLoss": loss, "message": "ok" if ok else "connect fail", "ctx": ctx}


async def suggest_ports(base: int, count: int) -> list[int]:
    count = count if count > 0 else 10
    base = max(base, 0)
    used = await used_listening_ports()
    ports: list[int] = []
    port = base + 1
    scanned = 0
    while len(ports) < count and port <= 65535 and scanned < 20000:
        if port not in used and not await port_listening(port):
            ports.append(port)
        port += 1
        scanned += 1
    return ports


async def probe_once(panel: PanelClient) -> int:
    """Ping each panel probe target once and report; returns the number reported."""
    targets = await panel.probe_targets()
    results = []
    for target in targets:
        avg, loss = await run_icmp(str(target.get("ip") or ""), 1, 1000)
        results.append({"targetId": target.get("id"), "rttMs": avg, "ok": 1 if loss < 100 and avg > 0 else 0})
    if results:
        await panel.report_probe(results)
    return len(results)


async def probe_loop(panel: PanelClient, interval: float = 60.0) -> None:
    while True:
        try:
            count = await probe_once(panel)
            logger.debug("probe round reported=%s", count)
        except Exception as exc:
            logger.debug("probe round failed err=%s", exc)
        await asyncio.sleep(interval)
