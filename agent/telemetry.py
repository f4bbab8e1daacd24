from __future__ import annotations

import asyncio
import logging
import platform
import sys
import time
from typing import Any

from agent.control import ControlSession
from agent.engine import EngineClient
from agent.panel import PanelClient
from common.sysinfo import (
    CpuSampler,
    interface_addresses,
    iperf3_status,
    memory_usage_percent,
    net_bytes,
    uptime_seconds,
    used_listening_ports,
)


class SystemReporter:
    """Periodic host snapshot written straight onto the control channel."""

    def __init__(self, config: dict[str, Any], engine: EngineClient):
        self.logger = logging.getLogger("agent.telemetry")
        self.engine = engine
        self.interval = max(1, int(config.get("sysinfo_sec", 10)))
        self.ports_interval = max(1, int(config.get("used_ports_sec", 10)))
        self.cpu = CpuSampler()
        self._ports: list[int] = []
        self._ports_at = 0.0

    async def used_ports(self) -> list[int]:
        now = time.monotonic()
        if not self._ports_at or now - self._ports_at >= self.ports_interval:
            self._ports = sorted(await used_listening_ports())
            self._ports_at = now
        return self._ports

    async def snapshot(self) -> dict[str, Any]:
        rx, tx = net_bytes()
        payload: dict[str, Any] = {
            "Uptime": uptime_seconds(),
            "BytesReceived": rx,
            "BytesTransmitted": tx,
            "CPUUsage": self.cpu.usage_percent(),
            "MemoryUsage": memory_usage_percent(),
            "GostAPI": await self.engine.available(),
            "GostRunning": await self.engine.engine_running(),
            "GostAPIConfigured": self.engine.gost_file.api_configured(),
        }
        status, port, pid = iperf3_status()
        payload["Iperf3Status"] = status
        if port > 0:
            payload["Iperf3Port"] = port
        if pid > 0:
            payload["Iperf3Pid"] = pid
        payload["Interfaces"] = await interface_addresses()
        payload["UsedPorts"] = await self.used_ports()
        return payload

    async def run(self, session: ControlSession) -> None:
        while True:
            payload = await self.snapshot()
            try:
                await session.send_json(payload)
            except (ConnectionError, RuntimeError) as exc:
                self.logger.warning("sysinfo_report_error err=%s", exc)
                await session.ws.close()
                return
            await asyncio.sleep(self.interval)


def heartbeat_body(agent_id: str, version: str, created_ms: int, ip: str) -> dict[str, Any]:
    return {
        "kind": "agent",
        "uniqueId": agent_id,
        "version": version,
        "os": sys.platform,
        "arch": platform.machine(),
        "createdAtMs": created_ms,
        "installMode": "agent",
        "ip": ip,
    }


async def heartbeat_loop(
    panel: PanelClient,
    config: dict[str, Any],
    agent_id: str,
    created_ms: int,
) -> None:
    logger = logging.getLogger("agent.telemetry")
    endpoint = str(config.get("heartbeat_endpoint", ""))
    interval = max(1, int(config.get("heartbeat_sec", 3600)))
    if not endpoint:
        return
    while True:
        ip = await panel.external_ip(str(config.get("ip_lookup_url", "")))
        try:
            await panel.heartbeat(endpoint, heartbeat_body(agent_id, str(config.get("version", "")), created_ms, ip))
        except Exception as exc:
            logger.debug("heartbeat failed err=%s", exc)
        await asyncio.sleep(interval)
