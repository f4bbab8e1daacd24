from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path

UNIT_TEMPLATE = """[Unit]
Description={name}
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
EnvironmentFile=-/etc/default/{name}
ExecStart={exec_path}
Restart=always
RestartSec=3

[Install]
WantedBy=multi-user.target
"""


class ServiceManager:
    """OS service-manager capability: systemctl first, SysV ``service`` as fallback."""

    def __init__(self, unit_dir: str = "/etc/systemd/system", command_timeout: float = 30.0):
        self.logger = logging.getLogger("agent.services")
        self.unit_dir = Path(unit_dir)
        self.command_timeout = command_timeout

    @property
    def has_systemctl(self) -> bool:
        return shutil.which("systemctl") is not None

    @property
    def has_service(self) -> bool:
        return shutil.which("service") is not None

    @property
    def available(self) -> bool:
        return self.has_systemctl or self.has_service

    async def _run(self, *argv: str) -> bool:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            self.logger.debug("service command failed to start argv=%s err=%s", argv, exc)
            return False
        try:
            code = await asyncio.wait_for(proc.wait(), timeout=self.command_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            self.logger.warning("service command timeout argv=%s", argv)
            return False
        return code == 0

    async def restart(self, name: str) -> bool:
        if self.has_systemctl:
            await self._run("systemctl", "daemon-reload")
            if await self._run("systemctl", "restart", name):
                return True
        if self.has_service and await self._run("service", name, "restart"):
            return True
        self.logger.warning("restart failed service=%s", name)
        return False

    async def stop(self, name: str) -> bool:
        if self.has_systemctl and await self._run("systemctl", "stop", name):
            return True
        return self.has_service and await self._run("service", name, "stop")

    async def disable(self, name: str) -> None:
        if self.has_systemctl:
            await self._run("systemctl", "disable", name)
            await self._run("systemctl", "stop", name)
            await self._run("systemctl", "daemon-reload")
        elif self.has_service:
            await self._run("service", name, "stop")

    async def enable(self, name: str) -> bool:
        if not self.has_systemctl:
            return False
        await self._run("systemctl", "daemon-reload")
        return await self._run("systemctl", "enable", name)

    async def is_active(self, name: str) -> tuple[bool, bool]:
        """Return (active, known); known is False when no manager can answer."""
        if self.has_systemctl:
            return await self._run("systemctl", "is-active", "--quiet", name), True
        if self.has_service:
            return await self._run("service", name, "status"), True
        return False, False

    async def ensure_unit(self, name: str, exec_path: str) -> None:
        unit = self.unit_dir / f"{name}.service"
        try:
            unit.parent.mkdir(parents=True, exist_ok=True)
            unit.write_text(UNIT_TEMPLATE.format(name=name, exec_path=exec_path), encoding="utf-8")
        except OSError as exc:
            self.logger.warning("write unit failed unit=%s err=%s", unit, exc)
            return
        await self.enable(name)

    async def remove_unit(self, name: str) -> None:
        for path in (self.unit_dir / f"{name}.service", Path("/etc/init.d") / name):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                self.logger.warning("remove unit failed path=%s err=%s", path, exc)
        if self.has_systemctl:
            await self._run("systemctl", "daemon-reload")
