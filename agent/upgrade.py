from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import platform
import struct
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable

import aiohttp

from agent.oplog import OpLogSink
from agent.panel import PanelClient
from common.config import ROLE_PRIMARY, ROLE_SECONDARY
from common.services import ServiceManager

MIN_BINARY_SIZE = 1_000_000
# ELF e_machine values per release architecture.
ARCH_MACHINES = {"amd64": 62, "arm64": 183, "armv7": 40}
DOWNLOAD_ATTEMPTS = 3
DOWNLOAD_RETRY_DELAY = 0.5

SERVICE_NAMES = {ROLE_PRIMARY: "flux-agent", ROLE_SECONDARY: "flux-agent2"}


class UpgradeError(RuntimeError):
    pass


def detect_arch(machine: str | None = None) -> str:
    machine = (machine if machine is not None else platform.machine()).strip().lower()
    if machine in {"x86_64", "amd64"}:
        return "amd64"
    if machine in {"aarch64", "arm64"}:
        return "arm64"
    if machine in {"armv7l", "armv7"}:
        return "armv7"
    return "amd64"


def validate_binary(path: str | Path, arch: str, min_size: int = MIN_BINARY_SIZE) -> None:
    """Reject truncated downloads, HTML error pages and foreign-architecture builds."""
    p = Path(path)
    size = p.stat().st_size
    if size < min_size:
        raise UpgradeError(f"binary too small: {size} bytes")
    with p.open("rb") as f:
        header = f.read(20)
    if len(header) < 20 or header[:4] != b"\x7fELF":
        raise UpgradeError("not an ELF executable")
    if header[5] == 1:
        endian = "<"
    elif header[5] == 2:
        endian = ">"
    else:
        raise UpgradeError("not an ELF executable: bad data encoding")
    (machine,) = struct.unpack(endian + "H", header[18:20])
    expected = ARCH_MACHINES.get(arch)
    if expected is not None and machine != expected:
        raise UpgradeError(f"ELF machine mismatch: {machine}")


def safe_replace(target: str | Path, tmp: str | Path) -> None:
    """Move ``tmp`` over ``target`` keeping a backup until the swap succeeds."""
    target = Path(target)
    bak = target.with_name(target.name + ".bak")
    if bak.exists() and not target.exists():
        # An interrupted swap left the last good binary only in the backup.
        os.replace(bak, target)
    with contextlib.suppress(FileNotFoundError):
        bak.unlink()
    had_target = target.exists()
    if had_target:
        os.replace(target, bak)
    try:
        os.replace(tmp, target)
    except OSError:
        if had_target:
            os.replace(bak, target)
        raise
    with contextlib.suppress(FileNotFoundError):
        bak.unlink()


async def download(url: str, dest: str | Path, timeout: float = 300.0) -> None:
    async with aiohttp.ClientSession() as http:
        async with http.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            if resp.status != 200:
                snippet = (await resp.content.read(512)).decode("utf-8", errors="replace")
                raise UpgradeError(f"download failed: {resp.status} {resp.reason}, body={snippet!r}")
            with open(dest, "wb") as f:
                async for chunk in resp.content.iter_chunked(64 * 1024):
                    f.write(chunk)


async def download_retry(
    url: str,
    dest: str | Path,
    attempts: int = DOWNLOAD_ATTEMPTS,
    delay: float = DOWNLOAD_RETRY_DELAY,
) -> None:
    last_exc: Exception | None = None
    for attempt in range(attempts):
        if attempt:
            await asyncio.sleep(delay)
        try:
            await download(url, dest)
            return
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, UpgradeError) as exc:
            last_exc = exc
    raise UpgradeError(str(last_exc) or type(last_exc).__name__) from last_exc


class UpgradeEngine:
    """Installs agent binaries for either role and restarts them."""

    def __init__(
        self,
        config: dict[str, Any],
        panel: PanelClient,
        services: ServiceManager,
        oplog: OpLogSink,
        exit_process: Callable[[int], None] = sys.exit,
    ):
        self.logger = logging.getLogger("agent.upgrade")
        self.config = config
        self.panel = panel
        self.services = services
        self.oplog = oplog
        self.exit_process = exit_process
        self.config_dir = Path(str(config.get("config_dir", "/etc/gost")))
        self.role = str(config.get("role", ROLE_PRIMARY))
        self.single_agent = bool(config.get("single_agent", True))
        self.arch = detect_arch()
        self.executable = str(config.get("executable") or sys.argv[0])
        self._lock = asyncio.Lock()

    def target_for(self, role: str) -> Path:
        return self.config_dir / SERVICE_NAMES[role]

    def url_for(self, role: str) -> str:
        return self.panel.url(f"/flux-agent/{SERVICE_NAMES[role]}-linux-{self.arch}")

    def stamp_for(self, role: str) -> Path:
        target = self.target_for(role)
        return target.with_name(target.name + ".version")

    def installed_version(self, role: str) -> str:
        try:
            return self.stamp_for(role).read_text(encoding="utf-8").strip()
        except OSError:
            return ""

    async def install(self, role: str) -> Path:
        """Download, validate and swap in the binary for ``role``.

        Nothing under the installed path changes unless validation passed.
        """
        target = self.target_for(role)
        url = self.url_for(role)
        tmp = target.with_name(target.name + ".new")
        self.oplog.emit("agent_upgrade_start", "upgrade started", {"url": url})
        self.oplog.emit("agent_upgrade_download", "downloading", {"url": url})
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            await download_retry(url, tmp)
        except UpgradeError as exc:
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()
            self.logger.warning("upgrade download failed url=%s err=%s", url, exc)
            self.oplog.emit("agent_upgrade_error", f"download failed: {exc}")
            raise
        try:
            validate_binary(tmp, self.arch)
        except (UpgradeError, OSError) as exc:
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()
            self.logger.warning("upgrade validation failed path=%s err=%s", tmp, exc)
            self.oplog.emit("agent_upgrade_error", f"validation failed: {exc}")
            raise UpgradeError(str(exc)) from exc
        self.oplog.emit("agent_upgrade_validate", "validation passed")
        safe_replace(target, tmp)
        os.chmod(target, 0o755)
        self.logger.info("binary installed role=%s target=%s", role, target)
        return target

    async def upgrade(self, role: str, expected_version: str = "") -> bool:
        """Bring the other-role (or named-role) binary to ``expected_version``.

        Returns False when the recorded stamp already matches.
        """
        async with self._lock:
            if expected_version and self.installed_version(role) == expected_version:
                self.logger.info("upgrade skipped role=%s version=%s", role, expected_version)
                return False
            target = await self.install(role)
            self.stamp_for(role).write_text(expected_version, encoding="utf-8")
            name = SERVICE_NAMES[role]
            if role == ROLE_SECONDARY and self.single_agent:
                await self.services.disable(name)
            else:
                await self.services.ensure_unit(name, str(target))
                self.oplog.emit("agent_upgrade_restart", f"restarting service {name}")
                if not await self.services.restart(name):
                    self._spawn_detached(str(target), [])
            self.oplog.emit("agent_upgrade_done", "upgrade done", {"service": name})
            return True

    async def self_upgrade(self) -> None:
        async with self._lock:
            target = await self.install(self.role)
            name = SERVICE_NAMES[self.role]
            self.oplog.emit("agent_upgrade_restart", f"restarting service {name}")
            if await self.services.restart(name):
                self.logger.info("agent upgrade done service=%s", name)
                self.oplog.emit("agent_upgrade_done", "upgrade done", {"service": name})
                return
        args = [str(target)] + sys.argv[1:]
        try:
            os.execv(str(target), args)
        except OSError as exc:
            self.logger.warning("exec replace failed target=%s err=%s", target, exc)
        self._spawn_detached(str(target), sys.argv[1:])
        self.exit_process(0)

    def _spawn_detached(self, path: str, args: list[str]) -> None:
        try:
            subprocess.Popen([path, *args], start_new_session=True)
        except OSError as exc:
            self.logger.warning("detached start failed path=%s err=%s", path, exc)

    async def check_counterpart(self) -> None:
        """Align the other role with the panel's expected versions on connect."""
        if self.single_agent:
            if self.role == ROLE_PRIMARY:
                await self.services.disable(SERVICE_NAMES[ROLE_SECONDARY])
            return
        expected_primary, expected_secondary = await self.panel.expected_versions()
        if self.role == ROLE_PRIMARY:
            other, expected = ROLE_SECONDARY, expected_secondary
        else:
            other, expected = ROLE_PRIMARY, expected_primary
        if not expected:
            return
        try:
            await self.upgrade(other, expected)
        except (UpgradeError, OSError) as exc:
            self.logger.warning("counterpart upgrade failed err=%s", exc)

    async def uninstall(self) -> None:
        name = SERVICE_NAMES[self.role]
        if self.services.has_systemctl:
            await self.services.stop(name)
            await self.services.disable(name)
        elif self.services.has_service:
            await self.services.stop(name)
        await self.services.remove_unit(name)
        for path in (self.target_for(self.role), Path("/etc/default") / name, Path(self.executable).resolve()):
            with contextlib.suppress(OSError):
                path.unlink()
        self.logger.info("agent uninstalled service=%s", name)
        self.exit_process(0)
