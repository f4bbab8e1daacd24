from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from agent.engine import MANAGED_BY, EngineAPIError, EngineClient, GostConfigFile
from agent.panel import PanelClient, PanelError
from common.crypto import service_hash


@dataclass(slots=True)
class ReconcileSnapshot:
    present: set[str] = field(default_factory=set)
    managed: set[str] = field(default_factory=set)
    desired: list[dict[str, Any]] = field(default_factory=list)
    strict: bool = False

    @property
    def desired_names(self) -> set[str]:
        return {str(svc["name"]) for svc in self.desired if isinstance(svc.get("name"), str)}

    @property
    def missing(self) -> list[dict[str, Any]]:
        return [svc for svc in self.desired if isinstance(svc.get("name"), str) and svc["name"] not in self.present]

    @property
    def extras(self) -> list[str]:
        # Only panel-managed services are removal candidates.
        if not self.strict:
            return []
        return sorted(self.managed - self.desired_names)


def local_services(gost_file: GostConfigFile) -> tuple[set[str], set[str]]:
    """Return (present, managed) service names from the engine config file."""
    present: set[str] = set()
    managed: set[str] = set()
    for svc in gost_file.services():
        name = svc.get("name")
        if not isinstance(name, str) or not name:
            continue
        present.add(name)
        meta = svc.get("metadata")
        if isinstance(meta, dict) and meta.get("managedBy") == MANAGED_BY:
            managed.add(name)
    return present, managed


class Reconciler:
    def __init__(self, panel: PanelClient, gost_file: GostConfigFile, strict: bool = False):
        self.logger = logging.getLogger("agent.reconcile")
        self.panel = panel
        self.gost_file = gost_file
        self.strict = strict
        self._lock = asyncio.Lock()

    async def snapshot(self) -> ReconcileSnapshot:
        present, managed = local_services(self.gost_file)
        desired = await self.panel.desired_services()
        return ReconcileSnapshot(present, managed, desired, self.strict)

    async def reconcile(self) -> ReconcileSnapshot | None:
        """One pass; returns the snapshot acted on, or None when the panel could not be read."""
        async with self._lock:
            try:
                snap = await self.snapshot()
            except (PanelError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                self.logger.warning("reconcile_error step=desired err=%s", exc)
                return None
            missing = snap.missing
            extras = snap.extras
            if not missing and not extras:
                self.logger.info("reconcile_ok missing=0 extras=0")
                return snap
            if missing:
                try:
                    await self.panel.push_services(missing)
                    self.logger.info("reconcile_push count=%s", len(missing))
                except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    self.logger.warning("reconcile_error step=push err=%s", exc)
            if extras:
                try:
                    await self.panel.remove_services(extras)
                    self.logger.info("reconcile_remove count=%s", len(extras))
                except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    self.logger.warning("reconcile_error step=remove err=%s", exc)
            return snap

    async def run(self, first_delay: float, interval: float) -> None:
        await asyncio.sleep(first_delay)
        await self.reconcile()
        if interval <= 0:
            return
        while True:
            await asyncio.sleep(interval)
            await self.reconcile()


async def service_hashes(engine: EngineClient) -> dict[str, str]:
    return {str(svc["name"]): service_hash(svc) for svc in await engine.list_services() if svc.get("name")}


async def report_services_loop(engine: EngineClient, panel: PanelClient, interval: float) -> None:
    """Report the engine's service hashes while its API answers."""
    logger = logging.getLogger("agent.reconcile")
    while True:
        await asyncio.sleep(interval)
        if not await engine.available():
            continue
        try:
            hashes = await service_hashes(engine)
            await panel.report_services(hashes)
        except (EngineAPIError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.debug("service report failed err=%s", exc)
