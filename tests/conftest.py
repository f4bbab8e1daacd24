"""Shared fixtures: in-process fakes and local HTTP apps."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest_asyncio
from aiohttp import web


class FakeSession:
    """Stands in for a ControlSession: records frames and owns spawned tasks."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.tasks: list[asyncio.Task[Any]] = []
        self.closed = False

    async def send_json(self, message: dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("control session closed")
        self.sent.append(message)

    def spawn(self, coro, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self.tasks.append(task)
        return task

    async def drain(self) -> None:
        while self.tasks:
            await self.tasks.pop()

    def of_type(self, msg_type: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == msg_type]


class FakeServices:
    """ServiceManager double that records calls."""

    def __init__(self, restart_ok: bool = True):
        self.calls: list[tuple[str, ...]] = []
        self.restart_ok = restart_ok
        self.has_systemctl = True
        self.has_service = False

    @property
    def available(self) -> bool:
        return True

    async def restart(self, name: str) -> bool:
        self.calls.append(("restart", name))
        return self.restart_ok

    async def stop(self, name: str) -> bool:
        self.calls.append(("stop", name))
        return True

    async def disable(self, name: str) -> None:
        self.calls.append(("disable", name))

    async def enable(self, name: str) -> bool:
        self.calls.append(("enable", name))
        return True

    async def is_active(self, name: str) -> tuple[bool, bool]:
        return True, True

    async def ensure_unit(self, name: str, exec_path: str) -> None:
        self.calls.append(("ensure_unit", name, exec_path))

    async def remove_unit(self, name: str) -> None:
        self.calls.append(("remove_unit", name))


async def wait_for_condition(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest_asyncio.fixture
async def serve_app():
    """Start aiohttp apps on loopback; yields a function returning the base URL."""
    runners: list[web.AppRunner] = []

    async def _serve(app: web.Application) -> str:
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", 0)
        await site.start()
        runners.append(runner)
        host, port = runner.addresses[0][:2]
        return f"http://{host}:{port}"

    yield _serve
    for runner in runners:
        await runner.cleanup()
