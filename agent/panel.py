from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import aiohttp

from common.log import mask_url_secrets


class PanelError(RuntimeError):
    pass


class PanelClient:
    """HTTP side of the panel: reconciliation, reports, versions and flow."""

    def __init__(self, config: dict[str, Any], session: aiohttp.ClientSession | None = None):
        self.logger = logging.getLogger("agent.panel")
        self.addr = str(config["addr"])
        self.secret = str(config["secret"])
        self.scheme = str(config.get("scheme", "ws"))
        self._session = session
        self._owns_session = session is None

    @property
    def http_base(self) -> str:
        proto = "https" if self.scheme == "wss" else "http"
        return f"{proto}://{self.addr}"

    def url(self, path: str) -> str:
        return self.http_base + path

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def post_json(self, path: str, body: dict[str, Any], timeout: float = 6.0) -> tuple[int, Any]:
        """POST ``body`` plus the shared secret; returns (status, decoded JSON or None)."""
        session = await self._get_session()
        payload = {"secret": self.secret, **body}
        url = self.url(path)
        async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = None
            self.logger.debug("panel post url=%s status=%s", mask_url_secrets(url), resp.status)
            return resp.status, data

    async def _post_coded(self, path: str, body: dict[str, Any], timeout: float = 6.0) -> Any:
        status, data = await self.post_json(path, body, timeout=timeout)
        if status != 200 or not isinstance(data, dict):
            raise PanelError(f"{path} status={status}")
        if data.get("code", 0) != 0:
            raise PanelError(f"{path} code={data.get('code')} msg={data.get('msg', '')}")
        return data.get("data")

    async def desired_services(self) -> list[dict[str, Any]]:
        data = await self._post_coded("/api/v1/agent/desired-services", {}, timeout=8.0)
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    async def push_services(self, services: list[dict[str, Any]]) -> None:
        await self.post_json("/api/v1/agent/push-services", {"services": services}, timeout=8.0)

    async def remove_services(self, names: list[str]) -> None:
        await self.post_json("/api/v1/agent/remove-services", {"services": names}, timeout=8.0)

    async def report_services(self, hashes: dict[str, str]) -> None:
        await self.post_json(
            "/api/v1/agent/report-services",
            {"services": list(hashes), "hashes": hashes, "timeMs": int(time.time() * 1000)},
            timeout=5.0,
        )

    async def probe_targets(self) -> list[dict[str, Any]]:
        data = await self._post_coded("/api/v1/agent/probe-targets", {})
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    async def report_probe(self, results: list[dict[str, Any]]) -> None:
        await self.post_json("/api/v1/agent/report-probe", {"results": results})

    async def expected_versions(self) -> tuple[str, str]:
        """Return the panel's expected (primary, secondary) versions; blanks when unknown."""
        session = await self._get_session()
        try:
            async with session.get(self.url("/api/v1/version"), timeout=aiohttp.ClientTimeout(total=6)) as resp:
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            self.logger.debug("expected versions unavailable err=%s", exc)
            return "", ""
        if not isinstance(data, dict) or data.get("code") != 0 or not isinstance(data.get("data"), dict):
            return "", ""
        versions = data["data"]
        return str(versions.get("agent") or ""), str(versions.get("agent2") or "")

    async def report_anytls_flow(self, user_id: int, in_bytes: int, out_bytes: int) -> None:
        session = await self._get_session()
        url = self.url("/api/v1/flow/anytls")
        async with session.post(
            url,
            params={"secret": self.secret},
            json={"userId": user_id, "inBytes": in_bytes, "outBytes": out_bytes},
            timeout=aiohttp.ClientTimeout(total=6),
        ) as resp:
            if resp.status // 100 != 2:
                body = await resp.text()
                raise PanelError(f"anytls flow report status={resp.status} body={body[:200]}")

    async def heartbeat(self, endpoint: str, body: dict[str, Any]) -> None:
        session = await self._get_session()
        async with session.post(endpoint, json=body, ssl=False, timeout=aiohttp.ClientTimeout(total=8)) as resp:
            await resp.read()
            self.logger.debug("heartbeat sent status=%s", resp.status)

    async def external_ip(self, lookup_url: str) -> str:
        session = await self._get_session()
        try:
            async with session.get(lookup_url, timeout=aiohttp.ClientTimeout(total=3)) as resp:
                return (await resp.text()).strip()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.logger.debug("external ip lookup failed err=%s", exc)
            return ""
