from __future__ import annotations

import asyncio
import json
import logging
import socket
from pathlib import Path
from typing import Any
from urllib.parse import quote

import aiohttp

from agent.oplog import OpLogSink
from common.config import load_json, save_json
from common.crypto import canonical_json, is_json_subset, md5_hex
from common.log import mask_url_secrets, redact_body
from common.services import ServiceManager
from common.sysinfo import parse_port, port_listening

API_USER = "networkpanel"
API_ADDR = ":18080"
API_PATH_PREFIX = "/api"
ENGINE_SERVICE = "gost"
MANAGED_BY = "network-panel"


class EngineAPIError(RuntimeError):
    pass


def api_credentials(hostname: str | None = None) -> tuple[str, str]:
    """Basic-auth pair the engine's API is configured with on this host."""
    host = (hostname if hostname is not None else socket.gethostname()) or "node"
    return API_USER, md5_hex(host)


def _named(items: Any) -> list[dict[str, Any]]:
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


class GostConfigFile:
    """The engine's JSON config on disk.

    Reads take the first non-empty candidate; writes always go to the
    config directory copy, mode 0600 since it carries API credentials.
    """

    def __init__(self, config_dir: str, extra_candidates: tuple[str, ...] = ("/usr/local/gost/gost.json", "./gost.json")):
        self.path = Path(config_dir) / "gost.json"
        self.candidates = (str(self.path),) + extra_candidates

    def resolve_for_read(self) -> Path:
        for candidate in self.candidates:
            p = Path(candidate)
            try:
                if p.stat().st_size > 0:
                    return p
            except OSError:
                continue
        return self.path

    def read(self) -> dict[str, Any]:
        data = load_json(self.resolve_for_read(), default={})
        return data if isinstance(data, dict) else {}

    def write(self, data: dict[str, Any]) -> None:
        save_json(self.path, data, mode=0o600, indent=2)

    def services(self) -> list[dict[str, Any]]:
        return _named(self.read().get("services"))

    def api_configured(self) -> bool:
        return "api" in self.read()

    def ensure_api_section(self, username: str, password: str) -> None:
        cfg = self.read()
        cfg["api"] = {
            "addr": API_ADDR,
            "pathPrefix": API_PATH_PREFIX,
            "accesslog": True,
            "auth": {"username": username, "password": password},
        }
        services = cfg.get("services")
        if isinstance(services, list):
            cfg["services"] = [s for s in services if not (isinstance(s, dict) and s.get("name") == "gost_api")]
        self.write(cfg)

    def remove_services(self, names: list[str]) -> None:
        drop = {n for n in names if n}
        cfg = self.read()
        services = cfg.get("services")
        if not isinstance(services, list):
            services = []
        cfg["services"] = [s for s in services if not (isinstance(s, dict) and s.get("name") in drop)]
        self.write(cfg)

    def mark_paused(self, names: list[str], paused: bool) -> None:
        want = {n for n in names if n}
        cfg = self.read()
        services = cfg.get("services")
        if not isinstance(services, list):
            return
        for svc in services:
            if not isinstance(svc, dict) or svc.get("name") not in want:
                continue
            meta = svc.get("metadata")
            meta = dict(meta) if isinstance(meta, dict) else {}
            if paused:
                meta["paused"] = True
            else:
                meta.pop("paused", None)
            svc["metadata"] = meta or None
        cfg["services"] = services
        self.write(cfg)


class EngineClient:
    """Client for the proxy engine's local configuration API."""

    def __init__(
        self,
        config: dict[str, Any],
        oplog: OpLogSink,
        services: ServiceManager,
        gost_file: GostConfigFile | None = None,
        session: aiohttp.ClientSession | None = None,
    ):
        self.logger = logging.getLogger("agent.engine")
        self.base_url = str(config.get("engine_api_url", "http://127.0.0.1:18080/api")).rstrip("/")
        self.oplog = oplog
        self.services = services
        self.gost_file = gost_file or GostConfigFile(str(config.get("config_dir", "/etc/gost")))
        self.username, self.password = api_credentials(config.get("hostname"))
        self.call_timeout = 5.0
        self.probe_timeout = 1.5
        self.restart_settle = 1.5
        self.usable = False
        self._bootstrapped = False
        self._bootstrap_lock = asyncio.Lock()
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(auth=aiohttp.BasicAuth(self.username, self.password))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def request(self, method: str, path: str, body: Any = None) -> tuple[int, bytes]:
        """One API call; logs both directions with secrets blanked and emits an OpLog entry."""
        url = self.base_url + path
        masked = mask_url_secrets(url)
        data = json.dumps(body).encode("utf-8") if body is not None else None
        self.logger.info("gost_api_call method=%s url=%s body=%s", method, masked, redact_body(data))
        session = await self._get_session()
        headers = {"Content-Type": "application/json"} if data is not None else None
        try:
            async with session.request(
                method,
                url,
                data=data,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.call_timeout),
            ) as resp:
                out = await resp.read()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            err = str(exc) or type(exc).__name__
            self.logger.warning("gost_api_err method=%s url=%s err=%s", method, masked, err)
            self.oplog.emit("gost_api", "request error", {"method": method, "url": masked, "error": err})
            raise EngineAPIError(f"{method} {path}: {err}") from exc
        if status // 100 == 2:
            self.usable = True
        shown = redact_body(out)
        self.logger.info("gost_api_resp method=%s url=%s status=%s body=%s", method, masked, status, shown)
        step = "gost_api" if status // 100 == 2 else "gost_api_err"
        self.oplog.emit(
            step,
            f"{method} {path} status={status}",
            {"method": method, "url": masked, "status": status, "body": shown},
        )
        return status, out

    async def available(self) -> bool:
        session = await self._get_session()
        try:
            async with session.get(
                self.base_url + "/config", timeout=aiohttp.ClientTimeout(total=self.probe_timeout)
            ) as resp:
                await resp.read()
                return resp.status // 100 == 2
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False

    async def is_usable(self) -> bool:
        if self.usable:
            return True
        if await self.available():
            self.usable = True
        return self.usable

    async def bootstrap_once(self) -> bool:
        """Turn the API on if it is off; only the first call per process acts."""
        async with self._bootstrap_lock:
            if self._bootstrapped:
                return await self.is_usable()
            self._bootstrapped = True
            if await self.available():
                self.usable = True
                self.logger.info("api_available ok=true")
                return True
            try:
                self.gost_file.ensure_api_section(self.username, self.password)
            except OSError as exc:
                self.logger.warning("api_bootstrap_failed err=%s", exc)
                return False
            if not await self.services.restart(ENGINE_SERVICE):
                self.logger.warning("api_restart_gost_failed")
                return False
            await asyncio.sleep(self.restart_settle)
            ok = await self.available()
            self.usable = self.usable or ok
            self.logger.info("api_available ok=%s", ok)
            return ok

    async def enable_api(self, settle: float = 1.2) -> bool:
        try:
            self.gost_file.ensure_api_section(self.username, self.password)
        except OSError as exc:
            self.oplog.emit("gost_api_err", "write api config failed", {"error": str(exc)})
            return False
        await self.restart_engine()
        await asyncio.sleep(settle)
        ok = await self.available()
        self.oplog.emit("gost_api", "enable done", {"available": ok})
        if ok:
            self.usable = True
        return ok

    async def restart_engine(self) -> None:
        if not await self.services.restart(ENGINE_SERVICE):
            self.logger.warning("gost_restart_failed")
            raise EngineAPIError("restart gost failed")
        self.logger.info("gost_restarted")

    async def engine_running(self) -> bool:
        active, known = await self.services.is_active(ENGINE_SERVICE)
        return active if known else await self.available()

    async def get_by_name(self, resource: str, name: str) -> dict[str, Any] | None:
        status, body = await self.request("GET", f"/config/{resource}/{quote(name, safe='')}")
        if status // 100 != 2:
            return None
        try:
            value = json.loads(body)
        except ValueError:
            return None
        if not isinstance(value, dict):
            return None
        if "data" in value:
            data = value["data"]
            return data if isinstance(data, dict) else None
        return value

    async def persist(self) -> None:
        """Ask the engine to save its running config; failures are only logged."""
        try:
            status, body = await self.request("POST", "/config?format=json")
        except EngineAPIError as exc:
            self.oplog.emit("gost_api_err", "persist server save error", {"error": str(exc)})
            return
        if status // 100 != 2:
            self.oplog.emit("gost_api_err", "persist server save non-2xx", {"status": status, "body": redact_body(body)})
            return
        self.oplog.emit("gost_api", "persist server saved", {"status": status})

    @staticmethod
    def unchanged(want: dict[str, Any], have: dict[str, Any]) -> bool:
        return canonical_json(want) == canonical_json(have) or is_json_subset(want, have)

    async def upsert(self, resource: str, objects: list[dict[str, Any]], update_only: bool = False) -> None:
        """Create or update each object by name, skipping writes that would change nothing.

        Raises EngineAPIError when any object could not be written.
        """
        if not objects:
            return
        ok = 0
        for obj in objects:
            name = str(obj.get("name") or "")
            try:
                current = await self.get_by_name(resource, name) if name else None
                if current is not None:
                    if self.unchanged(obj, current):
                        self.logger.info("gost_api_skip_put res=%s name=%s", resource, name)
                        ok += 1
                        continue
                    status, _ = await self.request("PUT", f"/config/{resource}/{quote(name, safe='')}", obj)
                elif update_only:
                    continue
                else:
                    status, _ = await self.request("POST", f"/config/{resource}", obj)
            except EngineAPIError as exc:
                self.logger.warning("upsert failed res=%s name=%s err=%s", resource, name, exc)
                continue
            if status // 100 == 2:
                ok += 1
        if ok != len(objects):
            raise EngineAPIError(f"{resource} api partial/failed: {ok}/{len(objects)}")
        await self.persist()

    async def apply_services(self, services: list[dict[str, Any]], update_only: bool = False) -> None:
        """Upsert services plus the chains and observers embedded under ``_chains``/``_observers``."""
        if not await self.is_usable():
            self.oplog.emit("gost_api_err", "web api unavailable", {"message": "enable the engine web API on this node"})
            raise EngineAPIError("gost web api unavailable: please enable on node")
        chains: list[dict[str, Any]] = []
        observers: list[dict[str, Any]] = []
        cleaned: list[dict[str, Any]] = []
        for svc in services:
            svc = dict(svc)
            chains.extend(_named(svc.pop("_chains", None)))
            observers.extend(_named(svc.pop("_observers", None)))
            cleaned.append(svc)
        await self.upsert("chains", chains)
        await self.upsert("observers", observers)
        await self.upsert("services", cleaned, update_only=update_only)

    async def upsert_limiters(self, limiters: list[dict[str, Any]]) -> None:
        await self.upsert("limiters", limiters)

    async def delete_services(self, names: list[str]) -> None:
        """Batch delete, then per-name delete, then edit the config file."""
        names = [n for n in names if n]
        if not names:
            return
        if await self.is_usable():
            try:
                status, _ = await self.request("DELETE", "/config/services", {"services": names})
                if status // 100 == 2:
                    await self.persist()
                    return
                deleted = 0
                for name in names:
                    status, _ = await self.request("DELETE", f"/config/services/{quote(name, safe='')}")
                    if status // 100 == 2:
                        deleted += 1
                if deleted == len(names):
                    await self.persist()
                    return
            except EngineAPIError as exc:
                self.logger.warning("api delete failed, editing config file err=%s", exc)
        self.gost_file.remove_services(names)

    def set_paused(self, names: list[str], paused: bool) -> None:
        self.gost_file.mark_paused(names, paused)

    async def list_services(self) -> list[dict[str, Any]]:
        status, body = await self.request("GET", "/config/services")
        if status // 100 != 2:
            raise EngineAPIError(f"list services status {status}")
        try:
            return _named(json.loads(body))
        except ValueError as exc:
            raise EngineAPIError(f"list services: {exc}") from exc

    async def get_service(self, name: str) -> dict[str, Any] | None:
        found = await self.get_by_name("services", name)
        if found is not None:
            return found
        for svc in await self.list_services():
            if svc.get("name") == name:
                return svc
        return None

    async def query_services(self, handler_filter: str = "") -> list[dict[str, Any]]:
        wanted = handler_filter.lower()
        if await self.is_usable():
            try:
                listed = await self.list_services()
            except EngineAPIError as exc:
                self.logger.debug("query via api failed, reading config file err=%s", exc)
            else:
                if not wanted:
                    return listed
                return [svc for svc in listed if _handler_type(svc).lower() == wanted]
        out = []
        for svc in self.gost_file.services():
            handler = _handler_type(svc)
            if wanted and handler.lower() != wanted:
                continue
            addr = str(svc.get("addr") or "")
            port = parse_port(addr)
            meta = svc.get("metadata")
            out.append(
                {
                    "name": svc.get("name", ""),
                    "addr": addr,
                    "handler": handler,
                    "port": port,
                    "listening": await port_listening(port) if port > 0 else False,
                    "limiter": svc.get("limiter", ""),
                    "rlimiter": svc.get("rlimiter", ""),
                    "metadata": meta if isinstance(meta, dict) else None,
                }
            )
        return out


def _handler_type(svc: dict[str, Any]) -> str:
    handler = svc.get("handler")
    if isinstance(handler, dict):
        return str(handler.get("type") or "")
    if isinstance(handler, str):
        return handler
    return ""
