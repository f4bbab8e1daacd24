from __future__ import annotations

import logging
from typing import Any

from agent.anytls import AnyTLSConfig, AnyTLSGateway
from agent.control import ControlSession
from agent.diagnose import diagnose, suggest_ports
from agent.dispatcher import Route
from agent.engine import EngineClient
from agent.log_capture import LogCaptureRegistry
from agent.oplog import OpLogSink
from agent.scripts import StreamExecSession, run_script, write_file
from agent.shell import ShellRegistry
from agent.upgrade import UpgradeEngine
from common.config import ROLE_PRIMARY, ROLE_SECONDARY
from common.protocol import MsgType
from common.services import ServiceManager
from common.sysinfo import port_listening


def _as_dict(payload: Any) -> dict[str, Any]:
    return payload if isinstance(payload, dict) else {}


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _names(payload: Any) -> list[str]:
    names = _as_dict(payload).get("services")
    if not isinstance(names, list):
        return []
    return [str(name) for name in names if name]


def _service_list(payload: Any) -> list[dict[str, Any]] | None:
    if not isinstance(payload, list):
        return None
    return [item for item in payload if isinstance(item, dict)]


class CommandHandlers:
    """Panel command handlers; ``build_routes`` maps each command type to one."""

    def __init__(
        self,
        engine: EngineClient,
        upgrades: UpgradeEngine,
        anytls: AnyTLSGateway,
        shells: ShellRegistry,
        captures: LogCaptureRegistry,
        services: ServiceManager,
        oplog: OpLogSink,
    ):
        self.logger = logging.getLogger("agent.commands")
        self.engine = engine
        self.upgrades = upgrades
        self.anytls = anytls
        self.shells = shells
        self.captures = captures
        self.services = services
        self.oplog = oplog

    def build_routes(self) -> dict[str, Route]:
        t = MsgType
        return {
            t.DIAGNOSE.value: Route(self.on_diagnose, result=t.DIAGNOSE.value),
            t.ADD_SERVICE.value: Route(self.on_add_service, result=t.ADD_SERVICE.value),
            t.UPDATE_SERVICE.value: Route(self.on_update_service),
            t.DELETE_SERVICE.value: Route(self.on_delete_service),
            t.PAUSE_SERVICE.value: Route(self.on_pause_service),
            t.RESUME_SERVICE.value: Route(self.on_resume_service),
            t.UPSERT_LIMITERS.value: Route(self.on_upsert_limiters),
            t.GET_SERVICE.value: Route(self.on_get_service, result=t.GET_SERVICE.value),
            t.QUERY_SERVICES.value: Route(self.on_query_services, result=t.QUERY_SERVICES.value),
            t.SUGGEST_PORTS.value: Route(self.on_suggest_ports, result=t.SUGGEST_PORTS.value),
            t.PROBE_PORT.value: Route(self.on_probe_port, result=t.PROBE_PORT.value),
            t.ENABLE_GOST_API.value: Route(self.on_enable_api),
            t.SET_ANYTLS.value: Route(self.on_set_anytls, result=t.SET_ANYTLS.value),
            t.LOG_CAPTURE_START.value: Route(self.on_log_capture_start, inline=True),
            # Stop replies as LogCaptureResult, the name the panel waits for.
            t.LOG_CAPTURE_STOP.value: Route(self.on_log_capture_stop, result="LogCapture"),
            t.UPGRADE_AGENT.value: Route(self.on_upgrade_self),
            t.UPGRADE_AGENT1.value: Route(self.on_upgrade_primary),
            t.UPGRADE_AGENT2.value: Route(self.on_upgrade_secondary),
            t.RESTART_GOST.value: Route(self.on_restart_engine),
            t.UNINSTALL_AGENT.value: Route(self.on_uninstall),
            t.SHELL_START.value: Route(self.on_shell_start),
            t.SHELL_INPUT.value: Route(self.on_shell_input),
            t.SHELL_RESIZE.value: Route(self.on_shell_resize),
            t.SHELL_STOP.value: Route(self.on_shell_stop),
            t.RUN_SCRIPT.value: Route(self.on_run_script, result=t.RUN_SCRIPT.value),
            t.RUN_STREAM_SCRIPT.value: Route(self.on_run_stream_script),
            t.WRITE_FILE.value: Route(self.on_write_file, result=t.WRITE_FILE.value),
            t.RESTART_SERVICE.value: Route(self.on_restart_service, result=t.RESTART_SERVICE.value),
            t.STOP_SERVICE.value: Route(self.on_stop_service, result=t.STOP_SERVICE.value),
            t.SINGBOX_TEST.value: Route(self.on_singbox_test, result=t.SINGBOX_TEST.value),
        }

    # Proxy-engine configuration

    async def on_add_service(self, session: ControlSession, payload: Any) -> Any:
        services = _service_list(payload)
        wrapped = services is None
        if wrapped:
            services = _service_list(_as_dict(payload).get("services"))
            if not services:
                self.logger.warning("AddService payload not understood")
                return None
        try:
            await self.engine.apply_services(services)
        except Exception as exc:
            self.oplog.emit("gost_api_err", "apply AddService failed", {"error": str(exc)})
            if not wrapped:
                raise
            return {"success": False, "message": str(exc)}
        return {"success": True, "message": "ok"}

    async def on_update_service(self, session: ControlSession, payload: Any) -> None:
        services = _service_list(payload)
        if services is None:
            self.logger.warning("UpdateService payload not understood")
            return
        try:
            await self.engine.apply_services(services, update_only=True)
        except Exception as exc:
            self.oplog.emit("gost_api_err", "apply UpdateService failed", {"error": str(exc)})
            raise

    async def on_upsert_limiters(self, session: ControlSession, payload: Any) -> None:
        limiters = _service_list(payload)
        if limiters is None:
            self.logger.warning("UpsertLimiters payload not understood")
            return
        try:
            await self.engine.upsert_limiters(limiters)
        except Exception as exc:
            self.oplog.emit("gost_api_err", "apply UpsertLimiters failed", {"error": str(exc)})
            raise

    async def on_delete_service(self, session: ControlSession, payload: Any) -> None:
        names = _names(payload)
        if names:
            await self.engine.delete_services(names)

    async def on_pause_service(self, session: ControlSession, payload: Any) -> None:
        names = _names(payload)
        if names:
            self.engine.set_paused(names, True)

    async def on_resume_service(self, session: ControlSession, payload: Any) -> None:
        names = _names(payload)
        if names:
            self.engine.set_paused(names, False)

    async def on_get_service(self, session: ControlSession, payload: Any) -> Any:
        name = str(_as_dict(payload).get("name") or "")
        if not name:
            return None
        return await self.engine.get_service(name)

    async def on_query_services(self, session: ControlSession, payload: Any) -> Any:
        return await self.engine.query_services(str(_as_dict(payload).get("filter") or ""))

    async def on_enable_api(self, session: ControlSession, payload: Any) -> None:
        await self.engine.enable_api()

    async def on_restart_engine(self, session: ControlSession, payload: Any) -> None:
        await self.engine.restart_engine()

    # Diagnostics

    async def on_diagnose(self, session: ControlSession, payload: Any) -> Any:
        return await diagnose(_as_dict(payload))

    async def on_suggest_ports(self, session: ControlSession, payload: Any) -> Any:
        req = _as_dict(payload)
        return {"ports": await suggest_ports(_int(req.get("base")), _int(req.get("count")))}

    async def on_probe_port(self, session: ControlSession, payload: Any) -> Any:
        port = _int(_as_dict(payload).get("port"))
        return {"port": port, "listening": await port_listening(port)}

    async def on_singbox_test(self, session: ControlSession, payload: Any) -> Any:
        return {"success": False, "message": "unsupported"}

    # AnyTLS

    async def on_set_anytls(self, session: ControlSession, payload: Any) -> Any:
        cfg = AnyTLSConfig.from_dict(_as_dict(payload))
        await self.anytls.apply(cfg)
        return {"success": True, "message": "ok"}

    # Log capture

    async def on_log_capture_start(self, session: ControlSession, payload: Any) -> None:
        req = _as_dict(payload)
        await self.captures.start(str(req.get("requestId") or ""), str(req.get("target") or ""))

    async def on_log_capture_stop(self, session: ControlSession, payload: Any) -> Any:
        req = _as_dict(payload)
        return await self.captures.stop(str(req.get("requestId") or ""), str(req.get("target") or ""))

    # Agent lifecycle

    async def on_upgrade_self(self, session: ControlSession, payload: Any) -> None:
        await self.upgrades.self_upgrade()

    async def on_upgrade_primary(self, session: ControlSession, payload: Any) -> None:
        await self.upgrades.upgrade(ROLE_PRIMARY, str(_as_dict(payload).get("to") or ""))

    async def on_upgrade_secondary(self, session: ControlSession, payload: Any) -> None:
        await self.upgrades.upgrade(ROLE_SECONDARY, str(_as_dict(payload).get("to") or ""))

    async def on_uninstall(self, session: ControlSession, payload: Any) -> None:
        await self.upgrades.uninstall()

    # Shell

    async def on_shell_start(self, session: ControlSession, payload: Any) -> None:
        req = _as_dict(payload)
        await self.shells.start(str(req.get("sessionId") or ""), _int(req.get("rows")), _int(req.get("cols")))

    async def on_shell_input(self, session: ControlSession, payload: Any) -> None:
        req = _as_dict(payload)
        await self.shells.input(str(req.get("sessionId") or ""), str(req.get("data") or ""))

    async def on_shell_resize(self, session: ControlSession, payload: Any) -> None:
        req = _as_dict(payload)
        await self.shells.resize(str(req.get("sessionId") or ""), _int(req.get("rows")), _int(req.get("cols")))

    async def on_shell_stop(self, session: ControlSession, payload: Any) -> None:
        await self.shells.stop(str(_as_dict(payload).get("sessionId") or ""))

    # Generic host operations

    async def on_run_script(self, session: ControlSession, payload: Any) -> Any:
        req = _as_dict(payload)
        content = str(req.get("content") or "")
        self.oplog.emit(
            "run_script_recv",
            f"RunScript recv hasContent={bool(content)} contentLen={len(content)} url={req.get('url') or ''}",
        )
        result = await run_script(req)
        self.oplog.emit("run_script_done", f"RunScript done success={result.get('success')} message={result.get('message')}")
        return result

    async def on_run_stream_script(self, session: ControlSession, payload: Any) -> None:
        req = _as_dict(payload)
        stream = StreamExecSession(
            str(req.get("requestId") or ""),
            str(req.get("endpoint") or ""),
            str(req.get("secret") or ""),
            str(req.get("type") or ""),
        )
        await stream.run(str(req.get("content") or ""), str(req.get("url") or ""))

    async def on_write_file(self, session: ControlSession, payload: Any) -> Any:
        req = _as_dict(payload)
        path = str(req.get("path") or "")
        self.oplog.emit("write_file_recv", f"WriteFile recv path={path} bytes={len(str(req.get('content') or ''))}")
        result = write_file(req)
        self.oplog.emit("write_file_done", f"WriteFile done path={path} success={result.get('success')}")
        return result

    async def on_restart_service(self, session: ControlSession, payload: Any) -> Any:
        name = str(_as_dict(payload).get("name") or "")
        if not name:
            return {"success": False, "message": "empty name"}
        self.oplog.emit("restart_service_recv", f"RestartService recv name={name}")
        ok = await self.services.restart(name)
        self.oplog.emit("restart_service_done", f"RestartService done name={name} success={ok}")
        return {"success": ok}

    async def on_stop_service(self, session: ControlSession, payload: Any) -> Any:
        name = str(_as_dict(payload).get("name") or "")
        if not name:
            return {"success": False, "message": "empty name"}
        return {"success": await self.services.stop(name)}
