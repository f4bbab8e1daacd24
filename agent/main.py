from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys
from typing import Any

from agent.anytls import AnyTLSGateway, load_session_layer
from agent.commands import CommandHandlers
from agent.control import ControlSession, ControlSupervisor
from agent.diagnose import probe_loop
from agent.dispatcher import CommandDispatcher
from agent.engine import EngineClient, GostConfigFile
from agent.log_capture import LogCaptureRegistry
from agent.oplog import OpLogSink
from agent.panel import PanelClient
from agent.reconcile import Reconciler, report_services_loop
from agent.shell import ShellRegistry
from agent.telemetry import SystemReporter, heartbeat_loop
from agent.upgrade import SERVICE_NAMES, UpgradeEngine
from common.config import (
    ROLE_SECONDARY,
    VERSION_BASE,
    ConfigError,
    detect_role,
    ensure_agent_id,
    ensure_created_at,
    load_agent_config,
    version_for_role,
)
from common.log import setup_logging
from common.services import ServiceManager


class AgentApp:
    def __init__(self, config: dict[str, Any]):
        self.logger = logging.getLogger("agent.main")
        self.config = config
        self.oplog = OpLogSink()
        self.services = ServiceManager()
        self.panel = PanelClient(config)
        self.gost_file = GostConfigFile(str(config["config_dir"]))
        self.engine = EngineClient(config, self.oplog, self.services, self.gost_file)
        self.upgrades = UpgradeEngine(config, self.panel, self.services, self.oplog)
        self.anytls = AnyTLSGateway(
            config,
            panel=self.panel,
            session_layer=load_session_layer(str(config.get("anytls_session_layer") or "")),
        )
        self.reconciler = Reconciler(self.panel, self.gost_file, strict=bool(config.get("strict_reconcile")))
        self.reporter = SystemReporter(config, self.engine)
        self.shells = ShellRegistry(self._send_control)
        self.captures = LogCaptureRegistry()
        handlers = CommandHandlers(
            self.engine,
            self.upgrades,
            self.anytls,
            self.shells,
            self.captures,
            self.services,
            self.oplog,
        )
        self.dispatcher = CommandDispatcher(handlers.build_routes())
        self.supervisor = ControlSupervisor(config, self.dispatcher.dispatch, on_connected=self.on_connected)
        self.agent_id = ""
        self.created_ms = 0
        self._heartbeat_task: asyncio.Task[Any] | None = None
        self._control_task: asyncio.Task[Any] | None = None
        self._stopping = False

    async def _send_control(self, message: dict[str, Any]) -> None:
        if not await self.supervisor.send(message):
            raise ConnectionError("control session not connected")

    async def on_connected(self, session: ControlSession) -> None:
        """Start the tasks that live exactly as long as ``session``."""
        cfg = self.config
        session.spawn(self.oplog.forward(session.send_json), "oplog-forward")
        session.spawn(self.reporter.run(session), "sysinfo")
        session.spawn(
            self.reconciler.run(float(cfg.get("reconcile_delay", 1.2)), float(cfg.get("reconcile_interval", 300))),
            "reconcile",
        )
        session.spawn(
            report_services_loop(self.engine, self.panel, float(cfg.get("svc_report_sec", 5))),
            "service-report",
        )
        session.spawn(probe_loop(self.panel, float(cfg.get("probe_sec", 60))), "probe")
        session.spawn(self.upgrades.check_counterpart(), "counterpart-check")
        session.spawn(self.engine.bootstrap_once(), "engine-bootstrap")

    async def _disable_self_if_redundant(self) -> bool:
        """A secondary in single-agent mode turns its own unit off and stops."""
        if self.config["role"] != ROLE_SECONDARY or not self.config.get("single_agent"):
            return False
        self.logger.info("single agent mode, secondary exits")
        await self.services.disable(SERVICE_NAMES[ROLE_SECONDARY])
        return True

    async def start(self) -> None:
        if await self._disable_self_if_redundant():
            return
        config_dir = str(self.config["config_dir"])
        os.makedirs(config_dir, exist_ok=True)
        ip = await self.panel.external_ip(str(self.config.get("ip_lookup_url", "")))
        self.agent_id = ensure_agent_id(config_dir, ip)
        self.created_ms = ensure_created_at(config_dir)
        self.logger.info(
            "agent starting id=%s role=%s version=%s addr=%s",
            self.agent_id,
            self.config["role"],
            self.config["version"],
            self.config["addr"],
        )
        await self.anytls.boot()
        self._heartbeat_task = asyncio.create_task(
            heartbeat_loop(self.panel, self.config, self.agent_id, self.created_ms),
            name="agent-heartbeat",
        )
        self._control_task = asyncio.create_task(self.supervisor.run(), name="agent-control-loop")
        with contextlib.suppress(asyncio.CancelledError):
            await self._control_task

    async def shutdown(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        self.logger.info("agent shutting down")
        await self.shells.close()
        await self.supervisor.stop()
        for task in (self._heartbeat_task, self._control_task):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.anytls.stop()
        await self.engine.close()
        await self.panel.close()


def _install_signal_handlers(app: AgentApp) -> None:
    loop = asyncio.get_running_loop()

    async def _shutdown() -> None:
        await app.shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(_shutdown()))
        except NotImplementedError:
            signal.signal(sig, lambda *_: asyncio.create_task(_shutdown()))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Flux fleet agent")
    parser.add_argument("-a", dest="addr", default="", help="panel address host:port")
    parser.add_argument("-s", dest="secret", default="", help="node secret")
    parser.add_argument("-S", dest="scheme", default="", help="ws or wss")
    parser.add_argument("-c", dest="config", default="", help="optional agent yaml tunables file")
    parser.add_argument("-v", dest="show_version", action="store_true", help="print version and exit")
    return parser


async def _amain(cfg: dict[str, Any]) -> None:
    setup_logging(str(cfg.get("log_level", "info")))
    app = AgentApp(cfg)
    _install_signal_handlers(app)
    try:
        await app.start()
    finally:
        await app.shutdown()


def main() -> None:
    args = build_parser().parse_args()
    if args.show_version:
        print(version_for_role(os.environ.get("ROLE") or detect_role(sys.argv[0]), VERSION_BASE))
        return
    flags = {"addr": args.addr, "secret": args.secret, "scheme": args.scheme, "config": args.config}
    try:
        cfg = load_agent_config(flags, argv0=sys.argv[0])
    except ConfigError as exc:
        print(f"flux-agent: {exc}", file=sys.stderr)
        sys.exit(2)
    asyncio.run(_amain(cfg))


if __name__ == "__main__":
    main()
