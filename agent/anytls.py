from __future__ import annotations

import asyncio
import contextlib
import importlib
import ipaddress
import logging
import socket
import ssl
import struct
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

import aiohttp

from agent.control import run_isolated
from agent.panel import PanelClient, PanelError
from common.config import load_json, save_json, write_with_mode
from common.crypto import digest_matches, generate_self_signed_cert, password_digest

DIGEST_SIZE = 32
COPY_BUF = 32 * 1024
MIN_BURST = 4 * 1024
MAX_BURST = 1 << 20
FLOW_REPORT_SEC = 5.0
UOT_MAGIC = "udp-over-tcp.arpa"

ATYP_IPV4 = 0x01
ATYP_FQDN = 0x03
ATYP_IPV6 = 0x04


class Stream(Protocol):
    """One multiplexed stream handed out by the session layer."""

    async def read(self, n: int = -1) -> bytes: ...

    async def readexactly(self, n: int) -> bytes: ...

    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...

    async def handshake_success(self) -> None: ...

    async def handshake_failure(self, err: str) -> None: ...


class SessionLayer(Protocol):
    async def serve(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        on_stream: Callable[[Stream], Awaitable[None]],
    ) -> None: ...


Fallback = Callable[[asyncio.StreamReader, asyncio.StreamWriter, bytes], Awaitable[None]]


async def close_fallback(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, consumed: bytes) -> None:
    """Default handling of unauthenticated peers: nothing is sent, the connection is closed."""
    writer.close()


def load_session_layer(path: str) -> SessionLayer | None:
    """Instantiate ``module:attr``; empty means no session layer."""
    if not path:
        return None
    module_name, _, attr = path.partition(":")
    if not attr:
        raise ValueError(f"session layer must be module:attr, got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


@dataclass(slots=True)
class UserRule:
    user_id: int
    password: str
    speed_bps: int = 0


@dataclass(slots=True)
class AnyTLSConfig:
    port: int
    password: str
    base_user_id: int = 0
    exit_ip: str = ""
    allow_fallback: bool = False
    users: list[UserRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnyTLSConfig:
        users = []
        for item in data.get("users") or []:
            if not isinstance(item, dict):
                continue
            users.append(
                UserRule(
                    int(item.get("userId") or 0),
                    str(item.get("password") or ""),
                    int(item.get("speedBps") or 0),
                )
            )
        return cls(
            port=int(data.get("port") or 0),
            password=str(data.get("password") or ""),
            base_user_id=int(data.get("baseUserId") or 0),
            exit_ip=str(data.get("exitIp") or "").strip(),
            allow_fallback=bool(data.get("allowFallback")),
            users=users,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"port": self.port, "password": self.password}
        if self.base_user_id:
            out["baseUserId"] = self.base_user_id
        if self.exit_ip:
            out["exitIp"] = self.exit_ip
        if self.allow_fallback:
            out["allowFallback"] = True
        if self.users:
            out["users"] = [
                {"userId": u.user_id, "password": u.password, **({"speedBps": u.speed_bps} if u.speed_bps else {})}
                for u in self.users
            ]
        return out

    @property
    def valid(self) -> bool:
        return 0 < self.port <= 65535 and bool(self.password)

    def listen_key(self) -> tuple[Any, ...]:
        users = tuple((u.user_id, u.password, u.speed_bps) for u in self.users)
        return self.port, self.password, self.exit_ip, self.allow_fallback, users


@dataclass(slots=True)
class AuthRule:
    user_id: int
    digest: bytes
    speed_bps: int = 0


def build_rules(cfg: AnyTLSConfig) -> list[AuthRule]:
    rules = []
    if cfg.password:
        rules.append(AuthRule(max(cfg.base_user_id, 0), password_digest(cfg.password)))
    for user in cfg.users:
        password = user.password.strip()
        if password:
            rules.append(AuthRule(user.user_id, password_digest(password), user.speed_bps))
    return rules


def match_rule(rules: list[AuthRule], digest: bytes) -> AuthRule | None:
    found = None
    # Every rule is compared, even after a match.
    for rule in rules:
        if digest_matches(digest, rule.digest) and found is None:
            found = rule
    return found


def load_config(path: Path) -> AnyTLSConfig | None:
    data = load_json(path)
    if not isinstance(data, dict):
        return None
    try:
        cfg = AnyTLSConfig.from_dict(data)
    except (TypeError, ValueError):
        return None
    return cfg if cfg.valid else None


def save_config(path: Path, cfg: AnyTLSConfig) -> None:
    save_json(path, cfg.to_dict(), mode=0o600, indent=None)


def ensure_certificate(cert_path: Path, key_path: Path) -> ssl.SSLContext:
    """Server context from the cached pair, regenerating it when missing or unreadable."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    try:
        ctx.load_cert_chain(cert_path, key_path)
        return ctx
    except (OSError, ssl.SSLError):
        pass
    cert_pem, key_pem = generate_self_signed_cert("anytls")
    cert_path.parent.mkdir(parents=True, exist_ok=True)
    for path, pem in ((cert_path, cert_pem), (key_path, key_pem)):
        write_with_mode(path, pem, 0o600)
    ctx.load_cert_chain(cert_path, key_path)
    return ctx


async def read_socks_addr(reader: Any) -> tuple[str, int]:
    """Read a SOCKS-style address: type byte, host, 2-byte big-endian port."""
    (atyp,) = await reader.readexactly(1)
    if atyp == ATYP_IPV4:
        host = socket.inet_ntop(socket.AF_INET, await reader.readexactly(4))
    elif atyp == ATYP_IPV6:
        host = socket.inet_ntop(socket.AF_INET6, await reader.readexactly(16))
    elif atyp == ATYP_FQDN:
        (length,) = await reader.readexactly(1)
        host = (await reader.readexactly(length)).decode("idna")
    else:
        raise ValueError(f"unknown address type {atyp}")
    (port,) = struct.unpack("!H", await reader.readexactly(2))
    return host, port


def encode_socks_addr(host: str, port: int) -> bytes:
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        raw = host.encode("idna")
        return bytes([ATYP_FQDN, len(raw)]) + raw + struct.pack("!H", port)
    atyp = ATYP_IPV4 if ip.version == 4 else ATYP_IPV6
    return bytes([atyp]) + ip.packed + struct.pack("!H", port)


def ip_version(host: str) -> int:
    """4 or 6 for literals, 0 for names."""
    try:
        return ipaddress.ip_address(host).version
    except ValueError:
        return 0


def is_local_ip(ip: str) -> bool:
    family = socket.AF_INET6 if ip_version(ip) == 6 else socket.AF_INET
    with socket.socket(family, socket.SOCK_DGRAM) as sock:
        try:
            sock.bind((ip, 0))
        except OSError:
            return False
    return True


class RateLimiter:
    """Token bucket over bytes: ``rate`` per second, at most ``burst`` saved up.

    A wait larger than the saved tokens is paid for by sleeping off the debt,
    so single datagrams bigger than ``burst`` still pass.
    """

    def __init__(self, rate: float, burst: int):
        self.rate = float(rate)
        self.burst = burst
        self._tokens = float(burst)
        self._stamp = time.monotonic()

    async def wait(self, n: int) -> None:
        now = time.monotonic()
        self._tokens = min(float(self.burst), self._tokens + (now - self._stamp) * self.rate)
        self._stamp = now
        self._tokens -= n
        if self._tokens < 0:
            await asyncio.sleep(-self._tokens / self.rate)


def new_rate_limiter(bps: int) -> tuple[RateLimiter | None, int]:
    """Limiter for one relay direction and the read size to use with it."""
    if bps <= 0:
        return None, COPY_BUF
    burst = min(max(bps // 2, MIN_BURST), MAX_BURST)
    return RateLimiter(bps, burst), burst


class FlowAccounting:
    """Per-user byte deltas, flushed to the panel on a timer and at stop."""

    def __init__(self, panel: PanelClient | None):
        self.logger = logging.getLogger("agent.anytls")
        self.panel = panel
        self._pending: dict[int, list[int]] = {}

    def add(self, user_id: int, in_bytes: int = 0, out_bytes: int = 0) -> None:
        if user_id <= 0 or (in_bytes <= 0 and out_bytes <= 0):
            return
        entry = self._pending.setdefault(user_id, [0, 0])
        entry[0] += in_bytes
        entry[1] += out_bytes

    async def flush(self) -> None:
        pending, self._pending = self._pending, {}
        if self.panel is None:
            return
        for user_id, (in_bytes, out_bytes) in pending.items():
            try:
                await self.panel.report_anytls_flow(user_id, in_bytes, out_bytes)
            except (PanelError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                self.logger.warning("anytls_flow_report_err user_id=%s err=%s", user_id, exc)

    async def run(self, interval: float = FLOW_REPORT_SEC) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.flush()


class AnyTLSGateway:
    def __init__(
        self,
        config: dict[str, Any],
        panel: PanelClient | None = None,
        session_layer: SessionLayer | None = None,
        fallback: Fallback = close_fallback,
    ):
        self.logger = logging.getLogger("agent.anytls")
        config_dir = Path(str(config.get("config_dir", "/etc/gost")))
        self.config_path = config_dir / "anytls.json"
        self.cert_path = config_dir / "anytls_cert.pem"
        self.key_path = config_dir / "anytls_key.pem"
        self.session_layer = session_layer
        self.fallback = fallback
        self.flows = FlowAccounting(panel)
        self.current: AnyTLSConfig | None = None
        self.rules: list[AuthRule] = []
        self.local_ip = ""
        self.allow_fallback = False
        self._servers: list[asyncio.AbstractServer] = []
        self._conn_tasks: set[asyncio.Task[Any]] = set()
        self._flow_task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return bool(self._servers)

    async def boot(self) -> None:
        """Start from the persisted config, if there is a usable one."""
        cfg = load_config(self.config_path)
        if cfg is None:
            return
        try:
            await self.start(cfg)
        except (OSError, ValueError, ssl.SSLError) as exc:
            self.logger.warning("anytls boot failed err=%s", exc)

    async def apply(self, cfg: AnyTLSConfig) -> None:
        """Start or restart the listener for ``cfg`` and persist it."""
        await self.start(cfg)
        save_config(self.config_path, cfg)

    async def start(self, cfg: AnyTLSConfig) -> bool:
        """Returns False when the running listener already matches ``cfg``."""
        if not cfg.valid:
            raise ValueError("invalid anytls config")
        async with self._lock:
            if self.running and self.current is not None and self.current.listen_key() == cfg.listen_key():
                return False
            await self._stop_locked()
            local_ip = ""
            if cfg.exit_ip:
                if not ip_version(cfg.exit_ip):
                    raise ValueError("invalid exitIp")
                if is_local_ip(cfg.exit_ip):
                    local_ip = cfg.exit_ip
                else:
                    self.logger.warning("anytls_exitip_not_local exit_ip=%s", cfg.exit_ip)
            ctx = ensure_certificate(self.cert_path, self.key_path)
            servers = await self._listen(cfg.port, ctx)
            self._servers = servers
            self.current = cfg
            self.rules = build_rules(cfg)
            self.local_ip = local_ip
            self.allow_fallback = cfg.allow_fallback
            self._flow_task = asyncio.create_task(self.flows.run(), name="anytls-flow")
        self.logger.info(
            "anytls_start port=%s exit_ip=%s allow_fallback=%s listeners=%s",
            cfg.port,
            cfg.exit_ip,
            cfg.allow_fallback,
            len(servers),
        )
        return True

    async def _listen(self, port: int, ctx: ssl.SSLContext) -> list[asyncio.AbstractServer]:
        servers = []
        for host, family in (("::", socket.AF_INET6), ("0.0.0.0", socket.AF_INET)):
            try:
                server = await asyncio.start_server(
                    self._accept, host=host, port=port, family=family, ssl=ctx, reuse_address=True
                )
            except OSError as exc:
                self.logger.warning("anytls_listen_err host=%s port=%s err=%s", host, port, exc)
                continue
            servers.append(server)
        if not servers:
            raise OSError(f"listen anytls failed on port {port}")
        return servers

    async def stop(self) -> None:
        async with self._lock:
            await self._stop_locked()

    async def _stop_locked(self) -> None:
        for server in self._servers:
            server.close()
        self._servers = []
        tasks = list(self._conn_tasks)
        if self._flow_task is not None:
            tasks.append(self._flow_task)
            self._flow_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.flows.flush()

    async def _accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._conn_tasks.add(task)
        try:
            await run_isolated(self.handle_connection(reader, writer), self.logger, "anytls-conn")
        finally:
            if task is not None:
                self._conn_tasks.discard(task)
            writer.close()

    async def authenticate(self, reader: asyncio.StreamReader) -> tuple[AuthRule | None, bytes]:
        """Consume digest and padding; returns the matched rule and the bytes read."""
        consumed = bytearray()
        try:
            digest = await reader.readexactly(DIGEST_SIZE)
        except asyncio.IncompleteReadError as exc:
            return None, bytes(exc.partial)
        consumed += digest
        rule = match_rule(self.rules, digest)
        if rule is None:
            return None, bytes(consumed)
        try:
            raw_len = await reader.readexactly(2)
            consumed += raw_len
            (padding_len,) = struct.unpack("!H", raw_len)
            if padding_len:
                consumed += await reader.readexactly(padding_len)
        except asyncio.IncompleteReadError as exc:
            return None, bytes(consumed + exc.partial)
        return rule, bytes(consumed)

    async def handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        rule, consumed = await self.authenticate(reader)
        if rule is None:
            await self.fallback(reader, writer, consumed)
            return
        if self.session_layer is None:
            self.logger.warning("anytls session layer not configured, closing authenticated connection")
            return

        async def on_stream(stream: Stream) -> None:
            await run_isolated(self.handle_stream(stream, rule), self.logger, "anytls-stream")

        await self.session_layer.serve(reader, writer, on_stream)

    async def handle_stream(self, stream: Stream, rule: AuthRule) -> None:
        try:
            host, port = await read_socks_addr(stream)
            if UOT_MAGIC in host:
                await self.proxy_uot(stream, rule)
            else:
                await self.proxy_tcp(stream, host, port, rule)
        except (asyncio.IncompleteReadError, ValueError, OSError) as exc:
            self.logger.debug("anytls stream ended err=%s", exc)
        finally:
            stream.close()

    async def _resolve(self, host: str, port: int, family: int) -> list[str]:
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(host, port, family=family, type=socket.SOCK_STREAM)
        return [info[4][0] for info in infos]

    async def _dial_candidates(self, host: str, port: int) -> tuple[list[str], str]:
        """Destination addresses to try and the local address to bind, per the exit-ip policy."""
        if not self.local_ip:
            return [host], ""
        dest_version = ip_version(host)
        if ip_version(self.local_ip) == 4:
            if dest_version == 6:
                raise OSError("destination is ipv6 but exitIp is ipv4")
            if dest_version == 4:
                return [host], self.local_ip
            return await self._resolve(host, port, socket.AF_INET), self.local_ip
        if dest_version == 4:
            if self.allow_fallback:
                return [host], ""
            raise OSError("destination is ipv4 but exitIp is ipv6")
        if dest_version == 6:
            return [host], self.local_ip
        try:
            return await self._resolve(host, port, socket.AF_INET6), self.local_ip
        except OSError:
            if not self.allow_fallback:
                raise
        return await self._resolve(host, port, socket.AF_INET), ""

    async def proxy_tcp(self, stream: Stream, host: str, port: int, rule: AuthRule) -> None:
        last_exc: OSError | None = None
        remote: tuple[asyncio.StreamReader, asyncio.StreamWriter] | None = None
        try:
            candidates, local_ip = await self._dial_candidates(host, port)
        except OSError as exc:
            await stream.handshake_failure(str(exc))
            raise
        for addr in candidates:
            try:
                remote = await asyncio.open_connection(addr, port, local_addr=(local_ip, 0) if local_ip else None)
                break
            except OSError as exc:
                last_exc = exc
        if remote is None:
            await stream.handshake_failure(str(last_exc))
            raise last_exc or OSError(f"dial {host}:{port} failed")
        await stream.handshake_success()
        remote_reader, remote_writer = remote
        try:
            await self._relay(stream, remote_reader, remote_writer, rule)
        finally:
            remote_writer.close()
            with contextlib.suppress(OSError):
                await remote_writer.wait_closed()

    async def _relay(
        self,
        stream: Stream,
        remote_reader: asyncio.StreamReader,
        remote_writer: asyncio.StreamWriter,
        rule: AuthRule,
    ) -> None:
        user_id = rule.user_id
        limit_up, size_up = new_rate_limiter(rule.speed_bps)
        limit_down, size_down = new_rate_limiter(rule.speed_bps)

        async def upstream() -> None:
            while True:
                data = await stream.read(size_up)
                if not data:
                    if remote_writer.can_write_eof():
                        remote_writer.write_eof()
                    break
                if limit_up is not None:
                    await limit_up.wait(len(data))
                remote_writer.write(data)
                await remote_writer.drain()
                self.flows.add(user_id, in_bytes=len(data))

        async def downstream() -> None:
            while True:
                data = await remote_reader.read(size_down)
                if not data:
                    break
                if limit_down is not None:
                    await limit_down.wait(len(data))
                stream.write(data)
                await stream.drain()
                self.flows.add(user_id, out_bytes=len(data))

        tasks = [
            asyncio.create_task(upstream(), name="anytls-up"),
            asyncio.create_task(downstream(), name="anytls-down"),
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for task in done:
            with contextlib.suppress(OSError, ConnectionError):
                await task

    async def proxy_uot(self, stream: Stream, rule: AuthRule) -> None:
        """UDP-over-TCP: a request header, then length-prefixed datagrams."""
        (is_connect,) = await stream.readexactly(1)
        dest_host, dest_port = await read_socks_addr(stream)
        try:
            candidates, local_ip = await self._dial_candidates(dest_host, dest_port)
            dest_host = candidates[0]
            if not ip_version(dest_host):
                dest_host = (await self._resolve(dest_host, dest_port, socket.AF_UNSPEC))[0]
        except (OSError, IndexError) as exc:
            await stream.handshake_failure(str(exc))
            raise OSError(f"resolve {dest_host} failed: {exc}") from exc
        family = socket.AF_INET6 if ip_version(local_ip or dest_host) == 6 else socket.AF_INET
        bind_host = local_ip or ("::" if family == socket.AF_INET6 else "0.0.0.0")
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[tuple[bytes, tuple[str, int]]] = asyncio.Queue(maxsize=256)

        class _Receiver(asyncio.DatagramProtocol):
            def datagram_received(self, data: bytes, addr: tuple[Any, ...]) -> None:
                with contextlib.suppress(asyncio.QueueFull):
                    queue.put_nowait((data, (str(addr[0]), int(addr[1]))))

        try:
            transport, _ = await loop.create_datagram_endpoint(_Receiver, local_addr=(bind_host, 0), family=family)
        except OSError as exc:
            await stream.handshake_failure(str(exc))
            raise
        await stream.handshake_success()
        limit_up, _ = new_rate_limiter(rule.speed_bps)
        limit_down, _ = new_rate_limiter(rule.speed_bps)

        async def upstream() -> None:
            while True:
                if is_connect:
                    host, port = dest_host, dest_port
                else:
                    host, port = await read_socks_addr(stream)
                    if not ip_version(host):
                        host = (await self._resolve(host, port, family))[0]
                (length,) = struct.unpack("!H", await stream.readexactly(2))
                payload = await stream.readexactly(length)
                if limit_up is not None:
                    await limit_up.wait(length)
                transport.sendto(payload, (host, port))
                self.flows.add(rule.user_id, in_bytes=length)

        async def downstream() -> None:
            while True:
                payload, (host, port) = await queue.get()
                if limit_down is not None:
                    await limit_down.wait(len(payload))
                header = b"" if is_connect else encode_socks_addr(host, port)
                stream.write(header + struct.pack("!H", len(payload)) + payload)
                await stream.drain()
                self.flows.add(rule.user_id, out_bytes=len(payload))

        tasks = [
            asyncio.create_task(upstream(), name="anytls-uot-up"),
            asyncio.create_task(downstream(), name="anytls-uot-down"),
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            for task in done:
                with contextlib.suppress(asyncio.IncompleteReadError, OSError, ValueError):
                    await task
        finally:
            transport.close()
