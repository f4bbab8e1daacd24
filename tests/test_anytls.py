"""Tests for the AnyTLS gateway: authentication, streams, speed limits and the TLS listener."""

import asyncio
import socket
import ssl
import struct

import pytest

from agent.anytls import (
    AnyTLSConfig,
    AnyTLSGateway,
    AuthRule,
    build_rules,
    encode_socks_addr,
    load_config,
    match_rule,
    new_rate_limiter,
    read_socks_addr,
    save_config,
)
from common.crypto import password_digest
from conftest import wait_for_condition


class FakePanel:
    def __init__(self):
        self.flows = []

    async def report_anytls_flow(self, user_id, in_bytes, out_bytes):
        self.flows.append((user_id, in_bytes, out_bytes))


class FakeStream:
    """Multiplexed stream double: reads from a StreamReader, collects writes."""

    def __init__(self, data=b""):
        self.reader = asyncio.StreamReader()
        self.reader.feed_data(data)
        self.written = bytearray()
        self.handshake = None
        self.closed = False

    async def read(self, n=-1):
        return await self.reader.read(n)

    async def readexactly(self, n):
        return await self.reader.readexactly(n)

    def write(self, data):
        self.written += data

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def handshake_success(self):
        self.handshake = "ok"

    async def handshake_failure(self, err):
        self.handshake = "fail: " + err


class RecordingLayer:
    """Session layer that hands one prepared stream to the gateway."""

    def __init__(self, stream=None):
        self.served = 0
        self.stream = stream

    async def serve(self, reader, writer, on_stream):
        self.served += 1
        if self.stream is not None:
            await on_stream(self.stream)


def _gateway(tmp_path, layer=None, panel=None, fallback=None):
    fallbacks = []

    async def record_fallback(reader, writer, consumed):
        fallbacks.append(consumed)

    gateway = AnyTLSGateway(
        {"config_dir": str(tmp_path)},
        panel=panel,
        session_layer=layer,
        fallback=fallback or record_fallback,
    )
    cfg = AnyTLSConfig(port=8443, password="main", base_user_id=7)
    gateway.current = cfg
    gateway.rules = build_rules(cfg)
    return gateway, fallbacks


def _auth_bytes(password, padding=b""):
    return password_digest(password) + struct.pack("!H", len(padding)) + padding


class TestAuthentication:
    """Tests for digest authentication."""

    @pytest.mark.asyncio
    async def test_valid_digest_consumes_padding(self, tmp_path):
        """A matching digest and its padding are consumed, the rest is left."""
        gateway, _ = _gateway(tmp_path)
        reader = asyncio.StreamReader()
        reader.feed_data(_auth_bytes("main", b"\x00" * 5) + b"rest")
        rule, consumed = await gateway.authenticate(reader)
        assert rule is not None and rule.user_id == 7
        assert len(consumed) == 32 + 2 + 5
        assert await reader.readexactly(4) == b"rest"

    @pytest.mark.asyncio
    async def test_wrong_digest_goes_to_fallback(self, tmp_path):
        """Unknown digests hand the consumed bytes to the fallback."""
        layer = RecordingLayer()
        gateway, fallbacks = _gateway(tmp_path, layer)
        reader = asyncio.StreamReader()
        reader.feed_data(_auth_bytes("wrong"))
        await gateway.handle_connection(reader, None)
        assert fallbacks == [password_digest("wrong")]
        assert layer.served == 0

    @pytest.mark.asyncio
    async def test_short_read_goes_to_fallback(self, tmp_path):
        """A connection that closes mid-digest is not authenticated."""
        gateway, fallbacks = _gateway(tmp_path, RecordingLayer())
        reader = asyncio.StreamReader()
        reader.feed_data(b"GET / HTTP/1.1\r\n")
        reader.feed_eof()
        await gateway.handle_connection(reader, None)
        assert fallbacks == [b"GET / HTTP/1.1\r\n"]

    @pytest.mark.asyncio
    async def test_without_session_layer(self, tmp_path):
        """Authenticated connections are closed when no session layer is loaded."""
        gateway, fallbacks = _gateway(tmp_path, None)
        reader = asyncio.StreamReader()
        reader.feed_data(_auth_bytes("main"))
        await gateway.handle_connection(reader, None)
        assert fallbacks == []

    def test_user_rules(self):
        """Each user password adds a rule with its own user id."""
        cfg = AnyTLSConfig.from_dict(
            {"port": 1, "password": "main", "users": [{"userId": 11, "password": "u1"}, {"userId": 12, "password": " "}]}
        )
        rules = build_rules(cfg)
        assert [r.user_id for r in rules] == [0, 11]
        assert match_rule(rules, password_digest("u1")).user_id == 11
        assert match_rule(rules, password_digest("nope")) is None


class TestStreams:
    """Tests for stream handling through a fake session layer."""

    @pytest.mark.asyncio
    async def test_tcp_relay_and_flow_accounting(self, tmp_path):
        """A stream is dialed, relayed both ways and its bytes are counted."""

        async def echo(reader, writer):
            data = await reader.read(4)
            writer.write(data)
            await writer.drain()
            await reader.read()
            writer.close()

        server = await asyncio.start_server(echo, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        stream = FakeStream(encode_socks_addr("127.0.0.1", port) + b"ping")
        panel = FakePanel()
        gateway, _ = _gateway(tmp_path, RecordingLayer(stream), panel)
        reader = asyncio.StreamReader()
        reader.feed_data(_auth_bytes("main"))
        try:
            task = asyncio.create_task(gateway.handle_connection(reader, None))
            await wait_for_condition(lambda: bytes(stream.written) == b"ping")
            stream.reader.feed_eof()
            await asyncio.wait_for(task, 3)
        finally:
            server.close()
            await server.wait_closed()
        assert stream.handshake == "ok"
        assert stream.closed
        await gateway.flows.flush()
        assert panel.flows == [(7, 4, 4)]

    @pytest.mark.asyncio
    async def test_dial_failure_reports_handshake(self, tmp_path):
        """An exit ip of the other family fails the handshake."""
        gateway, _ = _gateway(tmp_path)
        gateway.local_ip = "127.0.0.1"
        stream = FakeStream(encode_socks_addr("::1", 80))
        await gateway.handle_stream(stream, gateway.rules[0])
        assert stream.handshake.startswith("fail:")
        assert stream.closed

    @pytest.mark.asyncio
    async def test_limited_user_is_throttled(self, tmp_path):
        """A user with speedBps has its copy paced to that rate."""
        received = bytearray()

        async def sink(reader, writer):
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                received.extend(data)
            writer.close()

        server = await asyncio.start_server(sink, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        stream = FakeStream(encode_socks_addr("127.0.0.1", port) + b"x" * 30000)
        stream.reader.feed_eof()
        gateway, _ = _gateway(tmp_path)
        rule = AuthRule(7, password_digest("main"), speed_bps=20000)
        loop = asyncio.get_running_loop()
        try:
            started = loop.time()
            await asyncio.wait_for(gateway.handle_stream(stream, rule), 10)
            elapsed = loop.time() - started
            await wait_for_condition(lambda: len(received) == 30000)
        finally:
            server.close()
            await server.wait_closed()
        # 10000 bytes of burst, then 20000 bytes at 20000 B/s.
        assert elapsed >= 0.8
        assert stream.handshake == "ok"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("connect", [True, False])
    async def test_udp_over_tcp_echo(self, tmp_path, connect):
        """Datagrams framed on the stream reach a UDP peer and replies come back framed."""
        loop = asyncio.get_running_loop()

        class Echo(asyncio.DatagramProtocol):
            def connection_made(self, transport):
                self.transport = transport

            def datagram_received(self, data, addr):
                self.transport.sendto(data, addr)

        transport, _ = await loop.create_datagram_endpoint(Echo, local_addr=("127.0.0.1", 0))
        udp_port = transport.get_extra_info("sockname")[1]
        peer = encode_socks_addr("127.0.0.1", udp_port)
        request = encode_socks_addr("sp.v2.udp-over-tcp.arpa", 0) + (b"\x01" if connect else b"\x00") + peer
        frame = struct.pack("!H", 4) + b"ping"
        stream = FakeStream(request + (frame if connect else peer + frame))
        expected = frame if connect else peer + frame
        panel = FakePanel()
        gateway, _ = _gateway(tmp_path, panel=panel)
        try:
            task = asyncio.create_task(gateway.handle_stream(stream, gateway.rules[0]))
            await wait_for_condition(lambda: bytes(stream.written) == expected)
            stream.reader.feed_eof()
            await asyncio.wait_for(task, 3)
        finally:
            transport.close()
        assert stream.handshake == "ok"
        assert stream.closed
        await gateway.flows.flush()
        assert panel.flows == [(7, 4, 4)]


class TestAddressesAndConfig:
    """Tests for address codec and persisted config."""

    @pytest.mark.asyncio
    async def test_socks_addr_forms(self):
        """IPv4, IPv6 and domain forms decode to host and port."""
        reader = asyncio.StreamReader()
        for host, port in (("10.0.0.1", 80), ("2001:db8::1", 443), ("example.com", 53)):
            reader.feed_data(encode_socks_addr(host, port))
        assert await read_socks_addr(reader) == ("10.0.0.1", 80)
        assert await read_socks_addr(reader) == ("2001:db8::1", 443)
        assert await read_socks_addr(reader) == ("example.com", 53)

    @pytest.mark.asyncio
    async def test_unknown_address_type(self):
        """Unknown type bytes are rejected."""
        reader = asyncio.StreamReader()
        reader.feed_data(b"\x09\x00\x00")
        with pytest.raises(ValueError):
            await read_socks_addr(reader)

    def test_saved_config_reloads(self, tmp_path):
        """Persisted config is private and loads back equal."""
        cfg = AnyTLSConfig.from_dict(
            {"port": 8443, "password": "p", "exitIp": "10.0.0.5", "allowFallback": True, "users": [{"userId": 3, "password": "x"}]}
        )
        path = tmp_path / "anytls.json"
        save_config(path, cfg)
        assert path.stat().st_mode & 0o777 == 0o600
        assert load_config(path) == cfg

    def test_invalid_config_not_loaded(self, tmp_path):
        """A config without password is ignored at boot."""
        path = tmp_path / "anytls.json"
        path.write_text('{"port": 8443}', encoding="utf-8")
        assert load_config(path) is None

    def test_listen_key_tracks_listener_fields(self):
        """Only listener-relevant fields change the key."""
        a = AnyTLSConfig(port=1, password="p")
        assert a.listen_key() == AnyTLSConfig(port=1, password="p").listen_key()
        assert a.listen_key() != AnyTLSConfig(port=1, password="p", exit_ip="10.0.0.1").listen_key()
        assert a.listen_key() != AnyTLSConfig(port=2, password="p").listen_key()

    @pytest.mark.asyncio
    async def test_invalid_apply_rejected(self, tmp_path):
        """Applying a config without a port raises."""
        gateway, _ = _gateway(tmp_path)
        with pytest.raises(ValueError):
            await gateway.apply(AnyTLSConfig(port=0, password="p"))


class TestRateLimiter:
    """Tests for per-user speed limits."""

    def test_burst_sizing(self):
        """Burst is half the rate, clamped between 4 KiB and 1 MiB; zero means unlimited."""
        assert new_rate_limiter(0) == (None, 32 * 1024)
        assert new_rate_limiter(1000)[1] == 4 * 1024
        assert new_rate_limiter(20000)[1] == 10000
        assert new_rate_limiter(10**9)[1] == 1 << 20

    @pytest.mark.asyncio
    async def test_wait_paces_past_burst(self):
        """The burst passes at once; further bytes wait for the refill."""
        limiter, burst = new_rate_limiter(40960)
        loop = asyncio.get_running_loop()
        started = loop.time()
        await limiter.wait(burst)
        assert loop.time() - started < 0.1
        await limiter.wait(8192)
        assert loop.time() - started >= 0.15


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _tls_connect(port, password):
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    reader, writer = await asyncio.open_connection("127.0.0.1", port, ssl=ctx)
    writer.write(_auth_bytes(password))
    await writer.drain()
    return reader, writer


class TestListener:
    """Tests for the TLS listener started by apply."""

    @pytest.mark.asyncio
    async def test_tls_auth_reaches_session_layer(self, tmp_path):
        """A TLS client sending the digest and empty padding is handed to the session layer."""
        layer = RecordingLayer()
        gateway = AnyTLSGateway({"config_dir": str(tmp_path)}, session_layer=layer)
        port = _free_port()
        try:
            await gateway.apply(AnyTLSConfig(port=port, password="main"))
            assert gateway.running
            assert (tmp_path / "anytls_key.pem").stat().st_mode & 0o777 == 0o600
            _, writer = await _tls_connect(port, "main")
            await wait_for_condition(lambda: layer.served == 1, timeout=5)
            writer.close()
        finally:
            await gateway.stop()
        assert not gateway.running
        assert load_config(tmp_path / "anytls.json") == AnyTLSConfig(port=port, password="main")

    @pytest.mark.asyncio
    async def test_restart_only_on_listener_change(self, tmp_path):
        """Reapplying the same config keeps the listener; a new password replaces it."""
        layer = RecordingLayer()
        gateway, fallbacks = _gateway(tmp_path, layer)
        port = _free_port()
        try:
            await gateway.apply(AnyTLSConfig(port=port, password="main"))
            first = list(gateway._servers)
            await gateway.apply(AnyTLSConfig(port=port, password="main"))
            assert all(a is b for a, b in zip(gateway._servers, first))
            assert len(gateway._servers) == len(first)

            await gateway.apply(AnyTLSConfig(port=port, password="next"))
            assert gateway._servers
            assert all(new is not old for new in gateway._servers for old in first)

            _, writer = await _tls_connect(port, "main")
            await wait_for_condition(lambda: len(fallbacks) == 1, timeout=5)
            writer.close()
            _, writer = await _tls_connect(port, "next")
            await wait_for_condition(lambda: layer.served == 1, timeout=5)
            writer.close()
        finally:
            await gateway.stop()
