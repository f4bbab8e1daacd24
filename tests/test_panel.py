"""Tests for the panel HTTP client against a local app."""

import pytest
from aiohttp import web

from agent.panel import PanelClient, PanelError


def _panel_app(seen, desired_code=0):
    app = web.Application()

    async def desired(request):
        seen.append(("desired", await request.json()))
        return web.json_response({"code": desired_code, "msg": "denied", "data": [{"name": "a"}, "junk"]})

    async def report(request):
        seen.append(("report", await request.json()))
        return web.json_response({"code": 0})

    async def version(request):
        return web.json_response({"code": 0, "data": {"agent": "go-agent-2.0.0.1", "agent2": "go-agent2-2.0.0.1"}})

    async def flow(request):
        seen.append(("flow", dict(request.query), await request.json()))
        return web.json_response({}, status=500 if request.query.get("secret") != "s3cret" else 200)

    app.router.add_post("/api/v1/agent/desired-services", desired)
    app.router.add_post("/api/v1/agent/report-services", report)
    app.router.add_get("/api/v1/version", version)
    app.router.add_post("/api/v1/flow/anytls", flow)
    return app


async def _client(serve_app, seen, **kw):
    base = await serve_app(_panel_app(seen, **kw))
    return PanelClient({"addr": base.removeprefix("http://"), "secret": "s3cret", "scheme": "ws"})


class TestPanelClient:
    """Tests for PanelClient."""

    def test_http_base_follows_scheme(self):
        """wss panels are reached over https."""
        assert PanelClient({"addr": "p:1", "secret": "s", "scheme": "wss"}).url("/x") == "https://p:1/x"
        assert PanelClient({"addr": "p:1", "secret": "s"}).url("/x") == "http://p:1/x"

    @pytest.mark.asyncio
    async def test_desired_services_sends_secret(self, serve_app):
        """The secret is added to every body; non-object items are dropped."""
        seen = []
        panel = await _client(serve_app, seen)
        try:
            assert await panel.desired_services() == [{"name": "a"}]
        finally:
            await panel.close()
        assert seen == [("desired", {"secret": "s3cret"})]

    @pytest.mark.asyncio
    async def test_nonzero_code_raises(self, serve_app):
        """A panel error code raises PanelError."""
        seen = []
        panel = await _client(serve_app, seen, desired_code=-1)
        try:
            with pytest.raises(PanelError, match="denied"):
                await panel.desired_services()
        finally:
            await panel.close()

    @pytest.mark.asyncio
    async def test_report_services_body(self, serve_app):
        """Hash reports carry names, hashes and a timestamp."""
        seen = []
        panel = await _client(serve_app, seen)
        try:
            await panel.report_services({"a": "h1"})
        finally:
            await panel.close()
        body = seen[0][1]
        assert body["services"] == ["a"]
        assert body["hashes"] == {"a": "h1"}
        assert body["timeMs"] > 0

    @pytest.mark.asyncio
    async def test_expected_versions(self, serve_app):
        """Versions for both roles are returned."""
        panel = await _client(serve_app, [])
        try:
            assert await panel.expected_versions() == ("go-agent-2.0.0.1", "go-agent2-2.0.0.1")
        finally:
            await panel.close()

    @pytest.mark.asyncio
    async def test_flow_report(self, serve_app):
        """Flow deltas are posted with the secret as a query parameter."""
        seen = []
        panel = await _client(serve_app, seen)
        try:
            await panel.report_anytls_flow(5, 100, 200)
        finally:
            await panel.close()
        assert seen == [("flow", {"secret": "s3cret"}, {"userId": 5, "inBytes": 100, "outBytes": 200})]
