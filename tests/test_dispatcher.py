"""Tests for command routing and result correlation."""

import asyncio

import pytest

from agent.dispatcher import CommandDispatcher, Route, request_id_of
from conftest import FakeSession


class TestCommandDispatcher:
    """Tests for CommandDispatcher."""

    @pytest.mark.asyncio
    async def test_result_sent_once_with_request_id(self):
        """A correlated command yields exactly one <Type>Result."""

        async def handler(session, payload):
            return {"ports": [10001]}

        session = FakeSession()
        dispatcher = CommandDispatcher({"SuggestPorts": Route(handler, result="SuggestPorts")})
        await dispatcher.dispatch(session, {"type": "SuggestPorts", "data": {"requestId": "r1", "base": 10000}})
        await session.drain()
        assert session.sent == [{"type": "SuggestPortsResult", "requestId": "r1", "data": {"ports": [10001]}}]

    @pytest.mark.asyncio
    async def test_failure_becomes_result(self):
        """A raising handler still produces one failure result."""

        async def handler(session, payload):
            raise RuntimeError("boom")

        session = FakeSession()
        dispatcher = CommandDispatcher({"RunScript": Route(handler, result="RunScript")})
        await dispatcher.dispatch(session, {"type": "RunScript", "data": {"requestId": "r2"}})
        await session.drain()
        assert session.sent == [
            {"type": "RunScriptResult", "requestId": "r2", "data": {"success": False, "message": "boom"}}
        ]

    @pytest.mark.asyncio
    async def test_no_result_without_request_id(self):
        """Without a requestId nothing is sent even for result routes."""

        async def handler(session, payload):
            return {"success": True}

        session = FakeSession()
        dispatcher = CommandDispatcher({"AddService": Route(handler, result="AddService")})
        await dispatcher.dispatch(session, {"type": "AddService", "data": [{"name": "a"}]})
        await session.drain()
        assert session.sent == []

    @pytest.mark.asyncio
    async def test_unknown_type_ignored(self):
        """Unknown command types spawn nothing and send nothing."""
        session = FakeSession()
        await CommandDispatcher({}).dispatch(session, {"type": "NoSuchThing", "data": {"requestId": "r"}})
        assert session.tasks == []
        assert session.sent == []

    @pytest.mark.asyncio
    async def test_inline_runs_before_dispatch_returns(self):
        """Inline routes complete on the caller; others are spawned."""
        seen = []

        async def inline(session, payload):
            seen.append("inline")

        gate = asyncio.Event()

        async def slow(session, payload):
            await gate.wait()
            seen.append("slow")

        session = FakeSession()
        dispatcher = CommandDispatcher({"A": Route(inline, inline=True), "B": Route(slow)})
        await dispatcher.dispatch(session, {"type": "B", "data": None})
        await dispatcher.dispatch(session, {"type": "A", "data": None})
        assert seen == ["inline"]
        assert len(session.tasks) == 1
        gate.set()
        await session.drain()
        assert seen == ["inline", "slow"]

    @pytest.mark.asyncio
    async def test_closed_session_does_not_raise(self):
        """A result that cannot be delivered is dropped."""

        async def handler(session, payload):
            session.closed = True
            return {"success": True}

        session = FakeSession()
        dispatcher = CommandDispatcher({"WriteFile": Route(handler, result="WriteFile")})
        await dispatcher.dispatch(session, {"type": "WriteFile", "data": {"requestId": "r"}})
        await session.drain()
        assert session.sent == []

    def test_request_id_of(self):
        """requestId is read from object payloads only."""
        assert request_id_of({"requestId": "x"}) == "x"
        assert request_id_of({"requestId": 5}) == "5"
        assert request_id_of([{"requestId": "x"}]) == ""
        assert request_id_of(None) == ""
