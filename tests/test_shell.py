"""Tests for the single-session shell registry."""

import asyncio
import os

import pytest

from agent.shell import ShellRegistry, ShellSession
from conftest import wait_for_condition


class PipeShells(ShellRegistry):
    """Registry whose sessions use a plain pipe instead of a pty."""

    def __init__(self, send, argv=("sleep", "30")):
        super().__init__(send, grace=0.2)
        self.argv = argv
        self.spawned = 0
        self.pipes = []

    async def _spawn(self, session_id, rows, cols):
        self.spawned += 1
        proc = await asyncio.create_subprocess_exec(*self.argv, start_new_session=True)
        read_fd, write_fd = os.pipe()
        self.pipes.append((read_fd, write_fd))
        session = ShellSession(session_id, proc, write_fd)
        session.reader = asyncio.StreamReader()
        return session

    def close_pipes(self):
        for read_fd, write_fd in self.pipes:
            os.close(read_fd)
            os.close(write_fd)


class Recorder:
    def __init__(self):
        self.sent = []

    async def __call__(self, message):
        self.sent.append(message)

    def of_type(self, msg_type):
        return [m for m in self.sent if m["type"] == msg_type]


class TestShellRegistry:
    """Tests for ShellRegistry."""

    @pytest.mark.asyncio
    async def test_second_start_reuses_session(self):
        """Starting while a shell is live returns the same id and spawns nothing."""
        rec = Recorder()
        shells = PipeShells(rec)
        try:
            first = await shells.start("s1", 30, 100)
            second = await shells.start("s2")
            assert first == second == "s1"
            assert shells.spawned == 1
            assert [m["sessionId"] for m in rec.of_type("ShellReady")] == ["s1", "s1"]
        finally:
            await shells.close()
            shells.close_pipes()

    @pytest.mark.asyncio
    async def test_output_and_input(self):
        """Child output becomes ShellData; input reaches the session fd."""
        rec = Recorder()
        shells = PipeShells(rec)
        try:
            await shells.start("s1")
            shells._active.reader.feed_data("héllo".encode("utf-8"))
            await wait_for_condition(lambda: rec.of_type("ShellData"))
            assert rec.of_type("ShellData")[0]["data"] == "héllo"
            assert shells.history() == "héllo".encode("utf-8")
            assert await shells.input("s1", "ls\n")
            assert os.read(shells.pipes[0][0], 16) == b"ls\n"
        finally:
            await shells.close()
            shells.close_pipes()

    @pytest.mark.asyncio
    async def test_stop_emits_single_exit(self):
        """After ShellStop exactly one ShellExit with code 0 is sent."""
        rec = Recorder()
        shells = PipeShells(rec)
        try:
            await shells.start("s1")
            reader = shells._active.reader
            assert await shells.stop("s1")
            reader.feed_eof()
            await asyncio.sleep(0.1)
            assert rec.of_type("ShellExit") == [{"type": "ShellExit", "sessionId": "s1", "code": 0}]
            assert shells.active_id is None
        finally:
            await shells.close()
            shells.close_pipes()

    @pytest.mark.asyncio
    async def test_natural_exit_reports_code(self):
        """When the shell ends by itself its exit code is reported."""
        rec = Recorder()
        shells = PipeShells(rec, argv=("sh", "-c", "exit 3"))
        try:
            await shells.start("s1")
            shells._active.reader.feed_eof()
            await wait_for_condition(lambda: rec.of_type("ShellExit"))
            assert rec.of_type("ShellExit")[0]["code"] == 3
            assert shells.active_id is None
        finally:
            await shells.close()
            shells.close_pipes()

    @pytest.mark.asyncio
    async def test_input_without_session(self):
        """Input for a session that is not running is answered with ShellExit."""
        rec = Recorder()
        shells = PipeShells(rec)
        assert not await shells.input("ghost", "x")
        assert rec.of_type("ShellExit")[0]["sessionId"] == "ghost"
        assert rec.of_type("ShellExit")[0]["code"] == -1

    @pytest.mark.asyncio
    async def test_stop_unknown_session(self):
        """Stopping when nothing runs is a no-op."""
        rec = Recorder()
        shells = PipeShells(rec)
        assert not await shells.stop("nothing")
        assert rec.sent == []
