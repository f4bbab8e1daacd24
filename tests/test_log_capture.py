"""Tests for start/stop log capture."""

import pytest

from agent.log_capture import LogCaptureRegistry, journal_empty, read_from_offset


def _registry(tmp_path, journal=False, reader=None):
    log = tmp_path / "gost.log"
    log.write_text("before\n", encoding="utf-8")

    async def no_reader(unit, since):
        raise RuntimeError("journal unavailable")

    return (
        LogCaptureRegistry(
            has_journal=lambda: journal,
            journal_reader=reader or no_reader,
            candidates={"gost": (str(log),), "agent": ()},
        ),
        log,
    )


class TestLogCapture:
    """Tests for LogCaptureRegistry."""

    @pytest.mark.asyncio
    async def test_file_capture_returns_only_new_lines(self, tmp_path):
        """Lines written after start are returned; earlier ones are not."""
        registry, log = _registry(tmp_path)
        started = await registry.start("r1", "gost")
        assert started == {"success": True, "source": "file"}
        with log.open("a", encoding="utf-8") as f:
            f.write("after\n")
        result = await registry.stop("r1", "gost")
        assert result["success"] is True
        assert result["log"] == "after\n"

    @pytest.mark.asyncio
    async def test_stop_twice_reports_not_found(self, tmp_path):
        """A capture is consumed by the first stop."""
        registry, _ = _registry(tmp_path)
        await registry.start("r1", "gost")
        await registry.stop("r1", "gost")
        second = await registry.stop("r1", "gost")
        assert second == {"success": False, "message": "capture not found"}
        assert registry.pending() == 0

    @pytest.mark.asyncio
    async def test_unknown_target(self, tmp_path):
        """Targets other than gost and agent are refused."""
        registry, _ = _registry(tmp_path)
        assert (await registry.start("r1", "kernel"))["success"] is False

    @pytest.mark.asyncio
    async def test_missing_request_id(self, tmp_path):
        """Start and stop require a request id."""
        registry, _ = _registry(tmp_path)
        assert (await registry.start("", "gost"))["message"] == "missing requestId"
        assert (await registry.stop("", "gost"))["message"] == "missing requestId"

    @pytest.mark.asyncio
    async def test_journal_preferred(self, tmp_path):
        """With journald, the first unit that has entries wins."""
        calls = []

        async def reader(unit, since):
            calls.append(unit)
            return "-- No entries --" if unit == "gost" else "line from " + unit

        registry, _ = _registry(tmp_path, journal=True, reader=reader)
        await registry.start("r1", "gost")
        result = await registry.stop("r1", "gost")
        assert result == {"success": True, "source": "journal", "log": "line from gost.service"}
        assert calls == ["gost", "gost.service"]

    @pytest.mark.asyncio
    async def test_journal_error_falls_back_to_file(self, tmp_path):
        """When journalctl fails the file tail is used."""
        registry, log = _registry(tmp_path, journal=True)
        await registry.start("r1", "gost")
        with log.open("a", encoding="utf-8") as f:
            f.write("tail\n")
        result = await registry.stop("r1", "gost")
        assert result == {"success": True, "source": "file", "log": "tail\n"}


class TestHelpers:
    """Tests for journal and file helpers."""

    def test_journal_empty(self):
        """Blank output and the no-entries marker count as empty."""
        assert journal_empty("  \n")
        assert journal_empty("-- No entries --\n")
        assert not journal_empty("Jan 01 gost[1]: started")

    def test_truncated_file_is_read_whole(self, tmp_path):
        """An offset past the end means the file was rotated."""
        path = tmp_path / "a.log"
        path.write_text("new\n", encoding="utf-8")
        assert read_from_offset(str(path), 100) == "new\n"
