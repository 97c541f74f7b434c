"""Tests for depotvault.core.progress module."""

import asyncio

import pytest

from depotvault.core.progress import (
    ProgressChannel,
    ProgressCoalescer,
    detect_auth_gate,
    parse_progress,
    strip_ansi,
)
from depotvault.core.types import DownloadPhase, GuardType, ProgressEvent


class TestParseProgress:
    """Test percentage extraction from downloader output."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            (" 12.34% depot/file.bin", 12.34),
            ("Downloaded 10 MB / 20 MB (50%)", 50.0),
            ("progress: 12.5%", 12.5),
            ("Downloading depot 2 of 4", 50.0),
            ("Depot download complete", 100.0),
            ("Total downloaded: 1.2 GB", 100.0),
        ],
    )
    def test_shapes(self, text: str, expected: float):
        """Each supported output shape yields its percentage."""
        assert parse_progress(text) == pytest.approx(expected)

    def test_no_progress(self):
        """Plain log lines carry no progress."""
        assert parse_progress("Connecting to Steam3...") is None
        assert parse_progress("") is None

    def test_clamped(self):
        """Percentages are clamped to [0, 100]."""
        assert parse_progress("(250%)") == 100.0

    def test_ansi_and_carriage_returns(self):
        """Escapes are stripped and carriage returns split lines."""
        assert strip_ansi("\x1b[32m10%\x1b[0m\rnext") == "10%\nnext"
        assert parse_progress("\x1b[32m 42.00% file.bin\x1b[0m") == pytest.approx(42.0)

    def test_first_line_wins_for_leading_percent(self):
        """A chunk holding several lines uses the first percent line."""
        assert parse_progress(" 10.00% a.bin\n 20.00% b.bin") == pytest.approx(10.0)


class TestDetectAuthGate:
    """Test confirmation prompt detection."""

    def test_email(self):
        """Email prompts are classified as EMAIL."""
        text = "Please enter the Steam Guard code sent to the email at ***@example.com:"
        assert detect_auth_gate(text) == GuardType.EMAIL

    def test_mobile(self):
        """Mobile app confirmations are classified as MOBILE."""
        text = "Use the Steam Mobile App to confirm your sign in..."
        assert detect_auth_gate(text) == GuardType.MOBILE

    def test_code(self):
        """Generic two-factor prompts are classified as CODE."""
        assert detect_auth_gate("Please enter your 2 factor auth code from your authenticator app:") == GuardType.CODE
        assert detect_auth_gate("Enter two-factor code:") == GuardType.CODE

    def test_regular_output(self):
        """Regular output is not an auth gate."""
        assert detect_auth_gate(" 50.00% file.bin") is None


class TestProgressChannel:
    """Test the bounded progress channel."""

    def test_drops_oldest_when_full(self):
        """Publishing into a full channel drops the oldest event."""
        channel = ProgressChannel(maxsize=2)
        for percent in (1.0, 2.0, 3.0):
            channel.publish(ProgressEvent(phase=DownloadPhase.STREAMING, percent=percent))

        assert channel.dropped == 1
        assert [e.percent for e in channel.drain()] == [2.0, 3.0]

    def test_publish_after_close_is_ignored(self):
        """A closed channel accepts no further events."""
        channel = ProgressChannel()
        channel.close()
        channel.publish(ProgressEvent(phase=DownloadPhase.COMPLETED))
        assert channel.closed is True
        assert channel.drain() == []

    def test_async_iteration_ends_on_close(self):
        """Consumers see every event then stop at close."""
        channel = ProgressChannel()

        async def run():
            channel.publish(ProgressEvent(phase=DownloadPhase.PREFLIGHT))
            channel.publish(ProgressEvent(phase=DownloadPhase.COMPLETED, percent=100.0))
            channel.close()
            return [event.phase async for event in channel]

        assert asyncio.run(run()) == [DownloadPhase.PREFLIGHT, DownloadPhase.COMPLETED]


class TestProgressCoalescer:
    """Test flush-window coalescing."""

    def test_burst_becomes_one_event(self):
        """Many chunks within one window publish one event."""
        channel = ProgressChannel()

        async def run():
            coalescer = ProgressCoalescer(channel, interval=0.02, depot_id="3164501", depot_index=1, depot_total=2)
            for i in range(1, 51):
                coalescer.feed(f" {i}.00% file_{i}.bin\n")
            await asyncio.sleep(0.05)
            return coalescer

        coalescer = asyncio.run(run())
        events = channel.drain()

        assert coalescer.flushes == 1
        assert len(events) == 1
        assert events[0].percent == pytest.approx(50.0)
        assert events[0].message == "50.00% file_50.bin"
        assert events[0].depot_id == "3164501"
        assert events[0].depot_total == 2

    def test_keeps_last_percent_across_chunks(self):
        """A chunk without a percentage keeps the previous value."""
        channel = ProgressChannel()

        async def run():
            coalescer = ProgressCoalescer(channel, interval=10.0)
            coalescer.feed(" 30.00% a.bin")
            coalescer.feed("Validating...")
            coalescer.close()

        asyncio.run(run())
        events = channel.drain()
        assert len(events) == 1
        assert events[0].percent == pytest.approx(30.0)
        assert events[0].message == "Validating..."

    def test_close_without_output(self):
        """Closing with nothing fed publishes nothing."""
        channel = ProgressChannel()

        async def run():
            coalescer = ProgressCoalescer(channel)
            coalescer.feed("")
            coalescer.close()

        asyncio.run(run())
        assert channel.drain() == []
