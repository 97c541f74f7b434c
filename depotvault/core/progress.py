"""Progress parsing and coalescing for downloader output.

The downloader prints human-readable text. Progress appears in several
shapes::

    12.34% depot/file.bin
    Downloaded 10 MB / 20 MB (50%)
    progress: 12.5%
    Downloading depot 2 of 3
    Depot download complete / Total downloaded: 1.2 GB

Output is fed in arbitrary chunks; the latest percentage is kept and
published to a :class:`ProgressChannel` at most once per flush interval.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncIterator

import structlog

from depotvault.core.types import DownloadPhase, GuardType, ProgressEvent

logger = structlog.get_logger()

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_LEADING_PERCENT_RE = re.compile(r"^\s*(\d{1,3}(?:\.\d{1,2})?)%(?:\s|$)")
_PAREN_PERCENT_RE = re.compile(r"\((\d+(?:\.\d+)?)%\)")
_LABEL_PERCENT_RE = re.compile(r"progress\s*:?\s*(\d+(?:\.\d+)?)%", re.IGNORECASE)
_ANY_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)%")
_DEPOT_COUNT_RE = re.compile(r"Downloading depot (\d+) of (\d+)")
_COMPLETE_RE = re.compile(r"download.*complete|all.*depot.*downloaded|total downloaded:", re.IGNORECASE)

_AUTH_GATE_RE = re.compile(r"steam guard|two[- ]?factor|mobile authenticator|auth(?:entication)? code", re.IGNORECASE)
_EMAIL_GUARD_RE = re.compile(r"sent to the email|email code|email address", re.IGNORECASE)
_MOBILE_GUARD_RE = re.compile(r"mobile app|mobile authenticator|confirm (?:your )?sign[- ]?in", re.IGNORECASE)


def strip_ansi(text: str) -> str:
    """Remove ANSI escapes and turn carriage returns into newlines."""
    return _ANSI_RE.sub("", text).replace("\r", "\n")


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def parse_progress(text: str) -> float | None:
    """Extract a percentage from a chunk of downloader output.

    Returns:
        Percentage in [0, 100], or None if the chunk carries no progress
    """
    cleaned = strip_ansi(text)
    first_line = next((line for line in cleaned.split("\n") if line.strip()), "")

    match = _LEADING_PERCENT_RE.match(first_line)
    if match:
        return _clamp(float(match.group(1)))

    for pattern in (_PAREN_PERCENT_RE, _LABEL_PERCENT_RE, _ANY_PERCENT_RE):
        match = pattern.search(cleaned)
        if match:
            return _clamp(float(match.group(1)))

    match = _DEPOT_COUNT_RE.search(cleaned)
    if match:
        current, total = int(match.group(1)), int(match.group(2))
        if total > 0:
            return _clamp(current / total * 100)

    if _COMPLETE_RE.search(cleaned):
        return 100.0
    return None


def detect_auth_gate(text: str) -> GuardType | None:
    """Detect a request for an out-of-band confirmation or one-time code."""
    cleaned = strip_ansi(text)
    if not _AUTH_GATE_RE.search(cleaned):
        return None
    if _EMAIL_GUARD_RE.search(cleaned):
        return GuardType.EMAIL
    if _MOBILE_GUARD_RE.search(cleaned):
        return GuardType.MOBILE
    return GuardType.CODE


class ProgressChannel:
    """Bounded stream of progress events.

    Publishing never blocks the producer: when the buffer is full the
    oldest event is dropped. Consumers iterate with ``async for`` until
    the channel is closed.

    Args:
        maxsize: Maximum buffered events
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> None:
        """Queue an event, dropping the oldest one if the buffer is full."""
        if self._closed:
            return
        self._put(event)

    def close(self) -> None:
        """End the stream; buffered events are still delivered."""
        if not self._closed:
            self._closed = True
            self._put(None)

    def _put(self, item: ProgressEvent | None) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def drain(self) -> list[ProgressEvent]:
        """Take every buffered event without waiting."""
        events = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not None:
                events.append(item)
        return events

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item


class ProgressCoalescer:
    """Collapses bursts of output into one event per flush interval.

    Args:
        channel: Where events are published
        interval: Flush window in seconds
        depot_id: Depot being downloaded, attached to every event
        depot_index: One-based position of the depot in its sequence
        depot_total: Length of the sequence
    """

    def __init__(
        self,
        channel: ProgressChannel,
        interval: float = 0.05,
        depot_id: str | None = None,
        depot_index: int | None = None,
        depot_total: int | None = None,
    ) -> None:
        self.channel = channel
        self.interval = interval
        self.depot_id = depot_id
        self.depot_index = depot_index
        self.depot_total = depot_total
        self.latest_percent: float | None = None
        self._last_line = ""
        self._pending: asyncio.TimerHandle | None = None
        self._dirty = False
        self.flushes = 0

    def feed(self, chunk: str) -> float | None:
        """Take a chunk of output and schedule a flush.

        Returns:
            The percentage parsed from this chunk, if any
        """
        if not chunk:
            return None
        percent = parse_progress(chunk)
        if percent is not None:
            self.latest_percent = percent
        lines = [line.strip() for line in strip_ansi(chunk).split("\n") if line.strip()]
        if lines:
            self._last_line = lines[-1]
        self._dirty = True
        if self._pending is None:
            self._pending = asyncio.get_running_loop().call_later(self.interval, self.flush)
        return percent

    def flush(self) -> None:
        """Publish the latest state now."""
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        if not self._dirty:
            return
        self._dirty = False
        self.flushes += 1
        self.channel.publish(
            ProgressEvent(
                phase=DownloadPhase.STREAMING,
                percent=self.latest_percent,
                message=self._last_line,
                depot_id=self.depot_id,
                depot_index=self.depot_index,
                depot_total=self.depot_total,
            )
        )

    def close(self) -> None:
        """Flush what is left and stop scheduling."""
        self.flush()
