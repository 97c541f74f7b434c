"""Detection of client processes that conflict with the downloader."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass

import psutil
import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class ConflictingProcess:
    """A running process that blocks downloads."""

    pid: int
    name: str


class ConflictDetector:
    """Finds running processes whose names match the configured client names.

    Args:
        process_names: Process names to look for, compared case-insensitively
    """

    def __init__(self, process_names: Iterable[str]) -> None:
        self.process_names = {name.lower() for name in process_names}

    def find_conflicts(self) -> list[ConflictingProcess]:
        """List matching processes currently running."""
        found = []
        for proc in psutil.process_iter(["pid", "name"]):
            try:
                name = proc.info.get("name") or ""
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if name.lower() in self.process_names:
                found.append(ConflictingProcess(pid=proc.info["pid"], name=name))
        if found:
            logger.debug("conflicting_processes", processes=[p.name for p in found])
        return found

    async def find_conflicts_async(self) -> list[ConflictingProcess]:
        """:meth:`find_conflicts` off the event loop."""
        return await asyncio.to_thread(self.find_conflicts)
