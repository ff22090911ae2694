"""
Sweeper — background task that keeps the process registry honest.

A pipeline that crashes (or is killed) before reporting completion would
leave its process "in progress" forever. Every tick the sweeper times out
processes older than the deadline and drops completed ones whose grace
period passed without their removal timer firing.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from models import Process
from processes import ProcessRegistry

logger = logging.getLogger(__name__)

ORPHAN_MESSAGE = "timeout: exceeded expected duration"


class OrphanSweeper:
    def __init__(
        self,
        registry: ProcessRegistry,
        on_orphan: Callable[[Process], None],
        on_expired: Callable[[str, str], None],
        interval: float = 120.0,
        timeout: float = 600.0,
    ):
        self.registry = registry
        self.interval = interval
        self.timeout = timeout
        self._on_orphan = on_orphan
        self._on_expired = on_expired
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep(self, now: datetime | None = None) -> list[Process]:
        """Run one pass. Returns the processes that were timed out."""
        now = now or self.registry.clock()
        deadline = timedelta(seconds=self.timeout)

        orphans = [p for p in self.registry.in_progress() if now - p.created_at > deadline]
        for process in orphans:
            age = (now - process.created_at).total_seconds()
            logger.warning(
                "[Sweeper] Orphaned process %s/%s (%.0fs old), marking as error",
                process.owner_id, process.id, age,
            )
            self._on_orphan(process)

        for process in self.registry.expired(now=now):
            logger.info("[Sweeper] Removing expired process %s/%s", process.owner_id, process.id)
            self._on_expired(process.owner_id, process.id)

        return orphans

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("[Sweeper] Started (every %.0fs, deadline %.0fs)", self.interval, self.timeout)

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done() and not task.get_loop().is_closed():
            task.cancel()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("[Sweeper] Sweep failed")
