"""Periodic in-process maintenance worker for aiohttp services.

Usage::

    async def purge_old_rows(now: datetime) -> str | None:
        purged = await repo.delete_older_than(now - timedelta(days=30))
        return f"purged={purged}" if purged else None

    worker = BackgroundWorker(
        interval_seconds=3600.0,
        tasks=[WorkerTask(name="purge_old_rows", fn=purge_old_rows)],
    )
    app.on_startup.append(worker.start)
    app.on_cleanup.append(worker.stop)
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence

import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

# Receives the sweep time (UTC), returns an optional summary to log.
TaskFn = Callable[[datetime], Awaitable[str | None]]

_WORKER_TASK_KEY = "__background_worker_task__"


@dataclass
class WorkerTask:
    name: str
    fn: TaskFn


@dataclass
class BackgroundWorker:
    """Runs every registered task once per ``interval_seconds``.

    A failing task is logged and does not prevent the other tasks of the
    sweep from running.
    """

    interval_seconds: float = 60.0
    tasks: Sequence[WorkerTask] = field(default_factory=list)

    async def start(self, app: web.Application) -> None:
        app[_WORKER_TASK_KEY] = asyncio.create_task(self._loop())

    async def stop(self, app: web.Application) -> None:
        task = app.get(_WORKER_TASK_KEY)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run_once(self, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        for task in self.tasks:
            try:
                summary = await task.fn(now)
            except Exception:
                logger.exception("background_task_failed", task=task.name)
                continue
            if summary:
                logger.info("background_task_completed", task=task.name, summary=summary)

    async def _loop(self) -> None:
        logger.info(
            "background_worker_started",
            interval_seconds=self.interval_seconds,
            tasks=[t.name for t in self.tasks],
        )
        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
        except asyncio.CancelledError:
            logger.info("background_worker_stopped")
            raise
