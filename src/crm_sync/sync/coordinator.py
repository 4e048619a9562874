"""Run coordinator -- serializes sync runs per (direction, target store).

Dependency ordering only holds inside a single run: two interleaved runs
could write a task before the other run has written its project. The
coordinator therefore gives every (direction, target store) pair a single
worker. A run requested while another is in flight becomes the pending run;
further requests coalesce into that pending run (the latest snapshot wins)
and share its result.

Also provides periodic scheduling (default every SYNC_INTERVAL_SECONDS) that
submits through the same queue, so scheduled and on-demand triggers never
overlap.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable, Generator
from dataclasses import dataclass
from typing import Any

import structlog

from src.crm_sync.config import get_settings
from src.crm_sync.sync.engine import CollectionsInput, ReconciliationEngine
from src.crm_sync.sync.schemas import Direction, SyncRunReport

logger = structlog.get_logger(__name__)

# Returns the collections to push, or an awaitable resolving to them
SnapshotProvider = Callable[[], Any]


class RunHandle:
    """Caller's view of a submitted run.

    Awaiting the handle (or `wait()`) returns the run's SyncRunReport.
    Handles from coalesced requests share the same underlying run.

    Attributes:
        direction: Direction of the run.
        coalesced: True if this request joined an already-pending run.
    """

    def __init__(self, future: asyncio.Future, direction: Direction, coalesced: bool) -> None:
        self._future = future
        self.direction = direction
        self.coalesced = coalesced

    def done(self) -> bool:
        return self._future.done()

    async def wait(self, timeout: float | None = None) -> SyncRunReport:
        return await asyncio.wait_for(asyncio.shield(self._future), timeout)

    def __await__(self) -> Generator[Any, None, SyncRunReport]:
        return self.wait().__await__()


@dataclass
class _PendingRun:
    future: asyncio.Future
    collections: CollectionsInput | None
    deadline: float | None
    requests: int = 1


@dataclass
class _Lane:
    pending: _PendingRun | None = None
    worker: asyncio.Task | None = None
    running: bool = False
    completed: int = 0


class SyncCoordinator:
    """Queues and serializes runs of a ReconciliationEngine.

    Args:
        engine: The engine runs are executed on.
    """

    def __init__(self, engine: ReconciliationEngine) -> None:
        self._engine = engine
        self._lanes: dict[tuple[Direction, str], _Lane] = {}
        self._periodic: dict[Direction, asyncio.Task] = {}

    def _key(self, direction: Direction) -> tuple[Direction, str]:
        _, target = self._engine.connectors(direction)
        return direction, target.name

    def submit(
        self,
        direction: Direction | str,
        collections: CollectionsInput | None = None,
        deadline: float | None = None,
    ) -> RunHandle:
        """Request a run; must be called from a running event loop.

        Raises:
            ValueError: Unknown direction.
        """
        direction = Direction.parse(direction)
        key = self._key(direction)
        lane = self._lanes.setdefault(key, _Lane())

        if lane.pending is not None:
            lane.pending.collections = collections
            lane.pending.deadline = deadline
            lane.pending.requests += 1
            logger.info(
                "coordinator.run_coalesced",
                direction=direction.value,
                target=key[1],
                requests=lane.pending.requests,
            )
            return RunHandle(lane.pending.future, direction, coalesced=True)

        future = asyncio.get_running_loop().create_future()
        lane.pending = _PendingRun(future=future, collections=collections, deadline=deadline)
        logger.info(
            "coordinator.run_queued",
            direction=direction.value,
            target=key[1],
            waiting_on_in_flight=lane.running,
        )

        if lane.worker is None or lane.worker.done():
            lane.worker = asyncio.create_task(self._drain(direction, lane))
        return RunHandle(future, direction, coalesced=False)

    async def _drain(self, direction: Direction, lane: _Lane) -> None:
        """Single worker for a lane: run pending requests one at a time."""
        while lane.pending is not None:
            pending, lane.pending = lane.pending, None
            lane.running = True
            try:
                report = await self._engine.run(direction, pending.collections, pending.deadline)
            except Exception as exc:
                if not pending.future.done():
                    pending.future.set_exception(exc)
                logger.error("coordinator.run_failed", direction=direction.value, error=str(exc))
            else:
                lane.completed += 1
                if not pending.future.done():
                    pending.future.set_result(report)
            finally:
                lane.running = False

    def in_flight(self, direction: Direction | str) -> bool:
        """True while a run for the direction is executing."""
        direction = Direction.parse(direction)
        lane = self._lanes.get(self._key(direction))
        return bool(lane and lane.running)

    def completed_runs(self, direction: Direction | str) -> int:
        """Number of runs finished for the direction."""
        direction = Direction.parse(direction)
        lane = self._lanes.get(self._key(direction))
        return lane.completed if lane else 0

    # ── Periodic scheduling ────────────────────────────────────────────────

    def start_periodic(
        self,
        direction: Direction | str,
        snapshot_provider: SnapshotProvider | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        """Submit a run every interval (replacing any schedule for the direction).

        Args:
            direction: Direction to schedule.
            snapshot_provider: Push direction -- returns (or awaits to) the current
                collections to sync. Not needed for pulls.
            interval_seconds: Defaults to SYNC_INTERVAL_SECONDS.
        """
        direction = Direction.parse(direction)
        interval = interval_seconds or get_settings().SYNC_INTERVAL_SECONDS

        existing = self._periodic.pop(direction, None)
        if existing is not None:
            logger.warning("coordinator.periodic_replaced", direction=direction.value)
            existing.cancel()

        self._periodic[direction] = asyncio.create_task(
            self._periodic_loop(direction, snapshot_provider, interval)
        )
        logger.info(
            "coordinator.periodic_started",
            direction=direction.value,
            interval_seconds=interval,
        )

    async def _periodic_loop(
        self,
        direction: Direction,
        snapshot_provider: SnapshotProvider | None,
        interval: float,
    ) -> None:
        while True:
            try:
                collections = None
                if snapshot_provider is not None:
                    collections = snapshot_provider()
                    if inspect.isawaitable(collections):
                        collections = await collections
                report = await self.submit(direction, collections)
                logger.info(
                    "coordinator.periodic_run_complete",
                    direction=direction.value,
                    status=report.status.value,
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                # A failed scheduled run never stops the schedule
                logger.warning("coordinator.periodic_run_failed", direction=direction.value, exc_info=True)
            await asyncio.sleep(interval)

    async def stop(self) -> None:
        """Cancel periodic schedules and wait for queued runs to finish."""
        periodic = list(self._periodic.values())
        self._periodic.clear()
        for task in periodic:
            task.cancel()
        await asyncio.gather(*periodic, return_exceptions=True)

        workers = [lane.worker for lane in self._lanes.values() if lane.worker is not None]
        await asyncio.gather(*workers, return_exceptions=True)
        logger.info("coordinator.stopped", periodic=len(periodic), workers=len(workers))
