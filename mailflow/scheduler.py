"""Background poll loop for delayed executions, email retries and purging."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

from .config import SchedulerConfig
from .contracts import ExecutionStatus, TriggerEvent, WorkflowExecution, utcnow
from .delivery.coordinator import RetryCoordinator
from .errors import MailflowError
from .events.base import EventTransport
from .persistence import WorkflowStore
from .runner import ExecutionRunner

logger = logging.getLogger(__name__)


class PollReport(BaseModel):
    """What one poll cycle did."""

    skipped: bool = False
    retries_processed: int = 0
    recovered: int = 0
    executions_due: int = 0
    executions_advanced: int = 0
    executions_errored: int = 0
    purged: int = 0


class Scheduler:
    """Runs poll cycles every ``poll_interval`` seconds.

    A cycle processes due email retries, requeues running executions whose
    last heartbeat is older than ``lease_timeout``, then claims and advances
    every due execution, then purges old terminal executions once per
    ``purge_interval``. Cycles never overlap; an error in one execution is
    logged and does not stop the others.
    """

    def __init__(
        self,
        store: WorkflowStore,
        runner: ExecutionRunner,
        coordinator: RetryCoordinator,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._runner = runner
        self._coordinator = coordinator
        self._config = config or SchedulerConfig()
        self._clock = clock
        self._cycle_lock = asyncio.Lock()
        self._last_purge: Optional[datetime] = None
        self._stop: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._stop is not None and not self._stop.is_set()

    async def run_once(self, now: Optional[datetime] = None) -> PollReport:
        if self._cycle_lock.locked():
            logger.debug("Previous poll cycle still running; skipping")
            return PollReport(skipped=True)

        async with self._cycle_lock:
            now = now or self._clock()
            report = PollReport()
            report.retries_processed = await self._process_retries(now)
            report.recovered = await self._recover_stale(now)
            await self._process_due(now, report)
            if self._purge_due(now):
                report.purged = await self.purge(now)
            return report

    async def _process_retries(self, now: datetime) -> int:
        outcomes = await self._coordinator.process_retries(now)
        for outcome in outcomes:
            try:
                await self._runner.resume_after_retry(outcome)
            except Exception:
                logger.exception(
                    f"Failed to resume execution {outcome.execution_id} after retry"
                )
        return len(outcomes)

    async def _recover_stale(self, now: datetime) -> int:
        """Put abandoned ``running`` executions back on the due list."""
        cutoff = now - timedelta(seconds=self._config.lease_timeout)
        running = await self._store.list_executions(statuses=(ExecutionStatus.RUNNING,))
        recovered = 0
        for candidate in running:
            if self._runner.locks.locked(candidate.id):
                continue
            if candidate.updated_at is not None and candidate.updated_at >= cutoff:
                continue
            async with self._runner.locks.hold(candidate.id):
                execution = await self._store.get_execution(candidate.id)
                if execution is None or execution.status != ExecutionStatus.RUNNING:
                    continue
                if execution.updated_at is not None and execution.updated_at >= cutoff:
                    continue
                last_seen = execution.updated_at
                execution.transition(ExecutionStatus.PENDING, now, scheduled_at=now)
                await self._store.save_execution(execution)
            logger.warning(
                f"Requeued execution {execution.id} at step {execution.current_step_id}; "
                f"no progress since {last_seen}"
            )
            recovered += 1
        return recovered

    async def _process_due(self, now: datetime, report: PollReport) -> None:
        due = await self._store.list_due_executions(now)
        report.executions_due = len(due)
        if not due:
            return

        logger.info(f"Processing {len(due)} due executions")
        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def handle(execution: WorkflowExecution) -> Optional[WorkflowExecution]:
            async with semaphore:
                async with self._runner.locks.hold(execution.id):
                    claimed = await self._store.claim_execution(execution.id, now)
                if claimed is None:
                    return None
                return await self._runner.advance(claimed.id)

        results = await asyncio.gather(*(handle(e) for e in due), return_exceptions=True)
        for execution, result in zip(due, results):
            if isinstance(result, BaseException):
                report.executions_errored += 1
                logger.error(
                    f"Error processing execution {execution.id}: {result!r}", exc_info=result
                )
            elif result is not None:
                report.executions_advanced += 1

    def _purge_due(self, now: datetime) -> bool:
        if self._last_purge is None:
            return True
        return now - self._last_purge >= timedelta(seconds=self._config.purge_interval)

    async def purge(self, now: Optional[datetime] = None) -> int:
        """Delete terminal executions that finished before the retention window."""
        now = now or self._clock()
        cutoff = now - timedelta(days=self._config.retention_days)
        count = await self._store.purge_terminal_executions(cutoff)
        self._last_purge = now
        if count:
            logger.info(f"Cleaned up {count} old executions")
        return count

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll until :meth:`stop` is called or ``lifespan`` seconds elapse."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        self._stop = asyncio.Event()
        logger.info(f"Scheduler started (poll interval {self._config.poll_interval}s)")

        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Poll cycle failed")

            timeout = self._config.poll_interval
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                timeout = min(timeout, remaining)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout)
            except asyncio.TimeoutError:
                pass

        self._stop.set()
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()


class EventListener:
    """Feeds events from a transport into a handler, acking each one."""

    def __init__(
        self,
        transport: EventTransport,
        handler: Callable[[TriggerEvent], Awaitable[Any]],
        topic: str = "events",
    ) -> None:
        self._transport = transport
        self._handler = handler
        self._topic = topic

    async def run(self, lifespan: Optional[float] = None) -> int:
        """Consume events until ``lifespan`` elapses; returns how many were handled."""
        handled = 0
        async for raw_event, event in self._transport.subscribe(self._topic, lifespan=lifespan):
            try:
                await self._handler(event)
            except MailflowError as e:
                logger.warning(f"Event {event.event_id} ({event.event_type}) rejected: {e}")
            except Exception:
                logger.exception(f"Event {event.event_id} ({event.event_type}) failed")
            await self._transport.ack(raw_event)
            handled += 1
        return handled
