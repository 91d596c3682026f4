"""Idempotent, retrying executor for scheduled giveaway transitions."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import socket
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .collaborators import Clock, LogOperatorAlerts, OperatorAlerts, utc_now
from .config import SchedulerConfig
from .errors import JobDeferred, TransientInfraError
from .models import LedgerEntry, ScheduledJob, Transition, make_job_key
from .storage import IdempotencyLedger, JobStore

log = logging.getLogger(__name__)

JOB_STEP = "job"

JobHandler = Callable[[ScheduledJob], Awaitable[None]]


class ExecutionResult(str, enum.Enum):
    SUCCESS = "success"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"
    DEFERRED = "deferred"


def build_job(
    tenant_id: int,
    giveaway_id: str,
    transition: Transition,
    *,
    epoch: Any,
    run_at: datetime,
    payload: Optional[Dict[str, Any]] = None,
) -> ScheduledJob:
    body: Dict[str, Any] = {
        "tenant_id": tenant_id,
        "giveaway_id": giveaway_id,
        "transition": transition.value,
    }
    if payload:
        body.update(payload)
    return ScheduledJob(
        job_key=make_job_key(tenant_id, giveaway_id, transition, epoch),
        tenant_id=tenant_id,
        giveaway_id=giveaway_id,
        transition=transition.value,
        run_at=run_at,
        payload=body,
    )


class JobScheduler:
    """Polls the job store and runs registered transition handlers.

    A job key that the idempotency ledger already marks as succeeded is never handed
    to its handler again, so duplicate deliveries are harmless. Failures are retried
    with exponential backoff and dead-lettered once the retry budget is spent.
    """

    def __init__(
        self,
        jobs: JobStore,
        ledger: IdempotencyLedger,
        *,
        config: Optional[SchedulerConfig] = None,
        alerts: Optional[OperatorAlerts] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.jobs = jobs
        self.ledger = ledger
        self.config = config or SchedulerConfig()
        self.alerts: OperatorAlerts = alerts or LogOperatorAlerts()
        self._clock = clock
        self._handlers: Dict[str, JobHandler] = {}
        self._worker_tasks: List[asyncio.Task] = []
        self._stopping: Optional[asyncio.Event] = None
        self._node_id = f"{socket.gethostname()}:{os.getpid()}"

    def register(self, transition: Transition, handler: JobHandler) -> None:
        self._handlers[transition.value] = handler

    async def enqueue(self, job: ScheduledJob) -> bool:
        """Store a job. Re-enqueuing an existing key is a no-op."""
        inserted = await self.jobs.enqueue(job, self._clock())
        if not inserted:
            log.debug("Job %s already enqueued; ignoring duplicate.", job.job_key)
        return inserted

    async def poll(self) -> List[ScheduledJob]:
        return await self.jobs.poll(self._clock(), self.config.batch_size)

    async def execute(self, job: ScheduledJob) -> ExecutionResult:
        if await self.ledger.has(job.job_key, JOB_STEP):
            log.debug("Job %s already succeeded; suppressing duplicate delivery.", job.job_key)
            await self.jobs.mark_succeeded(job.job_key, self._clock())
            return ExecutionResult.SUCCESS

        handler = self._handlers.get(job.transition)
        if handler is None:
            return await self._dead_letter(
                job,
                job.attempt_count,
                f"No handler registered for transition '{job.transition}'.",
            )

        try:
            await handler(job)
        except JobDeferred as exc:
            log.info("Job %s fired early; deferring until %s.", job.job_key, exc.run_at)
            await self.jobs.defer(
                job.job_key, owner=job.lease_owner, run_at=exc.run_at, now=self._clock()
            )
            return ExecutionResult.DEFERRED
        except Exception as exc:
            return await self._handle_failure(job, exc)

        now = self._clock()
        await self.ledger.record(LedgerEntry(job_key=job.job_key, step=JOB_STEP), now)
        if await self.jobs.mark_succeeded(job.job_key, now):
            log.warning(
                "Job %s completed after its lease was reclaimed and dead-lettered; "
                "removed it from the dead-letter queue.",
                job.job_key,
            )
        else:
            log.debug("Job %s succeeded.", job.job_key)
        return ExecutionResult.SUCCESS

    async def reclaim_expired(self) -> int:
        """Turn jobs whose lease ran out into retries."""
        now = self._clock()
        expired = await self.jobs.expired_leases(now)
        for job in expired:
            log.warning(
                "Lease on job %s held by %s expired at %s; reclaiming as a retry.",
                job.job_key,
                job.lease_owner,
                job.lease_expires_at,
            )
            await self._handle_failure(
                job, TimeoutError("job lease expired"), expired_before=now
            )
        return len(expired)

    async def run_due(self, worker_id: str) -> int:
        """Reclaim stale leases, then claim and execute every due job."""
        await self.reclaim_expired()
        processed = 0
        for job in await self.poll():
            claimed = await self.jobs.claim(
                job.job_key, worker_id, self._clock(), self.config.lease_seconds
            )
            if claimed is None:
                continue
            await self.execute(claimed)
            processed += 1
        return processed

    async def run_job_now(
        self, job_key: str, worker_id: Optional[str] = None
    ) -> Optional[ExecutionResult]:
        """Claim and execute one job immediately, if it is due and unclaimed."""
        claimed = await self.jobs.claim(
            job_key,
            worker_id or f"{self._node_id}:inline",
            self._clock(),
            self.config.lease_seconds,
        )
        if claimed is None:
            return None
        return await self.execute(claimed)

    async def run_worker(self, worker_id: str) -> None:
        stopping = self._ensure_stop_event()
        idle_delay = self.config.poll_interval_seconds
        max_idle_delay = self.config.poll_interval_seconds * 8
        while not stopping.is_set():
            try:
                processed = await self.run_due(worker_id)
            except TransientInfraError as exc:
                log.warning("Scheduler worker %s could not reach the job store: %s", worker_id, exc)
                processed = 0
            except Exception:
                log.exception("Scheduler worker %s crashed while polling", worker_id)
                processed = 0
            if processed:
                idle_delay = self.config.poll_interval_seconds
                continue
            try:
                await asyncio.wait_for(stopping.wait(), timeout=idle_delay)
            except asyncio.TimeoutError:
                pass
            idle_delay = min(idle_delay * 2, max_idle_delay)

    def start(self, workers: Optional[int] = None) -> None:
        count = workers or self.config.workers
        self._ensure_stop_event().clear()
        for index in range(count):
            worker_id = f"{self._node_id}:{index}"
            self._worker_tasks.append(asyncio.create_task(self.run_worker(worker_id)))
        log.info("Started %s scheduler worker(s).", count)

    async def stop(self) -> None:
        self._ensure_stop_event().set()
        tasks, self._worker_tasks = self._worker_tasks, []
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def redrive(self, job_key: str) -> bool:
        """Put a dead-lettered job back in the queue with a fresh retry budget."""
        redriven = await self.jobs.redrive(job_key, self._clock())
        if redriven:
            log.info("Job %s re-driven by operator.", job_key)
        return redriven

    async def list_dead_letters(self, tenant_id: Optional[int] = None) -> List[ScheduledJob]:
        return await self.jobs.list_dead_letters(tenant_id)

    def retry_delay(self, attempt_count: int) -> timedelta:
        return timedelta(
            seconds=self.config.base_delay_seconds * 2 ** (attempt_count - 1)
        )

    # --- Internal helpers -------------------------------------------------

    def _ensure_stop_event(self) -> asyncio.Event:
        if self._stopping is None:
            self._stopping = asyncio.Event()
        return self._stopping

    async def _handle_failure(
        self,
        job: ScheduledJob,
        exc: BaseException,
        *,
        expired_before: Optional[datetime] = None,
    ) -> ExecutionResult:
        attempt_count = job.attempt_count + 1
        error = f"{type(exc).__name__}: {exc}"
        if attempt_count > self.config.max_retries:
            return await self._dead_letter(
                job, attempt_count, error, expired_before=expired_before
            )

        now = self._clock()
        next_retry_at = now + self.retry_delay(attempt_count)
        released = await self.jobs.schedule_retry(
            job.job_key,
            owner=job.lease_owner,
            attempt_count=attempt_count,
            next_retry_at=next_retry_at,
            error=error,
            now=now,
            expired_before=expired_before,
        )
        if released:
            log.warning(
                "Job %s failed (attempt %s/%s), retrying at %s: %s",
                job.job_key,
                attempt_count,
                self.config.max_retries,
                next_retry_at.isoformat(),
                error,
            )
        else:
            log.info("Job %s changed hands before its retry could be recorded.", job.job_key)
        return ExecutionResult.RETRY

    async def _dead_letter(
        self,
        job: ScheduledJob,
        attempt_count: int,
        error: str,
        *,
        expired_before: Optional[datetime] = None,
    ) -> ExecutionResult:
        released = await self.jobs.mark_dead_lettered(
            job.job_key,
            owner=job.lease_owner,
            attempt_count=attempt_count,
            error=error,
            now=self._clock(),
            expired_before=expired_before,
        )
        if not released:
            log.info("Job %s changed hands before it could be dead-lettered.", job.job_key)
            return ExecutionResult.DEAD_LETTER
        log.error(
            "Job %s dead-lettered after %s attempt(s): %s",
            job.job_key,
            attempt_count,
            error,
        )
        try:
            await self.alerts.alert(
                f"Job `{job.job_key}` ({job.transition}) for giveaway `{job.giveaway_id}` "
                f"was dead-lettered after {attempt_count} attempt(s): {error}. "
                "It needs manual re-drive.",
                tenant_id=job.tenant_id,
            )
        except Exception:
            log.exception("Failed to deliver dead-letter alert for job %s", job.job_key)
        return ExecutionResult.DEAD_LETTER
