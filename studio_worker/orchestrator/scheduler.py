"""
Polling scheduler: drives each job from CREATED to a terminal state.

One asyncio task per job, at most max_concurrent_jobs of them holding a
slot at once. Each worker:

  1. submits (CREATED → SUBMITTED → POLLING), or resumes an already
     submitted job from its persisted attempt_count
  2. waits the kind's interval, polls the provider, records the attempt
  3. ends SUCCEEDED / FAILED / TIMED_OUT, settles billing and notifies
     terminal listeners (the dependency resolver, waiters)

Interval waits are interruptible via wake(job_id). A woken worker re-reads
the job and retires if someone else made it terminal (e.g. a cancel).
A worker that raises anything unexpected fails its job with an internal
error, which releases the hold like any other failure.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from .. import metrics
from .billing import BillingReconciler
from .config import OrchestratorConfig
from .errors import SubmissionError, TransientPollError
from .models import ErrorKind, Job, JobError, JobStatus, PollState, utcnow
from .store import JobStore

logger = logging.getLogger(__name__)

TerminalListener = Callable[[Job], Awaitable[None]]


class PollingScheduler:
    def __init__(
        self,
        store: JobStore,
        providers,
        billing: BillingReconciler,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.store = store
        self.providers = providers
        self.billing = billing
        self.config = config or OrchestratorConfig()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_jobs)
        self._tasks: dict[str, asyncio.Task] = {}
        self._wakeups: dict[str, asyncio.Event] = {}
        self._listeners: list[TerminalListener] = []
        self._in_flight = 0
        self._stopping = False

    # ── Public API ───────────────────────────────────────────────────────

    def add_terminal_listener(self, listener: TerminalListener):
        self._listeners.append(listener)

    def dispatch(self, job_id: str) -> Optional[asyncio.Task]:
        """Start (or return the existing) worker for a job."""
        if self._stopping:
            logger.warning(f"[{job_id}] Scheduler stopping, not dispatching")
            return None
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            return task
        self._wakeups[job_id] = asyncio.Event()
        task = asyncio.create_task(self._run(job_id), name=f"job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t, jid=job_id: self._forget(jid, _t))
        return task

    def wake(self, job_id: str):
        event = self._wakeups.get(job_id)
        if event is not None:
            event.set()

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def recover(self) -> int:
        """Re-attach workers to every job that was live when the process stopped."""
        resumed = 0
        for job in await self.store.list_jobs([JobStatus.SUBMITTED, JobStatus.POLLING]):
            if job.provider_ref is None:
                logger.warning(f"[{job.id}] {job.status.value} without provider_ref, cannot resume")
                continue
            self.dispatch(job.id)
            resumed += 1

        # Segments in CREATED wait for their predecessor; the resolver owns them
        for job in await self.store.list_jobs([JobStatus.CREATED]):
            if not job.is_segment:
                self.dispatch(job.id)
                resumed += 1

        if resumed:
            logger.info(f"Scheduler recovered {resumed} job(s)")
        return resumed

    async def wait_idle(self):
        """Wait until no worker is running (including ones started meanwhile)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def stop(self):
        self._stopping = True
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Scheduler stopped ({len(tasks)} worker(s) cancelled)")

    # ── Worker ───────────────────────────────────────────────────────────

    def _forget(self, job_id: str, task: asyncio.Task):
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
            self._wakeups.pop(job_id, None)

    async def _run(self, job_id: str):
        finished: Optional[Job] = None
        async with self._semaphore:
            self._in_flight += 1
            metrics.set_gauge("in_flight_jobs", self._in_flight)
            try:
                finished = await self._drive(job_id)
            except asyncio.CancelledError:
                logger.info(f"[{job_id}] Worker cancelled; job stays resumable")
                raise
            except Exception as e:
                logger.error(f"[{job_id}] Worker crashed: {e}", exc_info=True)
                metrics.record_error("scheduler", type(e).__name__, str(e), job_id=job_id)
                finished = await self._fail_crashed(job_id, e)
            finally:
                self._in_flight -= 1
                metrics.set_gauge("in_flight_jobs", self._in_flight)

        if finished is not None:
            await self._finish(finished)

    async def _drive(self, job_id: str) -> Optional[Job]:
        """Returns the job only if this worker moved it to a terminal state."""
        job = await self.store.get_job(job_id)
        if job is None or job.is_terminal:
            return None

        if job.status == JobStatus.CREATED:
            job = await self._submit(job)
            if job is None or job.is_terminal:
                return job

        if job.status == JobStatus.SUBMITTED:
            job = await self.store.transition(job.id, JobStatus.POLLING)
            if job is None:
                return None

        return await self._poll_loop(job)

    async def _submit(self, job: Job) -> Optional[Job]:
        if not job.can_transition(JobStatus.SUBMITTED):
            logger.warning(f"[{job.id}] Not ready to submit (input not bound)")
            return None

        adapter = self.providers.get_provider(job.provider)
        try:
            ref = await adapter.submit(job.kind, job.submission_spec())
        except SubmissionError as e:
            logger.error(f"[{job.id}] Submission to {job.provider} failed: {e}")
            metrics.record_error("submit", job.provider, str(e), job_id=job.id)
            return await self.store.transition(
                job.id,
                JobStatus.FAILED,
                error=JobError(kind=ErrorKind.SUBMISSION, message=str(e)),
            )

        submitted = await self.store.transition(job.id, JobStatus.SUBMITTED, provider_ref=ref)
        if submitted is None:
            logger.warning(f"[{job.id}] Changed state during submission; provider task {ref.task_id} abandoned")
            return None

        metrics.inc_counter("jobs.submitted")
        logger.info(f"[{job.id}] Submitted to {job.provider}: task_id={ref.task_id}")
        return await self.store.transition(job.id, JobStatus.POLLING)

    async def _wait_interval(self, job_id: str, seconds: float) -> bool:
        """Sleep for the poll interval. True if woken early."""
        event = self._wakeups.setdefault(job_id, asyncio.Event())
        try:
            await asyncio.wait_for(event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            event.clear()

    async def _poll_loop(self, job: Job) -> Optional[Job]:
        policy = self.config.policy_for(job.kind)
        adapter = self.providers.get_provider(job.provider)

        while True:
            if job.attempt_count >= policy.max_attempts:
                return await self._time_out(job, job.attempt_count, f"No result after {job.attempt_count} polls")

            if await self._wait_interval(job.id, policy.interval_seconds):
                logger.debug(f"[{job.id}] Woken early")

            job = await self.store.get_job(job.id)
            if job is None or job.is_terminal:
                return None

            attempts = job.attempt_count + 1
            started = time.monotonic()
            try:
                status = await adapter.poll(job.provider_ref)
            except TransientPollError as e:
                errors = job.transient_errors + 1
                metrics.inc_counter("polls.transient_errors")
                logger.warning(
                    f"[{job.id}] Transient poll error {errors}/{self.config.transient_retry_limit}: {e}"
                )
                if errors >= self.config.transient_retry_limit:
                    return await self._time_out(job, attempts, f"Gave up after {errors} consecutive poll errors: {e}")
                if attempts >= policy.max_attempts:
                    return await self._time_out(job, attempts, f"No result after {attempts} polls")
                job = await self.store.update_job(
                    job.id, attempt_count=attempts, transient_errors=errors, last_polled_at=utcnow()
                )
                if job is None:
                    return None
                continue
            finally:
                metrics.record_latency(f"poll.{job.provider}", (time.monotonic() - started) * 1000)

            if status.state == PollState.SUCCEEDED:
                return await self.store.transition(
                    job.id,
                    JobStatus.SUCCEEDED,
                    result=status.result,
                    attempt_count=attempts,
                    transient_errors=0,
                    last_polled_at=utcnow(),
                )

            if status.state == PollState.FAILED:
                logger.warning(f"[{job.id}] Provider reported failure: {status.reason}")
                return await self.store.transition(
                    job.id,
                    JobStatus.FAILED,
                    error=JobError(kind=ErrorKind.PROVIDER_FAILURE, message=status.reason or "Provider failure"),
                    attempt_count=attempts,
                    last_polled_at=utcnow(),
                )

            # Still pending
            if attempts >= policy.max_attempts:
                return await self._time_out(job, attempts, f"No result after {attempts} polls")
            job = await self.store.update_job(
                job.id, attempt_count=attempts, transient_errors=0, last_polled_at=utcnow()
            )
            if job is None:
                return None
            logger.debug(f"[{job.id}] Pending ({status.raw_status}), attempt {attempts}/{policy.max_attempts}")

    async def _time_out(self, job: Job, attempts: int, message: str) -> Optional[Job]:
        logger.warning(f"[{job.id}] Timing out: {message}")
        return await self.store.transition(
            job.id,
            JobStatus.TIMED_OUT,
            error=JobError(kind=ErrorKind.TIMEOUT, message=message),
            attempt_count=attempts,
            last_polled_at=utcnow(),
        )

    async def _fail_crashed(self, job_id: str, error: Exception) -> Optional[Job]:
        """
        Fail a job whose worker raised unexpectedly.

        SUBMITTED has no edge to FAILED, so it passes through POLLING first.
        """
        try:
            job = await self.store.get_job(job_id)
            if job is None or job.is_terminal:
                return None
            if job.status == JobStatus.SUBMITTED:
                job = await self.store.transition(job_id, JobStatus.POLLING)
                if job is None:
                    return None
            return await self.store.transition(
                job_id,
                JobStatus.FAILED,
                error=JobError(kind=ErrorKind.INTERNAL, message=f"Worker crashed: {type(error).__name__}: {error}"),
            )
        except Exception as e:
            # Store unreachable: the job stays live and is picked up by recover()
            logger.error(f"[{job_id}] Could not fail crashed job: {e}", exc_info=True)
            return None

    async def _finish(self, job: Job):
        metrics.inc_counter(f"jobs.{job.status.value}")
        try:
            await self.billing.settle(job)
        except Exception as e:
            # reconcile() at next startup settles whatever is left
            logger.error(f"[{job.id}] Settling {job.status.value} failed: {e}", exc_info=True)
        for listener in self._listeners:
            try:
                await listener(job)
            except Exception as e:
                logger.error(f"[{job.id}] Terminal listener failed: {e}", exc_info=True)
