"""
Billing reconciler: token holds, charges and releases.

Lifecycle of a job's tokens:
  reserve   at creation   hold `amount` against balance - held (all-or-nothing)
  charge    on SUCCEEDED  balance -= amount, cost_charged = amount, hold dropped
  release   on FAILED / TIMED_OUT / CANCELLED   hold dropped, balance untouched

charge() is idempotent: the store refuses a second charge for the same job.
reconcile() runs at startup and closes the window between a job being
persisted as SUCCEEDED and its charge landing.
"""

import logging

from pydantic import BaseModel

from .. import metrics
from .ledger import Ledger, LedgerEntry
from .models import RELEASING_STATUSES, ErrorKind, Job, JobError, JobStatus
from .store import JobStore

logger = logging.getLogger(__name__)


class ReservationToken(BaseModel):
    owner_id: str
    job_id: str
    amount: int


class BillingReconciler:
    def __init__(self, store: JobStore, ledger: Ledger):
        self.store = store
        self.ledger = ledger

    async def reserve(self, owner_id: str, job_id: str, amount: int) -> ReservationToken:
        """Hold tokens for one job. Raises InsufficientBalance."""
        tokens = await self.reserve_many(owner_id, {job_id: amount})
        return tokens[0]

    async def reserve_many(self, owner_id: str, amounts: dict[str, int]) -> list[ReservationToken]:
        """Hold tokens for several jobs at once, or for none of them."""
        await self.store.hold(owner_id, amounts)
        logger.info(f"Reserved {sum(amounts.values())} tokens for {owner_id} across {len(amounts)} job(s)")
        return [
            ReservationToken(owner_id=owner_id, job_id=job_id, amount=amount)
            for job_id, amount in amounts.items()
        ]

    async def charge(self, job_id: str) -> bool:
        amount = await self.store.charge(job_id)
        if amount is None:
            logger.info(f"[{job_id}] Charge skipped: not succeeded or already charged")
            return False

        metrics.inc_counter("billing.charged_tokens", amount)
        logger.info(f"[{job_id}] Charged {amount} tokens")

        job = await self.store.get_job(job_id)
        try:
            await self.ledger.append(LedgerEntry.for_job(job, amount))
        except Exception as e:
            # The charge is committed; a lost audit row is reported, not retried
            logger.error(f"[{job_id}] Ledger append failed after charge: {e}", exc_info=True)
            metrics.record_error("billing", "ledger_append", str(e), job_id=job_id)
        return True

    async def release(self, job_id: str) -> bool:
        released = await self.store.release(job_id)
        if released:
            metrics.inc_counter("billing.released")
            logger.info(f"[{job_id}] Released token hold")
        return released

    async def settle(self, job: Job) -> bool:
        """Charge or release according to the job's terminal status."""
        if job.status == JobStatus.SUCCEEDED:
            return await self.charge(job.id)
        if job.status in RELEASING_STATUSES:
            return await self.release(job.id)
        return False

    async def reconcile(self) -> dict:
        """Charge succeeded-but-uncharged jobs and drop holds of jobs that will never charge."""
        charged = 0
        for job in await self.store.list_jobs([JobStatus.SUCCEEDED]):
            if job.cost_charged is None and await self.charge(job.id):
                charged += 1

        released = 0
        for job_id in await self.store.list_holds():
            job = await self.store.get_job(job_id)
            if job is not None and job.is_segment and not job.is_terminal:
                job = await self._cancel_if_detached(job)
            if job is None or job.status in RELEASING_STATUSES:
                if await self.release(job_id):
                    released += 1

        if charged or released:
            logger.info(f"Billing reconciled: {charged} charged, {released} released")
        return {"charged": charged, "released": released}

    async def _cancel_if_detached(self, segment: Job) -> Job:
        """Cancel a live segment its timeline no longer lists (an interrupted regeneration)."""
        timeline = await self.store.get_timeline(segment.timeline_id)
        if timeline is not None and segment.id in timeline.segment_ids:
            return segment
        logger.warning(f"[{segment.id}] Not part of timeline {segment.timeline_id}, cancelling")
        cancelled = await self.store.transition(
            segment.id,
            JobStatus.CANCELLED,
            error=JobError(kind=ErrorKind.CANCELLED, message="Segment is not part of its timeline"),
        )
        return cancelled or segment
