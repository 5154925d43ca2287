"""
State store: durable home of jobs, timelines, balances and token holds.

Every method that changes a job or a balance is atomic with respect to every
other store call. Two backends share this contract:

  MemoryJobStore   one asyncio.Lock around plain dicts (tests, single process)
  RedisJobStore    WATCH/MULTI optimistic transactions (redis_store.py)

Transition rules live here, not in callers: a transition on a terminal job,
or one the state graph forbids, is logged and returns None.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from .errors import InsufficientBalance, JobNotFound
from .models import TERMINAL_STATUSES, Job, JobStatus, Segment, Timeline, TimelineStatus, utcnow

logger = logging.getLogger(__name__)

# Fields a non-status update may touch on a live job
MUTABLE_FIELDS = {
    "attempt_count",
    "transient_errors",
    "last_polled_at",
    "input_artifact_ref",
    "provider_ref",
}


def apply_transition(job: Job, to_status: JobStatus, changes: dict) -> Optional[Job]:
    """Return the job after moving it to to_status, or None if not allowed."""
    if job.is_terminal:
        logger.info(f"[{job.id}] Ignoring {job.status.value} -> {to_status.value}: job is already terminal")
        return None
    if not job.can_transition(to_status):
        logger.warning(f"[{job.id}] Refusing transition {job.status.value} -> {to_status.value}")
        return None

    now = utcnow()
    update = dict(changes)
    update["status"] = to_status
    update["updated_at"] = now
    if to_status in TERMINAL_STATUSES:
        update["terminal_at"] = now
    updated = job.model_copy(update=update, deep=True)
    logger.info(f"[{job.id}] {job.status.value} -> {to_status.value}")
    return updated


def apply_update(job: Job, changes: dict) -> Optional[Job]:
    """Return the job with bookkeeping fields changed, or None if it is terminal."""
    if job.is_terminal:
        logger.info(f"[{job.id}] Ignoring update on terminal job: {sorted(changes)}")
        return None
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated outside a transition: {sorted(unknown)}")
    return job.model_copy(update={**changes, "updated_at": utcnow()}, deep=True)


def check_available(owner_id: str, balance: int, held: int, amounts: dict[str, int]):
    required = sum(amounts.values())
    available = balance - held
    if required > available:
        raise InsufficientBalance(owner_id, required, available)


class JobStore(ABC):
    # ── Jobs ─────────────────────────────────────────────────────────────

    @abstractmethod
    async def create_job(self, job: Job) -> Job:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_jobs(self, statuses: Iterable[JobStatus]) -> list[Job]:
        ...

    @abstractmethod
    async def transition(self, job_id: str, to_status: JobStatus, **changes) -> Optional[Job]:
        """Atomically move a job along the state graph. None when refused."""

    @abstractmethod
    async def update_job(self, job_id: str, **changes) -> Optional[Job]:
        """Atomically change bookkeeping fields of a live job. None when terminal."""

    # ── Timelines ────────────────────────────────────────────────────────

    @abstractmethod
    async def create_timeline(self, timeline: Timeline, segments: list[Segment]) -> Timeline:
        ...

    @abstractmethod
    async def get_timeline(self, timeline_id: str) -> Optional[Timeline]:
        ...

    @abstractmethod
    async def save_timeline(self, timeline: Timeline) -> Timeline:
        ...

    @abstractmethod
    async def list_timelines(self, status: Optional[TimelineStatus] = None) -> list[Timeline]:
        ...

    async def list_segments(self, timeline_id: str) -> list[Segment]:
        timeline = await self.get_timeline(timeline_id)
        if timeline is None:
            return []
        segments = []
        for segment_id in timeline.segment_ids:
            segment = await self.get_job(segment_id)
            if segment is not None:
                segments.append(segment)
        return sorted(segments, key=lambda s: s.position)

    # ── Balances and holds ───────────────────────────────────────────────

    @abstractmethod
    async def set_balance(self, owner_id: str, amount: int):
        ...

    @abstractmethod
    async def credit(self, owner_id: str, amount: int) -> int:
        ...

    @abstractmethod
    async def get_balance(self, owner_id: str) -> int:
        ...

    @abstractmethod
    async def get_held(self, owner_id: str) -> int:
        ...

    async def get_available(self, owner_id: str) -> int:
        return await self.get_balance(owner_id) - await self.get_held(owner_id)

    @abstractmethod
    async def hold(self, owner_id: str, amounts: dict[str, int]):
        """Hold tokens for every job in amounts, or for none (InsufficientBalance)."""

    @abstractmethod
    async def charge(self, job_id: str) -> Optional[int]:
        """
        Convert a Succeeded job's hold into a charge.

        Decrements the balance, sets cost_charged and drops the hold in one
        step. Returns the amount, or None when the job is not Succeeded or
        was already charged.
        """

    @abstractmethod
    async def release(self, job_id: str) -> bool:
        """Drop a job's hold without touching the balance."""

    @abstractmethod
    async def list_holds(self) -> dict[str, int]:
        """All outstanding holds as {job_id: amount}."""

    async def close(self):
        pass


class MemoryJobStore(JobStore):
    """In-process store. Callers always receive copies."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._jobs: dict[str, Job] = {}
        self._timelines: dict[str, Timeline] = {}
        self._balances: dict[str, int] = {}
        self._holds: dict[str, dict[str, int]] = {}
        self._hold_owners: dict[str, str] = {}

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def create_job(self, job: Job) -> Job:
        async with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(self, statuses: Iterable[JobStatus]) -> list[Job]:
        wanted = set(statuses)
        return [j.model_copy(deep=True) for j in self._jobs.values() if j.status in wanted]

    async def transition(self, job_id: str, to_status: JobStatus, **changes) -> Optional[Job]:
        async with self._lock:
            updated = apply_transition(self._require(job_id), to_status, changes)
            if updated is None:
                return None
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    async def update_job(self, job_id: str, **changes) -> Optional[Job]:
        async with self._lock:
            updated = apply_update(self._require(job_id), changes)
            if updated is None:
                return None
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    async def create_timeline(self, timeline: Timeline, segments: list[Segment]) -> Timeline:
        async with self._lock:
            for segment in segments:
                self._jobs[segment.id] = segment.model_copy(deep=True)
            self._timelines[timeline.id] = timeline.model_copy(deep=True)
        return timeline

    async def get_timeline(self, timeline_id: str) -> Optional[Timeline]:
        timeline = self._timelines.get(timeline_id)
        return timeline.model_copy(deep=True) if timeline else None

    async def save_timeline(self, timeline: Timeline) -> Timeline:
        async with self._lock:
            saved = timeline.model_copy(update={"updated_at": utcnow()}, deep=True)
            self._timelines[timeline.id] = saved
        return saved.model_copy(deep=True)

    async def list_timelines(self, status: Optional[TimelineStatus] = None) -> list[Timeline]:
        return [
            t.model_copy(deep=True)
            for t in self._timelines.values()
            if status is None or t.status == status
        ]

    async def set_balance(self, owner_id: str, amount: int):
        async with self._lock:
            self._balances[owner_id] = amount

    async def credit(self, owner_id: str, amount: int) -> int:
        async with self._lock:
            self._balances[owner_id] = self._balances.get(owner_id, 0) + amount
            return self._balances[owner_id]

    async def get_balance(self, owner_id: str) -> int:
        return self._balances.get(owner_id, 0)

    async def get_held(self, owner_id: str) -> int:
        return sum(self._holds.get(owner_id, {}).values())

    async def hold(self, owner_id: str, amounts: dict[str, int]):
        async with self._lock:
            holds = self._holds.setdefault(owner_id, {})
            check_available(owner_id, self._balances.get(owner_id, 0), sum(holds.values()), amounts)
            for job_id, amount in amounts.items():
                holds[job_id] = amount
                self._hold_owners[job_id] = owner_id

    async def charge(self, job_id: str) -> Optional[int]:
        async with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.SUCCEEDED or job.cost_charged is not None:
                return None
            amount = job.cost_reserved
            self._balances[job.owner_id] = self._balances.get(job.owner_id, 0) - amount
            self._holds.get(job.owner_id, {}).pop(job_id, None)
            self._hold_owners.pop(job_id, None)
            self._jobs[job_id] = job.model_copy(update={"cost_charged": amount, "updated_at": utcnow()})
            return amount

    async def release(self, job_id: str) -> bool:
        async with self._lock:
            owner_id = self._hold_owners.pop(job_id, None)
            if owner_id is None:
                return False
            self._holds.get(owner_id, {}).pop(job_id, None)
            return True

    async def list_holds(self) -> dict[str, int]:
        return {
            job_id: self._holds[owner_id][job_id]
            for job_id, owner_id in self._hold_owners.items()
        }
