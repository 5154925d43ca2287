"""
Redis-backed state store.

Each mutation runs as a WATCH/MULTI/EXEC optimistic transaction and retries
on WatchError, so concurrent workers (and several worker processes) never
lose an update or double-charge.

Keys:
  orch:job:{job_id}              Job / Segment record (JSON)
  orch:status:{STATUS}           job ids by status (set)
  orch:timeline:{timeline_id}    Timeline record (JSON)
  orch:timelines:{status}        timeline ids by status (set)
  orch:balance:{owner_id}        token balance (integer)
  orch:holds:{owner_id}          outstanding holds, job_id → amount (hash)
  orch:hold_owners               job_id → owner_id for every hold (hash)
"""

import json
import logging
from typing import Awaitable, Callable, Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from .errors import JobNotFound
from .models import (
    Job,
    JobStatus,
    Segment,
    Timeline,
    TimelineStatus,
    job_from_record,
    utcnow,
)
from .store import JobStore, apply_transition, apply_update, check_available

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "orch"


class RedisJobStore(JobStore):
    def __init__(self, client: redis.Redis, prefix: str = DEFAULT_PREFIX):
        # client must be created with decode_responses=True
        self.redis = client
        self.prefix = prefix.rstrip(":")

    @classmethod
    def from_url(cls, url: str, prefix: str = DEFAULT_PREFIX) -> "RedisJobStore":
        return cls(redis.from_url(url, decode_responses=True), prefix=prefix)

    async def close(self):
        await self.redis.aclose()

    # ── Keys ─────────────────────────────────────────────────────────────

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _status_key(self, status: JobStatus) -> str:
        return f"{self.prefix}:status:{status.value}"

    def _timeline_key(self, timeline_id: str) -> str:
        return f"{self.prefix}:timeline:{timeline_id}"

    def _timeline_status_key(self, status: TimelineStatus) -> str:
        return f"{self.prefix}:timelines:{status.value}"

    def _balance_key(self, owner_id: str) -> str:
        return f"{self.prefix}:balance:{owner_id}"

    def _holds_key(self, owner_id: str) -> str:
        return f"{self.prefix}:holds:{owner_id}"

    @property
    def _hold_owners_key(self) -> str:
        return f"{self.prefix}:hold_owners"

    # ── Transactions ─────────────────────────────────────────────────────

    async def _transact(self, keys: list[str], op: Callable[..., Awaitable[tuple]]):
        """
        Run op under WATCH on keys until it commits without contention.

        op(pipe) reads through the pipe, then either calls pipe.multi() and
        queues its writes, returning (value, True), or returns (value, False)
        to leave the store untouched.
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(*keys)
                    value, commit = await op(pipe)
                    if commit:
                        await pipe.execute()
                    return value
                except WatchError:
                    logger.debug(f"Contention on {keys}, retrying transaction")
                    continue

    async def _load(self, conn, job_id: str) -> Job:
        raw = await conn.get(self._job_key(job_id))
        if raw is None:
            raise JobNotFound(job_id)
        return job_from_record(json.loads(raw))

    # ── Jobs ─────────────────────────────────────────────────────────────

    async def create_job(self, job: Job) -> Job:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), job.model_dump_json())
            pipe.sadd(self._status_key(job.status), job.id)
            await pipe.execute()
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        raw = await self.redis.get(self._job_key(job_id))
        return job_from_record(json.loads(raw)) if raw else None

    async def list_jobs(self, statuses: Iterable[JobStatus]) -> list[Job]:
        job_ids: set[str] = set()
        for status in statuses:
            job_ids.update(await self.redis.smembers(self._status_key(status)))
        if not job_ids:
            return []
        raws = await self.redis.mget([self._job_key(j) for j in sorted(job_ids)])
        return [job_from_record(json.loads(raw)) for raw in raws if raw]

    async def transition(self, job_id: str, to_status: JobStatus, **changes) -> Optional[Job]:
        key = self._job_key(job_id)

        async def op(pipe):
            job = await self._load(pipe, job_id)
            updated = apply_transition(job, to_status, changes)
            if updated is None:
                return None, False
            pipe.multi()
            pipe.set(key, updated.model_dump_json())
            pipe.srem(self._status_key(job.status), job_id)
            pipe.sadd(self._status_key(to_status), job_id)
            return updated, True

        return await self._transact([key], op)

    async def update_job(self, job_id: str, **changes) -> Optional[Job]:
        key = self._job_key(job_id)

        async def op(pipe):
            updated = apply_update(await self._load(pipe, job_id), changes)
            if updated is None:
                return None, False
            pipe.multi()
            pipe.set(key, updated.model_dump_json())
            return updated, True

        return await self._transact([key], op)

    # ── Timelines ────────────────────────────────────────────────────────

    async def create_timeline(self, timeline: Timeline, segments: list[Segment]) -> Timeline:
        async with self.redis.pipeline(transaction=True) as pipe:
            for segment in segments:
                pipe.set(self._job_key(segment.id), segment.model_dump_json())
                pipe.sadd(self._status_key(segment.status), segment.id)
            pipe.set(self._timeline_key(timeline.id), timeline.model_dump_json())
            pipe.sadd(self._timeline_status_key(timeline.status), timeline.id)
            await pipe.execute()
        return timeline

    async def get_timeline(self, timeline_id: str) -> Optional[Timeline]:
        raw = await self.redis.get(self._timeline_key(timeline_id))
        return Timeline.model_validate_json(raw) if raw else None

    async def save_timeline(self, timeline: Timeline) -> Timeline:
        saved = timeline.model_copy(update={"updated_at": utcnow()})
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._timeline_key(saved.id), saved.model_dump_json())
            for status in TimelineStatus:
                if status != saved.status:
                    pipe.srem(self._timeline_status_key(status), saved.id)
            pipe.sadd(self._timeline_status_key(saved.status), saved.id)
            await pipe.execute()
        return saved

    async def list_timelines(self, status: Optional[TimelineStatus] = None) -> list[Timeline]:
        statuses = [status] if status else list(TimelineStatus)
        timeline_ids: set[str] = set()
        for s in statuses:
            timeline_ids.update(await self.redis.smembers(self._timeline_status_key(s)))
        if not timeline_ids:
            return []
        raws = await self.redis.mget([self._timeline_key(t) for t in sorted(timeline_ids)])
        return [Timeline.model_validate_json(raw) for raw in raws if raw]

    # ── Balances and holds ───────────────────────────────────────────────

    async def set_balance(self, owner_id: str, amount: int):
        await self.redis.set(self._balance_key(owner_id), int(amount))

    async def credit(self, owner_id: str, amount: int) -> int:
        return int(await self.redis.incrby(self._balance_key(owner_id), int(amount)))

    async def get_balance(self, owner_id: str) -> int:
        return int(await self.redis.get(self._balance_key(owner_id)) or 0)

    async def get_held(self, owner_id: str) -> int:
        return sum(int(v) for v in await self.redis.hvals(self._holds_key(owner_id)))

    async def hold(self, owner_id: str, amounts: dict[str, int]):
        balance_key = self._balance_key(owner_id)
        holds_key = self._holds_key(owner_id)

        async def op(pipe):
            balance = int(await pipe.get(balance_key) or 0)
            held = sum(int(v) for v in await pipe.hvals(holds_key))
            check_available(owner_id, balance, held, amounts)
            pipe.multi()
            pipe.hset(holds_key, mapping={job_id: int(a) for job_id, a in amounts.items()})
            pipe.hset(self._hold_owners_key, mapping={job_id: owner_id for job_id in amounts})
            return None, True

        await self._transact([balance_key, holds_key], op)

    async def charge(self, job_id: str) -> Optional[int]:
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        key = self._job_key(job_id)
        balance_key = self._balance_key(job.owner_id)
        holds_key = self._holds_key(job.owner_id)

        async def op(pipe):
            current = await self._load(pipe, job_id)
            if current.status != JobStatus.SUCCEEDED or current.cost_charged is not None:
                return None, False
            amount = current.cost_reserved
            charged = current.model_copy(update={"cost_charged": amount, "updated_at": utcnow()})
            pipe.multi()
            pipe.set(key, charged.model_dump_json())
            pipe.decrby(balance_key, amount)
            pipe.hdel(holds_key, job_id)
            pipe.hdel(self._hold_owners_key, job_id)
            return amount, True

        return await self._transact([key, balance_key, holds_key], op)

    async def release(self, job_id: str) -> bool:
        owner_id = await self.redis.hget(self._hold_owners_key, job_id)
        if owner_id is None:
            return False
        holds_key = self._holds_key(owner_id)

        async def op(pipe):
            if not await pipe.hexists(self._hold_owners_key, job_id):
                return False, False
            pipe.multi()
            pipe.hdel(holds_key, job_id)
            pipe.hdel(self._hold_owners_key, job_id)
            return True, True

        return await self._transact([self._hold_owners_key, holds_key], op)

    async def list_holds(self) -> dict[str, int]:
        holds = {}
        for job_id, owner_id in (await self.redis.hgetall(self._hold_owners_key)).items():
            amount = await self.redis.hget(self._holds_key(owner_id), job_id)
            if amount is not None:
                holds[job_id] = int(amount)
        return holds
