"""
GenerationOrchestrator: the inbound interface of the job orchestrator.

Wires the store, provider adapters, billing, scheduler and resolver together
and exposes the operations callers use:

  create_job(owner_id, kind, input_spec)        → job_id
  create_timeline(owner_id, segment_specs)      → timeline_id
  get_job_status(job_id)                        → JobView
  get_timeline_status(timeline_id)              → TimelineView
  cancel_timeline(timeline_id)                  → TimelineView
  regenerate_segment(timeline_id, position)     → TimelineView
  wait_for_job(job_id, timeout)                 → JobResult (or raises)
"""

import asyncio
import logging
import os
from typing import Optional
from uuid import uuid4

from .. import metrics
from ..pricing import DURATION_KEY, estimate_cost, normalize_input
from ..provider_factory import ProviderFactory
from .billing import BillingReconciler
from .config import OrchestratorConfig, ProviderSettings
from .errors import InvalidTimeline, JobNotFound, TimelineNotFound, error_for
from .ledger import Ledger, MemoryLedger, SupabaseLedger
from .models import (
    GenerationMode,
    Job,
    JobKind,
    JobResult,
    JobStatus,
    JobView,
    Segment,
    SegmentSpec,
    Timeline,
    TimelineView,
    available_modes,
)
from .redis_store import RedisJobStore
from .resolver import DependencyResolver, FrameExtractor
from .scheduler import PollingScheduler
from .store import JobStore, MemoryJobStore

logger = logging.getLogger(__name__)

# Set by the segment spec itself; options may not override them
RESERVED_OPTION_KEYS = ("prompt", "model", "provider", "duration", "duration_sec")


class GenerationOrchestrator:
    """
    Usage:
        orchestrator = GenerationOrchestrator.from_env()
        await orchestrator.start()              # reconcile + resume

        job_id = await orchestrator.create_job(owner_id, JobKind.IMAGE, {"prompt": "..."})
        result = await orchestrator.wait_for_job(job_id, timeout=300)

        await orchestrator.shutdown()
    """

    def __init__(
        self,
        store: JobStore,
        providers: ProviderFactory,
        ledger: Optional[Ledger] = None,
        config: Optional[OrchestratorConfig] = None,
        frame_extractor: Optional[FrameExtractor] = None,
    ):
        self.store = store
        self.providers = providers
        self.ledger = ledger or MemoryLedger()
        self.config = config or OrchestratorConfig()
        self.billing = BillingReconciler(store, self.ledger)
        self.scheduler = PollingScheduler(store, providers, self.billing, self.config)
        self.resolver = DependencyResolver(store, self.scheduler, self.billing, frame_extractor)

    @classmethod
    def from_env(cls) -> "GenerationOrchestrator":
        redis_url = os.environ.get("REDIS_URL")
        if redis_url:
            store: JobStore = RedisJobStore.from_url(redis_url)
            logger.info(f"Using Redis job store: {redis_url[:30]}...")
        else:
            store = MemoryJobStore()
            logger.warning("REDIS_URL not set, using in-memory job store (state is lost on restart)")

        ledger = SupabaseLedger.from_env()
        if ledger is None:
            logger.warning("Supabase not configured, token usage ledger kept in memory")

        return cls(
            store=store,
            providers=ProviderFactory.from_settings(ProviderSettings.from_env()),
            ledger=ledger,
            config=OrchestratorConfig.from_env(),
        )

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self):
        """Settle billing left over from a crash, then resume live work."""
        reconciled = await self.billing.reconcile()
        resumed = await self.scheduler.recover()
        timelines = await self.resolver.recover()
        logger.info(
            f"Orchestrator started: {reconciled['charged']} charged, {reconciled['released']} released, "
            f"{resumed} job(s) and {timelines} timeline(s) resumed"
        )

    async def shutdown(self):
        await self.scheduler.stop()
        await self.providers.aclose()
        await self.store.close()

    # ── Jobs ─────────────────────────────────────────────────────────────

    async def create_job(self, owner_id: str, kind: JobKind, input_spec: dict) -> str:
        if kind == JobKind.COMPOSITE_SEGMENT:
            raise ValueError("Composite segments are created through create_timeline")

        try:
            provider, _ = self.providers.provider_for(kind, input_spec)
        except KeyError as e:
            raise ValueError(str(e)) from e

        # Raises ValueError for a bad duration; the adapter is sent what is priced
        input_spec = normalize_input(kind, input_spec)
        cost = estimate_cost(kind, input_spec)
        job_id = str(uuid4())
        await self.billing.reserve(owner_id, job_id, cost)

        job = Job(
            id=job_id,
            owner_id=owner_id,
            kind=kind,
            provider=provider,
            model=input_spec.get("model"),
            input_spec=input_spec,
            cost_reserved=cost,
        )
        await self.store.create_job(job)
        metrics.inc_counter("jobs.created")
        logger.info(f"[{job_id}] Created {kind.value} job for {owner_id} via {provider} ({cost} tokens held)")

        self.scheduler.dispatch(job_id)
        return job_id

    async def get_job_status(self, job_id: str) -> JobView:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return JobView.from_job(job)

    async def wait_for_job(
        self,
        job_id: str,
        timeout: Optional[float] = None,
        poll_interval: float = 0.1,
    ) -> JobResult:
        """
        Wait until the job is terminal.

        Returns the result on success, raises the job's terminal error
        otherwise, and asyncio.TimeoutError if `timeout` passes first.
        """

        async def _terminal() -> Job:
            while True:
                job = await self.store.get_job(job_id)
                if job is None:
                    raise JobNotFound(job_id)
                if job.is_terminal:
                    return job
                await asyncio.sleep(poll_interval)

        job = await asyncio.wait_for(_terminal(), timeout)
        if job.status == JobStatus.SUCCEEDED:
            return job.result
        raise error_for(job.id, job.error)

    # ── Timelines ────────────────────────────────────────────────────────

    def _validate_segments(self, segment_specs: list[SegmentSpec]):
        if not segment_specs:
            raise InvalidTimeline("A timeline needs at least one segment")
        for position, spec in enumerate(segment_specs):
            if spec.generation_mode not in available_modes(position):
                raise InvalidTimeline(
                    f"Segment {position} cannot use {spec.generation_mode.value}; "
                    f"only the first segment may choose its mode"
                )
        first = segment_specs[0]
        if first.generation_mode != GenerationMode.TEXT_TO_VIDEO and not first.source_url:
            raise InvalidTimeline(f"First segment in {first.generation_mode.value} mode needs a source_url")

    async def create_timeline(self, owner_id: str, segment_specs: list[SegmentSpec]) -> str:
        self._validate_segments(segment_specs)

        timeline_id = str(uuid4())
        segments: list[Segment] = []
        for position, spec in enumerate(segment_specs):
            overridden = sorted(k for k in RESERVED_OPTION_KEYS if k in spec.options)
            if overridden:
                logger.warning(f"Timeline {timeline_id}: segment {position} options cannot set {overridden}, ignored")
            options = {k: v for k, v in spec.options.items() if k not in RESERVED_OPTION_KEYS}

            try:
                input_spec = normalize_input(JobKind.COMPOSITE_SEGMENT, {
                    **options,
                    "prompt": spec.prompt,
                    "model": spec.model,
                    DURATION_KEY: spec.duration_sec,
                })
                provider, _ = self.providers.provider_for(JobKind.COMPOSITE_SEGMENT, input_spec)
            except (KeyError, ValueError) as e:
                raise InvalidTimeline(f"Segment {position}: {e}") from e
            if position > 0 and spec.source_url:
                logger.warning(f"Timeline {timeline_id}: ignoring source_url on segment {position}")

            segments.append(Segment(
                id=str(uuid4()),
                owner_id=owner_id,
                provider=provider,
                model=spec.model,
                input_spec=input_spec,
                cost_reserved=estimate_cost(JobKind.COMPOSITE_SEGMENT, input_spec),
                timeline_id=timeline_id,
                position=position,
                predecessor_id=segments[-1].id if segments else None,
                input_artifact_ref=spec.source_url if position == 0 else None,
                generation_mode=spec.generation_mode,
                duration_sec=input_spec[DURATION_KEY],
            ))

        await self.billing.reserve_many(owner_id, {s.id: s.cost_reserved for s in segments})

        timeline = Timeline(id=timeline_id, owner_id=owner_id, segment_ids=[s.id for s in segments])
        await self.store.create_timeline(timeline, segments)
        metrics.inc_counter("timelines.created")
        metrics.inc_counter("jobs.created", len(segments))
        logger.info(
            f"Timeline {timeline_id} created for {owner_id}: {len(segments)} segment(s), "
            f"{sum(s.cost_reserved for s in segments)} tokens held"
        )

        await self.resolver.start_timeline(timeline_id)
        return timeline_id

    async def get_timeline_status(self, timeline_id: str) -> TimelineView:
        timeline = await self.store.get_timeline(timeline_id)
        if timeline is None:
            raise TimelineNotFound(timeline_id)
        segments = await self.store.list_segments(timeline_id)
        return TimelineView(
            id=timeline.id,
            owner_id=timeline.owner_id,
            status=timeline.status,
            total_duration=sum(s.duration_sec for s in segments),
            segments=[JobView.from_job(s) for s in segments],
        )

    async def cancel_timeline(self, timeline_id: str) -> TimelineView:
        await self.resolver.cancel_timeline(timeline_id)
        return await self.get_timeline_status(timeline_id)

    async def regenerate_segment(self, timeline_id: str, position: int) -> TimelineView:
        """Re-run a finished segment and everything after it as fresh jobs."""
        await self.resolver.regenerate_segment(timeline_id, position)
        return await self.get_timeline_status(timeline_id)

    # ── Balances ─────────────────────────────────────────────────────────

    async def credit_tokens(self, owner_id: str, amount: int) -> int:
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        balance = await self.store.credit(owner_id, amount)
        logger.info(f"Credited {amount} tokens to {owner_id} (balance={balance})")
        return balance

    async def get_balance(self, owner_id: str) -> dict:
        balance = await self.store.get_balance(owner_id)
        held = await self.store.get_held(owner_id)
        return {"owner_id": owner_id, "balance": balance, "held": held, "available": balance - held}
