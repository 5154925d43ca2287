"""
Dependency resolver: chains timeline segments.

Segment i starts only after segment i-1 is persisted as SUCCEEDED; its input
is the predecessor's last artifact (optionally run through a frame
extractor, e.g. "last frame of this video"). When a segment ends FAILED or
TIMED_OUT, every later segment that has not started is cancelled and its
hold released. Segments already polling are left to finish.

regenerate_segment() re-runs a finished segment and every later one as fresh
records. The old records stay as they ended; the timeline points at the new
ones from then on.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional
from uuid import uuid4

from .. import metrics
from ..pricing import estimate_cost
from .billing import BillingReconciler
from .errors import InvalidTimeline, TimelineNotFound
from .models import (
    ErrorKind,
    Job,
    JobError,
    JobKind,
    JobStatus,
    Segment,
    Timeline,
    TimelineStatus,
    aggregate_status,
)
from .scheduler import PollingScheduler
from .store import JobStore

logger = logging.getLogger(__name__)

FrameExtractor = Callable[[str], Awaitable[str]]

FAILED_STATUSES = (JobStatus.FAILED, JobStatus.TIMED_OUT)


class DependencyResolver:
    def __init__(
        self,
        store: JobStore,
        scheduler: PollingScheduler,
        billing: BillingReconciler,
        frame_extractor: Optional[FrameExtractor] = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.billing = billing
        self.frame_extractor = frame_extractor
        self._locks: dict[str, asyncio.Lock] = {}
        scheduler.add_terminal_listener(self.on_job_terminal)

    def _lock(self, timeline_id: str) -> asyncio.Lock:
        return self._locks.setdefault(timeline_id, asyncio.Lock())

    async def start_timeline(self, timeline_id: str):
        segments = await self.store.list_segments(timeline_id)
        if segments:
            self.scheduler.dispatch(segments[0].id)

    # ── Terminal events ──────────────────────────────────────────────────

    async def on_job_terminal(self, job: Job):
        if not job.is_segment:
            return
        async with self._lock(job.timeline_id):
            timeline = await self.store.get_timeline(job.timeline_id)
            if timeline is not None and job.id not in timeline.segment_ids:
                logger.info(f"[{job.id}] Superseded segment ended {job.status.value}; timeline unchanged")
                return
            if job.status == JobStatus.SUCCEEDED:
                await self._advance(job)
            elif job.status in FAILED_STATUSES:
                await self._cascade(job)
            await self.refresh_timeline(job.timeline_id)

    async def _advance(self, segment: Segment):
        """Bind the successor's input to this segment's output and start it."""
        successor = await self._successor(segment)
        if successor is None or successor.status != JobStatus.CREATED:
            return

        if successor.input_artifact_ref:
            self.scheduler.dispatch(successor.id)
            return

        artifact = segment.result.last_artifact if segment.result else None
        if not artifact:
            await self._fail_unbindable(successor, f"Segment {segment.position} produced no artifact")
            return

        if self.frame_extractor is not None:
            try:
                artifact = await self.frame_extractor(artifact)
            except Exception as e:
                logger.error(f"[{successor.id}] Frame extraction failed: {e}", exc_info=True)
                await self._fail_unbindable(successor, f"Frame extraction failed: {e}")
                return

        bound = await self.store.update_job(successor.id, input_artifact_ref=artifact)
        if bound is None:
            return
        logger.info(f"[{successor.id}] Bound input from segment {segment.position}: {artifact[:80]}")
        self.scheduler.dispatch(successor.id)

    async def _successor(self, segment: Segment) -> Optional[Segment]:
        for candidate in await self.store.list_segments(segment.timeline_id):
            if candidate.position == segment.position + 1:
                return candidate
        return None

    async def _fail_unbindable(self, segment: Segment, message: str):
        failed = await self.store.transition(
            segment.id,
            JobStatus.FAILED,
            error=JobError(kind=ErrorKind.SUBMISSION, message=message),
        )
        if failed is not None:
            metrics.inc_counter("jobs.FAILED")
            await self.billing.release(failed.id)
            await self._cascade(failed)

    async def _cascade(self, failed: Segment):
        """Cancel every later segment that has not started yet."""
        for later in await self.store.list_segments(failed.timeline_id):
            if later.position <= failed.position or later.status != JobStatus.CREATED:
                continue
            cancelled = await self.store.transition(
                later.id,
                JobStatus.CANCELLED,
                error=JobError(
                    kind=ErrorKind.DEPENDENCY_CANCELLED,
                    message=f"Segment {failed.position} ended {failed.status.value}",
                ),
            )
            if cancelled is not None:
                metrics.inc_counter("jobs.CANCELLED")
                await self.billing.release(later.id)

    # ── Timeline status ──────────────────────────────────────────────────

    async def refresh_timeline(self, timeline_id: str) -> Timeline:
        timeline = await self.store.get_timeline(timeline_id)
        if timeline is None:
            raise TimelineNotFound(timeline_id)
        status = aggregate_status(await self.store.list_segments(timeline_id), timeline.status)
        if status != timeline.status:
            logger.info(f"Timeline {timeline_id}: {timeline.status.value} -> {status.value}")
            timeline = await self.store.save_timeline(timeline.model_copy(update={"status": status}))
        return timeline

    async def cancel_timeline(self, timeline_id: str) -> Timeline:
        timeline = await self.store.get_timeline(timeline_id)
        if timeline is None:
            raise TimelineNotFound(timeline_id)

        async with self._lock(timeline_id):
            for segment in await self.store.list_segments(timeline_id):
                if segment.is_terminal:
                    continue
                cancelled = await self.store.transition(
                    segment.id,
                    JobStatus.CANCELLED,
                    error=JobError(kind=ErrorKind.CANCELLED, message="Timeline cancelled"),
                )
                if cancelled is not None:
                    metrics.inc_counter("jobs.CANCELLED")
                    await self.billing.release(segment.id)
                    self.scheduler.wake(segment.id)

            timeline = await self.store.get_timeline(timeline_id)
            if timeline.status == TimelineStatus.IN_PROGRESS:
                timeline = await self.store.save_timeline(
                    timeline.model_copy(update={"status": TimelineStatus.CANCELLED})
                )
        logger.info(f"Timeline {timeline_id} cancelled")
        return timeline

    # ── Regeneration ─────────────────────────────────────────────────────

    async def regenerate_segment(self, timeline_id: str, position: int) -> Timeline:
        """
        Replace the segment at `position` and every later one with fresh jobs.

        The replacements hold tokens again (all or none) and chain as usual:
        the new segment binds from its predecessor's last artifact, or reuses
        the original source when it opens the timeline. Every segment from
        `position` on must be finished, and a later segment needs a
        succeeded predecessor. Raises InvalidTimeline or InsufficientBalance.
        """
        async with self._lock(timeline_id):
            timeline = await self.store.get_timeline(timeline_id)
            if timeline is None:
                raise TimelineNotFound(timeline_id)
            segments = await self.store.list_segments(timeline_id)
            if not 0 <= position < len(segments):
                raise InvalidTimeline(f"Timeline {timeline_id} has no segment {position}")
            if position > 0 and segments[position - 1].status != JobStatus.SUCCEEDED:
                raise InvalidTimeline(f"Segment {position - 1} has not succeeded; regenerate it first")
            running = [s.position for s in segments[position:] if not s.is_terminal]
            if running:
                raise InvalidTimeline(f"Segments {running} are still running")

            replacements: list[Segment] = []
            for old in segments[position:]:
                previous = replacements[-1].id if replacements else (segments[position - 1].id if position else None)
                replacements.append(Segment(
                    id=str(uuid4()),
                    owner_id=old.owner_id,
                    provider=old.provider,
                    model=old.model,
                    input_spec=dict(old.input_spec),
                    cost_reserved=estimate_cost(JobKind.COMPOSITE_SEGMENT, old.input_spec),
                    timeline_id=timeline_id,
                    position=old.position,
                    predecessor_id=previous,
                    input_artifact_ref=old.input_artifact_ref if old.position == 0 else None,
                    generation_mode=old.generation_mode,
                    duration_sec=old.duration_sec,
                ))

            await self.billing.reserve_many(timeline.owner_id, {s.id: s.cost_reserved for s in replacements})
            for segment in replacements:
                await self.store.create_job(segment)
            await self.store.save_timeline(timeline.model_copy(update={
                "segment_ids": [s.id for s in segments[:position]] + [s.id for s in replacements],
                "status": TimelineStatus.IN_PROGRESS,
            }))
            metrics.inc_counter("jobs.created", len(replacements))
            metrics.inc_counter("timelines.regenerated")
            logger.info(
                f"Timeline {timeline_id}: regenerating from segment {position} "
                f"({len(replacements)} new segment(s), {sum(s.cost_reserved for s in replacements)} tokens held)"
            )

            if position == 0:
                self.scheduler.dispatch(replacements[0].id)
            else:
                await self._advance(segments[position - 1])
            return await self.refresh_timeline(timeline_id)

    # ── Recovery ─────────────────────────────────────────────────────────

    async def recover(self) -> int:
        """Pick up every in-progress timeline where it left off."""
        timelines = await self.store.list_timelines(TimelineStatus.IN_PROGRESS)
        for timeline in timelines:
            async with self._lock(timeline.id):
                await self._resume(timeline)
                await self.refresh_timeline(timeline.id)
        if timelines:
            logger.info(f"Resolver recovered {len(timelines)} timeline(s)")
        return len(timelines)

    async def _resume(self, timeline: Timeline):
        segments = await self.store.list_segments(timeline.id)
        for index, segment in enumerate(segments):
            if segment.status == JobStatus.SUCCEEDED:
                continue
            if segment.status in FAILED_STATUSES:
                await self._cascade(segment)
            elif segment.status == JobStatus.CREATED:
                if index == 0:
                    self.scheduler.dispatch(segment.id)
                else:
                    await self._advance(segments[index - 1])
            elif segment.status in (JobStatus.SUBMITTED, JobStatus.POLLING):
                self.scheduler.dispatch(segment.id)
            return
