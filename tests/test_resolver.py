import asyncio
import math

import pytest
from pydantic import ValidationError

from conftest import done, failed, fast_config, pending
from studio_worker.orchestrator.config import OrchestratorConfig, PollingPolicy
from studio_worker.orchestrator.errors import (
    InsufficientBalance,
    InvalidTimeline,
    JobCancelled,
    TimelineNotFound,
)
from studio_worker.orchestrator.models import (
    ErrorKind,
    GenerationMode,
    JobKind,
    JobResult,
    JobStatus,
    ProviderTaskRef,
    Segment,
    SegmentSpec,
    Timeline,
    TimelineStatus,
)
from studio_worker.orchestrator.orchestrator import GenerationOrchestrator

S0 = "https://cdn.test/s0.mp4"
S1 = "https://cdn.test/s1.mp4"
S2 = "https://cdn.test/s2.mp4"


@pytest.fixture
async def make_orchestrator(store, providers, ledger):
    created = []

    def _make(config: OrchestratorConfig = None, frame_extractor=None) -> GenerationOrchestrator:
        orch = GenerationOrchestrator(
            store=store,
            providers=providers,
            ledger=ledger,
            config=config or fast_config(),
            frame_extractor=frame_extractor,
        )
        created.append(orch)
        return orch

    yield _make
    for orch in created:
        await orch.scheduler.stop()


async def _settled(orch: GenerationOrchestrator, timeline_id: str, timeout: float = 5.0):
    """Wait for the timeline to leave IN_PROGRESS and for its workers to exit."""

    async def _check():
        while (await orch.get_timeline_status(timeline_id)).status == TimelineStatus.IN_PROGRESS:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_check(), timeout)
    await asyncio.wait_for(orch.scheduler.wait_idle(), timeout)
    return await orch.get_timeline_status(timeline_id)


def _chain(count: int = 3) -> list[SegmentSpec]:
    specs = [SegmentSpec(prompt="shot 0", generation_mode=GenerationMode.TEXT_TO_VIDEO)]
    specs.extend(SegmentSpec(prompt=f"shot {i}") for i in range(1, count))
    return specs


@pytest.mark.anyio
async def test_segments_run_in_order_on_predecessor_output(orchestrator, store, adapter, ledger) -> None:
    await store.set_balance("owner-1", 200)
    adapter.queue(pending(), done(S0))
    adapter.queue(done(S1))
    adapter.queue(done(S2))
    in_flight_at_submit = []

    async def record(spec):
        active = await store.list_jobs([JobStatus.SUBMITTED, JobStatus.POLLING])
        in_flight_at_submit.append(len(active))

    adapter.on_submit = record
    specs = _chain()
    specs[2] = SegmentSpec(prompt="shot 2", duration_sec=8)

    timeline_id = await orchestrator.create_timeline("owner-1", specs)
    view = await _settled(orchestrator, timeline_id)

    assert view.status == TimelineStatus.SUCCEEDED
    assert [s.status for s in view.segments] == [JobStatus.SUCCEEDED] * 3
    assert view.total_duration == 18
    assert in_flight_at_submit == [0, 0, 0]

    specs_sent = [spec for _, spec in adapter.submissions]
    assert "image_url" not in specs_sent[0]
    assert specs_sent[1]["image_url"] == S0
    assert specs_sent[2]["image_url"] == S1
    assert specs_sent[2]["duration"] == 8
    assert all(kind == JobKind.COMPOSITE_SEGMENT for kind, _ in adapter.submissions)

    # veo-3.1-fast at 4 tokens/s: 20 + 20 + 32
    assert await store.get_balance("owner-1") == 128
    assert await store.get_held("owner-1") == 0
    assert len(ledger.entries) == 3
    assert {e.metadata["position"] for e in ledger.entries} == {0, 1, 2}


@pytest.mark.anyio
async def test_failed_segment_cancels_the_rest(orchestrator, store, adapter) -> None:
    await store.set_balance("owner-1", 200)
    adapter.queue(done(S0))
    adapter.queue(pending(), failed("moderation"))

    timeline_id = await orchestrator.create_timeline("owner-1", _chain(4))
    view = await _settled(orchestrator, timeline_id)

    assert view.status == TimelineStatus.FAILED
    statuses = [s.status for s in view.segments]
    assert statuses == [JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.CANCELLED]
    assert view.segments[1].error.kind == ErrorKind.PROVIDER_FAILURE
    assert all(s.error.kind == ErrorKind.DEPENDENCY_CANCELLED for s in view.segments[2:])
    assert len(adapter.submissions) == 2
    assert await store.get_balance("owner-1") == 180
    assert await store.get_held("owner-1") == 0


@pytest.mark.anyio
async def test_frame_extractor_feeds_the_successor(make_orchestrator, store, adapter) -> None:
    async def last_frame(url: str) -> str:
        return url.replace(".mp4", "-last.png")

    orch = make_orchestrator(frame_extractor=last_frame)
    await store.set_balance("owner-1", 200)
    adapter.queue(done(S0))

    timeline_id = await orch.create_timeline("owner-1", _chain(2))
    view = await _settled(orch, timeline_id)

    assert view.status == TimelineStatus.SUCCEEDED
    assert adapter.submissions[1][1]["image_url"] == "https://cdn.test/s0-last.png"
    assert view.segments[1].input_artifact_ref == "https://cdn.test/s0-last.png"


@pytest.mark.anyio
async def test_frame_extraction_failure_fails_the_successor(make_orchestrator, store, adapter) -> None:
    async def broken(url: str) -> str:
        raise RuntimeError("ffmpeg exited 1")

    orch = make_orchestrator(frame_extractor=broken)
    await store.set_balance("owner-1", 200)

    timeline_id = await orch.create_timeline("owner-1", _chain(3))
    view = await _settled(orch, timeline_id)

    assert view.status == TimelineStatus.FAILED
    assert [s.status for s in view.segments] == [JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED]
    assert view.segments[1].error.kind == ErrorKind.SUBMISSION
    assert view.segments[2].error.kind == ErrorKind.DEPENDENCY_CANCELLED
    assert len(adapter.submissions) == 1
    assert await store.get_held("owner-1") == 0


@pytest.mark.anyio
async def test_cancel_timeline_stops_running_and_pending_segments(make_orchestrator, store, adapter) -> None:
    slow = OrchestratorConfig(
        policies={kind: PollingPolicy(interval_seconds=30, max_attempts=5) for kind in JobKind}
    )
    orch = make_orchestrator(slow)
    await store.set_balance("owner-1", 200)

    timeline_id = await orch.create_timeline("owner-1", _chain(2))
    first = (await store.list_segments(timeline_id))[0]

    async def polling():
        while (await store.get_job(first.id)).status != JobStatus.POLLING:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(polling(), 2)

    view = await orch.cancel_timeline(timeline_id)
    await asyncio.wait_for(orch.scheduler.wait_idle(), 1)

    assert view.status == TimelineStatus.CANCELLED
    assert [s.status for s in view.segments] == [JobStatus.CANCELLED, JobStatus.CANCELLED]
    assert all(s.error.kind == ErrorKind.CANCELLED for s in view.segments)
    assert await store.get_balance("owner-1") == 200
    assert await store.get_held("owner-1") == 0
    assert adapter.poll_counts == {}

    with pytest.raises(JobCancelled):
        await orch.wait_for_job(first.id, timeout=1)

    # Cancelling again changes nothing
    assert (await orch.cancel_timeline(timeline_id)).status == TimelineStatus.CANCELLED


@pytest.mark.anyio
async def test_cancel_unknown_timeline(orchestrator) -> None:
    with pytest.raises(TimelineNotFound):
        await orchestrator.cancel_timeline("missing")


@pytest.mark.anyio
async def test_recovery_continues_a_half_finished_timeline(make_orchestrator, store, adapter, ledger) -> None:
    spec = {"prompt": "shot", "model": "veo-3.1-fast"}
    segments = [
        Segment(
            id="s0", owner_id="owner-1", provider="kie", model="veo-3.1-fast", input_spec=spec,
            cost_reserved=20, timeline_id="tl-1", position=0,
            generation_mode=GenerationMode.TEXT_TO_VIDEO,
        ),
        Segment(
            id="s1", owner_id="owner-1", provider="kie", model="veo-3.1-fast", input_spec=spec,
            cost_reserved=20, timeline_id="tl-1", position=1, predecessor_id="s0",
        ),
    ]
    await store.set_balance("owner-1", 100)
    await store.hold("owner-1", {"s0": 20, "s1": 20})
    await store.create_timeline(Timeline(id="tl-1", owner_id="owner-1", segment_ids=["s0", "s1"]), segments)
    await store.transition("s0", JobStatus.SUBMITTED, provider_ref=ProviderTaskRef(provider="kie", task_id="old"))
    await store.transition("s0", JobStatus.POLLING)
    await store.transition("s0", JobStatus.SUCCEEDED, result=JobResult.from_artifacts([S0]))
    await store.charge("s0")

    orch = make_orchestrator()
    await orch.start()
    view = await _settled(orch, "tl-1")

    assert view.status == TimelineStatus.SUCCEEDED
    assert len(adapter.submissions) == 1
    assert adapter.submissions[0][1]["image_url"] == S0
    assert await store.get_balance("owner-1") == 60


@pytest.mark.anyio
async def test_invalid_timelines_are_rejected(orchestrator, store) -> None:
    await store.set_balance("owner-1", 200)

    with pytest.raises(InvalidTimeline):
        await orchestrator.create_timeline("owner-1", [])

    with pytest.raises(InvalidTimeline):
        await orchestrator.create_timeline("owner-1", [
            SegmentSpec(prompt="a", generation_mode=GenerationMode.TEXT_TO_VIDEO),
            SegmentSpec(prompt="b", generation_mode=GenerationMode.TEXT_TO_VIDEO),
        ])

    with pytest.raises(InvalidTimeline):
        await orchestrator.create_timeline("owner-1", [SegmentSpec(prompt="a")])

    assert await store.get_held("owner-1") == 0
    assert await store.list_timelines(TimelineStatus.IN_PROGRESS) == []


@pytest.mark.anyio
async def test_first_frame_mode_conditions_the_opening_segment(orchestrator, store, adapter) -> None:
    await store.set_balance("owner-1", 200)
    specs = [SegmentSpec(
        prompt="walk in",
        generation_mode=GenerationMode.FIRST_FRAME_TO_VIDEO,
        source_url="https://cdn.test/start.png",
    )]

    timeline_id = await orchestrator.create_timeline("owner-1", specs)
    await _settled(orchestrator, timeline_id)

    sent = adapter.submissions[0][1]
    assert sent["image_url"] == "https://cdn.test/start.png"
    assert sent["use_as_first_frame"] is True


@pytest.mark.anyio
async def test_unaffordable_timeline_holds_nothing(orchestrator, store, adapter) -> None:
    await store.set_balance("owner-1", 50)

    with pytest.raises(InsufficientBalance):
        await orchestrator.create_timeline("owner-1", _chain(3))
    await asyncio.sleep(0.02)

    assert await store.get_held("owner-1") == 0
    assert await store.list_jobs([JobStatus.CREATED]) == []
    assert await store.list_timelines(TimelineStatus.IN_PROGRESS) == []
    assert adapter.submissions == []


@pytest.mark.anyio
async def test_segment_options_cannot_override_routing_or_pricing(orchestrator, store, adapter) -> None:
    await store.set_balance("owner-1", 200)
    specs = [SegmentSpec(
        prompt="a",
        model="veo-3.1-fast",
        generation_mode=GenerationMode.TEXT_TO_VIDEO,
        options={"model": "sora-2", "provider": "luma", "duration": 20, "aspect_ratio": "16:9"},
    )]

    timeline_id = await orchestrator.create_timeline("owner-1", specs)
    await _settled(orchestrator, timeline_id)

    segment = (await store.list_segments(timeline_id))[0]
    assert segment.provider == "kie"
    assert segment.model == "veo-3.1-fast"
    assert segment.cost_reserved == 20
    sent = adapter.submissions[0][1]
    assert sent["model"] == "veo-3.1-fast"
    assert sent["duration"] == 5
    assert sent["aspect_ratio"] == "16:9"
    assert "provider" not in sent


@pytest.mark.parametrize("duration", [-100, 0, math.inf, math.nan])
def test_segment_duration_must_be_positive_and_finite(duration) -> None:
    with pytest.raises(ValidationError):
        SegmentSpec(prompt="a", duration_sec=duration)


@pytest.mark.anyio
async def test_segment_duration_is_clamped_to_the_model(orchestrator, store, adapter) -> None:
    await store.set_balance("owner-1", 500)
    specs = [SegmentSpec(prompt="a", model="sora-2", duration_sec=60, generation_mode=GenerationMode.TEXT_TO_VIDEO)]

    timeline_id = await orchestrator.create_timeline("owner-1", specs)
    view = await _settled(orchestrator, timeline_id)

    assert view.total_duration == 20
    assert view.segments[0].cost_charged == 200
    assert adapter.submissions[0][1]["duration"] == 20


# ── Regeneration ─────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_regenerate_failed_segment_rebuilds_the_tail(orchestrator, store, adapter, ledger) -> None:
    await store.set_balance("owner-1", 200)
    adapter.queue(done(S0))
    adapter.queue(failed("moderation"))

    timeline_id = await orchestrator.create_timeline("owner-1", _chain(3))
    first_run = await _settled(orchestrator, timeline_id)
    assert first_run.status == TimelineStatus.FAILED
    old_ids = [s.id for s in first_run.segments]

    adapter.queue(done(S1))
    adapter.queue(done(S2))
    regenerated = await orchestrator.regenerate_segment(timeline_id, 1)
    assert regenerated.status == TimelineStatus.IN_PROGRESS

    view = await _settled(orchestrator, timeline_id)
    assert view.status == TimelineStatus.SUCCEEDED
    assert [s.status for s in view.segments] == [JobStatus.SUCCEEDED] * 3
    new_ids = [s.id for s in view.segments]
    assert new_ids[0] == old_ids[0]
    assert set(new_ids[1:]).isdisjoint(old_ids)
    assert view.segments[1].input_artifact_ref == S0

    # The first run's records keep how they ended
    old_failed = await store.get_job(old_ids[1])
    old_cancelled = await store.get_job(old_ids[2])
    assert old_failed.status == JobStatus.FAILED
    assert old_failed.error.kind == ErrorKind.PROVIDER_FAILURE
    assert old_cancelled.status == JobStatus.CANCELLED
    assert old_cancelled.error.kind == ErrorKind.DEPENDENCY_CANCELLED

    assert [spec.get("image_url") for _, spec in adapter.submissions] == [None, S0, S0, S1]
    assert await store.get_balance("owner-1") == 140
    assert await store.get_held("owner-1") == 0
    assert len(ledger.entries) == 3


@pytest.mark.anyio
async def test_regenerate_opening_segment_of_a_finished_timeline(orchestrator, store, adapter) -> None:
    await store.set_balance("owner-1", 200)
    adapter.queue(done(S0))
    adapter.queue(done(S1))

    timeline_id = await orchestrator.create_timeline("owner-1", _chain(2))
    first_run = await _settled(orchestrator, timeline_id)
    assert first_run.status == TimelineStatus.SUCCEEDED

    adapter.queue(done(S2))
    await orchestrator.regenerate_segment(timeline_id, 0)
    view = await _settled(orchestrator, timeline_id)

    assert view.status == TimelineStatus.SUCCEEDED
    assert {s.id for s in view.segments}.isdisjoint(s.id for s in first_run.segments)
    assert "image_url" not in adapter.submissions[2][1]
    assert adapter.submissions[3][1]["image_url"] == S2
    assert all((await store.get_job(s.id)).status == JobStatus.SUCCEEDED for s in first_run.segments)
    assert await store.get_balance("owner-1") == 120


@pytest.mark.anyio
async def test_regenerate_refusals(orchestrator, store, adapter) -> None:
    await store.set_balance("owner-1", 200)
    adapter.queue(done(S0))
    adapter.queue(failed("moderation"))

    timeline_id = await orchestrator.create_timeline("owner-1", _chain(3))
    first_run = await _settled(orchestrator, timeline_id)

    with pytest.raises(TimelineNotFound):
        await orchestrator.regenerate_segment("missing", 0)
    with pytest.raises(InvalidTimeline):
        await orchestrator.regenerate_segment(timeline_id, 3)
    # Segment 1 failed, so segment 2 has nothing to chain from
    with pytest.raises(InvalidTimeline):
        await orchestrator.regenerate_segment(timeline_id, 2)

    await store.set_balance("owner-1", 30)
    with pytest.raises(InsufficientBalance):
        await orchestrator.regenerate_segment(timeline_id, 1)

    view = await orchestrator.get_timeline_status(timeline_id)
    assert view.status == TimelineStatus.FAILED
    assert [s.id for s in view.segments] == [s.id for s in first_run.segments]
    assert await store.get_held("owner-1") == 0
    assert len(adapter.submissions) == 2


@pytest.mark.anyio
async def test_running_segments_cannot_be_regenerated(orchestrator, store, adapter) -> None:
    await store.set_balance("owner-1", 200)
    adapter.default_script = [pending()]

    timeline_id = await orchestrator.create_timeline("owner-1", _chain(2))
    with pytest.raises(InvalidTimeline):
        await orchestrator.regenerate_segment(timeline_id, 0)
    await orchestrator.cancel_timeline(timeline_id)
