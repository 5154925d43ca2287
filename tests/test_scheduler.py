import asyncio

import pytest

from conftest import done, failed, fast_config, pending
from studio_worker import metrics
from studio_worker.orchestrator.config import OrchestratorConfig, PollingPolicy
from studio_worker.orchestrator.errors import (
    JobTimeout,
    OrchestratorError,
    ProviderFailure,
    SubmissionError,
    TransientPollError,
)
from studio_worker.orchestrator.models import (
    ErrorKind,
    Job,
    JobError,
    JobKind,
    JobResult,
    JobStatus,
    ProviderTaskRef,
)
from studio_worker.orchestrator.orchestrator import GenerationOrchestrator


@pytest.fixture
async def make_orchestrator(store, providers, ledger):
    created = []

    def _make(config: OrchestratorConfig) -> GenerationOrchestrator:
        orch = GenerationOrchestrator(store=store, providers=providers, ledger=ledger, config=config)
        created.append(orch)
        return orch

    yield _make
    for orch in created:
        await orch.scheduler.stop()


async def _wait_for_status(store, job_id: str, status: JobStatus, timeout: float = 2.0):
    async def _check():
        while (await store.get_job(job_id)).status != status:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_check(), timeout)


@pytest.mark.anyio
async def test_successful_job_is_charged_once(orchestrator, store, adapter, ledger) -> None:
    await store.set_balance("owner-1", 100)
    adapter.queue(pending(), done("https://cdn.test/fox.png"))

    job_id = await orchestrator.create_job("owner-1", JobKind.IMAGE, {"prompt": "a fox"})
    result = await orchestrator.wait_for_job(job_id, timeout=5)
    await orchestrator.scheduler.wait_idle()

    assert result.artifacts == ["https://cdn.test/fox.png"]
    job = await store.get_job(job_id)
    assert job.status == JobStatus.SUCCEEDED
    assert job.attempt_count == 2
    assert job.cost_charged == 5
    assert await store.get_balance("owner-1") == 95
    assert await store.get_held("owner-1") == 0
    assert [e.job_id for e in ledger.entries] == [job_id]
    assert metrics.get_counter("jobs.SUCCEEDED") == 1


@pytest.mark.anyio
async def test_never_finishing_job_times_out_after_max_attempts(orchestrator, store, adapter, ledger) -> None:
    await store.set_balance("owner-1", 100)
    adapter.default_script = [pending()]

    job_id = await orchestrator.create_job("owner-1", JobKind.IMAGE, {"prompt": "a fox"})
    with pytest.raises(JobTimeout):
        await orchestrator.wait_for_job(job_id, timeout=5)
    await orchestrator.scheduler.wait_idle()

    job = await store.get_job(job_id)
    assert job.status == JobStatus.TIMED_OUT
    assert job.error.kind == ErrorKind.TIMEOUT
    assert job.attempt_count == 5
    assert sum(adapter.poll_counts.values()) == 5
    assert await store.get_balance("owner-1") == 100
    assert await store.get_held("owner-1") == 0
    assert ledger.entries == []


@pytest.mark.anyio
async def test_transient_errors_are_retried(orchestrator, store, adapter) -> None:
    await store.set_balance("owner-1", 100)
    adapter.queue(TransientPollError("503"), TransientPollError("503"), done())

    job_id = await orchestrator.create_job("owner-1", JobKind.IMAGE, {"prompt": "a fox"})
    await orchestrator.wait_for_job(job_id, timeout=5)

    job = await store.get_job(job_id)
    assert job.attempt_count == 3
    assert job.transient_errors == 0
    assert metrics.get_counter("polls.transient_errors") == 2


@pytest.mark.anyio
async def test_transient_error_ceiling_times_out(orchestrator, store, adapter) -> None:
    await store.set_balance("owner-1", 100)
    adapter.queue(TransientPollError("connection reset"))

    job_id = await orchestrator.create_job("owner-1", JobKind.IMAGE, {"prompt": "a fox"})
    with pytest.raises(JobTimeout):
        await orchestrator.wait_for_job(job_id, timeout=5)

    job = await store.get_job(job_id)
    assert job.status == JobStatus.TIMED_OUT
    assert "consecutive" in job.error.message
    assert sum(adapter.poll_counts.values()) == 3


@pytest.mark.anyio
async def test_pending_poll_resets_transient_streak(make_orchestrator, store, adapter) -> None:
    orch = make_orchestrator(fast_config(max_attempts=10, transient_retry_limit=3))
    await store.set_balance("owner-1", 100)
    adapter.queue(
        TransientPollError("503"),
        TransientPollError("503"),
        pending(),
        TransientPollError("503"),
        TransientPollError("503"),
        done(),
    )

    job_id = await orch.create_job("owner-1", JobKind.IMAGE, {"prompt": "a fox"})
    await orch.wait_for_job(job_id, timeout=5)

    assert (await store.get_job(job_id)).attempt_count == 6


@pytest.mark.anyio
async def test_provider_failure_fails_the_job(orchestrator, store, adapter, ledger) -> None:
    await store.set_balance("owner-1", 100)
    adapter.queue(pending(), failed("nsfw content"))

    job_id = await orchestrator.create_job("owner-1", JobKind.IMAGE, {"prompt": "a fox"})
    with pytest.raises(ProviderFailure, match="nsfw content"):
        await orchestrator.wait_for_job(job_id, timeout=5)
    await orchestrator.scheduler.wait_idle()

    job = await store.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error.kind == ErrorKind.PROVIDER_FAILURE
    assert await store.get_available("owner-1") == 100
    assert ledger.entries == []


@pytest.mark.anyio
async def test_rejected_submission_never_polls(orchestrator, store, adapter) -> None:
    await store.set_balance("owner-1", 100)
    adapter.submit_errors.append(SubmissionError("prompt rejected", status_code=400))

    job_id = await orchestrator.create_job("owner-1", JobKind.IMAGE, {"prompt": "a fox"})
    with pytest.raises(SubmissionError):
        await orchestrator.wait_for_job(job_id, timeout=5)
    await orchestrator.scheduler.wait_idle()

    job = await store.get_job(job_id)
    assert job.error.kind == ErrorKind.SUBMISSION
    assert job.provider_ref is None
    assert adapter.poll_counts == {}
    assert await store.get_held("owner-1") == 0


@pytest.mark.anyio
async def test_concurrency_is_bounded(make_orchestrator, store, adapter) -> None:
    orch = make_orchestrator(fast_config(max_concurrent_jobs=2))
    await store.set_balance("owner-1", 100)
    adapter.default_script = [pending(), done()]
    adapter.poll_delay = 0.01
    observed = []
    adapter.on_poll = lambda ref: observed.append(orch.scheduler.in_flight)

    job_ids = [
        await orch.create_job("owner-1", JobKind.IMAGE, {"prompt": f"fox {i}"}) for i in range(6)
    ]
    await asyncio.wait_for(orch.scheduler.wait_idle(), 5)

    assert observed and max(observed) <= 2
    for job_id in job_ids:
        assert (await store.get_job(job_id)).status == JobStatus.SUCCEEDED
    assert orch.scheduler.in_flight == 0


@pytest.mark.anyio
async def test_recovery_resumes_polling_without_resubmitting(make_orchestrator, store, adapter, ledger) -> None:
    await store.set_balance("owner-1", 100)
    await store.create_job(Job(id="job-1", owner_id="owner-1", kind=JobKind.VIDEO, provider="kie", cost_reserved=20))
    await store.hold("owner-1", {"job-1": 20})
    await store.transition(
        "job-1", JobStatus.SUBMITTED, provider_ref=ProviderTaskRef(provider="kie", task_id="task-77")
    )
    await store.transition("job-1", JobStatus.POLLING)
    await store.update_job("job-1", attempt_count=2)
    adapter.script_task("task-77", pending(), done("https://cdn.test/resumed.mp4"))

    orch = make_orchestrator(fast_config())
    await orch.start()
    result = await orch.wait_for_job("job-1", timeout=5)
    await orch.scheduler.wait_idle()

    assert result.artifacts == ["https://cdn.test/resumed.mp4"]
    assert adapter.submissions == []
    assert adapter.poll_counts == {"task-77": 2}
    assert (await store.get_job("job-1")).attempt_count == 4
    assert await store.get_balance("owner-1") == 80
    assert len(ledger.entries) == 1


@pytest.mark.anyio
async def test_recovery_submits_created_jobs(make_orchestrator, store, adapter) -> None:
    await store.set_balance("owner-1", 100)
    await store.create_job(Job(
        id="job-2", owner_id="owner-1", kind=JobKind.IMAGE, provider="fal",
        input_spec={"prompt": "a fox"}, cost_reserved=5,
    ))
    await store.hold("owner-1", {"job-2": 5})

    orch = make_orchestrator(fast_config())
    await orch.start()
    await orch.wait_for_job("job-2", timeout=5)

    assert adapter.submissions == [(JobKind.IMAGE, {"prompt": "a fox"})]


@pytest.mark.anyio
async def test_dispatching_a_finished_job_does_nothing(orchestrator, store, adapter, ledger) -> None:
    await store.create_job(Job(id="done", owner_id="owner-1", kind=JobKind.IMAGE, provider="fal"))
    await store.transition("done", JobStatus.SUBMITTED, provider_ref=ProviderTaskRef(provider="fal", task_id="t"))
    await store.transition("done", JobStatus.POLLING)
    await store.transition("done", JobStatus.SUCCEEDED, result=JobResult.from_artifacts(["https://a"]))

    orchestrator.scheduler.dispatch("done")
    await orchestrator.scheduler.wait_idle()

    assert adapter.poll_counts == {}
    assert ledger.entries == []
    assert metrics.get_counter("jobs.SUCCEEDED") == 0


@pytest.mark.anyio
async def test_wake_retires_a_cancelled_worker(make_orchestrator, store, adapter) -> None:
    slow = OrchestratorConfig(
        policies={kind: PollingPolicy(interval_seconds=30, max_attempts=5) for kind in JobKind}
    )
    orch = make_orchestrator(slow)
    await store.set_balance("owner-1", 100)

    job_id = await orch.create_job("owner-1", JobKind.IMAGE, {"prompt": "a fox"})
    await _wait_for_status(store, job_id, JobStatus.POLLING)

    await store.transition(job_id, JobStatus.CANCELLED, error=JobError(kind=ErrorKind.CANCELLED))
    orch.scheduler.wake(job_id)
    await asyncio.wait_for(orch.scheduler.wait_idle(), 1)

    assert adapter.poll_counts == {}
    assert not orch.scheduler.is_running(job_id)
    assert (await store.get_job(job_id)).status == JobStatus.CANCELLED


@pytest.mark.anyio
async def test_crashed_poll_fails_the_job_and_releases_the_hold(orchestrator, store, adapter, ledger) -> None:
    await store.set_balance("owner-1", 100)
    adapter.queue(pending(), RuntimeError("unexpected payload shape"))

    job_id = await orchestrator.create_job("owner-1", JobKind.IMAGE, {"prompt": "a fox"})
    with pytest.raises(OrchestratorError):
        await orchestrator.wait_for_job(job_id, timeout=5)
    await orchestrator.scheduler.wait_idle()

    job = await store.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error.kind == ErrorKind.INTERNAL
    assert "unexpected payload shape" in job.error.message
    assert await store.get_balance("owner-1") == 100
    assert await store.get_held("owner-1") == 0
    assert ledger.entries == []
    assert metrics.get_counter("jobs.FAILED") == 1


@pytest.mark.anyio
async def test_crashed_submit_fails_the_job(orchestrator, store, adapter) -> None:
    await store.set_balance("owner-1", 100)
    adapter.submit_errors.append(KeyError("model"))

    job_id = await orchestrator.create_job("owner-1", JobKind.IMAGE, {"prompt": "a fox"})
    with pytest.raises(OrchestratorError):
        await orchestrator.wait_for_job(job_id, timeout=5)
    await orchestrator.scheduler.wait_idle()

    job = await store.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error.kind == ErrorKind.INTERNAL
    assert await store.get_held("owner-1") == 0


@pytest.mark.anyio
async def test_bad_durations_are_rejected_before_any_hold(orchestrator, store, adapter) -> None:
    await store.set_balance("owner-1", 500)

    for bad in ({"duration": -30}, {"duration": 0}, {"duration_sec": 1, "duration": 60}):
        with pytest.raises(ValueError):
            await orchestrator.create_job("owner-1", JobKind.VIDEO, {"model": "sora-2", **bad})

    assert await store.get_held("owner-1") == 0
    assert adapter.submissions == []


@pytest.mark.anyio
async def test_job_is_submitted_with_the_duration_it_was_priced_for(orchestrator, store, adapter) -> None:
    await store.set_balance("owner-1", 500)

    job_id = await orchestrator.create_job("owner-1", JobKind.VIDEO, {"model": "sora-2", "duration_sec": 60})
    await orchestrator.wait_for_job(job_id, timeout=5)
    await orchestrator.scheduler.wait_idle()

    sent = adapter.submissions[0][1]
    assert sent["duration"] == 20
    assert "duration_sec" not in sent
    assert (await store.get_job(job_id)).cost_charged == 200
