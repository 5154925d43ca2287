import asyncio
from typing import Awaitable, Callable, Optional

import pytest

from studio_worker import metrics
from studio_worker.orchestrator.config import OrchestratorConfig, PollingPolicy
from studio_worker.orchestrator.ledger import MemoryLedger
from studio_worker.orchestrator.models import JobKind, JobResult, NormalizedStatus, ProviderTaskRef
from studio_worker.orchestrator.orchestrator import GenerationOrchestrator
from studio_worker.orchestrator.store import MemoryJobStore
from studio_worker.provider_factory import ProviderFactory

PROVIDER_NAMES = ("kie", "fal", "replicate", "luma")


def pending() -> NormalizedStatus:
    return NormalizedStatus.pending(raw_status="processing")


def done(*urls: str) -> NormalizedStatus:
    urls = urls or ("https://cdn.test/out.mp4",)
    return NormalizedStatus.succeeded(JobResult.from_artifacts(list(urls)), raw_status="succeeded")


def failed(reason: str = "content policy") -> NormalizedStatus:
    return NormalizedStatus.failed(reason, raw_status="failed")


class ScriptedAdapter:
    """
    Provider double. Each submitted task replays the next queued script of
    poll outcomes (NormalizedStatus or an exception to raise); the last step
    repeats once the script runs out.
    """

    def __init__(self, name: str = "scripted"):
        self.name = name
        self.default_script = [done()]
        self.submissions: list[tuple[JobKind, dict]] = []
        self.submit_errors: list[Exception] = []
        self.poll_counts: dict[str, int] = {}
        self.on_submit: Optional[Callable[[dict], Awaitable[None]]] = None
        self.on_poll: Optional[Callable[[ProviderTaskRef], None]] = None
        self.poll_delay = 0.0
        self._queued: list[list] = []
        self._scripts: dict[str, list] = {}

    def queue(self, *steps):
        self._queued.append(list(steps))

    def script_task(self, task_id: str, *steps):
        self._scripts[task_id] = list(steps)

    async def submit(self, kind: JobKind, input_spec: dict) -> ProviderTaskRef:
        if self.on_submit is not None:
            await self.on_submit(input_spec)
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.submissions.append((kind, dict(input_spec)))
        task_id = f"task-{len(self.submissions)}"
        self._scripts[task_id] = self._queued.pop(0) if self._queued else list(self.default_script)
        return ProviderTaskRef(provider=self.name, task_id=task_id, model=input_spec.get("model"))

    async def poll(self, ref: ProviderTaskRef) -> NormalizedStatus:
        self.poll_counts[ref.task_id] = self.poll_counts.get(ref.task_id, 0) + 1
        if self.on_poll is not None:
            self.on_poll(ref)
        if self.poll_delay:
            await asyncio.sleep(self.poll_delay)
        script = self._scripts.setdefault(ref.task_id, [pending()])
        step = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(step, Exception):
            raise step
        return step

    async def aclose(self):
        pass


def fast_config(max_attempts: int = 5, transient_retry_limit: int = 3, max_concurrent_jobs: int = 8) -> OrchestratorConfig:
    return OrchestratorConfig(
        max_concurrent_jobs=max_concurrent_jobs,
        transient_retry_limit=transient_retry_limit,
        policies={
            kind: PollingPolicy(interval_seconds=0.005, max_attempts=max_attempts)
            for kind in JobKind
        },
    )


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def providers(adapter) -> ProviderFactory:
    return ProviderFactory({name: adapter for name in PROVIDER_NAMES})


@pytest.fixture
def store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture
def ledger() -> MemoryLedger:
    return MemoryLedger()


@pytest.fixture
def config() -> OrchestratorConfig:
    return fast_config()


@pytest.fixture
async def orchestrator(store, providers, ledger, config):
    orch = GenerationOrchestrator(store=store, providers=providers, ledger=ledger, config=config)
    yield orch
    await orch.scheduler.stop()
