"""
Pydantic models and enums for the generation-job orchestrator.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Job Kind ─────────────────────────────────────────────────────────────────

class JobKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    THREE_D = "threeD"
    TEXT_TRANSFORM = "textTransform"
    COMPOSITE_SEGMENT = "compositeSegment"


# ── Job Status (state machine) ───────────────────────────────────────────────

class JobStatus(str, Enum):
    CREATED = "CREATED"
    SUBMITTED = "SUBMITTED"
    POLLING = "POLLING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({
    JobStatus.SUCCEEDED,
    JobStatus.FAILED,
    JobStatus.TIMED_OUT,
    JobStatus.CANCELLED,
})

# Statuses that release the reservation instead of charging it
RELEASING_STATUSES = frozenset({
    JobStatus.FAILED,
    JobStatus.TIMED_OUT,
    JobStatus.CANCELLED,
})

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset] = {
    JobStatus.CREATED: frozenset({JobStatus.SUBMITTED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.SUBMITTED: frozenset({JobStatus.POLLING, JobStatus.CANCELLED}),
    JobStatus.POLLING: frozenset({
        JobStatus.SUCCEEDED,
        JobStatus.FAILED,
        JobStatus.TIMED_OUT,
        JobStatus.CANCELLED,
    }),
}


class ErrorKind(str, Enum):
    SUBMISSION = "submission"
    PROVIDER_FAILURE = "provider_failure"
    TIMEOUT = "timeout"
    DEPENDENCY_CANCELLED = "dependency_cancelled"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class JobError(BaseModel):
    kind: ErrorKind
    message: str = ""


# ── Provider-facing types ────────────────────────────────────────────────────

class ProviderTaskRef(BaseModel):
    """Opaque handle returned by a provider at submission, used to poll."""
    provider: str
    task_id: str
    model: Optional[str] = None
    poll_url: Optional[str] = None


class JobResult(BaseModel):
    artifacts: list[str] = Field(default_factory=list)
    last_artifact: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_artifacts(
        cls,
        artifacts: list[str],
        last_artifact: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> "JobResult":
        """Build a result; last_artifact defaults to the final artifact URI."""
        return cls(
            artifacts=list(artifacts),
            last_artifact=last_artifact or (artifacts[-1] if artifacts else None),
            metadata=metadata or {},
        )


class PollState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class NormalizedStatus(BaseModel):
    """Three-way status every provider response is collapsed into."""
    state: PollState
    result: Optional[JobResult] = None
    reason: Optional[str] = None
    raw_status: Optional[str] = None

    @classmethod
    def pending(cls, raw_status: Optional[str] = None) -> "NormalizedStatus":
        return cls(state=PollState.PENDING, raw_status=raw_status)

    @classmethod
    def succeeded(cls, result: JobResult, raw_status: Optional[str] = None) -> "NormalizedStatus":
        return cls(state=PollState.SUCCEEDED, result=result, raw_status=raw_status)

    @classmethod
    def failed(cls, reason: str, raw_status: Optional[str] = None) -> "NormalizedStatus":
        return cls(state=PollState.FAILED, reason=reason, raw_status=raw_status)


# ── Segment generation modes ─────────────────────────────────────────────────

class GenerationMode(str, Enum):
    TEXT_TO_VIDEO = "text-to-video"
    IMAGE_TO_VIDEO = "image-to-video"
    VIDEO_TO_VIDEO = "video-to-video"
    FIRST_FRAME_TO_VIDEO = "first-frame-to-video"


def available_modes(position: int) -> list[GenerationMode]:
    """Only the opening segment may pick its mode; the rest chain frames."""
    if position == 0:
        return list(GenerationMode)
    return [GenerationMode.IMAGE_TO_VIDEO]


# ── Job / Segment / Timeline ─────────────────────────────────────────────────

class Job(BaseModel):
    id: str
    owner_id: str
    kind: JobKind
    provider: str
    model: Optional[str] = None
    input_spec: dict[str, Any] = Field(default_factory=dict)
    provider_ref: Optional[ProviderTaskRef] = None
    status: JobStatus = JobStatus.CREATED
    result: Optional[JobResult] = None
    cost_reserved: int = 0
    cost_charged: Optional[int] = None
    attempt_count: int = 0
    transient_errors: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_polled_at: Optional[datetime] = None
    terminal_at: Optional[datetime] = None
    error: Optional[JobError] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_segment(self) -> bool:
        return False

    def can_transition(self, to_status: JobStatus) -> bool:
        return to_status in ALLOWED_TRANSITIONS.get(self.status, frozenset())

    def submission_spec(self) -> dict[str, Any]:
        """What the adapter receives on submit."""
        return dict(self.input_spec)


class Segment(Job):
    kind: JobKind = JobKind.COMPOSITE_SEGMENT
    timeline_id: str
    position: int
    predecessor_id: Optional[str] = None
    input_artifact_ref: Optional[str] = None
    generation_mode: GenerationMode = GenerationMode.IMAGE_TO_VIDEO
    duration_sec: float = 5

    @property
    def is_segment(self) -> bool:
        return True

    @property
    def needs_input(self) -> bool:
        return self.generation_mode != GenerationMode.TEXT_TO_VIDEO

    def can_transition(self, to_status: JobStatus) -> bool:
        if to_status == JobStatus.SUBMITTED and self.needs_input and not self.input_artifact_ref:
            return False
        return super().can_transition(to_status)

    def submission_spec(self) -> dict[str, Any]:
        spec = super().submission_spec()
        spec.setdefault("duration", self.duration_sec)
        ref = self.input_artifact_ref
        if self.generation_mode == GenerationMode.IMAGE_TO_VIDEO:
            spec["image_url"] = ref
        elif self.generation_mode == GenerationMode.VIDEO_TO_VIDEO:
            spec["video_url"] = ref
        elif self.generation_mode == GenerationMode.FIRST_FRAME_TO_VIDEO:
            spec["image_url"] = ref
            spec["use_as_first_frame"] = True
        return spec


def job_from_record(data: dict) -> Job:
    """Rehydrate a stored record into a Job or Segment."""
    if data.get("timeline_id"):
        return Segment.model_validate(data)
    return Job.model_validate(data)


class TimelineStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Timeline(BaseModel):
    id: str
    owner_id: str
    segment_ids: list[str] = Field(default_factory=list)
    status: TimelineStatus = TimelineStatus.IN_PROGRESS
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


def aggregate_status(segments: list[Segment], current: TimelineStatus = TimelineStatus.IN_PROGRESS) -> TimelineStatus:
    """Derive a timeline's status from its segments."""
    if current == TimelineStatus.CANCELLED:
        return current
    if segments and all(s.status == JobStatus.SUCCEEDED for s in segments):
        return TimelineStatus.SUCCEEDED
    if any(s.status in (JobStatus.FAILED, JobStatus.TIMED_OUT) for s in segments):
        return TimelineStatus.FAILED
    return TimelineStatus.IN_PROGRESS


# ── Views ────────────────────────────────────────────────────────────────────

class JobView(BaseModel):
    id: str
    owner_id: str
    kind: JobKind
    provider: str
    model: Optional[str] = None
    status: JobStatus
    result: Optional[JobResult] = None
    cost_reserved: int = 0
    cost_charged: Optional[int] = None
    attempt_count: int = 0
    created_at: datetime
    last_polled_at: Optional[datetime] = None
    terminal_at: Optional[datetime] = None
    error: Optional[JobError] = None
    timeline_id: Optional[str] = None
    position: Optional[int] = None
    input_artifact_ref: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobView":
        data = job.model_dump(exclude={"input_spec", "provider_ref", "transient_errors", "updated_at"})
        return cls.model_validate(data)


class TimelineView(BaseModel):
    id: str
    owner_id: str
    status: TimelineStatus
    total_duration: float = 0
    segments: list[JobView] = Field(default_factory=list)


# ── API Request Models ───────────────────────────────────────────────────────

class CreateJobRequest(BaseModel):
    owner_id: str
    kind: JobKind
    input_spec: dict[str, Any] = Field(default_factory=dict)


class SegmentSpec(BaseModel):
    """One ordered unit of a timeline request."""
    prompt: str = ""
    model: str = "veo-3.1-fast"
    duration_sec: float = Field(5, gt=0, allow_inf_nan=False)
    generation_mode: GenerationMode = GenerationMode.IMAGE_TO_VIDEO
    source_url: Optional[str] = Field(
        None, description="Image or video input; only honoured for position 0"
    )
    options: dict[str, Any] = Field(default_factory=dict)


class CreateTimelineRequest(BaseModel):
    owner_id: str
    segments: list[SegmentSpec] = Field(..., min_length=1)


class CreatedResponse(BaseModel):
    id: str
    status: str
