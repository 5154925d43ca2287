"""
Generation-job orchestrator

Asynchronous provider jobs with a polling state machine:
  Jobs      submit → poll → SUCCEEDED / FAILED / TIMED_OUT / CANCELLED
  Timelines chained video segments, each fed the previous segment's last frame
  Billing   tokens held at creation, charged once on success, released otherwise
"""

from .orchestrator import GenerationOrchestrator
from .routes import balance_router, job_router, timeline_router
from .models import JobKind, JobStatus, TimelineStatus

__all__ = [
    "GenerationOrchestrator",
    "job_router",
    "timeline_router",
    "balance_router",
    "JobKind",
    "JobStatus",
    "TimelineStatus",
]
