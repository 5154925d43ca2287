"""
Orchestrator and provider configuration.

Everything is read from the environment once, at startup, into explicit
objects that are passed to the components that need them.

Per-kind polling overrides:
  POLL_INTERVAL_<KIND>       seconds between polls (e.g. POLL_INTERVAL_VIDEO=5)
  POLL_MAX_ATTEMPTS_<KIND>   attempts before TIMED_OUT
"""

import os
from typing import Optional

from pydantic import BaseModel, Field

from .models import JobKind


class PollingPolicy(BaseModel):
    interval_seconds: float
    max_attempts: int

    @property
    def budget_seconds(self) -> float:
        return self.interval_seconds * self.max_attempts


# Image edits finish in seconds; video/3D can take minutes.
DEFAULT_POLICIES: dict[JobKind, PollingPolicy] = {
    JobKind.IMAGE: PollingPolicy(interval_seconds=2.0, max_attempts=150),
    JobKind.VIDEO: PollingPolicy(interval_seconds=5.0, max_attempts=120),
    JobKind.AUDIO: PollingPolicy(interval_seconds=5.0, max_attempts=120),
    JobKind.THREE_D: PollingPolicy(interval_seconds=2.0, max_attempts=600),
    JobKind.TEXT_TRANSFORM: PollingPolicy(interval_seconds=3.0, max_attempts=60),
    JobKind.COMPOSITE_SEGMENT: PollingPolicy(interval_seconds=10.0, max_attempts=90),
}

DEFAULT_MAX_CONCURRENT_JOBS = 16
DEFAULT_TRANSIENT_RETRY_LIMIT = 5


def _env_suffix(kind: JobKind) -> str:
    # threeD -> THREE_D, textTransform -> TEXT_TRANSFORM
    return kind.name


class OrchestratorConfig(BaseModel):
    max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS
    transient_retry_limit: int = DEFAULT_TRANSIENT_RETRY_LIMIT
    policies: dict[JobKind, PollingPolicy] = Field(
        default_factory=lambda: dict(DEFAULT_POLICIES)
    )

    def policy_for(self, kind: JobKind) -> PollingPolicy:
        return self.policies.get(kind) or DEFAULT_POLICIES[kind]

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        policies = {}
        for kind, default in DEFAULT_POLICIES.items():
            suffix = _env_suffix(kind)
            policies[kind] = PollingPolicy(
                interval_seconds=float(
                    os.getenv(f"POLL_INTERVAL_{suffix}", default.interval_seconds)
                ),
                max_attempts=int(
                    os.getenv(f"POLL_MAX_ATTEMPTS_{suffix}", default.max_attempts)
                ),
            )
        return cls(
            max_concurrent_jobs=int(
                os.getenv("MAX_CONCURRENT_JOBS", DEFAULT_MAX_CONCURRENT_JOBS)
            ),
            transient_retry_limit=int(
                os.getenv("TRANSIENT_RETRY_LIMIT", DEFAULT_TRANSIENT_RETRY_LIMIT)
            ),
            policies=policies,
        )


class ProviderSettings(BaseModel):
    """API keys, endpoints and HTTP behaviour for the provider adapters."""

    kie_api_key: str = ""
    kie_api_base: str = "https://api.kie.ai/api/v1"
    fal_api_key: str = ""
    fal_api_base: str = "https://queue.fal.run"
    replicate_api_key: str = ""
    replicate_api_base: str = "https://api.replicate.com/v1"
    luma_api_key: str = ""
    luma_api_base: str = "https://api.lumalabs.ai/dream-machine/v1"
    callback_url: Optional[str] = None

    request_timeout: float = 30.0
    max_retries: int = 5
    base_delay: float = 2.0
    jitter_max: float = 1.0

    @classmethod
    def from_env(cls) -> "ProviderSettings":
        defaults = cls()
        return cls(
            kie_api_key=os.environ.get("KIE_API_KEY", ""),
            kie_api_base=os.environ.get("KIE_API_BASE", defaults.kie_api_base),
            fal_api_key=os.environ.get("FAL_API_KEY", ""),
            fal_api_base=os.environ.get("FAL_API_BASE", defaults.fal_api_base),
            replicate_api_key=os.environ.get("REPLICATE_API_KEY", ""),
            replicate_api_base=os.environ.get("REPLICATE_API_BASE", defaults.replicate_api_base),
            luma_api_key=os.environ.get("LUMA_API_KEY", ""),
            luma_api_base=os.environ.get("LUMA_API_BASE", defaults.luma_api_base),
            callback_url=os.environ.get("PROVIDER_CALLBACK_URL") or None,
            request_timeout=float(os.environ.get("PROVIDER_HTTP_TIMEOUT", defaults.request_timeout)),
            max_retries=int(os.environ.get("PROVIDER_MAX_RETRIES", defaults.max_retries)),
            base_delay=float(os.environ.get("PROVIDER_BASE_DELAY", defaults.base_delay)),
        )
