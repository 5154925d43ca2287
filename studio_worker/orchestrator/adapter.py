"""
Provider adapter contract and the helpers every adapter shares.

An adapter is the only place that knows a provider's request/response shape:

  submit(kind, input_spec) -> ProviderTaskRef      (raises SubmissionError)
  poll(ref)                -> NormalizedStatus     (raises TransientPollError)

Submissions retry 429/5xx with exponential backoff. Polls never retry here:
the scheduler owns poll retries and their budget.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

import httpx

from .config import ProviderSettings
from .errors import SubmissionError, TransientPollError
from .models import JobKind, NormalizedStatus, ProviderTaskRef

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

# Keys providers use for a result URL, in order of preference
URL_KEYS = (
    "url",
    "videoUrl",
    "video_url",
    "video",
    "audioUrl",
    "audio_url",
    "imageUrl",
    "image_url",
    "image",
    "mesh",
    "model_file",
    "modelUrl",
    "resultUrl",
    "resource",
)


async def request_with_backoff(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    max_retries: int = 5,
    base_delay: float = 2.0,
    jitter_max: float = 1.0,
    **kwargs,
) -> httpx.Response:
    """
    Make an HTTP request with exponential backoff on retryable errors (429, 5xx).

    Uses: base_delay * 2^attempt + random jitter, or Retry-After when given.
    Non-retryable error statuses raise httpx.HTTPStatusError immediately.
    """
    for attempt in range(max_retries + 1):
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            if attempt >= max_retries:
                raise
            delay = base_delay * (2 ** attempt) + random.uniform(0, jitter_max)
            logger.warning(
                f"Request error on attempt {attempt + 1}/{max_retries + 1}: {e} "
                f"- retrying in {delay:.1f}s (url={url})"
            )
            await asyncio.sleep(delay)
            continue

        if response.status_code not in RETRYABLE_STATUS_CODES or attempt >= max_retries:
            response.raise_for_status()
            return response

        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            delay = int(retry_after)
        else:
            delay = base_delay * (2 ** attempt) + random.uniform(0, jitter_max)

        logger.warning(
            f"{response.status_code} on attempt {attempt + 1}/{max_retries + 1} "
            f"- retrying in {delay:.1f}s (url={url})"
        )
        await asyncio.sleep(delay)

    raise RuntimeError(f"Request to {url} failed after {max_retries + 1} attempts")


# ── Response helpers ─────────────────────────────────────────────────────────

def first_present(mapping: Any, *keys: str) -> Any:
    """Return the first truthy value among keys of a dict (None-safe)."""
    if not isinstance(mapping, dict):
        return None
    for key in keys:
        value = mapping.get(key)
        if value:
            return value
    return None


def collect_urls(output: Any) -> list[str]:
    """
    Flatten a provider output into a list of URLs.

    Handles scalar strings, arrays of strings, arrays of objects and
    nested objects keyed by any of URL_KEYS.
    """
    if not output:
        return []
    if isinstance(output, str):
        return [output]
    if isinstance(output, (list, tuple)):
        urls: list[str] = []
        for item in output:
            urls.extend(collect_urls(item))
        return urls
    if isinstance(output, dict):
        for key in URL_KEYS:
            value = output.get(key)
            if isinstance(value, str) and value:
                return [value]
            if isinstance(value, (dict, list)) and value:
                nested = collect_urls(value)
                if nested:
                    return nested
    return []


def classify(
    raw_status: Optional[str],
    success: Iterable[str],
    failure: Iterable[str],
) -> str:
    """
    Map a provider status literal onto 'succeeded' / 'failed' / 'pending'.

    Unrecognized literals are pending: an unmodeled intermediate state must
    never terminate a job early.
    """
    if raw_status is None:
        return "pending"
    text = str(raw_status).strip()
    folded = {s.lower() for s in success}
    if text.lower() in folded:
        return "succeeded"
    if text.lower() in {f.lower() for f in failure}:
        return "failed"
    return "pending"


# ── Adapter base ─────────────────────────────────────────────────────────────

class ProviderAdapter(ABC):
    name: str = ""

    def __init__(self, settings: ProviderSettings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.request_timeout)
        return self._client

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    def _headers(self) -> dict:
        ...

    @abstractmethod
    async def submit(self, kind: JobKind, input_spec: dict) -> ProviderTaskRef:
        ...

    @abstractmethod
    async def poll(self, ref: ProviderTaskRef) -> NormalizedStatus:
        ...

    async def _submit_request(self, method: str, url: str, **kwargs) -> dict:
        """Send a submission; every failure becomes SubmissionError."""
        try:
            response = await request_with_backoff(
                self.client,
                method,
                url,
                headers=self._headers(),
                max_retries=self.settings.max_retries,
                base_delay=self.settings.base_delay,
                jitter_max=self.settings.jitter_max,
                **kwargs,
            )
            body = response.json()
        except httpx.HTTPStatusError as e:
            body = e.response.text[:300]
            raise SubmissionError(
                f"{self.name} rejected request ({e.response.status_code}): {body}",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise SubmissionError(f"{self.name} submission failed: {e}") from e

        if not isinstance(body, dict):
            raise SubmissionError(f"{self.name} returned a non-object body: {str(body)[:300]}")
        return body

    async def _poll_request(self, method: str, url: str, **kwargs) -> dict:
        """Single status request; every failure is transient."""
        try:
            response = await self.client.request(method, url, headers=self._headers(), **kwargs)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise TransientPollError(
                f"{self.name} poll returned {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise TransientPollError(f"{self.name} poll error: {e}") from e

        if not isinstance(body, dict):
            raise TransientPollError(f"{self.name} poll returned a non-object body: {str(body)[:300]}")
        return body
