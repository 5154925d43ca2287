"""
fal.ai queue adapter (image edits, try-on, upscales).

fal.ai queue protocol:
  POST /{endpoint}                                 → { request_id, ... }
  GET  /{endpoint}/requests/{request_id}/status    → { status: IN_QUEUE|IN_PROGRESS|COMPLETED }
  GET  /{endpoint}/requests/{request_id}           → result payload
"""

import logging

from .orchestrator.adapter import ProviderAdapter, classify, collect_urls, first_present
from .orchestrator.errors import SubmissionError
from .orchestrator.models import JobKind, JobResult, NormalizedStatus, ProviderTaskRef

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS = {
    JobKind.IMAGE: "fal-ai/flux/dev",
    JobKind.TEXT_TRANSFORM: "fal-ai/clarity-upscaler",
}

SUCCESS_STATUSES = {"COMPLETED"}
FAILURE_STATUSES = {"FAILED", "ERROR", "CANCELLED"}


class FalAdapter(ProviderAdapter):
    name = "fal"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Key {self.settings.fal_api_key}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        return f"{self.settings.fal_api_base.rstrip('/')}/{path}"

    async def submit(self, kind: JobKind, input_spec: dict) -> ProviderTaskRef:
        endpoint = input_spec.get("model") or DEFAULT_ENDPOINTS.get(kind)
        if not endpoint:
            raise SubmissionError(f"No fal.ai endpoint configured for kind={kind.value}")

        # Anything that is not routing metadata goes to the model as input
        input_data = {
            k: v for k, v in input_spec.items() if k not in ("model", "provider")
        }

        logger.info(f"[Fal] Submitting to {endpoint}...")
        body = await self._submit_request("POST", self._url(endpoint), json=input_data)

        request_id = body.get("request_id")
        if not request_id:
            raise SubmissionError(f"No request_id in fal.ai response: {body}")

        logger.info(f"[Fal] Queued: request_id={request_id}")
        return ProviderTaskRef(
            provider=self.name,
            task_id=request_id,
            model=endpoint,
            poll_url=body.get("response_url") or self._url(f"{endpoint}/requests/{request_id}"),
        )

    async def poll(self, ref: ProviderTaskRef) -> NormalizedStatus:
        result_url = ref.poll_url or self._url(f"{ref.model}/requests/{ref.task_id}")
        status_data = await self._poll_request("GET", f"{result_url}/status")
        raw_status = status_data.get("status", "")

        state = classify(raw_status, SUCCESS_STATUSES, FAILURE_STATUSES)
        if state == "pending":
            # IN_QUEUE or IN_PROGRESS, keep polling
            return NormalizedStatus.pending(raw_status=raw_status)
        if state == "failed":
            return NormalizedStatus.failed(status_data.get("error") or "fal.ai job failed", raw_status=raw_status)

        result = await self._poll_request("GET", result_url)
        return self.normalize_result(result, raw_status)

    @staticmethod
    def normalize_result(result: dict, raw_status: str = "COMPLETED") -> NormalizedStatus:
        urls = collect_urls(result.get("images") or result.get("image") or result.get("video") or result.get("audio"))
        if not urls:
            return NormalizedStatus.failed(f"fal.ai returned no output: {str(result)[:200]}", raw_status=raw_status)

        metadata = {}
        seed = first_present(result, "seed")
        if seed:
            metadata["seed"] = seed
        if result.get("timings"):
            metadata["timings"] = result["timings"]
        return NormalizedStatus.succeeded(JobResult.from_artifacts(urls, metadata=metadata), raw_status=raw_status)
