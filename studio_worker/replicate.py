"""
Replicate predictions adapter (images, 3D, upscales, community video models).

Prediction status: starting → processing → succeeded | failed | canceled.
Output is a string, an array of strings, or an object such as {"mesh": ...}.
"""

import logging

from .orchestrator.adapter import ProviderAdapter, classify, collect_urls
from .orchestrator.errors import SubmissionError
from .orchestrator.models import JobKind, JobResult, NormalizedStatus, ProviderTaskRef

logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    JobKind.IMAGE: "black-forest-labs/flux-schnell",
    JobKind.VIDEO: "minimax/video-01",
    JobKind.THREE_D: "camenduru/triposr",
    JobKind.TEXT_TRANSFORM: "nightmareai/real-esrgan",
}

SUCCESS_STATUSES = {"succeeded"}
FAILURE_STATUSES = {"failed", "canceled"}


class ReplicateAdapter(ProviderAdapter):
    name = "replicate"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.settings.replicate_api_key}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        return f"{self.settings.replicate_api_base.rstrip('/')}/{path}"

    async def submit(self, kind: JobKind, input_spec: dict) -> ProviderTaskRef:
        model = input_spec.get("model") or DEFAULT_MODELS.get(kind)
        if not model:
            raise SubmissionError(f"No Replicate model configured for kind={kind.value}")

        input_data = input_spec.get("input")
        if input_data is None:
            input_data = {
                k: v for k, v in input_spec.items() if k not in ("model", "provider", "version")
            }

        # owner/name:version pins a version; bare owner/name uses the official model endpoint
        version = input_spec.get("version")
        if not version and ":" in model:
            model, version = model.split(":", 1)

        if version:
            url = self._url("predictions")
            payload = {"version": version, "input": input_data}
        else:
            url = self._url(f"models/{model}/predictions")
            payload = {"input": input_data}

        logger.info(f"Starting Replicate prediction for model: {model}")
        prediction = await self._submit_request("POST", url, json=payload)

        prediction_id = prediction.get("id")
        if not prediction_id:
            raise SubmissionError(f"Replicate response has no prediction id: {prediction}")

        urls = prediction.get("urls") or {}
        return ProviderTaskRef(
            provider=self.name,
            task_id=prediction_id,
            model=model,
            poll_url=urls.get("get") or self._url(f"predictions/{prediction_id}"),
        )

    async def poll(self, ref: ProviderTaskRef) -> NormalizedStatus:
        url = ref.poll_url or self._url(f"predictions/{ref.task_id}")
        prediction = await self._poll_request("GET", url)
        return self.normalize(prediction)

    @staticmethod
    def normalize(prediction: dict) -> NormalizedStatus:
        raw_status = prediction.get("status")
        state = classify(raw_status, SUCCESS_STATUSES, FAILURE_STATUSES)

        if state == "pending":
            return NormalizedStatus.pending(raw_status=raw_status)
        if state == "failed":
            return NormalizedStatus.failed(
                prediction.get("error") or f"Prediction {raw_status}", raw_status=raw_status
            )

        urls = collect_urls(prediction.get("output"))
        if not urls:
            return NormalizedStatus.failed("Prediction succeeded without output", raw_status=raw_status)

        metadata = {"prediction_id": prediction.get("id")}
        metrics = prediction.get("metrics") or {}
        if metrics.get("predict_time") is not None:
            metadata["predict_time"] = metrics["predict_time"]
        return NormalizedStatus.succeeded(JobResult.from_artifacts(urls, metadata=metadata), raw_status=raw_status)
