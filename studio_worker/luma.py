"""
Luma Dream Machine adapter (video).

Generation state: queued → dreaming → completed | failed.
Completed generations carry assets.video (and sometimes assets.image).
"""

import logging

from .orchestrator.adapter import ProviderAdapter, classify
from .orchestrator.errors import SubmissionError
from .orchestrator.models import JobKind, JobResult, NormalizedStatus, ProviderTaskRef

logger = logging.getLogger(__name__)

SUCCESS_STATES = {"completed"}
FAILURE_STATES = {"failed"}


class LumaAdapter(ProviderAdapter):
    name = "luma"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.settings.luma_api_key}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        return f"{self.settings.luma_api_base.rstrip('/')}/{path}"

    async def submit(self, kind: JobKind, input_spec: dict) -> ProviderTaskRef:
        payload = {
            "prompt": input_spec.get("prompt", ""),
            "aspect_ratio": input_spec.get("aspect_ratio", "16:9"),
            "loop": bool(input_spec.get("loop", False)),
        }
        model = input_spec.get("model")
        if model and model.startswith("luma/"):
            payload["model"] = model.split("/", 1)[1]

        # Keyframes only reference images or earlier Luma generations
        if input_spec.get("video_url"):
            raise SubmissionError("Luma does not accept a source video URL")

        # Frame conditioning: chained and first-frame segments open on frame0
        if input_spec.get("image_url"):
            payload["keyframes"] = {"frame0": {"type": "image", "url": input_spec["image_url"]}}

        body = await self._submit_request("POST", self._url("generations"), json=payload)
        generation_id = body.get("id")
        if not generation_id:
            raise SubmissionError(f"Luma response has no generation id: {body}")

        logger.info(f"Luma generation submitted: id={generation_id}")
        return ProviderTaskRef(provider=self.name, task_id=generation_id, model=model)

    async def poll(self, ref: ProviderTaskRef) -> NormalizedStatus:
        body = await self._poll_request("GET", self._url(f"generations/{ref.task_id}"))
        return self.normalize(body)

    @staticmethod
    def normalize(body: dict) -> NormalizedStatus:
        state_text = body.get("state")
        state = classify(state_text, SUCCESS_STATES, FAILURE_STATES)

        if state == "pending":
            return NormalizedStatus.pending(raw_status=state_text)
        if state == "failed":
            return NormalizedStatus.failed(body.get("failure_reason") or "Luma generation failed", raw_status=state_text)

        assets = body.get("assets") or {}
        video_url = assets.get("video") or (body.get("video") or {}).get("url")
        if not video_url:
            return NormalizedStatus.failed("Luma completed without a video asset", raw_status=state_text)

        metadata = {"generation_id": body.get("id")}
        if assets.get("image"):
            metadata["thumbnail_url"] = assets["image"]
        return NormalizedStatus.succeeded(
            JobResult.from_artifacts([video_url], last_artifact=assets.get("last_frame"), metadata=metadata),
            raw_status=state_text,
        )
