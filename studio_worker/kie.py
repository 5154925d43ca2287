"""
Kie.ai adapter: Veo / Runway (Sora) / Kling / Hailuo video and Suno audio.

Kie.ai reports status in several dialects:
  1. data.status = "SUCCESS" / "GENERATING" / "PENDING" / "GENERATE_FAILED" ...
  2. Veo uses data.successFlag = 0 (generating), 1 (success), 2/3 (failed)
Results arrive as data.response.resultUrls, data.results / data.works arrays,
flat videoUrl fields, or (Suno) data.response.sunoData tracks.
"""

import logging
from typing import Optional

from .orchestrator.adapter import ProviderAdapter, classify, collect_urls, first_present
from .orchestrator.errors import SubmissionError, TransientPollError
from .orchestrator.models import JobKind, JobResult, NormalizedStatus, ProviderTaskRef

logger = logging.getLogger(__name__)

# Map model names to their API path segments for GENERATION
MODEL_ENDPOINTS = {
    "veo-3.1-fast": "veo",
    "veo-3.1-quality": "veo",
    "sora-2": "runway",          # Sora uses /runway/ endpoint on Kie.ai
    "kling-2.6-quality": "kling",
    "kling-2.6-pro": "kling",
    "hailuo-2.3": "hailuo",
    "suno-v5": "",               # Suno lives at the API root: /generate
}

# Map model names to their STATUS polling path
MODEL_STATUS_PATHS = {
    "veo-3.1-fast": "veo/record-info",
    "veo-3.1-quality": "veo/record-info",
    "sora-2": "runway/record-detail",     # Sora/Runway uses record-detail
    "kling-2.6-quality": "kling/record-info",
    "kling-2.6-pro": "kling/record-info",
    "hailuo-2.3": "hailuo/record-info",
    "suno-v5": "generate/record-info",
}

# Map our internal model IDs to Kie.ai API model names
MODEL_API_NAMES = {
    "veo-3.1-fast": "veo3_fast",
    "veo-3.1-quality": "veo3",
    "sora-2": "sora2",
    "kling-2.6-quality": "kling2.6",
    "kling-2.6-pro": "kling2.6_pro",
    "hailuo-2.3": "hailuo2.3",
    "suno-v5": "V5",
}

# Endpoints that take a source video (video-to-video)
VIDEO_INPUT_ENDPOINTS = {"runway"}

DEFAULT_VIDEO_MODEL = "veo-3.1-fast"
DEFAULT_AUDIO_MODEL = "suno-v5"

SUCCESS_STATUSES = {"SUCCESS", "success", "completed", "complete", "FIRST_SUCCESS"}
FAILURE_STATUSES = {
    "GENERATE_FAILED",
    "CREATE_TASK_FAILED",
    "GENERATE_AUDIO_FAILED",
    "CALLBACK_EXCEPTION",
    "SENSITIVE_WORD_ERROR",
    "FAILED",
    "fail",
    "failed",
    "error",
}
# FIRST_SUCCESS is Suno's "one of two tracks ready"; only the final SUCCESS counts
SUNO_SUCCESS_STATUSES = {"SUCCESS", "success", "complete", "completed"}


def _default_model(kind: JobKind) -> str:
    return DEFAULT_AUDIO_MODEL if kind == JobKind.AUDIO else DEFAULT_VIDEO_MODEL


def _is_audio_model(model: str) -> bool:
    return model.startswith("suno")


class KieAdapter(ProviderAdapter):
    name = "kie"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.settings.kie_api_key}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        base = self.settings.kie_api_base.rstrip("/")
        return f"{base}/{path}" if path else base

    # ── Submission ───────────────────────────────────────────────────────

    def build_payload(self, model: str, input_spec: dict) -> dict:
        if _is_audio_model(model):
            payload = {
                "prompt": input_spec.get("prompt", ""),
                "model": MODEL_API_NAMES.get(model, model),
                "customMode": input_spec.get("custom_mode", False),
                "instrumental": input_spec.get("instrumental", False),
            }
            for key in ("style", "title"):
                if input_spec.get(key):
                    payload[key] = input_spec[key]
        else:
            endpoint = MODEL_ENDPOINTS.get(model, "veo")
            payload = {
                "prompt": input_spec.get("prompt", ""),
                "model": MODEL_API_NAMES.get(model, model),
                "aspectRatio": input_spec.get("aspect_ratio", "9:16"),
            }

            if input_spec.get("video_url"):
                if endpoint not in VIDEO_INPUT_ENDPOINTS:
                    raise SubmissionError(f"Kie.ai {model} does not accept a source video")
                payload["videoUrl"] = input_spec["video_url"]

            image_urls = input_spec.get("image_urls") or []
            if input_spec.get("image_url"):
                image_urls = [input_spec["image_url"], *image_urls]
            if image_urls and endpoint == "veo":
                if input_spec.get("use_as_first_frame"):
                    payload["mode"] = "FIRST_AND_LAST_FRAMES_2_VIDEO"
                    payload["imageUrls"] = image_urls[:1]
                else:
                    # REFERENCE_2_VIDEO mode must use veo3_fast for 9:16 compatibility
                    payload["mode"] = "REFERENCE_2_VIDEO"
                    payload["model"] = "veo3_fast"
                    payload["imageUrls"] = image_urls
            elif image_urls:
                # Kling / Hailuo / Runway animate a single image from its first frame
                if len(image_urls) > 1:
                    logger.warning(f"Kie.ai {model} takes one image, ignoring {len(image_urls) - 1} extra")
                payload["imageUrl"] = image_urls[0]

            if input_spec.get("duration"):
                payload["duration"] = input_spec["duration"]
            if input_spec.get("resolution"):
                payload["quality"] = input_spec["resolution"]

        # The Suno API insists on a callback URL even when we poll
        if self.settings.callback_url:
            payload["callBackUrl"] = self.settings.callback_url
        return payload

    async def submit(self, kind: JobKind, input_spec: dict) -> ProviderTaskRef:
        model = input_spec.get("model") or _default_model(kind)
        if model not in MODEL_ENDPOINTS:
            raise SubmissionError(f"Unknown Kie.ai model: {model}")

        url = self._url(f"{MODEL_ENDPOINTS[model]}/generate" if MODEL_ENDPOINTS[model] else "generate")
        payload = self.build_payload(model, input_spec)
        logger.info(f"Kie.ai request to {url}: model={payload.get('model')}, mode={payload.get('mode', 'TEXT_2_VIDEO')}")

        body = await self._submit_request("POST", url, json=payload)

        code = body.get("code")
        if code is not None and code != 200:
            raise SubmissionError(f"Kie.ai rejected request (code={code}): {body.get('msg')}", status_code=code)

        task_id = first_present(body.get("data"), "taskId", "task_id", "id") or first_present(
            body, "taskId", "task_id", "id"
        )
        if not task_id:
            raise SubmissionError(f"Kie.ai response has no task id: {body}")

        return ProviderTaskRef(provider=self.name, task_id=str(task_id), model=model)

    # ── Polling ──────────────────────────────────────────────────────────

    async def poll(self, ref: ProviderTaskRef) -> NormalizedStatus:
        model = ref.model or DEFAULT_VIDEO_MODEL
        url = self._url(MODEL_STATUS_PATHS.get(model, "veo/record-info"))
        body = await self._poll_request("GET", url, params={"taskId": ref.task_id})

        code = body.get("code")
        if code is not None and code != 200:
            raise TransientPollError(f"Kie.ai status code={code}: {body.get('msg')}")
        return self.normalize(body, audio=_is_audio_model(model))

    @staticmethod
    def normalize(body: dict, audio: bool = False) -> NormalizedStatus:
        poll_data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(poll_data, dict):
            poll_data = {}

        raw_status = poll_data.get("status") or ""
        success_flag = poll_data.get("successFlag")

        state = classify(raw_status, SUNO_SUCCESS_STATUSES if audio else SUCCESS_STATUSES, FAILURE_STATUSES)
        if success_flag == 1:
            state = "succeeded"
        elif success_flag in (2, 3):
            state = "failed"

        label = raw_status or (f"successFlag={success_flag}" if success_flag is not None else None)

        if state == "failed":
            reason = first_present(poll_data, "errorMessage", "failMsg", "error", "msg", "failReason")
            return NormalizedStatus.failed(reason or "Kie.ai task failed", raw_status=label)

        if state == "pending":
            return NormalizedStatus.pending(raw_status=label)

        urls, metadata = _extract_results(poll_data, audio)
        if not urls:
            logger.warning(f"Kie.ai completed but no URL found. Full response: {body}")
            return NormalizedStatus.failed("Completed but no output URL found", raw_status=label)

        metadata["task_id"] = poll_data.get("taskId")
        return NormalizedStatus.succeeded(JobResult.from_artifacts(urls, metadata=metadata), raw_status=label)


def _extract_results(poll_data: dict, audio: bool) -> tuple[list[str], dict]:
    response = poll_data.get("response")
    if not isinstance(response, dict):
        response = {}

    if audio:
        tracks = response.get("sunoData") or response.get("data") or poll_data.get("tracks") or []
        urls = [
            url
            for track in tracks
            if isinstance(track, dict)
            for url in [first_present(track, "audioUrl", "audio_url", "streamAudioUrl")]
            if url
        ]
        return urls, {"tracks": tracks}

    urls = collect_urls(response.get("resultUrls"))
    if not urls:
        # Kie.ai may use "results" or "works" array, with "url" or "videoUrl" keys
        urls = collect_urls(poll_data.get("results") or poll_data.get("works"))
    if not urls:
        direct: Optional[str] = first_present(poll_data, "videoUrl", "url", "video_url")
        urls = [direct] if direct else []
    metadata = {}
    if response.get("originUrls"):
        metadata["origin_urls"] = response["originUrls"]
    return urls, metadata
