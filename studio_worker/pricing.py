"""
Token pricing: what a job reserves before it is submitted.

Flat-priced models cost a fixed number of tokens per request. Video models are
priced per second of output, so their cost scales with the requested duration.
Any "cost" the caller puts in input_spec is ignored.

Duration has one canonical key, "duration", in seconds. normalize_input()
folds the "duration_sec" alias into it, rejects non-positive or non-finite
values and clamps video durations to what the model accepts. Pricing and the
provider adapters both read the normalized value, so a job is billed for the
duration it is submitted with.
"""

import logging
import math

from .orchestrator.models import JobKind

logger = logging.getLogger(__name__)

# Flat per-request costs
MODEL_COSTS = {
    # 3D
    "cjwbw/shap-e": 10,
    "openai/point-e": 8,
    "meshy/text-to-3d": 15,
    "jiaxiangc/dreamgaussian": 12,
    "luma/genie": 20,
    "camenduru/triposr": 8,
    "tencent/hunyuan3d-2": 15,
    # Images
    "fal-ai/flux/dev": 5,
    "black-forest-labs/flux-schnell": 5,
    "stability-ai/sdxl": 5,
    "black-forest-labs/flux-1.1-pro": 10,
    # Audio
    "suno-v5": 8,
    # Upscales / transforms
    "nightmareai/real-esrgan": 2,
    "fal-ai/clarity-upscaler": 4,
}

# Per-second video rates
VIDEO_RATES_PER_SECOND = {
    "veo-3.1-fast": 4,
    "veo-3.1-quality": 6,
    "sora-2": 10,
    "kling-2.6-quality": 5,
    "kling-2.6-pro": 5,
    "hailuo-2.3": 4,
    "luma/ray-2": 6,
    "luma/ray-flash-2": 3,
    "minimax/video-01": 3,
}

# (min, max) seconds each video model accepts
MODEL_DURATION_LIMITS = {
    "veo-3.1-fast": (4, 8),
    "veo-3.1-quality": (4, 8),
    "sora-2": (5, 20),
    "kling-2.6-quality": (5, 10),
    "kling-2.6-pro": (5, 10),
    "hailuo-2.3": (6, 10),
    "luma/ray-2": (5, 9),
    "luma/ray-flash-2": (5, 9),
    "minimax/video-01": (2, 6),
}
DEFAULT_DURATION_LIMITS = (2, 10)

DEFAULT_RATE_PER_SECOND = 2
DEFAULT_DURATION_SEC = 5

DURATION_KEY = "duration"
DURATION_ALIASES = ("duration_sec",)

PER_SECOND_KINDS = {JobKind.VIDEO, JobKind.COMPOSITE_SEGMENT}

# Flat fallback for the kinds that are not priced per second
KIND_DEFAULTS = {
    JobKind.IMAGE: 5,
    JobKind.AUDIO: 8,
    JobKind.THREE_D: 10,
    JobKind.TEXT_TRANSFORM: 2,
}


def _is_per_second(kind: JobKind, model) -> bool:
    if model in MODEL_COSTS:
        return False
    return model in VIDEO_RATES_PER_SECOND or kind in PER_SECOND_KINDS


def parse_duration(value) -> float:
    """Seconds from 8, 8.5 or "8s". Raises ValueError unless positive and finite."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    try:
        seconds = float(str(value).strip().rstrip("s"))
    except ValueError:
        raise ValueError(f"Invalid duration: {value!r}") from None
    if not math.isfinite(seconds) or seconds <= 0:
        raise ValueError(f"Duration must be a positive number of seconds, got {value!r}")
    return seconds


def clamp_duration(model, seconds: float) -> float:
    """Pull a duration into the model's accepted range."""
    low, high = MODEL_DURATION_LIMITS.get(model, DEFAULT_DURATION_LIMITS)
    clamped = min(max(seconds, low), high)
    if clamped != seconds:
        logger.info(f"Duration {seconds}s adjusted to {clamped}s for {model} (allowed {low}-{high}s)")
    return int(clamped) if float(clamped).is_integer() else clamped


def normalize_input(kind: JobKind, input_spec: dict) -> dict:
    """
    Return a copy of input_spec with a single validated "duration".

    Raises ValueError for an unparseable, non-positive or non-finite duration,
    or when "duration" and "duration_sec" disagree.
    """
    spec = dict(input_spec)
    model = spec.get("model")

    values = [spec.pop(key) for key in (DURATION_KEY, *DURATION_ALIASES) if spec.get(key) is not None]
    seconds = [parse_duration(value) for value in values]
    if len(set(seconds)) > 1:
        raise ValueError(f"Conflicting durations in input: {values}")

    if _is_per_second(kind, model):
        spec[DURATION_KEY] = clamp_duration(model, seconds[0] if seconds else DEFAULT_DURATION_SEC)
    elif seconds:
        spec[DURATION_KEY] = values[0]
    return spec


def estimate_cost(kind: JobKind, input_spec: dict) -> int:
    """Tokens to reserve for a job of this kind and input."""
    model = input_spec.get("model")

    if model in MODEL_COSTS:
        return MODEL_COSTS[model]

    if _is_per_second(kind, model):
        rate = VIDEO_RATES_PER_SECOND.get(model, DEFAULT_RATE_PER_SECOND)
        duration = normalize_input(kind, input_spec)[DURATION_KEY]
        return max(1, math.ceil(rate * duration))

    return KIND_DEFAULTS[kind]
