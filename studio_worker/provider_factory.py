import logging

from .fal import FalAdapter
from .kie import KieAdapter, MODEL_ENDPOINTS
from .luma import LumaAdapter
from .orchestrator.adapter import ProviderAdapter
from .orchestrator.config import ProviderSettings
from .orchestrator.models import JobKind
from .replicate import ReplicateAdapter

logger = logging.getLogger(__name__)

KIE_PREFIXES = ("veo", "sora", "kling", "hailuo", "suno")
LUMA_PREFIXES = ("luma", "ray")

DEFAULT_PROVIDERS = {
    JobKind.IMAGE: "fal",
    JobKind.VIDEO: "kie",
    JobKind.AUDIO: "kie",
    JobKind.THREE_D: "replicate",
    JobKind.TEXT_TRANSFORM: "fal",
    JobKind.COMPOSITE_SEGMENT: "kie",
}


class ProviderFactory:
    """Owns one adapter per provider and picks the one a job should use."""

    def __init__(self, adapters: dict[str, ProviderAdapter]):
        self.adapters = dict(adapters)

    @classmethod
    def from_settings(cls, settings: ProviderSettings) -> "ProviderFactory":
        return cls({
            "kie": KieAdapter(settings),
            "fal": FalAdapter(settings),
            "replicate": ReplicateAdapter(settings),
            "luma": LumaAdapter(settings),
        })

    @staticmethod
    def route(kind: JobKind, input_spec: dict) -> str:
        # Explicit provider check, then model prefix, then per-kind default
        if input_spec.get("provider"):
            return input_spec["provider"]

        model = input_spec.get("model")
        if model:
            if model in MODEL_ENDPOINTS or model.startswith(KIE_PREFIXES):
                return "kie"
            if model.startswith("fal-ai/"):
                return "fal"
            if model.startswith(LUMA_PREFIXES):
                return "luma"
            if "/" in model:
                return "replicate"

        return DEFAULT_PROVIDERS[kind]

    def get_provider(self, name: str) -> ProviderAdapter:
        adapter = self.adapters.get(name)
        if adapter is None:
            raise KeyError(f"Unknown provider: {name}")
        return adapter

    def provider_for(self, kind: JobKind, input_spec: dict) -> tuple[str, ProviderAdapter]:
        name = self.route(kind, input_spec)
        return name, self.get_provider(name)

    async def aclose(self):
        for adapter in self.adapters.values():
            await adapter.aclose()
        logger.info("Provider clients closed")
