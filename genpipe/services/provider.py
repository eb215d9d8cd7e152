"""
Generation Providers
Black-box services that turn a prompt and settings into one artifact URL.

Backends:
- SimulatedGenerationProvider: placeholder artifacts after a fixed delay,
  for local runs without model credentials.
- ReplicateGenerationProvider: Replicate-style predictions API over httpx.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

import httpx

from genpipe.core.config import Settings, settings as default_settings
from genpipe.schemas.job import GenerationOptions, JobType
from genpipe.workers.base import NonRetryableError, ProviderError, RetryableError, with_retry

logger = logging.getLogger(__name__)


# ── Output normalization ─────────────────────────────────────────────────────

# Object keys checked, in order, when a provider returns a mapping
ARTIFACT_KEYS: Tuple[str, ...] = ("mesh", "glb", "model", "output", "url", "video", "image")


@dataclass(frozen=True)
class ArtifactFound:
    url: str


@dataclass(frozen=True)
class ArtifactNotFound:
    reason: str


ArtifactLookup = Union[ArtifactFound, ArtifactNotFound]


def extract_artifact_url(output: Any) -> ArtifactLookup:
    """
    Pull the artifact URL out of a provider response.

    Fallback order: a bare non-empty string; the first element of a list
    (resolved recursively); the first non-empty string under ARTIFACT_KEYS
    of a mapping (values may themselves be strings, lists or mappings).
    """
    if isinstance(output, str):
        if output.strip():
            return ArtifactFound(output.strip())
        return ArtifactNotFound("empty string output")

    if isinstance(output, (list, tuple)):
        if not output:
            return ArtifactNotFound("empty list output")
        return extract_artifact_url(output[0])

    if isinstance(output, dict):
        for key in ARTIFACT_KEYS:
            value = output.get(key)
            if value is None:
                continue
            found = extract_artifact_url(value)
            if isinstance(found, ArtifactFound):
                return found
        return ArtifactNotFound(f"no artifact under keys {', '.join(ARTIFACT_KEYS)}")

    if output is None:
        return ArtifactNotFound("no output")
    return ArtifactNotFound(f"unsupported output type {type(output).__name__}")


# ── Provider contract ────────────────────────────────────────────────────────

class GenerationProvider(ABC):
    """
    Contract for external generation services.

    generate() must be safe to call again with the same arguments; scene
    regeneration relies on it.
    """

    name = "provider"

    @property
    def fingerprint(self) -> str:
        """Identifies the provider/model combination in manifests."""
        return self.name

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        settings: GenerationOptions,
        reference_artifact: Optional[str] = None,
        seed: Optional[int] = None,
    ) -> str:
        """Return the URL of one generated artifact or raise."""

    async def upscale(self, artifact_url: str, settings: GenerationOptions) -> str:
        return artifact_url

    async def encode(self, artifact_url: str, settings: GenerationOptions) -> str:
        return artifact_url

    async def close(self):
        pass


class SimulatedGenerationProvider(GenerationProvider):
    """Returns placeholder artifacts after a short delay."""

    name = "simulated"

    def __init__(self, latency_seconds: float = 1.0, pipeline_version: str = "1.0.0"):
        self.latency_seconds = latency_seconds
        self.model_hash = f"sim_{pipeline_version.replace('.', '')}"

    @property
    def fingerprint(self) -> str:
        return f"{self.name}:{self.model_hash}"

    async def generate(self, prompt, settings, reference_artifact=None, seed=None) -> str:
        await asyncio.sleep(self.latency_seconds)
        token = seed if seed is not None else random.randint(0, 2**31 - 1)
        if settings.type == JobType.IMAGE:
            return f"https://picsum.photos/seed/{token}/{settings.width}/{settings.height}"
        if settings.type == JobType.VIDEO:
            return f"https://samples.genpipe.local/video/{token}.mp4"
        return f"https://samples.genpipe.local/models/{token}.glb"

    async def upscale(self, artifact_url, settings) -> str:
        if not settings.upscale:
            return artifact_url
        await asyncio.sleep(self.latency_seconds / 2)
        return f"{artifact_url}?upscale={settings.upscale_quality}x"


class ReplicateGenerationProvider(GenerationProvider):
    """
    Replicate-style predictions API.

    A prediction is created with `Prefer: wait`; if it is still running when
    the call returns, its `urls.get` endpoint is polled until it settles.
    """

    name = "replicate"

    TERMINAL_STATES = ("succeeded", "failed", "canceled")

    def __init__(self, settings: Settings = default_settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.client = client or httpx.AsyncClient(
            base_url=settings.REPLICATE_BASE_URL,
            headers={
                "Authorization": f"Bearer {settings.REPLICATE_API_TOKEN}",
                "Content-Type": "application/json",
            },
            timeout=60.0,
        )

        # Retry policy comes from this instance's settings
        retry = with_retry(max_retries=settings.PROVIDER_MAX_RETRIES, retry_delay=settings.PROVIDER_RETRY_DELAY)
        self._create_prediction = retry(self._create_prediction)
        self._get_prediction = retry(self._get_prediction)

    @property
    def fingerprint(self) -> str:
        s = self.settings
        return f"{self.name}:{s.IMAGE_MODEL}|{s.VIDEO_MODEL}|{s.THREE_D_MODEL}|{s.CAD_MODEL}"

    def model_for(self, job_type: JobType) -> str:
        return {
            JobType.IMAGE: self.settings.IMAGE_MODEL,
            JobType.VIDEO: self.settings.VIDEO_MODEL,
            JobType.THREE_D: self.settings.THREE_D_MODEL,
            JobType.CAD: self.settings.CAD_MODEL,
        }[job_type]

    def build_input(
        self,
        prompt: str,
        settings: GenerationOptions,
        reference_artifact: Optional[str],
        seed: Optional[int],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"prompt": prompt}
        if settings.negative_prompt:
            payload["negative_prompt"] = settings.negative_prompt
        if seed is not None:
            payload["seed"] = seed

        if settings.type in (JobType.THREE_D, JobType.CAD):
            image = reference_artifact or settings.image_url
            if image:
                payload["image"] = image
            return payload

        payload["width"] = settings.width
        payload["height"] = settings.height
        if settings.aspect_ratio:
            payload["aspect_ratio"] = settings.aspect_ratio
        if settings.steps:
            payload["num_inference_steps"] = settings.steps
        if settings.cfg_scale is not None:
            payload["guidance_scale"] = settings.cfg_scale

        if settings.type == JobType.VIDEO:
            if settings.duration:
                payload["duration"] = settings.duration
            if settings.fps:
                payload["fps"] = settings.fps
            if reference_artifact:
                payload["image"] = reference_artifact
            elif settings.image_url:
                payload["image"] = settings.image_url
            if settings.reference_images:
                payload["reference_images"] = settings.reference_images[:3]
        elif settings.image_url:
            payload["image"] = settings.image_url
        return payload

    async def generate(self, prompt, settings, reference_artifact=None, seed=None) -> str:
        model = self.model_for(settings.type)
        payload = self.build_input(prompt, settings, reference_artifact, seed)
        logger.info(f"[Replicate] {model} | seed={seed} | reference={'yes' if reference_artifact else 'no'}")
        return await self._run(model, payload)

    async def upscale(self, artifact_url, settings) -> str:
        if not settings.upscale:
            return artifact_url
        if settings.type == JobType.VIDEO:
            model = self.settings.VIDEO_UPSCALE_MODEL
            payload = {"video_path": artifact_url, "scale": settings.upscale_quality}
        else:
            model = self.settings.UPSCALE_MODEL
            payload = {"image": artifact_url, "scale": settings.upscale_quality}
        return await self._run(model, payload)

    async def _run(self, model: str, payload: Dict[str, Any]) -> str:
        prediction = await self._create_prediction(model, payload)
        while prediction.get("status") not in self.TERMINAL_STATES:
            await asyncio.sleep(self.settings.PROVIDER_POLL_INTERVAL)
            prediction = await self._get_prediction(prediction["urls"]["get"])

        if prediction["status"] != "succeeded":
            raise ProviderError(f"{model} prediction {prediction['status']}: {prediction.get('error') or 'no details'}")

        found = extract_artifact_url(prediction.get("output"))
        if isinstance(found, ArtifactNotFound):
            raise ProviderError(f"{model} returned no artifact ({found.reason})")
        return found.url

    async def _create_prediction(self, model: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._send("POST", f"/models/{model}/predictions", json={"input": payload}, headers={"Prefer": "wait"})
        return response.json()

    async def _get_prediction(self, url: str) -> Dict[str, Any]:
        response = await self._send("GET", url)
        return response.json()

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise RetryableError(f"{method} {url}: {e}")
        if response.status_code == 429 or response.status_code >= 500:
            raise RetryableError(f"{method} {url}: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise NonRetryableError(f"{method} {url}: HTTP {response.status_code} {response.text[:200]}")
        return response

    async def close(self):
        await self.client.aclose()


def get_generation_provider(settings: Settings = default_settings) -> GenerationProvider:
    """Select the provider backend named in settings."""
    if settings.PROVIDER_BACKEND == "replicate":
        return ReplicateGenerationProvider(settings)
    return SimulatedGenerationProvider(
        latency_seconds=settings.SIMULATED_LATENCY_SECONDS,
        pipeline_version=settings.PIPELINE_VERSION,
    )


__all__ = [
    "ARTIFACT_KEYS",
    "ArtifactFound",
    "ArtifactNotFound",
    "ArtifactLookup",
    "extract_artifact_url",
    "GenerationProvider",
    "SimulatedGenerationProvider",
    "ReplicateGenerationProvider",
    "get_generation_provider",
]
