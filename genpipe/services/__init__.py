# Services package - external providers and storage
from genpipe.services.provider import (
    GenerationProvider,
    SimulatedGenerationProvider,
    ReplicateGenerationProvider,
    extract_artifact_url,
    get_generation_provider,
)
from genpipe.services.stitching import (
    StitchProvider,
    SimulatedStitchProvider,
    FfmpegStitchProvider,
    get_stitch_provider,
)
from genpipe.services.storage import StorageService, get_storage_service

__all__ = [
    "GenerationProvider",
    "SimulatedGenerationProvider",
    "ReplicateGenerationProvider",
    "extract_artifact_url",
    "get_generation_provider",
    "StitchProvider",
    "SimulatedStitchProvider",
    "FfmpegStitchProvider",
    "get_stitch_provider",
    "StorageService",
    "get_storage_service",
]
