"""
Stitch Providers
Concatenate ordered scene clips into one final video.

Backends:
- SimulatedStitchProvider: returns the storage URL for the output key
  without touching any media.
- FfmpegStitchProvider: downloads the clips, joins them with the ffmpeg
  concat demuxer (stream copy, no re-encode) and uploads the result.
"""

import asyncio
import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from genpipe.core.config import Settings, settings as default_settings
from genpipe.services.storage import StorageService, get_storage_service
from genpipe.workers.base import StitchError

logger = logging.getLogger(__name__)


class StitchProvider(ABC):
    """Contract for concatenation backends."""

    name = "stitch"

    @abstractmethod
    async def stitch(self, urls: List[str], output_key: str) -> str:
        """
        Join `urls` in order into one artifact stored at `output_key`.

        Calling again with the same key overwrites the earlier result.
        """


class SimulatedStitchProvider(StitchProvider):

    name = "simulated"

    def __init__(self, latency_seconds: float = 0.5, base_url: str = ""):
        self.latency_seconds = latency_seconds
        self.base_url = base_url.rstrip("/")

    async def stitch(self, urls: List[str], output_key: str) -> str:
        if not urls:
            raise StitchError("Nothing to stitch")
        await asyncio.sleep(self.latency_seconds)
        return f"{self.base_url}/files/{output_key}"


class FfmpegStitchProvider(StitchProvider):
    """ffmpeg concat demuxer over downloaded clips."""

    name = "ffmpeg"

    def __init__(
        self,
        storage: Optional[StorageService] = None,
        ffmpeg_binary: str = "ffmpeg",
    ):
        self.storage = storage or get_storage_service()
        self.ffmpeg_binary = ffmpeg_binary

    async def stitch(self, urls: List[str], output_key: str) -> str:
        if not urls:
            raise StitchError("Nothing to stitch")

        with tempfile.TemporaryDirectory(prefix="genpipe_stitch_") as workdir:
            workspace = Path(workdir)
            clips = []
            for index, url in enumerate(urls):
                try:
                    data = await self.storage.download_bytes(url)
                except Exception as e:
                    raise StitchError(f"Could not fetch scene {index}: {e}", scene_index=index) from e
                clip = workspace / f"scene_{index:03d}.mp4"
                clip.write_bytes(data)
                clips.append(clip)

            list_file = workspace / "concat_list.txt"
            list_file.write_text("".join(f"file '{clip.as_posix()}'\n" for clip in clips))
            output = workspace / "final.mp4"

            cmd = [
                self.ffmpeg_binary, "-y", "-f", "concat", "-safe", "0",
                "-i", str(list_file), "-c", "copy", str(output),
            ]
            logger.info(f"[Stitch] Joining {len(clips)} clips -> {output_key}")
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
            try:
                _, stderr = await process.communicate()
            except asyncio.CancelledError:
                # Timed out or shut down: do not leave ffmpeg running
                if process.returncode is None:
                    process.kill()
                    await process.wait()
                raise
            if process.returncode != 0:
                detail = stderr.decode(errors="replace")[-500:]
                raise StitchError(f"ffmpeg exited with {process.returncode}: {detail}")

            return await self.storage.upload_file(output, output_key, content_type="video/mp4")


def get_stitch_provider(settings: Settings = default_settings) -> StitchProvider:
    """Select the stitch backend named in settings."""
    if settings.STITCH_BACKEND == "ffmpeg":
        return FfmpegStitchProvider(StorageService(settings), settings.FFMPEG_BINARY)
    return SimulatedStitchProvider(
        latency_seconds=settings.SIMULATED_LATENCY_SECONDS / 2,
        base_url=settings.API_BASE_URL,
    )


__all__ = [
    "StitchProvider",
    "SimulatedStitchProvider",
    "FfmpegStitchProvider",
    "get_stitch_provider",
]
