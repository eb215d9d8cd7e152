#!/usr/bin/env python3
"""
Pipeline Runner Script
Submits one generation job to an in-process pipeline and prints its
progress stream until the job finishes.

Usage:
    python scripts/run_pipeline.py "a lighthouse at dusk"
    python scripts/run_pipeline.py "storyboard" --type video --scene "wide shot" --scene "close up"
    python scripts/run_pipeline.py "a gear" --type cad --seed 42
"""

import argparse
import asyncio
import json
import logging
import sys

from genpipe.core.config import get_settings
from genpipe.schemas.job import GenerationOptions, JobType
from genpipe.workers.base import PipelineError
from genpipe.workers.pipeline import build_pipeline
from genpipe.workers.queue import new_job_id


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger("genpipe.cli")


def build_options(args: argparse.Namespace) -> GenerationOptions:
    return GenerationOptions(
        prompt=args.prompt,
        negative_prompt=args.negative_prompt,
        type=JobType(args.type),
        width=args.width,
        height=args.height,
        duration=args.duration,
        seed=args.seed,
        steps=args.steps,
        num_images=args.num_images,
        num_videos=args.num_videos,
        scene_prompts=args.scene or [],
        upscale=args.upscale,
        upscale_quality=args.upscale_quality,
        group_id=args.group_id,
        timeout_seconds=args.timeout,
    )


async def run(args: argparse.Namespace) -> int:
    pipeline = build_pipeline(get_settings())
    pipeline.start()
    try:
        # Subscribe first so the queued snapshot is not missed
        job_id = args.job_id or new_job_id()
        subscription = await pipeline.watch(job_id)
        try:
            job = await pipeline.submit(build_options(args), job_id)
            logger.info(f"Submitted {job.id} (position: {pipeline.position(job.id)})")

            while True:
                snapshot = await subscription.get()
                line = f"[{snapshot.status.value:<9}] {snapshot.progress:5.1f}%  {snapshot.message or ''}"
                print(line, flush=True)
                if snapshot.status.is_terminal:
                    break
        finally:
            await subscription.close()

        job = await pipeline.get_job(job.id)
        if args.json:
            print(job.model_dump_json(by_alias=True, indent=2))
        elif job.outputs:
            for url in job.outputs:
                print(url)
        else:
            print(f"Failed: {job.error}", file=sys.stderr)
        return 0 if job.outputs else 1
    except PipelineError as e:
        logger.error(f"{type(e).__name__}: {e.message}")
        if e.details:
            logger.error(json.dumps(e.details))
        return 2
    finally:
        await pipeline.stop()


def main():
    parser = argparse.ArgumentParser(description="Run one generation job through the pipeline")
    parser.add_argument("prompt", help="Main generation prompt")
    parser.add_argument(
        "--type", "-t",
        choices=[t.value for t in JobType],
        default=JobType.IMAGE.value,
        help="Job type (default: image)"
    )
    parser.add_argument("--negative-prompt", default=None)
    parser.add_argument(
        "--scene", "-s",
        action="append",
        help="Scene prompt; repeat for each scene of a video job"
    )
    parser.add_argument("--width", type=int, default=1280)
    parser.add_argument("--height", type=int, default=720)
    parser.add_argument("--duration", type=float, default=None, help="Clip length in seconds")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--steps", type=int, default=None)
    parser.add_argument("--num-images", type=int, default=1)
    parser.add_argument("--num-videos", type=int, default=1)
    parser.add_argument("--upscale", action="store_true")
    parser.add_argument("--upscale-quality", type=int, choices=[2, 4, 8], default=2)
    parser.add_argument("--group-id", default=None, help="Storyboard id used for seed derivation")
    parser.add_argument("--timeout", type=float, default=None, help="Per-call provider timeout (seconds)")
    parser.add_argument("--job-id", default=None)
    parser.add_argument("--json", action="store_true", help="Print the final job record as JSON")

    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
