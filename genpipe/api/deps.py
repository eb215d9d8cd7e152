"""
API Dependencies
Common dependencies for FastAPI routes.
"""

from fastapi import HTTPException, Request, status

from genpipe.workers.pipeline import JobPipeline


def get_pipeline(request: Request) -> JobPipeline:
    """Get the process-wide job pipeline."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline not started"
        )
    return pipeline
