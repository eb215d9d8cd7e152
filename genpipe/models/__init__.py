# Database models package
from genpipe.models.job import JobRecord

__all__ = [
    "JobRecord",
]
