# Database models package
from converty.models.conversion_job import ConversionJob, JobTransition

__all__ = [
    "ConversionJob",
    "JobTransition",
]
