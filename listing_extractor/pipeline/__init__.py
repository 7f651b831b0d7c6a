"""
Extraction pipeline: registries, merge policy, job store, runner and progress.
"""

from listing_extractor.pipeline.merge import DataMapper
from listing_extractor.pipeline.progress import ProgressReporter, progress_percentage
from listing_extractor.pipeline.rate_limiter import ProviderRateLimiter
from listing_extractor.pipeline.registries import REGISTRIES, get_registry
from listing_extractor.pipeline.registry import StepDefinition, StepRegistry, chain
from listing_extractor.pipeline.retry import RetryPolicy, with_retries
from listing_extractor.pipeline.runner import PipelineRunner
from listing_extractor.pipeline.store import JobStore

__all__ = [
    "DataMapper",
    "JobStore",
    "PipelineRunner",
    "ProgressReporter",
    "ProviderRateLimiter",
    "REGISTRIES",
    "RetryPolicy",
    "StepDefinition",
    "StepRegistry",
    "chain",
    "get_registry",
    "progress_percentage",
    "with_retries",
]
