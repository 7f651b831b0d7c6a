"""
Mall pipeline (9 steps).
"""

from listing_extractor.core.models import EntityType
from listing_extractor.pipeline.registries.common import (
    derived_step,
    enhancement_step,
    images_step,
    places_step,
    reviews_step,
    seed_step,
    sentiment_step,
    social_step,
    website_step,
)
from listing_extractor.pipeline.registry import StepRegistry, chain

MALL_STEPS = chain(
    seed_step(),
    places_step(),
    website_step(),
    social_step(),
    reviews_step(),
    images_step(),
    sentiment_step(),
    enhancement_step("mall", extra_fields=("total_stores", "anchor_stores", "parking", "floors")),
    derived_step(),
)

MALL_REGISTRY = StepRegistry(EntityType.MALL, MALL_STEPS)
