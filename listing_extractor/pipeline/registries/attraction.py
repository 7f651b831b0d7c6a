"""
Attraction pipeline (8 steps).
"""

from listing_extractor.core.models import EntityType
from listing_extractor.pipeline.registries.common import (
    derived_step,
    enhancement_step,
    images_step,
    places_step,
    reviews_step,
    seed_step,
    social_step,
    website_step,
)
from listing_extractor.pipeline.registry import StepRegistry, chain

ATTRACTION_STEPS = chain(
    seed_step(),
    places_step(),
    website_step(),
    social_step(),
    reviews_step(),
    images_step(),
    enhancement_step(
        "attraction",
        extra_fields=("attraction_type", "best_time_to_visit", "entry_fee", "duration", "age_suitability"),
    ),
    derived_step("score_calculation", "Score calculation"),
)

ATTRACTION_REGISTRY = StepRegistry(EntityType.ATTRACTION, ATTRACTION_STEPS)
