"""
School pipeline (10 steps).
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
    web_general_step,
    website_step,
)
from listing_extractor.pipeline.registry import StepRegistry, chain

SCHOOL_STEPS = chain(
    seed_step(),
    places_step(),
    website_step(),
    web_general_step("school admissions fees"),
    social_step(),
    reviews_step(),
    images_step(),
    sentiment_step(),
    enhancement_step(
        "school",
        extra_fields=("curriculum", "grade_levels", "accreditations", "tuition_range", "school_type"),
    ),
    derived_step(),
)

SCHOOL_REGISTRY = StepRegistry(EntityType.SCHOOL, SCHOOL_STEPS)
