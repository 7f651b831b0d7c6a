"""
Restaurant pipeline (8 steps).
"""

from listing_extractor.core.models import EntityType, Source
from listing_extractor.pipeline import mappers
from listing_extractor.pipeline.registries.common import (
    enhancement_step,
    images_step,
    places_step,
    reviews_step,
    seed_step,
    social_step,
    website_step,
)
from listing_extractor.pipeline.registry import StepDefinition, StepRegistry, chain

RESTAURANT_STEPS = chain(
    seed_step(),
    places_step(),
    website_step(),
    StepDefinition(
        name="menu_search",
        display_name="Menu search",
        provider="menu_search",
        source=Source.WEB_SEARCH,
        mapper=mappers.map_menu,
        build_input=mappers.site_search_input,
    ),
    social_step(),
    reviews_step(),
    images_step(),
    enhancement_step(
        "restaurant",
        extra_fields=("cuisines", "dishes", "popular_dishes", "special_features", "dress_code"),
    ),
)

RESTAURANT_REGISTRY = StepRegistry(EntityType.RESTAURANT, RESTAURANT_STEPS)
