"""
Step factories shared by the per-entity registries.
"""

from listing_extractor.core.models import Source
from listing_extractor.pipeline import mappers
from listing_extractor.pipeline.registry import StepDefinition
from listing_extractor.pipeline.retry import NO_RETRY, PATIENT_RETRY


def seed_step() -> StepDefinition:
    return StepDefinition(
        name="seed_record",
        display_name="Initial record",
        source=Source.SEED,
        mapper=mappers.map_seed,
        required=True,
        retry=NO_RETRY,
    )


def places_step() -> StepDefinition:
    return StepDefinition(
        name="places_details",
        display_name="Places details",
        provider="places_search",
        source=Source.PLACES,
        mapper=mappers.map_place_details,
        build_input=mappers.places_input,
        required=True,
    )


def website_step() -> StepDefinition:
    return StepDefinition(
        name="website_scrape",
        display_name="Website scrape",
        provider="web_search",
        source=Source.WEB_SEARCH,
        mapper=mappers.map_website,
        build_input=mappers.website_input,
    )


def web_general_step(suffix: str) -> StepDefinition:
    return StepDefinition(
        name="web_general",
        display_name="General web search",
        provider="web_search",
        source=Source.WEB_SEARCH,
        mapper=mappers.map_web_search,
        build_input=mappers.web_search_input(suffix),
    )


def social_step() -> StepDefinition:
    return StepDefinition(
        name="social_search",
        display_name="Social media search",
        provider="social_search",
        source=Source.SOCIAL_SEARCH,
        mapper=mappers.map_social,
        build_input=mappers.social_input,
    )


def reviews_step() -> StepDefinition:
    return StepDefinition(
        name="places_reviews",
        display_name="Google reviews",
        provider="places_reviews",
        source=Source.REVIEWS,
        mapper=mappers.map_reviews,
        build_input=mappers.reviews_input,
        retry=PATIENT_RETRY,
    )


def review_site_step(provider: str, display_name: str) -> StepDefinition:
    return StepDefinition(
        name=provider,
        display_name=display_name,
        provider=provider,
        source=Source.REVIEWS,
        mapper=mappers.review_site_mapper(provider),
        build_input=mappers.review_site_input(provider),
        retry=PATIENT_RETRY,
    )


def images_step() -> StepDefinition:
    return StepDefinition(
        name="process_images",
        display_name="Image processing",
        provider="image_fetch",
        source=Source.IMAGES,
        mapper=mappers.map_images,
        build_input=mappers.images_input,
    )


def sentiment_step() -> StepDefinition:
    return StepDefinition(
        name="ai_sentiment",
        display_name="Review sentiment",
        provider="ai_sentiment",
        source=Source.AI_SENTIMENT,
        mapper=mappers.map_sentiment,
        build_input=mappers.sentiment_input,
        retry=PATIENT_RETRY,
    )


def enhancement_step(entity_type: str, extra_fields: tuple[str, ...] = ()) -> StepDefinition:
    return StepDefinition(
        name="ai_enhancement",
        display_name="AI enhancement",
        provider="ai_enhancement",
        source=Source.AI_ENHANCEMENT,
        mapper=mappers.enhancement_mapper(extra_fields),
        build_input=mappers.enhancement_input(entity_type),
        required=True,
        retry=PATIENT_RETRY,
    )


def derived_step(name: str = "data_mapping", display_name: str = "Data mapping") -> StepDefinition:
    return StepDefinition(
        name=name,
        display_name=display_name,
        source=Source.DERIVED,
        mapper=mappers.map_derived,
        build_input=mappers.derived_input,
        required=True,
        retry=NO_RETRY,
    )


__all__ = [
    "seed_step",
    "places_step",
    "website_step",
    "web_general_step",
    "social_step",
    "reviews_step",
    "review_site_step",
    "images_step",
    "sentiment_step",
    "enhancement_step",
    "derived_step",
]
