"""
Hotel pipeline (13 steps).
"""

from listing_extractor.core.models import EntityType, Source
from listing_extractor.pipeline import mappers
from listing_extractor.pipeline.registries.common import (
    derived_step,
    enhancement_step,
    images_step,
    places_step,
    review_site_step,
    reviews_step,
    seed_step,
    sentiment_step,
    social_step,
    web_general_step,
    website_step,
)
from listing_extractor.pipeline.registry import StepDefinition, StepRegistry, chain

HOTEL_STEPS = chain(
    seed_step(),
    places_step(),
    web_general_step("hotel"),
    StepDefinition(
        name="room_search",
        display_name="Room types",
        provider="room_search",
        source=Source.WEB_SEARCH,
        mapper=mappers.map_rooms,
        build_input=mappers.site_search_input,
    ),
    website_step(),
    social_step(),
    reviews_step(),
    review_site_step("tripadvisor", "TripAdvisor rating"),
    review_site_step("booking_com", "Booking.com rating"),
    images_step(),
    sentiment_step(),
    enhancement_step("hotel", extra_fields=("star_rating", "hotel_type", "check_in_time", "check_out_time")),
    derived_step(),
)

HOTEL_REGISTRY = StepRegistry(EntityType.HOTEL, HOTEL_STEPS)
