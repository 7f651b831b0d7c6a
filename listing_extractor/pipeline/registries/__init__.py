"""
Step registries per entity type.

Pipelines (linear by default):
    restaurant:  seed -> places -> website -> menu -> social -> reviews -> images -> AI
    hotel:       seed -> places -> web -> rooms -> website -> social -> reviews
                 -> tripadvisor -> booking.com -> images -> sentiment -> AI -> mapping
    mall:        seed -> places -> website -> social -> reviews -> images -> sentiment -> AI -> mapping
    school:      seed -> places -> website -> web -> social -> reviews -> images -> sentiment -> AI -> mapping
    attraction:  seed -> places -> website -> social -> reviews -> images -> AI -> score
"""

from listing_extractor.core.exceptions import UnknownEntityType
from listing_extractor.core.models import EntityType
from listing_extractor.pipeline.registries.attraction import ATTRACTION_REGISTRY
from listing_extractor.pipeline.registries.hotel import HOTEL_REGISTRY
from listing_extractor.pipeline.registries.mall import MALL_REGISTRY
from listing_extractor.pipeline.registries.restaurant import RESTAURANT_REGISTRY
from listing_extractor.pipeline.registries.school import SCHOOL_REGISTRY
from listing_extractor.pipeline.registry import StepRegistry

REGISTRIES: dict[EntityType, StepRegistry] = {
    EntityType.RESTAURANT: RESTAURANT_REGISTRY,
    EntityType.HOTEL: HOTEL_REGISTRY,
    EntityType.MALL: MALL_REGISTRY,
    EntityType.SCHOOL: SCHOOL_REGISTRY,
    EntityType.ATTRACTION: ATTRACTION_REGISTRY,
}


def get_registry(entity_type: EntityType | str) -> StepRegistry:
    try:
        return REGISTRIES[EntityType(entity_type)]
    except (ValueError, KeyError):
        raise UnknownEntityType(str(getattr(entity_type, "value", entity_type))) from None


__all__ = ["REGISTRIES", "get_registry"]
