"""
Data Mapper: source-priority merge of step patches into the draft.

Each canonical field declares which sources it trusts, best first. Steps that
share a source are ordered by their position in the registry, which makes the
priority a total order per field. A patch value is written only when the
field is empty or currently held by a strictly lower-ranked claim. Because
the decision depends only on (source rank, step position), the merged draft
does not depend on the order in which independent steps finish, and
`rebuild()` reproduces it from the stored raw outputs.

Source tags in `draft_sources` are `"<source>:<step>"`, or the bare source
when a patch is merged without a step.
"""

from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from listing_extractor.core.exceptions import MappingError
from listing_extractor.core.models import Source, StepState, StepStatus
from listing_extractor.pipeline.registry import StepDefinition, StepRegistry

logger = structlog.get_logger()

S = Source

# Fallback order for fields without an explicit entry
DEFAULT_PRIORITY: tuple[Source, ...] = (
    S.SEED,
    S.PLACES,
    S.WEB_SEARCH,
    S.SOCIAL_SEARCH,
    S.REVIEWS,
    S.IMAGES,
    S.AI_SENTIMENT,
    S.AI_ENHANCEMENT,
    S.DERIVED,
)

_SOCIAL = (S.WEB_SEARCH, S.SOCIAL_SEARCH, S.AI_ENHANCEMENT)
_GEO = (S.PLACES, S.SEED, S.WEB_SEARCH, S.AI_ENHANCEMENT)
_LONG_TEXT = (S.AI_ENHANCEMENT, S.WEB_SEARCH, S.PLACES)

FIELD_PRIORITY: dict[str, tuple[Source, ...]] = {
    # Identity: what the operator submitted wins
    "name": (S.SEED, S.PLACES, S.WEB_SEARCH, S.AI_ENHANCEMENT),
    "google_place_id": (S.SEED, S.PLACES),
    "slug": (S.SEED, S.DERIVED),
    # Geography
    "address": _GEO,
    "area": _GEO,
    "neighborhood_id": (S.PLACES, S.SEED, S.DERIVED),
    "latitude": (S.PLACES, S.SEED),
    "longitude": (S.PLACES, S.SEED),
    "opening_hours": (S.PLACES, S.WEB_SEARCH, S.AI_ENHANCEMENT),
    # Contact
    "phone": (S.PLACES, S.WEB_SEARCH, S.AI_ENHANCEMENT),
    "email": (S.WEB_SEARCH, S.AI_ENHANCEMENT, S.PLACES),
    "website": (S.PLACES, S.SEED, S.WEB_SEARCH, S.AI_ENHANCEMENT),
    "menu_link": (S.WEB_SEARCH, S.AI_ENHANCEMENT),
    # Social
    "instagram": _SOCIAL,
    "facebook": _SOCIAL,
    "twitter": _SOCIAL,
    "tiktok": _SOCIAL,
    "youtube": _SOCIAL,
    # Ratings
    "rating": (S.PLACES, S.REVIEWS),
    "review_count": (S.PLACES, S.REVIEWS),
    "price_level": (S.PLACES, S.AI_ENHANCEMENT),
    "reviews": (S.REVIEWS, S.PLACES),
    "review_sentiment": (S.AI_SENTIMENT, S.AI_ENHANCEMENT),
    "sentiment_score": (S.AI_SENTIMENT, S.AI_ENHANCEMENT),
    # Descriptive text
    "description": _LONG_TEXT,
    "short_description": _LONG_TEXT,
    "meta_title": (S.AI_ENHANCEMENT, S.WEB_SEARCH),
    "meta_description": (S.AI_ENHANCEMENT, S.WEB_SEARCH),
    "faqs": (S.AI_ENHANCEMENT, S.WEB_SEARCH),
    "categories": (S.AI_ENHANCEMENT, S.PLACES, S.WEB_SEARCH),
    # Media
    "hero_image": (S.IMAGES, S.PLACES, S.WEB_SEARCH),
    "images": (S.IMAGES, S.PLACES, S.WEB_SEARCH),
}


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, dict, tuple, set)) and len(value) == 0)


def make_tag(source: Source | str, step_name: str | None = None) -> str:
    value = Source(source).value
    return f"{value}:{step_name}" if step_name else value


def parse_tag(tag: str) -> tuple[Source, str | None]:
    """'web_search:website_scrape' -> (Source.WEB_SEARCH, 'website_scrape')"""
    source, _, step_name = tag.partition(":")
    return Source(source), step_name or None


@dataclass
class MergeResult:
    applied: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)


class DataMapper:
    """Reconciles multiple providers' claims about the same logical field."""

    def __init__(
        self,
        priorities: Mapping[str, tuple[Source, ...]] | None = None,
        default_priority: tuple[Source, ...] = DEFAULT_PRIORITY,
    ):
        self.priorities = dict(FIELD_PRIORITY if priorities is None else priorities)
        self.default_priority = default_priority

    def rank(self, field_name: str, source: Source | str) -> int:
        """Lower is better. Sources missing from a field's order rank last."""
        order = self.priorities.get(field_name, self.default_priority)
        source = Source(source)
        return order.index(source) if source in order else len(order)

    def claim_key(
        self,
        field_name: str,
        tag: str,
        registry: StepRegistry | None = None,
    ) -> tuple[int, int]:
        """(source rank, step position) of a source tag; lower wins."""
        source, step_name = parse_tag(tag)
        position = registry.position(step_name) if registry is not None and step_name else 0
        return self.rank(field_name, source), position

    def merge(
        self,
        draft: MutableMapping[str, Any],
        draft_sources: MutableMapping[str, str],
        patch: Mapping[str, Any],
        source: Source,
        step: StepDefinition | None = None,
        registry: StepRegistry | None = None,
    ) -> MergeResult:
        """
        Merge `patch` into `draft` in place.

        With `step` and `registry`, ties between steps of the same source go
        to the step declared first.
        """
        result = MergeResult()
        tag = make_tag(source, step.name if step is not None else None)
        for field_name, value in patch.items():
            if is_empty(value):
                continue
            current_tag = draft_sources.get(field_name)
            if field_name in draft and not is_empty(draft[field_name]) and current_tag is not None:
                if self.claim_key(field_name, current_tag, registry) <= self.claim_key(field_name, tag, registry):
                    result.kept.append(field_name)
                    continue
            draft[field_name] = value
            draft_sources[field_name] = tag
            result.applied.append(field_name)
        return result

    def merge_step(
        self,
        registry: StepRegistry,
        step: StepDefinition,
        draft: MutableMapping[str, Any],
        draft_sources: MutableMapping[str, str],
        patch: Mapping[str, Any],
    ) -> MergeResult:
        return self.merge(draft, draft_sources, patch, step.source, step=step, registry=registry)

    def map_step(self, step: StepDefinition, raw_output: Any, draft: Mapping[str, Any]) -> dict[str, Any]:
        """Run a step's pure mapping, normalising every failure to MappingError."""
        try:
            patch = step.mapper(raw_output, draft)
        except MappingError:
            raise
        except Exception as e:
            raise MappingError(
                f"Step '{step.name}' could not map provider output: {e}",
                {"step": step.name, "error_type": type(e).__name__},
            ) from e
        if patch is None:
            return {}
        if not isinstance(patch, Mapping):
            raise MappingError(f"Step '{step.name}' mapping returned {type(patch).__name__}, expected a mapping")
        return dict(patch)

    def rebuild(
        self,
        registry: StepRegistry,
        raw_outputs: Mapping[str, Any],
        states: Mapping[str, StepState],
    ) -> tuple[dict[str, Any], dict[str, str]]:
        """Recompute a draft from stored raw outputs, in registry order."""
        draft: dict[str, Any] = {}
        draft_sources: dict[str, str] = {}
        for step in registry:
            state = states.get(step.name)
            if state is None or state.status != StepStatus.COMPLETED or step.name not in raw_outputs:
                continue
            patch = self.map_step(step, raw_outputs[step.name], draft)
            self.merge_step(registry, step, draft, draft_sources, patch)
        logger.debug("draft_rebuilt", entity_type=registry.entity_type.value, fields=len(draft))
        return draft, draft_sources
