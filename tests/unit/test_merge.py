"""
Unit tests for the source-priority merge policy.
"""

import itertools

import pytest

from listing_extractor.core.exceptions import MappingError
from listing_extractor.core.models import EntityType, Source, StepState, StepStatus
from listing_extractor.pipeline.merge import DataMapper
from listing_extractor.pipeline.registries import get_registry
from listing_extractor.pipeline.registry import StepDefinition, StepRegistry


@pytest.fixture
def mapper() -> DataMapper:
    return DataMapper()


class TestMerge:
    def test_rating_prefers_places_over_reviews_in_any_order(self, mapper):
        patches = [({"rating": 4.2}, Source.PLACES), ({"rating": 3.9}, Source.REVIEWS)]
        for order in itertools.permutations(patches):
            draft, sources = {}, {}
            for patch, source in order:
                mapper.merge(draft, sources, patch, source)
            assert draft["rating"] == 4.2
            assert sources["rating"] == "places"

    def test_equal_priority_keeps_existing_value(self, mapper):
        draft, sources = {}, {}
        mapper.merge(draft, sources, {"phone": "111"}, Source.PLACES)
        result = mapper.merge(draft, sources, {"phone": "222"}, Source.PLACES)
        assert draft["phone"] == "111"
        assert result.kept == ["phone"]

    def test_higher_priority_source_overwrites(self, mapper):
        draft, sources = {}, {}
        mapper.merge(draft, sources, {"description": "from places"}, Source.PLACES)
        result = mapper.merge(draft, sources, {"description": "from AI"}, Source.AI_ENHANCEMENT)
        assert draft["description"] == "from AI"
        assert sources["description"] == "ai_enhancement"
        assert result.applied == ["description"]

    def test_empty_values_never_written(self, mapper):
        draft, sources = {"email": "a@b.example"}, {"email": "web_search"}
        mapper.merge(draft, sources, {"email": None, "faqs": [], "phone": ""}, Source.AI_ENHANCEMENT)
        assert draft == {"email": "a@b.example"}

    def test_seed_name_wins_over_places(self, mapper):
        draft, sources = {}, {}
        mapper.merge(draft, sources, {"name": "Four Seasons Resort Goa"}, Source.PLACES)
        mapper.merge(draft, sources, {"name": "Four Seasons Goa"}, Source.SEED)
        assert draft["name"] == "Four Seasons Goa"

    def test_same_source_tie_goes_to_earlier_step_in_any_order(self, mapper):
        site = StepDefinition(
            name="site", display_name="Site", source=Source.WEB_SEARCH, mapper=lambda raw, draft: raw, required=True
        )
        web = StepDefinition(name="web", display_name="Web", source=Source.WEB_SEARCH, mapper=lambda raw, draft: raw)
        registry = StepRegistry(EntityType.SCHOOL, [site, web])
        patches = [(site, {"email": "site@x.example"}), (web, {"email": "web@x.example"})]
        for order in itertools.permutations(patches):
            draft, sources = {}, {}
            for step, patch in order:
                mapper.merge_step(registry, step, draft, sources, patch)
            assert draft["email"] == "site@x.example"
            assert sources["email"] == "web_search:site"

    def test_unlisted_source_ranks_last(self, mapper):
        assert mapper.rank("rating", Source.DERIVED) == len(mapper.priorities["rating"])
        assert mapper.rank("rating", Source.PLACES) == 0


class TestMapStep:
    def _step(self, fn) -> StepDefinition:
        return StepDefinition(name="x", display_name="X", source=Source.PLACES, mapper=fn)

    def test_mapper_exception_becomes_mapping_error(self, mapper):
        def broken(raw, draft):
            return raw["missing"]

        with pytest.raises(MappingError, match="could not map"):
            mapper.map_step(self._step(broken), {}, {})

    def test_non_mapping_patch_rejected(self, mapper):
        with pytest.raises(MappingError):
            mapper.map_step(self._step(lambda raw, draft: ["nope"]), {}, {})

    def test_none_patch_is_empty(self, mapper):
        assert mapper.map_step(self._step(lambda raw, draft: None), {}, {}) == {}


class TestRebuild:
    def test_rebuild_uses_completed_steps_only(self, mapper):
        registry = get_registry("restaurant")
        raw_outputs = {
            "seed_record": {"name": "Bomra's", "place_id": "P1"},
            "places_details": {"results": [{"title": "Bomras", "totalScore": 4.4, "city": "Candolim"}]},
            "places_reviews": {"reviews": [], "rating": 3.0},
        }
        states = {
            "seed_record": StepState(status=StepStatus.COMPLETED),
            "places_details": StepState(status=StepStatus.COMPLETED),
            "places_reviews": StepState(status=StepStatus.SKIPPED),
        }

        draft, sources = mapper.rebuild(registry, raw_outputs, states)

        assert draft["name"] == "Bomra's"
        assert draft["rating"] == 4.4
        assert draft["neighborhood_id"] == "candolim"
        assert sources["rating"] == "places:places_details"
