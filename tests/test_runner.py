"""
Pipeline runner scenarios against scripted providers and a real SQLite store.
"""

import asyncio

import pytest

from listing_extractor.core.exceptions import MappingError, NotFound, ProviderUnavailable, RateLimited
from listing_extractor.core.models import EntityType, JobStatus, Source, StepStatus
from listing_extractor.pipeline.merge import DataMapper
from listing_extractor.pipeline.progress import ProgressReporter, progress_percentage
from listing_extractor.pipeline.rate_limiter import ProviderRateLimiter
from listing_extractor.pipeline.registries import get_registry
from listing_extractor.pipeline.registry import StepDefinition, StepRegistry, chain
from listing_extractor.pipeline.retry import RetryPolicy
from listing_extractor.pipeline.runner import PipelineRunner
from tests.fakes import FakeProvider, WEBSITE, hotel_payloads, make_providers, total_calls

pytestmark = pytest.mark.asyncio

HOTEL_SEED = {"name": "Four Seasons Goa", "placeId": "X"}
FAST_RETRY = RetryPolicy(max_attempts=3, backoff_base=0.01, jitter=0)


async def _hotel_job(store):
    return await store.create(EntityType.HOTEL, "X", HOTEL_SEED, get_registry("hotel").names)


def _passthrough(raw, draft):
    return dict(raw)


def _step(name, source=Source.PLACES, required=False, depends_on=None, provider=None):
    return StepDefinition(
        name=name,
        display_name=name,
        source=source,
        mapper=_passthrough,
        provider=provider or name,
        required=required,
        depends_on=frozenset(depends_on or ()),
        retry=FAST_RETRY,
    )


def _runner(store, providers, registry, sleep, **kwargs):
    return PipelineRunner(
        store,
        providers,
        rate_limiter=ProviderRateLimiter(default_limit=4),
        registry_lookup=lambda entity_type: registry,
        sleep=sleep,
        **kwargs,
    )


class TestHotelEndToEnd:
    async def test_thirteen_steps_complete(self, store, runner, providers):
        job = await _hotel_job(store)

        record = await runner.execute_extraction(job.id)
        status = await ProgressReporter(store).get_status(job.id)

        assert record.status == JobStatus.COMPLETED
        assert status.status == JobStatus.COMPLETED
        assert status.progress_percentage == 100
        assert status.draft["name"] == "Four Seasons Goa"
        assert len(status.steps) == 13
        assert all(step.status == StepStatus.COMPLETED for step in status.steps)
        assert all(step.started_at and step.completed_at for step in status.steps)

    async def test_draft_merges_every_source(self, store, runner):
        job = await _hotel_job(store)
        record = await runner.execute_extraction(job.id)
        draft, sources = record.draft, record.draft_sources

        assert draft["google_place_id"] == "X"
        assert draft["neighborhood_id"] == "candolim"
        assert draft["price_level"] == 4
        assert draft["rating"] == 4.6  # places beats the reviews scrape
        assert sources["rating"] == "places:places_details"
        assert draft["description"] == "A beachfront resort in Candolim."
        assert sources["description"] == "ai_enhancement:ai_enhancement"
        assert draft["instagram"] == "https://www.instagram.com/fsgoa"
        assert draft["star_rating"] == 5
        assert draft["room_types"][0]["name"] == "Deluxe Sea View"
        assert draft["tripadvisor_rating"] == 4.5
        assert draft["hero_image"] == "https://img.example/hero.jpg"
        assert draft["score_label"] in {"Exceptional", "Excellent"}

    async def test_raw_outputs_kept_per_step(self, store, runner):
        job = await _hotel_job(store)
        await runner.execute_extraction(job.id)
        stored = await store.require(job.id)

        assert set(stored.raw_outputs) == set(get_registry("hotel").names)
        assert stored.raw_outputs["website_scrape"] == WEBSITE
        # Local steps keep their own input as raw output
        assert stored.raw_outputs["seed_record"] == HOTEL_SEED

    async def test_wide_event_emitted_once(self, store, runner, monkeypatch):
        emitted = []
        monkeypatch.setattr(
            "listing_extractor.pipeline.runner.emit_job_event",
            lambda outcome, error=None: emitted.append(outcome),
        )
        job = await _hotel_job(store)
        await runner.execute_extraction(job.id)
        assert emitted == ["completed"]


class TestIdempotence:
    async def test_rerun_of_completed_job_makes_no_provider_calls(self, store, runner, providers):
        job = await _hotel_job(store)
        first = await runner.execute_extraction(job.id)
        calls = total_calls(providers)

        second = await runner.execute_extraction(job.id)

        assert total_calls(providers) == calls
        assert second.status == JobStatus.COMPLETED
        assert second.draft == first.draft
        assert second.raw_outputs == first.raw_outputs

    async def test_override_resets_and_refetches(self, store, runner, providers):
        job = await _hotel_job(store)
        await runner.execute_extraction(job.id)
        places_calls = len(providers["places_search"].calls)

        record = await runner.execute_extraction(job.id, override=True)

        assert record.status == JobStatus.COMPLETED
        assert len(providers["places_search"].calls) == places_calls + 1
        assert set(record.raw_outputs) == set(get_registry("hotel").names)


class TestFailures:
    @pytest.fixture
    def eight_steps(self) -> StepRegistry:
        steps = [_step(f"s{i}", required=i in (1, 3, 8)) for i in range(1, 9)]
        return StepRegistry(EntityType.RESTAURANT, chain(*steps))

    async def test_required_step_exhaustion_preserves_earlier_steps(self, store, sleep, eight_steps):
        providers = {f"s{i}": FakeProvider(f"s{i}", default={f"field_{i}": i}) for i in range(1, 9)}
        providers["s3"].default = ProviderUnavailable("timeout", provider="s3")
        runner = _runner(store, providers, eight_steps, sleep)
        job = await store.create(EntityType.RESTAURANT, "r1", {"name": "R"}, eight_steps.names)

        record = await runner.execute_extraction(job.id)
        status = ProgressReporter(store, registry_lookup=lambda et: eight_steps).snapshot(
            await store.require(job.id)
        )

        assert record.status == JobStatus.FAILED
        assert "s3" in record.error_message
        assert len(providers["s3"].calls) == FAST_RETRY.max_attempts
        assert sleep.delays == FAST_RETRY.schedule()
        assert status.draft == {"field_1": 1, "field_2": 2}
        by_name = {step.name: step for step in status.steps}
        assert by_name["s1"].status == by_name["s2"].status == StepStatus.COMPLETED
        assert by_name["s3"].status == StepStatus.FAILED
        assert by_name["s3"].error == "timeout"
        assert all(by_name[f"s{i}"].status == StepStatus.PENDING for i in range(4, 9))
        assert not providers["s4"].calls

    async def test_optional_not_found_is_skipped_without_retry(self, store, runner, providers):
        providers["tripadvisor"].default = NotFound("no listing", provider="tripadvisor")
        job = await _hotel_job(store)

        record = await runner.execute_extraction(job.id)

        assert record.status == JobStatus.COMPLETED
        assert record.steps["tripadvisor"].status == StepStatus.SKIPPED
        assert record.steps["tripadvisor"].error == "no listing"
        assert len(providers["tripadvisor"].calls) == 1
        # Later steps still ran
        assert record.steps["booking_com"].status == StepStatus.COMPLETED

    async def test_rate_limit_honours_retry_after(self, store, runner, providers, sleep):
        providers["places_search"].script = [RateLimited("slow down", provider="places_search", retry_after=5)]
        job = await _hotel_job(store)

        record = await runner.execute_extraction(job.id)

        assert record.status == JobStatus.COMPLETED
        assert record.steps["places_details"].attempts == 2
        assert len(sleep.delays) == 1
        assert 4.5 <= sleep.delays[0] <= 5.5

    async def test_mapping_error_keeps_raw_output(self, store, runner, providers):
        providers["web_search"].default = lambda payload: "<html>" if "url" in payload else {"results": []}
        job = await _hotel_job(store)

        record = await runner.execute_extraction(job.id)

        assert record.status == JobStatus.COMPLETED
        assert record.steps["website_scrape"].status == StepStatus.SKIPPED
        assert "website scrape" in record.steps["website_scrape"].error
        assert (await store.require(job.id)).raw_outputs["website_scrape"] == "<html>"

    async def test_mapping_error_is_not_retried(self, store, runner, providers):
        providers["ai_enhancement"].default = ["not", "an", "object"]
        job = await _hotel_job(store)

        record = await runner.execute_extraction(job.id)

        assert record.status == JobStatus.FAILED
        assert len(providers["ai_enhancement"].calls) == 1
        assert record.steps["ai_enhancement"].status == StepStatus.FAILED
        assert record.steps["data_mapping"].status == StepStatus.PENDING

    async def test_unexpected_provider_exception_stays_in_step(self, store, runner, providers):
        providers["social_search"].default = RuntimeError("boom")
        job = await _hotel_job(store)

        record = await runner.execute_extraction(job.id)

        assert record.status == JobStatus.COMPLETED
        assert len(providers["social_search"].calls) == 1
        assert "RuntimeError" in record.steps["social_search"].error

    async def test_missing_provider_client(self, store, sleep):
        payloads = hotel_payloads()
        del payloads["room_search"]
        providers = make_providers(payloads)
        runner = PipelineRunner(store, providers, sleep=sleep)
        job = await _hotel_job(store)

        record = await runner.execute_extraction(job.id)

        assert record.status == JobStatus.COMPLETED
        assert record.steps["room_search"].status == StepStatus.SKIPPED
        assert "room_search" in record.steps["room_search"].error

    async def test_step_without_input_is_skipped(self, store, runner, providers):
        place = dict(hotel_payloads()["places_search"]["results"][0], website=None)
        providers["places_search"].default = {"results": [place]}
        job = await _hotel_job(store)

        record = await runner.execute_extraction(job.id)

        assert record.status == JobStatus.COMPLETED
        assert record.steps["website_scrape"].status == StepStatus.SKIPPED
        assert record.steps["website_scrape"].error is None
        assert not [call for call in providers["web_search"].calls if "url" in call]

    async def test_required_step_without_input_fails(self, store, sleep):
        registry = StepRegistry(
            EntityType.MALL,
            [
                StepDefinition(
                    name="lookup",
                    display_name="Lookup",
                    source=Source.PLACES,
                    mapper=_passthrough,
                    provider="lookup",
                    build_input=lambda seed, draft, raw: None,
                    required=True,
                )
            ],
        )
        provider = FakeProvider("lookup", default={})
        runner = _runner(store, {"lookup": provider}, registry, sleep)
        job = await store.create(EntityType.MALL, "m1", {"name": "Mall"}, registry.names)

        record = await runner.execute_extraction(job.id)

        assert record.status == JobStatus.FAILED
        assert record.steps["lookup"].error == "No input available for this step"
        assert not provider.calls


class TestResume:
    async def test_resume_reruns_only_unfinished_steps(self, store, runner, providers):
        providers["ai_enhancement"].script = [NotFound("model refused", provider="ai_enhancement")]
        providers["booking_com"].script = [NotFound("no listing", provider="booking_com")]
        job = await _hotel_job(store)

        failed = await runner.execute_extraction(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.steps["booking_com"].status == StepStatus.SKIPPED
        completed_before = {
            name: state.completed_at for name, state in failed.steps.items() if state.status == StepStatus.COMPLETED
        }
        places_calls = len(providers["places_search"].calls)

        resumed = await runner.execute_extraction(job.id)

        assert resumed.status == JobStatus.COMPLETED
        assert resumed.error_message is None
        assert len(providers["places_search"].calls) == places_calls
        assert len(providers["booking_com"].calls) == 2
        assert len(providers["ai_enhancement"].calls) == 2
        for name, completed_at in completed_before.items():
            assert resumed.steps[name].completed_at == completed_at

    async def test_running_leftovers_are_reopened(self, store, runner, providers):
        job = await _hotel_job(store)
        # Simulate a crashed worker mid-step
        job.status = JobStatus.PROCESSING
        job.steps["seed_record"].status = StepStatus.RUNNING
        await store.save(job)

        record = await runner.execute_extraction(job.id)

        assert record.status == JobStatus.COMPLETED
        assert record.steps["seed_record"].status == StepStatus.COMPLETED


class TestCancellation:
    async def test_cancel_stops_at_step_boundary(self, store, runner, providers):
        gate = asyncio.Event()
        providers["places_search"].gate = gate
        job = await _hotel_job(store)

        task = asyncio.create_task(runner.execute_extraction(job.id))
        while not providers["places_search"].calls:
            await asyncio.sleep(0.01)
        await store.request_cancel(job.id)
        gate.set()
        record = await task

        # The in-flight step finished; nothing after it started
        assert record.status == JobStatus.PROCESSING
        assert record.steps["places_details"].status == StepStatus.COMPLETED
        assert record.steps["web_general"].status == StepStatus.PENDING
        assert await store.is_cancel_requested(job.id)

        providers["places_search"].gate = None
        resumed = await runner.execute_extraction(job.id)
        assert resumed.status == JobStatus.COMPLETED
        assert len(providers["places_search"].calls) == 1
        assert not await store.is_cancel_requested(job.id)


class TestParallelBranches:
    @pytest.fixture
    def fan_out(self) -> StepRegistry:
        return StepRegistry(
            EntityType.HOTEL,
            [
                _step("seed", source=Source.SEED, required=True),
                _step("places", source=Source.PLACES, depends_on={"seed"}),
                _step("reviews", source=Source.REVIEWS, depends_on={"seed"}),
                _step("final", source=Source.DERIVED, required=True, depends_on={"places", "reviews"}),
            ],
        )

    def _providers(self):
        return {
            "seed": FakeProvider("seed", default={"name": "Fan Out Hotel"}),
            "places": FakeProvider("places", default={"rating": 4.2}),
            "reviews": FakeProvider("reviews", default={"rating": 3.9}),
            "final": FakeProvider("final", default={"done": True}),
        }

    async def test_merge_precedence_independent_of_finish_order(self, store, sleep, fan_out):
        for slow in ("places", "reviews"):
            providers = self._providers()
            gate = asyncio.Event()
            providers[slow].gate = gate
            runner = _runner(store, providers, fan_out, sleep, step_concurrency=3)
            job = await store.create(EntityType.HOTEL, f"fan-{slow}", {"name": "F"}, fan_out.names)

            task = asyncio.create_task(runner.execute_extraction(job.id))
            fast = "reviews" if slow == "places" else "places"
            while (await store.require(job.id)).steps[fast].status != StepStatus.COMPLETED:
                await asyncio.sleep(0.01)
            # Both branches were in flight at once
            assert providers[slow].calls
            gate.set()
            record = await task

            assert record.status == JobStatus.COMPLETED
            assert record.draft["rating"] == 4.2
            assert record.draft_sources["rating"] == "places:places"

    async def test_same_source_branches_match_rebuild_in_any_order(self, store, sleep):
        registry = StepRegistry(
            EntityType.SCHOOL,
            [
                _step("seed", source=Source.SEED, required=True),
                _step("site", source=Source.WEB_SEARCH, depends_on={"seed"}),
                _step("web", source=Source.WEB_SEARCH, depends_on={"seed"}),
            ],
        )
        for slow in ("site", "web"):
            providers = {
                "seed": FakeProvider("seed", default={"name": "Sunrise School"}),
                "site": FakeProvider("site", default={"email": "site@x"}),
                "web": FakeProvider("web", default={"email": "web@x"}),
            }
            gate = asyncio.Event()
            providers[slow].gate = gate
            runner = _runner(store, providers, registry, sleep, step_concurrency=3)
            job = await store.create(EntityType.SCHOOL, f"same-{slow}", {"name": "S"}, registry.names)

            task = asyncio.create_task(runner.execute_extraction(job.id))
            fast = "web" if slow == "site" else "site"
            while (await store.require(job.id)).steps[fast].status != StepStatus.COMPLETED:
                await asyncio.sleep(0.01)
            gate.set()
            record = await task

            draft, sources = DataMapper().rebuild(registry, record.raw_outputs, record.steps)
            # The step declared first wins regardless of which finished first
            assert record.draft["email"] == "site@x"
            assert record.draft_sources["email"] == "web_search:site"
            assert (record.draft, record.draft_sources) == (draft, sources)

    async def test_dependent_waits_for_every_branch(self, store, sleep, fan_out):
        providers = self._providers()
        gate = asyncio.Event()
        providers["reviews"].gate = gate
        runner = _runner(store, providers, fan_out, sleep)
        job = await store.create(EntityType.HOTEL, "fan-wait", {"name": "F"}, fan_out.names)

        task = asyncio.create_task(runner.execute_extraction(job.id))
        while (await store.require(job.id)).steps["places"].status != StepStatus.COMPLETED:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        assert not providers["final"].calls
        gate.set()
        await task
        assert len(providers["final"].calls) == 1

    async def test_step_concurrency_limit(self, store, sleep, fan_out):
        providers = self._providers()
        in_flight = 0
        peak = 0

        class Tracking(FakeProvider):
            async def fetch(self, payload):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.02)
                in_flight -= 1
                return await super().fetch(payload)

        providers["places"] = Tracking("places", default={"rating": 4.2})
        providers["reviews"] = Tracking("reviews", default={"rating": 3.9})
        runner = _runner(store, providers, fan_out, sleep, step_concurrency=1)
        job = await store.create(EntityType.HOTEL, "fan-serial", {"name": "F"}, fan_out.names)

        record = await runner.execute_extraction(job.id)

        assert record.status == JobStatus.COMPLETED
        assert peak == 1


class TestProgress:
    async def test_progress_never_decreases_while_processing(self, store, runner, providers, monkeypatch):
        registry = get_registry("hotel")
        seen: list[tuple[JobStatus, int]] = []
        original_save = store.save

        async def recording_save(record):
            seen.append((record.status, progress_percentage(record, registry)))
            return await original_save(record)

        monkeypatch.setattr(store, "save", recording_save)
        providers["ai_sentiment"].default = MappingError("unused")  # optional failure along the way
        job = await _hotel_job(store)

        await runner.execute_extraction(job.id)

        processing = [pct for status, pct in seen if status == JobStatus.PROCESSING]
        assert processing == sorted(processing)
        assert seen[-1] == (JobStatus.COMPLETED, 100)

    async def test_current_step_is_the_running_one(self, store, runner, providers):
        gate = asyncio.Event()
        providers["room_search"].gate = gate
        job = await _hotel_job(store)
        reporter = ProgressReporter(store)

        task = asyncio.create_task(runner.execute_extraction(job.id))
        while not providers["room_search"].calls:
            await asyncio.sleep(0.01)
        status = await reporter.get_status(job.id)
        gate.set()
        await task

        assert status.status == JobStatus.PROCESSING
        assert status.current_step == "room_search"
        assert status.progress_percentage == 50  # seed + places of 4 required steps
        assert status.draft["name"] == "Four Seasons Goa"
