"""
Bulk Driver: run extractions for every row of a CSV file.

Rows are processed one after another with a fixed delay in between, as a
coarse safeguard for provider quotas on top of the per-provider limiter.
Each row ends as one of: success, failed_seed_lookup, failed_extraction,
duplicate.

Usage:
    listing-extract-bulk schools.csv --entity-type school --limit 5
    listing-extract-bulk hotels.csv --entity-type hotel --delay 3 --json
"""

import argparse
import asyncio
import csv
import io
import re
import sys
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

import structlog

from listing_extractor.core.config import settings
from listing_extractor.core.exceptions import AlreadyExists, ExtractionError, MappingError, ProviderError
from listing_extractor.core.logging import configure_logging
from listing_extractor.core.models import BulkOutcome, BulkRowResult, BulkSummary, EntityType, JobStatus
from listing_extractor.pipeline.mappers import place_id_from_search
from listing_extractor.pipeline.registries import get_registry
from listing_extractor.pipeline.runner import PipelineRunner
from listing_extractor.pipeline.store import JobStore
from listing_extractor.providers.base import ProviderClient
from listing_extractor.service import entity_key_for

logger = structlog.get_logger()

NAME_COLUMNS = ("name", "Name", "title")
PLACE_ID_COLUMNS = ("place_id", "placeId", "google_place_id", "Google Place ID")
AREA_COLUMNS = ("area", "Area", "Governorate", "governorate", "city", "City")

_KEY_RE = re.compile(r"[^a-z0-9]+")


def _seed_key(column: str) -> str:
    """'Google Place ID' -> 'google_place_id'"""
    return _KEY_RE.sub("_", column.strip().lower()).strip("_")


def _pick(row: Mapping[str, str], columns: Iterable[str]) -> str | None:
    for column in columns:
        value = (row.get(column) or "").strip()
        if value:
            return value
    return None


def read_rows(path: Path) -> list[dict[str, str]]:
    """CSV rows with stripped headers and values (BOM tolerant)."""
    text = path.read_text(encoding="utf-8-sig")
    reader = csv.DictReader(io.StringIO(text))
    rows = []
    for row in reader:
        cleaned = {k.strip(): (v or "").strip() for k, v in row.items() if k}
        if any(cleaned.values()):
            rows.append(cleaned)
    return rows


def row_name(row: Mapping[str, str], entity_type: EntityType) -> str | None:
    """Name from `name`/`Name`, or the '<Type> Name' column (e.g. 'School Name')."""
    return _pick(row, (*NAME_COLUMNS, f"{entity_type.value.title()} Name"))


def row_to_seed(row: Mapping[str, str], name: str, place_id: str | None) -> dict[str, Any]:
    """Arbitrary CSV columns become snake_case seed attributes."""
    seed: dict[str, Any] = {_seed_key(k): v for k, v in row.items() if v}
    seed["name"] = name
    area = _pick(row, AREA_COLUMNS)
    if area:
        seed["area"] = area
    seed.pop("google_place_id", None)
    if place_id:
        seed["place_id"] = place_id
    return seed


class BulkDriver:
    """Creates and runs one job per seed row, sequentially."""

    def __init__(
        self,
        store: JobStore,
        runner: PipelineRunner,
        place_search: ProviderClient | None = None,
        delay: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.runner = runner
        self.place_search = place_search
        self.delay = settings.bulk_row_delay_seconds if delay is None else delay
        self.sleep = sleep

    async def run(
        self,
        rows: list[Mapping[str, str]],
        entity_type: EntityType | str,
        limit: int | None = None,
    ) -> BulkSummary:
        entity_type = EntityType(entity_type)
        if limit is not None:
            rows = rows[:limit]

        log = logger.bind(entity_type=entity_type.value, rows=len(rows))
        log.info("Bulk extraction started", delay=self.delay)

        results: list[BulkRowResult] = []
        for index, row in enumerate(rows, 1):
            if index > 1 and self.delay > 0:
                await self.sleep(self.delay)
            result = await self.process_row(row, entity_type)
            log.info(
                f"Row {index}/{len(rows)} finished",
                name=result.name,
                outcome=result.outcome.value,
                duration=round(result.duration_seconds, 2),
            )
            results.append(result)

        summary = summarize(results)
        log.info("Bulk extraction finished", counts=summary.counts, failures=len(summary.failures))
        return summary

    async def process_row(self, row: Mapping[str, str], entity_type: EntityType) -> BulkRowResult:
        started = time.monotonic()
        name = row_name(row, entity_type) or ""

        def result(outcome: BulkOutcome, job_id: str | None = None, error: str | None = None) -> BulkRowResult:
            return BulkRowResult(
                name=name,
                outcome=outcome,
                job_id=job_id,
                error=error,
                duration_seconds=time.monotonic() - started,
            )

        if not name:
            return result(BulkOutcome.FAILED_SEED_LOOKUP, error="Row has no name column")

        place_id = _pick(row, PLACE_ID_COLUMNS)
        if not place_id:
            try:
                place_id = await self.lookup_place_id(name, _pick(row, AREA_COLUMNS))
            except (ProviderError, MappingError) as e:
                return result(BulkOutcome.FAILED_SEED_LOOKUP, error=str(e))
            if not place_id:
                return result(BulkOutcome.FAILED_SEED_LOOKUP, error="No place id found")

        seed = row_to_seed(row, name, place_id)
        entity_key = entity_key_for(seed)
        existing = await self.store.find_by_entity(entity_type, entity_key)
        if existing is not None:
            return result(BulkOutcome.DUPLICATE, job_id=existing.id, error=f"Job {existing.id} already exists")

        registry = get_registry(entity_type)
        try:
            record = await self.store.create(entity_type, entity_key, seed, registry.names)
        except AlreadyExists as e:
            return result(BulkOutcome.DUPLICATE, job_id=e.job_id, error=str(e))
        try:
            record = await self.runner.execute_extraction(record.id)
        except ExtractionError as e:
            return result(BulkOutcome.FAILED_EXTRACTION, job_id=record.id, error=str(e))

        if record.status == JobStatus.COMPLETED:
            return result(BulkOutcome.SUCCESS, job_id=record.id)
        return result(BulkOutcome.FAILED_EXTRACTION, job_id=record.id, error=record.error_message)

    async def lookup_place_id(self, name: str, area: str | None = None) -> str | None:
        """Ask the places search provider for the best match."""
        if self.place_search is None:
            raise ProviderError("No place id in row and no places search provider configured")
        query = ", ".join(part for part in (name, area) if part)
        raw = await self.place_search.fetch({"query": query})
        return place_id_from_search(raw)


def summarize(results: list[BulkRowResult]) -> BulkSummary:
    counts = Counter(r.outcome.value for r in results)
    total_duration = sum(r.duration_seconds for r in results)
    return BulkSummary(
        total=len(results),
        counts=dict(counts),
        total_duration_seconds=round(total_duration, 3),
        average_duration_seconds=round(total_duration / len(results), 3) if results else 0.0,
        failures=[r for r in results if r.outcome != BulkOutcome.SUCCESS],
        results=results,
    )


def print_summary(summary: BulkSummary) -> None:
    print("=" * 60)
    print("Bulk extraction summary")
    print("=" * 60)
    print(f"Total rows:       {summary.total}")
    for outcome in BulkOutcome:
        print(f"  {outcome.value:<18}{summary.counts.get(outcome.value, 0)}")
    print(f"Total duration:   {summary.total_duration_seconds:.1f}s")
    print(f"Average duration: {summary.average_duration_seconds:.1f}s")
    if summary.failures:
        print("\nFailures:")
        for failure in summary.failures:
            print(f"  - {failure.name or '<unnamed>'} [{failure.outcome.value}]: {failure.error}")


async def _run(args: argparse.Namespace) -> BulkSummary:
    from listing_extractor.db import close_db, init_db
    from listing_extractor.providers.http import build_http_client, build_http_providers

    await init_db()
    async with build_http_client(settings) as client:
        providers = build_http_providers(settings, client)
        store = JobStore()
        driver = BulkDriver(
            store,
            PipelineRunner(store, providers),
            place_search=providers.get("places_search"),
            delay=args.delay,
        )
        try:
            return await driver.run(read_rows(args.file), args.entity_type, limit=args.limit)
        finally:
            await close_db()


def main() -> int:
    parser = argparse.ArgumentParser(description="Run extractions for every row of a CSV file")
    parser.add_argument("file", type=Path, help="CSV file, one entity per row")
    parser.add_argument(
        "--entity-type",
        required=True,
        choices=[e.value for e in EntityType],
        help="Entity type of every row",
    )
    parser.add_argument("--limit", type=int, default=None, help="Only process the first N rows")
    parser.add_argument(
        "--delay",
        type=float,
        default=None,
        help=f"Seconds between rows (default: {settings.bulk_row_delay_seconds})",
    )
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON")
    args = parser.parse_args()

    if not args.file.exists():
        print(f"Error: File not found: {args.file}")
        return 1

    configure_logging(json_logs=settings.log_json, log_level=settings.log_level)
    summary = asyncio.run(_run(args))

    if args.json:
        print(summary.model_dump_json(indent=2))
    else:
        print_summary(summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
