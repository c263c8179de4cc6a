"""Check which configured years actually have CMS data.

Samples tracked CPT codes and drugs over every confirmed and potential
year and prints per-year availability with a recommended year
configuration. Optionally probes a single entity in detail.

Usage:
    python -m scripts.verify_years [--probe-code CODE | --probe-drug NAME]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import structlog

from src.config.settings import Settings, get_settings
from src.data.competitor_registry import CompetitorRegistry
from src.data.source_diagnostics import probe_data_sources, verify_year_availability
from src.engine.result_cache import ResultCache
from src.engine.year_classifier import YearClassifier
from src.ingestion.fetcher import SourceFetcher
from src.models.reimbursement import DatasetType
from src.observability.logging import configure_logging


async def _run(settings: Settings, args: argparse.Namespace) -> dict:
    classifier = YearClassifier(settings.year_config())
    fetcher = SourceFetcher(
        cache=ResultCache(settings.CACHE_CAPACITY),
        classifier=classifier,
        settings=settings,
    )
    if args.probe_code or args.probe_drug:
        dataset_type = DatasetType.VOLUME_BY_CODE if args.probe_code else DatasetType.COST_BY_NAME
        entity_id = args.probe_code or args.probe_drug
        report = await probe_data_sources(fetcher, dataset_type, entity_id, classifier.real_data_years())
        return report.to_dict()
    availability = await verify_year_availability(fetcher, CompetitorRegistry(), classifier.config)
    return availability.to_dict()


def main(argv: list[str] | None = None) -> int:
    """Year verification entry point."""
    parser = argparse.ArgumentParser(description="Verify CMS data availability per year")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--probe-code", default=None, help="Probe one CPT code across years")
    group.add_argument("--probe-drug", default=None, help="Probe one drug brand name across years")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings)
    log = structlog.get_logger()
    log.info("verify_years_start", confirmed=settings.CONFIRMED_DATA_YEARS, potential=settings.POTENTIAL_DATA_YEARS)

    try:
        payload = asyncio.run(_run(settings, args))
    except ValueError as exc:
        log.error("verify_years_failed", error=str(exc))
        return 1

    print(json.dumps(payload, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
