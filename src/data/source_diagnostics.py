"""Data-source diagnostics — what the CMS APIs actually return per year.

Two read-only checks used when deciding the year configuration:

- ``probe_data_sources``: fetch one entity across years and summarize each
  fetch (provenance, counts, field mapping, a sample record, aggregates),
  flagging identical totals across real years.
- ``verify_year_availability``: sample a few tracked entities over every
  real-data year and recommend which years to treat as confirmed, potential
  or simulated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from src.data.competitor_registry import CompetitorRegistry
from src.engine.metrics import MetricsAggregator, identical_totals_warning, trend_label, trend_value
from src.ingestion.fetcher import SourceFetcher
from src.ingestion.schemas import get_schema
from src.models.common import utc_now
from src.models.reimbursement import (
    REAL_DATA_SOURCES,
    DatasetType,
    DataSourceType,
    FetchResult,
    YearConfig,
)

logger = logging.getLogger(__name__)

SAMPLE_CPT_CODES = 3
SAMPLE_DRUGS = 2


@dataclass
class YearProbe:
    """Summary of one year's fetch for one entity."""

    year: int
    data_source_type: str
    outcome: str | None
    record_count: int
    request_count: int
    success_count: int
    warnings: list[str]
    field_mapping: dict[str, str | None]
    sample_record: dict[str, Any] | None
    total_volume: float
    total_cost: float

    @classmethod
    def from_result(cls, result: FetchResult, aggregator: MetricsAggregator) -> "YearProbe":
        meta = result.metadata
        metrics = aggregator.aggregate(result.records, meta.dataset_type)
        sample = result.records[0].model_dump() if result.records else None
        return cls(
            year=meta.year,
            data_source_type=meta.data_source_type.value,
            outcome=meta.outcome.value if meta.outcome else None,
            record_count=len(result.records),
            request_count=meta.request_count,
            success_count=meta.success_count,
            warnings=list(meta.warnings),
            field_mapping=dict(meta.field_mapping),
            sample_record=sample,
            total_volume=metrics.total_volume,
            total_cost=metrics.total_cost,
        )


@dataclass
class SourceProbeReport:
    """Per-year probes for one entity plus cross-year findings."""

    dataset_type: DatasetType
    entity_id: str
    timestamp: str
    years: dict[int, YearProbe] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def duplicate_data_suspected(self) -> bool:
        return any(w.startswith("Suspicious data pattern") for w in self.warnings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "datasetType": self.dataset_type.value,
            "entityId": self.entity_id,
            "timestamp": self.timestamp,
            "years": {
                str(year): {
                    "dataSourceType": p.data_source_type,
                    "outcome": p.outcome,
                    "recordCount": p.record_count,
                    "requestCount": p.request_count,
                    "successCount": p.success_count,
                    "warnings": p.warnings,
                    "fieldMapping": p.field_mapping,
                    "sampleRecord": p.sample_record,
                    "totalVolume": p.total_volume,
                    "totalCost": p.total_cost,
                }
                for year, p in sorted(self.years.items())
            },
            "warnings": list(self.warnings),
            "duplicateDataSuspected": self.duplicate_data_suspected,
        }


async def probe_data_sources(
    fetcher: SourceFetcher,
    dataset_type: DatasetType | str,
    entity_id: str,
    years: list[int],
) -> SourceProbeReport:
    """Fetch ``entity_id`` for each year and summarize what came back.

    Raises:
        ValueError: If the dataset type is unknown.
    """
    schema = get_schema(dataset_type)
    aggregator = MetricsAggregator()
    report = SourceProbeReport(
        dataset_type=schema.dataset_type,
        entity_id=entity_id,
        timestamp=utc_now().isoformat(),
    )

    for year in sorted(set(years)):
        result = await fetcher.fetch(schema.dataset_type, entity_id, year)
        report.years[year] = YearProbe.from_result(result, aggregator)
        logger.info(
            "Probe %s %s, %d: %d records (%s)",
            schema.label, entity_id, year, len(result.records), result.metadata.outcome,
        )

    real_totals = {
        year: trend_value(schema.dataset_type, probe.total_volume, probe.total_cost)
        for year, probe in report.years.items()
        if probe.record_count and DataSourceType(probe.data_source_type) in REAL_DATA_SOURCES
    }
    duplicate = identical_totals_warning(real_totals, trend_label(schema.dataset_type))
    if duplicate:
        logger.warning("%s", duplicate)
        report.warnings.append(duplicate)
    return report


@dataclass
class YearAvailability:
    """How many sampled entities had real data in one year."""

    year: int
    available: list[str] = field(default_factory=list)
    unavailable: list[str] = field(default_factory=list)

    @property
    def sampled(self) -> int:
        return len(self.available) + len(self.unavailable)

    @property
    def status(self) -> str:
        """All sampled available: confirmed. Some: potential. None: simulation."""
        if self.sampled and not self.unavailable:
            return "confirmed"
        if self.available:
            return "potential"
        return "simulation"


@dataclass
class YearAvailabilityReport:
    """Availability per year and the year configuration it suggests."""

    timestamp: str
    years: dict[int, YearAvailability] = field(default_factory=dict)

    def recommended_config(self) -> dict[str, list[int]]:
        recommendation: dict[str, list[int]] = {"confirmed": [], "potential": [], "simulation": []}
        for year in sorted(self.years):
            recommendation[self.years[year].status].append(year)
        return recommendation

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "years": {
                str(year): {
                    "status": a.status,
                    "available": list(a.available),
                    "unavailable": list(a.unavailable),
                }
                for year, a in sorted(self.years.items())
            },
            "recommendedConfig": self.recommended_config(),
        }


async def verify_year_availability(
    fetcher: SourceFetcher,
    registry: CompetitorRegistry | None = None,
    year_config: YearConfig | None = None,
) -> YearAvailabilityReport:
    """Sample tracked CPT codes and drugs over every real-data year.

    An entity counts as available for a year when the fetch returned records.
    """
    registry = registry or CompetitorRegistry()
    year_config = year_config or fetcher.classifier.config
    years = sorted(year_config.confirmed_years | year_config.potential_years)

    samples: list[tuple[DatasetType, str]] = [
        (DatasetType.VOLUME_BY_CODE, code)
        for code in registry.peer_entities(DatasetType.VOLUME_BY_CODE)[:SAMPLE_CPT_CODES]
    ]
    samples += [
        (DatasetType.COST_BY_NAME, drug)
        for drug in registry.peer_entities(DatasetType.COST_BY_NAME)[:SAMPLE_DRUGS]
    ]

    report = YearAvailabilityReport(timestamp=utc_now().isoformat())
    for year in years:
        availability = YearAvailability(year=year)
        for dataset_type, entity_id in samples:
            result = await fetcher.fetch(dataset_type, entity_id, year)
            if result.records:
                availability.available.append(entity_id)
            else:
                availability.unavailable.append(entity_id)
        logger.info(
            "Year %d: %d/%d sampled entities available (%s)",
            year, len(availability.available), availability.sampled, availability.status,
        )
        report.years[year] = availability
    return report
