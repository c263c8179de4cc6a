"""YearDataResolver — real data when it exists, a projection when it does not.

For a requested year the resolver asks the SourceFetcher first. Without
real data it walks the confirmed years preceding the target, newest first,
and projects the nearest one that has records. When no preceding year has
data the result is MISSING, the only terminal no-data state.

Records are never mutated after retrieval; only the metadata of the
returned result is rebuilt so accumulated warnings reach the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from src.data.competitor_registry import CompetitorRegistry
from src.engine.simulator import Simulator
from src.ingestion.fetcher import SourceFetcher
from src.ingestion.schemas import get_schema
from src.models.reimbursement import (
    DatasetType,
    DataSourceType,
    FetchMetadata,
    FetchResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolveRequest:
    """One (dataset type, entity, year) to resolve."""

    dataset_type: DatasetType
    entity_id: str
    year: int
    growth_override: float | None = None


def _merge_warnings(*groups: tuple[str, ...]) -> tuple[str, ...]:
    merged: dict[str, None] = {}
    for group in groups:
        for warning in group:
            merged.setdefault(warning, None)
    return tuple(merged)


class YearDataResolver:
    """Decides per year whether to serve fetched or simulated data."""

    def __init__(
        self,
        *,
        fetcher: SourceFetcher,
        simulator: Simulator,
        registry: CompetitorRegistry | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._simulator = simulator
        self._classifier = fetcher.classifier
        self._registry = registry or CompetitorRegistry()

    @property
    def fetcher(self) -> SourceFetcher:
        return self._fetcher

    async def resolve(
        self,
        dataset_type: DatasetType | str,
        entity_id: str,
        year: int,
        growth_override: float | None = None,
    ) -> FetchResult:
        """Resolve one year to fetched, simulated, invalid or missing data.

        Raises:
            ValueError: If the dataset type is unknown.
        """
        schema = get_schema(dataset_type)
        dataset_type = schema.dataset_type

        fetched = await self._fetcher.fetch(dataset_type, entity_id, year)
        if fetched.has_real_data:
            return fetched
        if fetched.metadata.data_source_type == DataSourceType.INVALID:
            return fetched

        collected: list[tuple[str, ...]] = [fetched.metadata.warnings]
        base: FetchResult | None = None
        for candidate in self._classifier.confirmed_years_descending():
            if candidate >= year:
                continue
            attempt = await self._fetcher.fetch(dataset_type, entity_id, candidate)
            if attempt.has_real_data:
                base = attempt
                break
            collected.append(attempt.metadata.warnings)

        if base is None:
            logger.warning(
                "No data available for %s %s in any year preceding %d",
                schema.label, entity_id, year,
            )
            return FetchResult(
                records=(),
                metadata=FetchMetadata(
                    dataset_type=dataset_type,
                    entity_id=entity_id,
                    year=year,
                    data_source_type=DataSourceType.MISSING,
                    message=f"No data available for {entity_id} in any year",
                    warnings=_merge_warnings(
                        *collected,
                        ("No historical data available for simulation",),
                    ),
                ),
            )

        growth_rate = self.growth_rate_for(dataset_type, entity_id, growth_override)
        simulated = self._simulator.simulate(dataset_type, entity_id, base, year, growth_rate)
        warnings = _merge_warnings(*collected, simulated.metadata.warnings)
        if warnings == simulated.metadata.warnings:
            return simulated
        return simulated.model_copy(
            update={"metadata": simulated.metadata.model_copy(update={"warnings": warnings})},
        )

    def growth_rate_for(
        self,
        dataset_type: DatasetType,
        entity_id: str,
        growth_override: float | None = None,
    ) -> float:
        """Override, else company-specific growth, else the metric default."""
        if growth_override is not None:
            return growth_override
        specific = self._registry.growth_rate_for(dataset_type, entity_id)
        if specific is not None:
            return specific
        metric = get_schema(dataset_type).growth_metric
        return self._classifier.config.growth_rate_for(metric)

    async def resolve_many(self, requests: list[ResolveRequest]) -> list[FetchResult]:
        """Resolve independent tuples concurrently; results follow request order."""
        return list(
            await asyncio.gather(
                *(
                    self.resolve(r.dataset_type, r.entity_id, r.year, r.growth_override)
                    for r in requests
                ),
            ),
        )
