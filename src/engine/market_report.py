"""Company market reports built on the resolver and metrics aggregator.

For one competitor: resolve every (entity, year) concurrently, fold the
results into a TrendReport, and compute market share for the latest real
year against every tracked peer entity of the same dataset type. Share
and growth follow procedure volume for Part B and drug spending for Part D.
Comparison reports do the same for several competitors and add market
totals and per-year shares.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from src.config.settings import Settings, get_settings
from src.data.competitor_registry import Competitor, CompetitorRegistry
from src.engine.metrics import (
    MetricsAggregator,
    TrendReport,
    format_percent,
    format_ratio,
    market_share,
    trend_value,
)
from src.engine.resolver import ResolveRequest, YearDataResolver
from src.engine.result_cache import ResultCache
from src.engine.simulator import Simulator
from src.engine.year_classifier import YearClassifier
from src.ingestion.fetcher import SourceFetcher
from src.models.reimbursement import DatasetType, FetchResult

logger = logging.getLogger(__name__)


@dataclass
class CompanyMarketReport:
    """Market data for one competitor."""

    competitor: Competitor
    years: list[int]
    trends: TrendReport | None

    def display(self) -> dict[str, Any]:
        c = self.competitor
        part_b = part_d = None
        if self.trends is not None:
            if self.trends.dataset_type == DatasetType.VOLUME_BY_CODE:
                part_b = self.trends.display()
            else:
                part_d = self.trends.display()
        dataset_type = c.dataset_type
        return {
            "companyInfo": {
                "name": c.name,
                "type": c.type.value,
                "treatment": c.treatment,
                "shortName": c.short_name,
                "cik": c.cik,
                "keywords": list(c.keywords),
            },
            "years": list(self.years),
            "cptCodes": list(c.entity_ids) if dataset_type == DatasetType.VOLUME_BY_CODE else None,
            "drugNames": list(c.entity_ids) if dataset_type == DatasetType.COST_BY_NAME else None,
            "partB": part_b,
            "partD": part_d,
        }


@dataclass
class MarketComparison:
    """Several competitors side by side, with market totals per dataset."""

    years: list[int]
    companies: dict[str, CompanyMarketReport]
    market_totals: dict[DatasetType, dict[int, float]] = field(default_factory=dict)
    market_cost_totals: dict[DatasetType, dict[int, float]] = field(default_factory=dict)
    shares: dict[str, dict[int, float | None]] = field(default_factory=dict)

    def display(self) -> dict[str, Any]:
        totals: dict[str, Any] = {}
        for dataset_type, by_year in self.market_totals.items():
            costs = self.market_cost_totals.get(dataset_type, {})
            totals[dataset_type.value] = {
                str(year): {
                    "volume": volume,
                    "cost": costs.get(year, 0.0),
                    "avgUnitCost": format_ratio(costs.get(year, 0.0), volume),
                }
                for year, volume in sorted(by_year.items())
            }
        return {
            "years": list(self.years),
            "companies": {
                name: {
                    **report.display(),
                    "marketShareByYear": {
                        str(year): format_percent(share)
                        for year, share in sorted(self.shares.get(name, {}).items())
                    },
                }
                for name, report in self.companies.items()
            },
            "marketTotals": totals,
        }


class MarketReportBuilder:
    """Builds company and comparison reports from resolved year data."""

    def __init__(
        self,
        *,
        resolver: YearDataResolver,
        registry: CompetitorRegistry | None = None,
        aggregator: MetricsAggregator | None = None,
    ) -> None:
        self._resolver = resolver
        self._registry = registry or CompetitorRegistry()
        self._aggregator = aggregator or MetricsAggregator()
        self._classifier: YearClassifier = resolver.fetcher.classifier

    @property
    def resolver(self) -> YearDataResolver:
        return self._resolver

    def request_years(self, years: list[int] | None, include_simulated: bool = True) -> list[int]:
        if years:
            return sorted(set(years))
        return self._classifier.default_request_years(include_simulated)

    async def company_report(
        self,
        name: str,
        years: list[int] | None = None,
        include_simulated: bool = True,
        growth_override: float | None = None,
    ) -> CompanyMarketReport:
        """Resolve and aggregate all reimbursement data for one competitor.

        Raises:
            KeyError: If the competitor is unknown.
        """
        competitor = self._registry.get(name)
        requested = self.request_years(years, include_simulated)
        dataset_type = competitor.dataset_type
        if dataset_type is None:
            logger.info("No reimbursement entities tracked for %s", competitor.name)
            return CompanyMarketReport(competitor=competitor, years=requested, trends=None)

        logger.info("Building market report for %s across years %s", competitor.name, requested)
        by_year = await self._resolve_years(dataset_type, competitor.entity_ids, requested, growth_override)
        trends = self._aggregator.build_trends(dataset_type, by_year)

        latest = trends.latest_real_year()
        if latest is not None:
            peer_total = await self._peer_total(dataset_type, latest)
            trends.market_share = market_share(trends.yearly[latest].trend_value(dataset_type), peer_total)
            if trends.market_share is None:
                trends.data_quality.add_warning(
                    f"Market share unavailable for {latest}: peer total is zero",
                )
        return CompanyMarketReport(competitor=competitor, years=requested, trends=trends)

    async def comparison(
        self,
        names: list[str],
        years: list[int] | None = None,
        include_simulated: bool = True,
        growth_override: float | None = None,
    ) -> MarketComparison:
        """Side-by-side reports with market totals and per-year shares.

        Unknown names are skipped with a log line. ``growth_override`` applies
        to every company and to the peer totals, so simulated years compare
        like for like. Shares follow the trend quantity of each dataset.

        Raises:
            KeyError: If none of the names is a known competitor.
        """
        requested = self.request_years(years, include_simulated)
        competitors: list[Competitor] = []
        for name in names:
            competitor = self._registry.find(name)
            if competitor is None:
                logger.warning("Company not found: %s", name)
                continue
            competitors.append(competitor)
        if not competitors:
            msg = f"No valid companies found in {names}. Available: {', '.join(self._registry.names())}"
            raise KeyError(msg)

        reports = await asyncio.gather(
            *(
                self.company_report(
                    competitor.name,
                    years=requested,
                    include_simulated=include_simulated,
                    growth_override=growth_override,
                )
                for competitor in competitors
            ),
        )
        comparison = MarketComparison(
            years=requested,
            companies={c.name: report for c, report in zip(competitors, reports)},
        )

        dataset_types = dict.fromkeys(c.dataset_type for c in competitors if c.dataset_type is not None)
        for dataset_type in dataset_types:
            peers = self._registry.peer_entities(dataset_type)
            by_year = await self._resolve_years(dataset_type, tuple(peers), requested, growth_override)
            volumes: dict[int, float] = {}
            costs: dict[int, float] = {}
            for year, results in by_year.items():
                metrics = self._aggregator.aggregate(
                    (r for result in results for r in result.records), dataset_type,
                )
                volumes[year] = metrics.total_volume
                costs[year] = metrics.total_cost
            comparison.market_totals[dataset_type] = volumes
            comparison.market_cost_totals[dataset_type] = costs

        for name, report in comparison.companies.items():
            if report.trends is None:
                continue
            dataset_type = report.trends.dataset_type
            volumes = comparison.market_totals[dataset_type]
            costs = comparison.market_cost_totals[dataset_type]
            comparison.shares[name] = {
                year: market_share(
                    trend.trend_value(dataset_type),
                    trend_value(dataset_type, volumes.get(year, 0.0), costs.get(year, 0.0)),
                )
                for year, trend in report.trends.yearly.items()
            }
        return comparison

    async def _resolve_years(
        self,
        dataset_type: DatasetType,
        entity_ids: tuple[str, ...],
        years: list[int],
        growth_override: float | None,
    ) -> dict[int, list[FetchResult]]:
        requests = [
            ResolveRequest(dataset_type, entity_id, year, growth_override)
            for entity_id in entity_ids
            for year in years
        ]
        results = await self._resolver.resolve_many(requests)
        by_year: dict[int, list[FetchResult]] = {year: [] for year in years}
        for request, result in zip(requests, results):
            by_year[request.year].append(result)
        return by_year

    async def _peer_total(self, dataset_type: DatasetType, year: int) -> float:
        """Trend quantity summed over every tracked peer entity for one year."""
        peers = self._registry.peer_entities(dataset_type)
        results = await self._resolver.resolve_many(
            [ResolveRequest(dataset_type, entity_id, year) for entity_id in peers],
        )
        return sum(
            self._aggregator.aggregate(result.records, dataset_type).trend_value
            for result in results
        )


def build_report_builder(
    settings: Settings | None = None,
    client: httpx.AsyncClient | None = None,
    registry: CompetitorRegistry | None = None,
) -> MarketReportBuilder:
    """Wire cache, classifier, fetcher, simulator and resolver from settings."""
    settings = settings or get_settings()
    registry = registry or CompetitorRegistry()
    config = settings.year_config()
    fetcher = SourceFetcher(
        cache=ResultCache(settings.CACHE_CAPACITY),
        classifier=YearClassifier(config),
        settings=settings,
        client=client,
    )
    resolver = YearDataResolver(fetcher=fetcher, simulator=Simulator(config), registry=registry)
    return MarketReportBuilder(resolver=resolver, registry=registry)
