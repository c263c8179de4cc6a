"""MetricsAggregator — totals and trend metrics over resolved years.

Deterministic — pure functions of FetchResults; never fetches or simulates.

Values are kept numeric (float or None) internally. Display strings
("12.34%", "N/A", "0") are produced only by the ``display`` helpers, and
nothing here parses a formatted string back into a number.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from src.models.reimbursement import (
    REAL_DATA_SOURCES,
    DatasetRecord,
    DatasetType,
    DataSourceType,
    FetchResult,
)

NOT_AVAILABLE = "N/A"

# Display labels per dataset type: (volume, cost, average unit cost).
_LABELS: dict[DatasetType, tuple[str, str, str]] = {
    DatasetType.VOLUME_BY_CODE: ("implantations", "payment", "avgReimbursement"),
    DatasetType.COST_BY_NAME: ("claims", "spending", "avgCostPerClaim"),
}

# Quantity that drives CAGR, market share and the duplicate-data check:
# procedure volume for Part B, drug spending for Part D.
_TREND_ON_COST: frozenset[DatasetType] = frozenset({DatasetType.COST_BY_NAME})

# Severity when several results of one year disagree on provenance.
_SOURCE_PRIORITY: dict[DataSourceType, int] = {
    DataSourceType.CONFIRMED: 0,
    DataSourceType.POTENTIAL: 1,
    DataSourceType.SIMULATED: 2,
    DataSourceType.MISSING: 3,
    DataSourceType.INVALID: 4,
}


def trend_value(dataset_type: DatasetType, volume: float, cost: float) -> float:
    """The trend quantity for a dataset type: volume (Part B) or cost (Part D)."""
    return cost if DatasetType(dataset_type) in _TREND_ON_COST else volume


def trend_label(dataset_type: DatasetType) -> str:
    """Display label of the trend quantity ("implantations", "spending")."""
    dataset_type = DatasetType(dataset_type)
    volume, cost, _ = _LABELS[dataset_type]
    return cost if dataset_type in _TREND_ON_COST else volume


def format_percent(value: float | None) -> str:
    """12.3456 → "12.35%", None → "N/A"."""
    if value is None:
        return NOT_AVAILABLE
    return f"{value:.2f}%"


def format_ratio(numerator: float, denominator: float) -> str:
    """Two-decimal ratio string; "0" when the denominator is zero."""
    if denominator <= 0:
        return "0"
    return f"{numerator / denominator:.2f}"


def yoy_growth(current: float, previous: float) -> float | None:
    """Year-over-year growth in percent; None when previous is zero."""
    if previous == 0:
        return None
    return (current - previous) / previous * 100.0


def cagr(start: float, end: float, span: int) -> float | None:
    """Compound annual growth rate in percent; None for non-positive inputs."""
    if start <= 0 or end <= 0 or span <= 0:
        return None
    return ((end / start) ** (1.0 / span) - 1.0) * 100.0


def market_share(value: float, peer_total: float | None) -> float | None:
    """Share of the peer total in percent; None when the total is zero or unknown."""
    if peer_total is None or peer_total <= 0:
        return None
    return value / peer_total * 100.0


def identical_totals_warning(totals_by_year: Mapping[int, float], metric: str) -> str | None:
    """Warn when two or more real years carry exactly the same non-zero total.

    Identical totals across years usually mean the upstream API ignored the
    year filter. Advisory only: the data is still returned.
    """
    if len(totals_by_year) < 2:
        return None
    distinct = set(totals_by_year.values())
    if len(distinct) != 1:
        return None
    (value,) = distinct
    if value <= 0:
        return None
    return (
        f"Suspicious data pattern: all {len(totals_by_year)} years with real data "
        f"have identical {metric} totals of {value:g}. "
        "The API may be returning the same data for every year."
    )


@dataclass(frozen=True)
class AggregateMetrics:
    """Sums over a set of records."""

    dataset_type: DatasetType
    total_volume: float
    total_cost: float

    @property
    def trend_value(self) -> float:
        return trend_value(self.dataset_type, self.total_volume, self.total_cost)

    @property
    def avg_unit_cost(self) -> str:
        return format_ratio(self.total_cost, self.total_volume)

    def display(self) -> dict[str, Any]:
        volume, cost, average = _LABELS[self.dataset_type]
        return {volume: self.total_volume, cost: self.total_cost, average: self.avg_unit_cost}


@dataclass
class YearlyTrend:
    """One year of a trend report."""

    year: int
    volume: float = 0.0
    cost: float = 0.0
    volume_growth: float | None = None
    cost_growth: float | None = None
    data_source: DataSourceType | None = None

    @property
    def avg_unit_cost(self) -> str:
        return format_ratio(self.cost, self.volume)

    def trend_value(self, dataset_type: DatasetType) -> float:
        return trend_value(dataset_type, self.volume, self.cost)

    def display(self, dataset_type: DatasetType) -> dict[str, Any]:
        volume, cost, average = _LABELS[dataset_type]
        return {
            volume: self.volume,
            cost: self.cost,
            average: self.avg_unit_cost,
            "growth": {
                volume: format_percent(self.volume_growth),
                cost: format_percent(self.cost_growth),
            },
            "dataSource": self.data_source.value if self.data_source else "pending",
        }


@dataclass
class DataQuality:
    """Provenance summary across the years of a report."""

    simulated_years: list[int] = field(default_factory=list)
    real_data_years: list[int] = field(default_factory=list)
    missing_years: list[int] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add_warning(self, warning: str) -> None:
        if warning not in self.warnings:
            self.warnings.append(warning)

    def display(self) -> dict[str, Any]:
        return {
            "simulatedYears": list(self.simulated_years),
            "realDataYears": list(self.real_data_years),
            "missingYears": list(self.missing_years),
            "warnings": list(self.warnings),
        }


@dataclass
class TrendReport:
    """Trend metrics for one dataset across the requested years."""

    dataset_type: DatasetType
    yearly: dict[int, YearlyTrend]
    total_volume: float
    total_cost: float
    latest_volume_growth: float | None
    latest_cost_growth: float | None
    cagr: float | None
    data_quality: DataQuality
    market_share: float | None = None

    @property
    def avg_unit_cost(self) -> str:
        return format_ratio(self.total_cost, self.total_volume)

    def latest_real_year(self) -> int | None:
        return max(self.data_quality.real_data_years, default=None)

    def display(self) -> dict[str, Any]:
        volume, cost, average = _LABELS[self.dataset_type]
        prefix = volume[0].upper() + volume[1:]
        cost_prefix = cost[0].upper() + cost[1:]
        return {
            f"total{prefix}": self.total_volume,
            f"total{cost_prefix}": self.total_cost,
            average: self.avg_unit_cost,
            "yearlyTrends": {
                str(year): trend.display(self.dataset_type)
                for year, trend in sorted(self.yearly.items())
            },
            "yoyGrowth": {
                volume: format_percent(self.latest_volume_growth),
                cost: format_percent(self.latest_cost_growth),
            },
            "marketShare": format_percent(self.market_share),
            "cagr": format_percent(self.cagr),
            "dataQuality": self.data_quality.display(),
        }


class MetricsAggregator:
    """Folds resolved per-year results into aggregate and trend metrics."""

    def aggregate(self, records: Iterable[DatasetRecord], dataset_type: DatasetType) -> AggregateMetrics:
        """Total volume and cost over ``records``."""
        total_volume = 0.0
        total_cost = 0.0
        for record in records:
            total_volume += record.volume
            total_cost += record.total
        return AggregateMetrics(
            dataset_type=DatasetType(dataset_type),
            total_volume=total_volume,
            total_cost=total_cost,
        )

    def build_trends(
        self,
        dataset_type: DatasetType,
        results_by_year: Mapping[int, Sequence[FetchResult]],
    ) -> TrendReport:
        """Build a TrendReport from the results of each requested year.

        A year may carry several results (one per entity of a company); their
        aggregates are summed. Years whose results are all empty are listed as
        missing and contribute zero. CAGR uses only confirmed/potential years and follows
        the trend quantity of the dataset (volume for Part B, spending for Part D).
        """
        dataset_type = DatasetType(dataset_type)
        quality = DataQuality()
        yearly: dict[int, YearlyTrend] = {}

        for year in sorted(results_by_year):
            trend = YearlyTrend(year=year)
            sources: list[DataSourceType] = []
            for result in results_by_year[year]:
                for warning in result.metadata.warnings:
                    quality.add_warning(warning)
                if result.is_empty:
                    continue
                metrics = self.aggregate(result.records, dataset_type)
                trend.volume += metrics.total_volume
                trend.cost += metrics.total_cost
                sources.append(result.metadata.data_source_type)

            if sources:
                trend.data_source = max(sources, key=_SOURCE_PRIORITY.__getitem__)
                if trend.data_source == DataSourceType.SIMULATED:
                    quality.simulated_years.append(year)
                elif trend.data_source in REAL_DATA_SOURCES:
                    quality.real_data_years.append(year)
            else:
                quality.missing_years.append(year)
            yearly[year] = trend

        years = sorted(yearly)
        for previous_year, year in zip(years, years[1:]):
            current, previous = yearly[year], yearly[previous_year]
            current.volume_growth = yoy_growth(current.volume, previous.volume)
            current.cost_growth = yoy_growth(current.cost, previous.cost)

        # Latest YoY comes from the most recent real year, else the final year.
        latest_volume_growth: float | None = None
        latest_cost_growth: float | None = None
        if len(years) >= 2:
            growth_years = years[1:]
            real_growth_years = [y for y in growth_years if y in quality.real_data_years]
            latest = real_growth_years[-1] if real_growth_years else growth_years[-1]
            latest_volume_growth = yearly[latest].volume_growth
            latest_cost_growth = yearly[latest].cost_growth

        real_years = [y for y in years if y in quality.real_data_years]
        growth = None
        if len(real_years) >= 2:
            oldest, newest = real_years[0], real_years[-1]
            growth = cagr(
                yearly[oldest].trend_value(dataset_type),
                yearly[newest].trend_value(dataset_type),
                newest - oldest,
            )
            duplicate = identical_totals_warning(
                {y: yearly[y].trend_value(dataset_type) for y in real_years},
                trend_label(dataset_type),
            )
            if duplicate:
                quality.add_warning(duplicate)

        return TrendReport(
            dataset_type=dataset_type,
            yearly=yearly,
            total_volume=sum(t.volume for t in yearly.values()),
            total_cost=sum(t.cost for t in yearly.values()),
            latest_volume_growth=latest_volume_growth,
            latest_cost_growth=latest_cost_growth,
            cagr=growth,
            data_quality=quality,
        )
