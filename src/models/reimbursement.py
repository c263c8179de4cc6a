"""Medicare reimbursement schemas — records, fetch metadata, year configuration.

Every result handed out by the engine is a FetchResult: the normalized
records plus a FetchMetadata that carries provenance (measured vs. projected)
and the ordered warnings collected while producing it.
"""

from enum import StrEnum
from typing import Any

from pydantic import Field, computed_field, model_validator

from src.models.common import FrozenIntelBase

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class DatasetType(StrEnum):
    """Reimbursement dataset families.

    VOLUME_BY_CODE: CMS Part B services per HCPCS/CPT procedure code.
    COST_BY_NAME: CMS Part D prescriber claims per drug brand name.
    """

    VOLUME_BY_CODE = "volumeByCode"
    COST_BY_NAME = "costByName"


class DataSourceType(StrEnum):
    """Provenance of a result.

    MISSING is never produced by year classification; it is the resolver's
    terminal state when no year has data to project from.
    """

    CONFIRMED = "confirmed"
    POTENTIAL = "potential"
    SIMULATED = "simulated"
    INVALID = "invalid"
    MISSING = "missing"


REAL_DATA_SOURCES = frozenset({DataSourceType.CONFIRMED, DataSourceType.POTENTIAL})


class FetchOutcome(StrEnum):
    """How a fetch ended.

    FETCHED: records came from the primary API.
    FELL_BACK: primary was empty, records came from the fallback API.
    EMPTY: both APIs were tried and yielded nothing.
    SKIPPED: no network call was made (simulated or invalid year).
    """

    FETCHED = "fetched"
    FELL_BACK = "fell_back"
    EMPTY = "empty"
    SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Year configuration
# ---------------------------------------------------------------------------

DEFAULT_GROWTH_RATES: dict[str, float] = {
    "implantations": 5.8,
    "payment": 7.2,
    "spending": 8.5,
    "claims": 4.3,
}

# Percentage points added to the volume growth rate when projecting unit cost.
DEFAULT_COST_GROWTH_OFFSETS: dict[DatasetType, float] = {
    DatasetType.VOLUME_BY_CODE: 1.5,
    DatasetType.COST_BY_NAME: 2.0,
}


class YearConfig(FrozenIntelBase):
    """Static, process-wide year ranges and growth assumptions.

    The three year sets must be pairwise disjoint; any other year is invalid.
    """

    confirmed_years: frozenset[int] = Field(
        default=frozenset(range(2019, 2024)),
        description="Years with guaranteed real data.",
    )
    potential_years: frozenset[int] = Field(
        default=frozenset({2024}),
        description="Years that may have partial data; fetch is attempted.",
    )
    simulation_years: frozenset[int] = Field(
        default=frozenset({2025, 2026}),
        description="Years that are never fetched; always projected.",
    )
    default_growth_rates: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_GROWTH_RATES),
        description="Fallback annual growth (%) per measured quantity.",
    )
    cost_growth_offsets: dict[DatasetType, float] = Field(
        default_factory=lambda: dict(DEFAULT_COST_GROWTH_OFFSETS),
        description="Extra percentage points of unit-cost growth per dataset type.",
    )

    @model_validator(mode="after")
    def _check_disjoint(self) -> "YearConfig":
        pairs = (
            ("confirmed", self.confirmed_years, "potential", self.potential_years),
            ("confirmed", self.confirmed_years, "simulation", self.simulation_years),
            ("potential", self.potential_years, "simulation", self.simulation_years),
        )
        for left_name, left, right_name, right in pairs:
            overlap = left & right
            if overlap:
                msg = (
                    f"{left_name} and {right_name} years overlap: "
                    f"{sorted(overlap)}"
                )
                raise ValueError(msg)
        return self

    def growth_rate_for(self, metric: str) -> float:
        """Default growth rate (%) for a metric name.

        Raises:
            KeyError: If no default is configured for the metric.
        """
        if metric not in self.default_growth_rates:
            msg = f"No default growth rate configured for metric '{metric}'."
            raise KeyError(msg)
        return self.default_growth_rates[metric]

    def cost_offset_for(self, dataset_type: DatasetType) -> float:
        """Unit-cost growth offset (percentage points); 0.0 when unset."""
        return self.cost_growth_offsets.get(dataset_type, 0.0)


# ---------------------------------------------------------------------------
# Records and metadata
# ---------------------------------------------------------------------------


class DatasetRecord(FrozenIntelBase):
    """One normalized observation for an entity and year.

    ``total`` is always derived from volume and unit cost, so the invariant
    total == volume * unit_cost holds for measured and projected records alike.
    """

    year: int
    volume: float = Field(..., ge=0.0, description="Services (Part B) or claims (Part D).")
    unit_cost: float = Field(..., ge=0.0, description="Average payment or cost per unit.")
    source_fields: dict[str, Any] = Field(default_factory=dict)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> float:
        return self.volume * self.unit_cost


class FetchMetadata(FrozenIntelBase):
    """Provenance and diagnostics accompanying every set of records."""

    dataset_type: DatasetType
    entity_id: str
    year: int
    data_source_type: DataSourceType
    outcome: FetchOutcome | None = None
    message: str = ""
    request_count: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    total_records: int = Field(default=0, ge=0)
    warnings: tuple[str, ...] = ()
    field_mapping: dict[str, str | None] = Field(default_factory=dict)

    # --- Simulation provenance ---
    base_year: int | None = None
    growth_rate: float | None = None
    compound_growth_factor: float | None = None
    cost_growth_rate: float | None = None
    cost_growth_factor: float | None = None
    simulation_method: str | None = None

    @model_validator(mode="after")
    def _check_counts(self) -> "FetchMetadata":
        if self.success_count > self.request_count:
            msg = (
                f"success_count ({self.success_count}) cannot exceed "
                f"request_count ({self.request_count})."
            )
            raise ValueError(msg)
        return self

    @property
    def is_simulated(self) -> bool:
        return self.data_source_type == DataSourceType.SIMULATED


class FetchResult(FrozenIntelBase):
    """Records plus metadata for one (dataset type, entity, year)."""

    records: tuple[DatasetRecord, ...] = ()
    metadata: FetchMetadata

    @model_validator(mode="after")
    def _check_simulation_provenance(self) -> "FetchResult":
        meta = self.metadata
        if meta.is_simulated and self.records:
            if meta.base_year is None or meta.growth_rate is None or meta.compound_growth_factor is None:
                msg = "simulated records must carry base_year, growth_rate and compound_growth_factor."
                raise ValueError(msg)
        return self

    @property
    def is_empty(self) -> bool:
        return not self.records

    @property
    def has_real_data(self) -> bool:
        """Non-empty and measured (confirmed or potential year)."""
        return bool(self.records) and self.metadata.data_source_type in REAL_DATA_SOURCES
