"""Compound-growth projection of reimbursement data.

Deterministic — pure function of the base result, target year and growth
assumptions. Volume grows at the requested rate; unit cost grows at that
rate plus a per-dataset offset (healthcare / pharmaceutical inflation is
assumed to run ahead of volume). Totals are never projected on their own:
they are recomputed from the projected volume and unit cost.

The offsets are policy parameters carried in YearConfig, not fitted values.
"""

import logging

from src.models.reimbursement import (
    DatasetType,
    DataSourceType,
    FetchMetadata,
    FetchOutcome,
    FetchResult,
    YearConfig,
)

logger = logging.getLogger(__name__)

SIMULATION_METHOD = "compound-growth"


def compound_factor(growth_rate: float, years: int) -> float:
    """(1 + g/100) ** years."""
    return (1.0 + growth_rate / 100.0) ** years


class Simulator:
    """Projects a real base-year result forward to a target year."""

    def __init__(self, config: YearConfig | None = None) -> None:
        self._config = config or YearConfig()

    def simulate(
        self,
        dataset_type: DatasetType,
        entity_id: str,
        base_result: FetchResult,
        target_year: int,
        growth_rate: float,
    ) -> FetchResult:
        """Project ``base_result`` to ``target_year`` at ``growth_rate`` percent.

        Returns:
            - An empty simulated result with a warning when the base is empty.
            - ``base_result`` unchanged when the target is not after the base year.
            - Otherwise projected records with simulation provenance metadata.
        """
        dataset_type = DatasetType(dataset_type)

        if base_result.is_empty:
            return FetchResult(
                records=(),
                metadata=FetchMetadata(
                    dataset_type=dataset_type,
                    entity_id=entity_id,
                    year=target_year,
                    data_source_type=DataSourceType.SIMULATED,
                    outcome=FetchOutcome.SKIPPED,
                    message="Simulation failed: no base data to project from",
                    simulation_method=SIMULATION_METHOD,
                    warnings=("No real data available to use as simulation base",),
                ),
            )

        base_year = base_result.metadata.year
        year_diff = target_year - base_year
        if year_diff <= 0:
            return base_result

        cost_growth_rate = growth_rate + self._config.cost_offset_for(dataset_type)
        volume_factor = compound_factor(growth_rate, year_diff)
        cost_factor = compound_factor(cost_growth_rate, year_diff)

        logger.info(
            "Simulating %s data for %s, year %d based on %d data with %.2f%% annual growth",
            dataset_type, entity_id, target_year, base_year, growth_rate,
        )

        records = tuple(
            record.model_copy(
                update={
                    "year": target_year,
                    "volume": record.volume * volume_factor,
                    "unit_cost": record.unit_cost * cost_factor,
                },
            )
            for record in base_result.records
        )

        metadata = FetchMetadata(
            dataset_type=dataset_type,
            entity_id=entity_id,
            year=target_year,
            data_source_type=DataSourceType.SIMULATED,
            outcome=FetchOutcome.SKIPPED,
            message=(
                f"Simulated data for {target_year} based on {base_year} "
                f"with {growth_rate}% annual growth"
            ),
            total_records=len(records),
            base_year=base_year,
            growth_rate=growth_rate,
            compound_growth_factor=volume_factor,
            cost_growth_rate=cost_growth_rate,
            cost_growth_factor=cost_factor,
            simulation_method=SIMULATION_METHOD,
        )
        return FetchResult(records=records, metadata=metadata)
