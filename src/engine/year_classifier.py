"""Year classification — decides which requested years may touch the network.

Pure function of the static YearConfig; used as a guard before every fetch.
"""

from src.models.reimbursement import DataSourceType, YearConfig


class YearClassifier:
    """Maps calendar years to confirmed / potential / simulated / invalid."""

    def __init__(self, config: YearConfig | None = None) -> None:
        self._config = config or YearConfig()

    @property
    def config(self) -> YearConfig:
        return self._config

    def classify(self, year: int) -> DataSourceType:
        """Classify a year. Total over integers; never returns MISSING."""
        if year in self._config.confirmed_years:
            return DataSourceType.CONFIRMED
        if year in self._config.potential_years:
            return DataSourceType.POTENTIAL
        if year in self._config.simulation_years:
            return DataSourceType.SIMULATED
        return DataSourceType.INVALID

    def real_data_years(self) -> list[int]:
        """Confirmed and potential years, ascending."""
        return sorted(self._config.confirmed_years | self._config.potential_years)

    def confirmed_years_descending(self) -> list[int]:
        return sorted(self._config.confirmed_years, reverse=True)

    def default_request_years(self, include_simulated: bool = True) -> list[int]:
        """Dashboard default window.

        Last three confirmed years, all potential years and, optionally,
        the simulation years, ascending.
        """
        years = sorted(self._config.confirmed_years)[-3:]
        years += sorted(self._config.potential_years)
        if include_simulated:
            years += sorted(self._config.simulation_years)
        return sorted(years)
