"""Engine settings loaded from environment variables."""

from enum import StrEnum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.models.reimbursement import YearConfig


class Environment(StrEnum):
    """Deployment environment."""

    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class LogLevel(StrEnum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Application-wide settings loaded from environment variables / .env file.

    Upstream endpoints, pagination limits and year ranges live here.
    Never hardcode them in the fetchers.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- CMS primary data API ---
    CMS_DATA_API_BASE_URL: str = Field(
        default="https://data.cms.gov/data-api/v1/dataset",
        description="Base URL of the CMS data API (dataset UUID is appended).",
    )
    CMS_PART_B_DATASET_ID: str = Field(
        default="6fea9d79-0129-4e4c-b1b8-23cd86a4f435",
        description="Medicare Physician & Other Practitioners dataset UUID.",
    )
    CMS_PART_D_DATASET_ID: str = Field(
        default="9552739e-3d05-4c1b-8eff-ecabf391e2e5",
        description="Medicare Part D Prescribers dataset UUID.",
    )

    # --- CMS fallback datastore API ---
    CMS_PART_B_FALLBACK_URL: str = Field(
        default=(
            "https://data.cms.gov/provider-summary-by-type-of-service/"
            "medicare-physician-other-practitioners/"
            "medicare-physician-other-practitioners-by-provider-and-service/"
            "api/1/datastore/query"
        ),
        description="Datastore query endpoint used when Part B primary returns nothing.",
    )
    CMS_PART_D_FALLBACK_URL: str = Field(
        default=(
            "https://data.cms.gov/provider-summary-by-type-of-service/"
            "medicare-part-d-prescribers/"
            "medicare-part-d-prescribers-by-provider-and-drug/"
            "api/1/datastore/query"
        ),
        description="Datastore query endpoint used when Part D primary returns nothing.",
    )

    # --- HTTP / pagination ---
    HTTP_TIMEOUT_SECONDS: float = Field(default=20.0, gt=0, description="Per-call timeout.")
    FIRST_PAGE_SIZE: int = Field(default=100, ge=1, description="Small first page to fail fast.")
    PAGE_SIZE: int = Field(default=500, ge=1, description="Size of subsequent pages.")
    MAX_RECORDS: int = Field(default=2000, ge=1, description="Record cap per fetch.")
    FALLBACK_LIMIT: int = Field(default=500, ge=1, description="Row limit of the fallback query.")
    INTER_PAGE_DELAY_SECONDS: float = Field(
        default=0.1,
        ge=0,
        description="Fixed delay between successive pages of one fetch.",
    )

    # --- Cache ---
    CACHE_CAPACITY: int = Field(default=200, ge=1, description="LRU result cache entries.")

    # --- Years ---
    CONFIRMED_DATA_YEARS: list[int] = Field(
        default=[2019, 2020, 2021, 2022, 2023],
        description="Years with confirmed real data.",
    )
    POTENTIAL_DATA_YEARS: list[int] = Field(
        default=[2024],
        description="Years with partial or delayed data.",
    )
    SIMULATION_YEARS: list[int] = Field(
        default=[2025, 2026],
        description="Years that are always projected.",
    )

    # --- Logging ---
    LOG_LEVEL: LogLevel = Field(
        default=LogLevel.INFO,
        description="Application log level.",
    )

    # --- Environment ---
    ENVIRONMENT: Environment = Field(
        default=Environment.DEV,
        description="Deployment environment (dev/staging/prod).",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.ENVIRONMENT == Environment.PROD

    def year_config(self) -> YearConfig:
        """Build the validated YearConfig from the configured year lists.

        Raises:
            ValueError: If the year lists overlap.
        """
        return YearConfig(
            confirmed_years=frozenset(self.CONFIRMED_DATA_YEARS),
            potential_years=frozenset(self.POTENTIAL_DATA_YEARS),
            simulation_years=frozenset(self.SIMULATION_YEARS),
        )


def get_settings() -> Settings:
    """Factory function for dependency injection."""
    return Settings()
