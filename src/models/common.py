"""Shared types and base models used across the reimbursement domain models."""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict


def utc_now() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(tz=timezone.utc)


class IntelBase(BaseModel):
    """Base model with common configuration for all domain models."""

    model_config = ConfigDict(
        populate_by_name=True,
        protected_namespaces=(),
    )


class FrozenIntelBase(IntelBase):
    """Immutable variant — used for anything that may sit in the result cache."""

    model_config = ConfigDict(
        populate_by_name=True,
        protected_namespaces=(),
        frozen=True,
    )
