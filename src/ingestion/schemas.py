"""CMS dataset schemas — field-name variants and row normalization.

The CMS APIs rename fields between releases (``Tot_Srvcs`` vs
``total_services``) and the fallback datastore uses its own lowercase names.
Each logical field therefore has an explicit ordered list of candidate API
names. Candidates are resolved once per batch against the keys the batch
actually carries; rows are then read through the resolved mapping.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from src.models.reimbursement import DatasetRecord, DatasetType

VOLUME = "volume"
UNIT_COST = "unit_cost"
TOTAL_COST = "total_cost"


@dataclass(frozen=True)
class FieldVariants:
    """Ordered candidate API names per logical field for one API shape."""

    metrics: dict[str, tuple[str, ...]]
    passthrough: dict[str, tuple[str, ...]] = field(default_factory=dict)


class FieldResolver:
    """Resolves logical fields to concrete API names for one batch of rows."""

    def __init__(self, variants: FieldVariants) -> None:
        self._variants = variants

    def resolve(self, rows: list[dict[str, Any]]) -> dict[str, str | None]:
        """Pick the first candidate present in the batch for every logical field."""
        present: set[str] = set()
        for row in rows:
            present.update(row.keys())

        mapping: dict[str, str | None] = {}
        for groups in (self._variants.metrics, self._variants.passthrough):
            for logical, candidates in groups.items():
                mapping[logical] = next((c for c in candidates if c in present), None)
        return mapping

    def missing_metrics(self, mapping: dict[str, str | None]) -> list[str]:
        """Logical metric fields that no candidate name matched."""
        return [name for name in self._variants.metrics if mapping.get(name) is None]


@dataclass
class NormalizedBatch:
    """Outcome of normalizing one page of raw rows."""

    records: list[DatasetRecord]
    field_mapping: dict[str, str | None]
    warnings: list[str]


def _to_number(value: Any) -> float | None:
    """Parse an API numeric value. Absent → 0.0, unparseable → None."""
    if value is None or value == "":
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


@dataclass(frozen=True)
class DatasetSchema:
    """Everything the fetcher needs to know about one dataset family.

    Attributes:
        dataset_type: Which dataset this schema describes.
        label: Human label for log lines and warnings ("CPT", "drug").
        primary_filter: Filter column of the primary API for the entity id.
        fallback_condition: Condition column of the fallback datastore query.
        primary: Field variants of the primary API.
        fallback: Field variants of the fallback API.
        growth_metric: Default-growth metric name in YearConfig.
        max_total_volume: Aggregate volume above which a warning is raised.
        max_total_cost: Aggregate cost above which a warning is raised.
        entity_field: Passthrough field that receives the entity id when absent.
    """

    dataset_type: DatasetType
    label: str
    primary_filter: str
    fallback_condition: str
    primary: FieldVariants
    fallback: FieldVariants
    growth_metric: str
    entity_field: str
    max_total_volume: float | None = None
    max_total_cost: float | None = None

    def normalize(
        self,
        rows: list[dict[str, Any]],
        *,
        entity_id: str,
        year: int,
        variants: FieldVariants,
    ) -> NormalizedBatch:
        """Turn raw API rows into DatasetRecords.

        Rows with negative or unparseable metrics are dropped with a warning,
        as are total-cost rows reporting spending against zero volume.
        A batch where no metric field resolves yields a warning, and its rows
        normalize to zero-valued records rather than aborting the fetch.
        """
        resolver = FieldResolver(variants)
        mapping = resolver.resolve(rows)
        warnings: list[str] = []

        missing = resolver.missing_metrics(mapping)
        if missing:
            found = sorted({k for row in rows for k in row})
            warnings.append(
                f"Missing critical fields {missing} in API response for "
                f"{self.label} {entity_id}, {year}. Found: {', '.join(found)}",
            )

        records: list[DatasetRecord] = []
        for row in rows:
            record = self._normalize_row(
                row,
                mapping=mapping,
                entity_id=entity_id,
                year=year,
                warnings=warnings,
            )
            if record is not None:
                records.append(record)

        return NormalizedBatch(records=records, field_mapping=mapping, warnings=warnings)

    def _normalize_row(
        self,
        row: dict[str, Any],
        *,
        mapping: dict[str, str | None],
        entity_id: str,
        year: int,
        warnings: list[str],
    ) -> DatasetRecord | None:
        def raw(logical: str) -> Any:
            name = mapping.get(logical)
            return row.get(name) if name is not None else None

        # Part B reports the average payment; Part D reports total spending.
        cost_field = UNIT_COST if UNIT_COST in mapping else TOTAL_COST
        volume = _to_number(raw(VOLUME))
        cost = _to_number(raw(cost_field))

        if volume is None or cost is None:
            warnings.append(
                f"Skipped record with non-numeric values for {self.label} "
                f"{entity_id}, {year}: volume={raw(VOLUME)!r}, {cost_field}={raw(cost_field)!r}",
            )
            return None
        if volume < 0 or cost < 0:
            warnings.append(
                f"Skipped record with negative values for {self.label} "
                f"{entity_id}, {year}: volume={volume}, {cost_field}={cost}",
            )
            return None

        if cost_field == UNIT_COST:
            unit_cost = cost
        elif volume > 0:
            unit_cost = cost / volume
        elif cost > 0:
            # No unit cost can carry spending without units.
            warnings.append(
                f"Skipped record with zero volume but non-zero {cost_field} for {self.label} "
                f"{entity_id}, {year}: {cost_field}={cost}",
            )
            return None
        else:
            unit_cost = 0.0

        source_fields: dict[str, Any] = {}
        for logical in self.passthrough_fields():
            value = raw(logical)
            source_fields[logical] = value if value is not None else ""
        if not source_fields.get(self.entity_field):
            source_fields[self.entity_field] = entity_id

        return DatasetRecord(
            year=year,
            volume=volume,
            unit_cost=unit_cost,
            source_fields=source_fields,
        )

    def passthrough_fields(self) -> list[str]:
        """Source fields carried on every record, whichever API produced it."""
        names = set(self.primary.passthrough) | set(self.fallback.passthrough)
        return sorted(names)

    def validate_totals(self, records: list[DatasetRecord], entity_id: str, year: int) -> list[str]:
        """Advisory aggregate sanity checks; never fatal."""
        if not records:
            return []
        warnings: list[str] = []
        total_volume = sum(r.volume for r in records)
        total_cost = sum(r.total for r in records)
        where = f"{self.label} {entity_id}, {year}"

        if total_volume == 0:
            warnings.append(f"Data validation: Zero total volume for {where}")
        if total_cost == 0 and total_volume > 0:
            warnings.append(f"Data validation: Zero cost but non-zero volume for {where}")
        if self.max_total_volume is not None and total_volume > self.max_total_volume:
            warnings.append(
                f"Data validation: Suspiciously high volume ({total_volume:g}) for {where}",
            )
        if self.max_total_cost is not None and total_cost > self.max_total_cost:
            warnings.append(
                f"Data validation: Suspiciously high cost (${total_cost:,.2f}) for {where}",
            )
        return warnings


# ---------------------------------------------------------------------------
# Concrete schemas
# ---------------------------------------------------------------------------

PART_B_SCHEMA = DatasetSchema(
    dataset_type=DatasetType.VOLUME_BY_CODE,
    label="CPT",
    primary_filter="HCPCS_Cd",
    fallback_condition="hcpcs_code",
    primary=FieldVariants(
        metrics={
            VOLUME: ("Tot_Srvcs", "total_services"),
            UNIT_COST: ("Avg_Mdcr_Pymt_Amt", "average_medicare_payment_amt"),
        },
        passthrough={
            "provider_count": ("Tot_Rndrng_Prvdrs", "provider_count"),
            "hcpcs_code": ("HCPCS_Cd", "hcpcs_code"),
            "hcpcs_description": ("HCPCS_Desc", "hcpcs_description"),
        },
    ),
    fallback=FieldVariants(
        metrics={
            VOLUME: ("total_services", "tot_srvcs"),
            UNIT_COST: ("average_medicare_payment_amt", "avg_mdcr_pymt_amt"),
        },
        passthrough={
            "provider_count": ("provider_count", "tot_rndrng_prvdrs"),
            "hcpcs_code": ("hcpcs_code",),
            "hcpcs_description": ("hcpcs_description",),
        },
    ),
    growth_metric="implantations",
    entity_field="hcpcs_code",
    max_total_volume=10_000_000,
)

PART_D_SCHEMA = DatasetSchema(
    dataset_type=DatasetType.COST_BY_NAME,
    label="drug",
    primary_filter="Brnd_Name",
    fallback_condition="brand_name",
    primary=FieldVariants(
        metrics={
            VOLUME: ("Tot_Clms", "total_claims"),
            TOTAL_COST: ("Tot_Drug_Cst", "total_drug_cost"),
        },
        passthrough={
            "brand_name": ("Brnd_Name", "brand_name"),
            "generic_name": ("Gnrc_Name", "generic_name"),
        },
    ),
    fallback=FieldVariants(
        metrics={
            VOLUME: ("total_claim_count", "total_claims"),
            TOTAL_COST: ("total_drug_cost", "total_spending"),
        },
        passthrough={
            "brand_name": ("brand_name",),
            "generic_name": ("generic_name",),
        },
    ),
    growth_metric="spending",
    entity_field="brand_name",
    max_total_cost=10_000_000_000,
)

SCHEMAS: dict[DatasetType, DatasetSchema] = {
    DatasetType.VOLUME_BY_CODE: PART_B_SCHEMA,
    DatasetType.COST_BY_NAME: PART_D_SCHEMA,
}


def get_schema(dataset_type: DatasetType | str) -> DatasetSchema:
    """Look up the schema for a dataset type.

    Raises:
        ValueError: If the dataset type is unknown.
    """
    try:
        return SCHEMAS[DatasetType(dataset_type)]
    except ValueError:
        msg = f"Invalid dataset type: {dataset_type!r}. Expected one of {[t.value for t in DatasetType]}."
        raise ValueError(msg) from None
