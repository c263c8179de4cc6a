"""Tests for field-variant resolution and row normalization."""

import pytest

from src.ingestion.schemas import (
    PART_B_SCHEMA,
    PART_D_SCHEMA,
    FieldResolver,
    FieldVariants,
    get_schema,
)
from src.models.reimbursement import DatasetRecord, DatasetType
from tests.cms_fakes import part_b_row, part_d_row


class TestFieldResolver:
    def test_first_candidate_present_wins(self) -> None:
        variants = FieldVariants(metrics={"volume": ("A", "B")})
        mapping = FieldResolver(variants).resolve([{"B": 1, "A": 2}])
        assert mapping["volume"] == "A"

    def test_later_candidate_used_when_first_absent(self) -> None:
        variants = FieldVariants(metrics={"volume": ("A", "B")})
        assert FieldResolver(variants).resolve([{"B": 1}])["volume"] == "B"

    def test_union_of_batch_keys(self) -> None:
        variants = FieldVariants(metrics={"volume": ("A",)}, passthrough={"name": ("N",)})
        mapping = FieldResolver(variants).resolve([{"A": 1}, {"N": "x"}])
        assert mapping == {"volume": "A", "name": "N"}

    def test_missing_metrics(self) -> None:
        resolver = FieldResolver(FieldVariants(metrics={"volume": ("A",), "unit_cost": ("C",)}))
        mapping = resolver.resolve([{"A": 1}])
        assert resolver.missing_metrics(mapping) == ["unit_cost"]


class TestPartBNormalize:
    def _normalize(self, rows: list[dict]):
        return PART_B_SCHEMA.normalize(rows, entity_id="64568", year=2022, variants=PART_B_SCHEMA.primary)

    def test_basic_row(self) -> None:
        batch = self._normalize([part_b_row(12, 1500.5)])
        (record,) = batch.records
        assert record.volume == 12
        assert record.unit_cost == 1500.5
        assert record.total == pytest.approx(18006.0)
        assert record.source_fields["provider_count"] == "12"
        assert batch.warnings == []

    def test_lowercase_variant(self) -> None:
        batch = self._normalize([{"total_services": 3, "average_medicare_payment_amt": 7}])
        assert batch.records[0].total == 21
        assert batch.field_mapping["volume"] == "total_services"

    def test_blank_value_is_zero(self) -> None:
        row = part_b_row(5, 10)
        row["Avg_Mdcr_Pymt_Amt"] = ""
        (record,) = self._normalize([row]).records
        assert record.unit_cost == 0.0

    def test_negative_row_dropped(self) -> None:
        batch = self._normalize([part_b_row(-1, 10), part_b_row(4, 10)])
        assert len(batch.records) == 1
        assert any("negative values" in w for w in batch.warnings)

    def test_non_numeric_row_dropped(self) -> None:
        row = part_b_row(5, 10)
        row["Tot_Srvcs"] = "n/a"
        batch = self._normalize([row])
        assert batch.records == []
        assert any("non-numeric" in w for w in batch.warnings)

    def test_nan_row_dropped(self) -> None:
        row = part_b_row(5, 10)
        row["Tot_Srvcs"] = "NaN"
        assert self._normalize([row]).records == []

    def test_missing_fields_warned(self) -> None:
        batch = self._normalize([{"HCPCS_Cd": "64568", "Something": 1}])
        assert any(w.startswith("Missing critical fields") for w in batch.warnings)
        # Rows still normalize, to zero-valued records.
        assert batch.records[0].volume == 0.0


class TestPartDNormalize:
    def _normalize(self, rows: list[dict]):
        return PART_D_SCHEMA.normalize(rows, entity_id="XCOPRI", year=2023, variants=PART_D_SCHEMA.primary)

    def test_unit_cost_is_cost_per_claim(self) -> None:
        (record,) = self._normalize([part_d_row(40, 10_000)]).records
        assert record.unit_cost == pytest.approx(250.0)
        assert record.total == pytest.approx(10_000.0)

    def test_zero_claims_and_zero_cost_kept(self) -> None:
        (record,) = self._normalize([part_d_row(0, 0)]).records
        assert record.unit_cost == 0.0

    def test_spending_without_claims_dropped(self) -> None:
        batch = self._normalize([part_d_row(0, 5000), part_d_row(10, 1000)])

        assert len(batch.records) == 1
        assert sum(r.total for r in batch.records) == pytest.approx(1000.0)
        assert any("zero volume but non-zero total_cost" in w for w in batch.warnings)

    def test_negative_cost_dropped(self) -> None:
        assert self._normalize([part_d_row(10, -5)]).records == []

    def test_entity_field_filled(self) -> None:
        (record,) = self._normalize([{"Tot_Clms": "1", "Tot_Drug_Cst": "2"}]).records
        assert record.source_fields["brand_name"] == "XCOPRI"


class TestValidateTotals:
    def test_no_records(self) -> None:
        assert PART_B_SCHEMA.validate_totals([], "64568", 2022) == []

    def test_zero_cost_with_volume(self) -> None:
        records = [DatasetRecord(year=2022, volume=5, unit_cost=0)]
        warnings = PART_B_SCHEMA.validate_totals(records, "64568", 2022)
        assert warnings == ["Data validation: Zero cost but non-zero volume for CPT 64568, 2022"]

    def test_high_cost_part_d(self) -> None:
        records = [DatasetRecord(year=2022, volume=1_000_000, unit_cost=20_000)]
        warnings = PART_D_SCHEMA.validate_totals(records, "XCOPRI", 2022)
        assert any("Suspiciously high cost" in w for w in warnings)

    def test_clean_data(self) -> None:
        records = [DatasetRecord(year=2022, volume=50, unit_cost=100)]
        assert PART_B_SCHEMA.validate_totals(records, "64568", 2022) == []


class TestGetSchema:
    def test_by_enum(self) -> None:
        assert get_schema(DatasetType.COST_BY_NAME) is PART_D_SCHEMA

    def test_by_value(self) -> None:
        assert get_schema("volumeByCode") is PART_B_SCHEMA

    def test_unknown(self) -> None:
        with pytest.raises(ValueError, match="Invalid dataset type"):
            get_schema("partC")
