"""Tests for SourceFetcher — pagination, retry, fallback and caching.

All HTTP goes through httpx.MockTransport; no live CMS calls.
"""

import asyncio

import httpx
import pytest

from src.ingestion.fetcher import UnexpectedPayloadError, extract_rows, is_transient
from src.models.reimbursement import DatasetType, DataSourceType, FetchOutcome
from tests.cms_fakes import FakeCMS, part_b_row, part_d_row

B = DatasetType.VOLUME_BY_CODE
D = DatasetType.COST_BY_NAME


def _rows(n: int) -> list[dict]:
    return [part_b_row(10 + i, 100) for i in range(n)]


class TestExtractRows:
    def test_plain_array(self) -> None:
        assert extract_rows([{"a": 1}]) == [{"a": 1}]

    def test_results_envelope(self) -> None:
        assert extract_rows({"results": [{"a": 1}], "count": 1}) == [{"a": 1}]

    def test_non_dict_rows_dropped(self) -> None:
        assert extract_rows([{"a": 1}, "junk", 3]) == [{"a": 1}]

    def test_unexpected_shape(self) -> None:
        with pytest.raises(UnexpectedPayloadError):
            extract_rows({"data": []})


class TestIsTransient:
    def _status_error(self, status: int) -> httpx.HTTPStatusError:
        request = httpx.Request("GET", "https://example.test")
        response = httpx.Response(status, request=request)
        return httpx.HTTPStatusError("boom", request=request, response=response)

    def test_server_error(self) -> None:
        assert is_transient(self._status_error(503))

    def test_rate_limited(self) -> None:
        assert is_transient(self._status_error(429))

    def test_client_error(self) -> None:
        assert not is_transient(self._status_error(404))

    def test_timeout(self) -> None:
        assert is_transient(httpx.ReadTimeout("slow"))

    def test_payload_error(self) -> None:
        assert not is_transient(UnexpectedPayloadError("bad"))


class TestNoNetworkYears:
    """Simulated and invalid years never hit the network."""

    @pytest.mark.anyio
    async def test_simulation_year(self, make_fetcher, cms: FakeCMS) -> None:
        result = await make_fetcher().fetch(B, "64568", 2026)

        assert result.is_empty
        assert result.metadata.data_source_type == DataSourceType.SIMULATED
        assert result.metadata.outcome == FetchOutcome.SKIPPED
        assert result.metadata.message == "No real data available for 2026. Simulation required."
        assert cms.requests == []

    @pytest.mark.anyio
    async def test_invalid_year(self, make_fetcher, cms: FakeCMS) -> None:
        result = await make_fetcher().fetch(B, "64568", 2010)

        assert result.metadata.data_source_type == DataSourceType.INVALID
        assert result.metadata.message == (
            "Invalid year 2010. Only years 2019, 2020, 2021, 2022, 2023, 2024 have real data."
        )
        assert cms.requests == []

    @pytest.mark.anyio
    async def test_unknown_dataset_type(self, make_fetcher) -> None:
        with pytest.raises(ValueError, match="Invalid dataset type"):
            await make_fetcher().fetch("partC", "64568", 2022)


class TestPrimaryPagination:
    """Small first page, larger later pages, stop on short/empty page or cap."""

    @pytest.mark.anyio
    async def test_single_short_page(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("64568", 2022)] = _rows(3)
        result = await make_fetcher().fetch(B, "64568", 2022)

        meta = result.metadata
        assert len(result.records) == 3
        assert meta.outcome == FetchOutcome.FETCHED
        assert meta.data_source_type == DataSourceType.CONFIRMED
        assert meta.message == "Data retrieved from CMS API for year 2022"
        assert (meta.request_count, meta.success_count) == (1, 1)
        params = cms.requests[0].url.params
        assert params["filter[HCPCS_Cd]"] == "64568"
        assert params["filter[Year]"] == "2022"
        assert params["size"] == "100"
        assert params["offset"] == "0"

    @pytest.mark.anyio
    async def test_pages_until_short_page(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("64568", 2022)] = _rows(7)
        result = await make_fetcher(FIRST_PAGE_SIZE=2, PAGE_SIZE=3).fetch(B, "64568", 2022)

        assert len(result.records) == 7
        sent = [(r.url.params["offset"], r.url.params["size"]) for r in cms.requests]
        assert sent == [("0", "2"), ("2", "3"), ("5", "3")]

    @pytest.mark.anyio
    async def test_exact_multiple_ends_on_empty_page(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("64568", 2022)] = _rows(5)
        result = await make_fetcher(FIRST_PAGE_SIZE=2, PAGE_SIZE=3).fetch(B, "64568", 2022)

        assert len(result.records) == 5
        assert len(cms.requests) == 3
        assert not any("No data found" in w for w in result.metadata.warnings)

    @pytest.mark.anyio
    async def test_record_cap(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("64568", 2022)] = _rows(10)
        fetcher = make_fetcher(FIRST_PAGE_SIZE=2, PAGE_SIZE=3, MAX_RECORDS=4)
        result = await fetcher.fetch(B, "64568", 2022)

        assert len(result.records) == 4
        assert len(cms.requests) == 2
        assert any("Record cap of 4 reached" in w for w in result.metadata.warnings)

    @pytest.mark.anyio
    async def test_records_attributed_to_requested_year(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("64568", 2021)] = _rows(2)
        result = await make_fetcher().fetch(B, "64568", 2021)
        assert {r.year for r in result.records} == {2021}

    @pytest.mark.anyio
    async def test_field_mapping_recorded(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("64568", 2022)] = [{"total_services": "5", "average_medicare_payment_amt": "20"}]
        result = await make_fetcher().fetch(B, "64568", 2022)

        assert result.metadata.field_mapping["volume"] == "total_services"
        assert result.metadata.field_mapping["unit_cost"] == "average_medicare_payment_amt"
        assert result.records[0].total == pytest.approx(100.0)
        assert result.records[0].source_fields["hcpcs_code"] == "64568"

    @pytest.mark.anyio
    async def test_part_d_unit_cost_from_total(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("XCOPRI", 2023)] = [part_d_row(200, 50_000)]
        result = await make_fetcher().fetch(D, "XCOPRI", 2023)

        (record,) = result.records
        assert cms.requests[0].url.params["filter[Brnd_Name]"] == "XCOPRI"
        assert record.volume == 200
        assert record.unit_cost == pytest.approx(250.0)
        assert record.total == pytest.approx(50_000.0)
        assert record.source_fields["generic_name"] == "Cenobamate"


class TestRetryAndPartialResults:
    @pytest.mark.anyio
    async def test_transient_error_retried_with_smaller_batch(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("64568", 2022)] = _rows(3)
        cms.errors[(0, 100)] = 503
        result = await make_fetcher().fetch(B, "64568", 2022)

        sizes = [r.url.params["size"] for r in cms.requests]
        assert sizes == ["100", "50"]
        assert len(result.records) == 3
        assert (result.metadata.request_count, result.metadata.success_count) == (2, 1)
        assert any("HTTP 503" in w for w in result.metadata.warnings)

    @pytest.mark.anyio
    async def test_connection_error_retried(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("64568", 2022)] = _rows(1)
        cms.errors[(0, 100)] = "connect"
        result = await make_fetcher().fetch(B, "64568", 2022)
        assert len(result.records) == 1
        assert result.metadata.outcome == FetchOutcome.FETCHED

    @pytest.mark.anyio
    async def test_client_error_not_retried(self, make_fetcher, cms: FakeCMS) -> None:
        cms.errors[(0, 100)] = 404
        result = await make_fetcher().fetch(B, "64568", 2022)

        assert len(cms.primary_requests) == 1
        assert len(cms.fallback_requests) == 1
        assert result.metadata.outcome == FetchOutcome.EMPTY

    @pytest.mark.anyio
    async def test_partial_records_kept_when_later_page_fails(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("64568", 2022)] = _rows(6)
        cms.errors[(2, 3)] = 500
        cms.errors[(2, 1)] = 500
        result = await make_fetcher(FIRST_PAGE_SIZE=2, PAGE_SIZE=3).fetch(B, "64568", 2022)

        assert len(result.records) == 2
        assert result.metadata.outcome == FetchOutcome.FETCHED
        assert cms.fallback_requests == []
        assert any("keeping 2 records" in w for w in result.metadata.warnings)

    @pytest.mark.anyio
    async def test_unexpected_payload_becomes_warning(self, make_fetcher) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": "nope"})

        result = await make_fetcher(handler=handler).fetch(B, "64568", 2022)
        assert result.is_empty
        assert result.metadata.outcome == FetchOutcome.EMPTY
        assert any("expected a JSON array" in w for w in result.metadata.warnings)


class TestFallback:
    """The fallback datastore is queried exactly once when primary is empty."""

    @pytest.mark.anyio
    async def test_fallback_envelope(self, make_fetcher, cms: FakeCMS) -> None:
        cms.fallback[("64568", 2022)] = {
            "results": [
                {"hcpcs_code": "64568", "total_services": "40", "average_medicare_payment_amt": "25"},
            ],
        }
        result = await make_fetcher().fetch(B, "64568", 2022)

        meta = result.metadata
        assert meta.outcome == FetchOutcome.FELL_BACK
        assert meta.message == "Data retrieved from fallback API for year 2022"
        assert result.records[0].volume == 40
        assert result.records[0].year == 2022
        assert "Primary API returned no data for CPT 64568, 2022. Trying fallback API." in meta.warnings
        (fallback,) = cms.fallback_requests
        assert fallback.url.params["conditions[hcpcs_code]"] == "64568"
        assert fallback.url.params["conditions[year]"] == "2022"
        assert fallback.url.params["limit"] == "500"

    @pytest.mark.anyio
    async def test_part_d_fallback_names(self, make_fetcher, cms: FakeCMS) -> None:
        cms.fallback[("XCOPRI", 2022)] = [
            {"brand_name": "XCOPRI", "total_claim_count": "10", "total_drug_cost": "1000"},
        ]
        result = await make_fetcher().fetch(D, "XCOPRI", 2022)
        assert result.records[0].unit_cost == pytest.approx(100.0)
        assert cms.fallback_requests[0].url.params["conditions[brand_name]"] == "XCOPRI"

    @pytest.mark.anyio
    async def test_not_called_when_primary_has_data(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("64568", 2022)] = _rows(1)
        await make_fetcher().fetch(B, "64568", 2022)
        assert cms.fallback_requests == []

    @pytest.mark.anyio
    async def test_both_empty(self, make_fetcher, cms: FakeCMS) -> None:
        result = await make_fetcher().fetch(B, "64568", 2022)
        assert result.is_empty
        assert result.metadata.outcome == FetchOutcome.EMPTY
        assert any("No data found for CPT 64568, year 2022" in w for w in result.metadata.warnings)

    @pytest.mark.anyio
    async def test_fallback_failure_becomes_warning(self, make_fetcher, cms: FakeCMS) -> None:
        cms.fallback_status = 500
        result = await make_fetcher().fetch(B, "64568", 2022)
        assert any(w.startswith("Fallback API failed") for w in result.metadata.warnings)
        assert len(cms.fallback_requests) == 1


class TestCaching:
    @pytest.mark.anyio
    async def test_second_fetch_served_from_cache(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("64568", 2022)] = _rows(2)
        fetcher = make_fetcher()
        first = await fetcher.fetch(B, "64568", 2022)
        second = await fetcher.fetch(B, "64568", 2022)

        assert second is first
        assert len(cms.requests) == 1

    @pytest.mark.anyio
    async def test_clean_empty_result_is_cached(self, make_fetcher, cms: FakeCMS) -> None:
        fetcher = make_fetcher()
        await fetcher.fetch(B, "64568", 2022)
        await fetcher.fetch(B, "64568", 2022)
        assert len(cms.requests) == 2

    @pytest.mark.anyio
    async def test_failed_empty_result_not_cached(self, make_fetcher, cms: FakeCMS) -> None:
        cms.errors[(0, 100)] = 404
        fetcher = make_fetcher()
        await fetcher.fetch(B, "64568", 2022)
        await fetcher.fetch(B, "64568", 2022)
        assert len(cms.primary_requests) == 2
        assert len(fetcher.cache) == 0

    @pytest.mark.anyio
    async def test_concurrent_fetches_share_one_request(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("64568", 2022)] = _rows(2)
        fetcher = make_fetcher()
        first, second = await asyncio.gather(
            fetcher.fetch(B, "64568", 2022),
            fetcher.fetch(B, "64568", 2022),
        )
        assert first is second
        assert len(cms.requests) == 1

    @pytest.mark.anyio
    async def test_key_locks_released_after_fetches(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("64568", 2022)] = _rows(2)
        cms.primary[("61885", 2022)] = _rows(1)
        fetcher = make_fetcher()
        await asyncio.gather(
            fetcher.fetch(B, "64568", 2022),
            fetcher.fetch(B, "64568", 2022),
            fetcher.fetch(B, "61885", 2022),
            fetcher.fetch(B, "61863", 2022),
        )
        assert fetcher.in_flight == 0
        assert len(cms.primary_requests) == 3

        cms.errors[(0, 100)] = 404
        await fetcher.fetch(B, "61864", 2023)
        assert fetcher.in_flight == 0


class TestSanityWarnings:
    @pytest.mark.anyio
    async def test_zero_volume(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("64568", 2022)] = [part_b_row(0, 100)]
        result = await make_fetcher().fetch(B, "64568", 2022)
        assert "Data validation: Zero total volume for CPT 64568, 2022" in result.metadata.warnings
        assert len(result.records) == 1

    @pytest.mark.anyio
    async def test_suspiciously_high_volume(self, make_fetcher, cms: FakeCMS) -> None:
        cms.primary[("64568", 2022)] = [part_b_row(20_000_000, 1)]
        result = await make_fetcher().fetch(B, "64568", 2022)
        assert any("Suspiciously high volume" in w for w in result.metadata.warnings)
