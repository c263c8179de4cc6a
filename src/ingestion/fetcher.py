"""SourceFetcher — paginated CMS retrieval with one fallback attempt.

Fetches one (dataset type, entity, year) from the CMS data API:

1. Simulated and invalid years return immediately without a network call.
2. Cached results are returned unchanged.
3. The primary API is paged (small first page, larger later pages) until a
   short page, an empty page, a failed page or the record cap.
4. If the primary API yielded nothing, the fallback datastore is queried once.
5. Aggregate sanity warnings are appended, the result is cached and returned.

Network problems never raise out of ``fetch``: they become warnings on the
returned metadata, and partial records are kept.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import httpx

from src.config.settings import Settings
from src.engine.result_cache import CacheKey, ResultCache
from src.engine.year_classifier import YearClassifier
from src.ingestion.schemas import DatasetSchema, get_schema
from src.models.reimbursement import (
    DatasetRecord,
    DatasetType,
    DataSourceType,
    FetchMetadata,
    FetchOutcome,
    FetchResult,
)

logger = logging.getLogger(__name__)

_ACCEPT_JSON = {"Accept": "application/json"}


class UnexpectedPayloadError(ValueError):
    """The API answered with JSON that is neither an array nor a results envelope."""


def extract_rows(payload: Any) -> list[dict[str, Any]]:
    """Return the row list from a JSON array or a ``{"results": [...]}`` envelope.

    Raises:
        UnexpectedPayloadError: If the payload has neither shape.
    """
    if isinstance(payload, dict) and "results" in payload:
        payload = payload["results"]
    if not isinstance(payload, list):
        msg = f"expected a JSON array or results envelope, got {type(payload).__name__}"
        raise UnexpectedPayloadError(msg)
    return [row for row in payload if isinstance(row, dict)]


def is_transient(exc: Exception) -> bool:
    """Timeouts, connection errors, HTTP 429 and 5xx are worth one retry."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def _describe(exc: Exception) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code}"
    if isinstance(exc, httpx.TimeoutException):
        return f"timeout ({type(exc).__name__})"
    return str(exc) or type(exc).__name__


def _dedupe(items: list[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(items))


@dataclass
class _FetchState:
    """Mutable accumulator for a single fetch; frozen into FetchMetadata at the end."""

    records: list[DatasetRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    field_mapping: dict[str, str | None] = field(default_factory=dict)
    request_count: int = 0
    success_count: int = 0


class SourceFetcher:
    """Fetches real CMS reimbursement data for one entity and year."""

    def __init__(
        self,
        *,
        cache: ResultCache,
        classifier: YearClassifier,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._cache = cache
        self._classifier = classifier
        self._settings = settings or Settings()
        self._client = client
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._lock_users: dict[CacheKey, int] = {}

    @property
    def cache(self) -> ResultCache:
        return self._cache

    @property
    def classifier(self) -> YearClassifier:
        return self._classifier

    @property
    def in_flight(self) -> int:
        """Keys with a fetch running or waiting; their locks are dropped when idle."""
        return len(self._locks)

    @asynccontextmanager
    async def _key_lock(self, key: CacheKey) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    def primary_url(self, dataset_type: DatasetType) -> str:
        s = self._settings
        dataset_id = (
            s.CMS_PART_B_DATASET_ID
            if dataset_type == DatasetType.VOLUME_BY_CODE
            else s.CMS_PART_D_DATASET_ID
        )
        return f"{s.CMS_DATA_API_BASE_URL.rstrip('/')}/{dataset_id}/data"

    def fallback_url(self, dataset_type: DatasetType) -> str:
        s = self._settings
        if dataset_type == DatasetType.VOLUME_BY_CODE:
            return s.CMS_PART_B_FALLBACK_URL
        return s.CMS_PART_D_FALLBACK_URL

    async def fetch(self, dataset_type: DatasetType | str, entity_id: str, year: int) -> FetchResult:
        """Fetch real data for one (dataset type, entity, year).

        Raises:
            ValueError: If the dataset type is unknown.
        """
        schema = get_schema(dataset_type)
        source_type = self._classifier.classify(year)

        if source_type == DataSourceType.INVALID:
            real_years = ", ".join(str(y) for y in self._classifier.real_data_years())
            logger.warning("Invalid year requested for %s %s: %d", schema.label, entity_id, year)
            return self._skipped(
                schema, entity_id, year, source_type,
                f"Invalid year {year}. Only years {real_years} have real data.",
            )

        if source_type == DataSourceType.SIMULATED:
            logger.info("No fetch for %s %s, year %d: simulation year", schema.label, entity_id, year)
            return self._skipped(
                schema, entity_id, year, source_type,
                f"No real data available for {year}. Simulation required.",
            )

        key = ResultCache.make_key(schema.dataset_type, entity_id, year)
        async with self._key_lock(key):
            cached = self._cache.get(schema.dataset_type, entity_id, year)
            if cached is not None:
                logger.debug(
                    "Using cached data for %s %s, year %d (%s)",
                    schema.label, entity_id, year, source_type,
                )
                return cached

            if self._client is not None:
                result = await self._fetch_uncached(self._client, schema, entity_id, year, source_type)
            else:
                async with httpx.AsyncClient(
                    timeout=self._settings.HTTP_TIMEOUT_SECONDS,
                    follow_redirects=True,
                ) as client:
                    result = await self._fetch_uncached(client, schema, entity_id, year, source_type)

            if result.records or result.metadata.success_count == result.metadata.request_count:
                self._cache.put(schema.dataset_type, entity_id, year, result)
            else:
                logger.info(
                    "Not caching empty result for %s %s, year %d after failed requests",
                    schema.label, entity_id, year,
                )
            return result

    # ------------------------------------------------------------------
    # Fetch pipeline
    # ------------------------------------------------------------------

    async def _fetch_uncached(
        self,
        client: httpx.AsyncClient,
        schema: DatasetSchema,
        entity_id: str,
        year: int,
        source_type: DataSourceType,
    ) -> FetchResult:
        where = f"{schema.label} {entity_id}, year {year}"
        if source_type == DataSourceType.POTENTIAL:
            logger.info("Attempting to fetch %s - data may be incomplete", where)
        logger.info("Fetching CMS %s data for %s (%s)", schema.dataset_type, where, source_type)

        state = _FetchState()
        await self._page_primary(client, schema, entity_id, year, state)

        if state.records:
            outcome = FetchOutcome.FETCHED
            message = f"Data retrieved from CMS API for year {year}"
        else:
            state.warnings.append(
                f"Primary API returned no data for {schema.label} {entity_id}, {year}. "
                "Trying fallback API.",
            )
            await self._query_fallback(client, schema, entity_id, year, state)
            if state.records:
                outcome = FetchOutcome.FELL_BACK
                message = f"Data retrieved from fallback API for year {year}"
            else:
                outcome = FetchOutcome.EMPTY
                message = f"No data found for {where} in primary or fallback API"

        state.warnings.extend(schema.validate_totals(state.records, entity_id, year))

        metadata = FetchMetadata(
            dataset_type=schema.dataset_type,
            entity_id=entity_id,
            year=year,
            data_source_type=source_type,
            outcome=outcome,
            message=message,
            request_count=state.request_count,
            success_count=state.success_count,
            total_records=len(state.records),
            warnings=_dedupe(state.warnings),
            field_mapping=state.field_mapping,
        )
        logger.info(
            "Fetched %d records for %s (%s, %d/%d requests ok, %d warnings)",
            len(state.records), where, outcome, state.success_count,
            state.request_count, len(metadata.warnings),
        )
        return FetchResult(records=tuple(state.records), metadata=metadata)

    async def _page_primary(
        self,
        client: httpx.AsyncClient,
        schema: DatasetSchema,
        entity_id: str,
        year: int,
        state: _FetchState,
    ) -> None:
        """Accumulate pages from the primary API into ``state``."""
        s = self._settings
        url = self.primary_url(schema.dataset_type)
        where = f"{schema.label} {entity_id}, year {year}"
        offset = 0
        page_number = 0

        while len(state.records) < s.MAX_RECORDS:
            size = s.FIRST_PAGE_SIZE if page_number == 0 else s.PAGE_SIZE
            page = await self._request_page(client, schema, url, entity_id, year, offset, size, state)
            if page is None:
                break
            rows, requested = page
            page_number += 1

            if not rows:
                if page_number == 1:
                    warning = f"No data found for {schema.label} {entity_id}, year {year}"
                    logger.warning("%s", warning)
                    state.warnings.append(warning)
                break

            logger.info("Found %d rows for %s (page %d)", len(rows), where, page_number)
            batch = schema.normalize(rows, entity_id=entity_id, year=year, variants=schema.primary)
            if page_number == 1:
                state.field_mapping = batch.field_mapping
                logger.debug("Field mapping for %s: %s", where, batch.field_mapping)
            for warning in batch.warnings:
                logger.warning("%s", warning)
            state.warnings.extend(batch.warnings)
            state.records.extend(batch.records)
            offset += len(rows)

            if len(rows) < requested:
                logger.debug("End of data reached for %s", where)
                break
            if len(state.records) >= s.MAX_RECORDS:
                del state.records[s.MAX_RECORDS:]
                state.warnings.append(
                    f"Record cap of {s.MAX_RECORDS} reached for {schema.label} {entity_id}, "
                    f"{year}; remaining pages not fetched",
                )
                break
            await asyncio.sleep(s.INTER_PAGE_DELAY_SECONDS)

    async def _request_page(
        self,
        client: httpx.AsyncClient,
        schema: DatasetSchema,
        url: str,
        entity_id: str,
        year: int,
        offset: int,
        size: int,
        state: _FetchState,
    ) -> tuple[list[dict[str, Any]], int] | None:
        """Fetch one page, retrying once with a smaller batch on transient errors.

        Returns:
            (rows, requested size), or None when the page had to be abandoned.
        """
        where = f"{schema.label} {entity_id}, year {year}"
        try:
            rows = await self._get_primary(client, schema, url, entity_id, year, offset, size, state)
            return rows, size
        except (httpx.HTTPError, ValueError) as exc:
            warning = f"Error fetching {where} (offset={offset}, size={size}): {_describe(exc)}"
            logger.error("%s", warning)
            state.warnings.append(warning)
            if not is_transient(exc):
                return None

        retry_size = max(1, min(self._settings.FIRST_PAGE_SIZE, size // 2))
        logger.info("Retrying %s with smaller batch size %d", where, retry_size)
        try:
            rows = await self._get_primary(client, schema, url, entity_id, year, offset, retry_size, state)
            return rows, retry_size
        except (httpx.HTTPError, ValueError) as exc:
            warning = (
                f"Retry failed for {where} (offset={offset}, size={retry_size}): "
                f"{_describe(exc)}; keeping {len(state.records)} records"
            )
            logger.error("%s", warning)
            state.warnings.append(warning)
            return None

    async def _get_primary(
        self,
        client: httpx.AsyncClient,
        schema: DatasetSchema,
        url: str,
        entity_id: str,
        year: int,
        offset: int,
        size: int,
        state: _FetchState,
    ) -> list[dict[str, Any]]:
        params = {
            f"filter[{schema.primary_filter}]": entity_id,
            "filter[Year]": str(year),
            "size": str(size),
            "offset": str(offset),
        }
        logger.debug(
            "Request %d for %s %s, year %d: offset=%d, size=%d",
            state.request_count + 1, schema.label, entity_id, year, offset, size,
        )
        return await self._get_rows(client, url, params, state)

    async def _query_fallback(
        self,
        client: httpx.AsyncClient,
        schema: DatasetSchema,
        entity_id: str,
        year: int,
        state: _FetchState,
    ) -> None:
        """Exactly one fallback call with the datastore query shape."""
        params = {
            f"conditions[{schema.fallback_condition}]": entity_id,
            "conditions[year]": str(year),
            "limit": str(self._settings.FALLBACK_LIMIT),
        }
        logger.info("Using fallback API for %s %s, year %d", schema.label, entity_id, year)
        try:
            rows = await self._get_rows(client, self.fallback_url(schema.dataset_type), params, state)
        except (httpx.HTTPError, ValueError) as exc:
            warning = f"Fallback API failed for {schema.label} {entity_id}, {year}: {_describe(exc)}"
            logger.error("%s", warning)
            state.warnings.append(warning)
            return

        if not rows:
            return
        logger.info("Fallback API returned %d rows for %s %s, %d", len(rows), schema.label, entity_id, year)
        batch = schema.normalize(rows, entity_id=entity_id, year=year, variants=schema.fallback)
        state.field_mapping = batch.field_mapping
        state.warnings.extend(batch.warnings)
        state.records.extend(batch.records[: self._settings.MAX_RECORDS])

    async def _get_rows(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: dict[str, str],
        state: _FetchState,
    ) -> list[dict[str, Any]]:
        state.request_count += 1
        resp = await client.get(
            url,
            params=params,
            headers=_ACCEPT_JSON,
            timeout=self._settings.HTTP_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
        rows = extract_rows(resp.json())
        state.success_count += 1
        return rows

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _skipped(
        schema: DatasetSchema,
        entity_id: str,
        year: int,
        source_type: DataSourceType,
        message: str,
    ) -> FetchResult:
        return FetchResult(
            records=(),
            metadata=FetchMetadata(
                dataset_type=schema.dataset_type,
                entity_id=entity_id,
                year=year,
                data_source_type=source_type,
                outcome=FetchOutcome.SKIPPED,
                message=message,
                warnings=(message,),
            ),
        )
