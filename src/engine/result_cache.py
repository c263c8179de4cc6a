"""In-memory LRU cache for fetch results.

Keyed by (dataset type, entity id, year). No time expiry: upstream CMS
datasets for closed years do not change within a process run. The cache is
an explicit object owned by whoever builds the fetcher; there is no
module-level instance.
"""

import threading
from collections import OrderedDict

from src.models.reimbursement import DatasetType, FetchResult

CacheKey = tuple[DatasetType, str, int]

DEFAULT_CAPACITY = 200


class ResultCache:
    """Bounded least-recently-used store of FetchResult values.

    A hit moves the entry to the most-recently-used end; inserting into a
    full cache evicts the least-recently-used entry first. All access is
    serialized with a lock so one instance can back concurrent resolutions.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            msg = f"capacity must be >= 1, got {capacity}."
            raise ValueError(msg)
        self._capacity = capacity
        self._entries: OrderedDict[CacheKey, FetchResult] = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def make_key(dataset_type: DatasetType, entity_id: str, year: int) -> CacheKey:
        return (DatasetType(dataset_type), entity_id, year)

    @property
    def capacity(self) -> int:
        return self._capacity

    def get(self, dataset_type: DatasetType, entity_id: str, year: int) -> FetchResult | None:
        """Return the cached result, refreshing its recency, or None."""
        key = self.make_key(dataset_type, entity_id, year)
        with self._lock:
            value = self._entries.get(key)
            if value is None:
                return None
            self._entries.move_to_end(key)
            return value

    def put(
        self,
        dataset_type: DatasetType,
        entity_id: str,
        year: int,
        value: FetchResult,
    ) -> None:
        """Insert or replace an entry, evicting the LRU entry when full."""
        key = self.make_key(dataset_type, entity_id, year)
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            elif len(self._entries) >= self._capacity:
                self._entries.popitem(last=False)
            self._entries[key] = value

    def clear(self) -> None:
        """Drop all entries (between independent analytical runs)."""
        with self._lock:
            self._entries.clear()

    def keys(self) -> list[CacheKey]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
