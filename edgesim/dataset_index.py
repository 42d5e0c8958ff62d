"""Per-batch summaries of persisted sensor datasets, used to prune queries."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from edgesim.errors import InvalidRange, NotFound
from edgesim.state import DatasetIndexEntry, SensorReading
from edgesim.storage import FileStore

logger = logging.getLogger(__name__)


def build_index_entry(dataset_id: str, readings: Sequence[SensorReading]) -> DatasetIndexEntry:
    """Summarise a batch: time range, distinct devices, anomaly and record counts.

    An empty batch gets no time range and never matches a time query.
    """
    if not readings:
        return DatasetIndexEntry(dataset_id=dataset_id, start=None, end=None)
    timestamps = [r.timestamp for r in readings]
    return DatasetIndexEntry(
        dataset_id=dataset_id,
        start=min(timestamps),
        end=max(timestamps),
        device_ids={r.device_id for r in readings},
        anomaly_count=sum(1 for r in readings if r.is_anomaly),
        record_count=len(readings),
    )


class DatasetIndex:
    def __init__(self, store: FileStore) -> None:
        self.store = store
        self._lock = threading.RLock()
        self._entries: Dict[str, DatasetIndexEntry] = {
            e.dataset_id: e for e in store.load_index_entries()
        }
        logger.info(f"DatasetIndex loaded {len(self._entries)} entries")

    def save_batch(self, dataset_id: str, readings: Sequence[SensorReading]) -> DatasetIndexEntry:
        """Persist a batch and then its index entry. Either write failing raises PersistenceFailure."""
        readings = list(readings)
        entry = build_index_entry(dataset_id, readings)
        with self._lock:
            self.store.save_dataset(dataset_id, readings)
            self.store.save_index_entry(entry)
            self._entries[dataset_id] = entry
        logger.info(
            f"Dataset {dataset_id} saved: {entry.record_count} records, "
            f"{entry.anomaly_count} anomalies, devices={sorted(entry.device_ids)}"
        )
        return entry

    def entries(self) -> List[DatasetIndexEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: e.dataset_id)

    def get(self, dataset_id: str) -> DatasetIndexEntry:
        with self._lock:
            try:
                return self._entries[dataset_id]
            except KeyError:
                raise NotFound(f"dataset {dataset_id!r} is not indexed") from None

    def rebuild(self) -> List[DatasetIndexEntry]:
        """Regenerate every index entry from the stored batches."""
        with self._lock:
            entries: Dict[str, DatasetIndexEntry] = {}
            for dataset_id in self.store.list_datasets():
                entry = build_index_entry(dataset_id, self.store.load_dataset(dataset_id))
                self.store.save_index_entry(entry)
                entries[dataset_id] = entry
            self._entries = entries
        logger.info(f"DatasetIndex rebuilt with {len(entries)} entries")
        return self.entries()

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        device_id: Optional[int] = None,
        only_anomalies: bool = False,
    ) -> List[SensorReading]:
        """Readings within ``[start, end]`` matching the filters, ascending by timestamp."""
        if start is not None and end is not None and start > end:
            raise InvalidRange(f"start {start.isoformat()} is after end {end.isoformat()}")

        with self._lock:
            candidates = [e for e in self._entries.values() if e.record_count and e.overlaps(start, end)]
        if device_id is not None:
            candidates = [e for e in candidates if device_id in e.device_ids]
        if only_anomalies:
            candidates = [e for e in candidates if e.anomaly_count > 0]

        results: List[SensorReading] = []
        for entry in sorted(candidates, key=lambda e: e.dataset_id):
            for reading in self.store.load_dataset(entry.dataset_id):
                if start is not None and reading.timestamp < start:
                    continue
                if end is not None and reading.timestamp > end:
                    continue
                if device_id is not None and reading.device_id != device_id:
                    continue
                if only_anomalies and not reading.is_anomaly:
                    continue
                results.append(reading)

        results.sort(key=lambda r: r.timestamp)
        logger.debug(f"Query matched {len(results)} reading(s) across {len(candidates)} dataset(s)")
        return results
