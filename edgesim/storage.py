"""JSON file persistence for nodes, simulations, sensor datasets, indexes, traces and telemetry."""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from edgesim.errors import NotFound, PersistenceFailure
from edgesim.state import DatasetIndexEntry, SensorReading, Trace

logger = logging.getLogger(__name__)

DATASETS_DIR = "datasets"
INDEXES_DIR = "indexes"
TELEMETRY_DIR = "telemetry"
TRACES_DIR = "traces"
NODES_FILE = "nodes.json"
SIMULATIONS_FILE = "simulations.json"
INDEX_SUFFIX = ".index.json"

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def check_name(name: str) -> str:
    """Reject names that cannot be used as a single file name component."""
    if not isinstance(name, str) or not _SAFE_NAME.match(name) or ".." in name:
        raise ValueError(f"invalid name for storage: {name!r}")
    return name


def file_key(name: str) -> str:
    """Map a free-form node or simulation name onto a safe file name stem."""
    key = re.sub(r"[^A-Za-z0-9._-]+", "_", str(name or "")).strip("._")
    if not key:
        raise ValueError(f"cannot derive a file name from {name!r}")
    return key


class FileStore:
    """
    Directory-backed store.

    Layout under ``data_dir``::

        datasets/<id>.json
        indexes/<id>.index.json
        telemetry/<simulation key>.jsonl
        traces/<node key>.jsonl
        nodes.json
        simulations.json

    Whole documents are written to a temp file in the same directory and moved
    into place with os.replace, so readers never see a partial file.
    """

    def __init__(self, data_dir: str | os.PathLike) -> None:
        self.root = Path(data_dir)
        self.datasets_dir = self.root / DATASETS_DIR
        self.indexes_dir = self.root / INDEXES_DIR
        self.telemetry_dir = self.root / TELEMETRY_DIR
        self.traces_dir = self.root / TRACES_DIR
        self._append_lock = threading.Lock()
        try:
            for d in (self.root, self.datasets_dir, self.indexes_dir, self.telemetry_dir, self.traces_dir):
                d.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceFailure(f"cannot create data directory {self.root}: {e}") from e
        logger.info(f"FileStore ready at {self.root}")

    # ------------------------------------------------------------------
    # Low level
    # ------------------------------------------------------------------
    def _write_json(self, path: Path, document: Any) -> None:
        try:
            fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceFailure(f"failed to write {path}: {e}") from e

    def _read_json(self, path: Path) -> Any:
        try:
            with path.open("r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceFailure(f"failed to read {path}: {e}") from e

    def _append_line(self, path: Path, document: Any) -> None:
        try:
            line = json.dumps(document)
            with self._append_lock, path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceFailure(f"failed to append to {path}: {e}") from e

    def _read_lines(self, path: Path) -> List[Any]:
        if not path.exists():
            return []
        out: List[Any] = []
        try:
            with path.open("r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        out.append(json.loads(line))
        except (OSError, ValueError) as e:
            raise PersistenceFailure(f"failed to read {path}: {e}") from e
        return out

    # ------------------------------------------------------------------
    # Datasets & indexes
    # ------------------------------------------------------------------
    def dataset_path(self, dataset_id: str) -> Path:
        return self.datasets_dir / f"{check_name(dataset_id)}.json"

    def index_path(self, dataset_id: str) -> Path:
        return self.indexes_dir / f"{check_name(dataset_id)}{INDEX_SUFFIX}"

    def save_dataset(self, dataset_id: str, readings: Iterable[SensorReading]) -> Path:
        path = self.dataset_path(dataset_id)
        self._write_json(path, [r.to_dict() for r in readings])
        logger.debug(f"Dataset {dataset_id} written to {path}")
        return path

    def load_dataset(self, dataset_id: str) -> List[SensorReading]:
        path = self.dataset_path(dataset_id)
        if not path.exists():
            raise NotFound(f"dataset {dataset_id!r} not found")
        raw = self._read_json(path)
        try:
            return [SensorReading.from_dict(r) for r in raw]
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceFailure(f"corrupt dataset {path}: {e}") from e

    def list_datasets(self) -> List[str]:
        try:
            return sorted(p.stem for p in self.datasets_dir.glob("*.json") if not p.name.startswith("."))
        except OSError as e:
            raise PersistenceFailure(f"failed to list {self.datasets_dir}: {e}") from e

    def save_index_entry(self, entry: DatasetIndexEntry) -> Path:
        path = self.index_path(entry.dataset_id)
        self._write_json(path, entry.to_dict())
        return path

    def load_index_entries(self) -> List[DatasetIndexEntry]:
        entries: List[DatasetIndexEntry] = []
        try:
            paths = sorted(self.indexes_dir.glob(f"*{INDEX_SUFFIX}"))
        except OSError as e:
            raise PersistenceFailure(f"failed to list {self.indexes_dir}: {e}") from e
        for path in paths:
            if path.name.startswith("."):
                continue
            raw = self._read_json(path)
            try:
                entries.append(DatasetIndexEntry.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                raise PersistenceFailure(f"corrupt index {path}: {e}") from e
        return entries

    # ------------------------------------------------------------------
    # Nodes & simulations
    # ------------------------------------------------------------------
    def save_nodes(self, nodes: List[Dict[str, Any]]) -> None:
        self._write_json(self.root / NODES_FILE, nodes)
        logger.info(f"Saved {len(nodes)} node(s)")

    def load_nodes(self) -> List[Dict[str, Any]]:
        path = self.root / NODES_FILE
        if not path.exists():
            logger.info("No persisted nodes found")
            return []
        return list(self._read_json(path) or [])

    def save_simulations(self, simulations: List[Dict[str, Any]]) -> None:
        self._write_json(self.root / SIMULATIONS_FILE, simulations)
        logger.info(f"Saved {len(simulations)} simulation(s)")

    def load_simulations(self) -> List[Dict[str, Any]]:
        path = self.root / SIMULATIONS_FILE
        if not path.exists():
            logger.info("No persisted simulations found")
            return []
        return list(self._read_json(path) or [])

    # ------------------------------------------------------------------
    # Traces & telemetry (append-only logs)
    # ------------------------------------------------------------------
    def append_trace(self, node_name: str, trace: Trace) -> None:
        self._append_line(self.traces_dir / f"{file_key(node_name)}.jsonl", trace.to_dict())

    def load_traces(self, node_name: str) -> List[Trace]:
        raw = self._read_lines(self.traces_dir / f"{file_key(node_name)}.jsonl")
        return [Trace.from_dict(r) for r in raw]

    def clear_traces(self, node_name: str) -> None:
        path = self.traces_dir / f"{file_key(node_name)}.jsonl"
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise PersistenceFailure(f"failed to remove {path}: {e}") from e

    def save_telemetry(self, simulation: str, snapshot: Dict[str, Any]) -> None:
        self._append_line(self.telemetry_dir / f"{file_key(simulation)}.jsonl", snapshot)

    def load_telemetry(self, simulation: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        rows = self._read_lines(self.telemetry_dir / f"{file_key(simulation)}.jsonl")
        rows.sort(key=lambda r: r.get("timestamp", ""))
        if limit is not None:
            rows = rows[-limit:] if limit > 0 else []
        return rows
