import json
import logging
import os
import fcntl
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List
from .models import HistoryRecord, SyncOutcome, SyncReport, SyncState

logger = logging.getLogger(__name__)

REJECTED = (SyncOutcome.NOT_CONFIGURED, SyncOutcome.ALREADY_RUNNING)


class JsonFileStore:
    """JSON document on disk, written atomically. Falls back to read-only if the disk refuses writes."""

    def __init__(self, path: str, persist: bool = True):
        self.path = Path(path)
        self.persist = persist
        self.read_only = False

    def _read(self) -> Any:
        if not self.path.exists():
            logger.info(f"No file found at {self.path}, starting empty.")
            return None

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load {self.path}: {e}. Starting fresh.", exc_info=True)
            return None

    def _write(self, data: Any):
        if not self.persist or self.read_only:
            return

        tmp_path = self.path.with_suffix('.tmp')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Atomic write pattern with locking
            with open(tmp_path, 'w', encoding='utf-8') as f:
                try:
                    fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    logger.warning(f"Could not acquire lock for {self.path}. Skipping save cycle.")
                    return

                try:
                    json.dump(data, f, indent=2, ensure_ascii=False)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

            os.rename(tmp_path, self.path)

        except OSError as e:
            logger.error(f"Failed to save {self.path}: {e}")
            self.read_only = True


class HistoryStore(JsonFileStore):
    """Local watch history keyed by record key."""

    def __init__(self, path: str, persist: bool = True):
        super().__init__(path, persist)
        self.records: Dict[str, HistoryRecord] = {}
        self._load()

    def _load(self):
        data = self._read()
        if not isinstance(data, list):
            return
        for item in data:
            try:
                record = HistoryRecord.model_validate(item)
            except ValueError as e:
                logger.warning(f"Dropping unreadable history entry: {e}")
                continue
            if record.key:
                self.records[record.key] = record

    def save(self):
        self._write([r.to_wire() for r in self.records.values()])

    def find_all(self) -> List[HistoryRecord]:
        return list(self.records.values())

    def insert(self, batch: Iterable[HistoryRecord]):
        count = 0
        for record in batch:
            self.records[record.key] = record
            count += 1
        if count:
            self.save()

    def update(self, batch: Iterable[HistoryRecord]):
        count = 0
        for record in batch:
            if record.key not in self.records:
                logger.debug(f"Update for unknown history key {record.key}, ignoring")
                continue
            self.records[record.key] = record
            count += 1
        if count:
            self.save()


class SettingsStore(JsonFileStore):
    """Flat key/value preferences."""

    def __init__(self, path: str, persist: bool = True):
        super().__init__(path, persist)
        self.values: Dict[str, Any] = {}
        data = self._read()
        if isinstance(data, dict):
            self.values = data

    def save(self):
        self._write(self.values)

    def get_all(self) -> Dict[str, Any]:
        return dict(self.values)

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def put(self, key: str, value: Any):
        self.values[key] = value
        self.save()

    def put_many(self, values: Dict[str, Any]):
        """Apply a batch with a single write."""
        if not values:
            return
        self.values.update(values)
        self.save()


class StateManager(JsonFileStore):
    """Service bookkeeping: last sync times and the last report."""

    def __init__(self, path: str, persist: bool = True):
        super().__init__(path, persist)
        self.state = SyncState()
        data = self._read()
        if isinstance(data, dict):
            try:
                self.state = SyncState(**data)
            except ValueError as e:
                logger.error(f"Failed to load state: {e}. Starting fresh.")

    def save(self):
        self._write(self.state.model_dump(mode='json'))

    def record(self, report: SyncReport):
        """Fold a terminal sync report into the service state."""
        s = self.state
        s.last_report = report
        if report.outcome in REJECTED:
            # nothing ran; keep counters and timestamps as they were
            self.save()
            return

        s.sync_count += 1
        finished = report.finished_at or time.time()
        if report.kind in ("history", "all"):
            s.last_history_sync = finished
        if report.kind in ("settings", "all"):
            s.last_settings_sync = finished
        if report.success:
            s.last_successful_sync = finished
        else:
            s.failure_count += 1
        self.save()
