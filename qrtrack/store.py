"""Record store for issued codes and the scan event log.

In-memory, optionally persisted next to a JSON file: the records snapshot is
rewritten only when a record is created, and scan events go to an
append-only JSON-lines log beside it. Counters are never written on their
own; they are rebuilt from the event log on load, so an event line on disk
always carries its counter update with it.
"""

import json
import os
import tempfile
import threading
from collections import defaultdict
from datetime import datetime
from pathlib import Path

from qrtrack.errors import StoreUnavailableError
from qrtrack.logging import audit, get_logger
from qrtrack.models import CodeRecord, CounterDelta, ScanEvent

log = get_logger("store")


class RecordStore:
    """Thread-safe document store for CodeRecords and ScanEvents.

    Invariants enforced here rather than trusted to callers:
        - a record id is written once; later changes go through increment_counters
        - the fingerprint and asset-id indexes point at the first record issued
        - an event id is appended at most once
        - an event id is counted against its record at most once

    Counter increments take only the lock of the record they touch.
    """

    def __init__(self, path: str | None = None):
        self.path = Path(path) if path else None
        self.events_path = self.path.with_suffix(".events.jsonl") if self.path else None
        self._records: dict[str, CodeRecord] = {}
        self._by_fingerprint: dict[str, str] = {}
        self._by_asset: dict[str, str] = {}
        self._events: list[ScanEvent] = []
        self._event_ids: set[str] = set()
        self._counted: set[str] = set()

        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()
        self._events_lock = threading.Lock()
        self._records_io_lock = threading.Lock()

        if self.path is not None:
            self._load()

    # -- persistence -------------------------------------------------------

    def _load(self):
        if self.path.is_file():
            try:
                with open(self.path) as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                raise StoreUnavailableError(f"Could not read store {self.path}: {e}") from e
            for doc in data.get("records", []):
                self._index(CodeRecord.from_dict(doc).without_counters())

        if self.events_path.is_file():
            try:
                with open(self.events_path) as f:
                    lines = f.read().splitlines()
            except OSError as e:
                raise StoreUnavailableError(f"Could not read event log {self.events_path}: {e}") from e
            for n, line in enumerate(lines):
                if not line.strip():
                    continue
                try:
                    event = ScanEvent.from_dict(json.loads(line))
                except (ValueError, TypeError) as e:
                    if n == len(lines) - 1:
                        # torn final write
                        log.warning("Skipping unreadable last line of %s: %s", self.events_path, e)
                        continue
                    raise StoreUnavailableError(f"Corrupt event log {self.events_path} line {n + 1}") from e
                self._replay(event)

        log.info("Loaded store from %s (%d records, %d events)",
                 self.path, len(self._records), len(self._events))

    def _replay(self, event: ScanEvent):
        if event.event_id in self._event_ids:
            return
        self._events.append(event)
        self._event_ids.add(event.event_id)
        record = self._records.get(event.record_id) if event.record_id else None
        if record is not None:
            self._records[record.id] = record.with_counters(CounterDelta.for_event(event))
            self._counted.add(event.event_id)

    def _write_records(self, records):
        snapshot = {"records": [r.without_counters().to_dict() for r in records]}
        try:
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
            with os.fdopen(fd, "w") as f:
                json.dump(snapshot, f, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreUnavailableError(f"Could not write store {self.path}: {e}") from e

    def _append_line(self, event: ScanEvent):
        line = json.dumps(event.to_dict(), default=str) + "\n"
        try:
            with open(self.events_path, "a") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StoreUnavailableError(f"Could not append to event log {self.events_path}: {e}") from e

    def record_lock(self, record_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[record_id]

    def _index(self, record: CodeRecord):
        self._records[record.id] = record
        self._by_fingerprint.setdefault(record.fingerprint, record.id)
        if record.asset_id:
            self._by_asset.setdefault(record.asset_id, record.id)

    # -- records -----------------------------------------------------------

    def get(self, record_id: str) -> CodeRecord | None:
        return self._records.get(record_id)

    def get_by_fingerprint(self, fp: str) -> CodeRecord | None:
        record_id = self._by_fingerprint.get(fp)
        return self._records.get(record_id) if record_id else None

    def get_by_asset_id(self, asset_id: str) -> CodeRecord | None:
        record_id = self._by_asset.get(asset_id)
        return self._records.get(record_id) if record_id else None

    def put(self, record: CodeRecord):
        """Create a record. The record exists only once this returns."""
        with self._records_io_lock:
            if record.id in self._records:
                raise ValueError(f"record {record.id} already exists")
            if self.path is not None:
                self._write_records([*self._records.values(), record])
            self._index(record)
        audit("record.stored", logger=log, record=record.id, fingerprint=record.fingerprint[:16])

    def increment_counters(self, record_id: str, delta: CounterDelta,
                           event_id: str | None = None) -> CodeRecord | None:
        """Atomically apply `delta` to one record's counters. Returns the current record.

        With `event_id`, the delta is applied at most once per event id; a repeat
        returns the record unchanged.
        """
        with self.record_lock(record_id):
            current = self._records.get(record_id)
            if current is None:
                return None
            if event_id is not None and event_id in self._counted:
                return current
            updated = current.with_counters(delta)
            self._records[record_id] = updated
            if event_id is not None:
                self._counted.add(event_id)
        return updated

    def is_counted(self, event_id: str) -> bool:
        return event_id in self._counted

    def records(self) -> list[CodeRecord]:
        return list(self._records.values())

    # -- events ------------------------------------------------------------

    def append_event(self, event: ScanEvent) -> bool:
        """Append an event unless its id was seen before. Returns True if appended.

        With persistence on, the event is in memory only once its log line is written.
        """
        with self._events_lock:
            if event.event_id in self._event_ids:
                return False
            if self.events_path is not None:
                self._append_line(event)
            self._events.append(event)
            self._event_ids.add(event.event_id)
        return True

    def has_event(self, event_id: str) -> bool:
        return event_id in self._event_ids

    def events(self, record_id: str | None = None, since: datetime | None = None,
               until: datetime | None = None, unresolved: bool = False) -> list[ScanEvent]:
        """Snapshot of events, oldest first.

        `record_id` filters to one record; `unresolved=True` selects events
        without a record instead.
        """
        selected = []
        for event in list(self._events):
            if unresolved and event.record_id is not None:
                continue
            if record_id is not None and event.record_id != record_id:
                continue
            if since is not None and event.timestamp < since:
                continue
            if until is not None and event.timestamp > until:
                continue
            selected.append(event)
        return selected
