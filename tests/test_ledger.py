"""Tests for the scan ledger and the record store behind it."""

import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from qrtrack.errors import StoreUnavailableError
from qrtrack.ledger import ScanLedger
from qrtrack.logging import AUDIT, ROOT_LOGGER
from qrtrack.models import ScanEvent
from qrtrack.store import RecordStore

from conftest import make_record

T0 = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


def scan(event_id, record_id="QR_TEST0000000001", verifier=None, at=T0, quality=0.9):
    return ScanEvent(
        event_id=event_id,
        fingerprint=None if record_id is None else "f" * 64,
        record_id=record_id,
        decode_quality=quality,
        timestamp=at,
        verifier_id=verifier,
        validation_status="valid" if record_id else "unresolved",
    )


@pytest.fixture
def ledger(store):
    store.put(make_record())
    return ScanLedger(store)


class TestAppend:
    def test_counts_once_per_event(self, ledger, store):
        assert ledger.append(scan("SCAN_1", verifier="v1")) is True
        record = store.get("QR_TEST0000000001")
        assert record.scan_count == 1
        assert record.unique_verifier_count == 1
        assert record.first_seen_at == T0
        assert record.last_seen_at == T0

    def test_replay_is_a_no_op(self, ledger, store):
        assert ledger.append(scan("SCAN_1")) is True
        assert ledger.append(scan("SCAN_1", at=T0 + timedelta(minutes=5))) is False
        assert store.get("QR_TEST0000000001").scan_count == 1
        assert len(store.events()) == 1

    def test_seen_timestamps(self, ledger, store):
        ledger.append(scan("SCAN_1", at=T0 + timedelta(hours=2)))
        ledger.append(scan("SCAN_2", at=T0))
        ledger.append(scan("SCAN_3", at=T0 + timedelta(hours=1)))
        record = store.get("QR_TEST0000000001")
        assert record.first_seen_at == T0 + timedelta(hours=2)
        assert record.last_seen_at == T0 + timedelta(hours=2)
        assert record.scan_count == 3

    def test_verifiers_are_deduplicated(self, ledger, store):
        for i, verifier in enumerate(["v1", "v2", "v1", None, "v2"]):
            ledger.append(scan(f"SCAN_{i}", verifier=verifier))
        record = store.get("QR_TEST0000000001")
        assert record.scan_count == 5
        assert record.verifiers == frozenset({"v1", "v2"})

    def test_unresolved_scan_touches_no_counters(self, ledger, store):
        assert ledger.append(scan("SCAN_X", record_id=None)) is True
        assert store.get("QR_TEST0000000001").scan_count == 0
        assert [e.event_id for e in store.events(unresolved=True)] == ["SCAN_X"]

    def test_other_records_are_untouched(self, ledger, store):
        store.put(make_record("QR_TEST0000000002", canonical=b'{"assetId":"A2"}', asset_id="A2"))
        ledger.append(scan("SCAN_1", record_id="QR_TEST0000000002"))
        assert store.get("QR_TEST0000000001").scan_count == 0
        assert store.get("QR_TEST0000000002").scan_count == 1

    def test_immutable_fields_survive_counting(self, ledger, store):
        before = store.get("QR_TEST0000000001")
        ledger.append(scan("SCAN_1", verifier="v1"))
        after = store.get("QR_TEST0000000001")
        assert after.fingerprint == before.fingerprint
        assert after.payload_canonical == before.payload_canonical
        assert after.created_at == before.created_at
        assert before.scan_count == 0


class TestAudit:
    def test_scan_lifecycle_is_audited(self, ledger, caplog):
        caplog.set_level(AUDIT, logger=ROOT_LOGGER)
        ledger.append(scan("SCAN_1", verifier="v1"))
        ledger.append(scan("SCAN_1"))
        audited = [(r.event, r.ctx) for r in caplog.records if getattr(r, "event", "").startswith("scan.")]
        names = [name for name, _ in audited]
        assert names == ["scan.counted", "scan.recorded", "scan.duplicate"]
        assert audited[0][1]["scan_count"] == 1
        assert audited[1][1]["status"] == "valid"
        assert audited[2][1] == {"scan": "SCAN_1", "record": "QR_TEST0000000001"}


class TestConcurrency:
    def test_concurrent_scans_lose_no_updates(self, ledger, store):
        events = [scan(f"SCAN_{i:03d}", verifier=f"v{i % 5}", at=T0 + timedelta(seconds=i))
                  for i in range(32)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(ledger.append, events))

        assert all(results)
        record = store.get("QR_TEST0000000001")
        assert record.scan_count == 32
        assert record.unique_verifier_count == 5
        assert record.last_seen_at == T0 + timedelta(seconds=31)
        assert len(store.events(record_id="QR_TEST0000000001")) == 32

    def test_concurrent_replays_count_once(self, ledger, store):
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: ledger.append(scan("SCAN_SAME")), range(16)))
        assert results.count(True) == 1
        assert store.get("QR_TEST0000000001").scan_count == 1

    def test_concurrent_scans_across_records(self, store):
        ids = [f"QR_TEST000000010{i}" for i in range(4)]
        for i, record_id in enumerate(ids):
            store.put(make_record(record_id, canonical=f'{{"assetId":"B{i}"}}'.encode(), asset_id=f"B{i}"))
        ledger = ScanLedger(store)
        events = [scan(f"SCAN_{n}", record_id=ids[n % 4]) for n in range(40)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(ledger.append, events))
        assert [store.get(record_id).scan_count for record_id in ids] == [10, 10, 10, 10]


class TestPersistence:
    def test_reload_keeps_records_and_events(self, tmp_path):
        path = tmp_path / "db.json"
        store = RecordStore(str(path))
        store.put(make_record())
        ScanLedger(store).append(scan("SCAN_1", verifier="v1"))

        reloaded = RecordStore(str(path))
        record = reloaded.get("QR_TEST0000000001")
        assert record.scan_count == 1
        assert record.verifiers == frozenset({"v1"})
        assert record.raster == b"\x89PNG-placeholder"
        assert reloaded.get_by_asset_id("A1").id == record.id
        assert reloaded.has_event("SCAN_1")
        assert ScanLedger(reloaded).append(scan("SCAN_1")) is False

    def test_unwritable_store_keeps_nothing(self, tmp_path):
        store = RecordStore(str(tmp_path / "missing" / "db.json"))
        with pytest.raises(StoreUnavailableError) as exc:
            store.put(make_record())
        assert exc.value.status_code == 503
        assert store.get("QR_TEST0000000001") is None

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "db.json"
        path.write_text("{not json")
        with pytest.raises(StoreUnavailableError):
            RecordStore(str(path))

    def test_duplicate_record_id(self, store):
        store.put(make_record())
        with pytest.raises(ValueError):
            store.put(make_record())

    def test_counter_failure_is_repaired_by_replay(self, ledger, store, monkeypatch):
        real = store.increment_counters
        calls = []

        def fail_once(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise RuntimeError("worker died")
            return real(*args, **kwargs)

        monkeypatch.setattr(store, "increment_counters", fail_once)
        with pytest.raises(RuntimeError):
            ledger.append(scan("SCAN_1", verifier="v1"))
        assert store.has_event("SCAN_1")
        assert store.get("QR_TEST0000000001").scan_count == 0

        assert ledger.append(scan("SCAN_1", verifier="v1")) is False
        record = store.get("QR_TEST0000000001")
        assert record.scan_count == 1
        assert record.verifiers == frozenset({"v1"})

        assert ledger.append(scan("SCAN_1")) is False
        assert store.get("QR_TEST0000000001").scan_count == 1
        assert len(calls) == 2

    def test_logged_but_uncounted_event_is_counted_on_reload(self, tmp_path):
        path = tmp_path / "db.json"
        store = RecordStore(str(path))
        store.put(make_record())
        # the event line reached disk but the process stopped before counting it
        store.append_event(scan("SCAN_1", verifier="v1"))
        assert store.get("QR_TEST0000000001").scan_count == 0

        reloaded = RecordStore(str(path))
        assert reloaded.get("QR_TEST0000000001").scan_count == 1
        assert reloaded.is_counted("SCAN_1")
        assert ScanLedger(reloaded).append(scan("SCAN_1")) is False
        assert reloaded.get("QR_TEST0000000001").scan_count == 1

    def test_failed_event_write_records_nothing(self, tmp_path, monkeypatch):
        store = RecordStore(str(tmp_path / "db.json"))
        store.put(make_record())
        ledger = ScanLedger(store)

        def disk_full(event):
            raise StoreUnavailableError("disk full")

        monkeypatch.setattr(store, "_append_line", disk_full)
        with pytest.raises(StoreUnavailableError):
            ledger.append(scan("SCAN_1"))
        assert not store.has_event("SCAN_1")
        assert store.get("QR_TEST0000000001").scan_count == 0

        monkeypatch.undo()
        assert ledger.append(scan("SCAN_1")) is True
        assert store.get("QR_TEST0000000001").scan_count == 1

    def test_scans_never_rewrite_the_records_file(self, tmp_path, monkeypatch):
        path = tmp_path / "db.json"
        store = RecordStore(str(path))
        store.put(make_record())
        ledger = ScanLedger(store)

        def no_rewrite(records):
            raise AssertionError("records file rewritten on a scan")

        monkeypatch.setattr(store, "_write_records", no_rewrite)
        for i in range(3):
            assert ledger.append(scan(f"SCAN_{i}", verifier="v1")) is True
        assert store.get("QR_TEST0000000001").scan_count == 3

        [doc] = json.loads(path.read_text())["records"]
        assert doc["scan_count"] == 0
        assert doc["verifiers"] == []
        lines = store.events_path.read_text().splitlines()
        assert [json.loads(line)["event_id"] for line in lines] == ["SCAN_0", "SCAN_1", "SCAN_2"]

    def test_torn_last_event_line_is_skipped(self, tmp_path):
        path = tmp_path / "db.json"
        store = RecordStore(str(path))
        store.put(make_record())
        ScanLedger(store).append(scan("SCAN_1"))
        with open(store.events_path, "a") as f:
            f.write('{"event_id": "SCAN_2", "fingerp')

        reloaded = RecordStore(str(path))
        assert reloaded.has_event("SCAN_1")
        assert not reloaded.has_event("SCAN_2")
        assert reloaded.get("QR_TEST0000000001").scan_count == 1

    def test_corrupt_event_line_before_the_end(self, tmp_path):
        path = tmp_path / "db.json"
        store = RecordStore(str(path))
        store.put(make_record())
        ScanLedger(store).append(scan("SCAN_1"))
        text = store.events_path.read_text()
        store.events_path.write_text("garbage\n" + text)
        with pytest.raises(StoreUnavailableError):
            RecordStore(str(path))


class TestEventQueries:
    def test_time_window(self, ledger, store):
        for day in range(5):
            ledger.append(scan(f"SCAN_{day}", at=T0 - timedelta(days=day)))
        window = store.events(record_id="QR_TEST0000000001", since=T0 - timedelta(days=2), until=T0)
        assert [e.event_id for e in window] == ["SCAN_0", "SCAN_1", "SCAN_2"]
