"""Read-side usage statistics computed on demand from the scan event history."""

from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from qrtrack.logging import get_logger, trace
from qrtrack.models import ScanEvent, utcnow

log = get_logger("analytics")

# Checked in order: iPad user agents also contain "Mobile"
_DEVICE_MARKERS = (
    ("tablet", ("tablet", "ipad")),
    ("mobile", ("mobile", "android", "iphone")),
    ("desktop", ("desktop", "windows", "macintosh", "x11", "linux")),
)

# Failed verifications by validation status; anything else without a record is "unresolved"
FAILURE_STATUSES = ("no_code", "invalid_image")


def classify_device(device_info: str | None) -> str:
    """Coarse device class from a user-agent style string."""
    if not device_info:
        return "unknown"
    ua = device_info.lower()
    for device_class, markers in _DEVICE_MARKERS:
        if any(marker in ua for marker in markers):
            return device_class
    return "unknown"


def location_bucket(location: dict | None) -> str | None:
    """Round coordinates to a ~1 km grid cell key ("lat*100,lon*100")."""
    if not location:
        return None
    lat = location.get("latitude")
    lon = location.get("longitude")
    if lat is None or lon is None:
        return None
    try:
        return f"{round(float(lat) * 100)},{round(float(lon) * 100)}"
    except (TypeError, ValueError):
        return None


@dataclass
class AnalyticsReport:
    record_id: str
    total_scans: int = 0
    unique_verifiers: int = 0
    average_scan_quality: float = 0.0
    scan_frequency: float = 0.0
    window_days: int = 30
    daily_counts: dict[str, int] = field(default_factory=dict)
    location_distribution: dict[str, int] = field(default_factory=dict)
    device_distribution: dict[str, int] = field(default_factory=dict)
    temporal_pattern: dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["temporal_pattern"] = {str(h): n for h, n in self.temporal_pattern.items()}
        return data


class AnalyticsAggregator:
    """Pure reader over the store's event log; safe to run alongside writers."""

    def __init__(self, store, window_days: int = 30):
        self.store = store
        self.window_days = window_days

    @trace
    def summarize(self, record_id: str, since: datetime | None = None,
                  until: datetime | None = None, now: datetime | None = None) -> AnalyticsReport:
        events = self.store.events(record_id=record_id, since=since, until=until)
        return self.report(record_id, events, now=now)

    def report(self, record_id: str, events: list[ScanEvent], now: datetime | None = None) -> AnalyticsReport:
        now = now or utcnow()
        report = AnalyticsReport(record_id=record_id, window_days=self.window_days)
        report.total_scans = len(events)
        report.unique_verifiers = len({e.verifier_id for e in events if e.verifier_id is not None})
        if events:
            report.average_scan_quality = round(sum(e.decode_quality for e in events) / len(events), 3)

        report.daily_counts = self.daily_counts(events, now)
        report.scan_frequency = round(sum(report.daily_counts.values()) / self.window_days, 3)

        report.device_distribution = dict(Counter(classify_device(e.device_info) for e in events))
        buckets = (location_bucket(e.location) for e in events)
        report.location_distribution = dict(Counter(b for b in buckets if b is not None))
        report.temporal_pattern = dict(sorted(Counter(e.timestamp.hour for e in events).items()))
        return report

    def daily_counts(self, events: list[ScanEvent], now: datetime) -> dict[str, int]:
        """Dense per-day counts for the trailing window ending today, oldest first."""
        today = now.date()
        days = [today - timedelta(days=offset) for offset in range(self.window_days - 1, -1, -1)]
        counts = {day.isoformat(): 0 for day in days}
        for event in events:
            key = event.timestamp.date().isoformat()
            if key in counts:
                counts[key] += 1
        return counts

    @trace
    def failure_breakdown(self, since: datetime | None = None) -> dict[str, int]:
        """Counts of failed verifications across all records."""
        breakdown = {status: 0 for status in FAILURE_STATUSES}
        breakdown["unresolved"] = 0
        for event in self.store.events(since=since, unresolved=True):
            status = event.validation_status if event.validation_status in FAILURE_STATUSES else "unresolved"
            breakdown[status] += 1
        return breakdown
