"""Record schemas for issued codes and scan events, with document (de)serialization."""

import base64
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_code_id() -> str:
    return f"QR_{uuid.uuid4().hex.upper()[:16]}"


def new_scan_id() -> str:
    return f"SCAN_{uuid.uuid4().hex.upper()[:16]}"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class RenderSettings:
    """Settings actually used to render a code (after overrides/template/defaults)."""

    size: int
    error_correction: str
    format: str
    dark_color: str
    light_color: str
    margin: int

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RenderSettings":
        return cls(**data)


@dataclass(frozen=True)
class CodeRecord:
    """One issued code.

    Everything above the counters is immutable once created. Counters are only
    changed by the scan ledger through the store's atomic increment, which
    swaps in a new instance.
    """

    id: str
    payload_canonical: bytes
    fingerprint: str
    render_settings: RenderSettings
    quality_score: float
    raster: bytes
    asset_id: str | None = None
    template_id: str | None = None
    template_version: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    created_by: str | None = None

    scan_count: int = 0
    verifiers: frozenset = frozenset()
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None

    @property
    def unique_verifier_count(self) -> int:
        return len(self.verifiers)

    def with_counters(self, delta: "CounterDelta") -> "CodeRecord":
        verifiers = self.verifiers
        if delta.verifier_id is not None and delta.verifier_id not in verifiers:
            verifiers = verifiers | {delta.verifier_id}
        first_seen = self.first_seen_at
        last_seen = self.last_seen_at
        if delta.seen_at is not None:
            if first_seen is None:
                first_seen = delta.seen_at
            if last_seen is None or delta.seen_at > last_seen:
                last_seen = delta.seen_at
        return replace(
            self,
            scan_count=self.scan_count + max(0, delta.scans),
            verifiers=verifiers,
            first_seen_at=first_seen,
            last_seen_at=last_seen,
        )

    def without_counters(self) -> "CodeRecord":
        """The record as issued, before any scan was counted."""
        return replace(self, scan_count=0, verifiers=frozenset(), first_seen_at=None, last_seen_at=None)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payload_canonical": self.payload_canonical.decode("utf-8", errors="surrogateescape"),
            "fingerprint": self.fingerprint,
            "render_settings": self.render_settings.to_dict(),
            "quality_score": self.quality_score,
            "raster": base64.b64encode(self.raster).decode("ascii"),
            "asset_id": self.asset_id,
            "template_id": self.template_id,
            "template_version": self.template_version,
            "created_at": _iso(self.created_at),
            "created_by": self.created_by,
            "scan_count": self.scan_count,
            "verifiers": sorted(self.verifiers),
            "first_seen_at": _iso(self.first_seen_at),
            "last_seen_at": _iso(self.last_seen_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CodeRecord":
        return cls(
            id=data["id"],
            payload_canonical=data["payload_canonical"].encode("utf-8", errors="surrogateescape"),
            fingerprint=data["fingerprint"],
            render_settings=RenderSettings.from_dict(data["render_settings"]),
            quality_score=data["quality_score"],
            raster=base64.b64decode(data["raster"]),
            asset_id=data.get("asset_id"),
            template_id=data.get("template_id"),
            template_version=data.get("template_version"),
            created_at=_parse_dt(data.get("created_at")),
            created_by=data.get("created_by"),
            scan_count=data.get("scan_count", 0),
            verifiers=frozenset(data.get("verifiers", ())),
            first_seen_at=_parse_dt(data.get("first_seen_at")),
            last_seen_at=_parse_dt(data.get("last_seen_at")),
        )


@dataclass(frozen=True)
class CounterDelta:
    scans: int = 1
    verifier_id: str | None = None
    seen_at: datetime | None = None

    @classmethod
    def for_event(cls, event: "ScanEvent") -> "CounterDelta":
        return cls(scans=1, verifier_id=event.verifier_id, seen_at=event.timestamp)


@dataclass(frozen=True)
class ScanEvent:
    """One verification attempt. Append-only; never mutated once recorded."""

    event_id: str
    fingerprint: str | None
    record_id: str | None
    decode_quality: float
    timestamp: datetime = field(default_factory=utcnow)
    verifier_id: str | None = None
    location: dict | None = None
    device_info: str | None = None
    context: dict = field(default_factory=dict)
    scanned_data: str | None = None
    validation_status: str = "unknown"
    processing_time_ms: float | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = _iso(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ScanEvent":
        data = dict(data)
        data["timestamp"] = _parse_dt(data.get("timestamp"))
        return cls(**data)
