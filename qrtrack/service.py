"""Request pipelines: generate a code, verify a captured image, read a code back.

Each request runs sequentially through its pipeline; concurrency only comes
from running many requests at once. All request context (verifier, device,
location, auth token) is passed in explicitly.
"""

import base64
import json
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field

from qrtrack.analytics import AnalyticsAggregator
from qrtrack.cache import MemoryCache, RedisCache
from qrtrack.config import Settings, get_settings
from qrtrack.decoder import DecodedCode, Decoder
from qrtrack.dedup import DedupResolver, Resolution
from qrtrack.encoder import Encoder, GenerationRequest
from qrtrack.errors import CodeNotFoundError, NoCodeFoundError, StoreUnavailableError, ValidationError
from qrtrack.ledger import ScanLedger
from qrtrack.logging import audit, degraded, get_logger, trace
from qrtrack.models import CodeRecord, ScanEvent, new_code_id, new_scan_id
from qrtrack.payload import Payload
from qrtrack.registry import AssetRegistryClient
from qrtrack.store import RecordStore
from qrtrack.template import MemoryTemplateProvider, load_templates

log = get_logger("service")

_MIME = {"PNG": "png", "JPEG": "jpeg", "BMP": "bmp"}


@dataclass
class GenerationResult:
    code_id: str
    image_bytes: bytes
    format: str
    quality_score: float
    resolved_settings: dict
    fingerprint: str
    template_used: str = "Standard"
    optimization_applied: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def data_url(self) -> str:
        encoded = base64.b64encode(self.image_bytes).decode("ascii")
        return f"data:image/{_MIME.get(self.format, 'png')};base64,{encoded}"

    def to_dict(self) -> dict:
        return {
            "qr_id": self.code_id,
            "qr_data_url": self.data_url,
            "image_base64": base64.b64encode(self.image_bytes).decode("ascii"),
            "size": self.resolved_settings["size"],
            "format": self.format,
            "quality_score": self.quality_score,
            "template_used": self.template_used,
            "resolved_settings": self.resolved_settings,
            "metadata": {
                "data_hash": self.fingerprint,
                "file_size_bytes": len(self.image_bytes),
                "optimization_applied": self.optimization_applied,
                "warnings": self.warnings,
            },
        }


@dataclass
class VerificationRequest:
    image_bytes: bytes | None = None
    image_data: str | None = None
    image_url: str | None = None
    event_id: str | None = None
    verifier_id: str | None = None
    location: dict | None = None
    device_info: str | None = None
    context: dict = field(default_factory=dict)
    auth_token: str | None = None

    @property
    def has_source(self) -> bool:
        return bool(self.image_bytes or self.image_data or self.image_url)


@dataclass
class VerificationResult:
    scan_id: str
    decoded_payload: Payload
    matched_record: CodeRecord | None
    scan_quality: float
    fingerprint: str
    processing_time_ms: float
    replayed: bool = False
    asset_details: dict | None = None

    @property
    def resolved(self) -> bool:
        return self.matched_record is not None

    @property
    def validation_status(self) -> str:
        return "valid" if self.resolved else "unknown"

    def to_dict(self) -> dict:
        record = self.matched_record
        body = {
            "scan_id": self.scan_id,
            "qr_data": self.decoded_payload.to_json(),
            "resolved": self.resolved,
            "qr_record_found": self.resolved,
            "scan_quality": self.scan_quality,
            "validation_status": self.validation_status,
            "replayed": self.replayed,
            "component_info": None,
            "scan_metadata": {
                "data_hash": self.fingerprint,
                "processing_time_ms": round(self.processing_time_ms, 1),
            },
        }
        if record is not None:
            body["component_info"] = {
                "qr_id": record.id,
                "component_id": record.asset_id,
                "last_scan": record.last_seen_at.isoformat() if record.last_seen_at else None,
                "total_scans": record.scan_count,
                "unique_scanners": record.unique_verifier_count,
            }
        if self.asset_details is not None:
            body["component_details"] = self.asset_details
        return body


def record_view(record: CodeRecord) -> dict:
    def iso(value):
        return value.isoformat() if value is not None else None

    return {
        "qr_id": record.id,
        "qr_data": json.loads(record.payload_canonical),
        "component_id": record.asset_id,
        "data_hash": record.fingerprint,
        "qr_properties": {
            **record.render_settings.to_dict(),
            "quality_score": record.quality_score,
            "template_id": record.template_id,
            "template_version": record.template_version,
        },
        "statistics": {
            "scan_count": record.scan_count,
            "unique_scanners": record.unique_verifier_count,
            "first_scanned_at": iso(record.first_seen_at),
            "last_scanned_at": iso(record.last_seen_at),
        },
        "created_at": iso(record.created_at),
        "created_by": record.created_by,
    }


class CodeService:
    def __init__(
        self,
        store: RecordStore,
        templates,
        settings: Settings | None = None,
        cache=None,
        registry: AssetRegistryClient | None = None,
        decoder: Decoder | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.templates = templates
        self.cache = cache
        self.registry = registry
        self.encoder = Encoder(templates, self.settings)
        self.decoder = decoder or Decoder(
            max_dimension=self.settings.max_decode_dimension,
            fetch_timeout=self.settings.image_fetch_timeout_seconds,
        )
        self.dedup = DedupResolver(store)
        self.ledger = ScanLedger(store)
        self.analytics = AnalyticsAggregator(store, window_days=self.settings.analytics_window_days)
        self._refresh_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._refresh_guard = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "CodeService":
        settings = settings or get_settings()
        templates = load_templates(settings.templates_path) if settings.templates_path else MemoryTemplateProvider()
        cache = RedisCache.from_url(settings.redis_url) if settings.redis_url else MemoryCache()
        registry = None
        if settings.asset_registry_url:
            registry = AssetRegistryClient(settings.asset_registry_url,
                                           timeout=settings.asset_registry_timeout_seconds)
        return cls(RecordStore(settings.store_path), templates, settings=settings,
                   cache=cache, registry=registry)

    # -- cache side channel ------------------------------------------------

    def _cache_get(self, key: str) -> bytes | None:
        if self.cache is None:
            return None
        try:
            return self.cache.get(key)
        except StoreUnavailableError as e:
            degraded("cache.read_failed", logger=log, key=key, error=e.message)
            return None

    def _cache_set(self, key: str, value: bytes):
        if self.cache is None:
            return
        try:
            self.cache.set(key, value, self.settings.cache_ttl_seconds)
        except StoreUnavailableError as e:
            degraded("cache.write_failed", logger=log, key=key, error=e.message)

    def _cache_record(self, record: CodeRecord):
        self._cache_set(f"code:{record.id}", json.dumps(record.to_dict()).encode("utf-8"))
        self._cache_set(f"fp:{record.fingerprint}", record.id.encode("ascii"))

    def _refresh_cached(self, record_id: str) -> CodeRecord | None:
        """Re-read a record and re-cache it.

        Refreshes of one record are serialized and each reads the store inside
        the lock, so the last write to `code:<id>` is never older than an
        earlier one. Ledger increments do not take this lock.
        """
        with self._refresh_guard:
            lock = self._refresh_locks[record_id]
        with lock:
            record = self.store.get(record_id)
            if record is not None:
                self._cache_record(record)
        return record

    # -- generation --------------------------------------------------------

    @trace
    def generate(self, request: GenerationRequest, created_by: str | None = None) -> GenerationResult:
        encoded = self.encoder.encode(request)
        template = encoded.template
        record = CodeRecord(
            id=new_code_id(),
            payload_canonical=encoded.canonical,
            fingerprint=encoded.fingerprint,
            render_settings=encoded.settings,
            quality_score=encoded.quality_score,
            raster=encoded.raster,
            asset_id=encoded.payload.asset_id,
            template_id=template.template_id if template else None,
            template_version=template.version if template else None,
            created_by=created_by,
        )
        self.store.put(record)

        if template is not None:
            self._record_template_usage(template.template_id)
        self._cache_record(record)

        audit("code.generated", logger=log, code=record.id, asset=record.asset_id,
              bytes=len(record.raster), quality=record.quality_score)
        return GenerationResult(
            code_id=record.id,
            image_bytes=record.raster,
            format=encoded.settings.format,
            quality_score=record.quality_score,
            resolved_settings=encoded.settings.to_dict(),
            fingerprint=record.fingerprint,
            template_used=template.label if template else "Standard",
            optimization_applied=encoded.optimization_applied,
            warnings=list(encoded.warnings),
        )

    def _record_template_usage(self, template_id: str):
        record_usage = getattr(self.templates, "record_usage", None)
        if record_usage is None:
            return
        try:
            record_usage(template_id)
        except Exception as e:
            degraded("template.usage_failed", logger=log, template=template_id, error=str(e))

    # -- verification ------------------------------------------------------

    def _resolve(self, decoded: DecodedCode) -> Resolution:
        cached_id = self._cache_get(f"fp:{decoded.fingerprint}")
        if cached_id:
            record = self.store.get(cached_id.decode("ascii"))
            if record is not None:
                return Resolution(record, "fingerprint")
        return self.dedup.resolve(decoded.fingerprint, decoded.payload.asset_id)

    def _record_failure(self, request: VerificationRequest, event_id: str, start: float, status: str):
        self.ledger.append(ScanEvent(
            event_id=event_id,
            fingerprint=None,
            record_id=None,
            decode_quality=0.0,
            verifier_id=request.verifier_id,
            location=request.location,
            device_info=request.device_info,
            context=dict(request.context),
            validation_status=status,
            processing_time_ms=(time.perf_counter() - start) * 1000,
        ))

    @trace
    def verify(self, request: VerificationRequest) -> VerificationResult:
        """Decode, resolve, record.

        Every attempt leaves one scan event. An unreadable image or a scan
        without a code is recorded first, then reported. A request without
        any image source is not an attempt and records nothing.
        """
        if not request.has_source:
            raise ValidationError("Either image bytes, image_data or image_url is required")
        start = time.perf_counter()
        event_id = request.event_id or new_scan_id()

        try:
            image = self.decoder.read_source(request.image_bytes, request.image_data, request.image_url)
            decoded = self.decoder.decode(image)
        except NoCodeFoundError:
            self._record_failure(request, event_id, start, "no_code")
            raise
        except ValidationError:
            self._record_failure(request, event_id, start, "invalid_image")
            raise

        resolution = self._resolve(decoded)
        record_id = resolution.record.id if resolution.resolved else None
        event = ScanEvent(
            event_id=event_id,
            fingerprint=decoded.fingerprint,
            record_id=record_id,
            decode_quality=decoded.confidence,
            verifier_id=request.verifier_id,
            location=request.location,
            device_info=request.device_info,
            context=dict(request.context),
            scanned_data=decoded.text,
            validation_status="valid" if resolution.resolved else "unknown",
            processing_time_ms=(time.perf_counter() - start) * 1000,
        )
        appended = self.ledger.append(event)

        record = self._refresh_cached(record_id) if record_id else None

        asset_details = None
        asset_id = decoded.payload.asset_id
        if record is not None and asset_id and self.registry is not None:
            asset_details = self.registry.fetch_asset_details(asset_id, request.auth_token)

        elapsed = (time.perf_counter() - start) * 1000
        audit("code.verified", logger=log, scan=event_id, record=record_id,
              matched_by=resolution.matched_by, quality=decoded.confidence, replayed=not appended)
        return VerificationResult(
            scan_id=event_id,
            decoded_payload=decoded.payload,
            matched_record=record,
            scan_quality=decoded.confidence,
            fingerprint=decoded.fingerprint,
            processing_time_ms=elapsed,
            replayed=not appended,
            asset_details=asset_details,
        )

    # -- read path ---------------------------------------------------------

    @trace
    def get_code(self, code_id: str, include_scans: bool = False, include_analytics: bool = False) -> dict:
        record = None
        cached = self._cache_get(f"code:{code_id}")
        if cached:
            record = CodeRecord.from_dict(json.loads(cached))
        if record is None:
            record = self.store.get(code_id)
        if record is None:
            raise CodeNotFoundError(f"QR code {code_id} not found", details={"qr_id": code_id})

        view = record_view(record)
        if include_scans:
            recent = self.store.events(record_id=record.id)[-self.settings.recent_scans_limit:]
            view["recent_scans"] = [
                {k: v for k, v in e.to_dict().items() if k not in ("scanned_data", "device_info")}
                for e in reversed(recent)
            ]
        if include_analytics:
            view["analytics"] = self.analytics.summarize(record.id).to_dict()
        return view
