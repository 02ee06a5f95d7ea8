"""Payload shapes carried inside a code, and the one canonical serialization for all of them.

Three variants:
    AssetPayload   a JSON object with a non-empty identifying field (asset/component id)
    RecordPayload  any other JSON object (e.g. codes issued by a third party)
    RawPayload     bytes that did not parse as a JSON object

Canonical form of a JSON object is compact, key-sorted, ASCII-escaped JSON, so
field order never changes the bytes (and therefore never changes the fingerprint).
Raw payloads are canonical as-is.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field

from qrtrack.errors import ValidationError

# Checked in order; the first non-empty one identifies the asset.
IDENTIFYING_FIELDS = ("assetId", "asset_id", "componentId", "component_id")


def _identifier(fields: Mapping) -> str | None:
    for name in IDENTIFYING_FIELDS:
        value = fields.get(name)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


@dataclass(frozen=True)
class AssetPayload:
    fields: dict = field(hash=False)
    kind: str = "asset"

    @property
    def asset_id(self) -> str:
        return _identifier(self.fields)

    def to_json(self):
        return dict(self.fields)


@dataclass(frozen=True)
class RecordPayload:
    fields: dict = field(hash=False)
    kind: str = "record"

    @property
    def asset_id(self) -> None:
        return None

    def to_json(self):
        return dict(self.fields)


@dataclass(frozen=True)
class RawPayload:
    data: bytes
    kind: str = "raw"

    @property
    def asset_id(self) -> None:
        return None

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")

    def to_json(self):
        return {"raw_data": self.text}


Payload = AssetPayload | RecordPayload | RawPayload


def _canonical_json(fields: Mapping) -> bytes:
    try:
        text = json.dumps(fields, sort_keys=True, separators=(",", ":"),
                          ensure_ascii=True, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Payload is not JSON-serializable: {e}") from e
    return text.encode("ascii")


def canonicalize(payload: Payload) -> bytes:
    """Canonical bytes for any payload variant."""
    if isinstance(payload, RawPayload):
        return payload.data
    return _canonical_json(payload.fields)


def from_mapping(fields: Mapping) -> AssetPayload | RecordPayload:
    # Normalize nested mappings/tuples to plain JSON values once, up front.
    plain = json.loads(_canonical_json(fields))
    if _identifier(plain) is not None:
        return AssetPayload(fields=plain)
    return RecordPayload(fields=plain)


def for_generation(data) -> AssetPayload:
    """Validate a generation payload: a non-empty mapping with an identifying field."""
    if not isinstance(data, Mapping):
        raise ValidationError("Payload must be a JSON object",
                              details={"type": type(data).__name__})
    if not data:
        raise ValidationError("Payload must not be empty")
    payload = from_mapping(data)
    if not isinstance(payload, AssetPayload):
        raise ValidationError(
            "Payload must include a non-empty identifying field",
            details={"accepted_fields": list(IDENTIFYING_FIELDS)},
        )
    return payload


def parse_payload(data: bytes | str) -> Payload:
    """Interpret decoded barcode content: a JSON object if possible, raw bytes otherwise."""
    raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return RawPayload(data=raw)
    if isinstance(parsed, dict):
        try:
            return from_mapping(parsed)
        except ValidationError:
            return RawPayload(data=raw)
    return RawPayload(data=raw)
