"""Map a decoded fingerprint back to a previously issued record."""

from dataclasses import dataclass

from qrtrack.logging import audit, get_logger, trace
from qrtrack.models import CodeRecord

log = get_logger("dedup")


@dataclass
class Resolution:
    record: CodeRecord | None
    matched_by: str | None = None  # "fingerprint" | "asset_id"

    @property
    def resolved(self) -> bool:
        return self.record is not None


class DedupResolver:
    """Exact fingerprint match first, then the secondary identifying field.

    Unresolved is an ordinary outcome, not an error.
    """

    def __init__(self, store):
        self.store = store

    @trace
    def resolve(self, fp: str | None, asset_id: str | None = None) -> Resolution:
        if fp:
            record = self.store.get_by_fingerprint(fp)
            if record is not None:
                audit("dedup.resolved", logger=log, record=record.id, matched_by="fingerprint")
                return Resolution(record, "fingerprint")
        if asset_id:
            record = self.store.get_by_asset_id(asset_id)
            if record is not None:
                audit("dedup.resolved", logger=log, record=record.id, matched_by="asset_id")
                return Resolution(record, "asset_id")
        audit("dedup.unresolved", logger=log, fingerprint=(fp or "")[:16], asset=asset_id)
        return Resolution(None)
