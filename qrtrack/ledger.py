"""Scan ledger: append-only verification events plus per-record counters."""

from qrtrack.logging import audit, get_logger, trace
from qrtrack.models import CounterDelta, ScanEvent

log = get_logger("ledger")


class ScanLedger:
    """Records each scan event once and keeps the matched record's counters in step.

    Appending an event id that was already recorded changes nothing, so callers
    can replay after a timeout without double counting. If an earlier attempt
    recorded the event but never got to its counter update, the replay applies
    it; the store counts each event id at most once. Counter updates go through
    the store's per-record atomic increment, so concurrent scans of the same
    record never lose an update, and scans of different records never wait on
    each other. An append that committed is never rolled back.
    """

    def __init__(self, store):
        self.store = store

    @trace
    def append(self, event: ScanEvent) -> bool:
        """Returns True when the event was new, False for a replayed event id."""
        appended = self.store.append_event(event)
        if not appended:
            audit("scan.duplicate", logger=log, scan=event.event_id, record=event.record_id)

        if event.record_id is not None and not self.store.is_counted(event.event_id):
            updated = self.store.increment_counters(
                event.record_id, CounterDelta.for_event(event), event_id=event.event_id)
            if updated is None:
                log.warning("scan %s references unknown record %s", event.event_id, event.record_id)
            else:
                audit("scan.counted", logger=log, scan=event.event_id, record=updated.id,
                      scan_count=updated.scan_count,
                      unique_verifiers=updated.unique_verifier_count,
                      repaired=not appended)

        if appended:
            audit("scan.recorded", logger=log, scan=event.event_id, record=event.record_id,
                  status=event.validation_status, quality=event.decode_quality)
        return appended
