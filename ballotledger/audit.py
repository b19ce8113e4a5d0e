import logging
from datetime import datetime
from typing import Any, Callable

from .errors import LedgerError
from .hashing import canonical_json, sha256_hex
from .ledger import Ledger
from .models import AuditEvent, Severity, utcnow
from .store import RecordStore

logger = logging.getLogger(__name__)

ANCHORED_SEVERITIES = (Severity.HIGH, Severity.CRITICAL)


class AuditLog:
    """Append-only audit trail; HIGH and CRITICAL entries are also
    anchored to the ledger when a ledger is configured."""

    def __init__(
        self,
        store: RecordStore,
        ledger: Ledger | None = None,
        anchor: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.anchor = anchor
        self.clock = clock

    def record(
        self,
        event_type: str,
        severity: Severity,
        payload: dict[str, Any],
        election_id: str | None = None,
        actor: str | None = None,
    ) -> AuditEvent:
        created_at = self.clock()
        entry = {
            "event_type": event_type,
            "severity": severity.value,
            "election_id": election_id,
            "actor": actor,
            "payload": payload,
            "timestamp": created_at.isoformat(),
        }
        entry_hash = sha256_hex(canonical_json(entry))
        anchored_tx_hash = None

        if self.anchor and self.ledger is not None and severity in ANCHORED_SEVERITIES:
            try:
                receipt = self.ledger.submit({"kind": "audit", "entry_hash": entry_hash})
                anchored_tx_hash = receipt.tx_hash
            except LedgerError as exc:
                logger.warning("Could not anchor audit event %s (%s): %s", event_type, entry_hash, exc)

        log = logger.warning if severity in ANCHORED_SEVERITIES else logger.info
        log("audit %s [%s] election=%s", event_type, severity.value, election_id)

        return self.store.add_audit_event(
            AuditEvent(
                event_type=event_type,
                severity=severity,
                payload=payload,
                entry_hash=entry_hash,
                election_id=election_id,
                actor=actor,
                anchored_tx_hash=anchored_tx_hash,
                created_at=created_at,
            )
        )

    def verify_entry(self, event: AuditEvent) -> bool:
        entry = {
            "event_type": event.event_type,
            "severity": event.severity.value,
            "election_id": event.election_id,
            "actor": event.actor,
            "payload": event.payload,
            "timestamp": event.created_at.isoformat(),
        }
        return sha256_hex(canonical_json(entry)) == event.entry_hash

    def list_events(self, election_id: str | None = None, limit: int = 100) -> list[AuditEvent]:
        return self.store.list_audit_events(election_id=election_id, limit=max(1, min(500, limit)))
