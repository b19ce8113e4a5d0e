import csv
import io
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Iterable

from .audit import AuditLog
from .elections import ElectionStateMachine
from .errors import (
    AlreadyCommitted,
    AlreadyRevealed,
    BallotLedgerError,
    DuplicateWallet,
    NotEligible,
    NotFound,
    ValidationError,
)
from .hashing import normalize_wallet, validate_wallet
from .locks import ElectionLocks
from .models import (
    BulkRegistrationReport,
    RegistrationRow,
    Severity,
    VoterRecord,
    utcnow,
)
from .store import RecordStore

logger = logging.getLogger(__name__)


def parse_csv(text: str) -> list[dict[str, str]]:
    """Parse ``voterId,walletAddress`` lines from a bulk upload.

    Blank lines are skipped. Short rows are kept with empty fields so
    they show up as individual failures in the registration report.
    """
    entries: list[dict[str, str]] = []
    for row in csv.reader(io.StringIO(text or "")):
        cells = [c.strip() for c in row]
        if not any(cells):
            continue
        if cells[0].lower() in ("voterid", "voter_id") and len(entries) == 0:
            continue
        entries.append(
            {
                "voterId": cells[0] if len(cells) > 0 else "",
                "walletAddress": cells[1] if len(cells) > 1 else "",
            }
        )
    return entries


class EligibilityRegistry:
    def __init__(
        self,
        store: RecordStore,
        locks: ElectionLocks,
        elections: ElectionStateMachine,
        audit: AuditLog,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.locks = locks
        self.elections = elections
        self.audit = audit
        self.clock = clock

    def register(
        self,
        election_id: str,
        voter_id: str,
        wallet_address: str,
        actor: str | None = None,
    ) -> VoterRecord:
        voter_id = (voter_id or "").strip() if isinstance(voter_id, str) else ""
        if not voter_id:
            raise ValidationError("voterId is required")
        wallet = validate_wallet(wallet_address)

        with self.locks.hold(election_id):
            self.elections.require_registration_phase(election_id)

            holder = self.store.find_voter_by_wallet(election_id, wallet)
            if holder is not None and holder.voter_id != voter_id:
                raise DuplicateWallet(f"Wallet {wallet} is already registered to another voter")

            existing = self.store.get_voter(election_id, voter_id)
            if existing is not None:
                if existing.wallet_address == wallet:
                    return existing
                if existing.committed:
                    raise AlreadyCommitted("Voter has already committed; wallet cannot change")
                updated = replace(existing, wallet_address=wallet)
                self.store.put_voter(updated)
                self.audit.record(
                    "voter_wallet_changed",
                    Severity.MEDIUM,
                    {"voter_id": voter_id, "from": existing.wallet_address, "to": wallet},
                    election_id=election_id,
                    actor=actor,
                )
                return updated

            record = VoterRecord(
                election_id=election_id,
                voter_id=voter_id,
                wallet_address=wallet,
                registered_at=self.clock(),
            )
            self.store.put_voter(record)
            self.elections.adjust_counts(election_id, total_voters=1)
            logger.info("Registered voter %s in election %s", voter_id, election_id)
            return record

    def bulk_register(
        self,
        election_id: str,
        entries: Iterable[dict[str, Any]],
        actor: str | None = None,
    ) -> BulkRegistrationReport:
        # Election-level problems fail the whole request before any row runs.
        self.elections.require_registration_phase(election_id)

        report = BulkRegistrationReport(election_id=election_id)
        for index, entry in enumerate(entries, start=1):
            entry = entry if isinstance(entry, dict) else {}
            voter_id = entry.get("voterId", entry.get("voter_id"))
            wallet = entry.get("walletAddress", entry.get("wallet_address"))
            try:
                record = self.register(election_id, voter_id, wallet, actor=actor)
            except BallotLedgerError as exc:
                report.rows.append(
                    RegistrationRow(
                        index=index,
                        voter_id=voter_id,
                        wallet_address=wallet,
                        ok=False,
                        error=exc.message,
                        code=exc.code,
                    )
                )
                continue
            report.rows.append(
                RegistrationRow(
                    index=index,
                    voter_id=record.voter_id,
                    wallet_address=record.wallet_address,
                    ok=True,
                )
            )
        if report.failed:
            logger.info(
                "Bulk registration for %s: %s ok, %s failed", election_id, report.registered, report.failed
            )
        self.audit.record(
            "voters_bulk_registered",
            Severity.LOW,
            {"registered": report.registered, "failed": report.failed},
            election_id=election_id,
            actor=actor,
        )
        return report

    def revoke(self, election_id: str, voter_id: str, actor: str | None = None) -> VoterRecord:
        with self.locks.hold(election_id):
            self.elections.require_registration_phase(election_id)
            record = self.get_voter(election_id, voter_id)
            if record.committed:
                raise AlreadyCommitted("Voter has already committed; eligibility cannot be revoked")
            if not record.eligible:
                return record
            updated = replace(record, eligible=False)
            self.store.put_voter(updated)
            self.audit.record(
                "voter_revoked",
                Severity.MEDIUM,
                {"voter_id": voter_id},
                election_id=election_id,
                actor=actor,
            )
            return updated

    def get_voter(self, election_id: str, voter_id: str) -> VoterRecord:
        record = self.store.get_voter(election_id, voter_id)
        if record is None:
            raise NotFound(f"Voter {voter_id} is not registered for election {election_id}")
        return record

    def list_voters(self, election_id: str) -> list[VoterRecord]:
        self.elections.get(election_id)
        return self.store.list_voters(election_id)

    def is_eligible(self, election_id: str, wallet_address: str) -> bool:
        if not isinstance(wallet_address, str) or not wallet_address.strip():
            return False
        record = self.store.find_voter_by_wallet(election_id, normalize_wallet(wallet_address))
        return bool(record and record.eligible)

    def check(self, election_id: str, wallet_address: str) -> dict[str, Any]:
        self.elections.get(election_id)
        record = None
        if isinstance(wallet_address, str) and wallet_address.strip():
            record = self.store.find_voter_by_wallet(election_id, normalize_wallet(wallet_address))
        return {
            "electionId": election_id,
            "walletAddress": normalize_wallet(wallet_address or ""),
            "voterId": record.voter_id if record else None,
            "eligible": bool(record and record.eligible),
            "committed": bool(record and record.committed),
            "revealed": bool(record and record.revealed),
        }

    # The methods below are driven by the commitment engine only; they
    # are where one-voter-one-vote is enforced.

    def mark_committed(self, election_id: str, voter_id: str) -> VoterRecord:
        with self.locks.hold(election_id):
            record = self.get_voter(election_id, voter_id)
            if record.committed:
                raise AlreadyCommitted(f"Voter {voter_id} has already committed a vote")
            if not record.eligible:
                raise NotEligible(f"Voter {voter_id} is not eligible")
            updated = replace(record, committed=True)
            self.store.put_voter(updated)
            return updated

    def mark_revealed(self, election_id: str, voter_id: str) -> VoterRecord:
        with self.locks.hold(election_id):
            record = self.get_voter(election_id, voter_id)
            if record.revealed:
                raise AlreadyRevealed(f"Voter {voter_id} has already revealed")
            if not record.committed:
                raise NotFound(f"Voter {voter_id} has no commitment to reveal")
            updated = replace(record, revealed=True)
            self.store.put_voter(updated)
            return updated

    def release_commitment(self, election_id: str, voter_id: str) -> None:
        with self.locks.hold(election_id):
            record = self.store.get_voter(election_id, voter_id)
            if record is not None and record.committed and not record.revealed:
                self.store.put_voter(replace(record, committed=False))

    def release_reveal(self, election_id: str, voter_id: str) -> None:
        with self.locks.hold(election_id):
            record = self.store.get_voter(election_id, voter_id)
            if record is not None and record.revealed:
                self.store.put_voter(replace(record, revealed=False))
