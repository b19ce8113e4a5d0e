import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable

from .audit import AuditLog
from .elections import ElectionStateMachine
from .errors import (
    AlreadyCommitted,
    AlreadyRevealed,
    InvalidReveal,
    LedgerError,
    LedgerSubmissionFailed,
    NotEligible,
    NotFound,
    RevealTooLate,
    UnknownCandidate,
    ValidationError,
)
from .hashing import (
    build_commitment,
    commitment_matches,
    generate_salt,
    normalize_salt,
    normalize_wallet,
)
from .ledger import Ledger
from .locks import ElectionLocks
from .models import (
    Commitment,
    CommitmentReceipt,
    ElectionStatus,
    LedgerReceipt,
    RecordStatus,
    Reveal,
    Severity,
    utcnow,
)
from .registry import EligibilityRegistry
from .signer import Signer
from .store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_PENDING_TIMEOUT_SECONDS = 120


class CommitmentEngine:
    """Accepts commitments while an election is open and reveals once
    it has closed.

    Local state is reserved under the election lock, the ledger is
    called with the lock released, and the reservation is then either
    confirmed with the transaction reference or rolled back. A failed or
    timed-out submission therefore leaves the voter free to retry.

    A reservation left pending longer than ``pending_timeout`` seconds
    (the worker died mid-submission) is treated as abandoned and
    released by the next attempt for that voter or by the tally.
    """

    def __init__(
        self,
        store: RecordStore,
        locks: ElectionLocks,
        elections: ElectionStateMachine,
        registry: EligibilityRegistry,
        ledger: Ledger,
        audit: AuditLog,
        signer: Signer | None = None,
        clock: Callable[[], datetime] = utcnow,
        pending_timeout: int = DEFAULT_PENDING_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.locks = locks
        self.elections = elections
        self.registry = registry
        self.ledger = ledger
        self.audit = audit
        self.signer = signer
        self.clock = clock
        self.pending_timeout = pending_timeout

    @staticmethod
    def build_commitment(choice: str, salt: str) -> str:
        return build_commitment(choice, salt)

    def commit(
        self,
        election_id: str,
        voter_id: str,
        wallet_address: str,
        choice: str,
        salt: str | None = None,
    ) -> CommitmentReceipt:
        salt = normalize_salt(salt) if salt else generate_salt()

        with self.locks.hold(election_id):
            election = self.elections.require_commit_window(election_id)
            wallet = normalize_wallet(wallet_address or "")
            if not self.registry.is_eligible(election_id, wallet):
                raise NotEligible("Wallet is not eligible to vote in this election")
            record = self.registry.get_voter(election_id, voter_id)
            if record.wallet_address != wallet:
                raise NotEligible("Wallet is not registered to this voter")
            if self.release_stale(election_id, voter_id):
                record = self.registry.get_voter(election_id, voter_id)
            if record.committed or self.store.get_commitment(election_id, voter_id) is not None:
                raise AlreadyCommitted(f"Voter {voter_id} has already committed a vote")
            if choice not in election.candidate_names:
                raise UnknownCandidate(f"{choice!r} is not a candidate in this election")

            commitment = Commitment(
                election_id=election_id,
                voter_id=voter_id,
                commitment_hash=build_commitment(choice, salt),
                created_at=self.clock(),
                submitted_by=self.signer.current_address() if self.signer else None,
            )
            self.store.put_commitment(commitment)
            self.registry.mark_committed(election_id, voter_id)
            self.elections.adjust_counts(election_id, votes_committed=1)

        receipt = self._submit(
            {"kind": "commit", "election": election_id, "commitment": commitment.commitment_hash},
            rollback=lambda: self._rollback_commit(election_id, voter_id, commitment),
            failure_event="commit_ledger_failure",
            election_id=election_id,
            voter_id=voter_id,
        )

        with self.locks.hold(election_id):
            if not _same_reservation(self.store.get_commitment(election_id, voter_id), commitment):
                raise LedgerSubmissionFailed(
                    f"Commitment of voter {voter_id} was released before tx {receipt.tx_hash} confirmed; "
                    "please retry"
                )
            confirmed = replace(
                commitment,
                status=RecordStatus.CONFIRMED,
                tx_hash=receipt.tx_hash,
                block_number=receipt.block_number,
            )
            self.store.put_commitment(confirmed)

        logger.info("Voter %s committed in election %s (tx %s)", voter_id, election_id, receipt.tx_hash)
        return CommitmentReceipt(
            election_id=election_id,
            voter_id=voter_id,
            commitment=confirmed.commitment_hash,
            salt=salt,
            transaction_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            submitted_by=confirmed.submitted_by,
            timestamp=confirmed.created_at,
        )

    def reveal(self, election_id: str, voter_id: str, choice: str, salt: str) -> bool:
        mismatch = None
        with self.locks.hold(election_id):
            election = self.elections.require_reveal_window(election_id)
            self.release_stale(election_id, voter_id)
            commitment = self.store.get_commitment(election_id, voter_id)
            if commitment is None or commitment.status != RecordStatus.CONFIRMED:
                raise NotFound(f"No confirmed commitment for voter {voter_id}")
            record = self.registry.get_voter(election_id, voter_id)
            tallied = election.status == ElectionStatus.TALLIED
            if record.revealed and not tallied:
                raise AlreadyRevealed(f"Voter {voter_id} has already revealed")

            try:
                matches = commitment_matches(choice, salt, commitment.commitment_hash)
            except ValidationError:
                matches = False
            if not matches:
                mismatch = commitment
            elif tallied:
                if not record.revealed:
                    raise RevealTooLate("Tally already published; this reveal was not counted")
                # Re-verification after publication: nothing is mutated.
                return True
            else:
                reveal = Reveal(
                    election_id=election_id,
                    voter_id=voter_id,
                    choice=choice,
                    salt=normalize_salt(salt),
                    created_at=self.clock(),
                )
                self.store.put_reveal(reveal)
                self.registry.mark_revealed(election_id, voter_id)
                self.elections.adjust_counts(election_id, votes_revealed=1)

        if mismatch is not None:
            self.audit.record(
                "reveal_mismatch",
                Severity.HIGH,
                {"voter_id": voter_id, "commitment": mismatch.commitment_hash, "tx_hash": mismatch.tx_hash},
                election_id=election_id,
                actor=voter_id,
            )
            raise InvalidReveal("Revealed choice and salt do not match the stored commitment")

        receipt = self._submit(
            {
                "kind": "reveal",
                "election": election_id,
                "commitment": commitment.commitment_hash,
                "choice": reveal.choice,
                "salt": reveal.salt,
            },
            rollback=lambda: self._rollback_reveal(election_id, voter_id, reveal),
            failure_event="reveal_ledger_failure",
            election_id=election_id,
            voter_id=voter_id,
        )

        with self.locks.hold(election_id):
            if not _same_reservation(self.store.get_reveal(election_id, voter_id), reveal):
                raise LedgerSubmissionFailed(
                    f"Reveal of voter {voter_id} was released before tx {receipt.tx_hash} confirmed; "
                    "please retry"
                )
            self.store.put_reveal(
                replace(
                    reveal,
                    status=RecordStatus.CONFIRMED,
                    tx_hash=receipt.tx_hash,
                    block_number=receipt.block_number,
                )
            )
        logger.info("Voter %s revealed in election %s (tx %s)", voter_id, election_id, receipt.tx_hash)
        return True

    def get_commitment(self, election_id: str, voter_id: str) -> Commitment:
        commitment = self.store.get_commitment(election_id, voter_id)
        if commitment is None:
            raise NotFound(f"No commitment for voter {voter_id}")
        return commitment

    def get_reveal(self, election_id: str, voter_id: str) -> Reveal:
        reveal = self.store.get_reveal(election_id, voter_id)
        if reveal is None:
            raise NotFound(f"No reveal for voter {voter_id}")
        return reveal

    def release_stale(self, election_id: str, voter_id: str | None = None) -> int:
        """Roll back pending reservations older than ``pending_timeout``.

        Scoped to one voter when ``voter_id`` is given, otherwise to the
        whole election. Returns the number of reservations released.
        """
        cutoff = self.clock() - timedelta(seconds=self.pending_timeout)
        released = 0
        with self.locks.hold(election_id):
            if voter_id is None:
                commitments = self.store.list_commitments(election_id)
                reveals = self.store.list_reveals(election_id)
            else:
                commitments = [self.store.get_commitment(election_id, voter_id)]
                reveals = [self.store.get_reveal(election_id, voter_id)]

            for reveal in reveals:
                if reveal is not None and reveal.status == RecordStatus.PENDING and reveal.created_at <= cutoff:
                    self._rollback_reveal(election_id, reveal.voter_id, reveal)
                    self._record_stale("reveal", reveal.voter_id, reveal.created_at, election_id)
                    released += 1
            for commitment in commitments:
                if (
                    commitment is not None
                    and commitment.status == RecordStatus.PENDING
                    and commitment.created_at <= cutoff
                ):
                    self._rollback_commit(election_id, commitment.voter_id, commitment)
                    self._record_stale("commitment", commitment.voter_id, commitment.created_at, election_id)
                    released += 1
        return released

    def _record_stale(self, kind: str, voter_id: str, reserved_at: datetime, election_id: str) -> None:
        self.audit.record(
            "stale_submission_released",
            Severity.MEDIUM,
            {"kind": kind, "voter_id": voter_id, "reserved_at": reserved_at.isoformat()},
            election_id=election_id,
        )

    def _submit(
        self,
        payload: dict[str, Any],
        rollback: Callable[[], None],
        failure_event: str,
        election_id: str,
        voter_id: str,
    ) -> LedgerReceipt:
        try:
            return self.ledger.submit(payload)
        except BaseException as exc:
            rollback()
            if not isinstance(exc, Exception):
                # Interpreter shutdown or worker abort: release and get out.
                raise
            self.audit.record(
                failure_event,
                Severity.CRITICAL,
                {"voter_id": voter_id, "error": str(exc)},
                election_id=election_id,
                actor=voter_id,
            )
            if isinstance(exc, LedgerError):
                raise LedgerSubmissionFailed(
                    "Ledger submission failed; nothing was recorded, please retry"
                ) from exc
            raise

    def _rollback_commit(self, election_id: str, voter_id: str, reserved: Commitment) -> None:
        with self.locks.hold(election_id):
            if not _same_reservation(self.store.get_commitment(election_id, voter_id), reserved):
                return
            self.store.delete_commitment(election_id, voter_id)
            self.registry.release_commitment(election_id, voter_id)
            self.elections.adjust_counts(election_id, votes_committed=-1)
        logger.warning("Rolled back commitment of voter %s in election %s", voter_id, election_id)

    def _rollback_reveal(self, election_id: str, voter_id: str, reserved: Reveal) -> None:
        with self.locks.hold(election_id):
            if not _same_reservation(self.store.get_reveal(election_id, voter_id), reserved):
                return
            self.store.delete_reveal(election_id, voter_id)
            self.registry.release_reveal(election_id, voter_id)
            self.elections.adjust_counts(election_id, votes_revealed=-1)
        logger.warning("Rolled back reveal of voter %s in election %s", voter_id, election_id)


def _same_reservation(current: Commitment | Reveal | None, reserved: Commitment | Reveal) -> bool:
    return (
        current is not None
        and current.status == RecordStatus.PENDING
        and current.created_at == reserved.created_at
    )
