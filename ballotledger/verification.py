import logging

from .errors import LedgerNotFound, ValidationError
from .ledger import STATUS_SUCCESS, Ledger
from .models import VerificationResult
from .store import RecordStore

logger = logging.getLogger(__name__)


class VerificationService:
    """Read-only reconciliation of a ledger transaction against the
    commitments and reveals this service recorded.

    A negative answer comes back as ``verified=False``; an unreachable
    ledger raises ``LedgerUnavailable`` instead.
    """

    def __init__(self, store: RecordStore, ledger: Ledger) -> None:
        self.store = store
        self.ledger = ledger

    def verify(self, tx_hash: str) -> VerificationResult:
        tx_hash = (tx_hash or "").strip() if isinstance(tx_hash, str) else ""
        if not tx_hash:
            raise ValidationError("A transaction hash is required")

        try:
            tx = self.ledger.get_transaction(tx_hash)
        except LedgerNotFound:
            return VerificationResult(
                verified=False,
                transaction_hash=tx_hash,
                status="NotFound",
                reason="Transaction not found on ledger",
            )

        kind = "commitment"
        artifact = self.store.find_commitment_by_tx(tx_hash)
        expected_hash = artifact.commitment_hash if artifact else None
        if artifact is None:
            kind = "reveal"
            artifact = self.store.find_reveal_by_tx(tx_hash)
            if artifact is not None:
                commitment = self.store.get_commitment(artifact.election_id, artifact.voter_id)
                expected_hash = commitment.commitment_hash if commitment else None

        if artifact is None:
            return VerificationResult(
                verified=False,
                transaction_hash=tx_hash,
                status=tx.status,
                block_number=tx.block_number,
                confirmation_count=tx.confirmations,
                gas_used=tx.gas_used,
                reason="Transaction is not a known vote commitment or reveal",
            )

        election = self.store.get_election(artifact.election_id)
        payload = tx.payload or {}
        reason = None
        if tx.status != STATUS_SUCCESS:
            reason = f"Ledger status is {tx.status}"
        elif expected_hash is None or payload.get("commitment") != expected_hash:
            reason = "On-ledger payload does not match the stored commitment"
        elif payload.get("election") != artifact.election_id:
            reason = "On-ledger payload names a different election"
        verified = reason is None
        if not verified:
            logger.warning("Verification of %s failed: %s", tx_hash, reason)

        return VerificationResult(
            verified=verified,
            transaction_hash=tx_hash,
            status=tx.status,
            election_id=artifact.election_id,
            election_name=election.name if election else None,
            kind=kind,
            block_number=tx.block_number,
            confirmation_count=tx.confirmations,
            gas_used=tx.gas_used,
            reason=reason,
        )
