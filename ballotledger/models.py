import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

DEFAULT_PARTY = "Independent"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class ElectionStatus(str, enum.Enum):
    CREATED = "created"
    OPEN = "open"
    CLOSED = "closed"
    TALLIED = "tallied"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [
    ElectionStatus.CREATED,
    ElectionStatus.OPEN,
    ElectionStatus.CLOSED,
    ElectionStatus.TALLIED,
]


class RecordStatus(str, enum.Enum):
    """Ledger state of a locally accepted commitment or reveal."""

    PENDING = "pending"
    CONFIRMED = "confirmed"


class Severity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class Candidate:
    name: str
    party: str = DEFAULT_PARTY

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "party": self.party}


@dataclass
class Election:
    id: str
    name: str
    description: str
    candidates: list[Candidate]
    start_time: datetime
    end_time: datetime
    status: ElectionStatus = ElectionStatus.CREATED
    total_voters: int = 0
    votes_committed: int = 0
    votes_revealed: int = 0
    manifest_hash: str = ""
    created_by: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    opened_at: datetime | None = None
    closed_at: datetime | None = None
    tallied_at: datetime | None = None

    @property
    def candidate_names(self) -> list[str]:
        return [c.name for c in self.candidates]

    def manifest(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "candidates": [c.to_dict() for c in self.candidates],
            "start_time": isoformat(self.start_time),
            "end_time": isoformat(self.end_time),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "candidates": [c.to_dict() for c in self.candidates],
            "startTime": isoformat(self.start_time),
            "endTime": isoformat(self.end_time),
            "status": self.status.value,
            "metadata": {
                "totalVoters": self.total_voters,
                "votesCommitted": self.votes_committed,
                "votesRevealed": self.votes_revealed,
            },
            "manifestHash": self.manifest_hash,
            "createdBy": self.created_by,
            "createdAt": isoformat(self.created_at),
            "openedAt": isoformat(self.opened_at),
            "closedAt": isoformat(self.closed_at),
            "talliedAt": isoformat(self.tallied_at),
        }


@dataclass
class VoterRecord:
    election_id: str
    voter_id: str
    wallet_address: str
    eligible: bool = True
    committed: bool = False
    revealed: bool = False
    registered_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "electionId": self.election_id,
            "voterId": self.voter_id,
            "walletAddress": self.wallet_address,
            "eligible": self.eligible,
            "committed": self.committed,
            "revealed": self.revealed,
            "registeredAt": isoformat(self.registered_at),
        }


@dataclass
class Commitment:
    election_id: str
    voter_id: str
    commitment_hash: str
    created_at: datetime = field(default_factory=utcnow)
    status: RecordStatus = RecordStatus.PENDING
    tx_hash: str | None = None
    block_number: int | None = None
    submitted_by: str | None = None


@dataclass
class Reveal:
    election_id: str
    voter_id: str
    choice: str
    salt: str
    created_at: datetime = field(default_factory=utcnow)
    status: RecordStatus = RecordStatus.PENDING
    tx_hash: str | None = None
    block_number: int | None = None


@dataclass
class Tally:
    election_id: str
    counts: dict[str, int]
    reveal_count: int
    rejected: list[dict[str, str]]
    tally_hash: str
    computed_at: datetime = field(default_factory=utcnow)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "electionId": self.election_id,
            "tallies": dict(self.counts),
            "totalVotes": self.total,
            "revealCount": self.reveal_count,
            "rejected": list(self.rejected),
            "tallyHash": self.tally_hash,
            "computedAt": isoformat(self.computed_at),
        }


@dataclass
class AuditEvent:
    event_type: str
    severity: Severity
    payload: dict[str, Any]
    entry_hash: str
    election_id: str | None = None
    actor: str | None = None
    anchored_tx_hash: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "electionId": self.election_id,
            "eventType": self.event_type,
            "severity": self.severity.value,
            "actor": self.actor,
            "payload": self.payload,
            "entryHash": self.entry_hash,
            "anchoredTxHash": self.anchored_tx_hash,
            "createdAt": isoformat(self.created_at),
        }


@dataclass(frozen=True)
class LedgerReceipt:
    tx_hash: str
    block_number: int


@dataclass(frozen=True)
class LedgerTransaction:
    tx_hash: str
    status: str
    block_number: int
    confirmations: int
    gas_used: int | None = None
    payload: dict[str, Any] | None = None


@dataclass(frozen=True)
class CommitmentReceipt:
    """Handed back to the voter exactly once; the salt lives nowhere else."""

    election_id: str
    voter_id: str
    commitment: str
    salt: str
    transaction_hash: str
    block_number: int
    submitted_by: str | None
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "electionId": self.election_id,
            "voterId": self.voter_id,
            "commitment": self.commitment,
            "salt": self.salt,
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
            "submittedBy": self.submitted_by,
            "timestamp": isoformat(self.timestamp),
        }


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    transaction_hash: str
    status: str
    election_id: str | None = None
    election_name: str | None = None
    kind: str | None = None
    block_number: int | None = None
    confirmation_count: int = 0
    gas_used: int | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "verified": self.verified,
            "vote": {
                "election": self.election_name,
                "electionId": self.election_id,
                "kind": self.kind,
            },
            "transaction": {
                "hash": self.transaction_hash,
                "blockNumber": self.block_number,
                "status": self.status,
                "gasUsed": self.gas_used,
                "confirmations": self.confirmation_count,
            },
            "reason": self.reason,
        }


@dataclass
class RegistrationRow:
    index: int
    voter_id: str | None
    wallet_address: str | None
    ok: bool
    error: str | None = None
    code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "row": self.index,
            "voterId": self.voter_id,
            "walletAddress": self.wallet_address,
            "ok": self.ok,
            "error": self.error,
            "code": self.code,
        }


@dataclass
class BulkRegistrationReport:
    election_id: str
    rows: list[RegistrationRow] = field(default_factory=list)

    @property
    def registered(self) -> int:
        return sum(1 for r in self.rows if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.rows if not r.ok)

    def to_dict(self) -> dict[str, Any]:
        return {
            "electionId": self.election_id,
            "registered": self.registered,
            "failed": self.failed,
            "rows": [r.to_dict() for r in self.rows],
        }
