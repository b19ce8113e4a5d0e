import copy
import json
import threading
from abc import ABC, abstractmethod
from datetime import timezone
from typing import Any

from .db import ConnectionPool
from .models import (
    AuditEvent,
    Candidate,
    Commitment,
    Election,
    ElectionStatus,
    RecordStatus,
    Reveal,
    Severity,
    Tally,
    VoterRecord,
)


class RecordStore(ABC):
    """Key-addressed persistence for every record the core owns."""

    @abstractmethod
    def put_election(self, election: Election) -> None: ...

    @abstractmethod
    def get_election(self, election_id: str) -> Election | None: ...

    @abstractmethod
    def list_elections(self, status: ElectionStatus | None = None) -> list[Election]: ...

    @abstractmethod
    def put_voter(self, record: VoterRecord) -> None: ...

    @abstractmethod
    def get_voter(self, election_id: str, voter_id: str) -> VoterRecord | None: ...

    @abstractmethod
    def find_voter_by_wallet(self, election_id: str, wallet_address: str) -> VoterRecord | None: ...

    @abstractmethod
    def list_voters(self, election_id: str) -> list[VoterRecord]: ...

    @abstractmethod
    def put_commitment(self, commitment: Commitment) -> None: ...

    @abstractmethod
    def get_commitment(self, election_id: str, voter_id: str) -> Commitment | None: ...

    @abstractmethod
    def delete_commitment(self, election_id: str, voter_id: str) -> None: ...

    @abstractmethod
    def find_commitment_by_tx(self, tx_hash: str) -> Commitment | None: ...

    @abstractmethod
    def list_commitments(self, election_id: str) -> list[Commitment]: ...

    @abstractmethod
    def put_reveal(self, reveal: Reveal) -> None: ...

    @abstractmethod
    def get_reveal(self, election_id: str, voter_id: str) -> Reveal | None: ...

    @abstractmethod
    def delete_reveal(self, election_id: str, voter_id: str) -> None: ...

    @abstractmethod
    def find_reveal_by_tx(self, tx_hash: str) -> Reveal | None: ...

    @abstractmethod
    def list_reveals(self, election_id: str) -> list[Reveal]: ...

    @abstractmethod
    def put_tally(self, tally: Tally) -> None: ...

    @abstractmethod
    def get_tally(self, election_id: str) -> Tally | None: ...

    @abstractmethod
    def add_audit_event(self, event: AuditEvent) -> AuditEvent: ...

    @abstractmethod
    def list_audit_events(self, election_id: str | None = None, limit: int = 100) -> list[AuditEvent]: ...


class MemoryStore(RecordStore):
    """Process-local store. Records are copied in and out so callers
    cannot mutate stored state behind the engines' backs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._elections: dict[str, Election] = {}
        self._voters: dict[tuple[str, str], VoterRecord] = {}
        self._commitments: dict[tuple[str, str], Commitment] = {}
        self._reveals: dict[tuple[str, str], Reveal] = {}
        self._tallies: dict[str, Tally] = {}
        self._audit: list[AuditEvent] = []

    def put_election(self, election: Election) -> None:
        with self._lock:
            self._elections[election.id] = copy.deepcopy(election)

    def get_election(self, election_id: str) -> Election | None:
        with self._lock:
            return copy.deepcopy(self._elections.get(election_id))

    def list_elections(self, status: ElectionStatus | None = None) -> list[Election]:
        with self._lock:
            rows = [e for e in self._elections.values() if status is None or e.status == status]
            rows.sort(key=lambda e: e.created_at)
            return copy.deepcopy(rows)

    def put_voter(self, record: VoterRecord) -> None:
        with self._lock:
            self._voters[(record.election_id, record.voter_id)] = copy.deepcopy(record)

    def get_voter(self, election_id: str, voter_id: str) -> VoterRecord | None:
        with self._lock:
            return copy.deepcopy(self._voters.get((election_id, voter_id)))

    def find_voter_by_wallet(self, election_id: str, wallet_address: str) -> VoterRecord | None:
        with self._lock:
            for record in self._voters.values():
                if record.election_id == election_id and record.wallet_address == wallet_address:
                    return copy.deepcopy(record)
            return None

    def list_voters(self, election_id: str) -> list[VoterRecord]:
        with self._lock:
            rows = [r for r in self._voters.values() if r.election_id == election_id]
            rows.sort(key=lambda r: (r.registered_at, r.voter_id))
            return copy.deepcopy(rows)

    def put_commitment(self, commitment: Commitment) -> None:
        with self._lock:
            self._commitments[(commitment.election_id, commitment.voter_id)] = copy.deepcopy(commitment)

    def get_commitment(self, election_id: str, voter_id: str) -> Commitment | None:
        with self._lock:
            return copy.deepcopy(self._commitments.get((election_id, voter_id)))

    def delete_commitment(self, election_id: str, voter_id: str) -> None:
        with self._lock:
            self._commitments.pop((election_id, voter_id), None)

    def find_commitment_by_tx(self, tx_hash: str) -> Commitment | None:
        with self._lock:
            for commitment in self._commitments.values():
                if commitment.tx_hash == tx_hash:
                    return copy.deepcopy(commitment)
            return None

    def list_commitments(self, election_id: str) -> list[Commitment]:
        with self._lock:
            rows = [c for c in self._commitments.values() if c.election_id == election_id]
            rows.sort(key=lambda c: (c.created_at, c.voter_id))
            return copy.deepcopy(rows)

    def put_reveal(self, reveal: Reveal) -> None:
        with self._lock:
            self._reveals[(reveal.election_id, reveal.voter_id)] = copy.deepcopy(reveal)

    def get_reveal(self, election_id: str, voter_id: str) -> Reveal | None:
        with self._lock:
            return copy.deepcopy(self._reveals.get((election_id, voter_id)))

    def delete_reveal(self, election_id: str, voter_id: str) -> None:
        with self._lock:
            self._reveals.pop((election_id, voter_id), None)

    def find_reveal_by_tx(self, tx_hash: str) -> Reveal | None:
        with self._lock:
            for reveal in self._reveals.values():
                if reveal.tx_hash == tx_hash:
                    return copy.deepcopy(reveal)
            return None

    def list_reveals(self, election_id: str) -> list[Reveal]:
        with self._lock:
            rows = [r for r in self._reveals.values() if r.election_id == election_id]
            rows.sort(key=lambda r: (r.created_at, r.voter_id))
            return copy.deepcopy(rows)

    def put_tally(self, tally: Tally) -> None:
        with self._lock:
            self._tallies.setdefault(tally.election_id, copy.deepcopy(tally))

    def get_tally(self, election_id: str) -> Tally | None:
        with self._lock:
            return copy.deepcopy(self._tallies.get(election_id))

    def add_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._lock:
            stored = copy.deepcopy(event)
            stored.id = len(self._audit) + 1
            self._audit.append(stored)
            return copy.deepcopy(stored)

    def list_audit_events(self, election_id: str | None = None, limit: int = 100) -> list[AuditEvent]:
        with self._lock:
            rows = [e for e in self._audit if election_id is None or e.election_id == election_id]
            return copy.deepcopy(list(reversed(rows))[:limit])


SCHEMA = """
CREATE TABLE IF NOT EXISTS elections (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL,
    candidates_json TEXT NOT NULL,
    start_time TIMESTAMPTZ NOT NULL,
    end_time TIMESTAMPTZ NOT NULL,
    status TEXT NOT NULL,
    total_voters INTEGER NOT NULL DEFAULT 0,
    votes_committed INTEGER NOT NULL DEFAULT 0,
    votes_revealed INTEGER NOT NULL DEFAULT 0,
    manifest_hash TEXT NOT NULL,
    created_by TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    opened_at TIMESTAMPTZ,
    closed_at TIMESTAMPTZ,
    tallied_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS voters (
    election_id TEXT NOT NULL REFERENCES elections(id),
    voter_id TEXT NOT NULL,
    wallet_address TEXT NOT NULL,
    eligible BOOLEAN NOT NULL DEFAULT TRUE,
    committed BOOLEAN NOT NULL DEFAULT FALSE,
    revealed BOOLEAN NOT NULL DEFAULT FALSE,
    registered_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (election_id, voter_id),
    UNIQUE (election_id, wallet_address)
);

CREATE TABLE IF NOT EXISTS commitments (
    election_id TEXT NOT NULL,
    voter_id TEXT NOT NULL,
    commitment_hash TEXT NOT NULL,
    status TEXT NOT NULL,
    tx_hash TEXT,
    block_number BIGINT,
    submitted_by TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (election_id, voter_id)
);

CREATE TABLE IF NOT EXISTS reveals (
    election_id TEXT NOT NULL,
    voter_id TEXT NOT NULL,
    choice TEXT NOT NULL,
    salt TEXT NOT NULL,
    status TEXT NOT NULL,
    tx_hash TEXT,
    block_number BIGINT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (election_id, voter_id)
);

CREATE TABLE IF NOT EXISTS tallies (
    election_id TEXT PRIMARY KEY,
    counts_json TEXT NOT NULL,
    reveal_count INTEGER NOT NULL,
    rejected_json TEXT NOT NULL,
    tally_hash TEXT NOT NULL,
    computed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS audit_events (
    id SERIAL PRIMARY KEY,
    election_id TEXT,
    event_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    actor TEXT,
    payload_json TEXT NOT NULL,
    entry_hash TEXT NOT NULL,
    anchored_tx_hash TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE UNIQUE INDEX IF NOT EXISTS commitments_unique_tx_hash
ON commitments (tx_hash)
WHERE tx_hash IS NOT NULL;

CREATE UNIQUE INDEX IF NOT EXISTS reveals_unique_tx_hash
ON reveals (tx_hash)
WHERE tx_hash IS NOT NULL;
"""


def _election_from_row(row: dict[str, Any]) -> Election:
    return Election(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        candidates=[Candidate(**c) for c in json.loads(row["candidates_json"])],
        start_time=row["start_time"],
        end_time=row["end_time"],
        status=ElectionStatus(row["status"]),
        total_voters=row["total_voters"],
        votes_committed=row["votes_committed"],
        votes_revealed=row["votes_revealed"],
        manifest_hash=row["manifest_hash"],
        created_by=row["created_by"],
        created_at=row["created_at"],
        opened_at=row["opened_at"],
        closed_at=row["closed_at"],
        tallied_at=row["tallied_at"],
    )


def _voter_from_row(row: dict[str, Any]) -> VoterRecord:
    return VoterRecord(
        election_id=row["election_id"],
        voter_id=row["voter_id"],
        wallet_address=row["wallet_address"],
        eligible=row["eligible"],
        committed=row["committed"],
        revealed=row["revealed"],
        registered_at=row["registered_at"],
    )


def _commitment_from_row(row: dict[str, Any]) -> Commitment:
    return Commitment(
        election_id=row["election_id"],
        voter_id=row["voter_id"],
        commitment_hash=row["commitment_hash"],
        created_at=row["created_at"],
        status=RecordStatus(row["status"]),
        tx_hash=row["tx_hash"],
        block_number=row["block_number"],
        submitted_by=row["submitted_by"],
    )


def _reveal_from_row(row: dict[str, Any]) -> Reveal:
    return Reveal(
        election_id=row["election_id"],
        voter_id=row["voter_id"],
        choice=row["choice"],
        salt=row["salt"],
        created_at=row["created_at"],
        status=RecordStatus(row["status"]),
        tx_hash=row["tx_hash"],
        block_number=row["block_number"],
    )


def _audit_from_row(row: dict[str, Any]) -> AuditEvent:
    return AuditEvent(
        id=row["id"],
        election_id=row["election_id"],
        event_type=row["event_type"],
        severity=Severity(row["severity"]),
        actor=row["actor"],
        payload=json.loads(row["payload_json"]),
        entry_hash=row["entry_hash"],
        anchored_tx_hash=row["anchored_tx_hash"],
        # entry_hash covers the UTC isoformat of this timestamp
        created_at=row["created_at"].astimezone(timezone.utc),
    )


class PostgresStore(RecordStore):
    def __init__(self, pool: ConnectionPool) -> None:
        self.pool = pool

    def ensure_schema(self) -> None:
        with self.pool.cursor() as cur:
            cur.execute(SCHEMA)

    def put_election(self, election: Election) -> None:
        with self.pool.cursor() as cur:
            cur.execute(
                """
                INSERT INTO elections (
                    id, name, description, candidates_json, start_time, end_time, status,
                    total_voters, votes_committed, votes_revealed, manifest_hash,
                    created_by, created_at, opened_at, closed_at, tallied_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    status = EXCLUDED.status,
                    total_voters = EXCLUDED.total_voters,
                    votes_committed = EXCLUDED.votes_committed,
                    votes_revealed = EXCLUDED.votes_revealed,
                    opened_at = EXCLUDED.opened_at,
                    closed_at = EXCLUDED.closed_at,
                    tallied_at = EXCLUDED.tallied_at
                """,
                (
                    election.id,
                    election.name,
                    election.description,
                    json.dumps([c.to_dict() for c in election.candidates]),
                    election.start_time,
                    election.end_time,
                    election.status.value,
                    election.total_voters,
                    election.votes_committed,
                    election.votes_revealed,
                    election.manifest_hash,
                    election.created_by,
                    election.created_at,
                    election.opened_at,
                    election.closed_at,
                    election.tallied_at,
                ),
            )

    def get_election(self, election_id: str) -> Election | None:
        with self.pool.cursor() as cur:
            cur.execute("SELECT * FROM elections WHERE id = %s", (election_id,))
            row = cur.fetchone()
            return _election_from_row(row) if row else None

    def list_elections(self, status: ElectionStatus | None = None) -> list[Election]:
        with self.pool.cursor() as cur:
            if status is None:
                cur.execute("SELECT * FROM elections ORDER BY created_at")
            else:
                cur.execute("SELECT * FROM elections WHERE status = %s ORDER BY created_at", (status.value,))
            return [_election_from_row(r) for r in cur.fetchall()]

    def put_voter(self, record: VoterRecord) -> None:
        with self.pool.cursor() as cur:
            cur.execute(
                """
                INSERT INTO voters (election_id, voter_id, wallet_address, eligible, committed, revealed, registered_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (election_id, voter_id) DO UPDATE SET
                    wallet_address = EXCLUDED.wallet_address,
                    eligible = EXCLUDED.eligible,
                    committed = EXCLUDED.committed,
                    revealed = EXCLUDED.revealed
                """,
                (
                    record.election_id,
                    record.voter_id,
                    record.wallet_address,
                    record.eligible,
                    record.committed,
                    record.revealed,
                    record.registered_at,
                ),
            )

    def get_voter(self, election_id: str, voter_id: str) -> VoterRecord | None:
        with self.pool.cursor() as cur:
            cur.execute(
                "SELECT * FROM voters WHERE election_id = %s AND voter_id = %s",
                (election_id, voter_id),
            )
            row = cur.fetchone()
            return _voter_from_row(row) if row else None

    def find_voter_by_wallet(self, election_id: str, wallet_address: str) -> VoterRecord | None:
        with self.pool.cursor() as cur:
            cur.execute(
                "SELECT * FROM voters WHERE election_id = %s AND wallet_address = %s",
                (election_id, wallet_address),
            )
            row = cur.fetchone()
            return _voter_from_row(row) if row else None

    def list_voters(self, election_id: str) -> list[VoterRecord]:
        with self.pool.cursor() as cur:
            cur.execute(
                "SELECT * FROM voters WHERE election_id = %s ORDER BY registered_at, voter_id",
                (election_id,),
            )
            return [_voter_from_row(r) for r in cur.fetchall()]

    def put_commitment(self, commitment: Commitment) -> None:
        with self.pool.cursor() as cur:
            cur.execute(
                """
                INSERT INTO commitments (
                    election_id, voter_id, commitment_hash, status, tx_hash, block_number, submitted_by, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (election_id, voter_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    tx_hash = EXCLUDED.tx_hash,
                    block_number = EXCLUDED.block_number,
                    submitted_by = EXCLUDED.submitted_by
                """,
                (
                    commitment.election_id,
                    commitment.voter_id,
                    commitment.commitment_hash,
                    commitment.status.value,
                    commitment.tx_hash,
                    commitment.block_number,
                    commitment.submitted_by,
                    commitment.created_at,
                ),
            )

    def get_commitment(self, election_id: str, voter_id: str) -> Commitment | None:
        with self.pool.cursor() as cur:
            cur.execute(
                "SELECT * FROM commitments WHERE election_id = %s AND voter_id = %s",
                (election_id, voter_id),
            )
            row = cur.fetchone()
            return _commitment_from_row(row) if row else None

    def delete_commitment(self, election_id: str, voter_id: str) -> None:
        with self.pool.cursor() as cur:
            cur.execute(
                "DELETE FROM commitments WHERE election_id = %s AND voter_id = %s",
                (election_id, voter_id),
            )

    def find_commitment_by_tx(self, tx_hash: str) -> Commitment | None:
        with self.pool.cursor() as cur:
            cur.execute("SELECT * FROM commitments WHERE tx_hash = %s", (tx_hash,))
            row = cur.fetchone()
            return _commitment_from_row(row) if row else None

    def list_commitments(self, election_id: str) -> list[Commitment]:
        with self.pool.cursor() as cur:
            cur.execute(
                "SELECT * FROM commitments WHERE election_id = %s ORDER BY created_at, voter_id",
                (election_id,),
            )
            return [_commitment_from_row(r) for r in cur.fetchall()]

    def put_reveal(self, reveal: Reveal) -> None:
        with self.pool.cursor() as cur:
            cur.execute(
                """
                INSERT INTO reveals (election_id, voter_id, choice, salt, status, tx_hash, block_number, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (election_id, voter_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    tx_hash = EXCLUDED.tx_hash,
                    block_number = EXCLUDED.block_number
                """,
                (
                    reveal.election_id,
                    reveal.voter_id,
                    reveal.choice,
                    reveal.salt,
                    reveal.status.value,
                    reveal.tx_hash,
                    reveal.block_number,
                    reveal.created_at,
                ),
            )

    def get_reveal(self, election_id: str, voter_id: str) -> Reveal | None:
        with self.pool.cursor() as cur:
            cur.execute(
                "SELECT * FROM reveals WHERE election_id = %s AND voter_id = %s",
                (election_id, voter_id),
            )
            row = cur.fetchone()
            return _reveal_from_row(row) if row else None

    def delete_reveal(self, election_id: str, voter_id: str) -> None:
        with self.pool.cursor() as cur:
            cur.execute(
                "DELETE FROM reveals WHERE election_id = %s AND voter_id = %s",
                (election_id, voter_id),
            )

    def find_reveal_by_tx(self, tx_hash: str) -> Reveal | None:
        with self.pool.cursor() as cur:
            cur.execute("SELECT * FROM reveals WHERE tx_hash = %s", (tx_hash,))
            row = cur.fetchone()
            return _reveal_from_row(row) if row else None

    def list_reveals(self, election_id: str) -> list[Reveal]:
        with self.pool.cursor() as cur:
            cur.execute(
                "SELECT * FROM reveals WHERE election_id = %s ORDER BY created_at, voter_id",
                (election_id,),
            )
            return [_reveal_from_row(r) for r in cur.fetchall()]

    def put_tally(self, tally: Tally) -> None:
        with self.pool.cursor() as cur:
            cur.execute(
                """
                INSERT INTO tallies (election_id, counts_json, reveal_count, rejected_json, tally_hash, computed_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (election_id) DO NOTHING
                """,
                (
                    tally.election_id,
                    json.dumps(tally.counts),
                    tally.reveal_count,
                    json.dumps(tally.rejected),
                    tally.tally_hash,
                    tally.computed_at,
                ),
            )

    def get_tally(self, election_id: str) -> Tally | None:
        with self.pool.cursor() as cur:
            cur.execute("SELECT * FROM tallies WHERE election_id = %s", (election_id,))
            row = cur.fetchone()
            if not row:
                return None
            return Tally(
                election_id=row["election_id"],
                counts=json.loads(row["counts_json"]),
                reveal_count=row["reveal_count"],
                rejected=json.loads(row["rejected_json"]),
                tally_hash=row["tally_hash"],
                computed_at=row["computed_at"],
            )

    def add_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self.pool.cursor() as cur:
            cur.execute(
                """
                INSERT INTO audit_events (
                    election_id, event_type, severity, actor, payload_json, entry_hash, anchored_tx_hash, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    event.election_id,
                    event.event_type,
                    event.severity.value,
                    event.actor,
                    json.dumps(event.payload, sort_keys=True, default=str),
                    event.entry_hash,
                    event.anchored_tx_hash,
                    event.created_at,
                ),
            )
            event.id = int(cur.fetchone()["id"])
            return event

    def list_audit_events(self, election_id: str | None = None, limit: int = 100) -> list[AuditEvent]:
        with self.pool.cursor() as cur:
            if election_id is None:
                cur.execute("SELECT * FROM audit_events ORDER BY id DESC LIMIT %s", (limit,))
            else:
                cur.execute(
                    "SELECT * FROM audit_events WHERE election_id = %s ORDER BY id DESC LIMIT %s",
                    (election_id, limit),
                )
            return [_audit_from_row(r) for r in cur.fetchall()]
