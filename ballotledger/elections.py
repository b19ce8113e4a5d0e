import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from .audit import AuditLog
from .errors import (
    ElectionNotClosed,
    ElectionNotOpen,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from .hashing import canonical_json, sha256_hex
from .locks import ElectionLocks
from .models import (
    DEFAULT_PARTY,
    Candidate,
    Election,
    ElectionStatus,
    RecordStatus,
    Severity,
    Tally,
    utcnow,
)
from .store import RecordStore
from .tally import TallyEngine

logger = logging.getLogger(__name__)

MIN_CANDIDATES = 2

# status -> the only status it may move to
NEXT_STATUS = {
    ElectionStatus.CREATED: ElectionStatus.OPEN,
    ElectionStatus.OPEN: ElectionStatus.CLOSED,
    ElectionStatus.CLOSED: ElectionStatus.TALLIED,
}


def parse_timestamp(value: Any, field_name: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f"{field_name} must be an ISO-8601 timestamp") from exc
    else:
        raise ValidationError(f"{field_name} is required")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_candidates(raw: Iterable[Any]) -> list[Candidate]:
    candidates: list[Candidate] = []
    for item in raw or []:
        if isinstance(item, Candidate):
            candidate = item
        elif isinstance(item, dict):
            name = str(item.get("name") or "").strip()
            party = str(item.get("party") or "").strip() or DEFAULT_PARTY
            candidate = Candidate(name=name, party=party)
        elif isinstance(item, str):
            candidate = Candidate(name=item.strip())
        else:
            raise ValidationError("candidates must be objects with a name")
        if candidate.name:
            candidates.append(candidate)
    if len(candidates) < MIN_CANDIDATES:
        raise ValidationError(f"At least {MIN_CANDIDATES} valid candidates are required")
    names = [c.name for c in candidates]
    if len(set(names)) != len(names):
        raise ValidationError("Candidate names must be unique")
    return candidates


class ElectionStateMachine:
    """Owns the Created -> Open -> Closed -> Tallied lifecycle.

    Every transition and every phase check used by the engines runs
    under the election's lock, so a caller sees either the status before
    a transition or the status after it.
    """

    def __init__(
        self,
        store: RecordStore,
        locks: ElectionLocks,
        audit: AuditLog,
        tally_engine: TallyEngine,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.locks = locks
        self.audit = audit
        self.tally_engine = tally_engine
        self.clock = clock
        # Releases abandoned ledger reservations for an election.
        self.pending_sweeper: Callable[[str], int] | None = None

    def create(
        self,
        name: str,
        description: str,
        candidates: Iterable[Any],
        start_time: Any,
        end_time: Any,
        actor: str | None = None,
    ) -> Election:
        name = (name or "").strip()
        description = (description or "").strip()
        if not name:
            raise ValidationError("name is required")
        if not description:
            raise ValidationError("description is required")
        start = parse_timestamp(start_time, "startTime")
        end = parse_timestamp(end_time, "endTime")
        if end <= start:
            raise ValidationError("End time must be after start time")

        election = Election(
            id=uuid.uuid4().hex,
            name=name,
            description=description,
            candidates=parse_candidates(candidates),
            start_time=start,
            end_time=end,
            created_by=actor,
            created_at=self.clock(),
        )
        election.manifest_hash = sha256_hex(canonical_json(election.manifest()))
        self.store.put_election(election)
        self.audit.record(
            "election_created",
            Severity.LOW,
            {"name": name, "manifest_hash": election.manifest_hash},
            election_id=election.id,
            actor=actor,
        )
        logger.info("Created election %s (%s)", election.id, name)
        return election

    def get(self, election_id: str) -> Election:
        election = self.store.get_election(election_id)
        if election is None:
            raise NotFound(f"Election {election_id} not found")
        return election

    def list_elections(self, status: ElectionStatus | str | None = None) -> list[Election]:
        if isinstance(status, str):
            try:
                status = ElectionStatus(status.lower())
            except ValueError as exc:
                raise ValidationError(f"Unknown election status: {status}") from exc
        return self.store.list_elections(status)

    def _transition(
        self,
        election_id: str,
        target: ElectionStatus,
        actor: str | None,
        **changes: Any,
    ) -> Election:
        election = self.get(election_id)
        if NEXT_STATUS.get(election.status) != target:
            raise InvalidTransition(
                f"Cannot move election from {election.status.value} to {target.value}"
            )
        updated = replace(election, status=target, **changes)
        self.store.put_election(updated)
        self.audit.record(
            f"election_{target.value}",
            Severity.MEDIUM,
            {"from": election.status.value, "to": target.value},
            election_id=election_id,
            actor=actor,
        )
        logger.info("Election %s moved %s -> %s", election_id, election.status.value, target.value)
        return updated

    def open(self, election_id: str, actor: str | None = None) -> Election:
        with self.locks.hold(election_id):
            return self._transition(election_id, ElectionStatus.OPEN, actor, opened_at=self.clock())

    def close(self, election_id: str, actor: str | None = None) -> Election:
        with self.locks.hold(election_id):
            return self._transition(election_id, ElectionStatus.CLOSED, actor, closed_at=self.clock())

    def tally(self, election_id: str, actor: str | None = None) -> Tally:
        with self.locks.hold(election_id):
            election = self.get(election_id)
            if election.status != ElectionStatus.CLOSED:
                raise InvalidTransition(
                    f"Cannot move election from {election.status.value} to {ElectionStatus.TALLIED.value}"
                )
            if self.pending_sweeper is not None:
                self.pending_sweeper(election_id)
            in_flight = [
                c.voter_id for c in self.store.list_commitments(election_id) if c.status == RecordStatus.PENDING
            ] + [r.voter_id for r in self.store.list_reveals(election_id) if r.status == RecordStatus.PENDING]
            if in_flight:
                raise InvalidTransition(
                    f"{len(in_flight)} ledger submission(s) still in flight; retry the tally shortly"
                )
            result = self.tally_engine.tally(election)
            self._transition(election_id, ElectionStatus.TALLIED, actor, tallied_at=self.clock())
            return result

    def require_commit_window(self, election_id: str) -> Election:
        election = self.get(election_id)
        if election.status != ElectionStatus.OPEN:
            raise ElectionNotOpen(f"Election is {election.status.value}; commitments are not accepted")
        now = self.clock()
        if not election.start_time <= now < election.end_time:
            raise ElectionNotOpen("Election is outside its voting window")
        return election

    def require_reveal_window(self, election_id: str) -> Election:
        election = self.get(election_id)
        if election.status.rank < ElectionStatus.CLOSED.rank:
            raise ElectionNotClosed(f"Election is {election.status.value}; reveals are not accepted yet")
        if self.clock() < election.end_time:
            raise ElectionNotClosed("Reveals open once the voting window has ended")
        return election

    def require_registration_phase(self, election_id: str) -> Election:
        election = self.get(election_id)
        if election.status not in (ElectionStatus.CREATED, ElectionStatus.OPEN):
            raise ElectionNotOpen(f"Election is {election.status.value}; voter registration is closed")
        return election

    def adjust_counts(
        self,
        election_id: str,
        total_voters: int = 0,
        votes_committed: int = 0,
        votes_revealed: int = 0,
    ) -> Election:
        with self.locks.hold(election_id):
            election = self.get(election_id)
            updated = replace(
                election,
                total_voters=max(0, election.total_voters + total_voters),
                votes_committed=max(0, election.votes_committed + votes_committed),
                votes_revealed=max(0, election.votes_revealed + votes_revealed),
            )
            self.store.put_election(updated)
            return updated
