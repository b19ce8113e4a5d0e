import logging
from datetime import datetime
from typing import Callable, Iterable

from .audit import AuditLog
from .errors import InvalidTransition, NotFound, UnknownCandidate
from .hashing import canonical_json, sha256_hex
from .models import Election, RecordStatus, Reveal, Severity, Tally, utcnow
from .store import RecordStore

logger = logging.getLogger(__name__)


def tally_digest(election_id: str, counts: dict[str, int], reveal_count: int) -> str:
    return sha256_hex(
        canonical_json({"election_id": election_id, "counts": counts, "reveal_count": reveal_count})
    )


class TallyEngine:
    def __init__(
        self,
        store: RecordStore,
        audit: AuditLog,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock

    def compute(self, election: Election, reveals: Iterable[Reveal]) -> Tally:
        """Count confirmed reveals per declared candidate.

        Pure over its inputs apart from ``computed_at``: the same reveal
        set always yields the same counts and digest.
        """
        counts = {name: 0 for name in election.candidate_names}
        rejected: list[dict[str, str]] = []
        accepted = 0
        for reveal in sorted(reveals, key=lambda r: r.voter_id):
            if reveal.election_id != election.id or reveal.status != RecordStatus.CONFIRMED:
                continue
            if reveal.choice not in counts:
                rejected.append(
                    {"voterId": reveal.voter_id, "choice": reveal.choice, "reason": UnknownCandidate.code}
                )
                continue
            counts[reveal.choice] += 1
            accepted += 1
        return Tally(
            election_id=election.id,
            counts=counts,
            reveal_count=accepted,
            rejected=rejected,
            tally_hash=tally_digest(election.id, counts, accepted),
            computed_at=self.clock(),
        )

    def tally(self, election: Election) -> Tally:
        """Compute and store the final tally. Only the state machine's
        ``tally`` transition calls this, once per election."""
        if self.store.get_tally(election.id) is not None:
            raise InvalidTransition(f"Election {election.id} already has a published tally")
        result = self.compute(election, self.store.list_reveals(election.id))
        for row in result.rejected:
            logger.warning(
                "Excluded reveal from %s in election %s: unknown candidate %r",
                row["voterId"],
                election.id,
                row["choice"],
            )
            self.audit.record("unknown_candidate", Severity.MEDIUM, dict(row), election_id=election.id)
        self.store.put_tally(result)
        logger.info("Tallied election %s: %s (%s)", election.id, result.counts, result.tally_hash)
        return result

    def recompute(self, election_id: str) -> Tally:
        election = self.store.get_election(election_id)
        if election is None:
            raise NotFound(f"Election {election_id} not found")
        return self.compute(election, self.store.list_reveals(election_id))

    def get(self, election_id: str) -> Tally:
        result = self.store.get_tally(election_id)
        if result is None:
            raise NotFound(f"Election {election_id} has not been tallied")
        return result
