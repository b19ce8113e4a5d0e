import pytest

from ballotledger.errors import (
    AlreadyCommitted,
    AlreadyRevealed,
    ElectionNotClosed,
    ElectionNotOpen,
    InvalidReveal,
    InvalidTransition,
    LedgerSubmissionFailed,
    NotEligible,
    NotFound,
    RevealTooLate,
    UnknownCandidate,
)
from ballotledger.hashing import build_commitment
from ballotledger.models import Commitment, RecordStatus, Reveal, Severity

from conftest import FakeLedger, end_voting, new_wallet


def test_alice_bob_scenario(services, open_election, wallets, clock, ledger):
    eid = open_election.id
    receipts = {
        "v1": services.commitments.commit(eid, "v1", wallets["v1"], "Alice"),
        "v2": services.commitments.commit(eid, "v2", wallets["v2"], "Bob"),
        "v3": services.commitments.commit(eid, "v3", wallets["v3"], "Alice"),
    }
    assert len(ledger.of_kind("commit")) == 3
    assert services.elections.get(eid).votes_committed == 3

    end_voting(services, clock, eid)
    for voter_id, choice in (("v1", "Alice"), ("v2", "Bob"), ("v3", "Alice")):
        assert services.commitments.reveal(eid, voter_id, choice, receipts[voter_id].salt) is True

    result = services.elections.tally(eid)
    assert result.counts == {"Alice": 2, "Bob": 1}
    assert result.total == 3
    assert services.elections.get(eid).votes_revealed == 3


def test_receipt_contents(services, open_election, wallets, signer, ledger):
    receipt = services.commitments.commit(open_election.id, "v1", wallets["v1"], "Bob")
    assert receipt.commitment == build_commitment("Bob", receipt.salt)
    assert len(bytes.fromhex(receipt.salt)) == 32
    assert receipt.submitted_by == signer.current_address()
    assert ledger.submitted[-1] == {
        "kind": "commit",
        "election": open_election.id,
        "commitment": receipt.commitment,
    }
    stored = services.commitments.get_commitment(open_election.id, "v1")
    assert stored.status == RecordStatus.CONFIRMED
    assert stored.tx_hash == receipt.transaction_hash
    assert stored.block_number == receipt.block_number


def test_client_supplied_salt(services, open_election, wallets, clock):
    salt = "0x" + "5A" * 32
    receipt = services.commitments.commit(open_election.id, "v1", wallets["v1"], "Alice", salt=salt)
    assert receipt.salt == "5a" * 32
    end_voting(services, clock, open_election.id)
    assert services.commitments.reveal(open_election.id, "v1", "Alice", salt)


def test_double_commit_rejected(services, open_election, wallets, ledger):
    services.commitments.commit(open_election.id, "v1", wallets["v1"], "Alice")
    with pytest.raises(AlreadyCommitted):
        services.commitments.commit(open_election.id, "v1", wallets["v1"], "Bob")
    assert len(ledger.of_kind("commit")) == 1
    assert services.elections.get(open_election.id).votes_committed == 1


def test_wrong_salt_then_correct_reveal(services, open_election, wallets, clock):
    eid = open_election.id
    receipt = services.commitments.commit(eid, "v1", wallets["v1"], "Alice")
    end_voting(services, clock, eid)

    with pytest.raises(InvalidReveal):
        services.commitments.reveal(eid, "v1", "Alice", "ff" * 32)
    with pytest.raises(InvalidReveal):
        services.commitments.reveal(eid, "v1", "Bob", receipt.salt)
    with pytest.raises(InvalidReveal):
        services.commitments.reveal(eid, "v1", "Alice", "short")
    assert services.store.get_reveal(eid, "v1") is None

    assert services.commitments.reveal(eid, "v1", "Alice", receipt.salt)
    mismatches = [e for e in services.audit.list_events(election_id=eid) if e.event_type == "reveal_mismatch"]
    assert len(mismatches) == 3
    assert all(e.severity == Severity.HIGH for e in mismatches)


def test_ineligible_wallet_never_reaches_ledger(services, open_election, ledger):
    with pytest.raises(NotEligible):
        services.commitments.commit(open_election.id, "v1", new_wallet(), "Alice")
    with pytest.raises(NotEligible):
        services.commitments.commit(open_election.id, "stranger", new_wallet(), "Alice")
    assert ledger.of_kind("commit") == []
    assert services.elections.get(open_election.id).votes_committed == 0


def test_wallet_of_another_voter_rejected(services, open_election, wallets):
    with pytest.raises(NotEligible):
        services.commitments.commit(open_election.id, "v1", wallets["v2"], "Alice")


def test_revoked_voter_cannot_commit(services, open_election, wallets):
    services.registry.revoke(open_election.id, "v1")
    with pytest.raises(NotEligible):
        services.commitments.commit(open_election.id, "v1", wallets["v1"], "Alice")


def test_unknown_candidate_rejected(services, open_election, wallets, ledger):
    with pytest.raises(UnknownCandidate):
        services.commitments.commit(open_election.id, "v1", wallets["v1"], "Mallory")
    assert not services.store.get_voter(open_election.id, "v1").committed
    assert ledger.of_kind("commit") == []


def test_commit_outside_window(services, election, wallets, clock):
    services.registry.register(election.id, "v1", wallets["v1"])
    with pytest.raises(ElectionNotOpen):
        services.commitments.commit(election.id, "v1", wallets["v1"], "Alice")
    services.elections.open(election.id)
    clock.advance(hours=2)
    with pytest.raises(ElectionNotOpen):
        services.commitments.commit(election.id, "v1", wallets["v1"], "Alice")


def test_commit_after_close_rejected(services, open_election, wallets, clock):
    end_voting(services, clock, open_election.id)
    with pytest.raises(ElectionNotOpen):
        services.commitments.commit(open_election.id, "v1", wallets["v1"], "Alice")


def test_reveal_before_voting_ends(services, open_election, wallets, clock):
    receipt = services.commitments.commit(open_election.id, "v1", wallets["v1"], "Alice")
    with pytest.raises(ElectionNotClosed):
        services.commitments.reveal(open_election.id, "v1", "Alice", receipt.salt)
    # Closed early: reveals still wait for the scheduled end.
    services.elections.close(open_election.id)
    with pytest.raises(ElectionNotClosed):
        services.commitments.reveal(open_election.id, "v1", "Alice", receipt.salt)
    clock.advance(hours=3)
    assert services.commitments.reveal(open_election.id, "v1", "Alice", receipt.salt)


def test_reveal_without_commitment(services, open_election, clock):
    end_voting(services, clock, open_election.id)
    with pytest.raises(NotFound):
        services.commitments.reveal(open_election.id, "v1", "Alice", "ab" * 32)


def test_double_reveal_rejected(services, open_election, wallets, clock, ledger):
    receipt = services.commitments.commit(open_election.id, "v1", wallets["v1"], "Alice")
    end_voting(services, clock, open_election.id)
    services.commitments.reveal(open_election.id, "v1", "Alice", receipt.salt)
    with pytest.raises(AlreadyRevealed):
        services.commitments.reveal(open_election.id, "v1", "Alice", receipt.salt)
    assert len(ledger.of_kind("reveal")) == 1


def test_commit_ledger_failure_rolls_back(services, open_election, wallets, ledger):
    eid = open_election.id
    ledger.fail_next = 1
    with pytest.raises(LedgerSubmissionFailed) as excinfo:
        services.commitments.commit(eid, "v1", wallets["v1"], "Alice")
    assert excinfo.value.retryable

    assert services.store.get_commitment(eid, "v1") is None
    assert not services.store.get_voter(eid, "v1").committed
    assert services.elections.get(eid).votes_committed == 0
    failure = services.audit.list_events(election_id=eid)[0]
    assert failure.event_type == "commit_ledger_failure"
    assert failure.severity == Severity.CRITICAL

    receipt = services.commitments.commit(eid, "v1", wallets["v1"], "Alice")
    assert receipt.transaction_hash
    assert services.elections.get(eid).votes_committed == 1


def test_reveal_ledger_failure_rolls_back(services, open_election, wallets, clock, ledger):
    eid = open_election.id
    receipt = services.commitments.commit(eid, "v1", wallets["v1"], "Alice")
    end_voting(services, clock, eid)
    ledger.fail_next = 1
    with pytest.raises(LedgerSubmissionFailed):
        services.commitments.reveal(eid, "v1", "Alice", receipt.salt)
    assert services.store.get_reveal(eid, "v1") is None
    assert not services.store.get_voter(eid, "v1").revealed

    assert services.commitments.reveal(eid, "v1", "Alice", receipt.salt)
    assert services.commitments.get_reveal(eid, "v1").status == RecordStatus.CONFIRMED


def test_reveal_after_tally_is_read_only(services, open_election, wallets, clock, ledger):
    eid = open_election.id
    receipt = services.commitments.commit(eid, "v1", wallets["v1"], "Bob")
    end_voting(services, clock, eid)
    services.commitments.reveal(eid, "v1", "Bob", receipt.salt)
    published = services.elections.tally(eid)
    submissions = len(ledger.submitted)

    assert services.commitments.reveal(eid, "v1", "Bob", receipt.salt) is True
    with pytest.raises(InvalidReveal):
        services.commitments.reveal(eid, "v1", "Alice", receipt.salt)
    assert services.tally.get(eid).counts == published.counts
    assert len(ledger.of_kind("reveal")) == 1
    assert len(ledger.of_kind("commit")) == 1
    assert len(ledger.submitted) == submissions + 1  # the mismatch audit anchor


def test_audit_never_records_salts(services, open_election, wallets, clock, ledger):
    eid = open_election.id
    receipt = services.commitments.commit(eid, "v1", wallets["v1"], "Alice")
    end_voting(services, clock, eid)
    with pytest.raises(InvalidReveal):
        services.commitments.reveal(eid, "v1", "Alice", "ee" * 32)
    for event in services.audit.list_events(election_id=eid):
        assert receipt.salt not in str(event.payload)
        assert "ee" * 32 not in str(event.payload)
    assert all("salt" not in p for p in ledger.of_kind("audit"))


class AbortingLedger(FakeLedger):
    """Raises ``exc`` from the first vote submission, like a worker being
    killed mid-call."""

    def __init__(self, exc):
        super().__init__()
        self.exc = exc

    def submit(self, payload):
        if payload.get("kind") != "audit" and self.exc is not None:
            exc, self.exc = self.exc, None
            raise exc
        return super().submit(payload)


def _abandon_commitment(services, election_id, voter_id, reserved_at):
    """Leave the state a crashed worker leaves between reserve and confirm."""
    services.store.put_commitment(
        Commitment(election_id=election_id, voter_id=voter_id, commitment_hash="00" * 32, created_at=reserved_at)
    )
    services.registry.mark_committed(election_id, voter_id)
    services.elections.adjust_counts(election_id, votes_committed=1)


def test_late_reveal_after_tally_is_not_counted(services, open_election, wallets, clock, ledger):
    eid = open_election.id
    late = services.commitments.commit(eid, "v1", wallets["v1"], "Alice")
    on_time = services.commitments.commit(eid, "v2", wallets["v2"], "Bob")
    end_voting(services, clock, eid)
    services.commitments.reveal(eid, "v2", "Bob", on_time.salt)
    services.elections.tally(eid)

    with pytest.raises(RevealTooLate):
        services.commitments.reveal(eid, "v1", "Alice", late.salt)
    assert not services.store.get_voter(eid, "v1").revealed
    assert services.store.get_reveal(eid, "v1") is None
    assert services.tally.get(eid).counts == {"Alice": 0, "Bob": 1}
    assert len(ledger.of_kind("reveal")) == 1


@pytest.mark.parametrize("abort", [SystemExit(1), KeyboardInterrupt()])
def test_aborted_commit_releases_reservation(services, open_election, wallets, abort):
    eid = open_election.id
    services.commitments.ledger = AbortingLedger(abort)
    with pytest.raises(type(abort)):
        services.commitments.commit(eid, "v1", wallets["v1"], "Alice")
    assert services.store.get_commitment(eid, "v1") is None
    assert not services.store.get_voter(eid, "v1").committed
    assert services.elections.get(eid).votes_committed == 0

    receipt = services.commitments.commit(eid, "v1", wallets["v1"], "Alice")
    assert services.commitments.get_commitment(eid, "v1").tx_hash == receipt.transaction_hash


def test_aborted_reveal_releases_reservation(services, open_election, wallets, clock):
    eid = open_election.id
    receipt = services.commitments.commit(eid, "v1", wallets["v1"], "Alice")
    end_voting(services, clock, eid)
    services.commitments.ledger = AbortingLedger(SystemExit(1))
    with pytest.raises(SystemExit):
        services.commitments.reveal(eid, "v1", "Alice", receipt.salt)
    assert services.store.get_reveal(eid, "v1") is None
    assert not services.store.get_voter(eid, "v1").revealed
    assert services.commitments.reveal(eid, "v1", "Alice", receipt.salt)


def test_abandoned_commitment_released_on_retry(services, open_election, wallets, clock):
    eid = open_election.id
    _abandon_commitment(services, eid, "v1", clock.now)
    with pytest.raises(AlreadyCommitted):
        services.commitments.commit(eid, "v1", wallets["v1"], "Alice")

    clock.advance(seconds=services.commitments.pending_timeout + 1)
    receipt = services.commitments.commit(eid, "v1", wallets["v1"], "Alice")
    assert services.commitments.get_commitment(eid, "v1").commitment_hash == receipt.commitment
    assert services.elections.get(eid).votes_committed == 1
    released = [e for e in services.audit.list_events(election_id=eid) if e.event_type == "stale_submission_released"]
    assert [e.payload["voter_id"] for e in released] == ["v1"]


def test_abandoned_reveal_released_on_retry(services, open_election, wallets, clock):
    eid = open_election.id
    receipt = services.commitments.commit(eid, "v1", wallets["v1"], "Alice")
    end_voting(services, clock, eid)
    services.store.put_reveal(
        Reveal(election_id=eid, voter_id="v1", choice="Alice", salt=receipt.salt, created_at=clock.now)
    )
    services.registry.mark_revealed(eid, "v1")
    services.elections.adjust_counts(eid, votes_revealed=1)
    with pytest.raises(AlreadyRevealed):
        services.commitments.reveal(eid, "v1", "Alice", receipt.salt)

    clock.advance(seconds=services.commitments.pending_timeout + 1)
    assert services.commitments.reveal(eid, "v1", "Alice", receipt.salt)
    assert services.commitments.get_reveal(eid, "v1").status == RecordStatus.CONFIRMED
    assert services.elections.get(eid).votes_revealed == 1


def test_tally_releases_abandoned_reservations(services, open_election, wallets, clock):
    eid = open_election.id
    _abandon_commitment(services, eid, "v1", clock.now)
    receipt = services.commitments.commit(eid, "v2", wallets["v2"], "Bob")
    end_voting(services, clock, eid)
    services.commitments.reveal(eid, "v2", "Bob", receipt.salt)

    result = services.elections.tally(eid)
    assert result.counts == {"Alice": 0, "Bob": 1}
    assert services.store.get_commitment(eid, "v1") is None
    assert services.elections.get(eid).votes_committed == 1


def test_fresh_reservation_still_blocks_tally(services, open_election, clock):
    eid = open_election.id
    end_voting(services, clock, eid)
    _abandon_commitment(services, eid, "v1", clock.now)
    with pytest.raises(InvalidTransition):
        services.elections.tally(eid)
    clock.advance(seconds=services.commitments.pending_timeout + 1)
    assert services.elections.tally(eid).total == 0


def test_submission_outliving_its_reservation(services, open_election, wallets, clock):
    eid = open_election.id
    engine = services.commitments

    class StallingLedger(FakeLedger):
        def submit(self, payload):
            if payload.get("kind") == "commit":
                clock.advance(seconds=engine.pending_timeout + 1)
                engine.release_stale(eid)
            return super().submit(payload)

    engine.ledger = StallingLedger()
    with pytest.raises(LedgerSubmissionFailed):
        engine.commit(eid, "v1", wallets["v1"], "Alice")
    assert services.store.get_commitment(eid, "v1") is None
    assert not services.store.get_voter(eid, "v1").committed
    assert services.elections.get(eid).votes_committed == 0
