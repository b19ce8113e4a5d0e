import pytest

from ballotledger.errors import (
    AlreadyCommitted,
    DuplicateWallet,
    ElectionNotOpen,
    NotFound,
    ValidationError,
)
from ballotledger.registry import parse_csv

from conftest import end_voting, new_wallet


def test_register_and_lookup(services, election):
    wallet = new_wallet()
    record = services.registry.register(election.id, "v1", wallet.lower())
    assert record.wallet_address == wallet
    assert services.registry.is_eligible(election.id, wallet)
    assert services.elections.get(election.id).total_voters == 1


def test_register_is_idempotent(services, election):
    wallet = new_wallet()
    first = services.registry.register(election.id, "v1", wallet)
    again = services.registry.register(election.id, "v1", wallet)
    assert again == first
    assert len(services.registry.list_voters(election.id)) == 1
    assert services.elections.get(election.id).total_voters == 1


def test_wallet_bound_to_one_voter(services, election):
    wallet = new_wallet()
    services.registry.register(election.id, "v1", wallet)
    with pytest.raises(DuplicateWallet):
        services.registry.register(election.id, "v2", wallet)
    assert services.store.get_voter(election.id, "v2") is None


def test_same_wallet_in_different_elections(services, election, clock):
    other = services.elections.create(
        name="Treasurer",
        description="Treasurer election",
        candidates=["Carol", "Dan"],
        start_time=election.start_time,
        end_time=election.end_time,
    )
    wallet = new_wallet()
    services.registry.register(election.id, "v1", wallet)
    services.registry.register(other.id, "v1", wallet)
    assert services.registry.is_eligible(other.id, wallet)


def test_wallet_change_before_commit_is_audited(services, election):
    old, new = new_wallet(), new_wallet()
    services.registry.register(election.id, "v1", old)
    updated = services.registry.register(election.id, "v1", new, actor="admin-2")
    assert updated.wallet_address == new
    assert not services.registry.is_eligible(election.id, old)
    event = services.audit.list_events(election_id=election.id)[0]
    assert event.event_type == "voter_wallet_changed"
    assert event.actor == "admin-2"


def test_wallet_change_after_commit_refused(services, open_election, wallets):
    services.commitments.commit(open_election.id, "v1", wallets["v1"], "Alice")
    with pytest.raises(AlreadyCommitted):
        services.registry.register(open_election.id, "v1", new_wallet())


@pytest.mark.parametrize("voter_id,wallet", [("", None), ("v1", "nope"), (None, "x")])
def test_register_validation(services, election, voter_id, wallet):
    with pytest.raises(ValidationError):
        services.registry.register(election.id, voter_id, wallet)


def test_register_unknown_election(services):
    with pytest.raises(NotFound):
        services.registry.register("missing", "v1", new_wallet())


def test_registration_closes_with_voting(services, open_election, clock):
    end_voting(services, clock, open_election.id)
    with pytest.raises(ElectionNotOpen):
        services.registry.register(open_election.id, "v9", new_wallet())
    with pytest.raises(ElectionNotOpen):
        services.registry.bulk_register(open_election.id, [{"voterId": "v9", "walletAddress": new_wallet()}])


def test_bulk_register_reports_each_row(services, election):
    taken = new_wallet()
    services.registry.register(election.id, "v0", taken)
    rows = [
        {"voterId": "v1", "walletAddress": new_wallet()},
        {"voterId": "v2", "walletAddress": "bogus"},
        {"voter_id": "v3", "wallet_address": new_wallet()},
        {"voterId": "v4", "walletAddress": taken},
        "not a row",
    ]
    report = services.registry.bulk_register(election.id, rows, actor="admin-1")
    assert report.registered == 2
    assert report.failed == 3
    assert [r.code for r in report.rows if not r.ok] == [
        "validation_error",
        "duplicate_wallet",
        "validation_error",
    ]
    assert services.elections.get(election.id).total_voters == 3


def test_parse_csv_skips_header_and_blank_lines():
    w1, w2 = new_wallet(), new_wallet()
    text = f"voterId,walletAddress\n\nv1, {w1}\nv2,{w2}\nv3\n"
    assert parse_csv(text) == [
        {"voterId": "v1", "walletAddress": w1},
        {"voterId": "v2", "walletAddress": w2},
        {"voterId": "v3", "walletAddress": ""},
    ]


def test_revoke(services, election):
    wallet = new_wallet()
    services.registry.register(election.id, "v1", wallet)
    record = services.registry.revoke(election.id, "v1", actor="admin-1")
    assert not record.eligible
    assert not services.registry.is_eligible(election.id, wallet)
    assert services.registry.check(election.id, wallet)["eligible"] is False
    with pytest.raises(NotFound):
        services.registry.revoke(election.id, "ghost")


def test_revoke_after_commit_refused(services, open_election, wallets):
    services.commitments.commit(open_election.id, "v2", wallets["v2"], "Bob")
    with pytest.raises(AlreadyCommitted):
        services.registry.revoke(open_election.id, "v2")


def test_is_eligible_for_unknown_wallet(services, election):
    assert not services.registry.is_eligible(election.id, new_wallet())
    assert not services.registry.is_eligible(election.id, "")
    assert not services.registry.is_eligible("missing", new_wallet())


def test_check_reports_progress(services, open_election, wallets):
    services.commitments.commit(open_election.id, "v1", wallets["v1"], "Alice")
    status = services.registry.check(open_election.id, wallets["v1"].lower())
    assert status == {
        "electionId": open_election.id,
        "walletAddress": wallets["v1"],
        "voterId": "v1",
        "eligible": True,
        "committed": True,
        "revealed": False,
    }
