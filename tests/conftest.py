import hashlib
import threading
from datetime import datetime, timedelta, timezone

import pytest
from algosdk import account

from ballotledger.config import Settings
from ballotledger.errors import LedgerNotFound, LedgerSubmissionFailed, LedgerUnavailable
from ballotledger.ledger import STATUS_SUCCESS, Ledger
from ballotledger.models import LedgerReceipt, LedgerTransaction
from ballotledger.services import build_services
from ballotledger.signer import Signer
from ballotledger.store import MemoryStore

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
CANDIDATES = [{"name": "Alice", "party": "Blue"}, {"name": "Bob"}]


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeSigner(Signer):
    def __init__(self) -> None:
        _, self.address = account.generate_account()

    def current_address(self) -> str:
        return self.address

    def sign(self, txn):
        return txn


class FakeLedger(Ledger):
    """In-memory ledger: every submit is confirmed in its own block."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.transactions: dict[str, LedgerTransaction] = {}
        self.submitted: list[dict] = []
        self.fail_next = 0
        self.unavailable = False
        self.block = 100

    def submit(self, payload):
        with self._lock:
            if self.fail_next > 0:
                self.fail_next -= 1
                raise LedgerSubmissionFailed("simulated ledger rejection")
            self.block += 1
            tx_hash = hashlib.sha256(f"{self.block}:{sorted(payload.items())}".encode()).hexdigest()[:52].upper()
            self.transactions[tx_hash] = LedgerTransaction(
                tx_hash=tx_hash,
                status=STATUS_SUCCESS,
                block_number=self.block,
                confirmations=1,
                gas_used=1000,
                payload=dict(payload),
            )
            self.submitted.append(dict(payload))
            return LedgerReceipt(tx_hash=tx_hash, block_number=self.block)

    def get_transaction(self, tx_hash):
        if self.unavailable:
            raise LedgerUnavailable("simulated outage")
        with self._lock:
            tx = self.transactions.get(tx_hash)
        if tx is None:
            raise LedgerNotFound(f"Transaction {tx_hash} not found on ledger")
        return tx

    def of_kind(self, kind: str) -> list[dict]:
        return [p for p in self.submitted if p.get("kind") == kind]


def new_wallet() -> str:
    return account.generate_account()[1]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def services(clock, ledger, signer):
    return build_services(Settings(), store=MemoryStore(), ledger=ledger, signer=signer, clock=clock)


@pytest.fixture
def election(services, clock):
    return services.elections.create(
        name="Board seat",
        description="Annual board election",
        candidates=CANDIDATES,
        start_time=clock.now,
        end_time=clock.now + timedelta(hours=2),
        actor="admin-1",
    )


@pytest.fixture
def wallets():
    return {voter_id: new_wallet() for voter_id in ("v1", "v2", "v3")}


@pytest.fixture
def open_election(services, election, wallets, clock):
    """Election in the Open state with voters v1..v3 registered."""
    services.elections.open(election.id, actor="admin-1")
    for voter_id, wallet in wallets.items():
        services.registry.register(election.id, voter_id, wallet, actor="admin-1")
    clock.advance(minutes=5)
    return services.elections.get(election.id)


def end_voting(services, clock, election_id: str) -> None:
    clock.advance(hours=3)
    services.elections.close(election_id, actor="admin-1")
