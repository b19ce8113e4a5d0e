import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .audit import AuditLog
from .commitments import CommitmentEngine
from .config import Settings
from .db import ConnectionPool
from .elections import ElectionStateMachine
from .ledger import AlgorandLedger, Ledger
from .locks import ElectionLocks
from .models import utcnow
from .registry import EligibilityRegistry
from .signer import MnemonicSigner, Signer
from .store import MemoryStore, PostgresStore, RecordStore
from .tally import TallyEngine
from .verification import VerificationService

logger = logging.getLogger(__name__)


@dataclass
class VotingServices:
    store: RecordStore
    ledger: Ledger
    signer: Signer | None
    audit: AuditLog
    elections: ElectionStateMachine
    registry: EligibilityRegistry
    commitments: CommitmentEngine
    tally: TallyEngine
    verifier: VerificationService


def build_store(settings: Settings) -> RecordStore:
    if settings.store_backend == "postgres":
        pool = ConnectionPool(settings.database_url or "", settings.db_pool_min, settings.db_pool_max)
        store = PostgresStore(pool)
        store.ensure_schema()
        return store
    if settings.store_backend != "memory":
        raise RuntimeError(f"Unknown BALLOT_STORE backend: {settings.store_backend}")
    logger.warning("Using the in-memory record store; data is lost on restart")
    return MemoryStore()


def build_services(
    settings: Settings,
    store: RecordStore | None = None,
    ledger: Ledger | None = None,
    signer: Signer | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> VotingServices:
    store = store if store is not None else build_store(settings)
    if ledger is None:
        signer = signer or MnemonicSigner(settings.service_mnemonic or "")
        ledger = AlgorandLedger.from_settings(settings, signer)

    locks = ElectionLocks()
    audit = AuditLog(store, ledger=ledger, anchor=settings.anchor_audit_events, clock=clock)
    tally = TallyEngine(store, audit, clock=clock)
    elections = ElectionStateMachine(store, locks, audit, tally, clock=clock)
    registry = EligibilityRegistry(store, locks, elections, audit, clock=clock)
    commitments = CommitmentEngine(
        store,
        locks,
        elections,
        registry,
        ledger,
        audit,
        signer=signer,
        clock=clock,
        pending_timeout=settings.pending_timeout_seconds,
    )
    elections.pending_sweeper = commitments.release_stale
    return VotingServices(
        store=store,
        ledger=ledger,
        signer=signer,
        audit=audit,
        elections=elections,
        registry=registry,
        commitments=commitments,
        tally=tally,
        verifier=VerificationService(store, ledger),
    )
