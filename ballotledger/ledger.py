import base64
import binascii
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from algosdk import transaction
from algosdk.error import AlgodHTTPError, IndexerHTTPError
from algosdk.v2client import algod, indexer

from .config import DEFAULT_NOTE_PREFIX, Settings
from .errors import LedgerNotFound, LedgerSubmissionFailed, LedgerUnavailable
from .hashing import canonical_json
from .models import LedgerReceipt, LedgerTransaction
from .signer import Signer

logger = logging.getLogger(__name__)

MAX_NOTE_BYTES = 1024
STATUS_SUCCESS = "Success"
STATUS_PENDING = "Pending"
STATUS_FAILED = "Failed"


class Ledger(ABC):
    """Append-only log the commitments and reveals are anchored to."""

    @abstractmethod
    def submit(self, payload: dict[str, Any]) -> LedgerReceipt:
        """Anchor ``payload`` and block until it is confirmed.

        Raises ``LedgerSubmissionFailed`` on rejection or timeout.
        """

    @abstractmethod
    def get_transaction(self, tx_hash: str) -> LedgerTransaction:
        """Raises ``LedgerNotFound`` for unknown references and
        ``LedgerUnavailable`` when the ledger cannot be reached."""


def encode_note(prefix: str, payload: dict[str, Any]) -> bytes:
    return (prefix + canonical_json(payload)).encode("utf-8")


def decode_note(prefix: str, note: bytes | None) -> dict[str, Any] | None:
    if not note:
        return None
    try:
        text = note.decode("utf-8")
    except UnicodeDecodeError:
        return None
    if not text.startswith(prefix):
        return None
    try:
        data = json.loads(text[len(prefix):])
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class AlgorandLedger(Ledger):
    def __init__(
        self,
        signer: Signer,
        algod_address: str,
        algod_token: str = "",
        indexer_address: str | None = None,
        indexer_token: str = "",
        timeout_rounds: int = 12,
        note_prefix: str = DEFAULT_NOTE_PREFIX,
    ) -> None:
        if not algod_address:
            raise RuntimeError("ALGORAND_ALGOD_ADDRESS is required")
        self.signer = signer
        self.algod = algod.AlgodClient(
            algod_token=algod_token,
            algod_address=algod_address,
            headers={"X-API-Key": algod_token} if algod_token else {},
        )
        self.indexer = None
        if indexer_address:
            self.indexer = indexer.IndexerClient(
                indexer_token=indexer_token,
                indexer_address=indexer_address,
                headers={"X-API-Key": indexer_token} if indexer_token else {},
            )
        self.timeout_rounds = timeout_rounds
        self.note_prefix = note_prefix

    @classmethod
    def from_settings(cls, settings: Settings, signer: Signer) -> "AlgorandLedger":
        return cls(
            signer=signer,
            algod_address=settings.algod_address or "",
            algod_token=settings.algod_token,
            indexer_address=settings.indexer_address,
            indexer_token=settings.indexer_token,
            timeout_rounds=settings.tx_timeout_rounds,
            note_prefix=settings.note_prefix,
        )

    def wait_for_confirmation(self, tx_id: str, timeout_rounds: int | None = None) -> dict[str, Any]:
        timeout = timeout_rounds if timeout_rounds is not None else self.timeout_rounds
        start_round = self.algod.status()["last-round"] + 1
        current_round = start_round
        while current_round < start_round + timeout:
            pending_txn = self.algod.pending_transaction_info(tx_id)
            confirmed_round = pending_txn.get("confirmed-round", 0)
            if confirmed_round > 0:
                return pending_txn
            pool_error = pending_txn.get("pool-error")
            if pool_error:
                raise RuntimeError(f"Transaction rejected: {pool_error}")
            self.algod.status_after_block(current_round)
            current_round += 1
        raise TimeoutError(f"Transaction not confirmed after {timeout} rounds")

    def submit(self, payload: dict[str, Any]) -> LedgerReceipt:
        note = encode_note(self.note_prefix, payload)
        if len(note) > MAX_NOTE_BYTES:
            raise LedgerSubmissionFailed(f"Ledger note exceeds {MAX_NOTE_BYTES} bytes")
        sender = self.signer.current_address()
        try:
            sp = self.algod.suggested_params()
            txn = transaction.PaymentTxn(
                sender=sender,
                sp=sp,
                receiver=sender,
                amt=0,
                note=note,
            )
            tx_id = self.algod.send_transaction(self.signer.sign(txn))
            pending = self.wait_for_confirmation(tx_id)
        except (AlgodHTTPError, OSError, RuntimeError) as exc:
            logger.warning("Ledger submission of %s failed: %s", payload.get("kind"), exc)
            raise LedgerSubmissionFailed(f"Ledger submission failed: {exc}") from exc
        confirmed_round = int(pending.get("confirmed-round", 0))
        logger.info("Anchored %s in tx %s at round %s", payload.get("kind"), tx_id, confirmed_round)
        return LedgerReceipt(tx_hash=tx_id, block_number=confirmed_round)

    def _lookup_tx(self, tx_hash: str) -> dict[str, Any]:
        if self.indexer:
            resp = self.indexer.search_transactions(txid=tx_hash)
            txns = resp.get("transactions", [])
            if txns:
                return txns[0]
        pending = self.algod.pending_transaction_info(tx_hash)
        if pending:
            return pending
        raise LedgerNotFound(f"Transaction {tx_hash} not found on ledger")

    def get_transaction(self, tx_hash: str) -> LedgerTransaction:
        try:
            tx = self._lookup_tx(tx_hash)
            last_round = int(self.algod.status()["last-round"])
        except (AlgodHTTPError, IndexerHTTPError) as exc:
            if getattr(exc, "code", None) in (400, 404):
                raise LedgerNotFound(f"Transaction {tx_hash} not found on ledger") from exc
            raise LedgerUnavailable(f"Ledger lookup failed: {exc}") from exc
        except OSError as exc:
            raise LedgerUnavailable(f"Ledger lookup failed: {exc}") from exc

        # Indexer results are flat; algod pending info nests the signed txn.
        if "tx-type" in tx:
            fee = tx.get("fee")
            note_b64 = tx.get("note")
        else:
            txn_node = tx.get("txn", {}).get("txn", {})
            fee = txn_node.get("fee")
            note_b64 = txn_node.get("note")

        confirmed_round = int(tx.get("confirmed-round", 0) or 0)
        if tx.get("pool-error"):
            status = STATUS_FAILED
        elif confirmed_round > 0:
            status = STATUS_SUCCESS
        else:
            status = STATUS_PENDING
        confirmations = max(0, last_round - confirmed_round + 1) if confirmed_round > 0 else 0

        note = None
        if note_b64:
            try:
                note = base64.b64decode(note_b64)
            except (binascii.Error, ValueError):
                note = None

        return LedgerTransaction(
            tx_hash=tx_hash,
            status=status,
            block_number=confirmed_round,
            confirmations=confirmations,
            gas_used=int(fee) if fee is not None else None,
            payload=decode_note(self.note_prefix, note),
        )
