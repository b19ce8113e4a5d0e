import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

DEFAULT_NOTE_PREFIX = "ballotledger:v1:"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> list[str]:
    return [x.strip() for x in os.getenv(name, default).split(",") if x.strip()]


@dataclass
class Settings:
    store_backend: str = "memory"
    database_url: str | None = None
    db_pool_min: int = 1
    db_pool_max: int = 10
    algod_address: str | None = None
    algod_token: str = ""
    indexer_address: str | None = None
    indexer_token: str = ""
    service_mnemonic: str | None = None
    tx_timeout_rounds: int = 12
    pending_timeout_seconds: int = 120
    note_prefix: str = DEFAULT_NOTE_PREFIX
    anchor_audit_events: bool = True
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"


def load_settings() -> Settings:
    load_dotenv()
    return Settings(
        store_backend=os.getenv("BALLOT_STORE", "memory").strip().lower(),
        database_url=os.getenv("DATABASE_URL"),
        db_pool_min=int(os.getenv("DB_POOL_MIN", "1")),
        db_pool_max=int(os.getenv("DB_POOL_MAX", "10")),
        algod_address=os.getenv("ALGORAND_ALGOD_ADDRESS"),
        algod_token=os.getenv("ALGORAND_ALGOD_TOKEN", ""),
        indexer_address=os.getenv("ALGORAND_INDEXER_ADDRESS"),
        indexer_token=os.getenv("ALGORAND_INDEXER_TOKEN", ""),
        service_mnemonic=os.getenv("ALGORAND_SERVICE_MNEMONIC"),
        tx_timeout_rounds=int(os.getenv("ALGORAND_TX_TIMEOUT_ROUNDS", "12")),
        pending_timeout_seconds=int(os.getenv("PENDING_SUBMISSION_TIMEOUT_SECONDS", "120")),
        note_prefix=os.getenv("LEDGER_NOTE_PREFIX", DEFAULT_NOTE_PREFIX),
        anchor_audit_events=_env_bool("ANCHOR_AUDIT_EVENTS", True),
        cors_origins=_env_list("CORS_ORIGINS", "*"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
