import hashlib
import hmac
import json
import secrets
from typing import Any

from algosdk import encoding

from .errors import ValidationError

SALT_BYTES = 32


def canonical_json(data: dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_wallet(wallet: str) -> str:
    return wallet.strip().upper()


def validate_wallet(wallet: Any) -> str:
    if not isinstance(wallet, str) or not wallet.strip():
        raise ValidationError("walletAddress is required")
    normalized = normalize_wallet(wallet)
    if not encoding.is_valid_address(normalized):
        raise ValidationError(f"Invalid wallet address: {wallet}")
    return normalized


def generate_salt() -> str:
    return secrets.token_hex(SALT_BYTES)


def _salt_bytes(salt: str) -> bytes:
    if not isinstance(salt, str):
        raise ValidationError("salt must be a hex string")
    text = salt[2:] if salt.startswith(("0x", "0X")) else salt
    try:
        raw = bytes.fromhex(text)
    except ValueError as exc:
        raise ValidationError("salt must be a hex string") from exc
    if len(raw) < SALT_BYTES:
        raise ValidationError(f"salt must carry at least {SALT_BYTES * 8} bits")
    return raw


def normalize_salt(salt: str) -> str:
    return _salt_bytes(salt).hex()


def build_commitment(choice: str, salt: str) -> str:
    """Return the SHA-256 commitment over ``utf8(choice) || salt``.

    The salt is decoded from hex before hashing so ``0x``-prefixed and
    bare salts bind to the same digest.
    """
    if not isinstance(choice, str) or not choice:
        raise ValidationError("choice is required")
    return hashlib.sha256(choice.encode("utf-8") + _salt_bytes(salt)).hexdigest()


def commitment_matches(choice: str, salt: str, commitment_hash: str) -> bool:
    return hmac.compare_digest(build_commitment(choice, salt), commitment_hash)
