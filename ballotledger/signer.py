from abc import ABC, abstractmethod
from typing import Any

from algosdk import account, mnemonic


class Signer(ABC):
    @abstractmethod
    def current_address(self) -> str: ...

    @abstractmethod
    def sign(self, txn: Any) -> Any: ...


class MnemonicSigner(Signer):
    """Service wallet recovered from a 25-word Algorand mnemonic."""

    def __init__(self, service_mnemonic: str) -> None:
        if not service_mnemonic:
            raise RuntimeError("ALGORAND_SERVICE_MNEMONIC is required")
        self._private_key = mnemonic.to_private_key(service_mnemonic)
        self._address = account.address_from_private_key(self._private_key)

    def current_address(self) -> str:
        return self._address

    def sign(self, txn: Any) -> Any:
        return txn.sign(self._private_key)
