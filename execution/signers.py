"""Signing identities used by the execution coordinator."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from eth_account import Account

logger = logging.getLogger(__name__)

DEFAULT_DERIVATION_PATH = "m/44'/60'/0'/0/0"


class Signer(Protocol):
    @property
    def address(self) -> str: ...

    def is_available(self) -> bool: ...

    def sign(self, tx: Dict[str, Any]) -> bytes: ...


class PrivateKeySigner:
    """Signs with a raw private key held in process memory."""

    def __init__(self, private_key: str) -> None:
        if not private_key.startswith("0x"):
            private_key = "0x" + private_key
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def is_available(self) -> bool:
        return True

    def sign(self, tx: Dict[str, Any]) -> bytes:
        signed = self._account.sign_transaction(tx)
        return bytes(signed.raw_transaction)


class HardwareDeviceSigner:
    """
    Signs on an external hardware wallet.

    The device client is injected and must provide
    ``get_address(path)``, ``is_connected()`` and
    ``sign_transaction(path, tx) -> bytes`` (the raw signed transaction).
    The key never enters this process.
    """

    def __init__(self, device_client, derivation_path: str = DEFAULT_DERIVATION_PATH) -> None:
        self.device_client = device_client
        self.derivation_path = derivation_path
        self._address: Optional[str] = None

    @property
    def address(self) -> str:
        if self._address is None:
            self._address = self.device_client.get_address(self.derivation_path)
        return self._address

    def is_available(self) -> bool:
        try:
            return bool(self.device_client.is_connected())
        except (OSError, RuntimeError) as exc:
            logger.warning("Hardware signer unavailable: %s", exc)
            return False

    def sign(self, tx: Dict[str, Any]) -> bytes:
        if not self.is_available():
            raise RuntimeError("hardware signer is not connected")
        return bytes(self.device_client.sign_transaction(self.derivation_path, tx))
