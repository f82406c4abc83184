from unittest.mock import MagicMock

import pytest
from eth_account import Account

from execution.signers import DEFAULT_DERIVATION_PATH, HardwareDeviceSigner, PrivateKeySigner

PRIVATE_KEY = "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
EXPECTED_ADDRESS = Account.from_key("0x" + PRIVATE_KEY).address


def test_private_key_signer_accepts_unprefixed_key():
    assert PrivateKeySigner(PRIVATE_KEY).address == EXPECTED_ADDRESS
    assert PrivateKeySigner("0x" + PRIVATE_KEY).address == EXPECTED_ADDRESS


def test_private_key_signer_produces_raw_transaction():
    signer = PrivateKeySigner(PRIVATE_KEY)
    raw = signer.sign({
        "to": "0x" + "22" * 20,
        "value": 0,
        "gas": 21000,
        "gasPrice": 10 ** 9,
        "nonce": 0,
        "chainId": 137,
    })
    assert isinstance(raw, bytes)
    assert len(raw) > 0
    assert signer.is_available() is True


def test_hardware_signer_caches_address():
    device = MagicMock()
    device.get_address.return_value = "0x" + "aa" * 20
    signer = HardwareDeviceSigner(device)

    assert signer.address == "0x" + "aa" * 20
    assert signer.address == "0x" + "aa" * 20
    device.get_address.assert_called_once_with(DEFAULT_DERIVATION_PATH)


def test_hardware_signer_signs_on_device():
    device = MagicMock()
    device.is_connected.return_value = True
    device.sign_transaction.return_value = bytearray(b"\x02signed")
    signer = HardwareDeviceSigner(device, derivation_path="m/44'/60'/0'/0/3")

    assert signer.sign({"nonce": 1}) == b"\x02signed"
    device.sign_transaction.assert_called_once_with("m/44'/60'/0'/0/3", {"nonce": 1})


def test_disconnected_hardware_signer_refuses():
    device = MagicMock()
    device.is_connected.return_value = False
    signer = HardwareDeviceSigner(device)

    with pytest.raises(RuntimeError):
        signer.sign({"nonce": 1})
    device.sign_transaction.assert_not_called()


def test_device_errors_mean_unavailable():
    device = MagicMock()
    device.is_connected.side_effect = OSError("usb unplugged")
    assert HardwareDeviceSigner(device).is_available() is False
