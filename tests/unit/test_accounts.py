import pandas as pd
import pytest
from eth_account import Account

from eth_testbench_core.accounts import KeyManager
from eth_testbench_core.errors import SigningError

KEYS = [
    "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80",
    "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d",
    "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a",
]


def write_key_file(path, rows):
    pd.DataFrame(rows, columns=["pub_key", "priv_key"]).to_csv(path, index=False)
    return str(path)


class TestKeyManager:
    def test_loads_matching_rows_from_csv(self, tmp_path):
        wrong_owner = Account.from_key(KEYS[0]).address
        path = write_key_file(tmp_path / "keys.csv", [
            (Account.from_key(KEYS[1]).address, KEYS[1]),
            (wrong_owner, KEYS[2]),                # key does not control the address
            ("not-an-address", KEYS[0]),
            (Account.from_key(KEYS[0]).address, "0x1234"),
        ])

        manager = KeyManager(key_file_paths=[path])

        assert manager.managed_accounts_list == [Account.from_key(KEYS[1]).address]

    def test_missing_files_and_columns_are_skipped(self, tmp_path):
        bad_columns = tmp_path / "bad.csv"
        pd.DataFrame({"address": ["x"]}).to_csv(bad_columns, index=False)
        manager = KeyManager(key_file_paths=[str(tmp_path / "absent.csv"), str(bad_columns)])
        assert manager.loaded_account_count == 0

    def test_account_limit(self, tmp_path):
        path = write_key_file(tmp_path / "keys.csv", [(Account.from_key(k).address, k) for k in KEYS])
        manager = KeyManager(key_file_paths=[path], max_accounts_to_load=2)

        assert manager.loaded_account_count == 2
        with pytest.raises(SigningError):
            manager.add_key(KEYS[2])

    def test_explicit_keys_and_lookup(self):
        manager = KeyManager(private_keys=[KEYS[0]])
        address = Account.from_key(KEYS[0]).address
        assert manager.has_key(address.lower())
        assert manager.get_private_key(address) == KEYS[0]
        assert manager.get_private_key("0x0000000000000000000000000000000000000b0b") is None

    def test_sign_transaction(self):
        manager = KeyManager(private_keys=[KEYS[0]])
        address = Account.from_key(KEYS[0]).address
        transaction = {"type": 2, "chainId": 31337, "nonce": 0, "gas": 21_000, "maxFeePerGas": 2,
                       "maxPriorityFeePerGas": 1, "to": address, "value": 0, "data": "0x"}

        signed = manager.sign_transaction(address, transaction)

        assert Account.recover_transaction(signed.raw_transaction) == address

    def test_signing_without_key_fails(self):
        with pytest.raises(SigningError):
            KeyManager().sign_transaction("0x0000000000000000000000000000000000000b0b", {})

    def test_malformed_private_key(self):
        with pytest.raises(SigningError):
            KeyManager(private_keys=["0x1234"])
