"""
Manages the private keys used to sign broadcast transactions.
"""
import logging
from typing import Any, Dict, List, Optional

import pandas as pd
from eth_account import Account
from eth_account.datastructures import SignedTransaction as EthSignedTransaction
from web3 import Web3

from . import config as core_config
from .errors import SigningError

logger = logging.getLogger(__name__)


class KeyManager:
    """
    Loads signer keys from CSV files (columns ``pub_key`` and ``priv_key``) or
    from explicit private keys, and signs transactions for the addresses it holds.
    """
    def __init__(self,
                 key_file_paths: Optional[List[str]] = None,
                 private_keys: Optional[List[str]] = None,
                 max_accounts_to_load: int = core_config.MAX_ACCOUNTS_TO_LOAD
                ):
        """
        Initializes the KeyManager.

        :param key_file_paths: CSV files to read. None reads nothing; pass
                               ``KeyManager.default_key_files()`` to use the configured files.
        :param private_keys: Additional hex private keys; their addresses are derived.
        :param max_accounts_to_load: Maximum number of unique signers to hold.
        """
        self.key_storage: Dict[str, str] = {}
        self.account_addresses: List[str] = []
        self.max_accounts_to_load = max_accounts_to_load

        for private_key in private_keys or []:
            self.add_key(private_key)
        if key_file_paths:
            self._load_accounts_from_files(key_file_paths)

    @staticmethod
    def default_key_files() -> List[str]:
        return [core_config.DEFAULT_KEY_FILE_PRIMARY, core_config.DEFAULT_KEY_FILE_SECONDARY]

    @staticmethod
    def _valid_key_format(private_key: str) -> bool:
        return len(private_key) == 64 or (private_key.startswith('0x') and len(private_key) == 66)

    def add_key(self, private_key: str) -> str:
        """Stores ``private_key`` and returns the checksummed address it controls."""
        if not isinstance(private_key, str) or not self._valid_key_format(private_key):
            raise SigningError("Private key must be 32 bytes of hex")
        if len(self.account_addresses) >= self.max_accounts_to_load:
            raise SigningError(f"Refusing to hold more than {self.max_accounts_to_load} signer keys")
        address = Account.from_key(private_key).address
        if address not in self.key_storage:
            self.key_storage[address] = private_key
            self.account_addresses.append(address)
        return address

    def _load_accounts_from_files(self, file_paths: List[str]):
        """Loads address/private key pairs from CSV files, skipping malformed rows."""
        for file_path in file_paths:
            if len(self.account_addresses) >= self.max_accounts_to_load:
                break
            try:
                key_data_frame = pd.read_csv(file_path, dtype=str)
            except FileNotFoundError:
                logger.warning("Key file not found: %s", file_path)
                continue
            except pd.errors.EmptyDataError:
                logger.warning("Key file is empty: %s", file_path)
                continue

            if 'pub_key' not in key_data_frame.columns or 'priv_key' not in key_data_frame.columns:
                logger.warning("Skipping %s: missing 'pub_key' or 'priv_key' column", file_path)
                continue

            for row_number, row_data in key_data_frame.iterrows():
                if len(self.account_addresses) >= self.max_accounts_to_load:
                    break
                private_key = str(row_data['priv_key'])
                if not self._valid_key_format(private_key):
                    logger.warning("Skipping row %s in %s: malformed private key", row_number, file_path)
                    continue
                try:
                    declared = Web3.to_checksum_address(row_data['pub_key'])
                except ValueError as e:
                    logger.warning("Skipping row %s in %s: %s", row_number, file_path, e)
                    continue
                derived = Account.from_key(private_key).address
                if derived != declared:
                    logger.warning("Skipping row %s in %s: key does not control %s", row_number, file_path, declared)
                    continue
                self.add_key(private_key)

        if not self.account_addresses:
            logger.warning("No signer keys were loaded")
        else:
            logger.info("KeyManager holds %d signer keys", len(self.account_addresses))

    def has_key(self, address: str) -> bool:
        return Web3.to_checksum_address(address) in self.key_storage

    def get_private_key(self, address: str) -> Optional[str]:
        """Retrieves the private key for an address, or None when it is not held."""
        return self.key_storage.get(Web3.to_checksum_address(address))

    def sign_transaction(self, address: str, transaction: Dict[str, Any]) -> EthSignedTransaction:
        """Signs ``transaction`` with the key of ``address``. Raises SigningError."""
        private_key = self.get_private_key(address)
        if private_key is None:
            raise SigningError(f"No signer key held for {address}")
        try:
            return Account.sign_transaction(transaction, private_key)
        except (TypeError, ValueError) as e:
            raise SigningError(f"Could not sign transaction from {address}: {e}") from e

    @property
    def loaded_account_count(self) -> int:
        return len(self.account_addresses)

    @property
    def managed_accounts_list(self) -> List[str]:
        """Returns a copy of the list of managed addresses."""
        return list(self.account_addresses)
