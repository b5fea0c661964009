import logging
from typing import Any, Dict, List, Optional

import requests
from web3 import Web3
from web3.exceptions import TransactionNotFound

from .. import config as core_config
from ..errors import RpcError
from .base_client import BroadcastTarget

logger = logging.getLogger(__name__)


class RpcTarget(BroadcastTarget):
    """
    Broadcast target backed by a remote JSON-RPC node (anvil, geth, reth or
    any other endpoint). Standard queries go through web3.py; custom methods
    are posted directly with requests.
    """

    def __init__(self, rpc_url: str = core_config.DEFAULT_TARGET_URL,
                 rpc_method_aliases: Optional[Dict[str, str]] = None,
                 chain_id: Optional[int] = None,
                 timeout: float = core_config.DEFAULT_RPC_TIMEOUT_SECONDS,
                 priority_fee: int = core_config.DEFAULT_PRIORITY_FEE):
        """
        Args:
            rpc_url: The node's RPC endpoint (e.g., "http://127.0.0.1:8545").
            rpc_method_aliases: Custom RPC method aliases.
            chain_id: Chain id to bind transactions to; queried from the node when None.
            timeout: Per-request timeout in seconds.
            priority_fee: Tip used when the node cannot suggest one.
        """
        super().__init__(rpc_method_aliases)
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.priority_fee = priority_fee
        self._chain_id = chain_id
        self._request_id = 0
        self.w3: Optional[Web3] = None

    def get_web3_instance(self) -> Web3:
        if self.w3 is None:
            self.w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout}))
        return self.w3

    def _make_rpc_request(self, method: str, params: Optional[List[Any]] = None) -> Dict[str, Any]:
        """Posts one JSON-RPC request and returns the decoded response. Raises RpcError."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or [],
            "id": self._request_id,
        }
        try:
            response = requests.post(self.rpc_url, json=payload, headers={"Content-Type": "application/json"},
                                     timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.Timeout as e:
            raise RpcError(-32000, f"RPC request {method} to {self.rpc_url} timed out") from e
        except requests.exceptions.RequestException as e:
            raise RpcError(-32000, f"RPC request {method} failed: {e}") from e
        except ValueError as e:
            raise RpcError(-32700, f"Failed to decode JSON response for {method}: {e}") from e

    def call_custom_rpc(self, method: str, *params: Any) -> Any:
        actual_method = self.rpc_method_aliases.get(method, method)
        response = self._make_rpc_request(actual_method, list(params))
        error = response.get("error")
        if error:
            logger.warning("RPC error for %s: %s", actual_method, error)
            raise RpcError(error.get("code", -32000), error.get("message", "unknown error"), error.get("data"))
        if "result" not in response:
            raise RpcError(-32603, f"Unexpected RPC response for {actual_method}: {response}")
        return response["result"]

    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self.get_web3_instance().eth.chain_id
        return self._chain_id

    def get_transaction_count(self, address: str) -> int:
        w3 = self.get_web3_instance()
        return w3.eth.get_transaction_count(Web3.to_checksum_address(address), "pending")

    def get_fee_parameters(self) -> Dict[str, int]:
        w3 = self.get_web3_instance()
        latest_block = w3.eth.get_block("latest")
        base_fee_per_gas = latest_block.get("baseFeePerGas", 0)
        try:
            max_priority_fee_per_gas = w3.eth.max_priority_fee
        except ValueError as e:
            logger.warning("Node does not suggest a priority fee (%s); using %d", e, self.priority_fee)
            max_priority_fee_per_gas = self.priority_fee
        return {
            "maxFeePerGas": 2 * base_fee_per_gas + max_priority_fee_per_gas,
            "maxPriorityFeePerGas": max_priority_fee_per_gas,
        }

    def send_raw_transaction(self, raw_transaction: bytes) -> str:
        tx_hash = self.call_custom_rpc("eth_sendRawTransaction", "0x" + bytes(raw_transaction).hex())
        logger.debug("Submitted %s to %s", tx_hash, self.rpc_url)
        return tx_hash

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        w3 = self.get_web3_instance()
        try:
            return dict(w3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None
