import logging
from typing import Any, Dict, Optional

from ..errors import RpcError
from ..node import LocalNode
from .base_client import BroadcastTarget

logger = logging.getLogger(__name__)


class LocalNodeTarget(BroadcastTarget):
    """
    Broadcast target backed by an in-process LocalNode. Requests are passed
    as JSON-RPC dicts, so the node sees exactly what a remote client would send.
    """

    def __init__(self, node: Optional[LocalNode] = None,
                 rpc_method_aliases: Optional[Dict[str, str]] = None,
                 **node_kwargs: Any):
        """
        Args:
            node: The node to talk to; a new LocalNode built from ``node_kwargs`` when None.
            rpc_method_aliases: Custom RPC method aliases.
        """
        super().__init__(rpc_method_aliases)
        self.node = node if node is not None else LocalNode(**node_kwargs)
        self._request_id = 0

    def call_custom_rpc(self, method: str, *params: Any) -> Any:
        actual_method = self.rpc_method_aliases.get(method, method)
        self._request_id += 1
        response = self.node.handle({
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": actual_method,
            "params": list(params),
        })
        error = response.get("error")
        if error:
            raise RpcError(error["code"], error["message"], error.get("data"))
        return response["result"]

    def chain_id(self) -> int:
        return int(self.call_custom_rpc("eth_chainId"), 16)

    def get_transaction_count(self, address: str) -> int:
        return int(self.call_custom_rpc("eth_getTransactionCount", address, "pending"), 16)

    def get_fee_parameters(self) -> Dict[str, int]:
        block = self.call_custom_rpc("eth_getBlockByNumber", "latest", False)
        base_fee_per_gas = int(block["baseFeePerGas"], 16)
        max_priority_fee_per_gas = int(self.call_custom_rpc("eth_maxPriorityFeePerGas"), 16)
        return {
            "maxFeePerGas": 2 * base_fee_per_gas + max_priority_fee_per_gas,
            "maxPriorityFeePerGas": max_priority_fee_per_gas,
        }

    def send_raw_transaction(self, raw_transaction: bytes) -> str:
        return self.call_custom_rpc("eth_sendRawTransaction", "0x" + bytes(raw_transaction).hex())

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.call_custom_rpc("eth_getTransactionReceipt", tx_hash)
