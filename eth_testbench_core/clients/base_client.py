import abc
from typing import Any, Dict, Optional


class BroadcastTarget(abc.ABC):
    """
    Abstract Base Class for the chains a broadcast plan can be committed to.
    The Broadcast Executor only talks to this interface, so a remote node and
    the in-process node behave the same from its point of view.
    """

    def __init__(self, rpc_method_aliases: Optional[Dict[str, str]] = None):
        """
        Args:
            rpc_method_aliases: Optional mapping from generic method names
                                (e.g., "snapshot", "set_balance") to the
                                target's RPC method names.
        """
        self.rpc_method_aliases = rpc_method_aliases if rpc_method_aliases is not None else {}

    @abc.abstractmethod
    def chain_id(self) -> int:
        """Returns the chain id transactions must be bound to."""
        pass

    @abc.abstractmethod
    def get_transaction_count(self, address: str) -> int:
        """Returns the next nonce of ``address`` as seen by the target."""
        pass

    @abc.abstractmethod
    def get_fee_parameters(self) -> Dict[str, int]:
        """
        Returns EIP-1559 fee parameters with keys 'maxFeePerGas' and
        'maxPriorityFeePerGas'.
        """
        pass

    @abc.abstractmethod
    def send_raw_transaction(self, raw_transaction: bytes) -> str:
        """
        Submits a signed transaction and returns its hash as a 0x-prefixed
        hex string. Raises RpcError when the target rejects it.
        """
        pass

    @abc.abstractmethod
    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Returns the receipt of ``tx_hash`` or None when it is not mined yet."""
        pass

    @abc.abstractmethod
    def call_custom_rpc(self, method: str, *params: Any) -> Any:
        """
        Calls an arbitrary JSON-RPC method, resolving ``method`` through the
        alias table first. Returns the ``result`` member; raises RpcError.
        """
        pass

    def snapshot(self) -> str:
        return self.call_custom_rpc(self.rpc_method_aliases.get("snapshot", "evm_snapshot"))

    def revert(self, snapshot_id: str) -> bool:
        return self.call_custom_rpc(self.rpc_method_aliases.get("revert", "evm_revert"), snapshot_id)

    def set_balance(self, address: str, amount: int) -> None:
        self.call_custom_rpc(self.rpc_method_aliases.get("set_balance", "anvil_setBalance"), address, hex(amount))
