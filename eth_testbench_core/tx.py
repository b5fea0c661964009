"""
Defines the transaction data structures used by script simulation and broadcast.

A TransactionIntent is what a script asked for while broadcasting; it has no
nonce, fees or signature. Those are bound only when a plan is committed,
producing a SignedTransaction.
"""
from typing import Any, Dict, Optional

from eth_utils import to_checksum_address
from web3.types import HexBytes


class TransactionIntent:
    """
    Represents one transaction a script wants to send.
    ``to`` is None for contract creations, in which case ``data`` is the init code.
    """
    def __init__(self,
                 sender: str,
                 to: Optional[str],
                 data: bytes = b"",
                 value: int = 0,
                 gas: Optional[int] = None,
                 label: Optional[str] = None
                ):
        self.sender: str = to_checksum_address(sender)
        self.to: Optional[str] = to_checksum_address(to) if to is not None else None
        self.data: bytes = bytes(data)
        self.value: int = value
        self.gas: Optional[int] = gas
        self.label: Optional[str] = label

    @property
    def is_create(self) -> bool:
        return self.to is None

    def _key(self) -> tuple:
        return (self.sender, self.to, self.data, self.value, self.gas)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, TransactionIntent) and self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.sender,
            "to": self.to,
            "data": "0x" + self.data.hex(),
            "value": self.value,
            "gas": self.gas,
        }

    def __repr__(self) -> str:
        target = f"'{self.to[:10]}...'" if self.to else "CREATE"
        return (f"TransactionIntent(sender='{self.sender[:10]}...', to={target}, "
                f"value={self.value}, data_len={len(self.data)}, gas={self.gas})")


class SignedTransaction:
    """
    Represents an EIP-1559 transaction bound to a chain, a nonce and fees, and
    signed by the intent's sender.
    """
    def __init__(self,
                 intent: TransactionIntent,
                 nonce: int,
                 chain_id: int,
                 gas: int,
                 max_fee_per_gas: int,
                 max_priority_fee_per_gas: int,
                 raw_transaction: HexBytes,
                 tx_hash: str,
                 receipt_status: Optional[int] = None
                ):
        self.intent: TransactionIntent = intent
        self.nonce: int = nonce
        self.chain_id: int = chain_id
        self.gas: int = gas
        self.max_fee_per_gas: int = max_fee_per_gas
        self.max_priority_fee_per_gas: int = max_priority_fee_per_gas
        self.raw_transaction: HexBytes = raw_transaction
        self.tx_hash: str = tx_hash
        self.receipt_status: Optional[int] = receipt_status  # Set once the target reports a receipt

    @property
    def sender(self) -> str:
        return self.intent.sender

    def __repr__(self) -> str:
        return (f"SignedTransaction(sender='{self.sender[:10]}...', nonce={self.nonce}, "
                f"chain_id={self.chain_id}, gas={self.gas}, maxFeePerGas={self.max_fee_per_gas}, "
                f"hash='{self.tx_hash}')")
