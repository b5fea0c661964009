# eth_testbench_core/node.py
"""
Node Façade: a long-running local chain answering JSON-RPC 2.0 request
dicts against a StateStore and Interpreter.

Requests are serialised with a lock. With automine on, every accepted
transaction is mined into its own block immediately; otherwise it waits in
the pending pool until ``evm_mine``.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import rlp
from eth_account import Account
from eth_keys.exceptions import BadSignature, ValidationError
from eth_utils import big_endian_to_int, keccak
from rlp.exceptions import RLPException

from . import config as core_config
from .errors import InsufficientBalance, RpcError, StateError, TestbenchError
from .interpreter import Interpreter
from .state import BlockEnvironment, StateStore
from .types import CallFrame, ExecutionResult, canonical_address, checksum

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SERVER_ERROR = -32000
EXECUTION_REVERTED = 3

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_LATEST_TAGS = ("latest", "pending", "safe", "finalized")


# --- Parameter decoding ---

def _quantity(value: Any, name: str = "quantity") -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.startswith("0x"):
        try:
            return int(value, 16)
        except ValueError:
            pass
    raise RpcError(INVALID_PARAMS, f"invalid {name}: {value!r}")


def _data(value: Any, name: str = "data") -> bytes:
    if value is None:
        return b""
    if isinstance(value, str) and value.startswith("0x") and len(value) % 2 == 0:
        try:
            return bytes.fromhex(value[2:])
        except ValueError:
            pass
    raise RpcError(INVALID_PARAMS, f"invalid {name}: {value!r}")


def _address(value: Any) -> bytes:
    try:
        return canonical_address(value)
    except (TypeError, ValueError) as e:
        raise RpcError(INVALID_PARAMS, f"invalid address: {value!r}") from e


def _param(params: List[Any], index: int, default: Any = RpcError) -> Any:
    if index < len(params):
        return params[index]
    if default is RpcError:
        raise RpcError(INVALID_PARAMS, f"missing parameter #{index}")
    return default


def _check_block_tag(tag: Any) -> None:
    if tag is None or tag in _LATEST_TAGS:
        return
    raise RpcError(INVALID_PARAMS, f"historical state is not available (block {tag!r})")


# --- Raw transactions ---

class DecodedTransaction:
    """Fields of a signed legacy, EIP-2930 or EIP-1559 transaction."""
    def __init__(self, tx_type: int, sender: bytes, nonce: int, gas: int, to: Optional[bytes],
                 value: int, data: bytes, chain_id: Optional[int],
                 max_fee_per_gas: int, max_priority_fee_per_gas: int):
        self.tx_type = tx_type
        self.sender = sender
        self.nonce = nonce
        self.gas = gas
        self.to = to
        self.value = value
        self.data = data
        self.chain_id = chain_id
        self.max_fee_per_gas = max_fee_per_gas
        self.max_priority_fee_per_gas = max_priority_fee_per_gas

    def effective_gas_price(self, base_fee: int) -> int:
        if self.tx_type == 2:
            return min(self.max_fee_per_gas, base_fee + self.max_priority_fee_per_gas)
        return self.max_fee_per_gas


def decode_raw_transaction(raw: bytes) -> DecodedTransaction:
    """Decodes a signed transaction and recovers its sender. Raises RpcError."""
    try:
        sender = canonical_address(Account.recover_transaction(raw))
        if raw and raw[0] == 2:
            (chain_id_field, nonce, priority_fee, max_fee, gas, to, value, data,
             _access_list, _y, _r, _s) = rlp.decode(raw[1:])
            tx_type = 2
            chain_id = big_endian_to_int(chain_id_field)
        elif raw and raw[0] == 1:
            (chain_id_field, nonce, gas_price, gas, to, value, data, _access_list, _y, _r, _s) = rlp.decode(raw[1:])
            tx_type, max_fee, priority_fee = 1, gas_price, gas_price
            chain_id = big_endian_to_int(chain_id_field)
        else:
            nonce, gas_price, gas, to, value, data, v, _r, _s = rlp.decode(raw)
            v = big_endian_to_int(v)
            chain_id = (v - 35) // 2 if v >= 35 else None
            tx_type, max_fee, priority_fee = 0, gas_price, gas_price
    except (RLPException, BadSignature, ValidationError, ValueError, TypeError) as e:
        raise RpcError(INVALID_PARAMS, f"failed to decode signed transaction: {e}") from e
    return DecodedTransaction(
        tx_type=tx_type,
        sender=sender,
        nonce=big_endian_to_int(nonce),
        gas=big_endian_to_int(gas),
        to=bytes(to) if to else None,
        value=big_endian_to_int(value),
        data=bytes(data),
        chain_id=chain_id,
        max_fee_per_gas=big_endian_to_int(max_fee),
        max_priority_fee_per_gas=big_endian_to_int(priority_fee),
    )


class LocalNode:
    """
    In-process chain backing local scripts and broadcasts.

    :param state: Genesis state; a fresh StateStore when None.
    :param chain_id: Chain id reported and enforced on signed transactions.
    :param automine: Mine every accepted transaction immediately.
    :param priority_fee: Tip suggested by ``eth_gasPrice`` / ``eth_maxPriorityFeePerGas``.
    """

    def __init__(self,
                 state: Optional[StateStore] = None,
                 chain_id: int = core_config.DEFAULT_CHAIN_ID,
                 automine: bool = True,
                 priority_fee: int = core_config.DEFAULT_PRIORITY_FEE
                ):
        self.state = state if state is not None else StateStore(BlockEnvironment(chain_id=chain_id))
        if self.state.env.chain_id != chain_id:
            self.state.set_env(chain_id=chain_id)
        self.automine = automine
        self.priority_fee = priority_fee
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.pending: List[Tuple[str, DecodedTransaction]] = []
        self.blocks: List[Dict[str, Any]] = [self._block_record(self.state.env, [])]
        self._time_offset = 0
        self._snapshot_meta: Dict[int, tuple] = {}
        self._lock = threading.RLock()
        self._methods: Dict[str, Callable[[List[Any]], Any]] = {
            "web3_clientVersion": lambda params: "eth-testbench/0.1.0",
            "net_version": lambda params: str(self.state.env.chain_id),
            "eth_chainId": lambda params: hex(self.state.env.chain_id),
            "eth_blockNumber": lambda params: hex(self.state.env.number),
            "eth_gasPrice": lambda params: hex(self.state.env.base_fee + self.priority_fee),
            "eth_maxPriorityFeePerGas": lambda params: hex(self.priority_fee),
            "eth_getBlockByNumber": self._eth_get_block_by_number,
            "eth_getBalance": self._eth_get_balance,
            "eth_getTransactionCount": self._eth_get_transaction_count,
            "eth_getCode": self._eth_get_code,
            "eth_getStorageAt": self._eth_get_storage_at,
            "eth_call": self._eth_call,
            "eth_estimateGas": self._eth_estimate_gas,
            "eth_sendRawTransaction": self._eth_send_raw_transaction,
            "eth_getTransactionReceipt": self._eth_get_transaction_receipt,
            "evm_snapshot": self._evm_snapshot,
            "evm_revert": self._evm_revert,
            "evm_mine": self._evm_mine,
            "evm_increaseTime": self._evm_increase_time,
            "anvil_setBalance": self._anvil_set_balance,
            "anvil_setCode": self._anvil_set_code,
            "anvil_setNonce": self._anvil_set_nonce,
            "anvil_setStorageAt": self._anvil_set_storage_at,
        }

    # --- Request handling ---

    def handle(self, request: Union[Dict[str, Any], List[Dict[str, Any]]]) -> Union[Dict[str, Any], List]:
        """Answers one JSON-RPC request dict, or a batch (list) of them."""
        if isinstance(request, list):
            return [self.handle(item) for item in request]
        request_id = request.get("id") if isinstance(request, dict) else None
        try:
            if not isinstance(request, dict) or not isinstance(request.get("method"), str):
                raise RpcError(INVALID_REQUEST, "invalid request")
            method = request["method"]
            params = request.get("params", [])
            if not isinstance(params, list):
                raise RpcError(INVALID_PARAMS, "params must be a list")
            handler = self._methods.get(method)
            if handler is None:
                raise RpcError(METHOD_NOT_FOUND, f"the method {method} does not exist/is not available")
            with self._lock:
                result = handler(params)
            return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}
        except RpcError as e:
            logger.debug("RPC error %d: %s", e.code, e.message)
            return self._error_response(request_id, e.code, e.message, e.data)
        except ValueError as e:
            # out-of-range balances, nonces and storage values
            return self._error_response(request_id, INVALID_PARAMS, str(e))
        except TestbenchError as e:
            logger.warning("Request failed: %s", e)
            return self._error_response(request_id, SERVER_ERROR, str(e))

    def request(self, method: str, *params: Any) -> Any:
        """Convenience wrapper: calls ``method`` and returns its result or raises RpcError."""
        response = self.handle({"jsonrpc": JSONRPC_VERSION, "id": 1, "method": method, "params": list(params)})
        if "error" in response:
            error = response["error"]
            raise RpcError(error["code"], error["message"], error.get("data"))
        return response["result"]

    @staticmethod
    def _error_response(request_id: Any, code: int, message: str, data: Optional[str] = None) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}

    # --- Reads ---

    def _eth_get_balance(self, params: List[Any]) -> str:
        _check_block_tag(_param(params, 1, None))
        return hex(self.state.get_balance(_address(_param(params, 0))))

    def _eth_get_transaction_count(self, params: List[Any]) -> str:
        address = _address(_param(params, 0))
        tag = _param(params, 1, None)
        _check_block_tag(tag)
        nonce = self.state.get_nonce(address)
        if tag == "pending":
            nonce += sum(1 for _, tx in self.pending if tx.sender == address)
        return hex(nonce)

    def _eth_get_code(self, params: List[Any]) -> str:
        _check_block_tag(_param(params, 1, None))
        return "0x" + self.state.get_code(_address(_param(params, 0))).hex()

    def _eth_get_storage_at(self, params: List[Any]) -> str:
        _check_block_tag(_param(params, 2, None))
        value = self.state.read(_address(_param(params, 0)), _quantity(_param(params, 1), "slot"))
        return "0x" + value.to_bytes(32, "big").hex()

    def _eth_get_block_by_number(self, params: List[Any]) -> Optional[Dict[str, Any]]:
        tag = _param(params, 0)
        if tag in _LATEST_TAGS or tag == "earliest":
            number = 0 if tag == "earliest" else self.state.env.number
        else:
            number = _quantity(tag, "block number")
        for block in self.blocks:
            if int(block["number"], 16) == number:
                return dict(block)
        return None

    def _call_frame(self, call: Dict[str, Any], default_gas: int) -> CallFrame:
        if not isinstance(call, dict):
            raise RpcError(INVALID_PARAMS, "call object must be a dict")
        sender = _address(call.get("from") or ZERO_ADDRESS)
        data = _data(call.get("input", call.get("data")))
        value = _quantity(call["value"], "value") if call.get("value") is not None else 0
        gas_limit = _quantity(call["gas"], "gas") if call.get("gas") is not None else default_gas
        if call.get("to") is None:
            return CallFrame.create(sender, data, value=value, gas_limit=gas_limit, origin=sender)
        return CallFrame.call(sender, _address(call["to"]), data, value=value, gas_limit=gas_limit, origin=sender)

    @staticmethod
    def _raise_for_failure(result: ExecutionResult) -> None:
        if result.success:
            return
        if result.is_revert:
            message = "execution reverted"
            if result.revert_reason:
                message += f": {result.revert_reason}"
            raise RpcError(EXECUTION_REVERTED, message, "0x" + result.output.hex())
        raise RpcError(SERVER_ERROR, result.revert_reason or result.error or "execution failed")

    def _simulate(self, run: Callable[[Interpreter], ExecutionResult]) -> ExecutionResult:
        """Runs ``run`` inside a journal transaction that is always rolled back."""
        self.state.begin_transaction()
        try:
            return run(Interpreter(self.state))
        finally:
            self.state.rollback_transaction()

    def _eth_call(self, params: List[Any]) -> str:
        _check_block_tag(_param(params, 1, None))
        frame = self._call_frame(_param(params, 0), self.state.env.gas_limit)
        result = self._simulate(lambda interpreter: interpreter.execute(frame))
        self._raise_for_failure(result)
        return "0x" + result.output.hex()

    def _eth_estimate_gas(self, params: List[Any]) -> str:
        _check_block_tag(_param(params, 1, None))
        frame = self._call_frame(_param(params, 0), self.state.env.gas_limit)
        try:
            result = self._simulate(lambda interpreter: interpreter.execute_transaction(frame, gas_price=0))
        except InsufficientBalance as e:
            raise RpcError(SERVER_ERROR, f"insufficient funds for transfer: {e}") from e
        self._raise_for_failure(result)
        return hex(result.gas_used)

    # --- Transactions ---

    def _eth_send_raw_transaction(self, params: List[Any]) -> str:
        raw = _data(_param(params, 0), "raw transaction")
        tx = decode_raw_transaction(raw)
        env = self.state.env
        if tx.chain_id is not None and tx.chain_id != env.chain_id:
            raise RpcError(SERVER_ERROR, f"invalid chain id {tx.chain_id}, expected {env.chain_id}")
        expected_nonce = self.state.get_nonce(tx.sender) + sum(1 for _, p in self.pending if p.sender == tx.sender)
        if tx.nonce < expected_nonce:
            raise RpcError(SERVER_ERROR, f"nonce too low: next nonce {expected_nonce}, tx nonce {tx.nonce}")
        if tx.nonce > expected_nonce:
            raise RpcError(SERVER_ERROR, f"nonce too high: next nonce {expected_nonce}, tx nonce {tx.nonce}")
        if tx.max_fee_per_gas < env.base_fee:
            raise RpcError(SERVER_ERROR, f"max fee per gas {tx.max_fee_per_gas} below base fee {env.base_fee}")
        if tx.gas > env.gas_limit:
            raise RpcError(SERVER_ERROR, f"gas limit {tx.gas} exceeds block gas limit {env.gas_limit}")
        required = tx.gas * tx.effective_gas_price(env.base_fee) + tx.value
        if self.state.get_balance(tx.sender) < required:
            raise RpcError(SERVER_ERROR, f"insufficient funds for gas * price + value: have "
                                         f"{self.state.get_balance(tx.sender)} want {required}")

        tx_hash = "0x" + keccak(raw).hex()
        self.pending.append((tx_hash, tx))
        logger.info("Accepted transaction %s from %s (nonce %d)", tx_hash, checksum(tx.sender), tx.nonce)
        if self.automine:
            self.mine()
            if tx_hash not in self.receipts:
                raise RpcError(SERVER_ERROR, f"transaction {tx_hash} could not be included")
        return tx_hash

    def mine(self, timestamp: Optional[int] = None) -> Dict[str, Any]:
        """
        Mines one block from the pending pool, in arrival order. Transactions
        that are no longer valid (nonce gap, unaffordable) are dropped without
        a receipt. The pool is empty afterwards.
        """
        with self._lock:
            env = self.state.env
            new_timestamp = timestamp if timestamp is not None else env.timestamp + 1
            env = self.state.set_env(number=env.number + 1, timestamp=max(new_timestamp, env.timestamp + 1))
            included: List[str] = []
            cumulative_gas = 0
            pending, self.pending = self.pending, []
            for tx_hash, tx in pending:
                receipt = self._apply(tx_hash, tx, env, len(included), cumulative_gas)
                if receipt is None:
                    continue
                cumulative_gas = int(receipt["cumulativeGasUsed"], 16)
                self.receipts[tx_hash] = receipt
                included.append(tx_hash)
            block = self._block_record(env, included, cumulative_gas)
            self.blocks.append(block)
            logger.debug("Mined block %d with %d transactions", env.number, len(included))
            return block

    def _apply(self, tx_hash: str, tx: DecodedTransaction, env: BlockEnvironment,
               index: int, cumulative_gas: int) -> Optional[Dict[str, Any]]:
        """Executes one pending transaction; returns its receipt, or None when it was dropped."""
        expected_nonce = self.state.get_nonce(tx.sender)
        if tx.nonce != expected_nonce:
            logger.warning("Dropping %s: nonce %d, account nonce %d", tx_hash, tx.nonce, expected_nonce)
            return None
        gas_price = tx.effective_gas_price(env.base_fee)
        if tx.to is None:
            frame = CallFrame.create(tx.sender, tx.data, value=tx.value, gas_limit=tx.gas, origin=tx.sender)
        else:
            frame = CallFrame.call(tx.sender, tx.to, tx.data, value=tx.value, gas_limit=tx.gas, origin=tx.sender)
        try:
            result = Interpreter(self.state).execute_transaction(frame, gas_price=gas_price)
        except StateError as e:
            logger.warning("Dropping %s: %s", tx_hash, e)
            return None
        if not result.success:
            logger.info("Transaction %s failed: %s", tx_hash, result.revert_reason or result.error)
        block_hash = "0x" + keccak(env.number.to_bytes(32, "big")).hex()
        return {
            "transactionHash": tx_hash,
            "transactionIndex": hex(index),
            "blockHash": block_hash,
            "blockNumber": hex(env.number),
            "from": checksum(tx.sender),
            "to": checksum(tx.to) if tx.to is not None else None,
            "contractAddress": checksum(result.created_address) if result.created_address else None,
            "status": "0x1" if result.success else "0x0",
            "gasUsed": hex(result.gas_used),
            "cumulativeGasUsed": hex(cumulative_gas + result.gas_used),
            "effectiveGasPrice": hex(gas_price),
            "type": hex(tx.tx_type),
            "logs": [
                dict(log.to_dict(), logIndex=hex(position), transactionHash=tx_hash,
                     blockNumber=hex(env.number), blockHash=block_hash)
                for position, log in enumerate(result.logs)
            ],
        }

    @staticmethod
    def _block_record(env: BlockEnvironment, transactions: List[str], gas_used: int = 0) -> Dict[str, Any]:
        return {
            "number": hex(env.number),
            "hash": "0x" + keccak(env.number.to_bytes(32, "big")).hex(),
            "timestamp": hex(env.timestamp),
            "gasLimit": hex(env.gas_limit),
            "gasUsed": hex(gas_used),
            "baseFeePerGas": hex(env.base_fee),
            "miner": checksum(env.coinbase),
            "transactions": list(transactions),
        }

    def _eth_get_transaction_receipt(self, params: List[Any]) -> Optional[Dict[str, Any]]:
        tx_hash = _param(params, 0)
        if not isinstance(tx_hash, str):
            raise RpcError(INVALID_PARAMS, f"invalid transaction hash: {tx_hash!r}")
        receipt = self.receipts.get(tx_hash.lower())
        return dict(receipt) if receipt is not None else None

    # --- Test-node extensions ---

    def _evm_snapshot(self, params: List[Any]) -> str:
        snapshot_id = self.state.snapshot()
        self._snapshot_meta[snapshot_id] = (dict(self.receipts), list(self.pending), list(self.blocks),
                                            self._time_offset)
        return hex(snapshot_id)

    def _evm_revert(self, params: List[Any]) -> bool:
        snapshot_id = _quantity(_param(params, 0), "snapshot id")
        if not self.state.has_snapshot(snapshot_id) or snapshot_id not in self._snapshot_meta:
            logger.warning("evm_revert to unknown snapshot %d", snapshot_id)
            return False
        self.state.restore(snapshot_id)
        receipts, pending, blocks, time_offset = self._snapshot_meta[snapshot_id]
        self.receipts, self.pending, self.blocks = dict(receipts), list(pending), list(blocks)
        self._time_offset = time_offset
        for later_id in [s for s in self._snapshot_meta if s > snapshot_id]:
            del self._snapshot_meta[later_id]
        return True

    def _evm_mine(self, params: List[Any]) -> str:
        timestamp = _param(params, 0, None)
        self.mine(_quantity(timestamp, "timestamp") if timestamp is not None else None)
        return "0x0"

    def _evm_increase_time(self, params: List[Any]) -> str:
        seconds = _quantity(_param(params, 0), "seconds")
        self._time_offset += seconds
        self.state.set_env(timestamp=self.state.env.timestamp + seconds)
        return hex(self._time_offset)

    def _anvil_set_balance(self, params: List[Any]) -> None:
        self.state.set_balance(_address(_param(params, 0)), _quantity(_param(params, 1), "balance"))

    def _anvil_set_code(self, params: List[Any]) -> None:
        self.state.set_code(_address(_param(params, 0)), _data(_param(params, 1), "code"))

    def _anvil_set_nonce(self, params: List[Any]) -> None:
        self.state.set_nonce(_address(_param(params, 0)), _quantity(_param(params, 1), "nonce"))

    def _anvil_set_storage_at(self, params: List[Any]) -> bool:
        value = _data(_param(params, 2), "value")
        if len(value) > 32:
            raise RpcError(INVALID_PARAMS, "storage value must be at most 32 bytes")
        self.state.set_storage(_address(_param(params, 0)), _quantity(_param(params, 1), "slot"),
                               int.from_bytes(value, "big"))
        return True
