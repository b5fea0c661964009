# eth_testbench_core/broadcast.py
"""
Broadcast Executor.

Scripts run against a fork of the local state; every call they make under
``broadcast``/``startBroadcast`` is recorded as a TransactionIntent. ``plan``
dry-runs those intents on another fork to validate them and estimate gas.
Only ``commit`` with the broadcast flag set has any effect outside the
process: it binds nonces and fees, signs, and submits in plan order.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import config as core_config
from .abi import ContractArtifact
from .accounts import KeyManager
from .cheats import CheatInterceptor
from .clients.base_client import BroadcastTarget
from .errors import (
    BroadcastError,
    ExecutionError,
    InsufficientBalance,
    RpcError,
    SigningError,
    SubmissionRejected,
    UnmetExpectation,
)
from .interpreter import Interpreter
from .state import StateStore
from .tx import SignedTransaction, TransactionIntent
from .types import CallFrame, ExecutionResult, canonical_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedTransaction:
    intent: TransactionIntent
    result: ExecutionResult
    gas_estimate: int

    @property
    def success(self) -> bool:
        return self.result.success


@dataclass(frozen=True)
class BroadcastPlan:
    items: Tuple[PlannedTransaction, ...] = ()

    @property
    def ok(self) -> bool:
        return all(item.success for item in self.items)

    @property
    def failures(self) -> List[PlannedTransaction]:
        return [item for item in self.items if not item.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "transactions": [
                dict(item.intent.to_dict(), gas_estimate=item.gas_estimate, success=item.success,
                     error=item.result.error, revert_reason=item.result.revert_reason)
                for item in self.items
            ],
        }


class BroadcastExecutor:
    """
    :param state: Local state scripts and dry runs fork from; never mutated.
    :param target: Chain that committed transactions are submitted to.
    :param gas_multiplier: Margin applied to dry-run gas usage.
    """

    def __init__(self,
                 state: Optional[StateStore] = None,
                 target: Optional[BroadcastTarget] = None,
                 gas_multiplier: float = core_config.DEFAULT_GAS_ESTIMATE_MULTIPLIER
                ):
        self.state = state if state is not None else StateStore()
        self.target = target
        self.gas_multiplier = gas_multiplier

    def simulate_script(self, artifact: ContractArtifact, function: str = "run()",
                        sender: str = core_config.DEFAULT_SENDER,
                        args: Sequence[Any] = ()) -> List[TransactionIntent]:
        """
        Deploys a script contract on a fork, calls ``function`` and returns
        the intents recorded while broadcasting. Raises BroadcastError when
        the script fails.
        """
        store = self.state.fork()
        sender_address = canonical_address(sender)
        if store.get_balance(sender_address) < core_config.DEFAULT_SENDER_BALANCE:
            store.set_balance(sender_address, core_config.DEFAULT_SENDER_BALANCE)

        interceptor = CheatInterceptor(test_id=f"{artifact.name}.{function}", default_broadcaster=sender)
        interpreter = Interpreter(store, cheats=interceptor)
        script_address = canonical_address(core_config.DEFAULT_TEST_CONTRACT_ADDRESS)
        deployed = interpreter.deploy(sender_address, artifact.bytecode, address=script_address)
        try:
            deployed.raise_for_error()
        except ExecutionError as e:
            raise BroadcastError(f"Deploying script {artifact.name} failed: {e}") from e

        entry = artifact.function(function)
        frame = CallFrame.call(sender_address, script_address, entry.encode_call(*args),
                               gas_limit=core_config.DEFAULT_CALL_GAS_LIMIT, origin=sender_address)
        result = interpreter.execute(frame)
        try:
            interceptor.finalize()
            result.raise_for_error()
        except (ExecutionError, UnmetExpectation) as e:
            raise BroadcastError(f"Script {artifact.name}.{entry.signature} failed: {e}") from e
        problems = interceptor.cheat_errors + interceptor.violations
        if problems:
            raise BroadcastError(f"Script {artifact.name}.{entry.signature} failed: {problems[0]}")
        logger.info("Script %s.%s recorded %d transactions", artifact.name, entry.signature,
                    len(interceptor.broadcast_intents))
        return list(interceptor.broadcast_intents)

    def plan(self, intents: Sequence[TransactionIntent]) -> BroadcastPlan:
        """
        Dry-runs ``intents`` in order on a fork of the local state. Each item
        carries its execution result and a gas estimate. Repeated calls with
        the same intents return equal plans.
        """
        store = self.state.fork()
        interpreter = Interpreter(store)
        block_gas_limit = store.env.gas_limit
        items: List[PlannedTransaction] = []
        for intent in intents:
            gas_limit = intent.gas if intent.gas is not None else block_gas_limit
            if intent.is_create:
                frame = CallFrame.create(intent.sender, intent.data, value=intent.value, gas_limit=gas_limit)
            else:
                frame = CallFrame.call(intent.sender, intent.to, intent.data, value=intent.value,
                                       gas_limit=gas_limit)
            try:
                result = interpreter.execute_transaction(frame)
            except InsufficientBalance as e:
                result = ExecutionResult(success=False, error=InsufficientBalance.__name__, revert_reason=str(e))
            if intent.gas is not None:
                estimate = intent.gas
            else:
                estimate = min(math.ceil(result.gas_used * self.gas_multiplier), block_gas_limit)
            items.append(PlannedTransaction(intent=intent, result=result, gas_estimate=estimate))
            if not result.success:
                logger.warning("Planned transaction %r fails: %s", intent, result.revert_reason or result.error)
        plan = BroadcastPlan(tuple(items))
        logger.info("Planned %d transactions (%d failing)", len(plan.items), len(plan.failures))
        return plan

    def commit(self, plan: BroadcastPlan, signer: KeyManager, broadcast: bool = False) -> List[SignedTransaction]:
        """
        Signs and submits the planned transactions in order.

        Without ``broadcast`` nothing is signed or sent and the result is
        empty. Nonces start at each sender's current nonce on the target and
        ascend strictly. The first rejected or reverted submission stops the
        run with a BroadcastError carrying what was already submitted.
        """
        if not broadcast:
            logger.info("Dry run: %d transactions not broadcast", len(plan.items))
            return []
        if self.target is None:
            raise BroadcastError("No broadcast target configured")
        if not plan.ok:
            raise BroadcastError(f"Refusing to broadcast a plan with {len(plan.failures)} failing transactions")

        chain_id = self.target.chain_id()
        fees = self.target.get_fee_parameters()
        nonces: Dict[str, int] = {}
        submitted: List[SignedTransaction] = []
        for item in plan.items:
            intent = item.intent
            if intent.sender not in nonces:
                nonces[intent.sender] = self.target.get_transaction_count(intent.sender)
            nonce = nonces[intent.sender]
            transaction: Dict[str, Any] = {
                "type": 2,
                "chainId": chain_id,
                "nonce": nonce,
                "gas": item.gas_estimate,
                "maxFeePerGas": fees["maxFeePerGas"],
                "maxPriorityFeePerGas": fees["maxPriorityFeePerGas"],
                "value": intent.value,
                "data": "0x" + intent.data.hex(),
            }
            if not intent.is_create:
                transaction["to"] = intent.to

            try:
                signed = signer.sign_transaction(intent.sender, transaction)
            except SigningError as e:
                raise SigningError(str(e), submitted) from e
            try:
                tx_hash = self.target.send_raw_transaction(signed.raw_transaction)
            except RpcError as e:
                raise SubmissionRejected(f"Transaction {len(submitted)} from {intent.sender} (nonce {nonce}) "
                                         f"was rejected: {e.message}", submitted) from e
            nonces[intent.sender] = nonce + 1

            signed_tx = SignedTransaction(
                intent=intent,
                nonce=nonce,
                chain_id=chain_id,
                gas=item.gas_estimate,
                max_fee_per_gas=fees["maxFeePerGas"],
                max_priority_fee_per_gas=fees["maxPriorityFeePerGas"],
                raw_transaction=signed.raw_transaction,
                tx_hash=tx_hash,
            )
            receipt = self.target.get_transaction_receipt(tx_hash)
            if receipt is not None:
                status = receipt.get("status")
                signed_tx.receipt_status = int(status, 16) if isinstance(status, str) else status
            submitted.append(signed_tx)
            logger.info("Submitted %s from %s with nonce %d", tx_hash, intent.sender, nonce)
            if signed_tx.receipt_status == 0:
                raise SubmissionRejected(f"Transaction {tx_hash} reverted on the target", submitted)
        return submitted
