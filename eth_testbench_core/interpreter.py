# eth_testbench_core/interpreter.py
"""
Bytecode interpreter.

Executes call frames against a StateStore. Every frame runs inside its own
journal transaction: it either commits all of its effects (including those
of successful children) or none of them. Failures never escape as exceptions;
they come back as a failed ExecutionResult that the parent frame inspects.

When a Cheat Interceptor is attached, every dispatched frame passes through
``cheats.prepare_call`` and ``cheats.finish_call``, and calls to the cheat
address are handed to ``cheats.handle_call`` instead of being executed.
"""

import functools
import hashlib
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, FrozenSet, List, Optional

import rlp
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError
from eth_utils import keccak

from . import config as core_config
from . import gas
from .abi import decode_revert_reason, encode_error_string
from .errors import (
    CallDepthExceeded,
    CheatError,
    ContractCreationFailed,
    ExecutionError,
    InsufficientBalance,
    InvalidJumpDestination,
    InvalidOpcode,
    NonceOverflow,
    OutOfGas,
    Revert,
    StackOverflow,
    StackUnderflow,
    StateError,
    StateMutationInStaticContext,
)
from .opcodes import STATIC_GAS, Op, push_size
from .state import MAX_NONCE, StateStore
from .types import (
    AddressLike,
    CallFrame,
    CallKind,
    ExecutionResult,
    Log,
    StateDelta,
    address_from_int,
    canonical_address,
    checksum,
)

logger = logging.getLogger(__name__)

UINT256_MASK = 2**256 - 1
UINT255_CEILING = 2**255

CHEAT_ADDRESS_BYTES = canonical_address(core_config.CHEAT_ADDRESS)


def to_signed(value: int) -> int:
    return value - 2**256 if value >= UINT255_CEILING else value


def to_unsigned(value: int) -> int:
    return value & UINT256_MASK


@functools.lru_cache(maxsize=1024)
def valid_jump_destinations(code: bytes) -> FrozenSet[int]:
    """JUMPDEST offsets of ``code``, skipping PUSH immediates."""
    destinations = set()
    pc = 0
    while pc < len(code):
        opcode = code[pc]
        if opcode == Op.JUMPDEST:
            destinations.add(pc)
        pc += 1 + push_size(opcode)
    return frozenset(destinations)


def compute_create_address(sender: bytes, nonce: int) -> bytes:
    return keccak(rlp.encode([sender, nonce]))[12:]


def compute_create2_address(sender: bytes, salt: int, init_code: bytes) -> bytes:
    return keccak(b"\xff" + sender + salt.to_bytes(32, "big") + keccak(init_code))[12:]


@dataclass
class Evm:
    """The internal state of one executing frame."""
    frame: CallFrame
    code: bytes
    address: bytes
    gas_left: int
    pc: int = 0
    stack: List[int] = field(default_factory=list)
    memory: bytearray = field(default_factory=bytearray)
    logs: List[Log] = field(default_factory=list)
    return_data: bytes = b""
    output: bytes = b""
    running: bool = True


# --- Precompiles ---

def _ecrecover(data: bytes) -> bytes:
    data = data.ljust(128, b"\x00")
    message_hash = data[:32]
    v = int.from_bytes(data[32:64], "big")
    r = int.from_bytes(data[64:96], "big")
    s = int.from_bytes(data[96:128], "big")
    if v not in (27, 28):
        return b""
    try:
        signature = keys.Signature(vrs=(v - 27, r, s))
        public_key = signature.recover_public_key_from_msg_hash(message_hash)
    except (BadSignature, ValidationError):
        return b""
    return public_key.to_canonical_address().rjust(32, b"\x00")


PRECOMPILES: Dict[bytes, Callable[[bytes], bytes]] = {
    address_from_int(1): _ecrecover,
    address_from_int(2): lambda data: hashlib.sha256(data).digest(),
    address_from_int(4): bytes,
}


def precompile_gas(address: bytes, data: bytes) -> int:
    if address == address_from_int(1):
        return gas.GAS_ECRECOVER
    if address == address_from_int(2):
        return gas.GAS_SHA256 + gas.GAS_SHA256_WORD * gas.words(len(data))
    return gas.GAS_IDENTITY + gas.GAS_IDENTITY_WORD * gas.words(len(data))


class Interpreter:
    """
    Executes call frames against ``state``.

    :param state: The State Store to read and write.
    :param cheats: Optional CheatInterceptor consulted around every frame.
    :param gas_price: Value reported by GASPRICE; the block base fee when None.
    """

    def __init__(self, state: StateStore, cheats=None, gas_price: Optional[int] = None):
        self.state = state
        self.cheats = cheats
        self.gas_price = gas_price
        self._handlers: Dict[int, Callable[[Evm], None]] = self._build_handlers()

    # --- Public API ---

    def execute(self, frame: CallFrame) -> ExecutionResult:
        """Runs a message call or contract creation. All-or-nothing per frame."""
        result = self._dispatch(frame)
        logger.debug("Executed %s to %s: success=%s gas=%d error=%s",
                     frame.kind.value, checksum(frame.target) if frame.target else "<create>",
                     result.success, result.gas_used, result.error)
        return result

    def execute_transaction(self, frame: CallFrame, gas_price: Optional[int] = None) -> ExecutionResult:
        """
        Runs ``frame`` with transaction semantics: bumps the sender nonce,
        charges intrinsic gas and pays for gas at ``gas_price`` (block base fee
        by default). Raises InsufficientBalance when the sender cannot cover
        ``gas_limit * gas_price + value`` and NonceOverflow when its nonce is
        already at the maximum.
        """
        env = self.state.env
        price = env.base_fee if gas_price is None else gas_price
        sender = frame.caller
        is_create = frame.kind == CallKind.CREATE
        intrinsic = gas.intrinsic_gas(frame.data, is_create)
        if frame.gas_limit < intrinsic:
            return ExecutionResult(success=False, gas_used=frame.gas_limit, error=OutOfGas.__name__,
                                   revert_reason="intrinsic gas exceeds gas limit")

        upfront = frame.gas_limit * price + frame.value
        balance = self.state.get_balance(sender)
        if balance < upfront:
            raise InsufficientBalance(checksum(sender), balance, upfront)
        if self.state.get_nonce(sender) >= MAX_NONCE:
            raise NonceOverflow(f"Nonce of {checksum(sender)} is at its maximum")

        target = frame.target
        if is_create and target is None:
            target = compute_create_address(sender, self.state.get_nonce(sender))
        self.state.increment_nonce(sender)
        self.state.set_balance(sender, balance - frame.gas_limit * price)

        previous_price = self.gas_price
        self.gas_price = price
        try:
            result = self._dispatch(replace(frame, target=target, gas_limit=frame.gas_limit - intrinsic,
                                            origin=sender, depth=0))
        finally:
            self.gas_price = previous_price

        gas_used = intrinsic + result.gas_used
        self.state.set_balance(sender, self.state.get_balance(sender) + (frame.gas_limit - gas_used) * price)
        tip = max(price - env.base_fee, 0)
        if tip:
            self.state.set_balance(env.coinbase, self.state.get_balance(env.coinbase) + gas_used * tip)
        return replace(result, gas_used=gas_used)

    def deploy(self, sender: AddressLike, init_code: bytes, value: int = 0,
               address: Optional[AddressLike] = None,
               gas_limit: int = core_config.DEFAULT_CALL_GAS_LIMIT) -> ExecutionResult:
        """
        Runs ``init_code`` and installs the runtime code it returns, at
        ``address`` when given, else at the usual sender/nonce address.
        """
        frame = CallFrame.create(sender, init_code, value=value, gas_limit=gas_limit, target=address)
        result = self.execute(frame)
        if result.success:
            logger.debug("Deployed %d bytes of runtime code at %s",
                         len(self.state.get_code(result.created_address)), checksum(result.created_address))
        return result

    # --- Frame dispatch ---

    def _dispatch(self, frame: CallFrame) -> ExecutionResult:
        if self.cheats is not None:
            frame = self.cheats.prepare_call(frame, self)

        if frame.depth > core_config.MAX_CALL_DEPTH:
            return self._cheat_aware_finish(frame, ExecutionResult(
                success=False, error=CallDepthExceeded.__name__, revert_reason="call depth exceeded"))

        if frame.value and frame.kind in (CallKind.CALL, CallKind.CREATE):
            balance = self.state.get_balance(frame.caller)
            if balance < frame.value:
                return self._cheat_aware_finish(frame, ExecutionResult(
                    success=False, error=InsufficientBalance.__name__,
                    revert_reason=str(InsufficientBalance(checksum(frame.caller), balance, frame.value))))

        if frame.kind == CallKind.CREATE and frame.target is None:
            if self.state.get_nonce(frame.caller) >= MAX_NONCE:
                # EIP-2681: the creation fails and the nonce stays put
                return self._cheat_aware_finish(frame, ExecutionResult(
                    success=False, error=NonceOverflow.__name__,
                    revert_reason=f"nonce of {checksum(frame.caller)} is at its maximum"))
            salt = frame.salt
            if salt is None:
                target = compute_create_address(frame.caller, self.state.get_nonce(frame.caller))
            else:
                target = compute_create2_address(frame.caller, salt, frame.data)
            self.state.increment_nonce(frame.caller)
            frame = replace(frame, target=target)

        if frame.kind != CallKind.CREATE and frame.effective_code_address == CHEAT_ADDRESS_BYTES:
            result = self._run_cheat(frame)
        else:
            result = self._run_frame(frame)
        return self._cheat_aware_finish(frame, result)

    def _cheat_aware_finish(self, frame: CallFrame, result: ExecutionResult) -> ExecutionResult:
        if self.cheats is None:
            return result
        return self.cheats.finish_call(frame, result, self)

    def _run_cheat(self, frame: CallFrame) -> ExecutionResult:
        if self.cheats is None:
            return ExecutionResult(success=True)
        mark = self.state.begin_transaction()
        try:
            output = self.cheats.handle_call(frame, self)
        except CheatError as e:
            self.state.rollback_transaction()
            data = encode_error_string(str(e))
            return ExecutionResult(success=False, output=data, error=type(e).__name__, revert_reason=str(e))
        except Revert as e:
            self.state.rollback_transaction()
            return ExecutionResult(success=False, output=e.data, error=Revert.__name__, revert_reason=e.reason)
        delta = self.state.changes_since(mark) if frame.depth == 0 else StateDelta()
        self.state.commit_transaction()
        return ExecutionResult(success=True, output=output, state_delta=delta)

    def _run_frame(self, frame: CallFrame) -> ExecutionResult:
        state = self.state
        target = frame.target
        mark = state.begin_transaction()
        evm: Optional[Evm] = None
        try:
            if frame.kind == CallKind.CREATE:
                existing = state.get_account(target)
                if existing.code or existing.nonce:
                    raise ContractCreationFailed(f"Address collision at {checksum(target)}")
                state.set_nonce(target, 1)
                code = frame.data
            else:
                code = state.get_code(frame.effective_code_address)

            if frame.kind in (CallKind.CALL, CallKind.CREATE):
                state.transfer(frame.caller, target, frame.value)

            evm = Evm(frame=frame, code=code, address=target, gas_left=frame.gas_limit)
            precompile = PRECOMPILES.get(frame.effective_code_address) if frame.kind != CallKind.CREATE else None
            if precompile is not None:
                self._charge(evm, precompile_gas(frame.effective_code_address, frame.data))
                evm.output = precompile(frame.data)
            elif code:
                self._run_code(evm)

            created = None
            if frame.kind == CallKind.CREATE:
                runtime = evm.output
                if len(runtime) > core_config.MAX_CODE_SIZE:
                    raise ContractCreationFailed(f"Runtime code of {len(runtime)} bytes exceeds the size limit")
                self._charge(evm, gas.GAS_CODE_DEPOSIT * len(runtime))
                state.set_code(target, runtime)
                created = target
        except (ExecutionError, StateError) as e:
            state.rollback_transaction()
            consumes_all = getattr(e, "consumes_all_gas", True)
            gas_used = frame.gas_limit if consumes_all or evm is None else frame.gas_limit - evm.gas_left
            if isinstance(e, Revert):
                return ExecutionResult(success=False, output=e.data, gas_used=gas_used,
                                       error=Revert.__name__, revert_reason=e.reason)
            return ExecutionResult(success=False, gas_used=gas_used, error=type(e).__name__,
                                   revert_reason=str(e) or None)

        delta = state.changes_since(mark) if frame.depth == 0 else StateDelta()
        state.commit_transaction()
        return ExecutionResult(
            success=True,
            output=b"" if frame.kind == CallKind.CREATE else evm.output,
            gas_used=frame.gas_limit - evm.gas_left,
            logs=tuple(evm.logs),
            created_address=created,
            state_delta=delta,
        )

    def _run_code(self, evm: Evm) -> None:
        code = evm.code
        handlers = self._handlers
        while evm.running and evm.pc < len(code):
            opcode = code[evm.pc]
            handler = handlers.get(opcode)
            if handler is None:
                raise InvalidOpcode(f"Invalid opcode 0x{opcode:02x} at pc {evm.pc}")
            self._charge(evm, STATIC_GAS.get(opcode, 0))
            evm.pc += 1
            handler(evm)

    # --- Helpers ---

    @staticmethod
    def _charge(evm: Evm, amount: int) -> None:
        if amount > evm.gas_left:
            raise OutOfGas(f"Out of gas: needed {amount}, had {evm.gas_left}")
        evm.gas_left -= amount

    @staticmethod
    def _pop(evm: Evm) -> int:
        if not evm.stack:
            raise StackUnderflow(f"Stack underflow at pc {evm.pc - 1}")
        return evm.stack.pop()

    def _pop_n(self, evm: Evm, count: int) -> List[int]:
        if len(evm.stack) < count:
            raise StackUnderflow(f"Stack underflow at pc {evm.pc - 1}")
        return [evm.stack.pop() for _ in range(count)]

    @staticmethod
    def _push(evm: Evm, value: int) -> None:
        if len(evm.stack) >= core_config.MAX_STACK_SIZE:
            raise StackOverflow(f"Stack overflow at pc {evm.pc - 1}")
        evm.stack.append(value & UINT256_MASK)

    def _extend_memory(self, evm: Evm, start: int, length: int) -> None:
        if length == 0:
            return
        end = start + length
        if end > core_config.MAX_MEMORY_BYTES:
            raise OutOfGas(f"Memory access at {start}+{length} is too large")
        self._charge(evm, gas.memory_expansion_cost(len(evm.memory), start, length))
        new_size = gas.ceil32(end)
        if new_size > len(evm.memory):
            evm.memory.extend(b"\x00" * (new_size - len(evm.memory)))

    def _memory_read(self, evm: Evm, start: int, length: int) -> bytes:
        self._extend_memory(evm, start, length)
        return bytes(evm.memory[start:start + length]) if length else b""

    def _memory_write(self, evm: Evm, start: int, data: bytes) -> None:
        self._extend_memory(evm, start, len(data))
        evm.memory[start:start + len(data)] = data

    @staticmethod
    def _require_non_static(evm: Evm, what: str) -> None:
        if evm.frame.is_static:
            raise StateMutationInStaticContext(f"{what} in a static call")

    # --- Handler table ---

    def _build_handlers(self) -> Dict[int, Callable[[Evm], None]]:
        binary = {
            Op.ADD: lambda a, b: a + b,
            Op.MUL: lambda a, b: a * b,
            Op.SUB: lambda a, b: a - b,
            Op.DIV: lambda a, b: a // b if b else 0,
            Op.SDIV: _sdiv,
            Op.MOD: lambda a, b: a % b if b else 0,
            Op.SMOD: _smod,
            Op.SIGNEXTEND: _signextend,
            Op.LT: lambda a, b: int(a < b),
            Op.GT: lambda a, b: int(a > b),
            Op.SLT: lambda a, b: int(to_signed(a) < to_signed(b)),
            Op.SGT: lambda a, b: int(to_signed(a) > to_signed(b)),
            Op.EQ: lambda a, b: int(a == b),
            Op.AND: lambda a, b: a & b,
            Op.OR: lambda a, b: a | b,
            Op.XOR: lambda a, b: a ^ b,
            Op.BYTE: lambda i, x: (x >> (248 - i * 8)) & 0xFF if i < 32 else 0,
            Op.SHL: lambda shift, v: v << shift if shift < 256 else 0,
            Op.SHR: lambda shift, v: v >> shift if shift < 256 else 0,
            Op.SAR: _sar,
        }
        handlers: Dict[int, Callable[[Evm], None]] = {
            op: functools.partial(self._op_binary, fn) for op, fn in binary.items()
        }
        handlers.update({
            Op.STOP: self._op_stop,
            Op.ADDMOD: self._op_addmod,
            Op.MULMOD: self._op_mulmod,
            Op.EXP: self._op_exp,
            Op.ISZERO: lambda evm: self._push(evm, int(self._pop(evm) == 0)),
            Op.NOT: lambda evm: self._push(evm, UINT256_MASK ^ self._pop(evm)),
            Op.KECCAK256: self._op_keccak256,
            Op.ADDRESS: lambda evm: self._push(evm, int.from_bytes(evm.address, "big")),
            Op.BALANCE: self._op_balance,
            Op.ORIGIN: lambda evm: self._push(evm, int.from_bytes(evm.frame.effective_origin, "big")),
            Op.CALLER: lambda evm: self._push(evm, int.from_bytes(evm.frame.caller, "big")),
            Op.CALLVALUE: lambda evm: self._push(evm, evm.frame.value),
            Op.CALLDATALOAD: self._op_calldataload,
            Op.CALLDATASIZE: lambda evm: self._push(evm, len(evm.frame.data)),
            Op.CALLDATACOPY: functools.partial(self._op_copy, lambda evm: evm.frame.data),
            Op.CODESIZE: lambda evm: self._push(evm, len(evm.code)),
            Op.CODECOPY: functools.partial(self._op_copy, lambda evm: evm.code),
            Op.GASPRICE: lambda evm: self._push(
                evm, self.state.env.base_fee if self.gas_price is None else self.gas_price),
            Op.EXTCODESIZE: lambda evm: self._push(
                evm, len(self.state.get_code(address_from_int(self._pop(evm))))),
            Op.EXTCODECOPY: self._op_extcodecopy,
            Op.RETURNDATASIZE: lambda evm: self._push(evm, len(evm.return_data)),
            Op.RETURNDATACOPY: self._op_returndatacopy,
            Op.EXTCODEHASH: self._op_extcodehash,
            Op.BLOCKHASH: self._op_blockhash,
            Op.COINBASE: lambda evm: self._push(evm, int.from_bytes(self.state.env.coinbase, "big")),
            Op.TIMESTAMP: lambda evm: self._push(evm, self.state.env.timestamp),
            Op.NUMBER: lambda evm: self._push(evm, self.state.env.number),
            Op.PREVRANDAO: lambda evm: self._push(evm, self.state.env.prevrandao),
            Op.GASLIMIT: lambda evm: self._push(evm, self.state.env.gas_limit),
            Op.CHAINID: lambda evm: self._push(evm, self.state.env.chain_id),
            Op.SELFBALANCE: lambda evm: self._push(evm, self.state.get_balance(evm.address)),
            Op.BASEFEE: lambda evm: self._push(evm, self.state.env.base_fee),
            Op.POP: self._pop,
            Op.MLOAD: self._op_mload,
            Op.MSTORE: self._op_mstore,
            Op.MSTORE8: self._op_mstore8,
            Op.SLOAD: lambda evm: self._push(evm, self.state.read(evm.address, self._pop(evm))),
            Op.SSTORE: self._op_sstore,
            Op.JUMP: self._op_jump,
            Op.JUMPI: self._op_jumpi,
            Op.PC: lambda evm: self._push(evm, evm.pc - 1),
            Op.MSIZE: lambda evm: self._push(evm, len(evm.memory)),
            Op.GAS: lambda evm: self._push(evm, evm.gas_left),
            Op.JUMPDEST: lambda evm: None,
            Op.MCOPY: self._op_mcopy,
            Op.PUSH0: lambda evm: self._push(evm, 0),
            Op.CREATE: functools.partial(self._op_create, False),
            Op.CREATE2: functools.partial(self._op_create, True),
            Op.CALL: functools.partial(self._op_call, CallKind.CALL),
            Op.DELEGATECALL: functools.partial(self._op_call, CallKind.DELEGATECALL),
            Op.STATICCALL: functools.partial(self._op_call, CallKind.STATICCALL),
            Op.RETURN: self._op_return,
            Op.REVERT: self._op_revert,
            Op.INVALID: self._op_invalid,
            Op.SELFDESTRUCT: self._op_selfdestruct,
        })
        for size in range(1, 33):
            handlers[Op.PUSH1 + size - 1] = functools.partial(self._op_push, size)
        for position in range(1, 17):
            handlers[Op.DUP1 + position - 1] = functools.partial(self._op_dup, position)
            handlers[Op.SWAP1 + position - 1] = functools.partial(self._op_swap, position)
        for topic_count in range(5):
            handlers[Op.LOG0 + topic_count] = functools.partial(self._op_log, topic_count)
        return handlers

    # --- Arithmetic ---

    def _op_binary(self, fn: Callable[[int, int], int], evm: Evm) -> None:
        a, b = self._pop_n(evm, 2)
        self._push(evm, fn(a, b))

    def _op_stop(self, evm: Evm) -> None:
        evm.running = False

    def _op_addmod(self, evm: Evm) -> None:
        a, b, n = self._pop_n(evm, 3)
        self._push(evm, (a + b) % n if n else 0)

    def _op_mulmod(self, evm: Evm) -> None:
        a, b, n = self._pop_n(evm, 3)
        self._push(evm, (a * b) % n if n else 0)

    def _op_exp(self, evm: Evm) -> None:
        base, exponent = self._pop_n(evm, 2)
        self._charge(evm, gas.exp_cost(exponent) - gas.GAS_EXP)
        self._push(evm, pow(base, exponent, 2**256))

    def _op_keccak256(self, evm: Evm) -> None:
        offset, length = self._pop_n(evm, 2)
        self._charge(evm, gas.keccak_cost(length) - gas.GAS_KECCAK256)
        self._push(evm, int.from_bytes(keccak(self._memory_read(evm, offset, length)), "big"))

    # --- Environment ---

    def _op_balance(self, evm: Evm) -> None:
        self._push(evm, self.state.get_balance(address_from_int(self._pop(evm))))

    def _op_calldataload(self, evm: Evm) -> None:
        offset = self._pop(evm)
        data = evm.frame.data
        chunk = data[offset:offset + 32] if offset < len(data) else b""
        self._push(evm, int.from_bytes(chunk.ljust(32, b"\x00"), "big"))

    def _copy_to_memory(self, evm: Evm, source: bytes, mem_offset: int, offset: int, length: int) -> None:
        self._charge(evm, gas.copy_cost(length))
        if length == 0:
            return
        chunk = source[offset:offset + length] if offset < len(source) else b""
        self._memory_write(evm, mem_offset, chunk.ljust(length, b"\x00"))

    def _op_copy(self, source: Callable[[Evm], bytes], evm: Evm) -> None:
        mem_offset, offset, length = self._pop_n(evm, 3)
        self._copy_to_memory(evm, source(evm), mem_offset, offset, length)

    def _op_extcodecopy(self, evm: Evm) -> None:
        address, mem_offset, offset, length = self._pop_n(evm, 4)
        code = self.state.get_code(address_from_int(address))
        self._copy_to_memory(evm, code, mem_offset, offset, length)

    def _op_returndatacopy(self, evm: Evm) -> None:
        mem_offset, offset, length = self._pop_n(evm, 3)
        if offset + length > len(evm.return_data):
            raise ExecutionError("Return data read out of bounds")
        self._copy_to_memory(evm, evm.return_data, mem_offset, offset, length)

    def _op_extcodehash(self, evm: Evm) -> None:
        address = address_from_int(self._pop(evm))
        if not self.state.account_exists(address) or self.state.get_account(address).is_empty:
            self._push(evm, 0)
        else:
            self._push(evm, int.from_bytes(self.state.get_account(address).code_hash, "big"))

    def _op_blockhash(self, evm: Evm) -> None:
        number = self._pop(evm)
        current = self.state.env.number
        if current - 256 <= number < current:
            self._push(evm, int.from_bytes(keccak(number.to_bytes(32, "big")), "big"))
        else:
            self._push(evm, 0)

    # --- Memory, storage, flow ---

    def _op_mload(self, evm: Evm) -> None:
        offset = self._pop(evm)
        self._push(evm, int.from_bytes(self._memory_read(evm, offset, 32), "big"))

    def _op_mstore(self, evm: Evm) -> None:
        offset, value = self._pop_n(evm, 2)
        self._memory_write(evm, offset, value.to_bytes(32, "big"))

    def _op_mstore8(self, evm: Evm) -> None:
        offset, value = self._pop_n(evm, 2)
        self._memory_write(evm, offset, bytes([value & 0xFF]))

    def _op_mcopy(self, evm: Evm) -> None:
        destination, source, length = self._pop_n(evm, 3)
        self._charge(evm, gas.copy_cost(length))
        if length == 0:
            return
        self._extend_memory(evm, max(destination, source), length)
        evm.memory[destination:destination + length] = evm.memory[source:source + length]

    def _op_sstore(self, evm: Evm) -> None:
        self._require_non_static(evm, "SSTORE")
        key, value = self._pop_n(evm, 2)
        if evm.gas_left <= gas.GAS_CALL_STIPEND:
            raise OutOfGas("SSTORE requires more than the call stipend")
        self._charge(evm, gas.sstore_cost(self.state.read(evm.address, key), value))
        self.state.write(evm.address, key, value)

    def _jump_to(self, evm: Evm, destination: int) -> None:
        if destination not in valid_jump_destinations(evm.code):
            raise InvalidJumpDestination(f"Invalid jump destination {destination}")
        evm.pc = destination

    def _op_jump(self, evm: Evm) -> None:
        self._jump_to(evm, self._pop(evm))

    def _op_jumpi(self, evm: Evm) -> None:
        destination, condition = self._pop_n(evm, 2)
        if condition:
            self._jump_to(evm, destination)

    def _op_push(self, size: int, evm: Evm) -> None:
        immediate = evm.code[evm.pc:evm.pc + size].ljust(size, b"\x00")
        evm.pc += size
        self._push(evm, int.from_bytes(immediate, "big"))

    def _op_dup(self, position: int, evm: Evm) -> None:
        if len(evm.stack) < position:
            raise StackUnderflow(f"Stack underflow at pc {evm.pc - 1}")
        self._push(evm, evm.stack[-position])

    def _op_swap(self, position: int, evm: Evm) -> None:
        if len(evm.stack) < position + 1:
            raise StackUnderflow(f"Stack underflow at pc {evm.pc - 1}")
        evm.stack[-1], evm.stack[-1 - position] = evm.stack[-1 - position], evm.stack[-1]

    def _op_log(self, topic_count: int, evm: Evm) -> None:
        self._require_non_static(evm, "LOG")
        offset, length = self._pop_n(evm, 2)
        topics = tuple(self._pop_n(evm, topic_count))
        self._charge(evm, gas.log_cost(topic_count, length) - gas.GAS_LOG)
        log = Log(address=evm.address, topics=topics, data=self._memory_read(evm, offset, length))
        evm.logs.append(log)
        if self.cheats is not None:
            self.cheats.on_log(log)

    def _op_return(self, evm: Evm) -> None:
        offset, length = self._pop_n(evm, 2)
        evm.output = self._memory_read(evm, offset, length)
        evm.running = False

    def _op_revert(self, evm: Evm) -> None:
        offset, length = self._pop_n(evm, 2)
        data = self._memory_read(evm, offset, length)
        raise Revert(data, decode_revert_reason(data))

    def _op_invalid(self, evm: Evm) -> None:
        raise InvalidOpcode(f"INVALID opcode at pc {evm.pc - 1}")

    def _op_selfdestruct(self, evm: Evm) -> None:
        self._require_non_static(evm, "SELFDESTRUCT")
        beneficiary = address_from_int(self._pop(evm))
        balance = self.state.get_balance(evm.address)
        if balance and not self.state.account_exists(beneficiary):
            self._charge(evm, gas.GAS_NEW_ACCOUNT)
        if beneficiary != evm.address:
            self.state.transfer(evm.address, beneficiary, balance)
        self.state.destroy_account(evm.address)
        evm.running = False

    # --- Calls and creates ---

    def _op_call(self, kind: CallKind, evm: Evm) -> None:
        gas_requested = self._pop(evm)
        to = address_from_int(self._pop(evm))
        value = self._pop(evm) if kind == CallKind.CALL else 0
        in_offset, in_length, out_offset, out_length = self._pop_n(evm, 4)
        if value and evm.frame.is_static:
            raise StateMutationInStaticContext("CALL with value in a static call")

        self._extend_memory(evm, in_offset, in_length)
        self._extend_memory(evm, out_offset, out_length)
        surcharge = 0
        if value:
            surcharge += gas.GAS_CALL_VALUE
            if not self.state.account_exists(to):
                surcharge += gas.GAS_NEW_ACCOUNT
        self._charge(evm, surcharge)
        child_gas = min(gas_requested, gas.max_message_call_gas(evm.gas_left))
        self._charge(evm, child_gas)
        if value:
            child_gas += gas.GAS_CALL_STIPEND

        data = self._memory_read(evm, in_offset, in_length)
        frame = evm.frame
        if kind == CallKind.DELEGATECALL:
            child = CallFrame(caller=frame.caller, target=evm.address, data=data, value=frame.value,
                              gas_limit=child_gas, kind=kind, code_address=to, is_static=frame.is_static,
                              depth=frame.depth + 1, origin=frame.effective_origin)
        else:
            child = CallFrame(caller=evm.address, target=to, data=data, value=value, gas_limit=child_gas,
                              kind=kind, is_static=frame.is_static or kind == CallKind.STATICCALL,
                              depth=frame.depth + 1, origin=frame.effective_origin)

        result = self._dispatch(child)
        evm.gas_left += max(child_gas - result.gas_used, 0)
        evm.return_data = result.output
        if out_length:
            evm.memory[out_offset:out_offset + min(out_length, len(result.output))] = result.output[:out_length]
        if result.success:
            evm.logs.extend(result.logs)
        self._push(evm, int(result.success))

    def _op_create(self, with_salt: bool, evm: Evm) -> None:
        self._require_non_static(evm, "CREATE")
        value, offset, length = self._pop_n(evm, 3)
        salt = self._pop(evm) if with_salt else None
        if with_salt:
            self._charge(evm, gas.GAS_KECCAK256_WORD * gas.words(length))
        init_code = self._memory_read(evm, offset, length)
        child_gas = gas.max_message_call_gas(evm.gas_left)
        self._charge(evm, child_gas)

        frame = evm.frame
        child = CallFrame(caller=evm.address, target=None, data=init_code, value=value, gas_limit=child_gas,
                          kind=CallKind.CREATE, depth=frame.depth + 1, origin=frame.effective_origin,
                          salt=salt)
        result = self._dispatch(child)
        evm.gas_left += max(child_gas - result.gas_used, 0)
        if result.success:
            evm.return_data = b""
            evm.logs.extend(result.logs)
            self._push(evm, int.from_bytes(result.created_address, "big"))
        else:
            evm.return_data = result.output if result.is_revert else b""
            self._push(evm, 0)


def _sdiv(a: int, b: int) -> int:
    a, b = to_signed(a), to_signed(b)
    if b == 0:
        return 0
    sign = -1 if (a < 0) != (b < 0) else 1
    return to_unsigned(sign * (abs(a) // abs(b)))


def _smod(a: int, b: int) -> int:
    a, b = to_signed(a), to_signed(b)
    if b == 0:
        return 0
    sign = -1 if a < 0 else 1
    return to_unsigned(sign * (abs(a) % abs(b)))


def _signextend(byte_index: int, value: int) -> int:
    if byte_index >= 31:
        return value
    sign_bit = 1 << (byte_index * 8 + 7)
    low_mask = (sign_bit << 1) - 1
    if value & sign_bit:
        return value | (UINT256_MASK ^ low_mask)
    return value & low_mask


def _sar(shift: int, value: int) -> int:
    signed = to_signed(value)
    if shift >= 256:
        return 0 if signed >= 0 else UINT256_MASK
    return to_unsigned(signed >> shift)
