# eth_testbench_core/cheats.py
"""
Cheat Interceptor.

Test contracts reach the interceptor by calling the well-known cheat address;
the harness can also install directives directly. Directives are scoped to
one test and to a call depth: a directive installed by a frame at depth ``d``
(the harness counts as depth -1) applies to frames dispatched at ``d + 1``.
``NEXT_CALL`` directives are dropped once consumed, ``UNTIL_CLEARED`` ones
stay until stopped or until the test scope is cleared.
"""

import enum
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_keys import keys
from eth_keys.exceptions import ValidationError
from eth_utils import function_signature_to_4byte_selector

from . import config as core_config
from .abi import ERROR_STRING_SELECTOR, PANIC_SELECTOR, decode_revert_reason, encode_error_string
from .errors import (
    CheatError,
    ConflictingExpectation,
    Revert,
    UnknownSnapshot,
    UnmetExpectation,
    UnsupportedCheat,
)
from .state import MAX_NONCE, U256_MAX
from .tx import TransactionIntent
from .types import CallFrame, CallKind, ExecutionResult, Log, canonical_address, checksum

logger = logging.getLogger(__name__)

CHEAT_ADDRESS_BYTES = canonical_address(core_config.CHEAT_ADDRESS)
ASSUMPTION_REJECTED_REASON = "assumption rejected"
REVERT_NOT_TRIGGERED = "call did not revert as expected"
UNMET_EXPECTATION = "expected revert was never triggered"


class CheatKind(enum.Enum):
    SET_BALANCE = "set_balance"
    SET_NONCE = "set_nonce"
    SET_TIMESTAMP = "set_timestamp"
    SET_BLOCK_NUMBER = "set_block_number"
    SET_STORAGE = "set_storage"
    SET_CODE = "set_code"
    IMPERSONATE_SENDER = "impersonate_sender"
    EXPECT_REVERT = "expect_revert"
    EXPECT_REVERT_ANY = "expect_revert_any"
    RECORD_LOGS = "record_logs"
    SNAPSHOT = "snapshot"
    REVERT_TO_SNAPSHOT = "revert_to_snapshot"
    ASSUME = "assume"
    LABEL = "label"
    BROADCAST = "broadcast"

    @classmethod
    def parse(cls, kind: Any) -> "CheatKind":
        if isinstance(kind, cls):
            return kind
        try:
            return cls(kind)
        except ValueError:
            pass
        try:
            return cls[str(kind).upper()]
        except KeyError:
            raise UnsupportedCheat(f"Unsupported cheat kind: {kind!r}") from None


class DirectiveScope(enum.Enum):
    NEXT_CALL = "next_call"
    UNTIL_CLEARED = "until_cleared"


@dataclass(frozen=True)
class CheatDirective:
    kind: CheatKind
    args: Tuple[Any, ...] = ()
    scope: DirectiveScope = DirectiveScope.NEXT_CALL
    test_id: str = ""
    depth: int = -1  # depth of the installing frame; -1 for the harness


_EXPECT_KINDS = (CheatKind.EXPECT_REVERT, CheatKind.EXPECT_REVERT_ANY)
_STATE_KINDS = (CheatKind.SET_BALANCE, CheatKind.SET_NONCE, CheatKind.SET_TIMESTAMP,
                CheatKind.SET_BLOCK_NUMBER, CheatKind.SET_STORAGE, CheatKind.SET_CODE)
_CALL_ONLY_KINDS = (CheatKind.SNAPSHOT, CheatKind.REVERT_TO_SNAPSHOT, CheatKind.ASSUME)


def _is_address(value: Any) -> bool:
    try:
        canonical_address(value)
    except (TypeError, ValueError):
        return False
    return True


def _is_uint(limit: int) -> Callable[[Any], bool]:
    return lambda value: isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= limit


# a: address, w: uint256, n: nonce, b: bytes, s: string
_ARGUMENT_CHECKS: Dict[str, Callable[[Any], bool]] = {
    "a": _is_address,
    "w": _is_uint(U256_MAX),
    "n": _is_uint(MAX_NONCE),
    "b": lambda value: isinstance(value, (bytes, bytearray)),
    "s": lambda value: isinstance(value, str),
}

_ARGUMENT_LAYOUTS: Dict[CheatKind, Tuple[str, ...]] = {
    CheatKind.SET_BALANCE: ("aw",),
    CheatKind.SET_NONCE: ("an",),
    CheatKind.SET_TIMESTAMP: ("w",),
    CheatKind.SET_BLOCK_NUMBER: ("w",),
    CheatKind.SET_STORAGE: ("aww",),
    CheatKind.SET_CODE: ("ab",),
    CheatKind.IMPERSONATE_SENDER: ("a", "aa"),
    CheatKind.EXPECT_REVERT: ("b",),
    CheatKind.EXPECT_REVERT_ANY: ("",),
    CheatKind.RECORD_LOGS: ("",),
    CheatKind.LABEL: ("as",),
    CheatKind.BROADCAST: ("", "a"),
}


def check_arguments(kind: CheatKind, args: Sequence[Any]) -> None:
    """Raises CheatError unless ``args`` fit ``kind``, so applying the directive later cannot fail."""
    layouts = _ARGUMENT_LAYOUTS.get(kind, ())
    layout = next((candidate for candidate in layouts if len(candidate) == len(args)), None)
    if layout is None:
        counts = " or ".join(str(len(candidate)) for candidate in layouts)
        raise CheatError(f"{kind.name} takes {counts} arguments, got {len(args)}")
    for position, (code, value) in enumerate(zip(layout, args)):
        if not _ARGUMENT_CHECKS[code](value):
            raise CheatError(f"Argument {position} of {kind.name} is invalid or out of range: {value!r}")


class _FrameContext:
    __slots__ = ("expectation",)

    def __init__(self, expectation: Optional[CheatDirective] = None):
        self.expectation = expectation


# signature -> handler method name
CHEAT_SIGNATURES: Dict[str, str] = {
    "warp(uint256)": "_cheat_warp",
    "roll(uint256)": "_cheat_roll",
    "deal(address,uint256)": "_cheat_deal",
    "setNonce(address,uint64)": "_cheat_set_nonce",
    "prank(address)": "_cheat_prank",
    "prank(address,address)": "_cheat_prank",
    "startPrank(address)": "_cheat_start_prank",
    "startPrank(address,address)": "_cheat_start_prank",
    "stopPrank()": "_cheat_stop_prank",
    "expectRevert()": "_cheat_expect_revert_any",
    "expectRevert(bytes)": "_cheat_expect_revert",
    "expectRevert(bytes4)": "_cheat_expect_revert",
    "recordLogs()": "_cheat_record_logs",
    "getRecordedLogs()": "_cheat_get_recorded_logs",
    "snapshot()": "_cheat_snapshot",
    "snapshotState()": "_cheat_snapshot",
    "revertTo(uint256)": "_cheat_revert_to",
    "revertToState(uint256)": "_cheat_revert_to",
    "store(address,bytes32,bytes32)": "_cheat_store",
    "load(address,bytes32)": "_cheat_load",
    "etch(address,bytes)": "_cheat_etch",
    "assume(bool)": "_cheat_assume",
    "addr(uint256)": "_cheat_addr",
    "sign(uint256,bytes32)": "_cheat_sign",
    "label(address,string)": "_cheat_label",
    "broadcast()": "_cheat_broadcast",
    "broadcast(address)": "_cheat_broadcast",
    "startBroadcast()": "_cheat_start_broadcast",
    "startBroadcast(address)": "_cheat_start_broadcast",
    "stopBroadcast()": "_cheat_stop_broadcast",
}


def _argument_types(signature: str) -> List[str]:
    inner = signature[signature.index("(") + 1:-1]
    return inner.split(",") if inner else []


CHEAT_SELECTORS: Dict[bytes, Tuple[str, List[str], str]] = {
    function_signature_to_4byte_selector(sig): (sig, _argument_types(sig), method)
    for sig, method in CHEAT_SIGNATURES.items()
}


class CheatInterceptor:
    """
    Holds the cheat state of one test: installed directives, the pending
    revert expectation, recorded logs, labels and broadcast intents.

    :param test_id: Identifier of the owning test; directives carry it.
    :param default_broadcaster: Sender used by ``broadcast()`` without arguments.
    """

    def __init__(self, test_id: str = "", default_broadcaster: str = core_config.DEFAULT_SENDER):
        self.test_id: str = test_id
        self.default_broadcaster: bytes = canonical_address(default_broadcaster)
        self.directives: List[CheatDirective] = []
        self.violations: List[str] = []
        self.cheat_errors: List[str] = []
        self.assumption_rejected: bool = False
        self.recording_logs: bool = False
        self.recorded_logs: List[Log] = []
        self.labels: Dict[bytes, str] = {}
        self.broadcast_intents: List[TransactionIntent] = []
        self._frame_stack: List[Optional[_FrameContext]] = []

    # --- Directive management ---

    def install(self, directive: CheatDirective) -> None:
        """Validates and stores a directive. Raises CheatError subclasses."""
        kind = CheatKind.parse(directive.kind)
        if kind is not directive.kind:
            directive = replace(directive, kind=kind)
        if kind in _CALL_ONLY_KINDS:
            raise UnsupportedCheat(f"{kind.name} is only available as a cheat call")
        check_arguments(kind, directive.args)
        if kind in _EXPECT_KINDS and self.pending_expectation() is not None:
            raise ConflictingExpectation("An expected revert is already pending")
        if kind == CheatKind.IMPERSONATE_SENDER and self._active(CheatKind.IMPERSONATE_SENDER):
            raise CheatError("Cannot start a prank while another prank is active")
        if kind == CheatKind.BROADCAST and self._active(CheatKind.BROADCAST):
            raise CheatError("Cannot start a broadcast while another broadcast is active")
        if kind == CheatKind.RECORD_LOGS:
            self.recording_logs = True
            self.recorded_logs = []
            return
        if kind == CheatKind.LABEL:
            address, name = directive.args
            self.labels[canonical_address(address)] = name
            return
        self.directives.append(directive)
        logger.debug("Installed %s directive for %s (scope %s, depth %d)",
                     kind.name, directive.test_id or "<harness>", directive.scope.name, directive.depth)

    def _active(self, kind: CheatKind) -> List[CheatDirective]:
        return [d for d in self.directives if d.kind == kind]

    def pending_expectation(self) -> Optional[CheatDirective]:
        for directive in self.directives:
            if directive.kind in _EXPECT_KINDS:
                return directive
        return None

    def consume_next_call_directives(self, depth: Optional[int] = None) -> List[CheatDirective]:
        """
        Directives that apply to a frame dispatched at ``depth`` (any depth when
        None). ``NEXT_CALL`` directives are removed; ``UNTIL_CLEARED`` ones stay.
        """
        applicable = [d for d in self.directives if depth is None or d.depth + 1 == depth]
        if applicable:
            self.directives = [d for d in self.directives
                               if not (d in applicable and d.scope == DirectiveScope.NEXT_CALL)]
        return applicable

    def clear_scope(self, test_id: Optional[str] = None) -> None:
        """Drops every directive, expectation, prank, recording and broadcast of ``test_id``."""
        test_id = self.test_id if test_id is None else test_id
        self.directives = [d for d in self.directives if d.test_id != test_id]
        if test_id == self.test_id:
            self.recording_logs = False
            self.recorded_logs = []
            self._frame_stack = []

    def finalize(self) -> None:
        """
        Ends the test and clears its scope. An expectation that is still
        pending is recorded as a violation and raised as UnmetExpectation.
        """
        pending = self.pending_expectation()
        self.clear_scope(self.test_id)
        if pending is not None:
            self._violation(UNMET_EXPECTATION)
            raise UnmetExpectation(UNMET_EXPECTATION, self.test_id or None)

    def _violation(self, message: str) -> None:
        logger.debug("Cheat violation in %s: %s", self.test_id or "<harness>", message)
        self.violations.append(message)

    # --- Interpreter hooks ---

    def prepare_call(self, frame: CallFrame, interpreter) -> CallFrame:
        """Applies the directives that target ``frame`` and returns the frame to run."""
        if frame.kind != CallKind.CREATE and frame.effective_code_address == CHEAT_ADDRESS_BYTES:
            self._frame_stack.append(None)
            return frame

        context = _FrameContext()
        for directive in self.consume_next_call_directives(frame.depth):
            kind = directive.kind
            if kind == CheatKind.IMPERSONATE_SENDER:
                sender = canonical_address(directive.args[0])
                origin = canonical_address(directive.args[1]) if len(directive.args) > 1 else frame.origin
                if frame.kind != CallKind.DELEGATECALL:
                    frame = replace(frame, caller=sender, origin=origin)
            elif kind in _EXPECT_KINDS:
                context.expectation = directive
            elif kind == CheatKind.BROADCAST:
                frame = self._record_broadcast(frame, directive, interpreter)
            elif kind in _STATE_KINDS:
                self._apply_state_directive(kind, directive.args, interpreter.state)
        self._frame_stack.append(context)
        return frame

    def finish_call(self, frame: CallFrame, result: ExecutionResult, interpreter) -> ExecutionResult:
        """Judges a pending revert expectation against the frame's result."""
        context = self._frame_stack.pop() if self._frame_stack else None
        if context is None or context.expectation is None:
            return result

        expectation = context.expectation
        if result.success:
            self._violation(REVERT_NOT_TRIGGERED)
            return ExecutionResult(success=False, output=encode_error_string(REVERT_NOT_TRIGGERED),
                                   gas_used=result.gas_used, error=Revert.__name__,
                                   revert_reason=REVERT_NOT_TRIGGERED)
        if self._matches(expectation, result):
            return ExecutionResult(success=True, output=b"", gas_used=result.gas_used)

        expected = expectation.args[0] if expectation.args else b""
        message = (f"reverted with {result.revert_reason or '0x' + result.output.hex()!r}, "
                   f"expected {_describe_expected(expected)!r}")
        self._violation(message)
        return ExecutionResult(success=False, output=encode_error_string(message), gas_used=result.gas_used,
                               error=Revert.__name__, revert_reason=message)

    @staticmethod
    def _matches(expectation: CheatDirective, result: ExecutionResult) -> bool:
        if expectation.kind == CheatKind.EXPECT_REVERT_ANY:
            return True
        expected: bytes = bytes(expectation.args[0])
        output = result.output
        if output == expected:
            return True
        if len(expected) == 4 and output[:4] == expected:
            return True
        reason = result.revert_reason
        return reason is not None and reason.encode("utf-8") == expected

    def on_log(self, log: Log) -> None:
        if self.recording_logs:
            self.recorded_logs.append(log)

    def _record_broadcast(self, frame: CallFrame, directive: CheatDirective, interpreter) -> CallFrame:
        sender = canonical_address(directive.args[0]) if directive.args else self.default_broadcaster
        frame = replace(frame, caller=sender, origin=sender)
        is_create = frame.kind == CallKind.CREATE
        self.broadcast_intents.append(TransactionIntent(
            sender=checksum(sender),
            to=None if is_create else checksum(frame.target),
            data=frame.data,
            value=frame.value,
            label=self.labels.get(frame.target) if frame.target else None,
        ))
        if not is_create:
            # creations bump the nonce themselves when the address is derived
            if interpreter.state.get_nonce(sender) >= MAX_NONCE:
                self.cheat_errors.append(f"Broadcast sender {checksum(sender)} has no nonce left")
            else:
                interpreter.state.increment_nonce(sender)
        logger.debug("Recorded broadcast intent #%d from %s", len(self.broadcast_intents), checksum(sender))
        return frame

    @staticmethod
    def _apply_state_directive(kind: CheatKind, args: Sequence[Any], state) -> None:
        if kind == CheatKind.SET_BALANCE:
            state.set_balance(args[0], args[1])
        elif kind == CheatKind.SET_NONCE:
            state.set_nonce(args[0], args[1])
        elif kind == CheatKind.SET_TIMESTAMP:
            state.set_env(timestamp=args[0])
        elif kind == CheatKind.SET_BLOCK_NUMBER:
            state.set_env(number=args[0])
        elif kind == CheatKind.SET_STORAGE:
            state.set_storage(args[0], args[1], args[2])
        elif kind == CheatKind.SET_CODE:
            state.set_code(args[0], args[1])

    # --- Cheat calls ---

    def handle_call(self, frame: CallFrame, interpreter) -> bytes:
        """
        Performs the cheat encoded in ``frame.data`` and returns its ABI-encoded
        output. Raises CheatError (recorded in ``cheat_errors``) when the call
        cannot be honoured, and Revert for ``assume(false)``.
        """
        try:
            selector = frame.data[:4]
            entry = CHEAT_SELECTORS.get(selector)
            if entry is None:
                raise UnsupportedCheat(f"Unsupported cheat call with selector 0x{selector.hex()}")
            signature, arg_types, method_name = entry
            try:
                args = decode(arg_types, frame.data[4:]) if arg_types else ()
            except (DecodingError, ValueError, OverflowError) as e:
                raise CheatError(f"Malformed arguments for {signature}: {e}") from e
            logger.debug("Cheat call %s at depth %d", signature, frame.depth)
            handler: Callable[..., bytes] = getattr(self, method_name)
            return handler(frame, interpreter, *args)
        except CheatError as e:
            self.cheat_errors.append(str(e))
            raise

    def _scoped(self, kind: CheatKind, args: Tuple[Any, ...], scope: DirectiveScope,
                frame: CallFrame) -> None:
        self.install(CheatDirective(kind=kind, args=args, scope=scope, test_id=self.test_id,
                                    depth=frame.depth - 1))

    def _cheat_warp(self, frame, interpreter, timestamp: int) -> bytes:
        interpreter.state.set_env(timestamp=timestamp)
        return b""

    def _cheat_roll(self, frame, interpreter, number: int) -> bytes:
        interpreter.state.set_env(number=number)
        return b""

    def _cheat_deal(self, frame, interpreter, address: str, amount: int) -> bytes:
        interpreter.state.set_balance(address, amount)
        return b""

    def _cheat_set_nonce(self, frame, interpreter, address: str, nonce: int) -> bytes:
        current = interpreter.state.get_nonce(address)
        if nonce < current:
            raise CheatError(f"New nonce {nonce} is lower than the current nonce {current}")
        interpreter.state.set_nonce(address, nonce)
        return b""

    def _cheat_prank(self, frame, interpreter, sender: str, origin: Optional[str] = None) -> bytes:
        args = (sender,) if origin is None else (sender, origin)
        self._scoped(CheatKind.IMPERSONATE_SENDER, args, DirectiveScope.NEXT_CALL, frame)
        return b""

    def _cheat_start_prank(self, frame, interpreter, sender: str, origin: Optional[str] = None) -> bytes:
        args = (sender,) if origin is None else (sender, origin)
        self._scoped(CheatKind.IMPERSONATE_SENDER, args, DirectiveScope.UNTIL_CLEARED, frame)
        return b""

    def _cheat_stop_prank(self, frame, interpreter) -> bytes:
        self.directives = [d for d in self.directives if d.kind != CheatKind.IMPERSONATE_SENDER]
        return b""

    def _cheat_expect_revert_any(self, frame, interpreter) -> bytes:
        self._scoped(CheatKind.EXPECT_REVERT_ANY, (), DirectiveScope.NEXT_CALL, frame)
        return b""

    def _cheat_expect_revert(self, frame, interpreter, expected: bytes) -> bytes:
        self._scoped(CheatKind.EXPECT_REVERT, (bytes(expected),), DirectiveScope.NEXT_CALL, frame)
        return b""

    def _cheat_record_logs(self, frame, interpreter) -> bytes:
        self.recording_logs = True
        self.recorded_logs = []
        return b""

    def _cheat_get_recorded_logs(self, frame, interpreter) -> bytes:
        entries = [
            ([t.to_bytes(32, "big") for t in log.topics], log.data, checksum(log.address))
            for log in self.recorded_logs
        ]
        self.recorded_logs = []
        return encode(["(bytes32[],bytes,address)[]"], [entries])

    def _cheat_snapshot(self, frame, interpreter) -> bytes:
        return encode(["uint256"], [interpreter.state.snapshot()])

    def _cheat_revert_to(self, frame, interpreter, snapshot_id: int) -> bytes:
        try:
            interpreter.state.restore(snapshot_id)
        except UnknownSnapshot:
            logger.warning("revertTo(%d) in %s: unknown snapshot", snapshot_id, self.test_id or "<harness>")
            return encode(["bool"], [False])
        return encode(["bool"], [True])

    def _cheat_store(self, frame, interpreter, address: str, slot: bytes, value: bytes) -> bytes:
        interpreter.state.set_storage(address, int.from_bytes(slot, "big"), int.from_bytes(value, "big"))
        return b""

    def _cheat_load(self, frame, interpreter, address: str, slot: bytes) -> bytes:
        value = interpreter.state.read(address, int.from_bytes(slot, "big"))
        return value.to_bytes(32, "big")

    def _cheat_etch(self, frame, interpreter, address: str, code: bytes) -> bytes:
        interpreter.state.set_code(address, code)
        return b""

    def _cheat_assume(self, frame, interpreter, condition: bool) -> bytes:
        if not condition:
            self.assumption_rejected = True
            raise Revert(encode_error_string(ASSUMPTION_REJECTED_REASON), ASSUMPTION_REJECTED_REASON)
        return b""

    @staticmethod
    def _private_key(value: int) -> keys.PrivateKey:
        try:
            return keys.PrivateKey(value.to_bytes(32, "big"))
        except (ValidationError, OverflowError) as e:
            raise CheatError(f"Invalid private key: {e}") from e

    def _cheat_addr(self, frame, interpreter, private_key: int) -> bytes:
        if private_key == 0:
            raise CheatError("Private key cannot be zero")
        address = self._private_key(private_key).public_key.to_checksum_address()
        return encode(["address"], [address])

    def _cheat_sign(self, frame, interpreter, private_key: int, digest: bytes) -> bytes:
        if private_key == 0:
            raise CheatError("Private key cannot be zero")
        signature = self._private_key(private_key).sign_msg_hash(digest)
        return encode(["uint8", "bytes32", "bytes32"],
                      [signature.v + 27, signature.r.to_bytes(32, "big"), signature.s.to_bytes(32, "big")])

    def _cheat_label(self, frame, interpreter, address: str, name: str) -> bytes:
        self.labels[canonical_address(address)] = name
        return b""

    def _cheat_broadcast(self, frame, interpreter, sender: Optional[str] = None) -> bytes:
        args = () if sender is None else (sender,)
        self._scoped(CheatKind.BROADCAST, args, DirectiveScope.NEXT_CALL, frame)
        return b""

    def _cheat_start_broadcast(self, frame, interpreter, sender: Optional[str] = None) -> bytes:
        args = () if sender is None else (sender,)
        self._scoped(CheatKind.BROADCAST, args, DirectiveScope.UNTIL_CLEARED, frame)
        return b""

    def _cheat_stop_broadcast(self, frame, interpreter) -> bytes:
        self.directives = [d for d in self.directives if d.kind != CheatKind.BROADCAST]
        return b""


def _describe_expected(expected: bytes) -> str:
    if not expected:
        return "any revert"
    if expected[:4] in (ERROR_STRING_SELECTOR, PANIC_SELECTOR):
        return decode_revert_reason(expected) or "0x" + expected.hex()
    try:
        return expected.decode("utf-8")
    except UnicodeDecodeError:
        return "0x" + expected.hex()
