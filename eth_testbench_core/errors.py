# eth_testbench_core/errors.py
"""
Exception hierarchy of the library.

State and execution errors are raised inside a call frame and converted to a
failed ExecutionResult at the frame boundary. Cheat errors fail the cheat call
that triggered them. Test outcome errors are recorded as results and never
abort a run; only discovery and configuration errors do.
"""

from typing import List, Optional


class TestbenchError(Exception):
    """Base class for every error raised by this library."""

    __test__ = False


# --- State ---

class StateError(TestbenchError):
    """Invalid operation on the State Store. Fatal to the current frame."""


class UnknownSnapshot(StateError):
    def __init__(self, snapshot_id: int):
        super().__init__(f"Unknown or discarded snapshot id {snapshot_id}")
        self.snapshot_id = snapshot_id


class InsufficientBalance(StateError):
    def __init__(self, address: str, balance: int, amount: int):
        super().__init__(f"Insufficient balance in {address}: has {balance}, needs {amount}")
        self.address = address
        self.balance = balance
        self.amount = amount


class WriteOutsideExecution(StateError):
    """Storage writes are only allowed while a call is executing."""


class ValueOutOfRange(StateError, ValueError):
    """A balance or storage value outside 0..2**256-1."""


class NonceOverflow(ValueOutOfRange):
    """A nonce outside 0..2**64-1, or an increment past the maximum."""


# --- Execution ---

class ExecutionError(TestbenchError):
    """Raised inside a frame; propagated up the call-frame tree as a failed result."""

    # Exceptional halts consume all gas of the frame. REVERT does not.
    consumes_all_gas: bool = True


class OutOfGas(ExecutionError):
    pass


class StateMutationInStaticContext(ExecutionError):
    pass


class Revert(ExecutionError):
    consumes_all_gas = False

    def __init__(self, data: bytes = b"", reason: Optional[str] = None):
        super().__init__(reason if reason is not None else f"reverted with 0x{data.hex()}")
        self.data = data
        self.reason = reason


class StackUnderflow(ExecutionError):
    pass


class StackOverflow(ExecutionError):
    pass


class InvalidJumpDestination(ExecutionError):
    pass


class InvalidOpcode(ExecutionError):
    pass


class CallDepthExceeded(ExecutionError):
    pass


class ContractCreationFailed(ExecutionError):
    """Address collision, oversized code or unaffordable code deposit."""


# --- Cheats ---

class CheatError(TestbenchError):
    """A cheat directive could not be installed. State is left untouched."""


class ConflictingExpectation(CheatError):
    pass


class UnsupportedCheat(CheatError):
    pass


# --- Test outcomes ---

class TestOutcomeError(TestbenchError):
    """Recorded as a failed test result; does not abort the run."""

    __test__ = False

    def __init__(self, message: str, test_name: Optional[str] = None):
        super().__init__(f"{test_name}: {message}" if test_name else message)
        self.test_name = test_name


class AssertionFailure(TestOutcomeError):
    pass


class UnmetExpectation(TestOutcomeError):
    """A revert expectation that was still pending, or not honoured, when the test ended."""


# --- Run level ---

class DiscoveryError(TestbenchError):
    """Test discovery failed; aborts the whole run."""


class ConfigurationError(TestbenchError):
    """Invalid runner or engine configuration; aborts the whole run."""


# --- Broadcast / RPC ---

class RpcError(TestbenchError):
    def __init__(self, code: int, message: str, data: Optional[str] = None):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


class BroadcastError(TestbenchError):
    """Halts the remaining broadcast sequence. Submitted transactions stay submitted."""

    def __init__(self, message: str, submitted: Optional[List] = None):
        super().__init__(message)
        self.submitted = list(submitted) if submitted else []


class SigningError(BroadcastError):
    pass


class SubmissionRejected(BroadcastError):
    pass


EXECUTION_ERRORS_BY_NAME = {
    cls.__name__: cls for cls in (
        OutOfGas, StateMutationInStaticContext, Revert, StackUnderflow, StackOverflow,
        InvalidJumpDestination, InvalidOpcode, CallDepthExceeded, ContractCreationFailed,
        InsufficientBalance, WriteOutsideExecution, ValueOutOfRange, NonceOverflow,
    )
}
