# eth_testbench_core/types.py
"""
Data structures shared by the State Store, the Interpreter and the Cheat
Interceptor: call frames, logs, state deltas and execution results.
"""

import enum
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from eth_utils import to_canonical_address, to_checksum_address

from . import errors

AddressLike = Union[str, bytes]


def canonical_address(address: AddressLike) -> bytes:
    """Normalizes a hex string or 20-byte value to the canonical 20-byte form."""
    if isinstance(address, (bytes, bytearray)) and len(address) == 20:
        return bytes(address)
    return to_canonical_address(address)


def address_from_int(value: int) -> bytes:
    return (value & ((1 << 160) - 1)).to_bytes(20, "big")


def checksum(address: AddressLike) -> str:
    return to_checksum_address(canonical_address(address))


class CallKind(enum.Enum):
    CALL = "call"
    DELEGATECALL = "delegatecall"
    STATICCALL = "staticcall"
    CREATE = "create"


@dataclass(frozen=True)
class CallFrame:
    """
    One call's execution context.

    For CREATE frames ``data`` holds the init code and ``target`` is filled in
    by the interpreter once the new address is known.
    """
    caller: bytes
    target: Optional[bytes]
    data: bytes = b""
    value: int = 0
    gas_limit: int = 0
    kind: CallKind = CallKind.CALL
    code_address: Optional[bytes] = None
    is_static: bool = False
    depth: int = 0
    origin: Optional[bytes] = None
    salt: Optional[int] = None  # CREATE2 only

    @property
    def effective_code_address(self) -> Optional[bytes]:
        return self.code_address if self.code_address is not None else self.target

    @property
    def effective_origin(self) -> bytes:
        return self.origin if self.origin is not None else self.caller

    @classmethod
    def call(cls, caller: AddressLike, target: AddressLike, data: bytes = b"",
             value: int = 0, gas_limit: int = 0, **kwargs) -> "CallFrame":
        """Convenience constructor taking hex or canonical addresses."""
        origin = kwargs.pop("origin", None)
        return cls(
            caller=canonical_address(caller),
            target=canonical_address(target),
            data=bytes(data),
            value=value,
            gas_limit=gas_limit,
            origin=canonical_address(origin) if origin is not None else None,
            **kwargs,
        )

    @classmethod
    def create(cls, caller: AddressLike, init_code: bytes, value: int = 0,
               gas_limit: int = 0, **kwargs) -> "CallFrame":
        origin = kwargs.pop("origin", None)
        target = kwargs.pop("target", None)
        return cls(
            caller=canonical_address(caller),
            target=canonical_address(target) if target is not None else None,
            data=bytes(init_code),
            value=value,
            gas_limit=gas_limit,
            kind=CallKind.CREATE,
            origin=canonical_address(origin) if origin is not None else None,
            **kwargs,
        )


@dataclass(frozen=True)
class Log:
    address: bytes
    topics: Tuple[int, ...]
    data: bytes

    def to_dict(self) -> dict:
        return {
            "address": checksum(self.address),
            "topics": ["0x" + t.to_bytes(32, "big").hex() for t in self.topics],
            "data": "0x" + self.data.hex(),
        }


@dataclass(frozen=True)
class AccountChange:
    address: bytes
    attribute: str  # "balance", "nonce", "code" or "exists"
    before: object
    after: object


@dataclass(frozen=True)
class StorageChange:
    address: bytes
    key: int
    before: int
    after: int


@dataclass(frozen=True)
class StateDelta:
    accounts: Tuple[AccountChange, ...] = ()
    storage: Tuple[StorageChange, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.accounts or self.storage)


@dataclass(frozen=True)
class ExecutionResult:
    """
    Outcome of one frame. Failed frames carry the error kind name and, for
    reverts, the raw revert data in ``output`` plus its decoded reason.
    """
    success: bool
    output: bytes = b""
    gas_used: int = 0
    logs: Tuple[Log, ...] = ()
    error: Optional[str] = None
    revert_reason: Optional[str] = None
    created_address: Optional[bytes] = None
    state_delta: StateDelta = field(default_factory=StateDelta)

    @property
    def is_revert(self) -> bool:
        return not self.success and self.error == "Revert"

    @property
    def is_out_of_gas(self) -> bool:
        return self.error == "OutOfGas"

    def raise_for_error(self) -> None:
        """Re-raises the failure as the matching ExecutionError subclass."""
        if self.success:
            return
        if self.error == "Revert":
            raise errors.Revert(self.output, self.revert_reason)
        error_cls = errors.EXECUTION_ERRORS_BY_NAME.get(self.error or "", errors.ExecutionError)
        if issubclass(error_cls, errors.ExecutionError):
            raise error_cls(self.revert_reason or self.error or "execution failed")
        raise errors.ExecutionError(f"{self.error}: {self.revert_reason or ''}".strip())
