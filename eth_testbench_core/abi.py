# eth_testbench_core/abi.py
"""
Contract ABI helpers: compiled artifacts, function signatures, call encoding
and revert data decoding.

Artifacts are read in the formats the common toolchains emit (Foundry's
``out/`` JSON, solc standard JSON output, or a plain ``{"abi", "bytecode"}``
dict). Encoding is delegated to eth-abi.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import decode_hex, function_signature_to_4byte_selector

from .errors import DiscoveryError

logger = logging.getLogger(__name__)

ERROR_STRING_SELECTOR = function_signature_to_4byte_selector("Error(string)")
PANIC_SELECTOR = function_signature_to_4byte_selector("Panic(uint256)")

PANIC_ASSERTION = 0x01
PANIC_DESCRIPTIONS: Dict[int, str] = {
    0x00: "generic compiler panic",
    0x01: "assertion failed",
    0x11: "arithmetic underflow or overflow",
    0x12: "division or modulo by zero",
    0x21: "invalid enum value",
    0x22: "invalid storage byte array",
    0x31: "pop on empty array",
    0x32: "array out-of-bounds access",
    0x41: "out of memory",
    0x51: "call to uninitialized function",
}


def split_signature(signature: str) -> Tuple[str, List[str]]:
    """
    Splits ``name(t1,(t2,t3)[],t4)`` into its name and top-level parameter types.
    Raises ValueError on malformed input.
    """
    signature = signature.replace(" ", "")
    open_index = signature.find("(")
    if open_index <= 0 or not signature.endswith(")"):
        raise ValueError(f"Malformed function signature: {signature!r}")
    name = signature[:open_index]
    body = signature[open_index + 1:-1]
    types: List[str] = []
    depth = 0
    current = ""
    for char in body:
        if char == "," and depth == 0:
            types.append(current)
            current = ""
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise ValueError(f"Unbalanced parentheses in {signature!r}")
        current += char
    if depth != 0:
        raise ValueError(f"Unbalanced parentheses in {signature!r}")
    if current:
        types.append(current)
    return name, types


def abi_type_string(param: Dict[str, Any]) -> str:
    """Canonical type string of an ABI JSON parameter, expanding tuples."""
    abi_type = param["type"]
    if abi_type.startswith("tuple"):
        inner = ",".join(abi_type_string(component) for component in param.get("components", []))
        return f"({inner}){abi_type[len('tuple'):]}"
    return abi_type


@dataclass(frozen=True)
class FunctionSignature:
    name: str
    inputs: Tuple[str, ...] = ()
    outputs: Tuple[str, ...] = ()
    input_names: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, signature: str, outputs: Sequence[str] = ()) -> "FunctionSignature":
        name, types = split_signature(signature)
        return cls(name=name, inputs=tuple(types), outputs=tuple(outputs))

    @classmethod
    def from_abi(cls, entry: Dict[str, Any]) -> "FunctionSignature":
        return cls(
            name=entry["name"],
            inputs=tuple(abi_type_string(p) for p in entry.get("inputs", [])),
            outputs=tuple(abi_type_string(p) for p in entry.get("outputs", [])),
            input_names=tuple(p.get("name", "") for p in entry.get("inputs", [])),
        )

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)

    def encode_call(self, *args: Any) -> bytes:
        return self.selector + encode(list(self.inputs), list(args))

    def decode_input(self, calldata: bytes) -> Tuple[Any, ...]:
        return tuple(decode(list(self.inputs), calldata[4:]))

    def decode_output(self, data: bytes) -> Tuple[Any, ...]:
        return tuple(decode(list(self.outputs), data))

    def __str__(self) -> str:
        return self.signature


def function_abi(signature: str, outputs: Sequence[str] = ()) -> FunctionSignature:
    return FunctionSignature.parse(signature, outputs)


def _hex_to_bytes(value: Union[str, Dict[str, Any], None]) -> bytes:
    if value is None:
        return b""
    if isinstance(value, dict):
        value = value.get("object", "")
    if not value or value == "0x":
        return b""
    return decode_hex(value)


@dataclass
class ContractArtifact:
    """Compiled contract: init code, runtime code and ABI."""
    name: str
    bytecode: bytes
    deployed_bytecode: bytes = b""
    abi: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], name: Optional[str] = None) -> "ContractArtifact":
        """
        :param data: A Foundry artifact, a solc contract output entry, or a
                     plain dict with ``abi`` and ``bytecode``.
        :param name: Contract name; taken from metadata when omitted.
        """
        if "evm" in data:
            evm = data["evm"]
            bytecode = _hex_to_bytes(evm.get("bytecode"))
            deployed = _hex_to_bytes(evm.get("deployedBytecode"))
        else:
            bytecode = _hex_to_bytes(data.get("bytecode"))
            deployed = _hex_to_bytes(data.get("deployedBytecode"))
        abi = data.get("abi", [])
        if isinstance(abi, str):
            abi = json.loads(abi)
        if name is None:
            targets = data.get("metadata", {}).get("settings", {}).get("compilationTarget", {}) \
                if isinstance(data.get("metadata"), dict) else {}
            name = next(iter(targets.values()), None) or data.get("contractName") or data.get("name") or "Contract"
        return cls(name=name, bytecode=bytecode, deployed_bytecode=deployed, abi=list(abi))

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ContractArtifact":
        path = Path(path)
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise DiscoveryError(f"Cannot read artifact {path}: {e}") from e
        return cls.from_dict(data, name=data.get("contractName") or path.stem)

    @property
    def functions(self) -> List[FunctionSignature]:
        return [FunctionSignature.from_abi(entry) for entry in self.abi if entry.get("type") == "function"]

    def function(self, name_or_signature: str) -> FunctionSignature:
        """Looks up a function by full signature, or by name when unambiguous."""
        matches = [f for f in self.functions if name_or_signature in (f.signature, f.name)]
        if len(matches) != 1:
            raise KeyError(f"{self.name} has {len(matches)} functions matching {name_or_signature!r}")
        return matches[0]


def encode_error_string(message: str) -> bytes:
    return ERROR_STRING_SELECTOR + encode(["string"], [message])


def encode_panic(code: int) -> bytes:
    return PANIC_SELECTOR + encode(["uint256"], [code])


def decode_panic_code(data: bytes) -> Optional[int]:
    if len(data) != 36 or data[:4] != PANIC_SELECTOR:
        return None
    return int.from_bytes(data[4:], "big")


def decode_revert_reason(data: bytes) -> Optional[str]:
    """
    Human-readable reason for revert data: the message of ``Error(string)``,
    a description of ``Panic(uint256)``, or the selector of a custom error.
    Returns None for empty or undecodable data.
    """
    if len(data) < 4:
        return None
    selector = data[:4]
    if selector == ERROR_STRING_SELECTOR:
        try:
            (message,) = decode(["string"], data[4:])
        except (DecodingError, ValueError, OverflowError):
            return None
        return message
    if selector == PANIC_SELECTOR:
        code = decode_panic_code(data)
        if code is None:
            return None
        return f"{PANIC_DESCRIPTIONS.get(code, 'unknown panic')} (panic 0x{code:02x})"
    return f"custom error 0x{selector.hex()}"
