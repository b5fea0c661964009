# eth_testbench_core/assembler.py
"""
A small two-pass mnemonic assembler, plus helpers that generate the
assembly for common contract shapes (selector dispatch, reverts, external
calls, cheat calls). Fixtures and test contracts are written with it so the
engine can be exercised without a compiler.

Syntax, one token stream, whitespace separated, ``;`` or ``//`` comments::

    PUSH1 0x2a          ; explicit width
    PUSH 1000           ; smallest width that fits (PUSH0 for zero)
    PUSH @done          ; two-byte offset of a label
    done:               ; defines a label and emits JUMPDEST
    DATA 0xdeadbeef     ; raw bytes
"""

import itertools
import re
from typing import Any, Dict, List, Sequence, Tuple

from . import config as core_config
from .abi import ContractArtifact, encode_error_string, encode_panic, function_abi, split_signature
from .opcodes import Op
from .types import AddressLike, canonical_address

_LABEL_DEFINITION = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*):$")
_LABEL_REFERENCE = re.compile(r"^@([A-Za-z_][A-Za-z0-9_]*)$")
_LABEL_WIDTH = 2
_label_counter = itertools.count()


class AssemblyError(ValueError):
    pass


def _parse_literal(token: str) -> int:
    try:
        return int(token, 16) if token.lower().startswith("0x") else int(token)
    except ValueError:
        raise AssemblyError(f"Invalid literal {token!r}") from None


def _width(value: int) -> int:
    return max(1, (value.bit_length() + 7) // 8)


def _tokenize(source: str) -> List[str]:
    tokens: List[str] = []
    for line in source.splitlines():
        line = line.split(";", 1)[0].split("//", 1)[0]
        tokens.extend(line.split())
    return tokens


def assemble(source: str) -> bytes:
    """Assembles ``source`` into bytecode. Raises AssemblyError."""
    tokens = _tokenize(source)
    # pass 1: lay out items and record label offsets
    items: List[Tuple[str, Any]] = []
    labels: Dict[str, int] = {}
    offset = 0
    position = 0
    while position < len(tokens):
        token = tokens[position]
        position += 1
        definition = _LABEL_DEFINITION.match(token)
        if definition:
            name = definition.group(1)
            if name in labels:
                raise AssemblyError(f"Label {name!r} defined twice")
            labels[name] = offset
            items.append(("op", Op.JUMPDEST))
            offset += 1
            continue

        mnemonic = token.upper()
        if mnemonic == "DATA" or mnemonic.startswith("PUSH") and mnemonic != "PUSH0":
            if position >= len(tokens):
                raise AssemblyError(f"{mnemonic} needs an operand")
            operand = tokens[position]
            position += 1
            if mnemonic == "DATA":
                data = bytes.fromhex(operand[2:] if operand.startswith("0x") else operand)
                items.append(("data", data))
                offset += len(data)
                continue
            explicit = int(mnemonic[4:]) if mnemonic[4:] else None
            reference = _LABEL_REFERENCE.match(operand)
            if reference:
                width = explicit or _LABEL_WIDTH
                items.append(("label", (width, reference.group(1))))
            else:
                value = _parse_literal(operand)
                if value == 0 and explicit is None:
                    items.append(("op", Op.PUSH0))
                    offset += 1
                    continue
                width = explicit or _width(value)
                if value < 0 or value.bit_length() > 8 * width:
                    raise AssemblyError(f"{operand} does not fit in {mnemonic}")
                items.append(("push", (width, value)))
            if not 1 <= width <= 32:
                raise AssemblyError(f"Invalid push width {width}")
            offset += 1 + width
            continue

        try:
            items.append(("op", Op[mnemonic]))
        except KeyError:
            raise AssemblyError(f"Unknown mnemonic {token!r}") from None
        offset += 1

    # pass 2: emit
    code = bytearray()
    for kind, payload in items:
        if kind == "op":
            code.append(payload)
        elif kind == "data":
            code.extend(payload)
        else:
            width, value = payload
            if kind == "label":
                if value not in labels:
                    raise AssemblyError(f"Undefined label {value!r}")
                value = labels[value]
                if value.bit_length() > 8 * width:
                    raise AssemblyError(f"Label offset {value} does not fit in PUSH{width}")
            code.append(Op.PUSH1 + width - 1)
            code.extend(value.to_bytes(width, "big"))
    return bytes(code)


def deployer(runtime: bytes, constructor: bytes = b"") -> bytes:
    """
    Init code that runs ``constructor`` (which must fall through) and then
    returns ``runtime`` as the deployed code.
    """
    stub_size = 11
    stub = assemble(f"""
        PUSH2 {len(runtime)} DUP1
        PUSH2 {len(constructor) + stub_size} PUSH0 CODECOPY
        PUSH0 RETURN
    """)
    return constructor + stub + runtime


# --- Source generators ---

def fresh_label(prefix: str = "l") -> str:
    return f"{prefix}_{next(_label_counter)}"


def push(value: int) -> str:
    return f"PUSH {value}"


def store_bytes(data: bytes, offset: int = 0) -> str:
    """MSTOREs ``data`` at memory ``offset`` in 32-byte words (last word right-padded)."""
    parts = []
    for start in range(0, len(data), 32):
        word = data[start:start + 32].ljust(32, b"\x00")
        parts.append(f"PUSH32 0x{word.hex()} {push(offset + start)} MSTORE")
    return "\n".join(parts)


def return_bytes(data: bytes) -> str:
    return f"{store_bytes(data)}\n{push(len(data))} PUSH0 RETURN"


def revert_bytes(data: bytes) -> str:
    return f"{store_bytes(data)}\n{push(len(data))} PUSH0 REVERT"


def revert_error(message: str) -> str:
    return revert_bytes(encode_error_string(message))


def revert_panic(code: int) -> str:
    return revert_bytes(encode_panic(code))


def return_top() -> str:
    """Returns the word on top of the stack."""
    return "PUSH0 MSTORE PUSH1 0x20 PUSH0 RETURN"


def argument(index: int) -> str:
    """Pushes the ``index``-th static calldata argument word."""
    return f"{push(4 + 32 * index)} CALLDATALOAD"


def require(message: str) -> str:
    """Pops a condition; reverts with ``Error(message)`` when it is zero."""
    ok = fresh_label("ok")
    return f"PUSH @{ok} JUMPI\n{revert_error(message)}\n{ok}:"


def assert_true() -> str:
    """Pops a condition; reverts with ``Panic(0x01)`` when it is zero."""
    ok = fresh_label("ok")
    return f"PUSH @{ok} JUMPI\n{revert_panic(0x01)}\n{ok}:"


def call(target: AddressLike, calldata: bytes = b"", value: int = 0, bubble: bool = True,
         kind: str = "CALL") -> str:
    """
    Calls ``target`` with ``calldata`` (stored at memory 0). With ``bubble``
    a failed call reverts with the callee's revert data; otherwise the
    success flag is left on the stack.
    """
    address = canonical_address(target)
    value_part = f"{push(value)} " if kind == "CALL" else ""
    source = (f"{store_bytes(calldata)}\n"
              f"PUSH0 PUSH0 {push(len(calldata))} PUSH0 {value_part}PUSH20 0x{address.hex()} GAS {kind}")
    if not bubble:
        return source
    ok = fresh_label("call_ok")
    return (f"{source}\nPUSH @{ok} JUMPI\n"
            f"RETURNDATASIZE PUSH0 PUSH0 RETURNDATACOPY RETURNDATASIZE PUSH0 REVERT\n{ok}:")


def cheat(signature: str, *args: Any, bubble: bool = True) -> str:
    """Calls a cheat at the cheat address, e.g. ``cheat("warp(uint256)", 100)``."""
    return call(core_config.CHEAT_ADDRESS, function_abi(signature).encode_call(*args), bubble=bubble)


def dispatcher(routes: Sequence[Tuple[str, str]]) -> str:
    """
    Runtime source that jumps to the body of the function whose selector
    matches the calldata, stopping after it. Unknown selectors revert empty.
    """
    prefix = fresh_label("fn")
    parts = ["PUSH0 CALLDATALOAD PUSH1 0xe0 SHR"]
    for index, (signature, _) in enumerate(routes):
        selector = function_abi(signature).selector
        parts.append(f"DUP1 PUSH4 0x{selector.hex()} EQ PUSH @{prefix}_{index} JUMPI")
    parts.append("PUSH0 PUSH0 REVERT")
    for index, (_, body) in enumerate(routes):
        parts.append(f"{prefix}_{index}:\nPOP\n{body}\nSTOP")
    return "\n".join(parts)


def _abi_param(abi_type: str) -> Dict[str, Any]:
    if abi_type.startswith("("):
        close = _matching_paren(abi_type)
        _, components = split_signature("t" + abi_type[:close + 1])
        return {"name": "", "type": "tuple" + abi_type[close + 1:],
                "components": [_abi_param(c) for c in components]}
    return {"name": "", "type": abi_type}


def _matching_paren(text: str) -> int:
    depth = 0
    for index, char in enumerate(text):
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                return index
    raise AssemblyError(f"Unbalanced parentheses in {text!r}")


def build_artifact(name: str, routes: Sequence[Tuple[str, str]], constructor: str = "",
                   extra_functions: Sequence[str] = ()) -> ContractArtifact:
    """
    Assembles a dispatcher contract and wraps it as an artifact whose ABI
    lists every routed signature (plus ``extra_functions``, ABI-only).
    """
    runtime = assemble(dispatcher(routes))
    constructor_code = assemble(constructor) if constructor else b""
    abi = []
    for signature in [s for s, _ in routes] + list(extra_functions):
        function_name, inputs = split_signature(signature)
        abi.append({"type": "function", "name": function_name, "inputs": [_abi_param(t) for t in inputs],
                    "outputs": [], "stateMutability": "nonpayable"})
    return ContractArtifact(name=name, bytecode=deployer(runtime, constructor_code),
                            deployed_bytecode=runtime, abi=abi)
