# eth_testbench_core/strategies/abi_strategies.py
"""
Value strategies for every fuzzable ABI type, and ``strategy_for`` which
builds a (possibly nested) strategy from a type string such as
``uint8``, ``bytes32[]`` or ``(address,uint256)[2]``.
"""

import random
from typing import Any, Iterator, List, Optional, Sequence

from eth_abi.exceptions import ABITypeError, ParseError
from eth_abi.grammar import BasicType, TupleType, normalize, parse
from eth_utils import to_checksum_address

from .. import config as core_config
from ..errors import DiscoveryError
from .base_strategy import Strategy

_STRING_ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789 _-.!?é中\U0001f600"


def _dedupe(values: Sequence[Any]) -> List[Any]:
    seen = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


def shrink_magnitude(value: int) -> Iterator[int]:
    """
    Smaller non-negative integers than ``value``: zero, the powers of two
    below it (ascending), then ``value - delta`` for halving deltas down to
    ``value - 1``.
    """
    if value <= 0:
        return
    yielded = set()
    candidates: List[int] = [0]
    power = 1
    while power < value:
        candidates.append(power)
        power <<= 1
    delta = value >> 1
    while delta >= 1:
        candidates.append(value - delta)
        delta >>= 1
    candidates.append(value - 1)
    for candidate in candidates:
        if candidate < value and candidate not in yielded:
            yielded.add(candidate)
            yield candidate


class UintStrategy(Strategy):
    def __init__(self, bits: int = 256, boundary_probability: float = core_config.DEFAULT_BOUNDARY_DRAW_PROBABILITY):
        super().__init__(f"uint{bits}")
        self.bits = bits
        self.max_value = 2**bits - 1
        self.boundary_probability = boundary_probability

    def boundary_values(self) -> List[int]:
        return _dedupe([0, 1, self.max_value, self.max_value - 1])

    def draw(self, rng: random.Random) -> int:
        if rng.random() < self.boundary_probability:
            return rng.choice(self.boundary_values())
        # random bit width so small and large magnitudes are both common
        return rng.getrandbits(rng.randint(1, self.bits))

    def shrink(self, value: int) -> Iterator[int]:
        return shrink_magnitude(value)


class IntStrategy(Strategy):
    def __init__(self, bits: int = 256, boundary_probability: float = core_config.DEFAULT_BOUNDARY_DRAW_PROBABILITY):
        super().__init__(f"int{bits}")
        self.bits = bits
        self.min_value = -(2**(bits - 1))
        self.max_value = 2**(bits - 1) - 1
        self.boundary_probability = boundary_probability

    def boundary_values(self) -> List[int]:
        return _dedupe([0, -1, 1, self.min_value, self.max_value])

    def draw(self, rng: random.Random) -> int:
        if rng.random() < self.boundary_probability:
            return rng.choice(self.boundary_values())
        magnitude = rng.getrandbits(rng.randint(1, self.bits - 1))
        return -magnitude - 1 if rng.random() < 0.5 else magnitude

    def shrink(self, value: int) -> Iterator[int]:
        if value == 0:
            return
        yield 0
        if value < 0 and -value <= self.max_value:
            yield -value
        sign = -1 if value < 0 else 1
        for magnitude in shrink_magnitude(abs(value)):
            if magnitude:
                yield sign * magnitude


class AddressStrategy(Strategy):
    def __init__(self, boundary_probability: float = core_config.DEFAULT_BOUNDARY_DRAW_PROBABILITY):
        super().__init__("address")
        self.boundary_probability = boundary_probability

    @staticmethod
    def _from_int(value: int) -> str:
        return to_checksum_address(value.to_bytes(20, "big"))

    def boundary_values(self) -> List[str]:
        return [self._from_int(0), self._from_int(1), self._from_int(2**160 - 1)]

    def draw(self, rng: random.Random) -> str:
        if rng.random() < self.boundary_probability:
            return rng.choice(self.boundary_values())
        return self._from_int(rng.getrandbits(160))

    def shrink(self, value: str) -> Iterator[str]:
        for candidate in shrink_magnitude(int(value, 16)):
            yield self._from_int(candidate)

    def from_json(self, data: Any) -> str:
        return to_checksum_address(data)


class BoolStrategy(Strategy):
    def __init__(self):
        super().__init__("bool")

    def boundary_values(self) -> List[bool]:
        return [False, True]

    def draw(self, rng: random.Random) -> bool:
        return rng.random() < 0.5

    def shrink(self, value: bool) -> Iterator[bool]:
        if value:
            yield False


class FixedBytesStrategy(Strategy):
    def __init__(self, size: int, boundary_probability: float = core_config.DEFAULT_BOUNDARY_DRAW_PROBABILITY):
        super().__init__(f"bytes{size}")
        self.size = size
        self.boundary_probability = boundary_probability

    def boundary_values(self) -> List[bytes]:
        return [b"\x00" * self.size, b"\xff" * self.size]

    def draw(self, rng: random.Random) -> bytes:
        if rng.random() < self.boundary_probability:
            return rng.choice(self.boundary_values())
        return rng.getrandbits(8 * self.size).to_bytes(self.size, "big")

    def shrink(self, value: bytes) -> Iterator[bytes]:
        for candidate in shrink_magnitude(int.from_bytes(value, "big")):
            yield candidate.to_bytes(self.size, "big")

    def to_json(self, value: bytes) -> str:
        return "0x" + value.hex()

    def from_json(self, data: str) -> bytes:
        return bytes.fromhex(data[2:] if data.startswith("0x") else data)


def _shrink_sequence(value: Sequence[Any]) -> Iterator[Sequence[Any]]:
    """Shorter versions of a sequence: empty, halves, then each single deletion."""
    length = len(value)
    if length == 0:
        return
    yield value[:0]
    size = length // 2
    while size > 0:
        yield value[:size]
        size //= 2
    for index in range(length - 1, -1, -1):
        yield value[:index] + value[index + 1:]


class BytesStrategy(Strategy):
    def __init__(self, max_length: int = core_config.DEFAULT_MAX_DYNAMIC_LENGTH):
        super().__init__("bytes")
        self.max_length = max_length

    def boundary_values(self) -> List[bytes]:
        return [b"", b"\x00", b"\xff" * 32]

    def draw(self, rng: random.Random) -> bytes:
        length = rng.randint(0, self.max_length)
        return bytes(rng.getrandbits(8) for _ in range(length))

    def shrink(self, value: bytes) -> Iterator[bytes]:
        seen = set()
        for candidate in _shrink_sequence(value):
            if candidate not in seen:
                seen.add(candidate)
                yield candidate
        for index, byte in enumerate(value):
            if byte:
                yield value[:index] + b"\x00" + value[index + 1:]

    def to_json(self, value: bytes) -> str:
        return "0x" + value.hex()

    def from_json(self, data: str) -> bytes:
        return bytes.fromhex(data[2:] if data.startswith("0x") else data)


class StringStrategy(Strategy):
    def __init__(self, max_length: int = core_config.DEFAULT_MAX_DYNAMIC_LENGTH):
        super().__init__("string")
        self.max_length = max_length

    def boundary_values(self) -> List[str]:
        return ["", "a", "\U0001f600"]

    def draw(self, rng: random.Random) -> str:
        length = rng.randint(0, self.max_length)
        return "".join(rng.choice(_STRING_ALPHABET) for _ in range(length))

    def shrink(self, value: str) -> Iterator[str]:
        seen = set()
        for candidate in _shrink_sequence(value):
            if candidate not in seen:
                seen.add(candidate)
                yield candidate
        for index, char in enumerate(value):
            if char != "a":
                yield value[:index] + "a" + value[index + 1:]


class ArrayStrategy(Strategy):
    """Dynamic (``length`` None) or fixed-size array of ``element`` values."""

    def __init__(self, element: Strategy, length: Optional[int] = None,
                 max_length: int = core_config.DEFAULT_MAX_DYNAMIC_LENGTH):
        suffix = f"[{length}]" if length is not None else "[]"
        super().__init__(element.abi_type + suffix)
        self.element = element
        self.length = length
        self.max_length = max_length

    def boundary_values(self) -> List[list]:
        element_boundaries = self.element.boundary_values()
        if self.length is not None:
            return [[b] * self.length for b in element_boundaries]
        return [[]] + [[b] for b in element_boundaries[:2]]

    def draw(self, rng: random.Random) -> list:
        length = self.length if self.length is not None else rng.randint(0, self.max_length)
        return [self.element.draw(rng) for _ in range(length)]

    def shrink(self, value: list) -> Iterator[list]:
        if self.length is None:
            for candidate in _shrink_sequence(value):
                yield list(candidate)
        for index, item in enumerate(value):
            for smaller in self.element.shrink(item):
                yield value[:index] + [smaller] + value[index + 1:]

    def to_json(self, value: list) -> list:
        return [self.element.to_json(v) for v in value]

    def from_json(self, data: list) -> list:
        return [self.element.from_json(v) for v in data]


class TupleStrategy(Strategy):
    def __init__(self, components: Sequence[Strategy]):
        super().__init__("(" + ",".join(c.abi_type for c in components) + ")")
        self.components = list(components)

    def boundary_values(self) -> List[tuple]:
        if not self.components:
            return [()]
        per_component = [c.boundary_values() for c in self.components]
        rounds = max(len(values) for values in per_component)
        return _dedupe([tuple(values[k % len(values)] for values in per_component) for k in range(rounds)])

    def draw(self, rng: random.Random) -> tuple:
        return tuple(c.draw(rng) for c in self.components)

    def shrink(self, value: tuple) -> Iterator[tuple]:
        for index, (component, item) in enumerate(zip(self.components, value)):
            for smaller in component.shrink(item):
                yield value[:index] + (smaller,) + value[index + 1:]

    def to_json(self, value: tuple) -> list:
        return [c.to_json(v) for c, v in zip(self.components, value)]

    def from_json(self, data: list) -> tuple:
        return tuple(c.from_json(v) for c, v in zip(self.components, data))


def _strategy_for_parsed(abi_type, max_dynamic_length: int) -> Strategy:
    if abi_type.is_array:
        dimension = abi_type.arrlist[-1]
        element = _strategy_for_parsed(abi_type.item_type, max_dynamic_length)
        return ArrayStrategy(element, length=dimension[0] if dimension else None, max_length=max_dynamic_length)
    if isinstance(abi_type, TupleType):
        return TupleStrategy([_strategy_for_parsed(c, max_dynamic_length) for c in abi_type.components])
    if isinstance(abi_type, BasicType):
        base, sub = abi_type.base, abi_type.sub
        if base == "uint":
            return UintStrategy(sub)
        if base == "int":
            return IntStrategy(sub)
        if base == "address":
            return AddressStrategy()
        if base == "bool":
            return BoolStrategy()
        if base == "bytes":
            return FixedBytesStrategy(sub) if sub is not None else BytesStrategy(max_dynamic_length)
        if base == "string":
            return StringStrategy(max_dynamic_length)
    raise DiscoveryError(f"Unsupported fuzz parameter type: {abi_type.to_type_str()}")


def strategy_for(abi_type: str, max_dynamic_length: int = core_config.DEFAULT_MAX_DYNAMIC_LENGTH) -> Strategy:
    """
    Builds the strategy for an ABI type string.
    Raises DiscoveryError for malformed or unsupported types (fixed-point, function).
    """
    try:
        parsed = parse(normalize(abi_type))
        parsed.validate()
    except (ParseError, ABITypeError) as e:
        raise DiscoveryError(f"Cannot parse ABI type {abi_type!r}: {e}") from e
    return _strategy_for_parsed(parsed, max_dynamic_length)
