from .abi_strategies import (
    AddressStrategy,
    ArrayStrategy,
    BoolStrategy,
    BytesStrategy,
    FixedBytesStrategy,
    IntStrategy,
    StringStrategy,
    TupleStrategy,
    UintStrategy,
    shrink_magnitude,
    strategy_for,
)
from .base_strategy import Strategy

__all__ = [
    "Strategy",
    "UintStrategy",
    "IntStrategy",
    "AddressStrategy",
    "BoolStrategy",
    "FixedBytesStrategy",
    "BytesStrategy",
    "StringStrategy",
    "ArrayStrategy",
    "TupleStrategy",
    "shrink_magnitude",
    "strategy_for",
]
