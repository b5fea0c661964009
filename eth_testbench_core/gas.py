# eth_testbench_core/gas.py
"""
Gas schedule used by the Interpreter.

Costs follow the pre-access-list schedule (no warm/cold distinction and no
refunds). Metering is deterministic but is not meant to match any production
fork byte for byte.
"""

GAS_ZERO = 0
GAS_JUMPDEST = 1
GAS_BASE = 2
GAS_VERY_LOW = 3
GAS_LOW = 5
GAS_MID = 8
GAS_HIGH = 10

GAS_EXP = 10
GAS_EXP_BYTE = 50
GAS_KECCAK256 = 30
GAS_KECCAK256_WORD = 6
GAS_COPY = 3
GAS_MEMORY = 3
GAS_MEMORY_QUADRATIC_DENOMINATOR = 512

GAS_BALANCE = 700
GAS_EXTERNAL = 700
GAS_BLOCK_HASH = 20
GAS_SLOAD = 800
GAS_STORAGE_SET = 20000
GAS_STORAGE_UPDATE = 5000
GAS_STORAGE_NOOP = 800

GAS_LOG = 375
GAS_LOG_TOPIC = 375
GAS_LOG_DATA = 8

GAS_CALL = 700
GAS_CALL_VALUE = 9000
GAS_NEW_ACCOUNT = 25000
GAS_CALL_STIPEND = 2300
GAS_CREATE = 32000
GAS_CODE_DEPOSIT = 200
GAS_SELF_DESTRUCT = 5000

GAS_TX_BASE = 21000
GAS_TX_CREATE = 53000
GAS_TX_DATA_ZERO = 4
GAS_TX_DATA_NON_ZERO = 16

GAS_ECRECOVER = 3000
GAS_SHA256 = 60
GAS_SHA256_WORD = 12
GAS_IDENTITY = 15
GAS_IDENTITY_WORD = 3


def ceil32(value: int) -> int:
    return (value + 31) // 32 * 32


def words(size: int) -> int:
    return (size + 31) // 32


def memory_cost(size_in_bytes: int) -> int:
    """Total cost of a memory of ``size_in_bytes`` (rounded up to words)."""
    size_in_words = words(size_in_bytes)
    return GAS_MEMORY * size_in_words + size_in_words * size_in_words // GAS_MEMORY_QUADRATIC_DENOMINATOR


def memory_expansion_cost(current_size: int, start: int, length: int) -> int:
    """
    Extra gas needed to grow memory so that ``[start, start + length)`` is
    addressable. Zero-length accesses never expand memory.
    """
    if length == 0:
        return 0
    new_size = ceil32(start + length)
    if new_size <= current_size:
        return 0
    return memory_cost(new_size) - memory_cost(current_size)


def copy_cost(length: int) -> int:
    return GAS_COPY * words(length)


def exp_cost(exponent: int) -> int:
    byte_length = (exponent.bit_length() + 7) // 8
    return GAS_EXP + GAS_EXP_BYTE * byte_length


def keccak_cost(length: int) -> int:
    return GAS_KECCAK256 + GAS_KECCAK256_WORD * words(length)


def log_cost(topic_count: int, length: int) -> int:
    return GAS_LOG + GAS_LOG_TOPIC * topic_count + GAS_LOG_DATA * length


def sstore_cost(current: int, new: int) -> int:
    if current == new:
        return GAS_STORAGE_NOOP
    if current == 0:
        return GAS_STORAGE_SET
    return GAS_STORAGE_UPDATE


def max_message_call_gas(gas_left: int) -> int:
    """All but one 64th of the remaining gas may be forwarded to a child."""
    return gas_left - gas_left // 64


def intrinsic_gas(data: bytes, is_create: bool) -> int:
    zero_bytes = data.count(0)
    cost = GAS_TX_CREATE if is_create else GAS_TX_BASE
    return cost + GAS_TX_DATA_ZERO * zero_bytes + GAS_TX_DATA_NON_ZERO * (len(data) - zero_bytes)
