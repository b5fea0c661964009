# eth_testbench_core/state.py
"""
In-memory State Store: account balances, nonces, code, per-contract storage
and the block environment, with O(1) copy-on-write snapshots.

State lives in a chain of layers. The head layer is the only mutable one;
``snapshot()`` freezes it and stacks a fresh head on top, so a snapshot is
just a reference to a frozen layer. Frozen layers are never written again,
which is what lets ``fork()`` hand the same layers to several independent
stores (one per test or fuzz case) without locking.

Per-call rollback uses a journal of prior values. Rolling back writes those
prior values into the current head instead of editing any layer in place,
so a rollback stays correct even after a ``restore()`` issued in the middle
of an execution.
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Set, Tuple

from eth_utils import keccak

from . import config as core_config
from .errors import (
    InsufficientBalance,
    NonceOverflow,
    StateError,
    UnknownSnapshot,
    ValueOutOfRange,
    WriteOutsideExecution,
)
from .types import (
    AccountChange,
    AddressLike,
    StateDelta,
    StorageChange,
    canonical_address,
    checksum,
)

logger = logging.getLogger(__name__)

U256_MAX = 2**256 - 1
MAX_NONCE = 2**64 - 1
EMPTY_CODE_HASH = keccak(b"")

_MISSING = object()


@dataclass(frozen=True)
class Account:
    balance: int = 0
    nonce: int = 0
    code: bytes = b""

    @property
    def code_hash(self) -> bytes:
        return keccak(self.code) if self.code else EMPTY_CODE_HASH

    @property
    def is_empty(self) -> bool:
        return self.balance == 0 and self.nonce == 0 and not self.code


EMPTY_ACCOUNT = Account()


@dataclass(frozen=True)
class BlockEnvironment:
    number: int = core_config.DEFAULT_BLOCK_NUMBER
    timestamp: int = core_config.DEFAULT_BLOCK_TIMESTAMP
    chain_id: int = core_config.DEFAULT_CHAIN_ID
    coinbase: bytes = canonical_address(core_config.DEFAULT_COINBASE)
    gas_limit: int = core_config.DEFAULT_BLOCK_GAS_LIMIT
    base_fee: int = core_config.DEFAULT_BASE_FEE
    prevrandao: int = core_config.DEFAULT_PREVRANDAO


class _Layer:
    """One set of deltas on top of its parent. Frozen once a snapshot points at it."""
    __slots__ = ("parent", "accounts", "storage", "cleared", "env")

    def __init__(self, parent: Optional["_Layer"] = None):
        self.parent = parent
        self.accounts: Dict[bytes, Optional[Account]] = {}  # None marks a non-existent account
        self.storage: Dict[Tuple[bytes, int], int] = {}
        self.cleared: Set[bytes] = set()  # storage wiped at this layer (self-destruct)
        self.env: Optional[BlockEnvironment] = None


class StateStore:
    """
    Key-value ledger of accounts with snapshot/restore/fork and a
    transaction journal used by the Interpreter for per-frame rollback.
    """

    def __init__(self, env: Optional[BlockEnvironment] = None):
        root = _Layer()
        root.env = env or BlockEnvironment()
        self._head: _Layer = root
        self._snapshots: Dict[int, _Layer] = {}
        self._next_snapshot_id: int = 0
        self._journal: List[tuple] = []
        self._checkpoints: List[int] = []

    # --- Snapshots ---

    def snapshot(self) -> int:
        """Freezes the current state and returns its id. O(1)."""
        frozen = self._head
        self._head = _Layer(parent=frozen)
        snapshot_id = self._next_snapshot_id
        self._next_snapshot_id += 1
        self._snapshots[snapshot_id] = frozen
        logger.debug("Snapshot %d taken", snapshot_id)
        return snapshot_id

    def restore(self, snapshot_id: int) -> None:
        """
        Returns to the state captured by ``snapshot_id``. Every snapshot taken
        after it is discarded; the restored one stays valid.
        """
        layer = self._snapshots.get(snapshot_id)
        if layer is None:
            raise UnknownSnapshot(snapshot_id)
        for later_id in [s for s in self._snapshots if s > snapshot_id]:
            del self._snapshots[later_id]
        # ids are never reissued, so a discarded handle keeps failing
        self._head = _Layer(parent=layer)
        logger.debug("Restored snapshot %d", snapshot_id)

    def fork(self, snapshot_id: Optional[int] = None) -> "StateStore":
        """
        Returns an independent store starting at ``snapshot_id`` (a new
        snapshot of the current state when omitted). The fork shares frozen
        layers with this store and can restore the snapshots up to the fork point.
        """
        if snapshot_id is None:
            snapshot_id = self.snapshot()
        layer = self._snapshots.get(snapshot_id)
        if layer is None:
            raise UnknownSnapshot(snapshot_id)
        child = StateStore.__new__(StateStore)
        child._head = _Layer(parent=layer)
        child._snapshots = {s: l for s, l in self._snapshots.items() if s <= snapshot_id}
        child._next_snapshot_id = self._next_snapshot_id
        child._journal = []
        child._checkpoints = []
        return child

    def has_snapshot(self, snapshot_id: int) -> bool:
        return snapshot_id in self._snapshots

    # --- Transactions (journal) ---

    @property
    def in_transaction(self) -> bool:
        return bool(self._checkpoints)

    def begin_transaction(self) -> int:
        """Opens a nested transaction and returns its journal mark."""
        mark = len(self._journal)
        self._checkpoints.append(mark)
        return mark

    def commit_transaction(self) -> None:
        if not self._checkpoints:
            raise StateError("commit_transaction called without an open transaction")
        self._checkpoints.pop()
        if not self._checkpoints:
            self._journal.clear()

    def rollback_transaction(self) -> None:
        if not self._checkpoints:
            raise StateError("rollback_transaction called without an open transaction")
        mark = self._checkpoints.pop()
        while len(self._journal) > mark:
            self._undo(self._journal.pop())
        if not self._checkpoints:
            self._journal.clear()

    def _undo(self, entry: tuple) -> None:
        kind = entry[0]
        head = self._head
        if kind == "account":
            _, address, prior = entry
            head.accounts[address] = prior
        elif kind == "storage":
            _, address, key, prior = entry
            head.storage[(address, key)] = prior
        elif kind == "clear":
            _, address, removed, was_cleared = entry
            if not was_cleared:
                head.cleared.discard(address)
            head.storage.update(removed)
        elif kind == "env":
            head.env = entry[1]

    def changes_since(self, mark: int) -> StateDelta:
        """Summarizes what changed since ``mark`` inside the open transaction."""
        first_accounts: Dict[bytes, Optional[Account]] = {}
        first_storage: Dict[Tuple[bytes, int], int] = {}
        for entry in self._journal[mark:]:
            if entry[0] == "account" and entry[1] not in first_accounts:
                first_accounts[entry[1]] = entry[2]
            elif entry[0] == "storage" and (entry[1], entry[2]) not in first_storage:
                first_storage[(entry[1], entry[2])] = entry[3]

        account_changes: List[AccountChange] = []
        for address, before in first_accounts.items():
            after = self._find_account(address)
            if (before is None) != (after is None):
                account_changes.append(AccountChange(address, "exists", before is not None, after is not None))
            old = before or EMPTY_ACCOUNT
            new = after or EMPTY_ACCOUNT
            for attribute in ("balance", "nonce", "code"):
                if getattr(old, attribute) != getattr(new, attribute):
                    account_changes.append(
                        AccountChange(address, attribute, getattr(old, attribute), getattr(new, attribute)))

        storage_changes = [
            StorageChange(address, key, before, self.read(address, key))
            for (address, key), before in first_storage.items()
            if self.read(address, key) != before
        ]
        return StateDelta(tuple(account_changes), tuple(storage_changes))

    # --- Internal writes (journaled while a transaction is open) ---

    def _put_account(self, address: bytes, account: Optional[Account]) -> None:
        if self._checkpoints:
            self._journal.append(("account", address, self._find_account(address)))
        self._head.accounts[address] = account

    def _put_storage(self, address: bytes, key: int, value: int) -> None:
        if self._checkpoints:
            self._journal.append(("storage", address, key, self.read(address, key)))
        self._head.storage[(address, key)] = value

    def _clear_storage(self, address: bytes) -> None:
        head = self._head
        removed = {k: v for k, v in head.storage.items() if k[0] == address}
        if self._checkpoints:
            self._journal.append(("clear", address, removed, address in head.cleared))
        for k in removed:
            del head.storage[k]
        head.cleared.add(address)

    # --- Reads ---

    def _find_account(self, address: bytes) -> Optional[Account]:
        layer: Optional[_Layer] = self._head
        while layer is not None:
            account = layer.accounts.get(address, _MISSING)
            if account is not _MISSING:
                return account  # type: ignore[return-value]
            layer = layer.parent
        return None

    def get_account(self, address: AddressLike) -> Account:
        return self._find_account(canonical_address(address)) or EMPTY_ACCOUNT

    def account_exists(self, address: AddressLike) -> bool:
        return self._find_account(canonical_address(address)) is not None

    def get_balance(self, address: AddressLike) -> int:
        return self.get_account(address).balance

    def get_nonce(self, address: AddressLike) -> int:
        return self.get_account(address).nonce

    def get_code(self, address: AddressLike) -> bytes:
        return self.get_account(address).code

    def read(self, address: AddressLike, key: int) -> int:
        """Storage slot value, zero when never written."""
        address = canonical_address(address)
        slot = (address, key)
        layer: Optional[_Layer] = self._head
        while layer is not None:
            value = layer.storage.get(slot)
            if value is not None:
                return value
            if address in layer.cleared:
                return 0
            layer = layer.parent
        return 0

    @property
    def env(self) -> BlockEnvironment:
        layer: Optional[_Layer] = self._head
        while layer is not None:
            if layer.env is not None:
                return layer.env
            layer = layer.parent
        raise StateError("State store has no block environment")  # root always has one

    # --- Writes ---

    def write(self, address: AddressLike, key: int, value: int) -> None:
        """Storage write issued by executing code. Only valid inside a transaction."""
        if not self._checkpoints:
            raise WriteOutsideExecution("Storage writes require an active call execution")
        self._check_word(value)
        self._put_storage(canonical_address(address), key, value)

    def set_storage(self, address: AddressLike, key: int, value: int) -> None:
        """Privileged storage write for genesis allocations and cheats."""
        self._check_word(value)
        self._put_storage(canonical_address(address), key, value)

    def set_balance(self, address: AddressLike, balance: int) -> None:
        self._check_word(balance)
        address = canonical_address(address)
        self._put_account(address, replace(self.get_account(address), balance=balance))

    def set_nonce(self, address: AddressLike, nonce: int) -> None:
        if nonce < 0 or nonce > MAX_NONCE:
            raise NonceOverflow(f"Nonce out of range: {nonce}")
        address = canonical_address(address)
        self._put_account(address, replace(self.get_account(address), nonce=nonce))

    def increment_nonce(self, address: AddressLike) -> int:
        """Bumps the nonce and returns the value it had before."""
        address = canonical_address(address)
        current = self.get_nonce(address)
        self.set_nonce(address, current + 1)
        return current

    def set_code(self, address: AddressLike, code: bytes) -> None:
        address = canonical_address(address)
        self._put_account(address, replace(self.get_account(address), code=bytes(code)))

    def touch(self, address: AddressLike) -> None:
        """Makes an account exist without changing it."""
        address = canonical_address(address)
        if self._find_account(address) is None:
            self._put_account(address, EMPTY_ACCOUNT)

    def transfer(self, src: AddressLike, dst: AddressLike, amount: int) -> None:
        """
        Moves ``amount`` wei. Raises InsufficientBalance, or ValueOutOfRange
        when the recipient would overflow, without moving anything.
        """
        if amount < 0:
            raise ValueOutOfRange(f"Negative transfer amount: {amount}")
        src = canonical_address(src)
        dst = canonical_address(dst)
        balance = self.get_balance(src)
        if amount > balance:
            raise InsufficientBalance(checksum(src), balance, amount)
        if amount == 0 or src == dst:
            self.touch(dst)
            return
        received = self.get_balance(dst) + amount
        self._check_word(received)
        self.set_balance(src, balance - amount)
        self.set_balance(dst, received)

    def destroy_account(self, address: AddressLike) -> None:
        """Zeroes code, nonce, balance and storage. The address stays resolvable."""
        address = canonical_address(address)
        self._put_account(address, EMPTY_ACCOUNT)
        self._clear_storage(address)

    def set_env(self, **changes) -> BlockEnvironment:
        new_env = replace(self.env, **changes)
        if self._checkpoints:
            self._journal.append(("env", self._head.env))
        self._head.env = new_env
        return new_env

    @staticmethod
    def _check_word(value: int) -> None:
        if value < 0 or value > U256_MAX:
            raise ValueOutOfRange(f"Value does not fit in 256 bits: {value}")
