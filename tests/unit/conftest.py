"""
Shared fixtures: small contracts written with the assembler, a genesis state
holding them, and a funded signer.
"""
import pytest
from eth_account import Account

from eth_testbench_core import config as core_config
from eth_testbench_core.abi import function_abi
from eth_testbench_core.assembler import (
    argument,
    assemble,
    assert_true,
    build_artifact,
    call,
    cheat,
    dispatcher,
    require,
    return_top,
    revert_error,
)
from eth_testbench_core.state import StateStore

COUNTER_ADDRESS = "0x000000000000000000000000000000000000c0de"
SIGNER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
FAILED_SLOT = b"failed".ljust(32, b"\x00")

COUNTER_ROUTES = [
    ("increment()", "PUSH0 SLOAD PUSH 1 ADD PUSH0 SSTORE"),
    ("count()", f"PUSH0 SLOAD {return_top()}"),
    ("fail()", revert_error("boom")),
]


def _selector(signature: str) -> bytes:
    return function_abi(signature).selector


def build_counter_runtime() -> bytes:
    return assemble(dispatcher(COUNTER_ROUTES))


def build_example_test():
    """A test contract covering the outcome classes the runner distinguishes."""
    def storage_is_42():
        return f"PUSH0 SLOAD PUSH 42 EQ {require('slot 0 is not 42')}"

    routes = [
        ("setUp()", "PUSH 42 PUSH0 SSTORE"),
        ("testSetUpRan()", storage_is_42()),
        ("testWritesSeven()", f"PUSH 7 PUSH0 SSTORE PUSH0 SLOAD PUSH 7 EQ {require('write lost')}"),
        ("testStillFortyTwo()", storage_is_42()),
        ("testAssertion()", f"PUSH0 {assert_true()}"),
        ("testRevertsUnexpectedly()", revert_error("nope")),
        ("testFailWhenReverting()", revert_error("expected")),
        ("testFailButPasses()", ""),
        ("testExpectRevertMatches()",
         f"{cheat('expectRevert(bytes)', b'boom')}\n{call(COUNTER_ADDRESS, _selector('fail()'))}"),
        ("testExpectRevertNotTriggered()",
         f"{cheat('expectRevert()')}\n{call(COUNTER_ADDRESS, _selector('increment()'))}"),
        ("testWarp()", f"{cheat('warp(uint256)', 1000)}\nTIMESTAMP PUSH 1000 EQ {require('warp not applied')}"),
        ("testFlagged()", cheat("store(address,bytes32,bytes32)", core_config.CHEAT_ADDRESS, FAILED_SLOT,
                                (1).to_bytes(32, "big"))),
        ("testFuzzBelowLimit(uint256)", f"{argument(0)} PUSH 1001 GT {require('value too large')}"),
        ("testFuzzAnything(uint8)", ""),
    ]
    return build_artifact("ExampleTest", routes)


def build_broken_setup_test():
    return build_artifact("BrokenSetUpTest", [
        ("setUp()", revert_error("setup exploded")),
        ("testNeverRuns()", ""),
    ])


def build_counter_script():
    """Script whose run() broadcasts two increments of the counter."""
    increment = _selector("increment()")
    body = "\n".join([
        cheat("startBroadcast()"),
        call(COUNTER_ADDRESS, increment),
        call(COUNTER_ADDRESS, increment),
        cheat("stopBroadcast()"),
    ])
    return build_artifact("CounterScript", [("run()", body)])


@pytest.fixture
def counter_address():
    return COUNTER_ADDRESS


@pytest.fixture
def counter_runtime():
    return build_counter_runtime()


@pytest.fixture
def genesis(counter_runtime):
    """State with the counter deployed at its fixed address."""
    store = StateStore()
    store.set_code(COUNTER_ADDRESS, counter_runtime)
    return store


@pytest.fixture
def example_test_artifact():
    return build_example_test()


@pytest.fixture
def broken_setup_artifact():
    return build_broken_setup_test()


@pytest.fixture
def counter_script_artifact():
    return build_counter_script()


@pytest.fixture
def signer_key():
    return SIGNER_KEY


@pytest.fixture
def signer_address():
    return Account.from_key(SIGNER_KEY).address
