import pytest
from eth_abi import decode
from eth_account import Account
from eth_keys import keys
from eth_utils import keccak

from eth_testbench_core import config as core_config
from eth_testbench_core.assembler import assemble, call, cheat, return_top
from eth_testbench_core.cheats import (
    REVERT_NOT_TRIGGERED,
    CheatDirective,
    CheatInterceptor,
    CheatKind,
    DirectiveScope,
)
from eth_testbench_core.errors import CheatError, ConflictingExpectation, UnmetExpectation, UnsupportedCheat
from eth_testbench_core.interpreter import Interpreter
from eth_testbench_core.types import CallFrame, canonical_address

SENDER = "0x0000000000000000000000000000000000005e4d"
ALICE = "0x00000000000000000000000000000000000a11ce"
CONTRACT = "0x0000000000000000000000000000000000000c01"
RETURN_DATA = "RETURNDATASIZE PUSH0 PUSH0 RETURNDATACOPY RETURNDATASIZE PUSH0 RETURN"


@pytest.fixture
def interceptor():
    return CheatInterceptor(test_id="CheatsTest.testSomething()")


@pytest.fixture
def interpreter(genesis, interceptor):
    return Interpreter(genesis, cheats=interceptor)


def execute(interpreter: Interpreter, source: str = "", data: bytes = b"", target: str = CONTRACT):
    if source:
        interpreter.state.set_code(target, assemble(source))
    return interpreter.execute(CallFrame.call(SENDER, target, data, gas_limit=1_000_000))


def word(value: int) -> bytes:
    return value.to_bytes(32, "big")


class TestHarnessDirectives:
    def test_impersonation_applies_to_next_call_only(self, interpreter, interceptor):
        """A NEXT_CALL prank changes msg.sender of one frame and is then dropped."""
        interceptor.install(CheatDirective(CheatKind.IMPERSONATE_SENDER, args=(ALICE,)))

        first = execute(interpreter, f"CALLER {return_top()}")
        second = execute(interpreter)

        assert first.output == canonical_address(ALICE).rjust(32, b"\x00")
        assert second.output == canonical_address(SENDER).rjust(32, b"\x00")

    def test_until_cleared_impersonation_persists(self, interpreter, interceptor):
        interceptor.install(CheatDirective(CheatKind.IMPERSONATE_SENDER, args=(ALICE,),
                                           scope=DirectiveScope.UNTIL_CLEARED, test_id=interceptor.test_id))
        execute(interpreter, f"CALLER {return_top()}")
        assert execute(interpreter).output == canonical_address(ALICE).rjust(32, b"\x00")

        interceptor.clear_scope()
        assert execute(interpreter).output == canonical_address(SENDER).rjust(32, b"\x00")

    def test_second_expectation_conflicts(self, interceptor):
        interceptor.install(CheatDirective(CheatKind.EXPECT_REVERT_ANY))
        with pytest.raises(ConflictingExpectation):
            interceptor.install(CheatDirective(CheatKind.EXPECT_REVERT, args=(b"boom",)))

    def test_call_only_kinds_cannot_be_installed(self, interceptor):
        with pytest.raises(UnsupportedCheat):
            interceptor.install(CheatDirective(CheatKind.ASSUME, args=(False,)))

    def test_kind_parsing_accepts_names(self):
        assert CheatKind.parse("expect_revert") is CheatKind.EXPECT_REVERT
        assert CheatKind.parse("SET_BALANCE") is CheatKind.SET_BALANCE
        with pytest.raises(UnsupportedCheat):
            CheatKind.parse("teleport")

    def test_state_directive_applies_before_frame(self, interpreter, interceptor):
        interceptor.install(CheatDirective(CheatKind.SET_TIMESTAMP, args=(777,)))
        result = execute(interpreter, f"TIMESTAMP {return_top()}")
        assert result.output == word(777)

    @pytest.mark.parametrize("kind, args", [
        (CheatKind.SET_BALANCE, (ALICE, 2**256)),
        (CheatKind.SET_BALANCE, (ALICE, -1)),
        (CheatKind.SET_NONCE, (ALICE, 2**64)),
        (CheatKind.SET_STORAGE, (ALICE, 0, 2**256)),
        (CheatKind.SET_TIMESTAMP, ("soon",)),
        (CheatKind.IMPERSONATE_SENDER, ("0x1234",)),
        (CheatKind.EXPECT_REVERT, ("boom",)),
    ])
    def test_out_of_range_arguments_are_rejected(self, interceptor, kind, args):
        with pytest.raises(CheatError, match="out of range"):
            interceptor.install(CheatDirective(kind, args=args))
        assert interceptor.directives == []

    def test_wrong_argument_count_is_rejected(self, interceptor):
        with pytest.raises(CheatError, match="takes 2 arguments, got 1"):
            interceptor.install(CheatDirective(CheatKind.SET_BALANCE, args=(ALICE,)))
        with pytest.raises(CheatError, match="takes 1 or 2 arguments"):
            interceptor.install(CheatDirective(CheatKind.IMPERSONATE_SENDER))

    def test_largest_values_are_accepted(self, interpreter, interceptor):
        interceptor.install(CheatDirective(CheatKind.SET_BALANCE, args=(ALICE, 2**256 - 1)))
        interceptor.install(CheatDirective(CheatKind.SET_NONCE, args=(ALICE, 2**64 - 1)))
        execute(interpreter)
        assert interpreter.state.get_balance(ALICE) == 2**256 - 1
        assert interpreter.state.get_nonce(ALICE) == 2**64 - 1


class TestExpectRevert:
    def test_matching_revert_becomes_success(self, interpreter, interceptor, counter_address):
        interceptor.install(CheatDirective(CheatKind.EXPECT_REVERT, args=(b"boom",)))
        result = execute(interpreter, data=keccak(text="fail()")[:4], target=counter_address)
        assert result.success
        assert interceptor.violations == []

    def test_selector_prefix_matches(self, interpreter, interceptor, counter_address):
        error_selector = keccak(text="Error(string)")[:4]
        interceptor.install(CheatDirective(CheatKind.EXPECT_REVERT, args=(error_selector,)))
        assert execute(interpreter, data=keccak(text="fail()")[:4], target=counter_address).success

    def test_missing_revert_is_a_violation(self, interpreter, interceptor, counter_address):
        interceptor.install(CheatDirective(CheatKind.EXPECT_REVERT_ANY))
        result = execute(interpreter, data=keccak(text="increment()")[:4], target=counter_address)
        assert not result.success
        assert result.revert_reason == REVERT_NOT_TRIGGERED
        assert interceptor.violations == [REVERT_NOT_TRIGGERED]

    def test_wrong_reason_is_a_violation(self, interpreter, interceptor, counter_address):
        interceptor.install(CheatDirective(CheatKind.EXPECT_REVERT, args=(b"other",)))
        result = execute(interpreter, data=keccak(text="fail()")[:4], target=counter_address)
        assert not result.success
        assert "boom" in interceptor.violations[0]

    def test_pending_expectation_fails_at_finalize(self, interceptor):
        interceptor.install(CheatDirective(CheatKind.EXPECT_REVERT_ANY, test_id=interceptor.test_id))
        with pytest.raises(UnmetExpectation) as excinfo:
            interceptor.finalize()
        assert excinfo.value.test_name == interceptor.test_id
        assert interceptor.violations == ["expected revert was never triggered"]
        assert interceptor.pending_expectation() is None


class TestCheatCalls:
    def test_warp_and_roll(self, interpreter):
        source = f"{cheat('warp(uint256)', 500)} {cheat('roll(uint256)', 12)} TIMESTAMP NUMBER ADD {return_top()}"
        assert execute(interpreter, source).output == word(512)

    def test_deal_sets_balance(self, interpreter):
        execute(interpreter, cheat("deal(address,uint256)", ALICE, 123))
        assert interpreter.state.get_balance(ALICE) == 123

    def test_store_and_load(self, interpreter, counter_address):
        source = "\n".join([
            cheat("store(address,bytes32,bytes32)", counter_address, word(0), word(41)),
            cheat("load(address,bytes32)", counter_address, word(0)),
            RETURN_DATA,
        ])
        result = execute(interpreter, source)
        assert result.output == word(41)
        assert interpreter.state.read(counter_address, 0) == 41

    def test_prank_from_contract(self, interpreter, counter_address):
        """prank() issued by the test contract applies to the contract's next call."""
        probe = "0x0000000000000000000000000000000000000c02"
        interpreter.state.set_code(probe, assemble(f"CALLER {return_top()}"))
        source = f"{cheat('prank(address)', ALICE)} {call(probe)} {RETURN_DATA}"
        result = execute(interpreter, source)
        assert result.output == canonical_address(ALICE).rjust(32, b"\x00")

    def test_addr_derives_key_address(self, interpreter):
        result = execute(interpreter, f"{cheat('addr(uint256)', 1)} {RETURN_DATA}")
        (address,) = decode(["address"], result.output)
        assert address == Account.from_key(word(1)).address

    def test_sign_recovers_to_signer(self, interpreter):
        digest = keccak(b"message")
        result = execute(interpreter, f"{cheat('sign(uint256,bytes32)', 7, digest)} {RETURN_DATA}")
        v, r, s = decode(["uint8", "bytes32", "bytes32"], result.output)
        signature = keys.Signature(vrs=(v - 27, int.from_bytes(r, "big"), int.from_bytes(s, "big")))
        recovered = signature.recover_public_key_from_msg_hash(digest).to_checksum_address()
        assert recovered == Account.from_key(word(7)).address

    def test_zero_private_key_is_a_cheat_error(self, interpreter, interceptor):
        result = execute(interpreter, cheat("addr(uint256)", 0))
        assert not result.success
        assert interceptor.cheat_errors == ["Private key cannot be zero"]

    def test_unknown_selector_is_rejected(self, interpreter, interceptor):
        result = execute(interpreter, call(core_config.CHEAT_ADDRESS, b"\xde\xad\xbe\xef"))
        assert not result.success
        assert "selector 0xdeadbeef" in interceptor.cheat_errors[0]

    def test_assume_false_rejects(self, interpreter, interceptor):
        result = execute(interpreter, cheat("assume(bool)", False))
        assert not result.success
        assert interceptor.assumption_rejected

    def test_set_nonce_cannot_go_backwards(self, interpreter, interceptor):
        interpreter.state.set_nonce(ALICE, 5)
        execute(interpreter, cheat("setNonce(address,uint64)", ALICE, 4))
        assert interceptor.cheat_errors
        assert interpreter.state.get_nonce(ALICE) == 5

    def test_snapshot_and_revert_to(self, interpreter):
        source = "\n".join([
            cheat("snapshot()"),
            "PUSH 5 PUSH0 SSTORE",
            cheat("revertTo(uint256)", 0),
            f"PUSH0 SLOAD {return_top()}",
        ])
        result = execute(interpreter, source)
        assert result.success
        assert result.output == word(0)

    def test_revert_to_unknown_snapshot_returns_false(self, interpreter):
        result = execute(interpreter, f"{cheat('revertTo(uint256)', 99)} {RETURN_DATA}")
        assert decode(["bool"], result.output) == (False,)

    def test_recorded_logs(self, interpreter, interceptor):
        interceptor.install(CheatDirective(CheatKind.RECORD_LOGS))
        execute(interpreter, "PUSH 0x1 PUSH0 PUSH0 LOG1")
        assert [log.topics for log in interceptor.recorded_logs] == [(1,)]

    def test_label(self, interpreter, interceptor):
        execute(interpreter, cheat("label(address,string)", ALICE, "alice"))
        assert interceptor.labels[canonical_address(ALICE)] == "alice"


class TestBroadcastRecording:
    def test_start_broadcast_records_each_call(self, interpreter, interceptor, counter_address):
        increment = keccak(text="increment()")[:4]
        source = "\n".join([
            cheat("startBroadcast(address)", ALICE),
            call(counter_address, increment),
            call(counter_address, increment),
            cheat("stopBroadcast()"),
            call(counter_address, increment),
        ])
        result = execute(interpreter, source)

        assert result.success
        assert len(interceptor.broadcast_intents) == 2
        assert all(intent.sender.lower() == ALICE for intent in interceptor.broadcast_intents)
        assert interpreter.state.get_nonce(ALICE) == 2

    def test_nested_broadcast_is_rejected(self, interceptor):
        interceptor.install(CheatDirective(CheatKind.BROADCAST, scope=DirectiveScope.UNTIL_CLEARED))
        with pytest.raises(CheatError):
            interceptor.install(CheatDirective(CheatKind.BROADCAST))
