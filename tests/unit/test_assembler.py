import pytest

from eth_testbench_core.assembler import (
    AssemblyError,
    assemble,
    build_artifact,
    deployer,
    dispatcher,
    return_top,
)
from eth_testbench_core.interpreter import Interpreter
from eth_testbench_core.state import StateStore
from eth_testbench_core.types import CallFrame


class TestAssemble:
    def test_push_picks_the_smallest_width(self):
        assert assemble("PUSH 0") == bytes([0x5F])
        assert assemble("PUSH 255") == bytes([0x60, 0xFF])
        assert assemble("PUSH 0x100") == bytes([0x61, 0x01, 0x00])

    def test_explicit_width(self):
        assert assemble("PUSH4 1") == bytes([0x63, 0, 0, 0, 1])

    def test_labels_resolve_to_jumpdest_offsets(self):
        code = assemble("PUSH @end JUMP INVALID end: STOP")
        assert code == bytes([0x61, 0x00, 0x05, 0x56, 0xFE, 0x5B, 0x00])

    def test_comments_and_data(self):
        assert assemble("STOP ; trailing\n// whole line\nDATA 0xdead") == bytes([0x00, 0xDE, 0xAD])

    @pytest.mark.parametrize("source", [
        "NOTANOP",
        "PUSH1 256",
        "PUSH @missing",
        "a: a:",
        "PUSH",
        "PUSH33 1",
    ])
    def test_errors(self, source):
        with pytest.raises(AssemblyError):
            assemble(source)


class TestGenerators:
    def test_deployer_installs_runtime(self):
        runtime = assemble(f"PUSH 7 {return_top()}")
        store = StateStore()
        result = Interpreter(store).deploy("0x0000000000000000000000000000000000005e4d", deployer(runtime))
        assert result.success
        assert store.get_code(result.created_address) == runtime

    def test_dispatcher_reverts_on_unknown_selector(self):
        store = StateStore()
        target = "0x0000000000000000000000000000000000000c01"
        store.set_code(target, assemble(dispatcher([("a()", f"PUSH 1 {return_top()}")])))
        frame = CallFrame.call("0x0000000000000000000000000000000000005e4d", target, b"\x12\x34\x56\x78",
                               gas_limit=100_000)

        result = Interpreter(store).execute(frame)

        assert not result.success
        assert result.output == b""

    def test_artifact_abi_lists_routes_and_extras(self):
        artifact = build_artifact("Thing", [("a(uint256)", "")], extra_functions=["b((address,bool)[])"])
        signatures = [f.signature for f in artifact.functions]
        assert signatures == ["a(uint256)", "b((address,bool)[])"]
        assert artifact.abi[1]["inputs"][0]["type"] == "tuple[]"
