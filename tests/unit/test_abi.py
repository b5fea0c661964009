import json

import pytest
from eth_abi import encode

from eth_testbench_core.abi import (
    ContractArtifact,
    FunctionSignature,
    decode_panic_code,
    decode_revert_reason,
    encode_error_string,
    encode_panic,
    split_signature,
)
from eth_testbench_core.errors import DiscoveryError


class TestSignatures:
    def test_split_nested_signature(self):
        assert split_signature("f(uint256,(address,bool)[],bytes)") == ("f", ["uint256", "(address,bool)[]", "bytes"])
        assert split_signature("g()") == ("g", [])

    @pytest.mark.parametrize("signature", ["nope", "f(uint256", "(uint256)", "f((uint256)"])
    def test_malformed_signatures(self, signature):
        with pytest.raises(ValueError):
            split_signature(signature)

    def test_from_abi_expands_tuples(self):
        entry = {
            "type": "function",
            "name": "testOrder",
            "inputs": [{"name": "order", "type": "tuple[2]", "components": [
                {"name": "maker", "type": "address"},
                {"name": "amount", "type": "uint256"},
            ]}],
        }
        function = FunctionSignature.from_abi(entry)
        assert function.signature == "testOrder((address,uint256)[2])"
        assert function.input_names == ("order",)

    def test_encode_call_round_trips(self):
        function = FunctionSignature.parse("transfer(address,uint256)")
        calldata = function.encode_call("0x0000000000000000000000000000000000000b0b", 5)
        assert calldata[:4].hex() == "a9059cbb"
        assert function.decode_input(calldata)[1] == 5


class TestRevertData:
    def test_error_string(self):
        assert decode_revert_reason(encode_error_string("boom")) == "boom"

    def test_panic(self):
        data = encode_panic(0x11)
        assert decode_panic_code(data) == 0x11
        assert decode_revert_reason(data) == "arithmetic underflow or overflow (panic 0x11)"

    def test_custom_error(self):
        assert decode_revert_reason(bytes.fromhex("deadbeef") + encode(["uint256"], [1])) == "custom error 0xdeadbeef"

    def test_empty_and_truncated(self):
        assert decode_revert_reason(b"") is None
        assert decode_revert_reason(encode_error_string("boom")[:40]) is None


class TestArtifacts:
    def test_foundry_artifact(self, tmp_path):
        path = tmp_path / "Counter.json"
        path.write_text(json.dumps({
            "abi": [{"type": "function", "name": "count", "inputs": [], "outputs": [{"type": "uint256"}]}],
            "bytecode": {"object": "0x6001"},
            "deployedBytecode": {"object": "0x00"},
        }))
        artifact = ContractArtifact.from_file(path)

        assert artifact.name == "Counter"
        assert artifact.bytecode == bytes.fromhex("6001")
        assert artifact.deployed_bytecode == b"\x00"
        assert artifact.function("count").outputs == ("uint256",)

    def test_solc_standard_json_entry(self):
        artifact = ContractArtifact.from_dict({
            "abi": [],
            "evm": {"bytecode": {"object": "6002"}, "deployedBytecode": {"object": ""}},
        }, name="Two")
        assert artifact.bytecode == b"\x60\x02"
        assert artifact.deployed_bytecode == b""

    def test_unreadable_artifact(self, tmp_path):
        path = tmp_path / "Broken.json"
        path.write_text("{")
        with pytest.raises(DiscoveryError):
            ContractArtifact.from_file(path)

    def test_ambiguous_function_lookup(self):
        artifact = ContractArtifact(name="Over", bytecode=b"\x00", abi=[
            {"type": "function", "name": "f", "inputs": []},
            {"type": "function", "name": "f", "inputs": [{"type": "uint256"}]},
        ])
        with pytest.raises(KeyError):
            artifact.function("f")
        assert artifact.function("f(uint256)").inputs == ("uint256",)
