import pytest
import requests
from unittest.mock import Mock, patch

from eth_testbench_core import config as core_config
from eth_testbench_core.client_factory import ClientFactory
from eth_testbench_core.clients.local_client import LocalNodeTarget
from eth_testbench_core.clients.rpc_client import RpcTarget
from eth_testbench_core.errors import ConfigurationError, RpcError
from eth_testbench_core.node import LocalNode

POST = "eth_testbench_core.clients.rpc_client.requests.post"


def rpc_response(payload):
    response = Mock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


class TestRpcTarget:
    def test_custom_rpc_posts_json_rpc(self):
        target = RpcTarget(rpc_url="http://node:8545", chain_id=1)
        with patch(POST, return_value=rpc_response({"jsonrpc": "2.0", "id": 1, "result": "0x10"})) as post:
            assert target.call_custom_rpc("eth_blockNumber") == "0x10"

        payload = post.call_args.kwargs["json"]
        assert payload["method"] == "eth_blockNumber"
        assert payload["params"] == []
        assert post.call_args.args[0] == "http://node:8545"

    def test_aliases_rename_methods(self):
        target = RpcTarget(rpc_method_aliases={"snapshot": "hardhat_snapshot"})
        with patch(POST, return_value=rpc_response({"id": 1, "result": "0x1"})) as post:
            assert target.snapshot() == "0x1"
        assert post.call_args.kwargs["json"]["method"] == "hardhat_snapshot"

    def test_error_member_raises(self):
        target = RpcTarget()
        error = {"code": -32000, "message": "nonce too low"}
        with patch(POST, return_value=rpc_response({"id": 1, "error": error})):
            with pytest.raises(RpcError) as excinfo:
                target.send_raw_transaction(b"\x01")
        assert excinfo.value.code == -32000
        assert excinfo.value.message == "nonce too low"

    def test_timeout_becomes_rpc_error(self):
        with patch(POST, side_effect=requests.exceptions.Timeout()):
            with pytest.raises(RpcError):
                RpcTarget().call_custom_rpc("eth_chainId")

    def test_response_without_result(self):
        with patch(POST, return_value=rpc_response({"id": 1})):
            with pytest.raises(RpcError):
                RpcTarget().call_custom_rpc("eth_chainId")

    def test_configured_chain_id_skips_the_node(self):
        assert RpcTarget(chain_id=5).chain_id() == 5


class TestLocalNodeTarget:
    def test_fee_parameters_follow_the_node(self):
        target = LocalNodeTarget(node=LocalNode(priority_fee=7))
        assert target.get_fee_parameters() == {"maxFeePerGas": 7, "maxPriorityFeePerGas": 7}

    def test_errors_surface_as_rpc_errors(self):
        with pytest.raises(RpcError) as excinfo:
            LocalNodeTarget().call_custom_rpc("eth_mystery")
        assert excinfo.value.code == -32601

    def test_snapshot_helpers(self):
        target = LocalNodeTarget()
        snapshot_id = target.snapshot()
        target.set_balance("0x0000000000000000000000000000000000000b0b", 10)
        assert target.revert(snapshot_id) is True
        assert target.node.state.get_balance("0x0000000000000000000000000000000000000b0b") == 0


class TestClientFactory:
    def test_local_target(self):
        assert isinstance(ClientFactory.create_target("local", {"chain_id": 5}), LocalNodeTarget)

    @pytest.mark.parametrize("name", ["rpc", "anvil", "Geth", "reth"])
    def test_remote_targets(self, name):
        target = ClientFactory.create_target(name, {})
        assert isinstance(target, RpcTarget)
        assert target.rpc_url == core_config.DEFAULT_TARGET_URL

    def test_unknown_target_type(self):
        with pytest.raises(ConfigurationError):
            ClientFactory.create_target("besu-over-carrier-pigeon", {})
