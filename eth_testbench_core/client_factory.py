from typing import Any, Dict

from . import config as core_config
from .clients.base_client import BroadcastTarget
from .clients.local_client import LocalNodeTarget
from .clients.rpc_client import RpcTarget
from .errors import ConfigurationError


class ClientFactory:
    """
    Builds broadcast targets by name so callers can pick a chain from
    configuration alone.
    """

    @staticmethod
    def create_target(target_type: str, target_config: Dict[str, Any]) -> BroadcastTarget:
        """
        Creates and returns a broadcast target.

        Args:
            target_type: "local" for an in-process node, or "rpc" (aliases
                         "anvil", "geth", "reth") for a remote JSON-RPC node.
            target_config: Constructor parameters. Remote targets take 'rpc_url'
                           (defaults to the configured target URL),
                           'rpc_method_aliases' and 'chain_id'; local targets
                           take 'node' or LocalNode keyword arguments.

        Raises:
            ConfigurationError: If an unsupported target_type is provided.
        """
        kind = target_type.lower()
        if kind == "local":
            return LocalNodeTarget(**target_config)
        if kind in ("rpc", "anvil", "geth", "reth"):
            config = dict(target_config)
            config.setdefault("rpc_url", core_config.DEFAULT_TARGET_URL)
            return RpcTarget(**config)
        raise ConfigurationError(f"Unsupported broadcast target type: {target_type}")
