from .base_client import BroadcastTarget
from .local_client import LocalNodeTarget
from .rpc_client import RpcTarget

__all__ = ["BroadcastTarget", "LocalNodeTarget", "RpcTarget"]
