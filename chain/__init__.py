from chain.rpc_client import RpcClient, RpcError

__all__ = [
    "RpcClient",
    "RpcError",
]
