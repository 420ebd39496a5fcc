from typing import Final
from enum import StrEnum

DEFAULT_RPC_URL: Final = "https://cloudflare-eth.com"

JSONRPC_VERSION: Final = "2.0"
JSONRPC_ID: Final = 1


class RpcMethod(StrEnum):
    BLOCK_NUMBER        = "eth_blockNumber"
    GET_BLOCK_BY_NUMBER = "eth_getBlockByNumber"


class StoreBackend(StrEnum):
    MEMORY = "memory"
    SQLITE = "sqlite"


SYNC_INTERVAL = 300  # seconds between batch advances (5 minutes)
RPC_TIMEOUT = 10.0
PROBE_RETRIES = 30
PROBE_DELAY = 2.0
DB_PATH = "txwatch_state.db"

__all__ = [
    "DB_PATH",
    "DEFAULT_RPC_URL",
    "JSONRPC_ID",
    "JSONRPC_VERSION",
    "PROBE_DELAY",
    "PROBE_RETRIES",
    "RPC_TIMEOUT",
    "SYNC_INTERVAL",

    ######
    "RpcMethod",
    "StoreBackend",
]
