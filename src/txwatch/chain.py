# txwatch/chain.py
"""
JSON-RPC client for the ledger node.

The sync engine only needs two things from the node: the current block height
and a block by height. Requests are small typed variants instead of free-form
parameter lists; every failure surfaces as ChainUnavailable.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

import txwatch.constants as C
from txwatch.errors import ChainUnavailable
from txwatch.models import Block, parse_hex_quantity, to_hex_quantity

log = logging.getLogger("txwatch.chain")


@dataclass(frozen=True, slots=True)
class GetHeight:
    method = C.RpcMethod.BLOCK_NUMBER

    def params(self) -> list:
        return []


@dataclass(frozen=True, slots=True)
class GetBlockByHeight:
    height: int
    full_transactions: bool = True
    method = C.RpcMethod.GET_BLOCK_BY_NUMBER

    def params(self) -> list:
        return [to_hex_quantity(self.height), self.full_transactions]


ChainRequest = GetHeight | GetBlockByHeight


class ChainClient(Protocol):
    async def current_height(self) -> int: ...
    async def block_by_height(self, height: int, full_transactions: bool = True) -> Block: ...


class JsonRpcChainClient:
    """ChainClient speaking JSON-RPC 2.0 over HTTP POST."""

    def __init__(self, url: str, *, timeout: float = C.RPC_TIMEOUT, http: httpx.AsyncClient | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "JsonRpcChainClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def query(self, req: ChainRequest) -> Any:
        """Send one request and return the decoded ``result`` member."""
        method = str(req.method)
        payload = {
            "jsonrpc": C.JSONRPC_VERSION,
            "method": method,
            "params": req.params(),
            "id": C.JSONRPC_ID,
        }
        try:
            r = await self._http.post(self.url, json=payload, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise ChainUnavailable(method, f"{e.__class__.__name__}: {e}") from e

        if r.status_code != httpx.codes.OK:
            raise ChainUnavailable(method, f"received non-ok status code: {r.status_code}")

        try:
            body = r.json()
        except ValueError as e:
            raise ChainUnavailable(method, f"undecodable response: {e}") from e

        if not isinstance(body, dict):
            raise ChainUnavailable(method, "response is not a JSON object")
        if body.get("error") is not None:
            raise ChainUnavailable(method, f"json-rpc response error: {body['error']}")
        if body.get("result") is None:
            raise ChainUnavailable(method, "empty result")
        return body["result"]

    async def current_height(self) -> int:
        result = await self.query(GetHeight())
        try:
            return parse_hex_quantity(result)
        except ValueError as e:
            raise ChainUnavailable(str(GetHeight.method), str(e)) from e

    async def block_by_height(self, height: int, full_transactions: bool = True) -> Block:
        req = GetBlockByHeight(height, full_transactions)
        result = await self.query(req)
        if not isinstance(result, dict):
            raise ChainUnavailable(str(req.method), f"unexpected block payload for {height}")
        return Block.from_rpc(result, height)

    async def probe(self, retries: int = C.PROBE_RETRIES, delay: float = C.PROBE_DELAY) -> int:
        """Retry current_height until the node answers. Raises the last error when out of retries."""
        for attempt in range(1, retries + 1):
            try:
                height = await self.current_height()
                log.info("RPC endpoint responding at height %s (attempt %s/%s)", height, attempt, retries)
                return height
            except ChainUnavailable as e:
                if attempt < retries:
                    log.info("RPC not ready yet (attempt %s/%s): %s - retrying in %ss", attempt, retries, e.reason, delay)
                    await asyncio.sleep(delay)
                else:
                    log.error("RPC failed after %s attempts", retries)
                    raise
        raise ChainUnavailable(str(GetHeight.method), "no probe attempts made")
