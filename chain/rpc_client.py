"""
JSON-RPC client for the net-flow indexer.

Issues the two calls the ingestion pipeline needs against an EVM node:
``eth_blockNumber`` (retried a bounded number of times) and
``eth_getLogs`` for Transfer events of one token over a block range
(single attempt; the indexing loop retries on its next cycle).

Usage:
    client = RpcClient()
    latest = await client.get_latest_block()
    logs = await client.get_transfer_logs(token, latest - 100, latest)
    await client.close()
"""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from config.loader import get_config
from indexer_logging.logger_manager import setup_module_logger
from shared.constants import (
    DEFAULT_BLOCK_NUMBER_ATTEMPTS,
    DEFAULT_BLOCK_NUMBER_RETRY_DELAY_SECONDS,
    DEFAULT_BLOCK_NUMBER_TIMEOUT_SECONDS,
    DEFAULT_GET_LOGS_TIMEOUT_SECONDS,
    TRANSFER_TOPIC,
)
from shared.types import RawLog


class RpcError(Exception):
    """Raised when a JSON-RPC call fails: transport, timeout, HTTP status, body or error object."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


def _parse_quantity(value: Any) -> int:
    """Decode a hex-encoded JSON-RPC quantity ("0x1b4")."""
    if not isinstance(value, str):
        raise RpcError(f"Expected hex quantity, got {value!r}")
    try:
        return int(value, 16)
    except ValueError as exc:
        raise RpcError(f"Malformed hex quantity {value!r}") from exc


class RpcClient:
    """
    Async JSON-RPC 2.0 client over HTTP POST.

    Responses are either ``{"result": ...}`` or ``{"error": {"code", "message"}}``
    and are told apart by field presence.  Every failure mode surfaces as
    ``RpcError`` so callers handle a single exception type.
    """

    def __init__(
        self,
        rpc_url: str | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """
        Args:
            rpc_url: Node endpoint (defaults to chain.json / RPC_HTTP_URL).
            session: Shared aiohttp session (created lazily if None).
        """
        cfg = get_config()
        chain_cfg = cfg.get_chain_config()
        rpc_timing = cfg.get_timing_config().get("rpc", {})

        self._rpc_url: str = rpc_url or chain_cfg.get("rpc", {}).get("http_url", "")

        self._block_number_timeout = float(
            rpc_timing.get("block_number_timeout_seconds", DEFAULT_BLOCK_NUMBER_TIMEOUT_SECONDS)
        )
        self._get_logs_timeout = float(
            rpc_timing.get("get_logs_timeout_seconds", DEFAULT_GET_LOGS_TIMEOUT_SECONDS)
        )
        self._block_number_attempts = max(
            1, int(rpc_timing.get("block_number_attempts", DEFAULT_BLOCK_NUMBER_ATTEMPTS))
        )
        self._block_number_retry_delay = float(
            rpc_timing.get(
                "block_number_retry_delay_seconds", DEFAULT_BLOCK_NUMBER_RETRY_DELAY_SECONDS
            )
        )

        self._session = session
        self._owns_session = session is None
        self._request_id = 0

        self._logger = setup_module_logger(
            "rpc_client", "rpc_client.log", module_folder="RPC_Client_Logs"
        )

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the underlying aiohttp session if this client created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_latest_block(self) -> int:
        """
        Fetch the chain head height.

        Retries with a fixed delay between attempts; raises ``RpcError``
        once all attempts are exhausted.
        """
        last_error: RpcError | None = None
        for attempt in range(1, self._block_number_attempts + 1):
            try:
                result = await self._call("eth_blockNumber", [], self._block_number_timeout)
                return _parse_quantity(result)
            except RpcError as exc:
                last_error = exc
                if attempt < self._block_number_attempts:
                    self._logger.warning(
                        "eth_blockNumber failed (attempt %d/%d): %s. Retrying in %.1fs",
                        attempt,
                        self._block_number_attempts,
                        exc,
                        self._block_number_retry_delay,
                    )
                    await asyncio.sleep(self._block_number_retry_delay)

        raise RpcError(
            f"eth_blockNumber failed after {self._block_number_attempts} attempts: {last_error}",
            code=last_error.code if last_error else None,
        ) from last_error

    async def get_transfer_logs(
        self, token_address: str, from_block: int, to_block: int
    ) -> list[RawLog]:
        """
        Fetch Transfer logs emitted by ``token_address`` in [from_block, to_block].

        Single attempt.  An empty list is a valid result.
        """
        params = [
            {
                "fromBlock": hex(from_block),
                "toBlock": hex(to_block),
                "address": token_address,
                "topics": [TRANSFER_TOPIC],
            }
        ]
        self._logger.debug(
            "eth_getLogs token=%s range=%d-%d", token_address, from_block, to_block
        )
        result = await self._call("eth_getLogs", params, self._get_logs_timeout)
        if not isinstance(result, list):
            raise RpcError(f"eth_getLogs: expected a list result, got {type(result).__name__}")

        logs = []
        for entry in result:
            if not isinstance(entry, dict):
                self._logger.warning("eth_getLogs: skipping non-object log entry %r", entry)
                continue
            logs.append(RawLog.from_rpc(entry))
        return logs

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(self, method: str, params: list[Any], timeout: float) -> Any:
        """POST one JSON-RPC request and return its ``result`` field."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        session = await self._ensure_session()
        try:
            async with session.post(
                self._rpc_url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise RpcError(f"{method}: HTTP {resp.status}: {text[:200]}")
                try:
                    body = await resp.json(content_type=None)
                except ValueError as exc:
                    raise RpcError(f"{method}: malformed response body: {exc}") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RpcError(f"{method}: request failed: {exc!r}") from exc

        if not isinstance(body, dict):
            raise RpcError(f"{method}: malformed response body: {body!r}")

        error = body.get("error")
        if error is not None:
            if isinstance(error, dict):
                raise RpcError(
                    f"{method}: RPC error {error.get('code')}: {error.get('message')}",
                    code=error.get("code"),
                )
            raise RpcError(f"{method}: RPC error: {error!r}")

        if "result" not in body:
            raise RpcError(f"{method}: response carries neither result nor error")

        return body["result"]
