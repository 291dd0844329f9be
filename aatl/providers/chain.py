"""
Chain state provider: the handful of node reads the transaction layer needs
(chain id, account nonces, fee data, EntryPoint nonce) plus raw transaction
broadcast.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from eth_utils import encode_hex, to_checksum_address

from .base import JsonRpcProvider
from ..config import settings
from ..core.errors import ChainRpcError
from ..core.execution.userop_builder import build_entrypoint_get_nonce_call


def _parse_quantity(value: Any, method: str) -> int:
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value.startswith("0x"):
        raise ChainRpcError(f"Expected a hex quantity from {method}, got {value!r}", method=method)
    return int(value, 16) if value != "0x" else 0


@dataclass
class FeeData:
    """EIP-1559 fee suggestion: max fee = 2 * base fee + tip."""
    base_fee_per_gas: int
    max_priority_fee_per_gas: int
    max_fee_per_gas: int


class ChainStateProvider(JsonRpcProvider):
    name = "chain"
    timeout_s = 30

    def __init__(self, rpc_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.timeout_s = settings.request_timeout_seconds
        super().__init__(rpc_url if rpc_url is not None else settings.chain_rpc_url, client=client)

    async def ready(self) -> bool:
        return bool(self.rpc_url)

    async def health_check(self) -> Dict[str, Any]:
        if not await self.ready():
            return {"status": "disabled", "reason": "Chain RPC not configured"}

        try:
            chain_id = await self.get_chain_id()
            return {"status": "healthy", "chainId": chain_id}
        except ChainRpcError as exc:
            return {"status": "error", "reason": str(exc)}

    async def get_chain_id(self) -> int:
        return _parse_quantity(await self._rpc_call("eth_chainId", []), "eth_chainId")

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        """Account nonce; "pending" includes transactions still in the mempool."""
        result = await self._rpc_call("eth_getTransactionCount", [to_checksum_address(address), block])
        return _parse_quantity(result, "eth_getTransactionCount")

    async def get_fee_data(self) -> FeeData:
        tip = _parse_quantity(await self._rpc_call("eth_maxPriorityFeePerGas", []), "eth_maxPriorityFeePerGas")
        block = await self._rpc_call("eth_getBlockByNumber", ["latest", False])
        if not isinstance(block, dict):
            raise ChainRpcError("Latest block is unavailable", method="eth_getBlockByNumber")
        base_fee = _parse_quantity(block.get("baseFeePerGas") or "0x0", "eth_getBlockByNumber")
        return FeeData(
            base_fee_per_gas=base_fee,
            max_priority_fee_per_gas=tip,
            max_fee_per_gas=base_fee * 2 + tip,
        )

    async def get_entry_point_nonce(self, entry_point: str, sender: str, key: int = 0) -> int:
        """EntryPoint.getNonce(sender, key) via eth_call."""
        call = {
            "to": to_checksum_address(entry_point),
            "data": encode_hex(build_entrypoint_get_nonce_call(sender, key)),
        }
        result = await self._rpc_call("eth_call", [call, "latest"])
        if result in (None, "0x"):
            raise ChainRpcError(f"EntryPoint {entry_point} returned no data for getNonce", method="eth_call")
        return _parse_quantity(result, "eth_call")

    async def send_raw_transaction(self, raw_transaction: str) -> str:
        result = await self._rpc_call("eth_sendRawTransaction", [raw_transaction])
        if not isinstance(result, str):
            raise ChainRpcError("Invalid RPC response for eth_sendRawTransaction", method="eth_sendRawTransaction")
        return result

    async def _rpc_call(self, method: str, params: list[Any]) -> Any:
        if not await self.ready():
            raise ChainRpcError("Chain RPC is not configured (CHAIN_RPC_URL)", method=method)

        client = self._get_client()
        try:
            response = await client.post(self.rpc_url, json=self._envelope(method, params))
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ChainRpcError(f"RPC request {method} failed: {exc}", method=method) from exc

        if "error" in payload:
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ChainRpcError(f"RPC error for {method}: {message}", method=method)
        return payload.get("result")


_chain_provider: Optional[ChainStateProvider] = None


def get_chain_provider() -> ChainStateProvider:
    global _chain_provider
    if _chain_provider is None:
        _chain_provider = ChainStateProvider()
    return _chain_provider
