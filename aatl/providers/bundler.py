"""
ERC-4337 Bundler Provider.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import httpx

from .base import JsonRpcProvider
from ..config import settings
from ..core.errors import RelayerError, RelayerRejectedError, RelayerTransportError, classify_relayer_error
from ..core.execution.gas import UserOpGasEstimate
from ..core.execution.userop import BundlerReceipt, SignedUserOperation, UserOperation


logger = logging.getLogger(__name__)

UserOpPayload = Union[UserOperation, SignedUserOperation, Dict[str, Any]]


@dataclass
class BundlerConfig:
    rpc_url: str
    bundle_now_method: str = "debug_bundler_sendBundleNow"
    enable_bundle_now: bool = True
    timeout_s: Optional[float] = None


def _as_payload(user_op: UserOpPayload) -> Dict[str, Any]:
    if isinstance(user_op, dict):
        return user_op
    return user_op.to_rpc_dict()


class BundlerProvider(JsonRpcProvider):
    name = "bundler"
    timeout_s = 20

    def __init__(
        self,
        config: Optional[BundlerConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config or BundlerConfig(
            rpc_url=settings.bundler_url,
            bundle_now_method=settings.bundle_now_method,
            enable_bundle_now=settings.enable_bundle_now,
            timeout_s=settings.request_timeout_seconds,
        )
        if self._config.timeout_s:
            self.timeout_s = self._config.timeout_s
        super().__init__(self._config.rpc_url, client=client)

    @property
    def config(self) -> BundlerConfig:
        return self._config

    async def ready(self) -> bool:
        return bool(self._config.rpc_url)

    async def health_check(self) -> Dict[str, Any]:
        if not await self.ready():
            return {"status": "disabled", "reason": "Bundler not configured"}

        try:
            result = await self._rpc_call("eth_chainId", [])
            return {"status": "healthy", "chainId": result}
        except RelayerError as exc:
            return {"status": "error", "reason": str(exc)}

    async def _require_ready(self, method: str) -> None:
        if not await self.ready():
            raise RelayerRejectedError(None, "Bundler provider is not configured (BUNDLER_URL)", method=method)

    async def send_user_operation(self, user_op: UserOpPayload, entry_point: str) -> str:
        """
        Submit via eth_sendUserOperation and return the relayer's operation hash.

        Raises AlreadyKnownError when the relayer already holds the operation.
        """
        await self._require_ready("eth_sendUserOperation")

        result = await self._rpc_call(
            "eth_sendUserOperation",
            [_as_payload(user_op), entry_point],
        )
        if not isinstance(result, str):
            raise RelayerRejectedError(
                None, "Invalid bundler response for eth_sendUserOperation", data=result, method="eth_sendUserOperation"
            )
        return result

    async def send_raw_transaction(self, raw_transaction: str) -> str:
        await self._require_ready("eth_sendRawTransaction")

        result = await self._rpc_call("eth_sendRawTransaction", [raw_transaction])
        if not isinstance(result, str):
            raise RelayerRejectedError(
                None, "Invalid bundler response for eth_sendRawTransaction", data=result, method="eth_sendRawTransaction"
            )
        return result

    async def estimate_user_operation_gas(self, user_op: UserOpPayload, entry_point: str) -> UserOpGasEstimate:
        await self._require_ready("eth_estimateUserOperationGas")

        result = await self._rpc_call(
            "eth_estimateUserOperationGas",
            [_as_payload(user_op), entry_point],
        )
        if not isinstance(result, dict):
            raise RelayerRejectedError(
                None,
                "Invalid bundler response for eth_estimateUserOperationGas",
                data=result,
                method="eth_estimateUserOperationGas",
            )
        return UserOpGasEstimate.from_rpc(result)

    async def get_user_operation_receipt(self, user_op_hash: str) -> Optional[BundlerReceipt]:
        await self._require_ready("eth_getUserOperationReceipt")

        result = await self._rpc_call("eth_getUserOperationReceipt", [user_op_hash])
        if not result:
            return None
        return BundlerReceipt.from_rpc(user_op_hash, result)

    async def send_bundle_now(self) -> bool:
        """
        Ask the relayer to bundle immediately. Best effort: failures are
        logged and reported as False, never raised.
        """
        method = self._config.bundle_now_method
        if not self._config.enable_bundle_now or not method or not await self.ready():
            return False

        try:
            await self._rpc_call(method, [])
        except RelayerError as exc:
            logger.warning("Bundler %s failed (ignored): %s", method, exc)
            return False
        return True

    async def _rpc_call(self, method: str, params: list[Any]) -> Any:
        client = self._get_client()
        try:
            response = await client.post(self._config.rpc_url, json=self._envelope(method, params))
        except httpx.HTTPError as exc:
            raise RelayerTransportError(f"Bundler request {method} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        # Some relayers answer JSON-RPC errors with a 4xx/5xx status
        if isinstance(payload, dict) and payload.get("error"):
            error = payload["error"]
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise classify_relayer_error(
                error.get("code"),
                error.get("message"),
                data=error.get("data"),
                method=method,
            )

        if response.is_error:
            raise RelayerTransportError(
                f"Bundler HTTP error ({response.status_code}) for {method}: {response.text[:200]}",
                status_code=response.status_code,
            )
        if not isinstance(payload, dict):
            raise RelayerTransportError(f"Bundler returned a non JSON-RPC body for {method}")
        return payload.get("result")


_bundler_provider: Optional[BundlerProvider] = None


def get_bundler_provider() -> BundlerProvider:
    global _bundler_provider
    if _bundler_provider is None:
        _bundler_provider = BundlerProvider()
    return _bundler_provider
